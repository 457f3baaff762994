import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .config import PipelineConfig
from .credentials import CredentialResolver
from .providers.images import ImageClient
from .providers.jobs import AsyncJobClient
from .providers.structured import StructuredScriptClient
from .retry import FallbackController
from .storage.registry import BlobStore


@dataclass
class PipelineContext:
    config: PipelineConfig
    credentials: CredentialResolver
    blob_store: BlobStore
    script_client: Any
    image_client: Any
    video_client: Any
    render_client: Any
    sleep: Callable[[float], None] = field(default=time.sleep)

    @classmethod
    def from_settings(cls, config: Optional[PipelineConfig] = None, **overrides: Any) -> "PipelineContext":
        config = config or PipelineConfig.from_settings()
        values = {
            "config": config,
            "credentials": CredentialResolver(),
            "blob_store": BlobStore(),
            "script_client": StructuredScriptClient(config.script_model),
            "image_client": ImageClient(config.image_model),
            "video_client": AsyncJobClient(config.video_service_url, provider="video-service"),
            "render_client": AsyncJobClient(
                config.render_service_url,
                token=config.render_service_token,
                provider="render-service",
            ),
        }
        values.update(overrides)
        return cls(**values)

    def controller(self) -> FallbackController:
        return FallbackController(self.config, self.credentials, sleep=self.sleep)
