from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from django.conf import settings

from .states import TargetKind


@dataclass(frozen=True)
class RetryPolicy:
    max_tries: int = 3
    base_seconds: float = 1.0
    cap_seconds: float = 30.0
    budget_seconds: float = 120.0

    def delay_for(self, retry_index: int, retry_after: Optional[float] = None) -> float:
        if retry_after is not None and retry_after >= 0:
            return float(min(retry_after, self.cap_seconds))
        return float(min(self.base_seconds * (2 ** max(retry_index, 0)), self.cap_seconds))


@dataclass(frozen=True)
class PipelineConfig:
    batch_sizes: Dict[str, int] = field(
        default_factory=lambda: {
            TargetKind.CHUNK_SCRIPT: 3,
            TargetKind.SCENE_IMAGE: 1,
            TargetKind.SCENE_VIDEO: 1,
            TargetKind.PROJECT_BUILD: 1,
        }
    )
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    script_temperature: float = 0.7
    script_retry_temperature: float = 0.3
    repair_temperature: float = 0.1
    stuck_target_minutes: int = 5
    stuck_render_minutes: int = 30
    chunk_min_chars: int = 500
    chunk_ideal_chars: int = 1000
    chunk_max_chars: int = 1500
    max_reference_images: int = 5
    preflight_check_urls: bool = False
    site_url: str = ""
    script_provider: str = "openai"
    script_model: str = "gpt-4o-2024-08-06"
    image_provider: str = "google"
    image_model: str = "gemini-3-pro-image-preview"
    video_provider: str = "google"
    video_model: str = "veo-2.0-generate-001"
    video_service_url: str = ""
    render_service_url: str = ""
    render_service_token: str = ""

    def batch_size(self, kind: str) -> int:
        return max(int(self.batch_sizes.get(kind, 1) or 1), 1)

    def with_overrides(self, **changes: Any) -> "PipelineConfig":
        return replace(self, **changes)

    @classmethod
    def from_settings(cls) -> "PipelineConfig":
        raw = getattr(settings, "GENERATION_PIPELINE", {}) or {}
        defaults = cls()
        return cls(
            batch_sizes={
                TargetKind.CHUNK_SCRIPT: int(raw.get("CHUNK_BATCH_SIZE") or 3),
                TargetKind.SCENE_IMAGE: int(raw.get("IMAGE_BATCH_SIZE") or 1),
                TargetKind.SCENE_VIDEO: int(raw.get("VIDEO_BATCH_SIZE") or 1),
                TargetKind.PROJECT_BUILD: 1,
            },
            retry=RetryPolicy(
                max_tries=int(raw.get("RETRY_MAX_TRIES") or defaults.retry.max_tries),
                base_seconds=float(raw.get("RETRY_BASE_SECONDS") or defaults.retry.base_seconds),
                cap_seconds=float(raw.get("RETRY_CAP_SECONDS") or defaults.retry.cap_seconds),
                budget_seconds=float(raw.get("INVOCATION_BUDGET_SECONDS") or defaults.retry.budget_seconds),
            ),
            script_temperature=float(raw.get("SCRIPT_TEMPERATURE", defaults.script_temperature)),
            script_retry_temperature=float(raw.get("SCRIPT_RETRY_TEMPERATURE", defaults.script_retry_temperature)),
            stuck_target_minutes=int(raw.get("STUCK_TARGET_MINUTES") or defaults.stuck_target_minutes),
            stuck_render_minutes=int(raw.get("STUCK_RENDER_MINUTES") or defaults.stuck_render_minutes),
            preflight_check_urls=bool(raw.get("PREFLIGHT_CHECK_URLS", False)),
            site_url=str(raw.get("SITE_URL") or "").strip().rstrip("/"),
            script_provider=str(raw.get("SCRIPT_PROVIDER") or defaults.script_provider).strip().lower(),
            script_model=str(raw.get("SCRIPT_MODEL") or defaults.script_model).strip(),
            image_provider=str(raw.get("IMAGE_PROVIDER") or defaults.image_provider).strip().lower(),
            image_model=str(raw.get("IMAGE_MODEL") or defaults.image_model).strip(),
            video_provider=str(raw.get("VIDEO_PROVIDER") or defaults.video_provider).strip().lower(),
            video_model=str(raw.get("VIDEO_MODEL") or defaults.video_model).strip(),
            video_service_url=str(raw.get("VIDEO_SERVICE_URL") or "").strip().rstrip("/"),
            render_service_url=str(raw.get("RENDER_SERVICE_URL") or "").strip().rstrip("/"),
            render_service_token=str(raw.get("RENDER_SERVICE_TOKEN") or "").strip(),
        )
