import base64
import binascii
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..credentials import ResolvedCredential
from ..errors import ErrorClass, GenerationError
from .base import post_json

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
MAX_REFERENCE_IMAGES = 5


class ImageClient:
    provider = "google"

    def __init__(
        self,
        model_name: str,
        *,
        base_url: str = GEMINI_BASE_URL,
        aspect_ratio: str = "16:9",
        image_size: str = "2K",
        timeout: int = 120,
    ):
        self.model_name = model_name
        self.base_url = base_url.rstrip("/")
        self.aspect_ratio = aspect_ratio
        self.image_size = image_size
        self.timeout = timeout

    def _parts(self, prompt: str, reference_images: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = []
        limited = list(reference_images or [])[:MAX_REFERENCE_IMAGES]
        for ref in limited:
            parts.append(
                {
                    "inline_data": {
                        "data": str(ref.get("base64_data") or ""),
                        "mime_type": str(ref.get("mime_type") or "image/png"),
                    }
                }
            )
        if limited:
            names = ", ".join(str(ref.get("name") or "") for ref in limited if ref.get("name"))
            lead = "Using the provided reference images for character consistency"
            if names:
                lead = f"{lead} ({names})"
            prompt = f"{lead}, generate: {prompt}"
        parts.append({"text": prompt})
        return parts

    def submit(
        self,
        prompt: str,
        reference_images: Optional[Sequence[Dict[str, Any]]] = None,
        *,
        credential: ResolvedCredential,
    ) -> bytes:
        body = {
            "contents": [{"parts": self._parts(prompt, reference_images or [])}],
            "generationConfig": {
                "responseModalities": ["Image"],
                "imageConfig": {"aspectRatio": self.aspect_ratio, "imageSize": self.image_size},
            },
        }
        data = post_json(
            f"{self.base_url}/{self.model_name}:generateContent",
            provider=self.provider,
            headers={"x-goog-api-key": credential.api_key, "Content-Type": "application/json"},
            body=body,
            timeout=self.timeout,
        )
        candidates = data.get("candidates") if isinstance(data, dict) and isinstance(data.get("candidates"), list) else []
        if not candidates:
            raise GenerationError("No candidates in image response", error_class=ErrorClass.UNKNOWN)
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else {}
        parts = content.get("parts") if isinstance(content, dict) and isinstance(content.get("parts"), list) else []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data") if isinstance(part, dict) else None
            if isinstance(inline, dict) and inline.get("data"):
                try:
                    image = base64.b64decode(inline["data"])
                except (binascii.Error, ValueError) as exc:
                    raise GenerationError("Image payload is not valid base64", error_class=ErrorClass.UNKNOWN) from exc
                logger.info("image generated model=%s bytes=%s", self.model_name, len(image))
                return image
        raise GenerationError("No inline image data in response parts", error_class=ErrorClass.UNKNOWN)
