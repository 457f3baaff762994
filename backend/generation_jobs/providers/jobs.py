import logging
from typing import Any, Dict, Optional

from ..credentials import ResolvedCredential
from ..errors import ErrorClass, GenerationError
from .base import get_json, post_json

logger = logging.getLogger(__name__)

STATE_ALIASES = {
    "accepted": "queued",
    "queued": "queued",
    "pending": "queued",
    "submitted": "queued",
    "processing": "processing",
    "running": "processing",
    "rendering": "rendering",
    "uploading": "uploading",
    "completed": "completed",
    "succeeded": "completed",
    "done": "completed",
    "failed": "failed",
    "error": "failed",
}


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def normalize_status(data: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten the job-service status payloads into one shape.

    Returns ``state`` (queued/processing/rendering/uploading/completed/failed),
    ``progress`` (0-100), ``stage``, ``message``, ``artifact_url``,
    ``error_code``, ``error_message`` and ``duration_ms``.
    """
    job = data.get("job") if isinstance(data.get("job"), dict) else data
    raw_state = str(job.get("status") or job.get("state") or "").strip().lower()
    state = STATE_ALIASES.get(raw_state, "processing" if raw_state else "queued")
    progress = job.get("progress") if isinstance(job.get("progress"), dict) else {}
    output = job.get("output") if isinstance(job.get("output"), dict) else {}
    error = job.get("error") if isinstance(job.get("error"), dict) else {}
    try:
        percent = int(_first(progress, "percent") or _first(job, "progress_percent") or 0)
    except (TypeError, ValueError):
        percent = 0
    if state == "completed":
        percent = 100
    duration = _first(output, "duration_ms") or _first(job, "duration_ms")
    return {
        "state": state,
        "progress": max(0, min(percent, 100)),
        "stage": str(_first(progress, "stage") or _first(job, "progress_stage") or ""),
        "message": str(_first(progress, "message") or ""),
        "artifact_url": _first(output, "url", "presigned_url")
        or _first(job, "presigned_url", "artifact_url", "download_url"),
        "error_code": str(_first(error, "code") or _first(job, "error_code") or ""),
        "error_message": str(_first(error, "message") or _first(job, "error_message") or ""),
        "duration_ms": int(duration) if isinstance(duration, (int, float)) else None,
    }


class AsyncJobClient:
    def __init__(self, base_url: str, *, token: str = "", provider: str = "job-service", timeout: int = 30):
        self.base_url = str(base_url or "").rstrip("/")
        self.token = str(token or "").strip()
        self.provider = provider
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _require_base_url(self) -> None:
        if not self.base_url:
            raise GenerationError(f"{self.provider} endpoint is not configured", error_class=ErrorClass.UNKNOWN)

    def start(self, payload: Dict[str, Any], *, credential: Optional[ResolvedCredential] = None) -> str:
        self._require_base_url()
        body = dict(payload)
        if credential is not None:
            body["api_key"] = credential.api_key
        data = post_json(
            f"{self.base_url}/start",
            provider=self.provider,
            headers=self._headers(),
            body=body,
            timeout=self.timeout,
        )
        data = data if isinstance(data, dict) else {}
        job_id = str(_first(data, "job_id", "render_id", "build_id", "id") or "").strip()
        if not job_id:
            message = ""
            if isinstance(data.get("error"), dict):
                message = str(data["error"].get("message") or "")
            raise GenerationError(
                message or f"{self.provider} did not return a job id",
                error_class=ErrorClass.UNKNOWN,
            )
        logger.info("%s job started: %s", self.provider, job_id)
        return job_id

    def status(self, job_id: str) -> Dict[str, Any]:
        self._require_base_url()
        data = get_json(f"{self.base_url}/status/{job_id}", provider=self.provider, headers=self._headers(), timeout=self.timeout)
        return normalize_status(data if isinstance(data, dict) else {})
