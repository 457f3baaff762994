import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional

import requests

from ..errors import ErrorClass, GenerationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60

QUOTA_MARKERS = (
    "insufficient_quota",
    "exceeded your current quota",
    "quota exceeded",
    "billing",
    "credit balance",
)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _error_text(body: str) -> str:
    text = str(body or "").strip()
    try:
        data = json.loads(text) if text else {}
    except ValueError:
        return text[:500]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            parts = [str(error.get(key) or "") for key in ("code", "status", "type", "message")]
            return " ".join(part for part in parts if part)[:500]
        if isinstance(error, str):
            return error[:500]
    return text[:500]


def is_quota_exhausted(body: str) -> bool:
    lowered = str(body or "").lower()
    return any(marker in lowered for marker in QUOTA_MARKERS)


def classify_http_error(
    status_code: int,
    body: str = "",
    headers: Optional[Mapping[str, Any]] = None,
    *,
    provider: str = "provider",
) -> GenerationError:
    detail = _error_text(body)
    message = f"{provider} error ({status_code}): {detail}" if detail else f"{provider} error ({status_code})"
    headers = headers or {}
    if status_code == 429:
        return GenerationError(
            message,
            error_class=ErrorClass.TRANSIENT_RATE_LIMIT,
            status_code=status_code,
            retry_after=parse_retry_after(headers.get("Retry-After")),
            quota_exhausted=is_quota_exhausted(body),
        )
    if status_code in (401, 403):
        return GenerationError(message, error_class=ErrorClass.CREDENTIAL_INVALID, status_code=status_code)
    if status_code == 402:
        return GenerationError(
            message,
            error_class=ErrorClass.CREDENTIAL_INVALID,
            status_code=status_code,
            quota_exhausted=True,
        )
    return GenerationError(message, error_class=ErrorClass.UNKNOWN, status_code=status_code)


def raise_for_response(response: requests.Response, *, provider: str) -> None:
    if response.status_code < 400:
        return
    error = classify_http_error(response.status_code, response.text, response.headers, provider=provider)
    logger.warning("%s call failed: status=%s class=%s", provider, response.status_code, error.error_class)
    raise error


def post_json(
    url: str,
    *,
    provider: str,
    headers: Optional[Mapping[str, str]] = None,
    body: Optional[Mapping[str, Any]] = None,
    timeout: int = DEFAULT_TIMEOUT_SECONDS,
) -> Any:
    try:
        response = requests.post(url, headers=dict(headers or {}), json=dict(body or {}), timeout=timeout)
    except requests.RequestException as exc:
        raise GenerationError(f"{provider} request failed: {exc}", error_class=ErrorClass.UNKNOWN) from exc
    raise_for_response(response, provider=provider)
    try:
        return response.json()
    except ValueError as exc:
        raise GenerationError(
            f"{provider} returned a non-JSON response",
            error_class=ErrorClass.UNKNOWN,
            status_code=response.status_code,
            raw_text=response.text[:2000],
        ) from exc


def get_json(
    url: str,
    *,
    provider: str,
    headers: Optional[Mapping[str, str]] = None,
    timeout: int = DEFAULT_TIMEOUT_SECONDS,
) -> Any:
    try:
        response = requests.get(url, headers=dict(headers or {}), timeout=timeout)
    except requests.RequestException as exc:
        raise GenerationError(f"{provider} request failed: {exc}", error_class=ErrorClass.UNKNOWN) from exc
    raise_for_response(response, provider=provider)
    try:
        return response.json()
    except ValueError as exc:
        raise GenerationError(
            f"{provider} returned a non-JSON response",
            error_class=ErrorClass.UNKNOWN,
            status_code=response.status_code,
        ) from exc
