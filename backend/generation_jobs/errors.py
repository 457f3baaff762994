from typing import Any, Dict, List, Optional


class ErrorClass:
    TRANSIENT_RATE_LIMIT = "transient_rate_limit"
    SCHEMA_INVALID = "schema_invalid"
    CREDENTIAL_INVALID = "credential_invalid"
    INFRA_FAILURE = "infra_failure"
    UNKNOWN = "unknown"
    TIMEOUT = "timeout"

    ALL = (TRANSIENT_RATE_LIMIT, SCHEMA_INVALID, CREDENTIAL_INVALID, INFRA_FAILURE, UNKNOWN, TIMEOUT)
    # Recoverable inside the controller; terminal once exhausted.
    RETRYABLE = (TRANSIENT_RATE_LIMIT, SCHEMA_INVALID, CREDENTIAL_INVALID)


ERROR_CLASS_CHOICES = [(value, value.replace("_", " ").title()) for value in ErrorClass.ALL]

MAX_ERROR_MESSAGE_LENGTH = 2000


def truncate_error(message: Any, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    text = str(message or "").strip()
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


class PipelineError(RuntimeError):
    def __init__(self, code: str, message: str = "", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        self.details = details or {}


class InvalidTransition(PipelineError):
    def __init__(self, entity: str, current: str, requested: str):
        super().__init__(
            "INVALID_TRANSITION",
            f"{entity} cannot move from '{current}' to '{requested}'",
            details={"entity": entity, "current_status": current, "requested_status": requested},
        )


class ActivationError(PipelineError):
    pass


class BuildConflict(PipelineError):
    pass


class PreflightFailed(PipelineError):
    def __init__(self, result: Any):
        errors: List[Any] = list(getattr(result, "errors", []) or [])
        super().__init__(
            "PREFLIGHT_FAILED",
            f"Project is not ready to build ({len(errors)} blocking issue(s))",
            details={"errors": [err.as_dict() for err in errors]},
        )
        self.result = result


class CredentialError(RuntimeError):
    pass


class StorageError(RuntimeError):
    pass


class GenerationError(RuntimeError):
    """A classified failure from one provider call.

    ``retry_after`` is the provider's own hint in seconds, when it sent one.
    ``quota_exhausted`` marks a rate limit that waiting will not fix, so the
    controller moves straight to the next credential source.
    """

    def __init__(
        self,
        message: str,
        *,
        error_class: str = ErrorClass.UNKNOWN,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        quota_exhausted: bool = False,
        raw_text: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.error_class = error_class if error_class in ErrorClass.ALL else ErrorClass.UNKNOWN
        self.status_code = status_code
        self.retry_after = retry_after
        self.quota_exhausted = quota_exhausted
        self.raw_text = raw_text

    def as_dict(self) -> Dict[str, Any]:
        return {
            "error_class": self.error_class,
            "message": self.message,
            "status_code": self.status_code,
            "retry_after": self.retry_after,
            "quota_exhausted": self.quota_exhausted,
        }
