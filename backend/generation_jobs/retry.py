import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import PipelineConfig
from .credentials import CredentialResolver, ResolvedCredential
from .errors import ErrorClass, GenerationError, StorageError, truncate_error
from .models import Target

logger = logging.getLogger(__name__)

# Error classes that hand the attempt to the next credential source.
SOURCE_SWITCH_CLASSES = (ErrorClass.TRANSIENT_RATE_LIMIT, ErrorClass.CREDENTIAL_INVALID)


@dataclass
class AttemptContext:
    """What one generation kind plugs into the controller.

    ``invoke(credential, params)`` makes exactly one provider call.
    ``validate(output)`` returns the checked output or raises a
    ``schema_invalid`` GenerationError. ``repair(credential, raw_text)`` is
    the reformat-only call. ``persist(output)`` stores the artifact and
    returns ``{"artifact_ref", "artifact_url", "result"}``.
    """

    owner_ref: str
    provider: str
    invoke: Callable[[ResolvedCredential, Dict[str, Any]], Any]
    persist: Optional[Callable[[Any], Dict[str, Any]]] = None
    validate: Optional[Callable[[Any], Any]] = None
    repair: Optional[Callable[[ResolvedCredential, str], Any]] = None
    params: Dict[str, Any] = field(default_factory=dict)
    retry_params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AttemptResult:
    success: bool
    artifact: Optional[Dict[str, Any]] = None
    error: str = ""
    error_class: str = ""
    credential_source: str = ""
    tries: int = 0
    sources_tried: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "error_class": self.error_class,
            "credential_source": self.credential_source,
            "tries": self.tries,
            "sources_tried": list(self.sources_tried),
        }


@dataclass
class _CallState:
    deadline: float
    tries: int = 0
    budget_exhausted: bool = False


def _raw_text(output: Any) -> str:
    if isinstance(output, dict):
        return str(output.get("raw_text") or "")
    return ""


class FallbackController:
    """One retry policy for every generation kind.

    Rate limits back off on the same credential; quota exhaustion, exhausted
    rate-limit retries and rejected credentials move to the next source, which
    gets a single call. Schema failures get one lower-temperature retry and
    one repair pass. A storage failure after a successful call never re-invokes
    the provider. Every wait is bounded by the policy cap and the remaining
    per-invocation budget.
    """

    def __init__(
        self,
        config: PipelineConfig,
        credentials: Optional[CredentialResolver] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.credentials = credentials or CredentialResolver()
        self.sleep = sleep
        self.clock = clock

    def _call(self, fn: Callable[[], Any], state: _CallState, *, allow_retries: bool, target: Target) -> Any:
        policy = self.config.retry
        retry_index = 0
        while True:
            state.tries += 1
            try:
                return fn()
            except GenerationError as exc:
                if exc.error_class != ErrorClass.TRANSIENT_RATE_LIMIT or exc.quota_exhausted or not allow_retries:
                    raise
                if retry_index + 1 >= policy.max_tries:
                    raise
                delay = policy.delay_for(retry_index, exc.retry_after)
                remaining = state.deadline - self.clock()
                if delay > remaining:
                    logger.warning(
                        "target %s rate limited; %.1fs wait exceeds the remaining %.1fs budget",
                        target.id,
                        delay,
                        max(remaining, 0.0),
                    )
                    state.budget_exhausted = True
                    raise GenerationError(
                        f"Rate limited and the invocation budget of {policy.budget_seconds:.0f}s is exhausted",
                        error_class=ErrorClass.TRANSIENT_RATE_LIMIT,
                        status_code=exc.status_code,
                        retry_after=exc.retry_after,
                    ) from exc
                logger.info(
                    "target %s rate limited (try %s/%s); retrying in %.1fs",
                    target.id,
                    retry_index + 1,
                    policy.max_tries,
                    delay,
                )
                self.sleep(delay)
                retry_index += 1

    def _check(self, context: AttemptContext, output: Any) -> Any:
        if context.validate is None:
            return output
        return context.validate(output)

    def _produce(
        self,
        credential: ResolvedCredential,
        context: AttemptContext,
        state: _CallState,
        *,
        single_call: bool,
        target: Target,
    ) -> Any:
        allow_retries = not single_call

        def invoke_with(params: Dict[str, Any]) -> Callable[[], Any]:
            return lambda: context.invoke(credential, dict(params))

        malformed = ""
        try:
            output = self._call(invoke_with(context.params), state, allow_retries=allow_retries, target=target)
            return self._check(context, output)
        except GenerationError as exc:
            if exc.error_class != ErrorClass.SCHEMA_INVALID or single_call:
                raise
            malformed = exc.raw_text
            logger.warning("target %s produced invalid output; retrying with reduced temperature", target.id)

        try:
            output = self._call(
                invoke_with(context.retry_params or context.params),
                state,
                allow_retries=allow_retries,
                target=target,
            )
            return self._check(context, output)
        except GenerationError as exc:
            if exc.error_class != ErrorClass.SCHEMA_INVALID:
                raise
            malformed = exc.raw_text or malformed
            if context.repair is None or not malformed:
                raise

        logger.warning("target %s output still invalid; running repair pass", target.id)
        repaired = self._call(
            lambda: context.repair(credential, malformed),
            state,
            allow_retries=allow_retries,
            target=target,
        )
        try:
            return self._check(context, repaired)
        except GenerationError as exc:
            if exc.error_class != ErrorClass.SCHEMA_INVALID:
                raise
            raise GenerationError(
                f"Output still invalid after repair: {exc.message}",
                error_class=ErrorClass.SCHEMA_INVALID,
                raw_text=exc.raw_text or _raw_text(repaired),
            ) from exc

    def generate(self, target: Target, context: AttemptContext) -> AttemptResult:
        sources = self.credentials.sources(context.owner_ref, context.provider)
        if not sources:
            return AttemptResult(
                success=False,
                error=f"No credential configured for provider '{context.provider}'",
                error_class=ErrorClass.CREDENTIAL_INVALID,
            )

        state = _CallState(deadline=self.clock() + self.config.retry.budget_seconds)
        tried: List[str] = []
        last_error: Optional[GenerationError] = None
        for position, credential in enumerate(sources):
            if position and (state.budget_exhausted or self.clock() >= state.deadline):
                logger.warning("target %s invocation budget exhausted before %s credential", target.id, credential.source)
                break
            tried.append(credential.source)
            if position:
                logger.info("target %s switching to %s credential", target.id, credential.source)
            try:
                output = self._produce(credential, context, state, single_call=position > 0, target=target)
            except GenerationError as exc:
                last_error = exc
                if exc.error_class in SOURCE_SWITCH_CLASSES:
                    continue
                return AttemptResult(
                    success=False,
                    error=truncate_error(exc.message),
                    error_class=exc.error_class,
                    credential_source=credential.source,
                    tries=state.tries,
                    sources_tried=tried,
                )

            try:
                artifact = context.persist(output) if context.persist else {"result": output}
            except StorageError as exc:
                logger.error("target %s artifact persistence failed: %s", target.id, exc)
                return AttemptResult(
                    success=False,
                    error=truncate_error(f"Artifact storage failed: {exc}"),
                    error_class=ErrorClass.INFRA_FAILURE,
                    credential_source=credential.source,
                    tries=state.tries,
                    sources_tried=tried,
                )
            return AttemptResult(
                success=True,
                artifact=artifact,
                credential_source=credential.source,
                tries=state.tries,
                sources_tried=tried,
            )

        message = last_error.message if last_error else "no credential source succeeded"
        return AttemptResult(
            success=False,
            error=truncate_error(f"All credential sources exhausted: {message}"),
            error_class=last_error.error_class if last_error else ErrorClass.UNKNOWN,
            credential_source=tried[-1] if tried else "",
            tries=state.tries,
            sources_tried=tried,
        )
