import logging
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from .errors import ActivationError, ErrorClass, StorageError, truncate_error
from .models import Attempt, Target
from .states import AttemptStatus, ensure_attempt_transition

logger = logging.getLogger(__name__)


def start_attempt(
    target: Target,
    *,
    provider: str,
    model_name: str = "",
    credential_source: str = "",
) -> Attempt:
    with transaction.atomic():
        # Serializes attempt numbering for the target.
        Target.objects.select_for_update().filter(id=target.id).first()
        attempt = Attempt(
            target=target,
            provider=provider or "unknown",
            model_name=model_name or "",
            credential_source=credential_source or "",
            status=AttemptStatus.GENERATING,
        )
        attempt.save()
    logger.info("attempt %s #%s started for target %s", attempt.id, attempt.attempt_number, target.id)
    return attempt


def _finish(attempt: Attempt, requested: str, **fields) -> bool:
    ensure_attempt_transition(AttemptStatus.GENERATING, requested)
    now = timezone.now()
    updated = Attempt.objects.filter(id=attempt.id, status=AttemptStatus.GENERATING).update(
        status=requested, updated_at=now, **fields
    )
    if updated != 1:
        attempt.refresh_from_db()
        return False
    attempt.status = requested
    attempt.updated_at = now
    for key, value in fields.items():
        setattr(attempt, key, value)
    return True


def complete_attempt(
    attempt: Attempt,
    *,
    artifact_ref: Optional[str],
    artifact_url: Optional[str],
    credential_source: str = "",
    tries: int = 0,
    result: Optional[Dict[str, Any]] = None,
) -> bool:
    fields: Dict[str, Any] = {
        "artifact_ref": artifact_ref,
        "artifact_url": artifact_url,
        "tries": tries,
        "result_json": result or {},
        "error_class": "",
        "error_message": "",
    }
    if credential_source:
        fields["credential_source"] = credential_source
    done = _finish(attempt, AttemptStatus.COMPLETED, **fields)
    if not done:
        logger.warning("attempt %s was no longer generating when completing", attempt.id)
    return done


def fail_attempt(
    attempt: Attempt,
    *,
    error_class: str,
    message: str,
    tries: int = 0,
    credential_source: str = "",
) -> bool:
    fields: Dict[str, Any] = {
        "error_class": error_class if error_class in ErrorClass.ALL else ErrorClass.UNKNOWN,
        "error_message": truncate_error(message),
        "tries": tries,
    }
    if credential_source:
        fields["credential_source"] = credential_source
    return _finish(attempt, AttemptStatus.FAILED, **fields)


def record_external_job(attempt: Attempt, external_job_id: str, *, credential_source: str = "", tries: int = 0) -> None:
    fields: Dict[str, Any] = {"external_job_id": external_job_id, "tries": tries, "updated_at": timezone.now()}
    if credential_source:
        fields["credential_source"] = credential_source
    Attempt.objects.filter(id=attempt.id, status=AttemptStatus.GENERATING).update(**fields)
    for key, value in fields.items():
        setattr(attempt, key, value)


def activate(attempt: Attempt) -> Attempt:
    """Make ``attempt`` the single active version of its target.

    Deactivation of the previous version and activation of this one happen in
    one transaction under a row lock on the target, so readers never see zero
    or two active attempts.
    """
    with transaction.atomic():
        target = Target.objects.select_for_update().get(id=attempt.target_id)
        fresh = Attempt.objects.select_for_update().get(id=attempt.id)
        if fresh.status != AttemptStatus.COMPLETED:
            raise ActivationError(
                "ATTEMPT_NOT_COMPLETED",
                f"Only completed attempts can be activated (status: {fresh.status})",
                details={"attempt_id": str(fresh.id), "status": fresh.status},
            )
        if not (fresh.artifact_ref or fresh.artifact_url):
            raise ActivationError(
                "ARTIFACT_MISSING",
                "Attempt has no artifact to activate",
                details={"attempt_id": str(fresh.id)},
            )
        if not fresh.is_active:
            now = timezone.now()
            Attempt.objects.filter(target_id=target.id, is_active=True).exclude(id=fresh.id).update(
                is_active=False, updated_at=now
            )
            Attempt.objects.filter(id=fresh.id).update(is_active=True, updated_at=now)
            fresh.is_active = True
            fresh.updated_at = now
    attempt.is_active = True
    logger.info("attempt %s #%s activated for target %s", fresh.id, fresh.attempt_number, target.id)
    return fresh


def active_attempt(target: Target) -> Optional[Attempt]:
    return Attempt.objects.filter(target=target, is_active=True).first()


def list_attempts(target: Target) -> List[Attempt]:
    return list(Attempt.objects.filter(target=target).order_by("-attempt_number"))


def remove_attempt(attempt: Attempt, *, blob_store=None) -> None:
    attempt.refresh_from_db()
    if attempt.is_active:
        raise ActivationError(
            "ATTEMPT_ACTIVE",
            "The active attempt cannot be removed; activate another attempt first",
            details={"attempt_id": str(attempt.id)},
        )
    if attempt.status == AttemptStatus.GENERATING:
        raise ActivationError(
            "ATTEMPT_IN_PROGRESS",
            "An attempt that is still generating cannot be removed",
            details={"attempt_id": str(attempt.id)},
        )
    if blob_store is not None and attempt.artifact_ref:
        try:
            blob_store.delete(attempt.artifact_ref)
        except StorageError as exc:
            logger.warning("blob delete failed for attempt %s: %s", attempt.id, exc)
    attempt_id = attempt.id
    attempt.delete()
    logger.info("attempt %s removed", attempt_id)
