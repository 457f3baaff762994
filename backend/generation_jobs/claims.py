import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from django.db.models import Count
from django.utils import timezone

from .errors import ErrorClass, InvalidTransition, PipelineError, truncate_error
from .models import Project, Target
from .states import (
    KIND_ENTRY_STAGE,
    OPEN_TARGET_STATUSES,
    STAGE_ADVANCE,
    STAGE_KINDS,
    TERMINAL_TARGET_STATUSES,
    ProjectStatus,
    TargetKind,
    TargetStatus,
    ensure_target_transition,
)

logger = logging.getLogger(__name__)

KIND_ALLOWED_STAGES: Dict[str, frozenset] = {
    TargetKind.CHUNK_SCRIPT: frozenset({ProjectStatus.PARSED, ProjectStatus.FORMATTING}),
    TargetKind.SCENE_IMAGE: frozenset(
        {ProjectStatus.FORMATTED, ProjectStatus.GENERATING_ASSETS, ProjectStatus.COMPLETED}
    ),
    TargetKind.SCENE_VIDEO: frozenset(
        {ProjectStatus.FORMATTED, ProjectStatus.GENERATING_ASSETS, ProjectStatus.COMPLETED}
    ),
}

CLAIM_ROUNDS = 2


def _transition(
    target: Target,
    *,
    expected: str,
    requested: str,
    extra_filter: Optional[Dict[str, object]] = None,
    **fields,
) -> bool:
    ensure_target_transition(expected, requested)
    now = timezone.now()
    updated = (
        Target.objects.filter(id=target.id, status=expected, **(extra_filter or {}))
        .update(status=requested, updated_at=now, **fields)
    )
    if updated != 1:
        return False
    target.status = requested
    target.updated_at = now
    for key, value in fields.items():
        setattr(target, key, value)
    return True


def status_counts(project: Project, kinds: Iterable[str]) -> Dict[str, int]:
    counts = {value: 0 for value in TargetStatus.values}
    rows = (
        Target.objects.filter(project=project, kind__in=list(kinds))
        .values("status")
        .annotate(total=Count("id"))
    )
    for row in rows:
        counts[row["status"]] = int(row["total"])
    counts["total"] = sum(counts[value] for value in TargetStatus.values)
    return counts


def enter_stage_for_kind(project: Project, kind: str) -> str:
    project.refresh_from_db(fields=["status"])
    allowed = KIND_ALLOWED_STAGES.get(kind)
    if allowed is None:
        raise PipelineError("UNSUPPORTED_KIND", f"Targets of kind '{kind}' are not batch processed")
    if project.status not in allowed:
        raise PipelineError(
            "INVALID_STATUS",
            f"Cannot process {kind} targets for project with status: {project.status}",
            details={"current_status": project.status, "allowed_statuses": sorted(allowed)},
        )
    entry = KIND_ENTRY_STAGE.get(kind)
    if entry and project.status == entry:
        working = STAGE_ADVANCE[entry]
        moved = Project.objects.filter(id=project.id, status=entry).update(status=working, updated_at=timezone.now())
        if moved:
            logger.info("project %s entered stage %s", project.id, working)
        project.refresh_from_db(fields=["status"])
    return project.status


def advance_stage_if_settled(project: Project) -> Optional[str]:
    """Move the project one stage forward once its current stage has settled.

    Settled means no target of the stage's kinds is pending or in progress and
    at least one of them completed. The conditional update makes concurrent
    callers advance the project at most once.
    """
    project.refresh_from_db(fields=["status"])
    current = project.status
    kinds = STAGE_KINDS.get(current)
    if not kinds:
        return None
    counts = status_counts(project, kinds)
    if counts[TargetStatus.PENDING] or counts[TargetStatus.IN_PROGRESS]:
        return None
    if not counts[TargetStatus.COMPLETED]:
        return None
    next_stage = STAGE_ADVANCE[current]
    moved = Project.objects.filter(id=project.id, status=current).update(status=next_stage, updated_at=timezone.now())
    if not moved:
        project.refresh_from_db(fields=["status"])
        return None
    project.status = next_stage
    logger.info(
        "project %s advanced %s -> %s (completed=%s failed=%s cancelled=%s)",
        project.id,
        current,
        next_stage,
        counts[TargetStatus.COMPLETED],
        counts[TargetStatus.FAILED],
        counts[TargetStatus.CANCELLED],
    )
    return next_stage


def claim_batch(project: Project, kind: str, limit: int) -> List[Target]:
    limit = max(int(limit or 0), 0)
    claimed: List[Target] = []
    if limit:
        for _ in range(CLAIM_ROUNDS):
            wanted = limit - len(claimed)
            candidate_ids = list(
                Target.objects.filter(project=project, kind=kind, status=TargetStatus.PENDING)
                .order_by("idx", "created_at")
                .values_list("id", flat=True)[:wanted]
            )
            if not candidate_ids:
                break
            token = uuid.uuid4()
            # The affected rows are the claim; another caller may have taken some candidates.
            count = Target.objects.filter(id__in=candidate_ids, status=TargetStatus.PENDING).update(
                status=TargetStatus.IN_PROGRESS,
                claim_token=token,
                error_class="",
                error_message="",
                updated_at=timezone.now(),
            )
            if count:
                claimed.extend(
                    Target.objects.filter(claim_token=token, status=TargetStatus.IN_PROGRESS).order_by(
                        "idx", "created_at"
                    )
                )
            if len(claimed) >= limit or count == len(candidate_ids):
                break
    if claimed:
        logger.info("claimed %s %s target(s) for project %s", len(claimed), kind, project.id)
    else:
        advance_stage_if_settled(project)
    return claimed


def claim_target(target: Target) -> bool:
    return _transition(
        target,
        expected=TargetStatus.PENDING,
        requested=TargetStatus.IN_PROGRESS,
        claim_token=uuid.uuid4(),
        error_class="",
        error_message="",
    )


def complete_target(target: Target) -> bool:
    done = _transition(
        target,
        expected=TargetStatus.IN_PROGRESS,
        requested=TargetStatus.COMPLETED,
        error_class="",
        error_message="",
    )
    if not done:
        logger.warning("target %s was no longer in progress when completing", target.id)
    return done


def fail_target(target: Target, *, error_class: str, message: str) -> bool:
    error_class = error_class if error_class in ErrorClass.ALL else ErrorClass.UNKNOWN
    failed = _transition(
        target,
        expected=TargetStatus.IN_PROGRESS,
        requested=TargetStatus.FAILED,
        error_class=error_class,
        error_message=truncate_error(message),
    )
    if failed:
        logger.warning("target %s failed (%s): %s", target.id, error_class, truncate_error(message, 300))
    return failed


def expire_target(target: Target, *, cutoff: datetime, message: str) -> bool:
    return _transition(
        target,
        expected=TargetStatus.IN_PROGRESS,
        requested=TargetStatus.FAILED,
        extra_filter={"updated_at__lt": cutoff},
        error_class=ErrorClass.TIMEOUT,
        error_message=truncate_error(message),
    )


def cancel_target(target: Target) -> bool:
    target.refresh_from_db(fields=["status"])
    if target.status != TargetStatus.PENDING:
        raise InvalidTransition("target", target.status, TargetStatus.CANCELLED)
    return _transition(target, expected=TargetStatus.PENDING, requested=TargetStatus.CANCELLED)


def requeue_target(target: Target) -> bool:
    target.refresh_from_db(fields=["status"])
    if target.status in OPEN_TARGET_STATUSES:
        raise InvalidTransition("target", target.status, TargetStatus.PENDING)
    if target.status not in TERMINAL_TARGET_STATUSES:
        raise InvalidTransition("target", target.status, TargetStatus.PENDING)
    requeued = _transition(
        target,
        expected=target.status,
        requested=TargetStatus.PENDING,
        claim_token=None,
        error_class="",
        error_message="",
    )
    if requeued:
        logger.info("target %s requeued", target.id)
    return requeued


def touch_target(target: Target) -> bool:
    now = timezone.now()
    touched = Target.objects.filter(id=target.id, status=TargetStatus.IN_PROGRESS).update(updated_at=now)
    if touched:
        target.updated_at = now
    return bool(touched)
