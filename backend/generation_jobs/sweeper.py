import logging
from datetime import datetime, timedelta
from typing import Optional

from django.db.models import Exists, OuterRef
from django.utils import timezone

from .claims import advance_stage_if_settled, expire_target, fail_target
from .config import PipelineConfig
from .errors import ErrorClass
from .models import Attempt, JobLock, Project, RenderJob, Target
from .states import ACTIVE_RENDER_STATUSES, AttemptStatus, RenderStatus, TargetKind, TargetStatus
from .versions import fail_attempt

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "generation timed out"
RENDER_TIMEOUT_CODE = "TIMEOUT_STUCK"
SWEEP_LOCK_KEY = "sweep_stuck_jobs"


def _expire_attempts(queryset, now: datetime, message: str) -> int:
    return queryset.filter(status=AttemptStatus.GENERATING).update(
        status=AttemptStatus.FAILED,
        error_class=ErrorClass.TIMEOUT,
        error_message=message,
        updated_at=now,
    )


def _sweep_render_jobs(project: Optional[Project], cutoff: datetime, now: datetime, minutes: int) -> int:
    jobs = RenderJob.objects.filter(status__in=ACTIVE_RENDER_STATUSES, updated_at__lt=cutoff)
    if project is not None:
        jobs = jobs.filter(project=project)
    count = 0
    for job in jobs.select_related("target", "attempt"):
        message = f"Render stuck in '{job.status}' for more than {minutes} minutes"
        updated = RenderJob.objects.filter(
            id=job.id, status__in=ACTIVE_RENDER_STATUSES, updated_at__lt=cutoff
        ).update(
            status=RenderStatus.FAILED,
            error_code=RENDER_TIMEOUT_CODE,
            error_message=message,
            completed_at=now,
            updated_at=now,
        )
        if not updated:
            continue
        count += 1
        if job.attempt is not None:
            fail_attempt(job.attempt, error_class=ErrorClass.TIMEOUT, message=message)
        if job.target is not None:
            fail_target(job.target, error_class=ErrorClass.TIMEOUT, message=message)
        logger.warning("render job %s for project %s timed out in %s", job.id, job.project_id, job.status)
    return count


def sweep(
    project: Optional[Project] = None,
    threshold_minutes: Optional[int] = None,
    config: Optional[PipelineConfig] = None,
    *,
    render_threshold_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Fail work that has sat in progress past its threshold; return how many rows were failed.

    Generation targets use the target threshold. Build targets, render jobs
    and targets waiting on an external job use the render threshold, since
    reconciliation polls those rather than the generation path. Every write is conditional on the row still
    being stale, so a second run over the same data changes nothing.
    """
    config = config or PipelineConfig.from_settings()
    now = now or timezone.now()
    minutes = int(threshold_minutes if threshold_minutes is not None else config.stuck_target_minutes)
    render_minutes = int(
        render_threshold_minutes if render_threshold_minutes is not None else config.stuck_render_minutes
    )
    cutoff = now - timedelta(minutes=minutes)
    render_cutoff = now - timedelta(minutes=render_minutes)
    count = 0

    external_jobs = Attempt.objects.filter(target=OuterRef("pk"), status=AttemptStatus.GENERATING).exclude(
        external_job_id=""
    )
    stale = (
        Target.objects.filter(status=TargetStatus.IN_PROGRESS, updated_at__lt=cutoff)
        .exclude(kind=TargetKind.PROJECT_BUILD)
        .annotate(waiting_on_job=Exists(external_jobs))
    )
    if project is not None:
        stale = stale.filter(project=project)
    for target in stale:
        target_cutoff = render_cutoff if target.waiting_on_job else cutoff
        if target.updated_at >= target_cutoff:
            continue
        if expire_target(target, cutoff=target_cutoff, message=TIMEOUT_MESSAGE):
            count += 1
            _expire_attempts(Attempt.objects.filter(target=target), now, TIMEOUT_MESSAGE)
            logger.warning("target %s (%s) timed out for project %s", target.id, target.kind, target.project_id)

    orphans = Attempt.objects.filter(status=AttemptStatus.GENERATING, updated_at__lt=cutoff).exclude(
        target__status=TargetStatus.IN_PROGRESS
    )
    if project is not None:
        orphans = orphans.filter(target__project=project)
    count += _expire_attempts(orphans, now, TIMEOUT_MESSAGE)

    count += _sweep_render_jobs(project, render_cutoff, now, render_minutes)

    builds = Target.objects.filter(
        kind=TargetKind.PROJECT_BUILD, status=TargetStatus.IN_PROGRESS, updated_at__lt=render_cutoff
    ).exclude(render_jobs__status__in=ACTIVE_RENDER_STATUSES)
    if project is not None:
        builds = builds.filter(project=project)
    for target in builds.distinct():
        if expire_target(target, cutoff=render_cutoff, message=TIMEOUT_MESSAGE):
            count += 1
            _expire_attempts(Attempt.objects.filter(target=target), now, TIMEOUT_MESSAGE)

    if count:
        logger.info("sweep failed %s stuck row(s)%s", count, f" for project {project.id}" if project else "")
        if project is not None:
            advance_stage_if_settled(project)
    return count


def acquire_lock(key: str, holder: str, ttl_seconds: int = 300) -> bool:
    now = timezone.now()
    JobLock.objects.get_or_create(key=key, defaults={"holder": "", "locked_until": now - timedelta(seconds=1)})
    updated = JobLock.objects.filter(key=key, locked_until__lt=now).update(
        holder=holder,
        locked_until=now + timedelta(seconds=ttl_seconds),
        updated_at=now,
    )
    return updated == 1


def release_lock(key: str, holder: str) -> None:
    now = timezone.now()
    JobLock.objects.filter(key=key, holder=holder).update(
        holder="", locked_until=now - timedelta(seconds=1), updated_at=now
    )
