import logging
from typing import Any, Dict, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from .claims import claim_target, complete_target, fail_target, requeue_target
from .context import PipelineContext
from .errors import BuildConflict, ErrorClass, GenerationError, PreflightFailed, truncate_error
from .manifest import compose_manifest, manifest_hash
from .models import Project, RenderJob, Target
from .preflight import PreflightValidator
from .states import (
    ACTIVE_RENDER_STATUSES,
    RENDER_TRANSITIONS,
    TERMINAL_RENDER_STATUSES,
    TERMINAL_TARGET_STATUSES,
    RenderStatus,
    TargetKind,
    TargetStatus,
    ensure_render_transition,
)
from .sweeper import sweep
from .versions import activate, complete_attempt, fail_attempt, start_attempt

logger = logging.getLogger(__name__)

# External job state -> render job status while the job is still running.
RUNNING_STATES = {
    "queued": RenderStatus.SUBMITTED,
    "processing": RenderStatus.RENDERING,
    "rendering": RenderStatus.RENDERING,
    "uploading": RenderStatus.UPLOADING,
}


def render_summary(job: RenderJob) -> Dict[str, Any]:
    terminal = job.status in TERMINAL_RENDER_STATUSES
    error = None
    if job.status == RenderStatus.FAILED:
        error = {"code": job.error_code, "message": job.error_message}
    return {
        "render_job_id": str(job.id),
        "stage": job.status,
        "progress_percent": job.progress_percent,
        "progress_stage": job.progress_stage,
        "progress_message": job.progress_message,
        "terminal_status": job.status if terminal else None,
        "artifact_url": job.artifact_url if job.status == RenderStatus.COMPLETED else None,
        "error": error,
    }


class BuildOrchestrator:
    def __init__(self, context: PipelineContext):
        self.context = context
        self.config = context.config
        self.client = context.render_client

    def _transition(self, job: RenderJob, requested: str, **fields) -> bool:
        current = job.status
        ensure_render_transition(current, requested)
        now = timezone.now()
        if requested in TERMINAL_RENDER_STATUSES:
            fields.setdefault("completed_at", now)
        updated = RenderJob.objects.filter(id=job.id, status=current).update(status=requested, updated_at=now, **fields)
        if updated != 1:
            job.refresh_from_db()
            return False
        job.status = requested
        job.updated_at = now
        for key, value in fields.items():
            setattr(job, key, value)
        logger.info("render job %s for project %s: %s -> %s", job.id, job.project_id, current, requested)
        return True

    def _fail(self, job: RenderJob, code: str, message: str) -> None:
        message = truncate_error(message)
        if not self._transition(job, RenderStatus.FAILED, error_code=code, error_message=message):
            return
        if job.attempt_id:
            fail_attempt(job.attempt, error_class=ErrorClass.UNKNOWN, message=f"{code}: {message}")
        if job.target_id:
            fail_target(job.target, error_class=ErrorClass.UNKNOWN, message=f"{code}: {message}")

    def _complete(self, job: RenderJob, url: str, status: Dict[str, Any]) -> None:
        done = self._transition(
            job,
            RenderStatus.COMPLETED,
            artifact_url=url,
            progress_percent=100,
            progress_stage="completed",
            progress_message=str(status.get("message") or ""),
        )
        if not done:
            return
        if job.attempt_id and complete_attempt(
            job.attempt,
            artifact_ref=None,
            artifact_url=url,
            result={"manifest_hash": job.manifest_hash, "duration_ms": status.get("duration_ms")},
        ):
            with transaction.atomic():
                if complete_target(job.target):
                    activate(job.attempt)

    def _claim_build_target(self, project: Project) -> Target:
        target, _ = Target.objects.get_or_create(
            project=project,
            kind=TargetKind.PROJECT_BUILD,
            defaults={"idx": 0},
        )
        target.refresh_from_db()
        if target.status in TERMINAL_TARGET_STATUSES:
            requeue_target(target)
        if target.status != TargetStatus.PENDING or not claim_target(target):
            raise BuildConflict(
                "BUILD_IN_PROGRESS",
                "A build is already running for this project",
                details={"target_id": str(target.id), "status": target.status},
            )
        return target

    def submit(self, project: Project, requested_by: str = "") -> RenderJob:
        sweep(project=project, config=self.config)
        active = RenderJob.objects.filter(project=project, status__in=ACTIVE_RENDER_STATUSES).first()
        if active is not None:
            raise BuildConflict(
                "BUILD_IN_PROGRESS",
                "A build is already running for this project",
                details={"render_job_id": str(active.id), "status": active.status},
            )

        preflight = PreflightValidator(self.config).validate(project)
        if not preflight.ready:
            raise PreflightFailed(preflight)
        manifest = compose_manifest(project, preflight, self.config)
        digest = manifest_hash(manifest)

        with transaction.atomic():
            target = self._claim_build_target(project)
            try:
                with transaction.atomic():
                    job = RenderJob.objects.create(
                        project=project,
                        target=target,
                        requested_by=str(requested_by or "").strip(),
                        status=RenderStatus.VALIDATING,
                        manifest_json=manifest,
                        manifest_hash=digest,
                        preflight_json=preflight.as_dict(),
                    )
            except IntegrityError as exc:
                raise BuildConflict("BUILD_IN_PROGRESS", "A build is already running for this project") from exc

        attempt = start_attempt(target, provider=self.client.provider, model_name=manifest["output"]["preset"])
        job.attempt = attempt
        job.save(update_fields=["attempt", "updated_at"])
        logger.info("render job %s created for project %s (manifest %s)", job.id, project.id, digest[:12])

        try:
            external_id = self.client.start(
                {
                    "project_id": str(project.id),
                    "render_job_id": str(job.id),
                    "manifest": manifest,
                    "manifest_hash": digest,
                }
            )
        except GenerationError as exc:
            self._fail(job, "SUBMIT_FAILED", exc.message)
            return job
        self._transition(
            job,
            RenderStatus.SUBMITTED,
            external_job_id=external_id,
            submitted_at=timezone.now(),
            progress_stage="submitted",
        )
        return job

    def poll(self, job: RenderJob) -> Dict[str, Any]:
        job.refresh_from_db()
        if job.status in TERMINAL_RENDER_STATUSES or not job.external_job_id:
            return render_summary(job)
        try:
            status = self.client.status(job.external_job_id)
        except GenerationError as exc:
            logger.warning("render status poll failed for job %s: %s", job.id, exc.message)
            return render_summary(job)

        state = status.get("state")
        if state == "completed":
            url = str(status.get("artifact_url") or "").strip()
            if not url:
                self._fail(job, "URL_MISSING", "Render reported completion but returned no download URL")
            else:
                self._complete(job, url, status)
        elif state == "failed":
            self._fail(
                job,
                status.get("error_code") or "RENDER_FAILED",
                status.get("error_message") or "Render failed",
            )
        else:
            progress = {
                "progress_percent": int(status.get("progress") or 0),
                "progress_stage": str(status.get("stage") or "")[:120],
                "progress_message": str(status.get("message") or "")[:500],
            }
            mapped = RUNNING_STATES.get(state, job.status)
            if mapped != job.status and mapped in RENDER_TRANSITIONS.get(job.status, frozenset()):
                self._transition(job, mapped, **progress)
            else:
                RenderJob.objects.filter(id=job.id, status=job.status).update(updated_at=timezone.now(), **progress)
                for key, value in progress.items():
                    setattr(job, key, value)
        return render_summary(job)

    def latest(self, project: Project) -> Optional[RenderJob]:
        return RenderJob.objects.filter(project=project).order_by("-created_at").first()
