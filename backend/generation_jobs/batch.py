import logging
from typing import Dict, Optional

from django.db import transaction
from django.utils import timezone

from .claims import (
    advance_stage_if_settled,
    claim_batch,
    complete_target,
    enter_stage_for_kind,
    fail_target,
    touch_target,
)
from .context import PipelineContext
from .errors import ErrorClass, GenerationError, PipelineError, StorageError, truncate_error
from .handlers import GenerationHandler, build_handlers
from .models import Attempt, Project, Target
from .states import OPEN_TARGET_STATUSES, AttemptStatus, TargetKind, TargetStatus
from .sweeper import sweep
from .versions import activate, complete_attempt, fail_attempt, record_external_job, start_attempt

logger = logging.getLogger(__name__)


class BatchProcessor:
    def __init__(self, context: PipelineContext, handlers: Optional[Dict[str, GenerationHandler]] = None):
        self.context = context
        self.config = context.config
        self.handlers = handlers or build_handlers(context)
        self.controller = context.controller()

    def _handler(self, kind: str) -> GenerationHandler:
        handler = self.handlers.get(kind)
        if handler is None:
            raise PipelineError("UNSUPPORTED_KIND", f"Targets of kind '{kind}' are not batch processed")
        return handler

    def process_batch(self, project: Project, kind: str) -> Dict[str, int]:
        handler = self._handler(kind)
        # Finished external jobs are settled before the sweep can age them out.
        if handler.asynchronous:
            self.reconcile(project, kind)
        sweep(project=project, config=self.config)
        enter_stage_for_kind(project, kind)

        claimed = claim_batch(project, kind, self.config.batch_size(kind))
        processed = failed = 0
        for target in claimed:
            try:
                ok = self._process_target(target, handler)
            except Exception as exc:
                logger.exception("target %s (%s) crashed during processing", target.id, kind)
                ok = self._abandon(target, f"Unexpected error while processing: {exc}")
            if ok:
                processed += 1
            else:
                failed += 1
        if claimed:
            advance_stage_if_settled(project)

        remaining = Target.objects.filter(project=project, kind=kind, status__in=OPEN_TARGET_STATUSES).count()
        logger.info(
            "batch %s for project %s: processed=%s failed=%s remaining=%s",
            kind,
            project.id,
            processed,
            failed,
            remaining,
        )
        return {"processed": processed, "failed": failed, "remaining": remaining}

    def _fail(
        self,
        target: Target,
        attempt: Attempt,
        *,
        error_class: str,
        message: str,
        tries: int = 0,
        credential_source: str = "",
    ) -> bool:
        fail_attempt(attempt, error_class=error_class, message=message, tries=tries, credential_source=credential_source)
        fail_target(target, error_class=error_class, message=message)
        Project.objects.filter(id=target.project_id).update(
            last_error=truncate_error(message), updated_at=timezone.now()
        )
        return False

    def _abandon(self, target: Target, message: str) -> bool:
        target.refresh_from_db()
        for attempt in Attempt.objects.filter(target=target, status=AttemptStatus.GENERATING):
            fail_attempt(attempt, error_class=ErrorClass.INFRA_FAILURE, message=message)
        fail_target(target, error_class=ErrorClass.INFRA_FAILURE, message=message)
        Project.objects.filter(id=target.project_id).update(
            last_error=truncate_error(message), updated_at=timezone.now()
        )
        return False

    def _settle_success(
        self,
        target: Target,
        attempt: Attempt,
        handler: GenerationHandler,
        artifact: Dict,
        *,
        credential_source: str = "",
        tries: int = 0,
        result: Optional[Dict] = None,
    ) -> bool:
        try:
            with transaction.atomic():
                if not complete_attempt(
                    attempt,
                    artifact_ref=artifact.get("artifact_ref"),
                    artifact_url=artifact.get("artifact_url"),
                    credential_source=credential_source,
                    tries=tries,
                    result=result or {},
                ):
                    raise PipelineError("ATTEMPT_NOT_GENERATING", "Attempt was no longer generating when it finished")
                if not complete_target(target):
                    raise PipelineError("TARGET_NOT_IN_PROGRESS", "Target was no longer in progress when it finished")
                activate(attempt)
                handler.on_success(target, attempt, artifact)
        except PipelineError as exc:
            logger.error("target %s could not be settled: %s", target.id, exc.message)
            return self._abandon(target, exc.message)
        return True

    def _process_target(self, target: Target, handler: GenerationHandler) -> bool:
        attempt = start_attempt(target, provider=handler.provider, model_name=handler.model_name)
        try:
            attempt_context = handler.build_context(target, attempt)
        except GenerationError as exc:
            return self._fail(target, attempt, error_class=exc.error_class, message=exc.message)
        except StorageError as exc:
            return self._fail(target, attempt, error_class=ErrorClass.INFRA_FAILURE, message=str(exc))

        result = self.controller.generate(target, attempt_context)
        if not result.success:
            return self._fail(
                target,
                attempt,
                error_class=result.error_class,
                message=result.error,
                tries=result.tries,
                credential_source=result.credential_source,
            )

        artifact = result.artifact or {}
        if handler.asynchronous:
            record_external_job(
                attempt,
                str(artifact.get("external_job_id") or ""),
                credential_source=result.credential_source,
                tries=result.tries,
            )
            return True

        return self._settle_success(
            target,
            attempt,
            handler,
            artifact,
            credential_source=result.credential_source,
            tries=result.tries,
            result=artifact.get("result") or {},
        )

    def reconcile(self, project: Project, kind: str = TargetKind.SCENE_VIDEO) -> Dict[str, int]:
        handler = self._handler(kind)
        client = self.context.video_client
        counts = {"completed": 0, "failed": 0, "running": 0}
        in_flight = (
            Attempt.objects.filter(
                target__project=project,
                target__kind=kind,
                target__status=TargetStatus.IN_PROGRESS,
                status=AttemptStatus.GENERATING,
            )
            .exclude(external_job_id="")
            .select_related("target", "target__project", "target__scene")
        )
        for attempt in in_flight:
            target = attempt.target
            try:
                status = client.status(attempt.external_job_id)
            except GenerationError as exc:
                logger.warning("status poll failed for job %s: %s", attempt.external_job_id, exc.message)
                counts["running"] += 1
                continue

            state = status.get("state")
            if state == "completed":
                url = str(status.get("artifact_url") or "").strip()
                if not url:
                    self._fail(
                        target,
                        attempt,
                        error_class=ErrorClass.UNKNOWN,
                        message="Video job reported completion without a video URL",
                        tries=attempt.tries,
                    )
                    counts["failed"] += 1
                    continue
                settled = self._settle_success(
                    target,
                    attempt,
                    handler,
                    {"artifact_ref": None, "artifact_url": url},
                    credential_source=attempt.credential_source,
                    tries=attempt.tries,
                    result={"job_id": attempt.external_job_id, "duration_ms": status.get("duration_ms")},
                )
                counts["completed" if settled else "failed"] += 1
            elif state == "failed":
                message = status.get("error_message") or status.get("error_code") or "Video generation failed"
                self._fail(target, attempt, error_class=ErrorClass.UNKNOWN, message=message, tries=attempt.tries)
                counts["failed"] += 1
            else:
                touch_target(target)
                Attempt.objects.filter(id=attempt.id, status=AttemptStatus.GENERATING).update(updated_at=timezone.now())
                counts["running"] += 1

        if counts["completed"] or counts["failed"]:
            advance_stage_if_settled(project)
        return counts

    def reconcile_videos(self, project: Project) -> Dict[str, int]:
        return self.reconcile(project, TargetKind.SCENE_VIDEO)
