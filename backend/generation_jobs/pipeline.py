from typing import Any, Dict, List, Optional

from django.db.models import Count

from .batch import BatchProcessor
from .builds import BuildOrchestrator, render_summary
from .claims import cancel_target, requeue_target
from .context import PipelineContext
from .handlers import request_scene_video
from .models import Attempt, Project, RenderJob, Scene, Target
from .parsing import create_project, parse_project
from .preflight import PreflightResult, PreflightValidator
from .states import TargetKind, TargetStatus
from .sweeper import sweep
from .versions import activate, list_attempts, remove_attempt


def project_status(project: Project, config=None, batches: Optional[BatchProcessor] = None) -> Dict[str, Any]:
    if batches is not None:
        batches.reconcile_videos(project)
    swept = sweep(project=project, config=config)
    project.refresh_from_db()
    kinds: Dict[str, Dict[str, int]] = {
        kind: {status: 0 for status in TargetStatus.values} for kind in TargetKind.values
    }
    rows = Target.objects.filter(project=project).values("kind", "status").annotate(total=Count("id"))
    for row in rows:
        kinds[row["kind"]][row["status"]] = int(row["total"])
    for counts in kinds.values():
        counts["total"] = sum(counts[status] for status in TargetStatus.values)
    ready_count = (
        Attempt.objects.filter(target__project=project, target__kind=TargetKind.SCENE_IMAGE, is_active=True)
        .values("target__scene_id")
        .distinct()
        .count()
    )
    latest_build = RenderJob.objects.filter(project=project).order_by("-created_at").first()
    return {
        "project_id": str(project.id),
        "status": project.status,
        "last_error": project.last_error,
        "swept": swept,
        "targets": kinds,
        "scene_count": Scene.objects.filter(project=project, is_hidden=False).count(),
        "ready_count": ready_count,
        "build": render_summary(latest_build) if latest_build else None,
    }


class GenerationPipeline:
    def __init__(self, context: Optional[PipelineContext] = None):
        self.context = context or PipelineContext.from_settings()
        self.batches = BatchProcessor(self.context)
        self.builds = BuildOrchestrator(self.context)

    def create_project(self, title: str, source_text: str, **kwargs: Any) -> Project:
        return create_project(title, source_text, **kwargs)

    def parse(self, project: Project) -> List[Target]:
        return parse_project(project, self.context.config)

    def process_batch(self, project: Project, kind: str) -> Dict[str, int]:
        return self.batches.process_batch(project, kind)

    def reconcile_videos(self, project: Project) -> Dict[str, int]:
        return self.batches.reconcile_videos(project)

    def request_scene_video(self, scene: Scene, *, prompt: str = "", duration_sec: int = 5) -> Target:
        return request_scene_video(scene, prompt=prompt, duration_sec=duration_sec)

    def status(self, project: Project) -> Dict[str, Any]:
        return project_status(project, self.context.config, self.batches)

    def preflight(self, project: Project) -> PreflightResult:
        return PreflightValidator(self.context.config).validate(project)

    def submit_build(self, project: Project, requested_by: str = "") -> RenderJob:
        return self.builds.submit(project, requested_by)

    def poll_build(self, job: RenderJob) -> Dict[str, Any]:
        return self.builds.poll(job)

    def cancel(self, target: Target) -> bool:
        return cancel_target(target)

    def retry(self, target: Target) -> bool:
        return requeue_target(target)

    def activate(self, attempt: Attempt) -> Attempt:
        return activate(attempt)

    def attempts(self, target: Target) -> List[Attempt]:
        return list_attempts(target)

    def remove_attempt(self, attempt: Attempt) -> None:
        remove_attempt(attempt, blob_store=self.context.blob_store)
