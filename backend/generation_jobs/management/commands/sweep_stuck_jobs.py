import uuid

from django.core.management.base import BaseCommand

from generation_jobs.models import Project
from generation_jobs.sweeper import SWEEP_LOCK_KEY, acquire_lock, release_lock, sweep


class Command(BaseCommand):
    help = "Fail generation targets, attempts and render jobs stuck in progress past their threshold."

    def add_arguments(self, parser):
        parser.add_argument("--project", dest="project_id", default="", help="Optional project id filter.")
        parser.add_argument(
            "--threshold-minutes",
            dest="threshold_minutes",
            type=int,
            default=None,
            help="Minutes without progress before a generation target is failed.",
        )
        parser.add_argument(
            "--render-threshold-minutes",
            dest="render_threshold_minutes",
            type=int,
            default=None,
            help="Minutes without progress before a render job is failed.",
        )

    def handle(self, *args, **options):
        project_id = str(options.get("project_id") or "").strip()
        project = None
        if project_id:
            project = Project.objects.filter(id=project_id).first()
            if not project:
                self.stdout.write(self.style.ERROR(f"Project not found: {project_id}"))
                return

        holder = uuid.uuid4().hex
        if not acquire_lock(SWEEP_LOCK_KEY, holder):
            self.stdout.write(self.style.ERROR("Another sweep is running; skipping."))
            return
        try:
            count = sweep(
                project=project,
                threshold_minutes=options.get("threshold_minutes"),
                render_threshold_minutes=options.get("render_threshold_minutes"),
            )
        finally:
            release_lock(SWEEP_LOCK_KEY, holder)
        self.stdout.write(self.style.SUCCESS(f"Swept {count} stuck row(s)."))
