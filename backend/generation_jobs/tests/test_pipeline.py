from datetime import timedelta

from django.test import TestCase
from django.utils import timezone

from generation_jobs.handlers import request_scene_video
from generation_jobs.models import Target
from generation_jobs.pipeline import GenerationPipeline, project_status
from generation_jobs.states import ProjectStatus, TargetKind, TargetStatus
from generation_jobs.tests.fakes import (
    FakeScriptClient,
    add_active_image,
    make_config,
    make_context,
    make_project,
    make_scene,
    script_output,
    valid_script,
)

SOURCE_TEXT = "Satellites fall around the earth without ever landing.\n\nThat is what an orbit is."


class GenerationPipelineTests(TestCase):
    def setUp(self):
        self.context = make_context(script_client=FakeScriptClient([script_output(valid_script(4))]))
        self.pipeline = GenerationPipeline(self.context)

    def test_text_flows_from_project_to_scene_image_targets(self):
        project = self.pipeline.create_project("Orbits", SOURCE_TEXT, owner_ref="user-1")
        self.pipeline.parse(project)

        result = self.pipeline.process_batch(project, TargetKind.CHUNK_SCRIPT)

        self.assertEqual(result, {"processed": 1, "failed": 0, "remaining": 0})
        status = self.pipeline.status(project)
        self.assertEqual(status["status"], ProjectStatus.FORMATTED)
        self.assertEqual(status["scene_count"], 4)
        self.assertEqual(status["targets"][TargetKind.CHUNK_SCRIPT][TargetStatus.COMPLETED], 1)
        self.assertEqual(status["targets"][TargetKind.SCENE_IMAGE][TargetStatus.PENDING], 4)
        self.assertEqual(status["targets"][TargetKind.SCENE_IMAGE]["total"], 4)
        self.assertEqual(status["ready_count"], 0)
        self.assertIsNone(status["build"])

    def test_status_sweeps_stuck_work_first(self):
        project = self.pipeline.create_project("Orbits", SOURCE_TEXT)
        self.pipeline.parse(project)
        target = Target.objects.get(project=project)
        Target.objects.filter(id=target.id).update(
            status=TargetStatus.IN_PROGRESS, updated_at=timezone.now() - timedelta(minutes=30)
        )

        status = project_status(project, make_config())

        self.assertEqual(status["swept"], 1)
        self.assertEqual(status["targets"][TargetKind.CHUNK_SCRIPT][TargetStatus.FAILED], 1)

    def test_status_settles_finished_video_jobs_before_sweeping(self):
        project = make_project(status=ProjectStatus.GENERATING_ASSETS)
        scene = make_scene(project, 1)
        add_active_image(scene)
        target = request_scene_video(scene, duration_sec=5)
        self.pipeline.process_batch(project, TargetKind.SCENE_VIDEO)
        Target.objects.filter(id=target.id).update(updated_at=timezone.now() - timedelta(minutes=6))
        self.context.video_client.statuses["job-1"] = {
            "state": "completed",
            "artifact_url": "https://video.example.test/out/scene1.mp4",
        }

        status = self.pipeline.status(project)

        self.assertEqual(status["swept"], 0)
        self.assertEqual(status["targets"][TargetKind.SCENE_VIDEO][TargetStatus.COMPLETED], 1)

    def test_cancel_and_retry_round_trip(self):
        project = self.pipeline.create_project("Orbits", SOURCE_TEXT)
        target = self.pipeline.parse(project)[0]

        self.assertTrue(self.pipeline.cancel(target))
        self.assertTrue(self.pipeline.retry(target))
        self.assertEqual(Target.objects.get(id=target.id).status, TargetStatus.PENDING)
