from datetime import timedelta
from unittest.mock import patch

from django.test import TestCase
from django.utils import timezone

from generation_jobs.batch import BatchProcessor
from generation_jobs.errors import ErrorClass, GenerationError, PipelineError
from generation_jobs.handlers import SceneImageHandler, request_scene_video
from generation_jobs.models import Attempt, Scene, Target
from generation_jobs.states import AttemptStatus, ProjectStatus, TargetKind, TargetStatus
from generation_jobs.tests.fakes import (
    FakeImageClient,
    FakeJobClient,
    FakeScriptClient,
    MemoryBlobStore,
    add_active_image,
    make_config,
    make_context,
    make_project,
    make_scene,
    script_output,
    valid_script,
)


class ChunkBatchTests(TestCase):
    def setUp(self):
        self.project = make_project(status=ProjectStatus.PARSED, owner_ref="user-1")
        for idx in range(1, 4):
            Target.objects.create(
                project=self.project,
                kind=TargetKind.CHUNK_SCRIPT,
                idx=idx,
                input_json={"text": f"Paragraph {idx} of the source text.", "length": 35},
            )
        config = make_config(
            batch_sizes={
                TargetKind.CHUNK_SCRIPT: 2,
                TargetKind.SCENE_IMAGE: 1,
                TargetKind.SCENE_VIDEO: 1,
                TargetKind.PROJECT_BUILD: 1,
            }
        )
        self.blobs = MemoryBlobStore()
        self.context = make_context(config=config, blob_store=self.blobs)

    def test_batches_drain_chunks_and_advance_the_stage(self):
        processor = BatchProcessor(self.context)

        first = processor.process_batch(self.project, TargetKind.CHUNK_SCRIPT)
        self.assertEqual(first, {"processed": 2, "failed": 0, "remaining": 1})
        self.project.refresh_from_db()
        self.assertEqual(self.project.status, ProjectStatus.FORMATTING)

        second = processor.process_batch(self.project, TargetKind.CHUNK_SCRIPT)
        self.assertEqual(second, {"processed": 1, "failed": 0, "remaining": 0})
        self.project.refresh_from_db()
        self.assertEqual(self.project.status, ProjectStatus.FORMATTED)

        scenes = list(Scene.objects.filter(project=self.project).order_by("idx"))
        self.assertEqual([scene.idx for scene in scenes], list(range(1, 10)))
        self.assertEqual(
            Target.objects.filter(
                project=self.project, kind=TargetKind.SCENE_IMAGE, status=TargetStatus.PENDING
            ).count(),
            9,
        )
        for target in Target.objects.filter(project=self.project, kind=TargetKind.CHUNK_SCRIPT):
            self.assertEqual(target.status, TargetStatus.COMPLETED)
            active = Attempt.objects.get(target=target, is_active=True)
            self.assertEqual(active.credential_source, "primary")
            self.assertIn(active.artifact_ref, self.blobs.blobs)
        self.assertEqual(len(self.blobs.blobs), 3)

    def test_invalid_script_fails_the_target_after_repair(self):
        bad = valid_script()
        bad["scenes"] = bad["scenes"][:1]
        script_client = FakeScriptClient(responses=[script_output(bad)], repairs=[script_output(bad)])
        context = make_context(script_client=script_client, blob_store=self.blobs)
        Target.objects.filter(project=self.project, idx__gt=1).delete()

        result = BatchProcessor(context).process_batch(self.project, TargetKind.CHUNK_SCRIPT)

        self.assertEqual(result, {"processed": 0, "failed": 1, "remaining": 0})
        target = Target.objects.get(project=self.project, kind=TargetKind.CHUNK_SCRIPT)
        self.assertEqual(target.status, TargetStatus.FAILED)
        self.assertEqual(target.error_class, ErrorClass.SCHEMA_INVALID)
        attempt = Attempt.objects.get(target=target)
        self.assertEqual(attempt.status, AttemptStatus.FAILED)
        self.assertEqual(attempt.tries, 3)
        self.assertFalse(attempt.is_active)
        self.assertEqual([call["temperature"] for call in script_client.calls], [0.7, 0.3])
        self.assertEqual(len(script_client.repair_calls), 1)
        self.project.refresh_from_db()
        self.assertEqual(self.project.status, ProjectStatus.FORMATTING)
        self.assertIn("after repair", self.project.last_error)
        self.assertEqual(self.blobs.blobs, {})

    def test_wrong_stage_is_rejected(self):
        project = make_project(status=ProjectStatus.CREATED)
        with self.assertRaises(PipelineError) as ctx:
            BatchProcessor(self.context).process_batch(project, TargetKind.CHUNK_SCRIPT)
        self.assertEqual(ctx.exception.code, "INVALID_STATUS")


class SceneImageBatchTests(TestCase):
    def setUp(self):
        self.project = make_project(
            status=ProjectStatus.FORMATTED,
            settings_json={"style_prompt": {"prefix": "Flat vector art.", "suffix": "No text."}},
        )
        self.scene = make_scene(self.project, 1)
        self.target = Target.objects.create(
            project=self.project, scene=self.scene, kind=TargetKind.SCENE_IMAGE, idx=1
        )

    def test_image_success_activates_and_completes_the_project(self):
        images = FakeImageClient()
        result = BatchProcessor(make_context(image_client=images)).process_batch(self.project, TargetKind.SCENE_IMAGE)

        self.assertEqual(result, {"processed": 1, "failed": 0, "remaining": 0})
        active = self.scene.active_attempt(TargetKind.SCENE_IMAGE)
        self.assertTrue(active.artifact_url.startswith("https://cdn.example.test/"))
        self.assertTrue(images.calls[0]["prompt"].startswith("Flat vector art."))
        self.assertTrue(images.calls[0]["prompt"].endswith("No text."))
        self.project.refresh_from_db()
        self.assertEqual(self.project.status, ProjectStatus.COMPLETED)

    def test_provider_failure_is_recorded_on_target_attempt_and_project(self):
        images = FakeImageClient([GenerationError("google error (400): prompt blocked", status_code=400)])
        result = BatchProcessor(make_context(image_client=images)).process_batch(self.project, TargetKind.SCENE_IMAGE)

        self.assertEqual(result, {"processed": 0, "failed": 1, "remaining": 0})
        self.target.refresh_from_db()
        self.assertEqual(self.target.status, TargetStatus.FAILED)
        self.assertEqual(self.target.error_class, ErrorClass.UNKNOWN)
        self.assertIn("prompt blocked", self.target.error_message)
        self.assertEqual(Attempt.objects.get(target=self.target).status, AttemptStatus.FAILED)
        self.project.refresh_from_db()
        self.assertEqual(self.project.status, ProjectStatus.GENERATING_ASSETS)
        self.assertIn("prompt blocked", self.project.last_error)

    def test_storage_failure_is_terminal_infra_failure(self):
        images = FakeImageClient()
        context = make_context(image_client=images, blob_store=MemoryBlobStore(fail=True))
        result = BatchProcessor(context).process_batch(self.project, TargetKind.SCENE_IMAGE)

        self.assertEqual(result["failed"], 1)
        self.assertEqual(len(images.calls), 1)
        self.target.refresh_from_db()
        self.assertEqual(self.target.error_class, ErrorClass.INFRA_FAILURE)


class SceneVideoBatchTests(TestCase):
    def setUp(self):
        self.project = make_project(status=ProjectStatus.GENERATING_ASSETS)
        self.scene = make_scene(self.project, 1)
        add_active_image(self.scene)
        self.videos = FakeJobClient("video-service", ["video-job-1"])
        self.context = make_context(video_client=self.videos)

    def test_video_request_validation(self):
        with self.assertRaises(PipelineError) as duration_ctx:
            request_scene_video(self.scene, duration_sec=7)
        self.assertEqual(duration_ctx.exception.code, "INVALID_DURATION")

        bare = make_scene(self.project, 2)
        with self.assertRaises(PipelineError) as image_ctx:
            request_scene_video(bare, duration_sec=5)
        self.assertEqual(image_ctx.exception.code, "IMAGE_NOT_READY")

        request_scene_video(self.scene, prompt="slow zoom", duration_sec=8)
        with self.assertRaises(PipelineError) as busy_ctx:
            request_scene_video(self.scene, duration_sec=5)
        self.assertEqual(busy_ctx.exception.code, "VIDEO_IN_PROGRESS")

    def test_video_job_is_started_then_reconciled(self):
        target = request_scene_video(self.scene, prompt="slow zoom", duration_sec=8)
        processor = BatchProcessor(self.context)

        started = processor.process_batch(self.project, TargetKind.SCENE_VIDEO)
        self.assertEqual(started, {"processed": 1, "failed": 0, "remaining": 1})
        target.refresh_from_db()
        self.assertEqual(target.status, TargetStatus.IN_PROGRESS)
        payload = self.videos.started[0]["payload"]
        self.assertEqual(payload["duration_sec"], 8)
        self.assertEqual(payload["prompt"], "slow zoom")
        self.assertEqual(payload["idempotency_key"], f"{target.id}:1")

        self.assertEqual(processor.reconcile_videos(self.project), {"completed": 0, "failed": 0, "running": 1})

        self.videos.statuses["video-job-1"] = {
            "state": "completed",
            "artifact_url": "https://video.example.test/out/scene1.mp4",
            "duration_ms": 8000,
        }
        self.assertEqual(processor.reconcile_videos(self.project), {"completed": 1, "failed": 0, "running": 0})
        target.refresh_from_db()
        self.assertEqual(target.status, TargetStatus.COMPLETED)
        active = self.scene.active_attempt(TargetKind.SCENE_VIDEO)
        self.assertEqual(active.artifact_url, "https://video.example.test/out/scene1.mp4")
        self.assertEqual(active.result_json["duration_ms"], 8000)

    def test_completed_video_without_url_fails_the_target(self):
        target = request_scene_video(self.scene, duration_sec=5)
        processor = BatchProcessor(self.context)
        processor.process_batch(self.project, TargetKind.SCENE_VIDEO)

        self.videos.statuses["video-job-1"] = {"state": "completed", "artifact_url": None}
        self.assertEqual(processor.reconcile_videos(self.project), {"completed": 0, "failed": 1, "running": 0})
        target.refresh_from_db()
        self.assertEqual(target.status, TargetStatus.FAILED)
        self.assertEqual(target.error_message, "Video job reported completion without a video URL")
        self.assertIsNone(self.scene.active_attempt(TargetKind.SCENE_VIDEO))

        retried = request_scene_video(self.scene, duration_sec=10)
        self.assertEqual(retried.id, target.id)
        self.assertEqual(Target.objects.get(id=target.id).status, TargetStatus.PENDING)

    def test_finished_job_is_settled_even_when_polled_late(self):
        target = request_scene_video(self.scene, duration_sec=5)
        processor = BatchProcessor(self.context)
        processor.process_batch(self.project, TargetKind.SCENE_VIDEO)
        long_ago = timezone.now() - timedelta(minutes=6)
        Target.objects.filter(id=target.id).update(updated_at=long_ago)
        Attempt.objects.filter(target=target).update(updated_at=long_ago)
        self.videos.statuses["video-job-1"] = {
            "state": "completed",
            "artifact_url": "https://video.example.test/out/late.mp4",
        }

        result = processor.process_batch(self.project, TargetKind.SCENE_VIDEO)

        self.assertEqual(result, {"processed": 0, "failed": 0, "remaining": 0})
        target.refresh_from_db()
        self.assertEqual(target.status, TargetStatus.COMPLETED)
        active = self.scene.active_attempt(TargetKind.SCENE_VIDEO)
        self.assertEqual(active.artifact_url, "https://video.example.test/out/late.mp4")


class SettlementFailureTests(TestCase):
    def setUp(self):
        self.project = make_project(status=ProjectStatus.FORMATTED)
        self.targets = []
        for idx in (1, 2):
            scene = make_scene(self.project, idx)
            self.targets.append(
                Target.objects.create(project=self.project, scene=scene, kind=TargetKind.SCENE_IMAGE, idx=idx)
            )
        config = make_config(
            batch_sizes={
                TargetKind.CHUNK_SCRIPT: 1,
                TargetKind.SCENE_IMAGE: 2,
                TargetKind.SCENE_VIDEO: 1,
                TargetKind.PROJECT_BUILD: 1,
            }
        )
        self.context = make_context(config=config)

    def test_follow_up_failure_rolls_back_the_attempt_completion(self):
        Target.objects.filter(id=self.targets[1].id).delete()
        target = self.targets[0]
        with patch.object(
            SceneImageHandler, "on_success", side_effect=PipelineError("SCENE_MISSING", "Scene was deleted")
        ):
            result = BatchProcessor(self.context).process_batch(self.project, TargetKind.SCENE_IMAGE)

        self.assertEqual(result, {"processed": 0, "failed": 1, "remaining": 0})
        target.refresh_from_db()
        self.assertEqual(target.status, TargetStatus.FAILED)
        self.assertEqual(target.error_class, ErrorClass.INFRA_FAILURE)
        attempt = Attempt.objects.get(target=target)
        self.assertEqual(attempt.status, AttemptStatus.FAILED)
        self.assertFalse(attempt.is_active)
        self.assertEqual(attempt.error_message, "Scene was deleted")

    def test_unexpected_error_fails_one_target_and_the_batch_continues(self):
        original = SceneImageHandler.build_context

        def build_context(handler, target, attempt):
            if target.idx == 1:
                raise RuntimeError("handler bug")
            return original(handler, target, attempt)

        with patch.object(SceneImageHandler, "build_context", autospec=True, side_effect=build_context):
            result = BatchProcessor(self.context).process_batch(self.project, TargetKind.SCENE_IMAGE)

        self.assertEqual(result, {"processed": 1, "failed": 1, "remaining": 0})
        broken, healthy = (Target.objects.get(id=target.id) for target in self.targets)
        self.assertEqual(broken.status, TargetStatus.FAILED)
        self.assertEqual(broken.error_class, ErrorClass.INFRA_FAILURE)
        self.assertIn("handler bug", broken.error_message)
        self.assertEqual(Attempt.objects.get(target=broken).status, AttemptStatus.FAILED)
        self.assertEqual(healthy.status, TargetStatus.COMPLETED)
        self.assertTrue(Attempt.objects.get(target=healthy).is_active)
