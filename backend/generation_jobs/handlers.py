import base64
import json
import logging
from typing import Any, Dict, List

from django.db import transaction
from django.db.models import F, Max

from .claims import requeue_target
from .context import PipelineContext
from .errors import ErrorClass, GenerationError, PipelineError
from .models import Attempt, Project, Scene, Target
from .retry import AttemptContext
from .schemas import SCENE_SCRIPT_SCHEMA, validate_script
from .states import OPEN_TARGET_STATUSES, TargetKind
from .storage.registry import absolute_url

logger = logging.getLogger(__name__)

VIDEO_DURATIONS = (5, 8, 10)
RENUMBER_OFFSET = 1_000_000


class GenerationHandler:
    kind = ""
    asynchronous = False

    def __init__(self, context: PipelineContext):
        self.context = context
        self.config = context.config

    @property
    def provider(self) -> str:
        raise NotImplementedError

    @property
    def model_name(self) -> str:
        return ""

    def build_context(self, target: Target, attempt: Attempt) -> AttemptContext:
        raise NotImplementedError

    def on_success(self, target: Target, attempt: Attempt, artifact: Dict[str, Any]) -> None:
        return None


def renumber_scenes(project: Project) -> None:
    ordered = list(
        Scene.objects.filter(project=project)
        .order_by(F("chunk_target__idx").asc(nulls_first=True), "idx")
        .values_list("id", "idx")
    )
    if all(idx == position for position, (_, idx) in enumerate(ordered, start=1)):
        return
    Scene.objects.filter(project=project).update(idx=F("idx") + RENUMBER_OFFSET)
    for position, (scene_id, _) in enumerate(ordered, start=1):
        Scene.objects.filter(id=scene_id).update(idx=position)
        Target.objects.filter(scene_id=scene_id).update(idx=position)


def materialize_scenes(target: Target, script: Dict[str, Any]) -> List[Scene]:
    project = target.project
    items = sorted(script.get("scenes") or [], key=lambda item: int(item.get("idx") or 0))
    with transaction.atomic():
        Project.objects.select_for_update().filter(id=project.id).first()
        Scene.objects.filter(chunk_target=target).delete()
        start = (Scene.objects.filter(project=project).aggregate(max_idx=Max("idx")).get("max_idx") or 0) + 1
        created: List[Scene] = []
        for offset, item in enumerate(items):
            created.append(
                Scene.objects.create(
                    project=project,
                    chunk_target=target,
                    idx=start + offset,
                    role=str(item.get("role") or ""),
                    title=str(item.get("title") or "")[:200],
                    dialogue=str(item.get("dialogue") or ""),
                    bullets_json=list(item.get("bullets") or []),
                    image_prompt=str(item.get("image_prompt") or ""),
                )
            )
        renumber_scenes(project)
        for scene in created:
            scene.refresh_from_db(fields=["idx"])
            Target.objects.create(
                project=project,
                scene=scene,
                kind=TargetKind.SCENE_IMAGE,
                idx=scene.idx,
                input_json={"prompt": scene.image_prompt},
            )
    logger.info("chunk target %s produced %s scene(s) for project %s", target.id, len(created), project.id)
    return created


def compose_image_prompt(project: Project, prompt: str) -> str:
    style = (project.settings_json or {}).get("style_prompt")
    style = style if isinstance(style, dict) else {}
    parts = [str(style.get("prefix") or "").strip(), str(prompt or "").strip(), str(style.get("suffix") or "").strip()]
    return " ".join(part for part in parts if part)


class ChunkScriptHandler(GenerationHandler):
    kind = TargetKind.CHUNK_SCRIPT

    @property
    def provider(self) -> str:
        return self.config.script_provider

    @property
    def model_name(self) -> str:
        return self.config.script_model

    def build_context(self, target: Target, attempt: Attempt) -> AttemptContext:
        project = target.project
        text = str((target.input_json or {}).get("text") or "").strip()
        if not text:
            raise GenerationError("Chunk has no text", error_class=ErrorClass.UNKNOWN)
        prompt = (
            f"Project title: {project.title}\n\n"
            f"Source text:\n{text}\n\n"
            "Turn this text into an engaging, easy to follow explainer video script."
        )
        client = self.context.script_client

        def invoke(credential, params):
            return client.submit(prompt, SCENE_SCRIPT_SCHEMA, credential=credential, temperature=params["temperature"])

        def validate(output):
            validate_script(output.get("payload"), output.get("raw_text") or "")
            return output

        def repair(credential, raw_text):
            return client.repair(
                raw_text,
                SCENE_SCRIPT_SCHEMA,
                credential=credential,
                temperature=self.config.repair_temperature,
            )

        def persist(output):
            payload = output["payload"]
            key = f"projects/{project.id}/scripts/chunk-{target.idx}-a{attempt.attempt_number}.json"
            data = json.dumps(payload, ensure_ascii=False, sort_keys=True).encode("utf-8")
            url = self.context.blob_store.put(key, data, "application/json")
            return {
                "artifact_ref": key,
                "artifact_url": url,
                "result": {"scene_count": len(payload.get("scenes") or []), "script": payload},
            }

        return AttemptContext(
            owner_ref=project.owner_ref,
            provider=self.provider,
            invoke=invoke,
            validate=validate,
            repair=repair,
            persist=persist,
            params={"temperature": self.config.script_temperature},
            retry_params={"temperature": self.config.script_retry_temperature},
        )

    def on_success(self, target: Target, attempt: Attempt, artifact: Dict[str, Any]) -> None:
        script = (artifact.get("result") or {}).get("script") or {}
        materialize_scenes(target, script)


class SceneImageHandler(GenerationHandler):
    kind = TargetKind.SCENE_IMAGE

    @property
    def provider(self) -> str:
        return self.config.image_provider

    @property
    def model_name(self) -> str:
        return self.config.image_model

    def reference_images(self, project: Project) -> List[Dict[str, str]]:
        raw = (project.settings_json or {}).get("reference_images")
        images: List[Dict[str, str]] = []
        for item in (raw if isinstance(raw, list) else [])[: self.config.max_reference_images]:
            if not isinstance(item, dict):
                continue
            data = str(item.get("base64_data") or "")
            if not data and item.get("blob_key"):
                data = base64.b64encode(self.context.blob_store.get(str(item["blob_key"]))).decode("ascii")
            if data:
                images.append(
                    {
                        "name": str(item.get("name") or ""),
                        "base64_data": data,
                        "mime_type": str(item.get("mime_type") or "image/png"),
                    }
                )
        return images

    def build_context(self, target: Target, attempt: Attempt) -> AttemptContext:
        project = target.project
        scene = target.scene
        base_prompt = (scene.image_prompt if scene else "") or str((target.input_json or {}).get("prompt") or "")
        if not base_prompt.strip():
            raise GenerationError("Scene has no image prompt", error_class=ErrorClass.UNKNOWN)
        prompt = compose_image_prompt(project, base_prompt)
        references = self.reference_images(project)
        client = self.context.image_client

        def invoke(credential, params):
            return client.submit(prompt, references, credential=credential)

        def persist(image_bytes):
            key = f"projects/{project.id}/scenes/{target.id}/image-a{attempt.attempt_number}.png"
            url = self.context.blob_store.put(key, image_bytes, "image/png")
            return {
                "artifact_ref": key,
                "artifact_url": url,
                "result": {"prompt": prompt, "size_bytes": len(image_bytes), "reference_count": len(references)},
            }

        return AttemptContext(
            owner_ref=project.owner_ref,
            provider=self.provider,
            invoke=invoke,
            persist=persist,
        )


class SceneVideoHandler(GenerationHandler):
    kind = TargetKind.SCENE_VIDEO
    asynchronous = True

    @property
    def provider(self) -> str:
        return self.config.video_provider

    @property
    def model_name(self) -> str:
        return self.config.video_model

    def build_context(self, target: Target, attempt: Attempt) -> AttemptContext:
        project = target.project
        scene = target.scene
        image = scene.active_attempt(TargetKind.SCENE_IMAGE) if scene else None
        if image is None or not image.artifact_url:
            raise GenerationError("Scene has no active image to animate", error_class=ErrorClass.UNKNOWN)
        options = target.input_json or {}
        payload = {
            "project_id": str(project.id),
            "scene_id": str(scene.id),
            "image_url": absolute_url(image.artifact_url, self.config.site_url),
            "prompt": str(options.get("prompt") or scene.image_prompt or ""),
            "duration_sec": int(options.get("duration_sec") or VIDEO_DURATIONS[0]),
            "provider": self.provider,
            "model": self.model_name,
            "idempotency_key": f"{target.id}:{attempt.attempt_number}",
        }
        client = self.context.video_client

        def invoke(credential, params):
            return client.start({**payload, "billing_source": credential.source}, credential=credential)

        def persist(job_id):
            return {"external_job_id": str(job_id)}

        return AttemptContext(
            owner_ref=project.owner_ref,
            provider=self.provider,
            invoke=invoke,
            persist=persist,
        )


def build_handlers(context: PipelineContext) -> Dict[str, GenerationHandler]:
    return {
        TargetKind.CHUNK_SCRIPT: ChunkScriptHandler(context),
        TargetKind.SCENE_IMAGE: SceneImageHandler(context),
        TargetKind.SCENE_VIDEO: SceneVideoHandler(context),
    }


def request_scene_video(scene: Scene, *, prompt: str = "", duration_sec: int = 5) -> Target:
    if int(duration_sec) not in VIDEO_DURATIONS:
        raise PipelineError(
            "INVALID_DURATION",
            f"duration_sec must be one of {', '.join(str(value) for value in VIDEO_DURATIONS)}",
        )
    image = scene.active_attempt(TargetKind.SCENE_IMAGE)
    if image is None or not image.artifact_url:
        raise PipelineError(
            "IMAGE_NOT_READY",
            "Scene needs a completed active image before a video can be generated",
            details={"scene_id": str(scene.id), "scene_idx": scene.idx},
        )
    options = {"prompt": str(prompt or "").strip(), "duration_sec": int(duration_sec)}
    with transaction.atomic():
        target = Target.objects.select_for_update().filter(scene=scene, kind=TargetKind.SCENE_VIDEO).first()
        if target is None:
            target = Target.objects.create(
                project=scene.project,
                scene=scene,
                kind=TargetKind.SCENE_VIDEO,
                idx=scene.idx,
                input_json=options,
            )
            logger.info("scene video target %s created for scene %s", target.id, scene.id)
            return target
        if target.status in OPEN_TARGET_STATUSES:
            raise PipelineError(
                "VIDEO_IN_PROGRESS",
                "A video is already being generated for this scene",
                details={"target_id": str(target.id), "status": target.status},
            )
        Target.objects.filter(id=target.id).update(input_json=options)
        target.input_json = options
        requeue_target(target)
    return target
