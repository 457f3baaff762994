import json
from typing import Any, Dict, List, Optional, Sequence

from generation_jobs.config import PipelineConfig, RetryPolicy
from generation_jobs.context import PipelineContext
from generation_jobs.credentials import ResolvedCredential
from generation_jobs.errors import StorageError
from generation_jobs.models import Attempt, Project, Scene, Target
from generation_jobs.schemas import SCENE_ROLES
from generation_jobs.states import ProjectStatus, TargetKind, TargetStatus
from generation_jobs.versions import activate, complete_attempt, start_attempt

SITE_URL = "https://studio.example.test"
DIALOGUE = "This scene walks through one part of the story in a calm and clear voice for viewers."
IMAGE_PROMPT = "A clean illustrated diagram of the topic on a bright studio background"


def _next(queue: List[Any]) -> Any:
    # The last queued outcome repeats once the others are used up.
    outcome = queue.pop(0) if len(queue) > 1 else queue[0]
    if isinstance(outcome, Exception):
        raise outcome
    return outcome


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class StaticCredentials:
    def __init__(self, sources: Sequence[str] = ("primary",)):
        self._sources = list(sources)

    def sources(self, owner_ref: str, provider: str) -> List[ResolvedCredential]:
        return [ResolvedCredential(api_key=f"sk-{source}-0000", source=source) for source in self._sources]


class MemoryBlobStore:
    def __init__(self, fail: bool = False):
        self.blobs: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail = fail

    def url_for(self, key: str) -> str:
        return f"https://cdn.example.test/{key}"

    def put(self, key: str, data: bytes, content_type: str) -> str:
        if self.fail:
            raise StorageError("blob store unavailable")
        self.blobs[key] = data
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        if key not in self.blobs:
            raise StorageError(f"missing blob {key}")
        return self.blobs[key]

    def delete(self, key: str) -> None:
        self.deleted.append(key)
        self.blobs.pop(key, None)


class FakeScriptClient:
    provider = "openai"

    def __init__(self, responses: Optional[List[Any]] = None, repairs: Optional[List[Any]] = None):
        self.responses = list(responses or [script_output(valid_script())])
        self.repairs = list(repairs or [script_output(valid_script())])
        self.calls: List[Dict[str, Any]] = []
        self.repair_calls: List[Dict[str, Any]] = []

    def submit(self, prompt, output_schema, *, credential, temperature, **kwargs):
        self.calls.append({"prompt": prompt, "source": credential.source, "temperature": temperature})
        return _next(self.responses)

    def repair(self, raw_text, output_schema, *, credential, temperature=0.1):
        self.repair_calls.append({"raw_text": raw_text, "source": credential.source, "temperature": temperature})
        return _next(self.repairs)


class FakeImageClient:
    provider = "google"

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [b"\x89PNG fake image"])
        self.calls: List[Dict[str, Any]] = []

    def submit(self, prompt, reference_images=None, *, credential):
        self.calls.append({"prompt": prompt, "references": list(reference_images or []), "source": credential.source})
        return _next(self.responses)


class FakeJobClient:
    def __init__(self, provider: str = "job-service", job_ids: Optional[List[Any]] = None):
        self.provider = provider
        self.job_ids = list(job_ids or ["job-1"])
        self.statuses: Dict[str, Any] = {}
        self.started: List[Dict[str, Any]] = []

    def start(self, payload, *, credential=None):
        self.started.append({"payload": dict(payload), "source": credential.source if credential else None})
        return _next(self.job_ids)

    def status(self, job_id):
        outcome = self.statuses.get(job_id, {"state": "processing", "progress": 10})
        if isinstance(outcome, Exception):
            raise outcome
        return dict(outcome)


def make_config(**changes: Any) -> PipelineConfig:
    config = PipelineConfig(
        retry=RetryPolicy(max_tries=3, base_seconds=1.0, cap_seconds=30.0),
        site_url=SITE_URL,
    )
    return config.with_overrides(**changes) if changes else config


def make_context(**overrides: Any) -> PipelineContext:
    values: Dict[str, Any] = {
        "config": make_config(),
        "credentials": StaticCredentials(),
        "blob_store": MemoryBlobStore(),
        "script_client": FakeScriptClient(),
        "image_client": FakeImageClient(),
        "video_client": FakeJobClient("video-service"),
        "render_client": FakeJobClient("render-service", ["render-1"]),
        "sleep": RecordingSleep(),
    }
    values.update(overrides)
    return PipelineContext(**values)


def valid_script(scene_count: int = 3, title: str = "Explainer") -> Dict[str, Any]:
    return {
        "version": "1.0",
        "metadata": {"title": title, "total_scenes": scene_count, "estimated_duration_seconds": 30 * scene_count},
        "scenes": [
            {
                "idx": number,
                "role": SCENE_ROLES[(number - 1) % len(SCENE_ROLES)],
                "title": f"Scene {number}",
                "dialogue": DIALOGUE,
                "bullets": ["First key point", "Second key point"],
                "image_prompt": IMAGE_PROMPT,
            }
            for number in range(1, scene_count + 1)
        ],
    }


def script_output(payload: Any) -> Dict[str, Any]:
    return {"payload": payload, "raw_text": json.dumps(payload)}


def make_project(status: str = ProjectStatus.CREATED, **kwargs: Any) -> Project:
    values = {"title": "Orbital mechanics explained", "source_text": "Satellites fall around the earth.", "status": status}
    values.update(kwargs)
    return Project.objects.create(**values)


def make_scene(project: Project, idx: int, **kwargs: Any) -> Scene:
    values = {
        "role": "main_point",
        "title": f"Scene {idx}",
        "dialogue": DIALOGUE,
        "image_prompt": IMAGE_PROMPT,
    }
    values.update(kwargs)
    return Scene.objects.create(project=project, idx=idx, **values)


def add_active_image(scene: Scene, url: str = "https://cdn.example.test/scene.png") -> Attempt:
    target = Target.objects.create(
        project=scene.project,
        scene=scene,
        kind=TargetKind.SCENE_IMAGE,
        idx=scene.idx,
        status=TargetStatus.COMPLETED,
    )
    attempt = start_attempt(target, provider="google", model_name="test-image")
    complete_attempt(attempt, artifact_ref=f"scenes/{scene.id}/image.png", artifact_url=url)
    return activate(attempt)
