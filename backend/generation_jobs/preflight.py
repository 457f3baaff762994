import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import requests

from .config import PipelineConfig
from .models import Attempt, Project, Scene
from .states import AttemptStatus, TargetKind
from .storage.registry import absolute_url

logger = logging.getLogger(__name__)

URL_CHECK_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class PreflightIssue:
    code: str
    message: str
    target_ref: str
    scene_idx: Optional[int] = None
    field: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "target_ref": self.target_ref,
            "scene_idx": self.scene_idx,
            "field": self.field,
        }


@dataclass
class PreflightResult:
    errors: List[PreflightIssue] = field(default_factory=list)
    warnings: List[PreflightIssue] = field(default_factory=list)
    ready_count: int = 0
    total_count: int = 0

    @property
    def ready(self) -> bool:
        return not self.errors and self.total_count > 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "ready_count": self.ready_count,
            "total_count": self.total_count,
            "errors": [issue.as_dict() for issue in self.errors],
            "warnings": [issue.as_dict() for issue in self.warnings],
        }


@dataclass
class SceneAssets:
    scene: Scene
    image: Optional[Attempt] = None
    video: Optional[Attempt] = None


def collect_scene_assets(project: Project) -> List[SceneAssets]:
    scenes = list(Scene.objects.filter(project=project, is_hidden=False).order_by("idx"))
    active: Dict[Tuple[Any, str], Attempt] = {}
    rows = Attempt.objects.filter(
        target__project=project,
        target__kind__in=[TargetKind.SCENE_IMAGE, TargetKind.SCENE_VIDEO],
        is_active=True,
    ).select_related("target")
    for attempt in rows:
        active[(attempt.target.scene_id, attempt.target.kind)] = attempt
    return [
        SceneAssets(
            scene=scene,
            image=active.get((scene.id, TargetKind.SCENE_IMAGE)),
            video=active.get((scene.id, TargetKind.SCENE_VIDEO)),
        )
        for scene in scenes
    ]


def _is_absolute(url: str) -> bool:
    return url.startswith(("http://", "https://"))


class PreflightValidator:
    """Go/no-go check for a final build.

    Errors block the build; warnings are reported and never affect ``ready``.
    """

    def __init__(self, config: Optional[PipelineConfig] = None, *, session: Optional[requests.Session] = None):
        self.config = config or PipelineConfig.from_settings()
        self.session = session

    def _reachable(self, url: str) -> Tuple[bool, str]:
        http = self.session or requests
        try:
            response = http.head(url, timeout=URL_CHECK_TIMEOUT_SECONDS, allow_redirects=True)
        except requests.RequestException as exc:
            return False, str(exc)
        if response.status_code >= 400:
            return False, f"HTTP {response.status_code}"
        return True, ""

    def _check_url(
        self,
        result: PreflightResult,
        raw_url: str,
        *,
        code_prefix: str,
        label: str,
        target_ref: str,
        scene_idx: Optional[int],
        field_name: str,
    ) -> None:
        url = absolute_url(raw_url, self.config.site_url)
        if not _is_absolute(url):
            result.errors.append(
                PreflightIssue(
                    code=f"{code_prefix}_URL_RELATIVE",
                    message=f"{label} URL is not absolute ({url[:60]}); set the public site URL or regenerate it",
                    target_ref=target_ref,
                    scene_idx=scene_idx,
                    field=field_name,
                )
            )
            return
        if self.config.preflight_check_urls:
            ok, reason = self._reachable(url)
            if not ok:
                result.errors.append(
                    PreflightIssue(
                        code=f"{code_prefix}_URL_UNREACHABLE",
                        message=f"{label} could not be fetched ({reason}); regenerate it",
                        target_ref=target_ref,
                        scene_idx=scene_idx,
                        field=field_name,
                    )
                )

    def _check_visual(self, result: PreflightResult, assets: SceneAssets) -> bool:
        scene = assets.scene
        ref = f"scene:{scene.id}"
        if scene.display_asset_type == "video":
            video = assets.video
            if video is None or video.status != AttemptStatus.COMPLETED or not video.artifact_url:
                result.errors.append(
                    PreflightIssue(
                        code="VIDEO_MISSING",
                        message=f"Scene {scene.idx} is set to video but has no completed video; "
                        "generate one or switch the scene back to image",
                        target_ref=ref,
                        scene_idx=scene.idx,
                        field="assets.video.url",
                    )
                )
                return False
            before = len(result.errors)
            self._check_url(
                result,
                video.artifact_url,
                code_prefix="VIDEO",
                label=f"Scene {scene.idx} video",
                target_ref=f"attempt:{video.id}",
                scene_idx=scene.idx,
                field_name="assets.video.url",
            )
            return len(result.errors) == before

        image = assets.image
        if image is None or not image.artifact_url:
            result.errors.append(
                PreflightIssue(
                    code="IMAGE_MISSING",
                    message=f"Scene {scene.idx} has no image; generate the scene image",
                    target_ref=ref,
                    scene_idx=scene.idx,
                    field="assets.image.url",
                )
            )
            return False
        before = len(result.errors)
        self._check_url(
            result,
            image.artifact_url,
            code_prefix="IMAGE",
            label=f"Scene {scene.idx} image",
            target_ref=f"attempt:{image.id}",
            scene_idx=scene.idx,
            field_name="assets.image.url",
        )
        return len(result.errors) == before

    def _check_scene_inputs(self, result: PreflightResult, assets: SceneAssets, has_music: bool) -> None:
        scene = assets.scene
        ref = f"scene:{scene.id}"
        if scene.duration_override_ms is not None and scene.duration_override_ms <= 0:
            result.errors.append(
                PreflightIssue(
                    code="INVALID_DURATION",
                    message=f"Scene {scene.idx} has a non-positive duration override; clear or fix it",
                    target_ref=ref,
                    scene_idx=scene.idx,
                    field="duration_override_ms",
                )
            )
        overlays = scene.overlays_json
        if not isinstance(overlays, list) or any(not isinstance(item, dict) for item in overlays):
            result.errors.append(
                PreflightIssue(
                    code="INVALID_OVERLAYS",
                    message=f"Scene {scene.idx} overlays are malformed; re-save the scene overlays",
                    target_ref=ref,
                    scene_idx=scene.idx,
                    field="overlays",
                )
            )
            overlays = []

        narration = str(scene.narration_audio_url or "").strip()
        if narration:
            self._check_url(
                result,
                narration,
                code_prefix="NARRATION",
                label=f"Scene {scene.idx} narration",
                target_ref=ref,
                scene_idx=scene.idx,
                field_name="assets.narration.url",
            )
        elif str(scene.dialogue or "").strip():
            suffix = " (background music will still play)" if has_music else " (the scene will be silent)"
            result.warnings.append(
                PreflightIssue(
                    code="NARRATION_MISSING",
                    message=f"Scene {scene.idx} has dialogue but no narration audio{suffix}",
                    target_ref=ref,
                    scene_idx=scene.idx,
                    field="assets.narration.url",
                )
            )

        if scene.text_render_mode == "baked":
            missing = [item for item in overlays if not str(item.get("image_url") or "").strip()]
            if missing:
                result.warnings.append(
                    PreflightIssue(
                        code="OVERLAY_IMAGE_MISSING",
                        message=f"Scene {scene.idx}: {len(missing)} of {len(overlays)} baked overlays have no "
                        "image and will not be shown",
                        target_ref=ref,
                        scene_idx=scene.idx,
                        field="overlays[].image_url",
                    )
                )

    def validate(self, project: Project) -> PreflightResult:
        project_ref = f"project:{project.id}"
        result = PreflightResult()
        scene_assets = collect_scene_assets(project)
        result.total_count = len(scene_assets)
        if not scene_assets:
            result.errors.append(
                PreflightIssue(
                    code="NO_SCENES",
                    message="Project has no visible scenes; format the source text first",
                    target_ref=project_ref,
                )
            )

        music = (project.settings_json or {}).get("background_music")
        music_url = str(music.get("url") or "").strip() if isinstance(music, dict) else ""
        if music_url:
            self._check_url(
                result,
                music_url,
                code_prefix="MUSIC",
                label="Background music",
                target_ref=project_ref,
                scene_idx=None,
                field_name="background_music.url",
            )

        for assets in scene_assets:
            if self._check_visual(result, assets):
                result.ready_count += 1
            self._check_scene_inputs(result, assets, has_music=bool(music_url))

        logger.info(
            "preflight for project %s: ready=%s errors=%s warnings=%s",
            project.id,
            result.ready,
            len(result.errors),
            len(result.warnings),
        )
        return result


def validate(project: Project, config: Optional[PipelineConfig] = None) -> PreflightResult:
    return PreflightValidator(config).validate(project)
