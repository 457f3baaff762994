import hashlib
import json
from typing import Any, Dict, List, Optional, Tuple

from .config import PipelineConfig
from .errors import PipelineError, PreflightFailed
from .models import Project
from .preflight import PreflightResult, SceneAssets, collect_scene_assets
from .storage.registry import absolute_url

MANIFEST_VERSION = "1.0"

DEFAULT_SCENE_DURATION_MS = 5000
AUDIO_PADDING_MS = 500
TEXT_DURATION_MS_PER_CHAR = 300
MIN_DURATION_MS = 2000
MAX_DURATION_MS = 600000
KEN_BURNS_ZOOM = 1.05

OUTPUT_PRESETS: Dict[str, Dict[str, Any]] = {
    "yt_long": {"aspect_ratio": "16:9", "width": 1920, "height": 1080, "fps": 30},
    "short_vertical": {"aspect_ratio": "9:16", "width": 1080, "height": 1920, "fps": 30},
    "yt_shorts": {"aspect_ratio": "9:16", "width": 1080, "height": 1920, "fps": 30},
    "reels": {"aspect_ratio": "9:16", "width": 1080, "height": 1920, "fps": 30},
    "tiktok": {"aspect_ratio": "9:16", "width": 1080, "height": 1920, "fps": 30},
    "square": {"aspect_ratio": "1:1", "width": 1080, "height": 1080, "fps": 30},
}
DEFAULT_OUTPUT_PRESET = "yt_long"


def _clamp(value: int) -> int:
    return min(max(int(value), MIN_DURATION_MS), MAX_DURATION_MS)


def scene_duration_ms(assets: SceneAssets) -> Tuple[int, str]:
    """Duration of one scene and the reason it was chosen.

    Priority: video length, narration length plus padding, manual override,
    dialogue estimate, default.
    """
    scene = assets.scene
    if scene.display_asset_type == "video" and assets.video is not None:
        video_ms = (assets.video.result_json or {}).get("duration_ms")
        if isinstance(video_ms, (int, float)) and video_ms > 0:
            return _clamp(video_ms), "video"
    if scene.narration_duration_ms:
        return _clamp(scene.narration_duration_ms + AUDIO_PADDING_MS), "voice"
    if scene.duration_override_ms is not None and scene.duration_override_ms > 0:
        return _clamp(scene.duration_override_ms), "manual"
    dialogue = str(scene.dialogue or "").strip()
    if dialogue:
        estimate = max(MIN_DURATION_MS, len(dialogue) * TEXT_DURATION_MS_PER_CHAR) + AUDIO_PADDING_MS
        return _clamp(estimate), "estimate"
    return DEFAULT_SCENE_DURATION_MS, "default"


def _visual(assets: SceneAssets, site_url: str) -> Dict[str, Any]:
    scene = assets.scene
    asset = assets.video if scene.display_asset_type == "video" else assets.image
    if asset is None or not asset.artifact_url:
        raise PipelineError(
            "ASSET_MISSING",
            f"Scene {scene.idx} lost its active {scene.display_asset_type} after preflight; run preflight again",
            details={"scene_idx": scene.idx},
        )
    if scene.display_asset_type == "video":
        return {
            "type": "video",
            "video_url": absolute_url(assets.video.artifact_url, site_url),
            "effect": {"type": "none", "zoom": 1.0, "pan": "center"},
        }
    return {
        "type": "image",
        "image_url": absolute_url(assets.image.artifact_url, site_url),
        "effect": {"type": "kenburns", "zoom": KEN_BURNS_ZOOM, "pan": "center"},
    }


def _overlays(assets: SceneAssets, site_url: str) -> List[Dict[str, Any]]:
    scene = assets.scene
    if scene.text_render_mode == "none":
        return []
    overlays: List[Dict[str, Any]] = []
    for item in scene.overlays_json or []:
        overlay = dict(item)
        if scene.text_render_mode == "baked":
            image_url = str(overlay.get("image_url") or "").strip()
            if not image_url:
                continue
            overlay["image_url"] = absolute_url(image_url, site_url)
        overlays.append(overlay)
    return overlays


def manifest_hash(manifest: Dict[str, Any]) -> str:
    canonical = json.dumps(manifest, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compose_manifest(
    project: Project,
    preflight: PreflightResult,
    config: Optional[PipelineConfig] = None,
) -> Dict[str, Any]:
    if not preflight.ready:
        raise PreflightFailed(preflight)
    config = config or PipelineConfig.from_settings()
    site_url = config.site_url
    settings_json = project.settings_json or {}
    preset_id = str(settings_json.get("output_preset") or DEFAULT_OUTPUT_PRESET)
    preset = OUTPUT_PRESETS.get(preset_id) or OUTPUT_PRESETS[DEFAULT_OUTPUT_PRESET]

    scenes: List[Dict[str, Any]] = []
    cursor = 0
    for assets in collect_scene_assets(project):
        scene = assets.scene
        duration, reason = scene_duration_ms(assets)
        narration = str(scene.narration_audio_url or "").strip()
        scenes.append(
            {
                "idx": scene.idx,
                "role": scene.role,
                "title": scene.title,
                "dialogue": scene.dialogue,
                "bullets": list(scene.bullets_json or []),
                "text_render_mode": scene.text_render_mode,
                "start_ms": cursor,
                "duration_ms": duration,
                "duration_reason": reason,
                "visual": _visual(assets, site_url),
                "narration": (
                    {"url": absolute_url(narration, site_url), "duration_ms": scene.narration_duration_ms}
                    if narration
                    else None
                ),
                "overlays": _overlays(assets, site_url),
            }
        )
        cursor += duration

    music = settings_json.get("background_music")
    background_music = None
    if isinstance(music, dict) and str(music.get("url") or "").strip():
        background_music = {
            "url": absolute_url(str(music["url"]).strip(), site_url),
            "volume": float(music.get("volume", 0.25)),
            "loop": bool(music.get("loop", True)),
        }

    return {
        "version": MANIFEST_VERSION,
        "project": {"id": str(project.id), "title": project.title},
        "output": {"preset": preset_id if preset_id in OUTPUT_PRESETS else DEFAULT_OUTPUT_PRESET, **preset},
        "total_duration_ms": cursor,
        "background_music": background_music,
        "scenes": scenes,
    }
