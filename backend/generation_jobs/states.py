from typing import Dict, FrozenSet

from django.db import models

from .errors import InvalidTransition


class TargetKind(models.TextChoices):
    CHUNK_SCRIPT = "chunk_script", "Chunk script"
    SCENE_IMAGE = "scene_image", "Scene image"
    SCENE_VIDEO = "scene_video", "Scene video"
    PROJECT_BUILD = "project_build", "Project build"


class TargetStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    IN_PROGRESS = "in_progress", "In progress"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"


class AttemptStatus(models.TextChoices):
    GENERATING = "generating", "Generating"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class CredentialSource(models.TextChoices):
    PRIMARY = "primary", "Primary"
    FALLBACK = "fallback", "Fallback"
    SPONSOR = "sponsor", "Sponsor"


class ProjectStatus(models.TextChoices):
    CREATED = "created", "Created"
    PARSED = "parsed", "Parsed"
    FORMATTING = "formatting", "Formatting"
    FORMATTED = "formatted", "Formatted"
    GENERATING_ASSETS = "generating_assets", "Generating assets"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class RenderStatus(models.TextChoices):
    VALIDATING = "validating", "Validating"
    SUBMITTED = "submitted", "Submitted"
    RENDERING = "rendering", "Rendering"
    UPLOADING = "uploading", "Uploading"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


TERMINAL_TARGET_STATUSES: FrozenSet[str] = frozenset(
    {TargetStatus.COMPLETED, TargetStatus.FAILED, TargetStatus.CANCELLED}
)
OPEN_TARGET_STATUSES: FrozenSet[str] = frozenset({TargetStatus.PENDING, TargetStatus.IN_PROGRESS})

# The `-> pending` edges out of terminal states are only taken by an explicit requeue.
TARGET_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    TargetStatus.PENDING: frozenset({TargetStatus.IN_PROGRESS, TargetStatus.CANCELLED}),
    TargetStatus.IN_PROGRESS: frozenset({TargetStatus.COMPLETED, TargetStatus.FAILED}),
    TargetStatus.COMPLETED: frozenset({TargetStatus.PENDING}),
    TargetStatus.FAILED: frozenset({TargetStatus.PENDING}),
    TargetStatus.CANCELLED: frozenset({TargetStatus.PENDING}),
}

ATTEMPT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    AttemptStatus.GENERATING: frozenset({AttemptStatus.COMPLETED, AttemptStatus.FAILED}),
    AttemptStatus.COMPLETED: frozenset(),
    AttemptStatus.FAILED: frozenset(),
}

ACTIVE_RENDER_STATUSES: FrozenSet[str] = frozenset(
    {RenderStatus.VALIDATING, RenderStatus.SUBMITTED, RenderStatus.RENDERING, RenderStatus.UPLOADING}
)
TERMINAL_RENDER_STATUSES: FrozenSet[str] = frozenset({RenderStatus.COMPLETED, RenderStatus.FAILED})

# Polling is coarse, so a job may skip intermediate stages.
RENDER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    RenderStatus.VALIDATING: frozenset({RenderStatus.SUBMITTED, RenderStatus.FAILED}),
    RenderStatus.SUBMITTED: frozenset(
        {RenderStatus.RENDERING, RenderStatus.UPLOADING, RenderStatus.COMPLETED, RenderStatus.FAILED}
    ),
    RenderStatus.RENDERING: frozenset({RenderStatus.UPLOADING, RenderStatus.COMPLETED, RenderStatus.FAILED}),
    RenderStatus.UPLOADING: frozenset({RenderStatus.COMPLETED, RenderStatus.FAILED}),
    RenderStatus.COMPLETED: frozenset(),
    RenderStatus.FAILED: frozenset(),
}

# Working stage -> stage reached once its targets settle.
STAGE_ADVANCE: Dict[str, str] = {
    ProjectStatus.PARSED: ProjectStatus.FORMATTING,
    ProjectStatus.FORMATTING: ProjectStatus.FORMATTED,
    ProjectStatus.FORMATTED: ProjectStatus.GENERATING_ASSETS,
    ProjectStatus.GENERATING_ASSETS: ProjectStatus.COMPLETED,
}

# Which target kinds are worked on in which project stage.
STAGE_KINDS: Dict[str, FrozenSet[str]] = {
    ProjectStatus.FORMATTING: frozenset({TargetKind.CHUNK_SCRIPT}),
    ProjectStatus.GENERATING_ASSETS: frozenset({TargetKind.SCENE_IMAGE, TargetKind.SCENE_VIDEO}),
}

# Stage a project must be in (or is moved into) before a kind can be claimed.
KIND_ENTRY_STAGE: Dict[str, str] = {
    TargetKind.CHUNK_SCRIPT: ProjectStatus.PARSED,
    TargetKind.SCENE_IMAGE: ProjectStatus.FORMATTED,
    TargetKind.SCENE_VIDEO: ProjectStatus.FORMATTED,
}


def _check(table: Dict[str, FrozenSet[str]], entity: str, current: str, requested: str) -> None:
    if requested not in table.get(current, frozenset()):
        raise InvalidTransition(entity, str(current), str(requested))


def ensure_target_transition(current: str, requested: str) -> None:
    _check(TARGET_TRANSITIONS, "target", current, requested)


def ensure_attempt_transition(current: str, requested: str) -> None:
    _check(ATTEMPT_TRANSITIONS, "attempt", current, requested)


def ensure_render_transition(current: str, requested: str) -> None:
    _check(RENDER_TRANSITIONS, "render job", current, requested)


def working_stage_for_kind(kind: str) -> str:
    for stage, kinds in STAGE_KINDS.items():
        if kind in kinds:
            return stage
    return ""
