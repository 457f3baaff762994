import uuid

from django.db import models
from django.db.models import Max, Q

from .errors import ERROR_CLASS_CHOICES
from .states import (
    ACTIVE_RENDER_STATUSES,
    AttemptStatus,
    CredentialSource,
    ProjectStatus,
    RenderStatus,
    TargetKind,
    TargetStatus,
)


class Project(models.Model):
    SOURCE_TYPE_CHOICES = [
        ("text", "Text"),
        ("audio", "Audio transcript"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    title = models.CharField(max_length=200)
    owner_ref = models.CharField(max_length=120, blank=True)
    source_type = models.CharField(max_length=20, choices=SOURCE_TYPE_CHOICES, default="text")
    source_text = models.TextField(blank=True)
    status = models.CharField(max_length=30, choices=ProjectStatus.choices, default=ProjectStatus.CREATED)
    settings_json = models.JSONField(default=dict, blank=True)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.title} ({self.status})"


class Target(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name="targets")
    scene = models.ForeignKey(
        "Scene", null=True, blank=True, on_delete=models.CASCADE, related_name="targets"
    )
    kind = models.CharField(max_length=30, choices=TargetKind.choices)
    idx = models.PositiveIntegerField(default=0)
    input_json = models.JSONField(default=dict, blank=True)
    status = models.CharField(max_length=20, choices=TargetStatus.choices, default=TargetStatus.PENDING)
    error_class = models.CharField(max_length=40, choices=ERROR_CLASS_CHOICES, blank=True)
    error_message = models.TextField(blank=True)
    claim_token = models.UUIDField(null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["project", "kind", "idx", "created_at"]
        indexes = [
            models.Index(fields=["project", "kind", "status"], name="target_project_kind_status"),
            models.Index(fields=["status", "updated_at"], name="target_status_updated"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["scene", "kind"],
                condition=Q(scene__isnull=False),
                name="one_target_per_scene_kind",
            ),
            models.UniqueConstraint(
                fields=["project"],
                condition=Q(kind=TargetKind.PROJECT_BUILD),
                name="one_build_target_per_project",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.project_id}:{self.kind}:{self.idx}:{self.status}"


class Scene(models.Model):
    DISPLAY_ASSET_CHOICES = [
        ("image", "Image"),
        ("video", "Video"),
    ]
    TEXT_RENDER_MODE_CHOICES = [
        ("remotion", "Rendered text"),
        ("baked", "Baked into overlay images"),
        ("none", "No text"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name="scenes")
    chunk_target = models.ForeignKey(
        Target, null=True, blank=True, on_delete=models.SET_NULL, related_name="produced_scenes"
    )
    idx = models.PositiveIntegerField()
    role = models.CharField(max_length=30, blank=True)
    title = models.CharField(max_length=200, blank=True)
    dialogue = models.TextField(blank=True)
    bullets_json = models.JSONField(default=list, blank=True)
    image_prompt = models.TextField(blank=True)
    display_asset_type = models.CharField(max_length=10, choices=DISPLAY_ASSET_CHOICES, default="image")
    text_render_mode = models.CharField(max_length=10, choices=TEXT_RENDER_MODE_CHOICES, default="remotion")
    overlays_json = models.JSONField(default=list, blank=True)
    narration_audio_url = models.CharField(max_length=1000, blank=True)
    narration_duration_ms = models.PositiveIntegerField(null=True, blank=True)
    duration_override_ms = models.IntegerField(null=True, blank=True)
    is_hidden = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["project", "idx"]
        unique_together = ("project", "idx")

    def __str__(self) -> str:
        return f"{self.project_id}:scene{self.idx}"

    def target_for(self, kind: str):
        return self.targets.filter(kind=kind).first()

    def active_attempt(self, kind: str):
        return (
            Attempt.objects.filter(target__scene=self, target__kind=kind, is_active=True)
            .select_related("target")
            .first()
        )


class Attempt(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    target = models.ForeignKey(Target, on_delete=models.CASCADE, related_name="attempts")
    attempt_number = models.PositiveIntegerField()
    provider = models.CharField(max_length=80, default="unknown")
    model_name = models.CharField(max_length=120, blank=True)
    credential_source = models.CharField(max_length=20, choices=CredentialSource.choices, blank=True)
    status = models.CharField(max_length=20, choices=AttemptStatus.choices, default=AttemptStatus.GENERATING)
    is_active = models.BooleanField(default=False)
    artifact_ref = models.CharField(max_length=500, null=True, blank=True)
    artifact_url = models.CharField(max_length=1000, null=True, blank=True)
    external_job_id = models.CharField(max_length=200, blank=True)
    result_json = models.JSONField(default=dict, blank=True)
    tries = models.PositiveIntegerField(default=0)
    error_class = models.CharField(max_length=40, choices=ERROR_CLASS_CHOICES, blank=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["target", "-attempt_number"]
        unique_together = ("target", "attempt_number")
        constraints = [
            models.UniqueConstraint(
                fields=["target"],
                condition=Q(is_active=True),
                name="one_active_attempt_per_target",
            ),
        ]

    def __str__(self) -> str:
        flag = " active" if self.is_active else ""
        return f"{self.target_id}:a{self.attempt_number}:{self.status}{flag}"

    def save(self, *args, **kwargs):
        if not self.attempt_number:
            latest = (
                Attempt.objects.filter(target_id=self.target_id)
                .aggregate(max_number=Max("attempt_number"))
                .get("max_number")
            )
            self.attempt_number = (latest or 0) + 1
        super().save(*args, **kwargs)


class RenderJob(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name="render_jobs")
    target = models.ForeignKey(
        Target, null=True, blank=True, on_delete=models.SET_NULL, related_name="render_jobs"
    )
    attempt = models.ForeignKey(
        Attempt, null=True, blank=True, on_delete=models.SET_NULL, related_name="render_jobs"
    )
    requested_by = models.CharField(max_length=120, blank=True)
    status = models.CharField(max_length=20, choices=RenderStatus.choices, default=RenderStatus.VALIDATING)
    external_job_id = models.CharField(max_length=200, blank=True)
    progress_percent = models.PositiveSmallIntegerField(default=0)
    progress_stage = models.CharField(max_length=120, blank=True)
    progress_message = models.CharField(max_length=500, blank=True)
    artifact_url = models.CharField(max_length=1000, null=True, blank=True)
    manifest_json = models.JSONField(default=dict, blank=True)
    manifest_hash = models.CharField(max_length=64, blank=True)
    preflight_json = models.JSONField(default=dict, blank=True)
    error_code = models.CharField(max_length=60, blank=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["project"],
                condition=Q(status__in=sorted(ACTIVE_RENDER_STATUSES)),
                name="one_active_render_per_project",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.project_id}:{self.status}:{self.progress_percent}%"


class ProviderCredential(models.Model):
    AUTH_TYPE_CHOICES = [
        ("api_key", "API key"),
        ("env_ref", "Environment variable"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner_ref = models.CharField(max_length=120, blank=True, help_text="Empty for system-wide credentials.")
    provider = models.CharField(max_length=60)
    name = models.CharField(max_length=120)
    source = models.CharField(max_length=20, choices=CredentialSource.choices, default=CredentialSource.PRIMARY)
    auth_type = models.CharField(max_length=20, choices=AUTH_TYPE_CHOICES, default="api_key")
    api_key_encrypted = models.TextField(blank=True)
    env_var_name = models.CharField(max_length=120, blank=True)
    priority = models.IntegerField(default=0)
    enabled = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["provider", "priority", "created_at"]
        unique_together = ("owner_ref", "provider", "name")

    def __str__(self) -> str:
        owner = self.owner_ref or "system"
        return f"{self.provider}:{owner}:{self.name} ({self.source})"


class JobLock(models.Model):
    key = models.CharField(max_length=120, primary_key=True)
    holder = models.CharField(max_length=120, blank=True)
    locked_until = models.DateTimeField()
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"{self.key} until {self.locked_until.isoformat()}"
