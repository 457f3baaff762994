# Generated manually for the generation job pipeline.

import django.db.models.deletion
import uuid
from django.db import migrations, models
from django.db.models import Q

ERROR_CLASS_CHOICES = [
    ("transient_rate_limit", "Transient Rate Limit"),
    ("schema_invalid", "Schema Invalid"),
    ("credential_invalid", "Credential Invalid"),
    ("infra_failure", "Infra Failure"),
    ("unknown", "Unknown"),
    ("timeout", "Timeout"),
]

TARGET_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("in_progress", "In progress"),
    ("completed", "Completed"),
    ("failed", "Failed"),
    ("cancelled", "Cancelled"),
]

TARGET_KIND_CHOICES = [
    ("chunk_script", "Chunk script"),
    ("scene_image", "Scene image"),
    ("scene_video", "Scene video"),
    ("project_build", "Project build"),
]

CREDENTIAL_SOURCE_CHOICES = [
    ("primary", "Primary"),
    ("fallback", "Fallback"),
    ("sponsor", "Sponsor"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Project",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("title", models.CharField(max_length=200)),
                ("owner_ref", models.CharField(blank=True, max_length=120)),
                (
                    "source_type",
                    models.CharField(
                        choices=[("text", "Text"), ("audio", "Audio transcript")], default="text", max_length=20
                    ),
                ),
                ("source_text", models.TextField(blank=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("created", "Created"),
                            ("parsed", "Parsed"),
                            ("formatting", "Formatting"),
                            ("formatted", "Formatted"),
                            ("generating_assets", "Generating assets"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        default="created",
                        max_length=30,
                    ),
                ),
                ("settings_json", models.JSONField(blank=True, default=dict)),
                ("last_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.CreateModel(
            name="Target",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("kind", models.CharField(choices=TARGET_KIND_CHOICES, max_length=30)),
                ("idx", models.PositiveIntegerField(default=0)),
                ("input_json", models.JSONField(blank=True, default=dict)),
                ("status", models.CharField(choices=TARGET_STATUS_CHOICES, default="pending", max_length=20)),
                ("error_class", models.CharField(blank=True, choices=ERROR_CLASS_CHOICES, max_length=40)),
                ("error_message", models.TextField(blank=True)),
                ("claim_token", models.UUIDField(blank=True, db_index=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "project",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="targets",
                        to="generation_jobs.project",
                    ),
                ),
            ],
            options={"ordering": ["project", "kind", "idx", "created_at"]},
        ),
        migrations.CreateModel(
            name="Scene",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("idx", models.PositiveIntegerField()),
                ("role", models.CharField(blank=True, max_length=30)),
                ("title", models.CharField(blank=True, max_length=200)),
                ("dialogue", models.TextField(blank=True)),
                ("bullets_json", models.JSONField(blank=True, default=list)),
                ("image_prompt", models.TextField(blank=True)),
                (
                    "display_asset_type",
                    models.CharField(choices=[("image", "Image"), ("video", "Video")], default="image", max_length=10),
                ),
                (
                    "text_render_mode",
                    models.CharField(
                        choices=[
                            ("remotion", "Rendered text"),
                            ("baked", "Baked into overlay images"),
                            ("none", "No text"),
                        ],
                        default="remotion",
                        max_length=10,
                    ),
                ),
                ("overlays_json", models.JSONField(blank=True, default=list)),
                ("narration_audio_url", models.CharField(blank=True, max_length=1000)),
                ("narration_duration_ms", models.PositiveIntegerField(blank=True, null=True)),
                ("duration_override_ms", models.IntegerField(blank=True, null=True)),
                ("is_hidden", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "chunk_target",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="produced_scenes",
                        to="generation_jobs.target",
                    ),
                ),
                (
                    "project",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="scenes",
                        to="generation_jobs.project",
                    ),
                ),
            ],
            options={"ordering": ["project", "idx"], "unique_together": {("project", "idx")}},
        ),
        migrations.AddField(
            model_name="target",
            name="scene",
            field=models.ForeignKey(
                blank=True,
                null=True,
                on_delete=django.db.models.deletion.CASCADE,
                related_name="targets",
                to="generation_jobs.scene",
            ),
        ),
        migrations.AddIndex(
            model_name="target",
            index=models.Index(fields=["project", "kind", "status"], name="target_project_kind_status"),
        ),
        migrations.AddIndex(
            model_name="target",
            index=models.Index(fields=["status", "updated_at"], name="target_status_updated"),
        ),
        migrations.AddConstraint(
            model_name="target",
            constraint=models.UniqueConstraint(
                condition=Q(scene__isnull=False),
                fields=("scene", "kind"),
                name="one_target_per_scene_kind",
            ),
        ),
        migrations.AddConstraint(
            model_name="target",
            constraint=models.UniqueConstraint(
                condition=Q(kind="project_build"),
                fields=("project",),
                name="one_build_target_per_project",
            ),
        ),
        migrations.CreateModel(
            name="Attempt",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("attempt_number", models.PositiveIntegerField()),
                ("provider", models.CharField(default="unknown", max_length=80)),
                ("model_name", models.CharField(blank=True, max_length=120)),
                ("credential_source", models.CharField(blank=True, choices=CREDENTIAL_SOURCE_CHOICES, max_length=20)),
                (
                    "status",
                    models.CharField(
                        choices=[("generating", "Generating"), ("completed", "Completed"), ("failed", "Failed")],
                        default="generating",
                        max_length=20,
                    ),
                ),
                ("is_active", models.BooleanField(default=False)),
                ("artifact_ref", models.CharField(blank=True, max_length=500, null=True)),
                ("artifact_url", models.CharField(blank=True, max_length=1000, null=True)),
                ("external_job_id", models.CharField(blank=True, max_length=200)),
                ("result_json", models.JSONField(blank=True, default=dict)),
                ("tries", models.PositiveIntegerField(default=0)),
                ("error_class", models.CharField(blank=True, choices=ERROR_CLASS_CHOICES, max_length=40)),
                ("error_message", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "target",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="attempts",
                        to="generation_jobs.target",
                    ),
                ),
            ],
            options={
                "ordering": ["target", "-attempt_number"],
                "unique_together": {("target", "attempt_number")},
            },
        ),
        migrations.AddConstraint(
            model_name="attempt",
            constraint=models.UniqueConstraint(
                condition=Q(is_active=True),
                fields=("target",),
                name="one_active_attempt_per_target",
            ),
        ),
        migrations.CreateModel(
            name="RenderJob",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("requested_by", models.CharField(blank=True, max_length=120)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("validating", "Validating"),
                            ("submitted", "Submitted"),
                            ("rendering", "Rendering"),
                            ("uploading", "Uploading"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        default="validating",
                        max_length=20,
                    ),
                ),
                ("external_job_id", models.CharField(blank=True, max_length=200)),
                ("progress_percent", models.PositiveSmallIntegerField(default=0)),
                ("progress_stage", models.CharField(blank=True, max_length=120)),
                ("progress_message", models.CharField(blank=True, max_length=500)),
                ("artifact_url", models.CharField(blank=True, max_length=1000, null=True)),
                ("manifest_json", models.JSONField(blank=True, default=dict)),
                ("manifest_hash", models.CharField(blank=True, max_length=64)),
                ("preflight_json", models.JSONField(blank=True, default=dict)),
                ("error_code", models.CharField(blank=True, max_length=60)),
                ("error_message", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "attempt",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="render_jobs",
                        to="generation_jobs.attempt",
                    ),
                ),
                (
                    "project",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="render_jobs",
                        to="generation_jobs.project",
                    ),
                ),
                (
                    "target",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="render_jobs",
                        to="generation_jobs.target",
                    ),
                ),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.AddConstraint(
            model_name="renderjob",
            constraint=models.UniqueConstraint(
                condition=Q(status__in=["rendering", "submitted", "uploading", "validating"]),
                fields=("project",),
                name="one_active_render_per_project",
            ),
        ),
        migrations.CreateModel(
            name="ProviderCredential",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "owner_ref",
                    models.CharField(blank=True, help_text="Empty for system-wide credentials.", max_length=120),
                ),
                ("provider", models.CharField(max_length=60)),
                ("name", models.CharField(max_length=120)),
                ("source", models.CharField(choices=CREDENTIAL_SOURCE_CHOICES, default="primary", max_length=20)),
                (
                    "auth_type",
                    models.CharField(
                        choices=[("api_key", "API key"), ("env_ref", "Environment variable")],
                        default="api_key",
                        max_length=20,
                    ),
                ),
                ("api_key_encrypted", models.TextField(blank=True)),
                ("env_var_name", models.CharField(blank=True, max_length=120)),
                ("priority", models.IntegerField(default=0)),
                ("enabled", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["provider", "priority", "created_at"],
                "unique_together": {("owner_ref", "provider", "name")},
            },
        ),
        migrations.CreateModel(
            name="JobLock",
            fields=[
                ("key", models.CharField(max_length=120, primary_key=True, serialize=False)),
                ("holder", models.CharField(blank=True, max_length=120)),
                ("locked_until", models.DateTimeField()),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
    ]
