from django.contrib import admin

from .models import Attempt, JobLock, Project, ProviderCredential, RenderJob, Scene, Target


class TargetInline(admin.TabularInline):
    model = Target
    extra = 0
    fields = ("kind", "idx", "status", "error_class", "updated_at")
    readonly_fields = ("kind", "idx", "status", "error_class", "updated_at")
    show_change_link = True


class AttemptInline(admin.TabularInline):
    model = Attempt
    extra = 0
    fields = ("attempt_number", "status", "is_active", "credential_source", "tries", "artifact_url", "created_at")
    readonly_fields = fields
    ordering = ("-attempt_number",)


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ("title", "status", "owner_ref", "source_type", "updated_at")
    list_filter = ("status", "source_type")
    search_fields = ("title", "owner_ref")
    ordering = ("-created_at",)
    readonly_fields = ("status", "created_at", "updated_at")
    inlines = [TargetInline]


@admin.register(Scene)
class SceneAdmin(admin.ModelAdmin):
    list_display = ("project", "idx", "role", "title", "display_asset_type", "is_hidden")
    list_filter = ("display_asset_type", "text_render_mode", "is_hidden")
    search_fields = ("title", "dialogue")
    ordering = ("project", "idx")


@admin.register(Target)
class TargetAdmin(admin.ModelAdmin):
    list_display = ("project", "kind", "idx", "status", "error_class", "updated_at")
    list_filter = ("kind", "status", "error_class")
    search_fields = ("project__title", "error_message")
    readonly_fields = ("status", "claim_token", "error_class", "error_message", "created_at", "updated_at")
    inlines = [AttemptInline]


@admin.register(Attempt)
class AttemptAdmin(admin.ModelAdmin):
    list_display = ("target", "attempt_number", "status", "is_active", "provider", "credential_source", "tries")
    list_filter = ("status", "is_active", "provider", "credential_source")
    readonly_fields = ("status", "is_active", "tries", "error_class", "error_message", "created_at", "updated_at")


@admin.register(RenderJob)
class RenderJobAdmin(admin.ModelAdmin):
    list_display = ("project", "status", "progress_percent", "error_code", "created_at", "completed_at")
    list_filter = ("status", "error_code")
    readonly_fields = ("manifest_json", "manifest_hash", "preflight_json", "created_at", "updated_at")


@admin.register(ProviderCredential)
class ProviderCredentialAdmin(admin.ModelAdmin):
    list_display = ("provider", "owner_ref", "name", "source", "auth_type", "priority", "enabled")
    list_filter = ("provider", "source", "auth_type", "enabled")
    search_fields = ("name", "owner_ref")
    exclude = ("api_key_encrypted",)


@admin.register(JobLock)
class JobLockAdmin(admin.ModelAdmin):
    list_display = ("key", "holder", "locked_until", "updated_at")
