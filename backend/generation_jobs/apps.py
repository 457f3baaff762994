from django.apps import AppConfig


class GenerationJobsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "generation_jobs"
    label = "generation_jobs"
