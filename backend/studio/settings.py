import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = os.environ.get("DJANGO_DEBUG", "false").lower() == "true"

ALLOWED_HOSTS = [host.strip() for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",") if host.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "generation_jobs.apps.GenerationJobsConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "studio.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "studio.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("POSTGRES_DB", "studio"),
        "USER": os.environ.get("POSTGRES_USER", "studio"),
        "PASSWORD": os.environ.get("POSTGRES_PASSWORD", "studio"),
        "HOST": os.environ.get("POSTGRES_HOST", "db"),
        "PORT": os.environ.get("POSTGRES_PORT", "5432"),
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("DJANGO_TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "loggers": {
        "generation_jobs": {
            "handlers": ["console"],
            "level": os.environ.get("STUDIO_LOG_LEVEL", "INFO").upper(),
            "propagate": False,
        },
    },
}

# Blob storage providers, same shape the storage registry expects.
BLOB_STORAGE = {
    "storage": {
        "primary": {"name": os.environ.get("STUDIO_BLOB_PROVIDER", "local")},
        "providers": [
            {
                "name": "local",
                "type": "local",
                "local": {
                    "base_path": os.environ.get("STUDIO_BLOB_LOCAL_PATH", "/tmp/studio-blobs"),
                    "public_base_url": os.environ.get("STUDIO_BLOB_PUBLIC_URL", ""),
                },
            },
            {
                "name": "s3",
                "type": "s3",
                "s3": {
                    "bucket": os.environ.get("STUDIO_BLOB_S3_BUCKET", ""),
                    "region": os.environ.get("STUDIO_BLOB_S3_REGION", ""),
                    "prefix": os.environ.get("STUDIO_BLOB_S3_PREFIX", "studio"),
                    "public_base_url": os.environ.get("STUDIO_BLOB_PUBLIC_URL", ""),
                },
            },
        ],
    }
}

GENERATION_PIPELINE = {
    "CHUNK_BATCH_SIZE": int(os.environ.get("STUDIO_CHUNK_BATCH_SIZE", "3")),
    "IMAGE_BATCH_SIZE": int(os.environ.get("STUDIO_IMAGE_BATCH_SIZE", "1")),
    "VIDEO_BATCH_SIZE": int(os.environ.get("STUDIO_VIDEO_BATCH_SIZE", "1")),
    "RETRY_MAX_TRIES": int(os.environ.get("STUDIO_RETRY_MAX_TRIES", "3")),
    "RETRY_BASE_SECONDS": float(os.environ.get("STUDIO_RETRY_BASE_SECONDS", "1.0")),
    "RETRY_CAP_SECONDS": float(os.environ.get("STUDIO_RETRY_CAP_SECONDS", "30.0")),
    "INVOCATION_BUDGET_SECONDS": float(os.environ.get("STUDIO_INVOCATION_BUDGET_SECONDS", "120.0")),
    "SCRIPT_TEMPERATURE": float(os.environ.get("STUDIO_SCRIPT_TEMPERATURE", "0.7")),
    "SCRIPT_RETRY_TEMPERATURE": float(os.environ.get("STUDIO_SCRIPT_RETRY_TEMPERATURE", "0.3")),
    "STUCK_TARGET_MINUTES": int(os.environ.get("STUDIO_STUCK_TARGET_MINUTES", "5")),
    "STUCK_RENDER_MINUTES": int(os.environ.get("STUDIO_STUCK_RENDER_MINUTES", "30")),
    "PREFLIGHT_CHECK_URLS": os.environ.get("STUDIO_PREFLIGHT_CHECK_URLS", "false").lower() == "true",
    "SITE_URL": os.environ.get("STUDIO_SITE_URL", ""),
    "SCRIPT_PROVIDER": os.environ.get("STUDIO_SCRIPT_PROVIDER", "openai"),
    "SCRIPT_MODEL": os.environ.get("STUDIO_SCRIPT_MODEL", "gpt-4o-2024-08-06"),
    "IMAGE_PROVIDER": os.environ.get("STUDIO_IMAGE_PROVIDER", "google"),
    "IMAGE_MODEL": os.environ.get("STUDIO_IMAGE_MODEL", "gemini-3-pro-image-preview"),
    "VIDEO_PROVIDER": os.environ.get("STUDIO_VIDEO_PROVIDER", "google"),
    "VIDEO_MODEL": os.environ.get("STUDIO_VIDEO_MODEL", "veo-2.0-generate-001"),
    "VIDEO_SERVICE_URL": os.environ.get("STUDIO_VIDEO_SERVICE_URL", ""),
    "RENDER_SERVICE_URL": os.environ.get("STUDIO_RENDER_SERVICE_URL", ""),
    "RENDER_SERVICE_TOKEN": os.environ.get("STUDIO_RENDER_SERVICE_TOKEN", ""),
}
