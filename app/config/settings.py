"""
Django settings for the media store service.

This is the single settings file for all environments. Configuration is driven
by environment variables using django-environ, following the 12-factor app
methodology.

Environment files:
    - .env.development: Development settings (DEBUG=True, SQLite database)
    - .env.production: Production settings (DEBUG=False, PostgreSQL)

For more information on this file, see:
https://docs.djangoproject.com/en/5.2/topics/settings/
"""

import os
from pathlib import Path

import environ

# =============================================================================
# Path Configuration
# =============================================================================
# Build paths inside the project: BASE_DIR / 'subdir'
BASE_DIR = Path(__file__).resolve().parent.parent

# =============================================================================
# Environment Configuration
# =============================================================================
env = environ.Env(
    DEBUG=(bool, False),  # Default to False for safety
    ALLOWED_HOSTS=(list, []),
    LOG_LEVEL=(str, "INFO"),
)

# Note: In Docker, env vars are passed directly; .env files are for local dev
env_file = os.environ.get("ENV_FILE", BASE_DIR.parent / ".env.development")
if Path(env_file).exists():
    environ.Env.read_env(env_file)

# =============================================================================
# Core Settings
# =============================================================================
# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = env("SECRET_KEY", default="insecure-development-key-change-me")

DEBUG = env("DEBUG")

ALLOWED_HOSTS = env("ALLOWED_HOSTS")

# =============================================================================
# Application Definition
# =============================================================================
INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    # Local apps
    "core",
    "mediastore",
]

# =============================================================================
# Database Configuration
# =============================================================================
# PostgreSQL in production (DATABASE_URL=postgres://...), SQLite locally.
DATABASES = {
    "default": env.db(
        "DATABASE_URL",
        default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}",
    ),
}

if DATABASES["default"]["ENGINE"] == "django.db.backends.sqlite3":
    # Concurrent ingest threads queue for the write lock instead of failing
    DATABASES["default"].setdefault("OPTIONS", {}).update(
        {"transaction_mode": "IMMEDIATE", "timeout": 20}
    )
    # A file, not shared-cache memory, so test threads get real locking
    DATABASES["default"]["TEST"] = {"NAME": str(BASE_DIR / "test_db.sqlite3")}

# =============================================================================
# Celery Configuration
# =============================================================================
CELERY_BROKER_URL = env("CELERY_BROKER_URL", default="redis://redis:6379/1")
CELERY_RESULT_BACKEND = env("CELERY_RESULT_BACKEND", default="redis://redis:6379/1")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = "UTC"
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 30 * 60  # 30 minutes
CELERY_TASK_ALWAYS_EAGER = env.bool("CELERY_TASK_ALWAYS_EAGER", default=False)

CELERY_BEAT_SCHEDULE = {
    "mediastore-reconcile-orphaned-blobs": {
        "task": "mediastore.tasks.reconcile_orphaned_blobs",
        "schedule": 24 * 60 * 60,  # daily
    },
    "mediastore-cleanup-unreferenced-hashes": {
        "task": "mediastore.tasks.cleanup_unreferenced_hashes",
        "schedule": 60 * 60,  # hourly
    },
}

# =============================================================================
# Media Store Configuration
# =============================================================================
# Content-addressed storage root. Blobs live under <root>/hashes, thumbnails
# under <root>/thumbnails. Public URLs strip this prefix.
MEDIASTORE_ROOT = Path(env("MEDIASTORE_ROOT", default=str(BASE_DIR / "uploads" / "media")))
MEDIASTORE_URL = env("MEDIASTORE_URL", default="/media/")

# Advisory cap on simultaneously uploading tasks
MEDIASTORE_MAX_CONCURRENT_UPLOADS = env.int(
    "MEDIASTORE_MAX_CONCURRENT_UPLOADS", default=3
)

# Terminal upload tasks are purged after this window
MEDIASTORE_TASK_RETENTION_HOURS = env.int("MEDIASTORE_TASK_RETENTION_HOURS", default=24)
MEDIASTORE_TASK_SWEEP_INTERVAL_SECONDS = env.int(
    "MEDIASTORE_TASK_SWEEP_INTERVAL_SECONDS", default=60 * 60
)

# Worker threads for derivative (resize/encode) jobs
MEDIASTORE_DERIVATIVE_WORKERS = env.int("MEDIASTORE_DERIVATIVE_WORKERS", default=2)

# Attempts for the create-then-collide ingest loop
MEDIASTORE_INGEST_MAX_ATTEMPTS = env.int("MEDIASTORE_INGEST_MAX_ATTEMPTS", default=3)
MEDIASTORE_INGEST_RETRY_BACKOFF_SECONDS = env.float(
    "MEDIASTORE_INGEST_RETRY_BACKOFF_SECONDS", default=0.05
)

# Files without a FileHash row are only reclaimed once older than this
MEDIASTORE_ORPHAN_GRACE_HOURS = env.int("MEDIASTORE_ORPHAN_GRACE_HOURS", default=24)

# =============================================================================
# Internationalization
# =============================================================================
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# =============================================================================
# Default Primary Key Field Type
# =============================================================================
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL = env("LOG_LEVEL")

# Log file name determined by service (web, celery-worker, celery-beat)
LOG_FILE_NAME = env("LOG_FILE_NAME", default="mediastore.log")
LOG_DIR = BASE_DIR / "logs"

# Ensure log directory exists (handles local development without Docker)
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {message}",
            "style": "{",
        },
        "file": {
            "format": "[{asctime}] {levelname} {name} {module}:{lineno} - {message}",
            "style": "{",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
        "file": {
            # Max 10MB per file, keeps 5 backups
            "level": "DEBUG",
            "class": "logging.handlers.RotatingFileHandler",
            "filename": LOG_DIR / LOG_FILE_NAME,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "formatter": "file",
            "encoding": "utf-8",
        },
    },
    "root": {
        "handlers": ["console", "file"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django": {
            "handlers": ["console", "file"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "celery": {
            "handlers": ["console", "file"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "mediastore": {
            "handlers": ["console", "file"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}
