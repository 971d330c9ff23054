"""
Base Django settings for the POS platform.
Common settings shared across all environments.
"""

import os
from pathlib import Path

from celery.schedules import crontab

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Application definition
INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Third-party apps
    "rest_framework",
    # Local apps
    "apps.core",
    "apps.backups",
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

ROOT_URLCONF = "config.urls"

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
    },
]

WSGI_APPLICATION = "config.wsgi.application"

# Password validation
AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.MinimumLengthValidator",
        "OPTIONS": {
            "min_length": 12,
        },
    },
    {
        "NAME": "django.contrib.auth.password_validation.CommonPasswordValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.NumericPasswordValidator",
    },
]

# Internationalization
LANGUAGE_CODE = "en"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# Static files
STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Browser Security Headers
SECURE_CONTENT_TYPE_NOSNIFF = True
X_FRAME_OPTIONS = "DENY"

# Django REST Framework Configuration
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAdminUser",
    ],
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
        "rest_framework.parsers.FormParser",
    ],
}

# Backup Configuration
# BACKUP_ENCRYPTION_KEY has no default: 32 bytes as 64 hex characters or
# urlsafe base64 (Fernet.generate_key() output). Each environment sets it.
BACKUP_ENCRYPTION_KEY = os.getenv("BACKUP_ENCRYPTION_KEY")
BACKUP_LOCAL_PATH = os.getenv("BACKUP_LOCAL_PATH", str(BASE_DIR / "backups"))
BACKUP_RETENTION_DAYS = int(os.getenv("BACKUP_RETENTION_DAYS", "30"))
BACKUP_MAX_SIZE_BYTES = int(os.getenv("BACKUP_MAX_SIZE_BYTES", str(50 * 1024**3)))  # 50 GB
BACKUP_MAX_DURATION_SECONDS = int(os.getenv("BACKUP_MAX_DURATION_SECONDS", "3600"))
BACKUP_SCHEDULE_HOUR = int(os.getenv("BACKUP_SCHEDULE_HOUR", "2"))
BACKUP_SCHEDULE_MINUTE = int(os.getenv("BACKUP_SCHEDULE_MINUTE", "0"))
BACKUP_DATABASE_ALIAS = os.getenv("BACKUP_DATABASE_ALIAS", "default")

# Celery Configuration
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
# Backups are bounded by BACKUP_MAX_DURATION_SECONDS; leave headroom for encryption
CELERY_TASK_TIME_LIMIT = BACKUP_MAX_DURATION_SECONDS + 30 * 60
CELERY_TASK_SOFT_TIME_LIMIT = BACKUP_MAX_DURATION_SECONDS + 25 * 60
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_WORKER_MAX_TASKS_PER_CHILD = 1000

# Celery Beat Schedule for periodic tasks
CELERY_BEAT_SCHEDULE = {
    # Nightly database backup, followed by retention pruning
    "scheduled-database-backup": {
        "task": "apps.backups.tasks.scheduled_backup",
        "schedule": crontab(hour=BACKUP_SCHEDULE_HOUR, minute=BACKUP_SCHEDULE_MINUTE),
        "options": {"queue": "backups", "priority": 10},
    },
}

# Create logs directory if it doesn't exist
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)


def validate_required_env_vars():
    """
    Validate that all required environment variables are set.
    This function should be called at the end of each environment-specific settings file.
    """
    required_vars = {
        "DJANGO_SECRET_KEY": "Django secret key for cryptographic signing",
        "POSTGRES_DB": "PostgreSQL database name",
        "POSTGRES_USER": "PostgreSQL username",
        "POSTGRES_PASSWORD": "PostgreSQL password",
        "POSTGRES_HOST": "PostgreSQL host",
        "REDIS_HOST": "Redis host",
    }

    missing_vars = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing_vars.append(f"{var} ({description})")

    if missing_vars:
        error_msg = (
            "Missing required environment variables:\n"
            + "\n".join(f"  - {var}" for var in missing_vars)
            + "\n\nPlease set these variables in your .env file or environment."
        )
        raise ValueError(error_msg)


def validate_backup_settings(encryption_key, schedule_hour, schedule_minute):
    """
    Validate backup settings at startup.

    The key is checked for presence and length here; EncryptionCodec checks
    the encoding again when the backup service is built.
    """
    if not encryption_key:
        raise ValueError("BACKUP_ENCRYPTION_KEY must be set for secure backups!")

    if len(encryption_key.strip()) < 43:
        raise ValueError(
            "BACKUP_ENCRYPTION_KEY must encode 32 bytes (64 hex characters or urlsafe base64)!"
        )

    if not 0 <= schedule_hour <= 23:
        raise ValueError(f"BACKUP_SCHEDULE_HOUR must be between 0 and 23, got {schedule_hour}")

    if not 0 <= schedule_minute <= 59:
        raise ValueError(
            f"BACKUP_SCHEDULE_MINUTE must be between 0 and 59, got {schedule_minute}"
        )
