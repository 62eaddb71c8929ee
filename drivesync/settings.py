"""
Django settings for running drivesync as a standalone project.

Every value can be overridden from the environment.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "drivesync-insecure-local-key")
DEBUG = os.environ.get("DJANGO_DEBUG", "false").lower() == "true"
ALLOWED_HOSTS: list[str] = []

INSTALLED_APPS = [
    "drivesync",
]

# drivesync keeps no relational state
DATABASES: dict = {}

USE_TZ = True
TIME_ZONE = "UTC"

# Identity store
DRIVESYNC_IDENTITY_FILE = Path(
    os.environ.get(
        "DRIVESYNC_IDENTITY_FILE",
        Path.home() / ".config" / "drivesync" / "identities.json",
    )
)

# Google OAuth client
GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")
GOOGLE_OAUTH_PORT = int(os.environ.get("GOOGLE_OAUTH_PORT", "33344"))

# Drive API
DRIVE_API_TIMEOUT = int(os.environ.get("DRIVE_API_TIMEOUT", "60"))
DRIVE_API_NUM_RETRIES = int(os.environ.get("DRIVE_API_NUM_RETRIES", "3"))
DRIVE_PAGE_SIZE = int(os.environ.get("DRIVE_PAGE_SIZE", "1000"))
DRIVE_UPLOAD_CHUNK_SIZE = int(os.environ.get("DRIVE_UPLOAD_CHUNK_SIZE", str(8 * 1024 * 1024)))
DRIVE_TOKEN_EXPIRY_MARGIN = int(os.environ.get("DRIVE_TOKEN_EXPIRY_MARGIN", "60"))

# Sync engine
SYNC_CONCURRENCY = int(os.environ.get("SYNC_CONCURRENCY", "4"))
SYNC_CHUNK_SIZE = int(os.environ.get("SYNC_CHUNK_SIZE", str(64 * 1024)))
SYNC_SPOOL_MAX_SIZE = int(os.environ.get("SYNC_SPOOL_MAX_SIZE", str(16 * 1024 * 1024)))

# Celery
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_ALWAYS_EAGER = os.environ.get("CELERY_TASK_ALWAYS_EAGER", "false").lower() == "true"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "drivesync": {
            "handlers": ["console"],
            "level": os.environ.get("DRIVESYNC_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "googleapiclient.discovery_cache": {
            "level": "ERROR",
        },
    },
}
