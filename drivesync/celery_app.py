"""
Celery application for background sync runs.
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "drivesync.settings")

app = Celery("drivesync")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
