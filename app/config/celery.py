"""
Celery configuration for the media store.

Celery runs the maintenance side of the media store:
- Periodic reconciliation of orphaned blobs left by best-effort cleanup
- Periodic removal of FileHash rows whose reference count reached zero
- Background derivative generation for stored blobs

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all installed Django apps, and the periodic
schedule lives in settings.CELERY_BEAT_SCHEDULE.

Usage:
    from mediastore.tasks import generate_derivative

    generate_derivative.delay(file_hash, "/srv/media/derived/x.webp", {"max_width": 800})

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings should be prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Celery will look for a tasks.py module in each installed app
app.autodiscover_tasks()
