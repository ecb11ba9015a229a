"""
Celery configuration for the Django application.

Celery runs the payment background work:
- Webhook event processing (enqueued by the webhook views)
- Periodic sweeps (failed webhook retries, stale payment reconciliation)

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all installed Django apps. Periodic schedules
live in the database (django-celery-beat) and are created by migrations.

Usage:
    from payments.tasks import process_webhook_event

    process_webhook_event.delay(str(webhook_event.id))

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
