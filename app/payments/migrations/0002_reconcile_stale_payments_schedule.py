"""
Add celery-beat schedule for the stale payment sweep.

Runs payments.tasks.reconcile_stale_payments every 15 minutes so pending
payments whose webhook never arrived are verified with their provider.
"""

from django.db import migrations

TASK_NAME = "Reconcile Stale Payments"


def create_periodic_task(apps, schema_editor):
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    schedule, _ = IntervalSchedule.objects.get_or_create(
        every=15,
        period="minutes",
    )

    PeriodicTask.objects.get_or_create(
        name=TASK_NAME,
        defaults={
            "task": "payments.tasks.reconcile_stale_payments",
            "interval": schedule,
            "enabled": True,
            "description": (
                "Verifies pending payments older than PAYMENT_RECONCILE_AFTER_MINUTES "
                "with their provider and applies the result."
            ),
        },
    )


def remove_periodic_task(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")
    PeriodicTask.objects.filter(name=TASK_NAME).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("payments", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_task, remove_periodic_task),
    ]
