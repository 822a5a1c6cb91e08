"""
Management command to register the engine's periodic tasks with django-q.

Usage:
    python manage.py setup_dispatcher

Creates (or updates) three Schedule entries:
- kahani_dispatcher           run_dispatcher() every DISPATCHER_INTERVAL_MINUTES
- kahani_reconcile_payments   reconcile_payments() every 5 minutes
- kahani_retry_voice_notes    retry_stale_voice_notes() every 15 minutes

Safe to run multiple times: it uses update_or_create.
"""
from django.conf import settings
from django.core.management.base import BaseCommand
from django_q.models import Schedule

RECONCILE_INTERVAL_MINUTES = 5
VOICE_NOTE_RETRY_INTERVAL_MINUTES = 15


class Command(BaseCommand):
    help = "Register the dispatcher, payment reconciler and voice-note retry tasks with django-q"

    def handle(self, *args, **options):
        tasks = [
            ("kahani_dispatcher", "fulfillment.services.dispatcher.run_dispatcher",
             settings.DISPATCHER_INTERVAL_MINUTES),
            ("kahani_reconcile_payments", "fulfillment.services.reconciler.reconcile_payments",
             RECONCILE_INTERVAL_MINUTES),
            ("kahani_retry_voice_notes", "fulfillment.services.voice_notes.retry_stale_voice_notes",
             VOICE_NOTE_RETRY_INTERVAL_MINUTES),
        ]
        for name, func, minutes in tasks:
            schedule, created = Schedule.objects.update_or_create(
                name=name,
                defaults={
                    "func": func,
                    "schedule_type": Schedule.MINUTES,
                    "minutes": minutes,
                    "repeats": -1,  # run forever
                },
            )
            verb = "Created" if created else "Updated"
            self.stdout.write(self.style.SUCCESS(
                f"{verb} periodic task: {schedule.name} (every {minutes} minutes)"
            ))
