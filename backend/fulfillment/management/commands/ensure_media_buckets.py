"""
Management command to provision the object-storage buckets.

Usage:
    python manage.py ensure_media_buckets

Creates any missing bucket with its content-type and size policy. Buckets
that already exist are left alone, so this is safe to run on every deploy.
"""
from django.core.management.base import BaseCommand, CommandError

from fulfillment.exceptions import MediaStoreError
from fulfillment.providers.media_store import bucket_policies, ensure_buckets


class Command(BaseCommand):
    help = "Create the voice-note, cover and webhook media buckets if they are missing"

    def handle(self, *args, **options):
        try:
            created = ensure_buckets()
        except MediaStoreError as e:
            raise CommandError(str(e)) from e

        for policy in bucket_policies().values():
            verb = "Created" if policy.name in created else "Exists"
            self.stdout.write(f"{verb}: {policy.name} ({policy.max_bytes // (1024 * 1024)}MB, "
                              f"{'public' if policy.public else 'private'})")
        self.stdout.write(self.style.SUCCESS(f"{len(created)} bucket(s) created"))
