import uuid
from django.db import models


class DownloadStatus(models.TextChoices):
    PENDING = "pending"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


class VoiceNote(models.Model):
    """
    One recorded answer to one album question.

    The row is created as soon as the inbound media event is accepted
    (download_status=pending); the media bytes are materialized later by a
    background task. At most one row exists per (trial, question_index): the
    first accepted answer is authoritative.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    trial = models.ForeignKey("Trial", on_delete=models.CASCADE, related_name="voice_notes")

    question_index = models.PositiveIntegerField()
    question_text = models.TextField()  # Denormalized, album content may change later

    # Messaging-platform reference and durable copy
    media_id = models.CharField(max_length=255)
    media_url = models.TextField(null=True, blank=True)
    content_sha256 = models.CharField(max_length=64, null=True, blank=True)
    mime_type = models.CharField(max_length=100, default="audio/ogg")
    size_bytes = models.PositiveIntegerField(null=True, blank=True)

    download_status = models.CharField(
        max_length=20, choices=DownloadStatus.choices, default=DownloadStatus.PENDING
    )
    download_attempts = models.PositiveIntegerField(default=0)

    received_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "voice_notes"
        ordering = ["trial", "question_index"]
        constraints = [
            models.UniqueConstraint(
                fields=["trial", "question_index"], name="uniq_voice_note_trial_question"
            ),
        ]
        indexes = [
            models.Index(fields=["download_status", "received_at"], name="idx_voice_note_download"),
        ]

    def __str__(self):
        return f"VoiceNote q={self.question_index} for trial={self.trial_id} ({self.download_status})"
