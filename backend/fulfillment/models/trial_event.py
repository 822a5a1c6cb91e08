import uuid
from django.db import models


class TrialEvent(models.Model):
    """
    Append-only audit log for a trial. Support tooling reads it to explain
    why a storyteller looks stuck (duplicate answers, escalations, retries).
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    trial = models.ForeignKey("Trial", on_delete=models.CASCADE, related_name="events")

    event_type = models.CharField(max_length=50, db_index=True)
    # Types: state_changed, welcome_sent, readiness_asked, readiness_reply,
    #        question_sent, question_reminder_sent, voice_note_accepted,
    #        duplicate_voice_note, escalated, activated, fulfillment_requested

    payload = models.JSONField(default=dict, blank=True)
    description = models.TextField()

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "trial_events"
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["trial", "-created_at"], name="idx_trial_event_date"),
        ]

    def __str__(self):
        return f"{self.event_type} for trial={self.trial_id} at {self.created_at}"
