import uuid
from django.db import models


class ConversationState(models.TextChoices):
    AWAITING_INITIAL_CONTACT = "awaiting_initial_contact"
    AWAITING_READINESS = "awaiting_readiness"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class LanguagePreference(models.TextChoices):
    ENGLISH = "en"
    HINDI = "hn"


ACTIVE_STATES = (
    ConversationState.AWAITING_READINESS,
    ConversationState.READY,
    ConversationState.IN_PROGRESS,
)


class Trial(models.Model):
    """
    One storyteller's free-trial engagement. The central entity of the engine.

    Every inbound WhatsApp event and every dispatcher tick mutates this row.
    The "next action at" columns (retry_readiness_at, next_question_scheduled_for,
    the check-in schedules) are what the dispatcher scans; nothing runs on in-process timers.

    current_question_index only moves forward, and only after a VoiceNote for
    the pre-increment index has been persisted.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Buyer (the family member who ordered)
    buyer_phone = models.CharField(max_length=20, db_index=True)
    buyer_name = models.CharField(max_length=255)

    # Storyteller (phone is only known once they message us)
    storyteller_name = models.CharField(max_length=255)
    storyteller_phone = models.CharField(max_length=20, null=True, blank=True, db_index=True)
    language_preference = models.CharField(
        max_length=2, choices=LanguagePreference.choices, default=LanguagePreference.ENGLISH
    )

    album = models.ForeignKey("Album", on_delete=models.PROTECT, related_name="trials")

    # Conversation state machine
    conversation_state = models.CharField(
        max_length=50,
        choices=ConversationState.choices,
        default=ConversationState.AWAITING_INITIAL_CONTACT,
    )
    current_question_index = models.PositiveIntegerField(default=0)

    # Readiness tracking
    welcome_sent_at = models.DateTimeField(null=True, blank=True)
    readiness_asked_at = models.DateTimeField(null=True, blank=True)
    retry_readiness_at = models.DateTimeField(null=True, blank=True)
    retry_count = models.PositiveIntegerField(default=0)
    last_readiness_response = models.CharField(max_length=50, null=True, blank=True)

    # Question delivery
    last_question_sent_at = models.DateTimeField(null=True, blank=True)
    reminder_sent_at = models.DateTimeField(null=True, blank=True)
    question_reminder_count = models.PositiveIntegerField(default=0)
    next_question_scheduled_for = models.DateTimeField(null=True, blank=True)

    # Escalation to the human support channel
    needs_human_followup = models.BooleanField(default=False, db_index=True)
    escalated_at = models.DateTimeField(null=True, blank=True)

    # Check-ins when a storyteller goes quiet (each sent at most once per trial)
    buyer_no_contact_reminder_sent_at = models.DateTimeField(null=True, blank=True)
    storyteller_checkin_scheduled_for = models.DateTimeField(null=True, blank=True)
    storyteller_checkin_sent_at = models.DateTimeField(null=True, blank=True)
    buyer_checkin_scheduled_for = models.DateTimeField(null=True, blank=True)
    buyer_checkin_sent_at = models.DateTimeField(null=True, blank=True)

    # Fulfillment lifecycle
    activated_at = models.DateTimeField(null=True, blank=True)  # payment confirmed / free trial granted
    completed_at = models.DateTimeField(null=True, blank=True)
    fulfillment_requested_at = models.DateTimeField(null=True, blank=True)
    custom_cover_image_url = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "free_trials"
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["conversation_state"], name="idx_trial_state"),
            models.Index(fields=["retry_readiness_at"], name="idx_trial_retry_readiness"),
            models.Index(fields=["next_question_scheduled_for"], name="idx_trial_next_question"),
            models.Index(fields=["storyteller_checkin_scheduled_for"], name="idx_trial_st_checkin"),
            models.Index(fields=["buyer_checkin_scheduled_for"], name="idx_trial_buyer_checkin"),
            models.Index(
                fields=["storyteller_phone", "conversation_state"],
                name="idx_trial_phone_state",
            ),
        ]

    def __str__(self):
        return (
            f"Trial {self.id} for {self.storyteller_name} "
            f"({self.conversation_state}, q={self.current_question_index})"
        )
