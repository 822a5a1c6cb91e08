"""
Dispatcher: periodic scan for trials whose scheduled action time has elapsed.

Runs every DISPATCHER_INTERVAL_MINUTES via django-q Schedule. Each step
selects candidates with a plain query and then acts through the
conversation functions, which claim the row with a conditional UPDATE on
the exact timestamp that was seen. Overlapping runs (or a second cluster)
therefore race at the database and only one of them sends.

A failure on one trial is logged and never stops the sweep; the claim has
already been rescheduled by the conversation function.
"""
import logging
from datetime import datetime, timedelta

from django.conf import settings
from django.db.models import Q

from fulfillment.models import ConversationState, Trial
from fulfillment.services import conversation
from fulfillment.utils import utcnow

logger = logging.getLogger(__name__)

BATCH_SIZE = 200


def _due(queryset):
    return list(queryset.select_related("album").order_by("created_at")[:BATCH_SIZE])


def _run_step(label: str, trials: list[Trial], action, now: datetime) -> int:
    acted = 0
    for trial in trials:
        try:
            if action(trial, now=now):
                acted += 1
        except Exception:
            logger.exception("Dispatcher %s failed for trial %s", label, trial.id)
    if acted:
        logger.info("Dispatcher %s: %d of %d due trials handled", label, acted, len(trials))
    return acted


def run_dispatcher(now: datetime | None = None) -> str:
    """Returns a short status string for the task log."""
    now = now or utcnow()

    # Ready but not yet asked: a crash between the readiness claim and the
    # send, or a failed send waiting out its retry time
    ready = _due(Trial.objects.filter(
        Q(next_question_scheduled_for__isnull=True) | Q(next_question_scheduled_for__lte=now),
        conversation_state=ConversationState.READY,
        storyteller_phone__isnull=False,
    ))

    # Interval after an answer has elapsed
    next_questions = _due(Trial.objects.filter(
        conversation_state=ConversationState.IN_PROGRESS,
        last_question_sent_at__isnull=True,
        next_question_scheduled_for__lte=now,
        storyteller_phone__isnull=False,
    ))

    # Question sent, no answer by the deadline, no reminder yet
    reminders = _due(Trial.objects.filter(
        conversation_state=ConversationState.IN_PROGRESS,
        last_question_sent_at__isnull=False,
        next_question_scheduled_for__lte=now,
        question_reminder_count=0,
        storyteller_phone__isnull=False,
    ))

    readiness = _due(Trial.objects.filter(
        conversation_state=ConversationState.AWAITING_READINESS,
        retry_readiness_at__lte=now,
        needs_human_followup=False,
        storyteller_phone__isnull=False,
    ))

    # Activated, but the storyteller never wrote in
    no_contact = _due(Trial.objects.filter(
        conversation_state=ConversationState.AWAITING_INITIAL_CONTACT,
        activated_at__lte=now - timedelta(hours=settings.BUYER_NO_CONTACT_REMINDER_HOURS),
        buyer_no_contact_reminder_sent_at__isnull=True,
    ))

    storyteller_checkins = _due(Trial.objects.filter(
        conversation_state=ConversationState.IN_PROGRESS,
        storyteller_checkin_scheduled_for__lte=now,
        storyteller_checkin_sent_at__isnull=True,
        storyteller_phone__isnull=False,
    ))

    buyer_checkins = _due(Trial.objects.filter(
        conversation_state=ConversationState.IN_PROGRESS,
        buyer_checkin_scheduled_for__lte=now,
        buyer_checkin_sent_at__isnull=True,
    ))

    counts = {
        "questions": _run_step("ready", ready, conversation.send_question, now),
        "next": _run_step("next question", next_questions, conversation.advance_to_next_question, now),
        "reminders": _run_step("question reminder", reminders, conversation.send_question_reminder, now),
        "readiness": _run_step("readiness retry", readiness, conversation.send_readiness_retry, now),
        "buyer reminders": _run_step(
            "buyer no-contact reminder", no_contact, conversation.send_buyer_no_contact_reminder, now,
        ),
        "storyteller check-ins": _run_step(
            "storyteller check-in", storyteller_checkins, conversation.send_storyteller_checkin, now,
        ),
        "buyer check-ins": _run_step("buyer check-in", buyer_checkins, conversation.send_buyer_checkin, now),
    }
    return "dispatch complete: " + ", ".join(f"{v} {k}" for k, v in counts.items())
