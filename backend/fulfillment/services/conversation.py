"""
Conversation State Machine

    awaiting_initial_contact → awaiting_readiness → ready → in_progress → completed

Every transition is a conditional UPDATE on the state (and, for scheduled
actions, on the timestamp that was seen). The returned row count decides
who owns the transition, so a webhook handler and an overlapping dispatcher
run can never both send the same prompt. Outbound sends happen after the
claim; a failed send puts the row back with a retry time instead of
dropping the trial.

Timestamps that drive the dispatcher:
- retry_readiness_at: readiness reminder (or escalation) is due.
- next_question_scheduled_for:
    last_question_sent_at is NULL  → the next question is due (after an answer)
    last_question_sent_at is set   → the single question reminder is due
- storyteller_checkin_scheduled_for: set by the question reminder; check in once.
- buyer_checkin_scheduled_for: set by the storyteller check-in; tell the buyer once.
An accepted answer clears both check-in schedules.
"""
import logging
from datetime import datetime, timedelta
from uuid import UUID

from django.conf import settings
from django.db import transaction

from fulfillment.exceptions import DuplicateVoiceNote, MessagingError
from fulfillment.models import ConversationState, Trial, VoiceNote
from fulfillment.providers.whatsapp import get_messaging_provider
from fulfillment.services import messages, voice_notes
from fulfillment.services.album_catalog import question_count, question_text
from fulfillment.services.audit import record_trial_event
from fulfillment.services.readiness_classifier import NO, YES, get_readiness_classifier
from fulfillment.utils import utcnow

logger = logging.getLogger(__name__)


# ─── Helpers ─────────────────────────────────────────────────────────────────

def readiness_retry_at(retry_count: int, now: datetime) -> datetime:
    """Exponential backoff: base * factor**retry_count hours after now."""
    hours = settings.READINESS_RETRY_BASE_HOURS * (settings.READINESS_RETRY_BACKOFF_FACTOR ** retry_count)
    return now + timedelta(hours=hours)


def failure_retry_at(now: datetime) -> datetime:
    return now + timedelta(minutes=settings.DISPATCH_FAILURE_RETRY_MINUTES)


def _send(phone: str, text: str) -> str:
    return get_messaging_provider().send_text(phone, text)


def _send_quietly(phone: str | None, text: str, context: str) -> bool:
    """Best-effort send for courtesy messages whose loss doesn't affect state."""
    if not phone:
        return False
    try:
        _send(phone, text)
        return True
    except MessagingError as e:
        logger.error("Failed to send %s to %s: %s", context, phone, e)
        return False


def _reload(trial_id) -> Trial:
    return Trial.objects.select_related("album").get(id=trial_id)


# ─── Initial contact & readiness ─────────────────────────────────────────────

def start_conversation(trial: Trial, phone: str) -> bool:
    """
    First inbound message from the storyteller: send the welcome and ask
    readiness. Returns False if another handler already started this trial.
    """
    now = utcnow()
    claimed = Trial.objects.filter(
        id=trial.id, conversation_state=ConversationState.AWAITING_INITIAL_CONTACT,
    ).update(
        conversation_state=ConversationState.AWAITING_READINESS,
        welcome_sent_at=now,
        storyteller_phone=phone,
        updated_at=now,
    )
    if not claimed:
        logger.info("Trial %s already past initial contact; skipping welcome", trial.id)
        return False

    welcome = messages.render(
        "welcome", trial.language_preference,
        storyteller_name=trial.storyteller_name, buyer_name=trial.buyer_name,
    )
    try:
        _send(phone, welcome)
    except MessagingError:
        Trial.objects.filter(
            id=trial.id, conversation_state=ConversationState.AWAITING_READINESS, welcome_sent_at=now,
        ).update(
            conversation_state=ConversationState.AWAITING_INITIAL_CONTACT,
            welcome_sent_at=None,
            updated_at=utcnow(),
        )
        raise

    record_trial_event(trial, "welcome_sent", f"Welcome sent to {phone}")
    logger.info("Trial %s: welcome sent to %s", trial.id, phone)

    ask_readiness(_reload(trial.id), now=now)
    return True


def ask_readiness(trial: Trial, now: datetime | None = None) -> bool:
    """
    Send the readiness prompt and schedule the timeout after which the
    dispatcher asks again. A failed send is rescheduled, not counted.
    """
    now = now or utcnow()
    prompt = messages.render(
        "readiness_prompt", trial.language_preference, storyteller_name=trial.storyteller_name,
    )
    try:
        _send(trial.storyteller_phone, prompt)
    except MessagingError as e:
        logger.error("Trial %s: readiness prompt failed (%s); retrying later", trial.id, e)
        Trial.objects.filter(id=trial.id).update(retry_readiness_at=failure_retry_at(now), updated_at=now)
        return False

    retry_at = readiness_retry_at(trial.retry_count, now)
    Trial.objects.filter(id=trial.id).update(
        readiness_asked_at=now, retry_readiness_at=retry_at, updated_at=now,
    )
    record_trial_event(trial, "readiness_asked", "Readiness prompt sent", {"retry_at": retry_at.isoformat()})
    logger.info("Trial %s: readiness asked, retry at %s", trial.id, retry_at)
    return True


def handle_readiness_reply(trial: Trial, text: str) -> str:
    """
    Classify a reply while awaiting readiness. "yes" moves the trial to
    ready and sends the current question; anything else keeps waiting and
    reschedules the next readiness check. Returns the classification.
    """
    label = get_readiness_classifier().classify(text)
    now = utcnow()
    record_trial_event(trial, "readiness_reply", f"Readiness reply classified as {label}",
                       {"text": (text or "")[:200], "label": label})

    if label == YES:
        claimed = Trial.objects.filter(
            id=trial.id, conversation_state=ConversationState.AWAITING_READINESS,
        ).update(
            conversation_state=ConversationState.READY,
            last_readiness_response=label,
            retry_readiness_at=None,
            retry_count=0,
            needs_human_followup=False,
            next_question_scheduled_for=None,
            updated_at=now,
        )
        if claimed:
            logger.info("Trial %s: storyteller ready", trial.id)
            send_question(_reload(trial.id), now=now)
        return label

    # Flagged trials wait for a human or a "yes"; no more automatic retries
    retry_at = None if trial.needs_human_followup else readiness_retry_at(trial.retry_count, now)
    Trial.objects.filter(
        id=trial.id, conversation_state=ConversationState.AWAITING_READINESS,
    ).update(last_readiness_response=label, retry_readiness_at=retry_at, updated_at=now)

    key = "readiness_later" if label == NO else "readiness_unclear"
    _send_quietly(
        trial.storyteller_phone, messages.render(key, trial.language_preference), f"{key} reply",
    )
    logger.info("Trial %s: readiness reply %r, next check at %s", trial.id, label, retry_at)
    return label


def send_readiness_retry(trial: Trial, now: datetime | None = None) -> bool:
    """
    Dispatcher action for an elapsed retry_readiness_at: re-ask and count
    the retry. The retry that reaches READINESS_MAX_RETRIES flags the trial
    for human follow-up; it stays in awaiting_readiness.
    """
    now = now or utcnow()
    seen_at, seen_count = trial.retry_readiness_at, trial.retry_count
    new_count = seen_count + 1
    capped = new_count >= settings.READINESS_MAX_RETRIES

    claimed = Trial.objects.filter(
        id=trial.id,
        conversation_state=ConversationState.AWAITING_READINESS,
        retry_readiness_at=seen_at,
        retry_count=seen_count,
    ).update(
        retry_count=new_count,
        readiness_asked_at=now,
        retry_readiness_at=None if capped else readiness_retry_at(new_count, now),
        updated_at=now,
    )
    if not claimed:
        return False

    prompt = messages.render(
        "readiness_prompt", trial.language_preference, storyteller_name=trial.storyteller_name,
    )
    try:
        _send(trial.storyteller_phone, prompt)
    except MessagingError:
        Trial.objects.filter(id=trial.id, retry_count=new_count, readiness_asked_at=now).update(
            retry_count=seen_count, retry_readiness_at=failure_retry_at(now), updated_at=utcnow(),
        )
        raise

    record_trial_event(trial, "readiness_retry", f"Readiness reminder {new_count} sent", {"retry_count": new_count})
    logger.info("Trial %s: readiness reminder %d sent", trial.id, new_count)

    if capped:
        escalate_to_support(_reload(trial.id), reason=f"no readiness confirmation after {new_count} reminders")
    return True


def escalate_to_support(trial: Trial, reason: str) -> bool:
    """
    Flag the trial for human follow-up and notify the support channel.
    The flag is the durable signal; the notification is best-effort.
    Returns False if the trial was already flagged.
    """
    now = utcnow()
    flagged = Trial.objects.filter(id=trial.id, needs_human_followup=False).update(
        needs_human_followup=True, escalated_at=now, updated_at=now,
    )
    if not flagged:
        return False

    record_trial_event(trial, "escalated", f"Escalated to support: {reason}")
    logger.warning("Trial %s escalated to support: %s", trial.id, reason)

    support_phone = settings.SUPPORT_ESCALATION_PHONE
    if not support_phone:
        logger.warning("SUPPORT_ESCALATION_PHONE not configured; trial %s flagged only", trial.id)
        return True

    text = messages.render(
        "support_escalation", "en",
        trial_id=trial.id,
        storyteller_name=trial.storyteller_name,
        storyteller_phone=trial.storyteller_phone or "unknown",
        retry_count=trial.retry_count,
        buyer_name=trial.buyer_name,
        buyer_phone=trial.buyer_phone,
    )
    _send_quietly(support_phone, text, "support escalation")
    return True


# ─── Questions ───────────────────────────────────────────────────────────────

def send_question(trial: Trial, now: datetime | None = None) -> bool:
    """
    ready → in_progress: send the question at the current cursor and set the
    reminder deadline. On a failed send the trial goes back to ready with a
    retry time for the dispatcher. A trial whose cursor is already past the
    album's last question is completed instead.
    """
    now = now or utcnow()
    if trial.current_question_index >= question_count(trial):
        return _complete_without_question(trial, now)

    question = question_text(trial)
    if question is None:
        logger.error(
            "Trial %s: no question at index %d for album %s",
            trial.id, trial.current_question_index, trial.album_id,
        )
        return False

    reminder_at = now + timedelta(hours=settings.QUESTION_REMINDER_AFTER_HOURS)
    claimed = Trial.objects.filter(
        id=trial.id,
        conversation_state=ConversationState.READY,
        current_question_index=trial.current_question_index,
    ).update(
        conversation_state=ConversationState.IN_PROGRESS,
        last_question_sent_at=now,
        next_question_scheduled_for=reminder_at,
        reminder_sent_at=None,
        question_reminder_count=0,
        updated_at=now,
    )
    if not claimed:
        logger.info("Trial %s: question %d already claimed", trial.id, trial.current_question_index)
        return False

    text = messages.render(
        "question", trial.language_preference, storyteller_name=trial.storyteller_name, question=question,
    )
    try:
        _send(trial.storyteller_phone, text)
    except MessagingError as e:
        logger.error("Trial %s: question %d send failed: %s", trial.id, trial.current_question_index, e)
        Trial.objects.filter(
            id=trial.id, conversation_state=ConversationState.IN_PROGRESS, last_question_sent_at=now,
        ).update(
            conversation_state=ConversationState.READY,
            last_question_sent_at=None,
            next_question_scheduled_for=failure_retry_at(now),
            updated_at=utcnow(),
        )
        return False

    record_trial_event(trial, "question_sent", f"Question {trial.current_question_index} sent",
                       {"question_index": trial.current_question_index})
    logger.info("Trial %s: question %d sent", trial.id, trial.current_question_index)

    # Third question onwards: the first answers are in, ask the buyer for a cover photo
    if trial.current_question_index == 2 and not trial.custom_cover_image_url:
        _send_quietly(
            trial.buyer_phone,
            messages.render("photo_request", "en", buyer_name=trial.buyer_name,
                            storyteller_name=trial.storyteller_name),
            "photo request",
        )
    return True


def _complete_without_question(trial: Trial, now: datetime) -> bool:
    """
    The cursor is already past the album's last question (the album was
    shortened after answers came in). There is nothing left to ask, so the
    trial completes and goes to fulfillment.
    """
    claimed = Trial.objects.filter(
        id=trial.id,
        conversation_state=ConversationState.READY,
        current_question_index=trial.current_question_index,
    ).update(
        conversation_state=ConversationState.COMPLETED,
        completed_at=now,
        next_question_scheduled_for=None,
        updated_at=now,
    )
    if not claimed:
        return False

    record_trial_event(trial, "state_changed", "No questions left to ask",
                       {"from": ConversationState.READY, "to": ConversationState.COMPLETED,
                        "question_index": trial.current_question_index})
    logger.warning(
        "Trial %s: cursor %d is past the last question of album %s; completing",
        trial.id, trial.current_question_index, trial.album_id,
    )
    _after_answer(trial.id, completed=True)
    return True


def send_question_reminder(trial: Trial, now: datetime | None = None) -> bool:
    """
    Dispatcher action: the single reminder for an unanswered question. It
    also schedules the storyteller check-in in case this goes unanswered too.
    """
    now = now or utcnow()
    seen_deadline = trial.next_question_scheduled_for
    seen_checkin = trial.storyteller_checkin_scheduled_for
    claimed = Trial.objects.filter(
        id=trial.id,
        conversation_state=ConversationState.IN_PROGRESS,
        last_question_sent_at__isnull=False,
        next_question_scheduled_for=seen_deadline,
        question_reminder_count=0,
    ).update(
        reminder_sent_at=now,
        question_reminder_count=1,
        next_question_scheduled_for=None,
        storyteller_checkin_scheduled_for=now + timedelta(hours=settings.STORYTELLER_CHECKIN_AFTER_HOURS),
        updated_at=now,
    )
    if not claimed:
        return False

    question = question_text(trial) or ""
    text = messages.render(
        "question_reminder", trial.language_preference,
        storyteller_name=trial.storyteller_name, question=question,
    )
    try:
        _send(trial.storyteller_phone, text)
    except MessagingError:
        Trial.objects.filter(id=trial.id, reminder_sent_at=now, question_reminder_count=1).update(
            reminder_sent_at=None,
            question_reminder_count=0,
            next_question_scheduled_for=failure_retry_at(now),
            storyteller_checkin_scheduled_for=seen_checkin,
            updated_at=utcnow(),
        )
        raise

    record_trial_event(trial, "question_reminder_sent", f"Reminder for question {trial.current_question_index}")
    logger.info("Trial %s: reminder sent for question %d", trial.id, trial.current_question_index)
    return True


def advance_to_next_question(trial: Trial, now: datetime | None = None) -> bool:
    """
    Dispatcher action once the interval after an answer has elapsed: either
    ask readiness again (ASK_READINESS_BEFORE_EACH_QUESTION) or send the
    next question straight away.
    """
    now = now or utcnow()
    seen_at = trial.next_question_scheduled_for
    base = Trial.objects.filter(
        id=trial.id,
        conversation_state=ConversationState.IN_PROGRESS,
        last_question_sent_at__isnull=True,
        next_question_scheduled_for=seen_at,
    )

    if settings.ASK_READINESS_BEFORE_EACH_QUESTION:
        claimed = base.update(
            conversation_state=ConversationState.AWAITING_READINESS,
            next_question_scheduled_for=None,
            retry_count=0,
            updated_at=now,
        )
        if not claimed:
            return False
        ask_readiness(_reload(trial.id), now=now)
        return True

    claimed = base.update(
        conversation_state=ConversationState.READY,
        next_question_scheduled_for=None,
        updated_at=now,
    )
    if not claimed:
        return False
    return send_question(_reload(trial.id), now=now)


# ─── Check-ins ───────────────────────────────────────────────────────────────

def send_buyer_no_contact_reminder(trial: Trial, now: datetime | None = None) -> bool:
    """
    Dispatcher action: the storyteller never wrote in after activation. Ask
    the buyer to pass the link on again. Sent at most once per trial.
    """
    now = now or utcnow()
    claimed = Trial.objects.filter(
        id=trial.id,
        conversation_state=ConversationState.AWAITING_INITIAL_CONTACT,
        buyer_no_contact_reminder_sent_at__isnull=True,
    ).update(buyer_no_contact_reminder_sent_at=now, updated_at=now)
    if not claimed:
        return False

    text = messages.render(
        "buyer_no_contact_reminder", "en",
        buyer_name=trial.buyer_name, storyteller_name=trial.storyteller_name,
        link=messages.storyteller_link(trial),
    )
    try:
        _send(trial.buyer_phone, text)
    except MessagingError:
        Trial.objects.filter(id=trial.id, buyer_no_contact_reminder_sent_at=now).update(
            buyer_no_contact_reminder_sent_at=None, updated_at=utcnow(),
        )
        raise

    record_trial_event(trial, "buyer_no_contact_reminder_sent", "Buyer reminded to share the storyteller link")
    logger.info("Trial %s: buyer reminded, storyteller has not written in", trial.id)
    return True


def send_storyteller_checkin(trial: Trial, now: datetime | None = None) -> bool:
    """
    Dispatcher action: the question reminder went unanswered too. Check in
    with the storyteller once and schedule the buyer check-in.
    """
    now = now or utcnow()
    seen_at = trial.storyteller_checkin_scheduled_for
    claimed = Trial.objects.filter(
        id=trial.id,
        conversation_state=ConversationState.IN_PROGRESS,
        storyteller_checkin_scheduled_for=seen_at,
        storyteller_checkin_sent_at__isnull=True,
    ).update(
        storyteller_checkin_sent_at=now,
        storyteller_checkin_scheduled_for=None,
        buyer_checkin_scheduled_for=now + timedelta(hours=settings.BUYER_CHECKIN_AFTER_HOURS),
        updated_at=now,
    )
    if not claimed:
        return False

    text = messages.render("storyteller_checkin", trial.language_preference, storyteller_name=trial.storyteller_name)
    try:
        _send(trial.storyteller_phone, text)
    except MessagingError:
        Trial.objects.filter(id=trial.id, storyteller_checkin_sent_at=now).update(
            storyteller_checkin_sent_at=None,
            storyteller_checkin_scheduled_for=failure_retry_at(now),
            buyer_checkin_scheduled_for=None,
            updated_at=utcnow(),
        )
        raise

    record_trial_event(trial, "storyteller_checkin_sent", "Storyteller check-in sent")
    logger.info("Trial %s: storyteller check-in sent", trial.id)
    return True


def send_buyer_checkin(trial: Trial, now: datetime | None = None) -> bool:
    """Dispatcher action: the storyteller check-in went unanswered; let the buyer know. Sent once."""
    now = now or utcnow()
    seen_at = trial.buyer_checkin_scheduled_for
    claimed = Trial.objects.filter(
        id=trial.id,
        conversation_state=ConversationState.IN_PROGRESS,
        buyer_checkin_scheduled_for=seen_at,
        buyer_checkin_sent_at__isnull=True,
    ).update(buyer_checkin_sent_at=now, buyer_checkin_scheduled_for=None, updated_at=now)
    if not claimed:
        return False

    text = messages.render(
        "buyer_checkin", "en", buyer_name=trial.buyer_name, storyteller_name=trial.storyteller_name,
    )
    try:
        _send(trial.buyer_phone, text)
    except MessagingError:
        Trial.objects.filter(id=trial.id, buyer_checkin_sent_at=now).update(
            buyer_checkin_sent_at=None, buyer_checkin_scheduled_for=failure_retry_at(now), updated_at=utcnow(),
        )
        raise

    record_trial_event(trial, "buyer_checkin_sent", "Buyer check-in sent")
    logger.info("Trial %s: buyer check-in sent", trial.id)
    return True


# ─── Voice notes ─────────────────────────────────────────────────────────────

def handle_voice_note(trial_id: UUID, media_id: str, mime_type: str | None = None) -> VoiceNote | None:
    """
    Accept a voice note as the answer to the question in flight and move
    the cursor forward.

    The cursor advances in the same transaction that persists the VoiceNote
    for the pre-increment index, so it can never run ahead of the answers.
    A resend for an already answered question raises DuplicateVoiceNote
    (after the attempt is written to the audit log) and changes nothing.
    Returns None if the trial is not collecting answers.
    """
    duplicate = None
    completed = False
    with transaction.atomic():
        trial = Trial.objects.select_for_update().select_related("album").get(id=trial_id)
        if trial.conversation_state != ConversationState.IN_PROGRESS:
            logger.warning("Trial %s: voice note in state %s ignored", trial.id, trial.conversation_state)
            return None

        index = trial.current_question_index
        # Between an answer and the next question the cursor already points
        # ahead; audio arriving then is a resend for the previous question.
        target = index if trial.last_question_sent_at else index - 1
        if target < 0:
            logger.warning("Trial %s: voice note before any question was sent", trial.id)
            return None

        try:
            note = voice_notes.ingest(
                trial.id, target, question_text(trial, target) or "", media_id, mime_type,
            )
        except DuplicateVoiceNote as dup:
            record_trial_event(
                trial, "duplicate_voice_note",
                f"Repeat answer for question {target} ignored",
                {"question_index": target, "media_id": media_id, "kept_voice_note_id": str(dup.existing.id)},
            )
            duplicate = dup
        else:
            now = utcnow()
            total = question_count(trial)
            next_index = index + 1
            updates = {
                "current_question_index": next_index,
                "last_question_sent_at": None,
                "reminder_sent_at": None,
                "question_reminder_count": 0,
                "storyteller_checkin_scheduled_for": None,
                "buyer_checkin_scheduled_for": None,
                "updated_at": now,
            }
            if next_index >= total:
                completed = True
                updates.update(
                    conversation_state=ConversationState.COMPLETED,
                    completed_at=now,
                    next_question_scheduled_for=None,
                )
            else:
                updates["next_question_scheduled_for"] = now + timedelta(hours=settings.QUESTION_INTERVAL_HOURS)

            Trial.objects.filter(id=trial.id, current_question_index=index).update(**updates)
            record_trial_event(trial, "voice_note_accepted", f"Answer for question {index} accepted",
                               {"question_index": index, "voice_note_id": str(note.id)})
            if completed:
                record_trial_event(trial, "state_changed", "All questions answered",
                                   {"from": ConversationState.IN_PROGRESS, "to": ConversationState.COMPLETED})
            transaction.on_commit(lambda: _after_answer(trial.id, completed))

    if duplicate is not None:
        raise duplicate

    logger.info(
        "Trial %s: answer %d accepted (%s)", trial.id, index, "completed" if completed else f"next {index + 1}",
    )
    return note


def _after_answer(trial_id: UUID, completed: bool):
    trial = _reload(trial_id)
    if completed:
        from fulfillment.services import reconciler

        reconciler.on_trial_completed(trial)
        return

    _send_quietly(
        trial.storyteller_phone,
        messages.render("voice_note_ack", trial.language_preference, storyteller_name=trial.storyteller_name),
        "voice note acknowledgement",
    )
    if settings.QUESTION_INTERVAL_HOURS <= 0:
        advance_to_next_question(trial)


def handle_in_progress_text(trial: Trial):
    _send_quietly(
        trial.storyteller_phone,
        messages.render("send_voice_note_reminder", trial.language_preference),
        "voice note reminder",
    )

