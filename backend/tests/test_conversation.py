from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from fulfillment.exceptions import DuplicateVoiceNote, MessagingError
from fulfillment.models import Album, ConversationState, Trial, TrialEvent, VoiceNote
from fulfillment.services import conversation, reconciler
from fulfillment.services.readiness_classifier import NO, UNCLEAR, YES
from fulfillment.utils import utcnow
from tests.helpers import BUYER_PHONE, QUESTIONS, STORYTELLER_PHONE

pytestmark = pytest.mark.django_db(transaction=True)


def _reload(trial) -> Trial:
    return Trial.objects.select_related("album").get(id=trial.id)


# ─── Initial contact and readiness ───────────────────────────────────────────

def test_new_trial_reaches_first_question(trial, whatsapp):
    """Welcome, readiness, "yes", first question: in_progress at index 0."""
    assert conversation.start_conversation(trial, STORYTELLER_PHONE)

    trial = _reload(trial)
    assert trial.conversation_state == ConversationState.AWAITING_READINESS
    assert trial.storyteller_phone == STORYTELLER_PHONE
    assert trial.welcome_sent_at is not None
    assert trial.readiness_asked_at is not None
    assert trial.retry_readiness_at is not None

    assert conversation.handle_readiness_reply(trial, "Yes, let's begin") == YES

    trial = _reload(trial)
    assert trial.conversation_state == ConversationState.IN_PROGRESS
    assert trial.current_question_index == 0
    assert trial.last_question_sent_at is not None
    assert trial.retry_readiness_at is None
    assert trial.last_readiness_response == YES

    sent = whatsapp.messages_to(STORYTELLER_PHONE)
    assert len(sent) == 3
    assert "I am Vaani from Kahani" in sent[0]
    assert "are you ready" in sent[1]
    assert QUESTIONS[0] in sent[2]


def test_welcome_is_sent_once(trial, whatsapp):
    assert conversation.start_conversation(trial, STORYTELLER_PHONE)
    assert not conversation.start_conversation(trial, STORYTELLER_PHONE)

    welcomes = [m for m in whatsapp.messages_to(STORYTELLER_PHONE) if "I am Vaani" in m]
    assert len(welcomes) == 1


def test_failed_welcome_returns_trial_to_initial_contact(trial, whatsapp):
    with patch.object(whatsapp, "send_text", side_effect=MessagingError("503", transient=True)):
        with pytest.raises(MessagingError):
            conversation.start_conversation(trial, STORYTELLER_PHONE)

    trial = _reload(trial)
    assert trial.conversation_state == ConversationState.AWAITING_INITIAL_CONTACT
    assert trial.welcome_sent_at is None


def test_negative_reply_reschedules_readiness(awaiting_readiness_trial, whatsapp):
    before = utcnow()
    assert conversation.handle_readiness_reply(awaiting_readiness_trial, "maybe later") == NO
    after = utcnow()

    trial = _reload(awaiting_readiness_trial)
    assert trial.conversation_state == ConversationState.AWAITING_READINESS
    assert trial.last_readiness_response == NO
    assert trial.retry_count == 0
    assert before + timedelta(hours=4) <= trial.retry_readiness_at <= after + timedelta(hours=4)
    assert "check back" in whatsapp.messages_to(STORYTELLER_PHONE)[-1]


def test_unclear_reply_asks_for_clarification(awaiting_readiness_trial, whatsapp):
    assert conversation.handle_readiness_reply(awaiting_readiness_trial, "who is this?") == UNCLEAR

    trial = _reload(awaiting_readiness_trial)
    assert trial.last_readiness_response == UNCLEAR
    assert trial.conversation_state == ConversationState.AWAITING_READINESS
    assert "didn't quite understand" in whatsapp.messages_to(STORYTELLER_PHONE)[-1]


def test_backoff_grows_with_retry_count():
    now = utcnow()
    assert conversation.readiness_retry_at(0, now) == now + timedelta(hours=4)
    assert conversation.readiness_retry_at(1, now) == now + timedelta(hours=8)
    assert conversation.readiness_retry_at(2, now) == now + timedelta(hours=16)


def test_yes_clears_human_followup_flag(awaiting_readiness_trial):
    Trial.objects.filter(id=awaiting_readiness_trial.id).update(
        needs_human_followup=True, retry_count=3, retry_readiness_at=None,
    )

    conversation.handle_readiness_reply(_reload(awaiting_readiness_trial), "yes")

    trial = _reload(awaiting_readiness_trial)
    assert not trial.needs_human_followup
    assert trial.retry_count == 0
    assert trial.conversation_state == ConversationState.IN_PROGRESS


def test_flagged_trial_is_not_rescheduled_on_negative_reply(awaiting_readiness_trial):
    Trial.objects.filter(id=awaiting_readiness_trial.id).update(needs_human_followup=True, retry_readiness_at=None)

    conversation.handle_readiness_reply(_reload(awaiting_readiness_trial), "no")

    assert _reload(awaiting_readiness_trial).retry_readiness_at is None


def test_hindi_trial_is_messaged_in_hindi(make_trial, whatsapp):
    trial = make_trial(language_preference="hn")

    conversation.start_conversation(trial, STORYTELLER_PHONE)

    assert "मैं कहानी से वाणी हूँ" in whatsapp.messages_to(STORYTELLER_PHONE)[0]


# ─── Questions ───────────────────────────────────────────────────────────────

def test_failed_question_send_returns_trial_to_ready(make_trial, whatsapp):
    trial = make_trial(storyteller_phone=STORYTELLER_PHONE, conversation_state=ConversationState.READY)
    now = utcnow()

    with patch.object(whatsapp, "send_text", side_effect=MessagingError("timeout", transient=True)):
        assert not conversation.send_question(trial, now=now)

    trial = _reload(trial)
    assert trial.conversation_state == ConversationState.READY
    assert trial.last_question_sent_at is None
    assert trial.next_question_scheduled_for == now + timedelta(minutes=60)


def test_question_is_claimed_once(make_trial, whatsapp):
    trial = make_trial(storyteller_phone=STORYTELLER_PHONE, conversation_state=ConversationState.READY)

    assert conversation.send_question(trial)
    assert not conversation.send_question(trial)
    assert len(whatsapp.messages_to(STORYTELLER_PHONE)) == 1


def test_third_question_asks_buyer_for_cover_photo(make_trial, whatsapp):
    trial = make_trial(
        storyteller_phone=STORYTELLER_PHONE, conversation_state=ConversationState.READY, current_question_index=2,
    )

    conversation.send_question(trial)

    assert QUESTIONS[2] in whatsapp.messages_to(STORYTELLER_PHONE)[-1]
    assert "photo" in whatsapp.messages_to(BUYER_PHONE)[-1]


def test_ready_trial_past_a_shortened_album_is_completed(make_trial, album, whatsapp):
    trial = make_trial(
        storyteller_phone=STORYTELLER_PHONE, conversation_state=ConversationState.READY, current_question_index=2,
    )
    Album.objects.filter(id=album.id).update(questions=QUESTIONS[:2])
    assembler = MagicMock()

    with patch("fulfillment.services.reconciler.get_album_assembler", return_value=assembler):
        assert conversation.send_question(_reload(trial))

    trial = _reload(trial)
    assert trial.conversation_state == ConversationState.COMPLETED
    assert trial.completed_at is not None
    assert trial.fulfillment_requested_at is not None
    assembler.assemble.assert_called_once()
    assert not any(q in m for q in QUESTIONS for m in whatsapp.messages_to(STORYTELLER_PHONE))
    assert "has answered every question" in whatsapp.messages_to(BUYER_PHONE)[-1]


# ─── Check-ins ───────────────────────────────────────────────────────────────

def test_unanswered_reminder_leads_to_storyteller_then_buyer_checkin(in_progress_trial, whatsapp):
    now = utcnow()

    assert conversation.send_question_reminder(_reload(in_progress_trial), now=now)
    trial = _reload(in_progress_trial)
    assert trial.storyteller_checkin_scheduled_for == now + timedelta(hours=48)

    checkin_at = trial.storyteller_checkin_scheduled_for
    assert conversation.send_storyteller_checkin(trial, now=checkin_at)
    assert not conversation.send_storyteller_checkin(trial, now=checkin_at)
    trial = _reload(trial)
    assert trial.storyteller_checkin_sent_at == checkin_at
    assert trial.storyteller_checkin_scheduled_for is None
    assert trial.buyer_checkin_scheduled_for == checkin_at + timedelta(hours=24)
    assert "haven't heard from you" in whatsapp.messages_to(STORYTELLER_PHONE)[-1]

    assert conversation.send_buyer_checkin(trial, now=trial.buyer_checkin_scheduled_for)
    assert not conversation.send_buyer_checkin(trial, now=trial.buyer_checkin_scheduled_for)
    trial = _reload(trial)
    assert trial.buyer_checkin_sent_at is not None
    assert trial.buyer_checkin_scheduled_for is None
    assert len([m for m in whatsapp.messages_to(BUYER_PHONE) if "gentle nudge" in m]) == 1


def test_answer_cancels_pending_checkins(in_progress_trial):
    soon = utcnow() + timedelta(hours=1)
    Trial.objects.filter(id=in_progress_trial.id).update(
        storyteller_checkin_scheduled_for=soon, buyer_checkin_scheduled_for=soon,
    )

    conversation.handle_voice_note(in_progress_trial.id, "media-1", "audio/ogg")

    trial = _reload(in_progress_trial)
    assert trial.storyteller_checkin_scheduled_for is None
    assert trial.buyer_checkin_scheduled_for is None


def test_failed_storyteller_checkin_is_rescheduled(in_progress_trial, whatsapp):
    now = utcnow()
    Trial.objects.filter(id=in_progress_trial.id).update(storyteller_checkin_scheduled_for=now)

    with patch.object(whatsapp, "send_text", side_effect=MessagingError("timeout", transient=True)):
        with pytest.raises(MessagingError):
            conversation.send_storyteller_checkin(_reload(in_progress_trial), now=now)

    trial = _reload(in_progress_trial)
    assert trial.storyteller_checkin_sent_at is None
    assert trial.storyteller_checkin_scheduled_for == now + timedelta(minutes=60)
    assert trial.buyer_checkin_scheduled_for is None


def test_buyer_is_reminded_once_when_storyteller_never_writes(trial, whatsapp):
    assert conversation.send_buyer_no_contact_reminder(trial)
    assert not conversation.send_buyer_no_contact_reminder(trial)

    reminders = [m for m in whatsapp.messages_to(BUYER_PHONE) if "hasn't messaged us yet" in m]
    assert len(reminders) == 1
    assert f"st_{trial.id}" in reminders[0]
    assert _reload(trial).buyer_no_contact_reminder_sent_at is not None


def test_no_contact_reminder_stops_once_storyteller_writes(trial, whatsapp):
    conversation.start_conversation(trial, STORYTELLER_PHONE)

    assert not conversation.send_buyer_no_contact_reminder(_reload(trial))
    assert whatsapp.messages_to(BUYER_PHONE) == []


# ─── Voice notes ─────────────────────────────────────────────────────────────


def test_duplicate_voice_note_advances_cursor_once(in_progress_trial, whatsapp):
    note = conversation.handle_voice_note(in_progress_trial.id, "media-1", "audio/ogg")
    assert note.question_index == 0

    with pytest.raises(DuplicateVoiceNote) as exc:
        conversation.handle_voice_note(in_progress_trial.id, "media-1-retry", "audio/ogg")

    assert exc.value.existing.id == note.id
    trial = _reload(in_progress_trial)
    assert trial.current_question_index == 1
    assert VoiceNote.objects.filter(trial=trial).count() == 1
    assert VoiceNote.objects.get(trial=trial).media_id == "media-1"
    assert TrialEvent.objects.filter(trial=trial, event_type="duplicate_voice_note").count() == 1
    acks = [m for m in whatsapp.messages_to(STORYTELLER_PHONE) if "Thank you for sharing" in m]
    assert len(acks) == 1


def test_answer_schedules_next_question_after_interval(in_progress_trial):
    before = utcnow()
    conversation.handle_voice_note(in_progress_trial.id, "media-1", "audio/ogg")

    trial = _reload(in_progress_trial)
    assert trial.conversation_state == ConversationState.IN_PROGRESS
    assert trial.last_question_sent_at is None
    assert trial.next_question_scheduled_for >= before + timedelta(hours=23)


def test_zero_interval_asks_readiness_again(in_progress_trial, whatsapp, settings):
    settings.QUESTION_INTERVAL_HOURS = 0

    conversation.handle_voice_note(in_progress_trial.id, "media-1", "audio/ogg")

    trial = _reload(in_progress_trial)
    assert trial.conversation_state == ConversationState.AWAITING_READINESS
    assert trial.current_question_index == 1
    assert "are you ready" in whatsapp.messages_to(STORYTELLER_PHONE)[-1]


def test_zero_interval_without_readiness_sends_next_question(in_progress_trial, whatsapp, settings):
    settings.QUESTION_INTERVAL_HOURS = 0
    settings.ASK_READINESS_BEFORE_EACH_QUESTION = False

    conversation.handle_voice_note(in_progress_trial.id, "media-1", "audio/ogg")

    trial = _reload(in_progress_trial)
    assert trial.conversation_state == ConversationState.IN_PROGRESS
    assert trial.current_question_index == 1
    assert trial.last_question_sent_at is not None
    assert QUESTIONS[1] in whatsapp.messages_to(STORYTELLER_PHONE)[-1]


def test_voice_note_outside_in_progress_is_ignored(awaiting_readiness_trial):
    assert conversation.handle_voice_note(awaiting_readiness_trial.id, "media-1") is None
    assert not VoiceNote.objects.exists()


def test_last_answer_completes_trial_and_fulfills_once(make_trial, whatsapp):
    trial = make_trial(
        storyteller_phone=STORYTELLER_PHONE,
        conversation_state=ConversationState.IN_PROGRESS,
        current_question_index=len(QUESTIONS) - 1,
        last_question_sent_at=utcnow(),
    )
    assembler = MagicMock()

    with patch("fulfillment.services.reconciler.get_album_assembler", return_value=assembler):
        conversation.handle_voice_note(trial.id, "media-last", "audio/ogg")
        trial = _reload(trial)
        assert not reconciler.on_trial_completed(trial)
        reconciler.reconcile_payments()

    assert trial.conversation_state == ConversationState.COMPLETED
    assert trial.current_question_index == len(QUESTIONS)
    assert trial.completed_at is not None
    assert trial.fulfillment_requested_at is not None
    assembler.assemble.assert_called_once()
    assert "answered all the questions" in whatsapp.messages_to(STORYTELLER_PHONE)[-1]
    assert "has answered every question" in whatsapp.messages_to(BUYER_PHONE)[-1]


def test_failed_assembly_is_retried_by_reconcile(make_trial):
    trial = make_trial(
        storyteller_phone=STORYTELLER_PHONE,
        conversation_state=ConversationState.COMPLETED,
        current_question_index=len(QUESTIONS),
        completed_at=utcnow(),
    )
    assembler = MagicMock()
    assembler.assemble.side_effect = [RuntimeError("assembly service down"), None]

    with patch("fulfillment.services.reconciler.get_album_assembler", return_value=assembler):
        assert not reconciler.on_trial_completed(trial)
        assert _reload(trial).fulfillment_requested_at is None
        reconciler.reconcile_payments()

    assert _reload(trial).fulfillment_requested_at is not None
    assert assembler.assemble.call_count == 2


def test_hindi_questions_fall_back_when_translation_is_partial(db):
    album = Album.objects.create(
        title="Words of Wisdom", description="d", cover_image="c",
        questions=["Q1", "Q2"], questions_hn=["प्रश्न 1"],
    )
    assert album.questions_for("hn") == ["Q1", "Q2"]

    album.questions_hn = ["प्रश्न 1", "प्रश्न 2"]
    assert album.questions_for("hn") == ["प्रश्न 1", "प्रश्न 2"]
    assert album.questions_for("en") == ["Q1", "Q2"]
