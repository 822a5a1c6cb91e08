"""
Inbound WhatsApp message routing.

Called once per message after the webhook has admitted it through the
idempotency ledger. Resolves which trial the sender belongs to and hands
the message to the conversation state machine.

Trial resolution priority:
1. An order id in the text (st_<uuid> storyteller link, by_<uuid> buyer link, bare uuid)
2. The sender's oldest active trial
3. Any trial for the sender's phone
"""
import logging
import re
from dataclasses import dataclass
from uuid import UUID

from django.db import transaction

from fulfillment.exceptions import DuplicateVoiceNote
from fulfillment.models import ConversationState, Trial
from fulfillment.models.trial import ACTIVE_STATES
from fulfillment.providers.whatsapp import get_messaging_provider
from fulfillment.services import conversation, messages, reconciler, voice_notes
from fulfillment.utils import normalize_phone

logger = logging.getLogger(__name__)

_UUID = r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})"
BUYER_PREFIX_PATTERN = re.compile(rf"by_{_UUID}", re.I)
STORYTELLER_PREFIX_PATTERN = re.compile(rf"st_{_UUID}", re.I)
ORDER_ID_PATTERN = re.compile(_UUID, re.I)

TEXT_TYPES = ("text", "button", "interactive")
ARCHIVED_MEDIA_TYPES = ("video", "image", "document")


@dataclass(frozen=True)
class OrderReference:
    order_id: UUID | None = None
    source: str | None = None  # "buyer", "storyteller" or None


def extract_text(message: dict) -> str:
    """Text body, quick-reply button text, or interactive reply title."""
    message_type = message.get("type")
    if message_type == "text":
        return (message.get("text") or {}).get("body", "")
    if message_type == "button":
        button = message.get("button") or {}
        return button.get("text") or button.get("payload") or ""
    if message_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("title", "")
    media = message.get(message_type) if message_type else None
    if isinstance(media, dict):
        return media.get("caption", "") or ""
    return ""


def extract_order_reference(text: str) -> OrderReference:
    for pattern, source in (
        (BUYER_PREFIX_PATTERN, "buyer"),
        (STORYTELLER_PREFIX_PATTERN, "storyteller"),
        (ORDER_ID_PATTERN, None),
    ):
        match = pattern.search(text or "")
        if match:
            return OrderReference(order_id=UUID(match.group(1)), source=source)
    return OrderReference()


def resolve_trial(reference: OrderReference, phone: str) -> Trial | None:
    if reference.order_id:
        trial = Trial.objects.select_related("album").filter(id=reference.order_id).first()
        if trial:
            if not trial.storyteller_phone:
                Trial.objects.filter(id=trial.id, storyteller_phone__isnull=True).update(storyteller_phone=phone)
                trial.refresh_from_db()
                logger.info("Associated storyteller phone %s with trial %s", phone, trial.id)
            return trial

    trials = Trial.objects.select_related("album").filter(storyteller_phone=phone)
    active = trials.filter(conversation_state__in=ACTIVE_STATES).order_by("created_at").first()
    if active:
        return active
    return trials.order_by("-created_at").first()


def _reply(phone: str, text: str):
    try:
        get_messaging_provider().send_text(phone, text)
    except Exception:
        logger.exception("Reply to %s failed", phone)


# ─── Buyer-side special cases ────────────────────────────────────────────────

def _buyer_sent_storyteller_link(trial: Trial, phone: str) -> str:
    logger.info("Buyer %s sent the storyteller link for trial %s", phone, trial.id)
    _reply(phone, messages.render(
        "buyer_sent_storyteller_link", "en",
        buyer_name=trial.buyer_name, storyteller_name=trial.storyteller_name,
        link=messages.storyteller_link(trial),
    ))
    return "buyer_storyteller_link"


def _set_cover_image(trial: Trial, phone: str, message: dict) -> str:
    """Queue the photo for storage; the task replies once it is stored or rejected."""
    image = message.get("image") or {}
    media_id = image.get("id")
    if not media_id:
        logger.error("Image message from %s has no media id", phone)
        return "ignored"
    logger.info("Cover image %s from %s queued for trial %s", media_id, phone, trial.id)
    transaction.on_commit(
        lambda: voice_notes.enqueue_album_cover(trial.id, media_id, image.get("mime_type"), phone)
    )
    return "cover_received"



# ─── Entry point ─────────────────────────────────────────────────────────────

def handle_inbound_message(message: dict) -> str:
    """
    Route one inbound WhatsApp message. Returns a short outcome label
    (used in logs and tests).
    """
    phone = normalize_phone(message.get("from"))
    message_type = message.get("type", "")
    text = extract_text(message)
    reference = extract_order_reference(text)

    # The buyer clicked the link meant for the storyteller
    if reference.source == "storyteller":
        trial = Trial.objects.filter(id=reference.order_id).first()
        if trial and normalize_phone(trial.buyer_phone) == phone and trial.storyteller_phone != phone:
            return _buyer_sent_storyteller_link(trial, phone)

    # by_ links are only ever sent to buyers: resend their onboarding
    if reference.source == "buyer":
        trial = Trial.objects.filter(id=reference.order_id).first()
        if trial:
            if normalize_phone(trial.buyer_phone) != phone:
                logger.warning("by_ link for trial %s sent from unexpected number %s", trial.id, phone)
            reconciler.send_buyer_onboarding(trial.id)
            return "buyer_onboarding_resent"

    # A buyer's photo becomes the album cover
    if message_type == "image":
        buyer_trial = (
            Trial.objects
            .filter(buyer_phone=phone, activated_at__isnull=False)
            .exclude(storyteller_phone=phone)
            .order_by("-created_at")
            .first()
        )
        if buyer_trial:
            return _set_cover_image(buyer_trial, phone, message)

    trial = resolve_trial(reference, phone)
    if trial is None:
        logger.info("No trial for %s (%s message)", phone, message_type)
        _reply(phone, messages.render("no_trial_found", None))
        return "no_trial"

    if trial.activated_at is None:
        logger.info("Trial %s not active yet; message from %s parked", trial.id, phone)
        _reply(phone, messages.render("trial_not_active", trial.language_preference))
        return "not_active"

    logger.info("Inbound %s from %s for trial %s (%s)", message_type, phone, trial.id, trial.conversation_state)
    state = trial.conversation_state

    if state == ConversationState.AWAITING_INITIAL_CONTACT:
        conversation.start_conversation(trial, phone)
        return "started"

    if state == ConversationState.AWAITING_READINESS:
        if message_type not in TEXT_TYPES:
            logger.info("Trial %s: %s message while awaiting readiness ignored", trial.id, message_type)
            return "ignored"
        if reference.order_id:
            # Storyteller re-sent the start link: ask again rather than classify it
            conversation.ask_readiness(trial)
            return "readiness_asked"
        label = conversation.handle_readiness_reply(trial, text)
        return f"readiness_{label}"

    if state == ConversationState.READY:
        conversation.send_question(trial)
        return "question_sent"

    if state == ConversationState.IN_PROGRESS:
        if message_type == "audio":
            audio = message.get("audio") or {}
            if not audio.get("id"):
                logger.error("Audio message for trial %s has no media id", trial.id)
                return "ignored"
            try:
                note = conversation.handle_voice_note(trial.id, audio["id"], audio.get("mime_type"))
            except DuplicateVoiceNote:
                return "duplicate_voice_note"
            return "voice_note_accepted" if note else "ignored"
        if message_type in ARCHIVED_MEDIA_TYPES:
            media = message.get(message_type) or {}
            if media.get("id"):
                media_id, mime_type = media["id"], media.get("mime_type")
                transaction.on_commit(lambda: voice_notes.enqueue_archive(message_type, media_id, mime_type))
        conversation.handle_in_progress_text(trial)
        return "voice_note_requested"

    if state == ConversationState.COMPLETED:
        if reference.order_id is None or reference.order_id == trial.id:
            _reply(phone, messages.render(
                "storyteller_completed", trial.language_preference, storyteller_name=trial.storyteller_name,
            ))
        return "completed"

    logger.error("Trial %s in unknown state %s", trial.id, state)
    return "ignored"
