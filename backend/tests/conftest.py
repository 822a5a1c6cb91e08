from datetime import timedelta
from unittest.mock import patch

import pytest

from fulfillment.models import Album, ConversationState, Trial
from fulfillment.providers.album_assembler import get_album_assembler
from fulfillment.providers.media_store import get_media_store
from fulfillment.providers.whatsapp import get_messaging_provider
from fulfillment.services.payment_gateway import get_payment_gateway
from fulfillment.services.readiness_classifier import get_readiness_classifier
from fulfillment.utils import utcnow
from tests.helpers import (
    BUYER_PHONE, PHONEPE_WEBHOOK_PASSWORD, PHONEPE_WEBHOOK_USERNAME, QUESTIONS,
    STORYTELLER_PHONE, SUPPORT_PHONE, WHATSAPP_APP_SECRET,
)


def _clear_provider_caches():
    for factory in (
        get_messaging_provider, get_media_store, get_album_assembler,
        get_payment_gateway, get_readiness_classifier,
    ):
        factory.cache_clear()


@pytest.fixture(autouse=True)
def engine_settings(settings):
    """Mock transports, zero backoff and known webhook secrets for every test."""
    settings.COMMS_PROVIDER = "mock"
    settings.MEDIA_STORE_PROVIDER = "mock"
    settings.READINESS_CLASSIFIER = "keyword"
    settings.ALBUM_ASSEMBLER = "fulfillment.providers.album_assembler.LoggingAlbumAssembler"

    settings.WHATSAPP_APP_SECRET = WHATSAPP_APP_SECRET
    settings.WHATSAPP_VERIFY_TOKEN = "test-verify-token"
    settings.WHATSAPP_BUSINESS_NUMBER_E164 = "919000000000"
    settings.WHATSAPP_RETRY_BACKOFF_SECONDS = 0
    settings.SUPPORT_ESCALATION_PHONE = SUPPORT_PHONE

    settings.PHONEPE_CLIENT_ID = "test-client-id"
    settings.PHONEPE_CLIENT_SECRET = "test-client-secret"
    settings.PHONEPE_ENVIRONMENT = "sandbox"
    settings.PHONEPE_WEBHOOK_USERNAME = PHONEPE_WEBHOOK_USERNAME
    settings.PHONEPE_WEBHOOK_PASSWORD = PHONEPE_WEBHOOK_PASSWORD
    settings.PHONEPE_RETRY_BACKOFF_SECONDS = 0

    settings.VOICE_NOTE_DOWNLOAD_ATTEMPTS = 3
    settings.VOICE_NOTE_RETRY_BACKOFF_SECONDS = 0

    settings.QUESTION_INTERVAL_HOURS = 23
    settings.QUESTION_REMINDER_AFTER_HOURS = 24
    settings.READINESS_RETRY_BASE_HOURS = 4
    settings.READINESS_RETRY_BACKOFF_FACTOR = 2
    settings.READINESS_MAX_RETRIES = 3
    settings.ASK_READINESS_BEFORE_EACH_QUESTION = True
    settings.DISPATCH_FAILURE_RETRY_MINUTES = 60

    _clear_provider_caches()
    yield settings
    _clear_provider_caches()


@pytest.fixture(autouse=True)
def queued_tasks():
    """django-q is not running under test; capture enqueued materializations instead."""
    with patch("fulfillment.services.voice_notes.async_task") as mock_async:
        yield mock_async


@pytest.fixture
def whatsapp():
    return get_messaging_provider()


@pytest.fixture
def media_store():
    return get_media_store()


@pytest.fixture
def album(db):
    return Album.objects.create(
        title="Our Family History",
        description="Childhood homes and family traditions.",
        questions=list(QUESTIONS),
        cover_image="/images/albums/family-history.jpg",
    )


@pytest.fixture
def trial(album):
    """Activated free trial; the storyteller has not written yet."""
    return Trial.objects.create(
        buyer_name="Ananya",
        buyer_phone=BUYER_PHONE,
        storyteller_name="Kamla",
        album=album,
        activated_at=utcnow(),
    )


@pytest.fixture
def make_trial(album):
    def _make(**overrides):
        fields = {
            "buyer_name": "Ananya",
            "buyer_phone": BUYER_PHONE,
            "storyteller_name": "Kamla",
            "album": album,
            "activated_at": utcnow(),
        }
        fields.update(overrides)
        return Trial.objects.create(**fields)
    return _make


@pytest.fixture
def awaiting_readiness_trial(make_trial):
    now = utcnow()
    return make_trial(
        storyteller_phone=STORYTELLER_PHONE,
        conversation_state=ConversationState.AWAITING_READINESS,
        welcome_sent_at=now,
        readiness_asked_at=now,
        retry_readiness_at=now + timedelta(hours=4),
    )


@pytest.fixture
def in_progress_trial(make_trial):
    """Question 0 has been sent and is awaiting an answer."""
    now = utcnow()
    return make_trial(
        storyteller_phone=STORYTELLER_PHONE,
        conversation_state=ConversationState.IN_PROGRESS,
        welcome_sent_at=now - timedelta(hours=1),
        last_question_sent_at=now,
        next_question_scheduled_for=now + timedelta(hours=24),
    )

