from fulfillment.models.album import Album
from fulfillment.models.trial import Trial, ConversationState, LanguagePreference
from fulfillment.models.voice_note import VoiceNote, DownloadStatus
from fulfillment.models.payment_order import PaymentOrder, PaymentState
from fulfillment.models.webhook_event import WebhookEvent
from fulfillment.models.trial_event import TrialEvent

__all__ = [
    "Album", "Trial", "ConversationState", "LanguagePreference",
    "VoiceNote", "DownloadStatus", "PaymentOrder", "PaymentState",
    "WebhookEvent", "TrialEvent",
]
