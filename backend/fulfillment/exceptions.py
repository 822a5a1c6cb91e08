"""
Error taxonomy for the fulfillment engine.

Transient failures carry transient=True so callers (dispatcher, reconciler)
can leave state untouched and let the next scheduled pass retry. Everything
else is a validation or configuration problem and is not retried.
"""


class KahaniError(Exception):
    """Base class for all engine errors."""


class PaymentGatewayError(KahaniError):
    """Typed failure from the payment provider: non-2xx, malformed body or exhausted retries."""

    def __init__(self, message: str, code: str | None = None, http_status: int | None = None,
                 transient: bool = False):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.transient = transient

    def __str__(self):
        parts = [self.message]
        if self.code:
            parts.append(f"code={self.code}")
        if self.http_status:
            parts.append(f"status={self.http_status}")
        return " ".join(parts)


class MessagingError(KahaniError):
    """WhatsApp transport failure."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class MediaDownloadError(KahaniError):
    """Media bytes could not be fetched from the messaging platform."""


class MediaStoreError(KahaniError):
    """Upload or bucket provisioning against object storage failed."""


class MediaAlreadyExists(MediaStoreError):
    """
    The object path is already taken. Uploads never overwrite; `url` is the
    public URL of the object that is already there.
    """

    def __init__(self, message: str, url: str):
        super().__init__(message)
        self.url = url


class MediaValidationError(KahaniError):
    """Media violates a bucket's content-type or size policy. Never retried."""


class DuplicateVoiceNote(KahaniError):
    """
    A voice note already exists for this (trial, question index).
    The first accepted answer stays authoritative; `existing` is that row.
    """

    def __init__(self, existing):
        super().__init__(
            f"Voice note already recorded for trial {existing.trial_id} "
            f"question {existing.question_index}"
        )
        self.existing = existing


class WebhookValidationError(KahaniError):
    """Malformed webhook payload, unknown order or amount mismatch."""
