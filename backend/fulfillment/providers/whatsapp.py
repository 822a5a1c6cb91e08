"""
WhatsApp transport: the messaging capability the engine talks through.

Two providers behind the same interface, selected by COMMS_PROVIDER:
- WhatsAppProvider: Meta Graph API (Cloud API) over requests.
- MockWhatsAppProvider: records outbound messages in memory; serves
  registered media bytes. Used for local development and tests.

Interface:
    send_text(phone, text) -> message id
    get_media_info(media_id) -> MediaInfo
    download_media(url) -> bytes
"""
import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from functools import lru_cache

import requests
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from fulfillment.exceptions import MediaDownloadError, MessagingError
from fulfillment.http import is_retryable_status, request_with_retry

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"
MEDIA_DOWNLOAD_TIMEOUT = 30


@dataclass
class MediaInfo:
    url: str
    mime_type: str | None = None
    sha256: str | None = None
    file_size: int | None = None


# ─── Graph API provider ──────────────────────────────────────────────────────

class WhatsAppProvider:
    """WhatsApp Cloud API client."""

    def __init__(self, phone_number_id: str, access_token: str, api_version: str = "v22.0",
                 max_attempts: int = 3, backoff_seconds: float = 1.0,
                 session: requests.Session | None = None):
        if not phone_number_id or not access_token:
            raise ImproperlyConfigured(
                "WHATSAPP_PHONE_NUMBER_ID and WHATSAPP_ACCESS_TOKEN must be set when COMMS_PROVIDER=whatsapp"
            )
        self.name = "whatsapp"
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.api_version = api_version
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "WhatsAppProvider":
        return cls(
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
            access_token=settings.WHATSAPP_ACCESS_TOKEN,
            api_version=settings.WHATSAPP_API_VERSION,
            max_attempts=settings.WHATSAPP_MAX_ATTEMPTS,
            backoff_seconds=settings.WHATSAPP_RETRY_BACKOFF_SECONDS,
        )

    @property
    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _request(self, method: str, url: str, idempotent: bool = True, **kwargs) -> requests.Response:
        return request_with_retry(
            self.session, method, url,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            label="whatsapp",
            idempotent=idempotent,
            **kwargs,
        )

    def send_text(self, phone: str, text: str) -> str:
        url = f"{GRAPH_BASE_URL}/{self.api_version}/{self.phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        try:
            # Graph API sends are not idempotent
            response = self._request(
                "POST", url, idempotent=False, json=payload, headers=self._auth_headers, timeout=15,
            )
        except requests.RequestException as e:
            raise MessagingError(f"WhatsApp send to {phone} failed: {e}", transient=True) from e

        if not response.ok:
            raise MessagingError(
                f"WhatsApp send to {phone} failed: {response.status_code} {response.text[:300]}",
                transient=is_retryable_status(response.status_code),
            )

        try:
            message_id = response.json()["messages"][0]["id"]
        except (ValueError, KeyError, IndexError) as e:
            raise MessagingError(f"WhatsApp send response missing message id: {response.text[:300]}") from e

        logger.info("WhatsApp message %s sent to %s", message_id, phone)
        return message_id

    def get_media_info(self, media_id: str) -> MediaInfo:
        url = f"{GRAPH_BASE_URL}/{self.api_version}/{media_id}"
        try:
            response = self._request("GET", url, headers=self._auth_headers, timeout=15)
        except requests.RequestException as e:
            raise MediaDownloadError(f"Media info lookup for {media_id} failed: {e}") from e

        if not response.ok:
            raise MediaDownloadError(
                f"Media info lookup for {media_id} failed: {response.status_code} {response.text[:300]}"
            )

        data = response.json()
        if not data.get("url"):
            raise MediaDownloadError(f"Media info for {media_id} has no url")

        return MediaInfo(
            url=data["url"],
            mime_type=data.get("mime_type"),
            sha256=data.get("sha256"),
            file_size=data.get("file_size"),
        )

    def download_media(self, url: str) -> bytes:
        try:
            response = self._request(
                "GET", url, headers=self._auth_headers, timeout=MEDIA_DOWNLOAD_TIMEOUT,
            )
        except requests.RequestException as e:
            raise MediaDownloadError(f"Media download failed: {e}") from e

        if not response.ok:
            raise MediaDownloadError(f"Media download failed: {response.status_code}")
        return response.content


# ─── Mock provider ───────────────────────────────────────────────────────────

class MockWhatsAppProvider:
    """
    In-memory stand-in for development and tests.
    Outbound messages land in `outbox`; media is served from `media`.
    """

    def __init__(self):
        self.name = "mock"
        self.outbox: list[dict] = []
        self.media: dict[str, tuple[bytes, str]] = {}

    def send_text(self, phone: str, text: str) -> str:
        message_id = f"wamid.mock.{uuid.uuid4().hex[:16]}"
        self.outbox.append({"id": message_id, "to": phone, "text": text})
        logger.info("[mock] WhatsApp message %s to %s: %s", message_id, phone, text[:80])
        return message_id

    def register_media(self, media_id: str, data: bytes, mime_type: str = "audio/ogg"):
        self.media[media_id] = (data, mime_type)

    def get_media_info(self, media_id: str) -> MediaInfo:
        data, mime_type = self.media.get(media_id, (f"mock-media:{media_id}".encode(), "audio/ogg"))
        return MediaInfo(
            url=f"mock://media/{media_id}",
            mime_type=mime_type,
            sha256=hashlib.sha256(data).hexdigest(),
            file_size=len(data),
        )

    def download_media(self, url: str) -> bytes:
        media_id = url.rsplit("/", 1)[-1]
        data, _ = self.media.get(media_id, (f"mock-media:{media_id}".encode(), "audio/ogg"))
        return data

    def messages_to(self, phone: str) -> list[str]:
        return [m["text"] for m in self.outbox if m["to"] == phone]


@lru_cache(maxsize=1)
def get_messaging_provider():
    """Process-wide messaging provider, chosen by COMMS_PROVIDER."""
    if settings.COMMS_PROVIDER == "whatsapp":
        return WhatsAppProvider.from_settings()
    return MockWhatsAppProvider()


# ─── Inbound webhook signature ───────────────────────────────────────────────

def verify_webhook_signature(raw_body: bytes, signature_header: str | None) -> bool:
    """
    Check Meta's X-Hub-Signature-256 header (sha256=<hex HMAC of the raw body>).
    Fails closed: a missing app secret or malformed header is a rejection.
    """
    app_secret = settings.WHATSAPP_APP_SECRET
    if not app_secret:
        logger.error("WHATSAPP_APP_SECRET not configured; rejecting webhook")
        return False
    if not signature_header or not signature_header.startswith("sha256="):
        return False

    expected = hmac.new(app_secret.encode(), raw_body or b"", hashlib.sha256).hexdigest()
    provided = signature_header[len("sha256="):].strip().lower()
    return hmac.compare_digest(expected.encode(), provided.encode())
