"""Shared constants and webhook payload builders for the test suite."""
import hashlib
import hmac
import json
import threading

from django.db import connection

from fulfillment.models import WebhookEvent

BUYER_PHONE = "919812345678"
STORYTELLER_PHONE = "919876543210"
SUPPORT_PHONE = "919999999999"

WHATSAPP_APP_SECRET = "test-app-secret"
PHONEPE_WEBHOOK_USERNAME = "kahani-hooks"
PHONEPE_WEBHOOK_PASSWORD = "s3cret-pass"

QUESTIONS = [
    "When you think of your childhood home, what comes to mind first?",
    "Which dishes take you back to your childhood?",
    "Who were your childhood friends?",
]


def whatsapp_signature(body: bytes, secret: str = WHATSAPP_APP_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def whatsapp_body(*messages) -> bytes:
    return json.dumps({
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"field": "messages", "value": {"messages": list(messages)}}]}],
    }).encode()


def text_message(text: str, sender: str = STORYTELLER_PHONE, message_id: str = "wamid.text.1") -> dict:
    return {"from": sender, "id": message_id, "type": "text", "text": {"body": text}}


def audio_message(media_id: str, sender: str = STORYTELLER_PHONE, message_id: str = "wamid.audio.1") -> dict:
    return {
        "from": sender, "id": message_id, "type": "audio",
        "audio": {"id": media_id, "mime_type": "audio/ogg; codecs=opus"},
    }


def image_message(media_id: str, sender: str, message_id: str = "wamid.image.1") -> dict:
    return {"from": sender, "id": message_id, "type": "image", "image": {"id": media_id, "mime_type": "image/jpeg"}}


def phonepe_authorization() -> str:
    return hashlib.sha256(f"{PHONEPE_WEBHOOK_USERNAME}:{PHONEPE_WEBHOOK_PASSWORD}".encode()).hexdigest()


def ledger_has(idempotency_key: str) -> bool:
    return WebhookEvent.objects.filter(idempotency_key=idempotency_key).exists()


def run_concurrently(workers: int, target):
    """Start `workers` threads that call target() at the same moment. Returns (results, errors)."""
    barrier = threading.Barrier(workers)
    results, errors = [], []

    def run():
        try:
            barrier.wait()
            results.append(target())
        except Exception as e:
            errors.append(e)
        finally:
            connection.close()

    threads = [threading.Thread(target=run) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results, errors
