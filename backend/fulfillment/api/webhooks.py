"""
Provider webhooks: PhonePe payment callbacks and WhatsApp inbound messages.

Both are authenticated before any state is touched and fail closed when
their secrets are not configured. Redeliveries are absorbed by the
idempotency ledger rather than by anything in these views.
"""
import json
import logging

from django.conf import settings
from django.http import HttpResponse
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from fulfillment.exceptions import WebhookValidationError
from fulfillment.providers.whatsapp import verify_webhook_signature
from fulfillment.serializers import PhonePeWebhookSerializer
from fulfillment.services.idempotency import admit_event, release_event
from fulfillment.services.inbound import handle_inbound_message
from fulfillment.services.payment_gateway import verify_webhook_authorization
from fulfillment.services.reconciler import apply_payment_update

logger = logging.getLogger(__name__)


# ─── PhonePe ─────────────────────────────────────────────────────────────────

class PhonePeWebhookView(APIView):
    """
    PhonePe order callbacks. Authorization is SHA256(username:password);
    anything else is rejected with 401 and nothing is written.
    """

    def post(self, request):
        if not verify_webhook_authorization(request.headers.get("Authorization")):
            logger.critical(
                "Rejected PhonePe webhook with invalid authorization from %s",
                request.META.get("REMOTE_ADDR", "unknown"),
            )
            return Response({"detail": "Unauthorized"}, status=status.HTTP_401_UNAUTHORIZED)

        serializer = PhonePeWebhookSerializer(data=request.data)
        if not serializer.is_valid():
            logger.error("Malformed PhonePe webhook: %s", serializer.errors)
            return Response({"detail": "Invalid payload", "errors": serializer.errors},
                            status=status.HTTP_400_BAD_REQUEST)

        event = serializer.validated_data.get("event", "")
        payload = serializer.validated_data["payload"]
        logger.info("PhonePe webhook %s for order %s: %s", event, payload["merchantOrderId"], payload["state"])

        try:
            update = apply_payment_update(
                payload["merchantOrderId"],
                payload["state"],
                transaction_id=payload.get("orderId"),
                amount=payload.get("amount"),
                source="phonepe",
            )
        except WebhookValidationError as e:
            logger.error("PhonePe webhook rejected: %s", e)
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        if update.already_processed:
            return Response({"status": "duplicate"})
        return Response({"status": "ok", "applied": update.applied})


# ─── WhatsApp ────────────────────────────────────────────────────────────────

def _inbound_messages(body: dict):
    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for message in value.get("messages") or []:
                yield message


class WhatsAppWebhookView(APIView):

    def get(self, request):
        """Meta's subscription handshake."""
        verify_token = settings.WHATSAPP_VERIFY_TOKEN
        if not verify_token:
            logger.error("WHATSAPP_VERIFY_TOKEN not configured")
            return HttpResponse("Verification not configured", status=500)

        mode = request.query_params.get("hub.mode")
        token = request.query_params.get("hub.verify_token")
        challenge = request.query_params.get("hub.challenge", "")
        if mode == "subscribe" and token == verify_token:
            logger.info("WhatsApp webhook verified")
            return HttpResponse(challenge, content_type="text/plain")
        logger.warning("WhatsApp webhook verification failed (mode=%s)", mode)
        return HttpResponse("Forbidden", status=403)

    def post(self, request):
        """
        Signature first (over the raw body), then one ledger admission per
        message id. A message whose handling blows up is released from the
        ledger so Meta's redelivery gets another try; the response is 200
        either way so a single bad message doesn't stall the whole stream.
        """
        raw_body = request.body
        signature = request.headers.get("X-Hub-Signature-256")
        if not signature:
            logger.warning("WhatsApp webhook without signature rejected")
            return Response({"detail": "Missing signature"}, status=status.HTTP_401_UNAUTHORIZED)
        if not verify_webhook_signature(raw_body, signature):
            logger.critical("WhatsApp webhook signature mismatch; rejected")
            return Response({"detail": "Invalid signature"}, status=status.HTTP_403_FORBIDDEN)

        try:
            body = json.loads(raw_body or b"{}")
        except ValueError:
            logger.error("WhatsApp webhook body is not JSON")
            return Response({"status": "ignored"})

        handled = duplicates = failed = 0
        for message in _inbound_messages(body):
            message_id = message.get("id")
            if not message_id:
                logger.warning("WhatsApp message without id skipped")
                continue

            key = f"whatsapp_msg_{message_id}"
            if admit_event(key, source="whatsapp").already_processed:
                duplicates += 1
                continue

            try:
                outcome = handle_inbound_message(message)
            except Exception:
                logger.exception("Handling WhatsApp message %s failed", message_id)
                release_event(key)
                failed += 1
                continue

            logger.info("WhatsApp message %s handled: %s", message_id, outcome)
            handled += 1

        return Response({"status": "ok", "handled": handled, "duplicates": duplicates, "failed": failed})
