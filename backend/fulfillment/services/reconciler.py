"""
Fulfillment Reconciler

Glue between payments and the conversation engine:
- payment completion  → activate the trial (buyer onboarding messages)
- trial completion    → hand the album to the assembler, exactly once

Payment confirmation and trial activation are separate transactions. If a
process dies between them, reconcile_payments() finds the completed order
whose trial was never activated and activates it through the same
idempotency key, so a retry can never activate twice.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import transaction

from fulfillment.exceptions import MessagingError, PaymentGatewayError, WebhookValidationError
from fulfillment.models import ConversationState, PaymentOrder, PaymentState, Trial
from fulfillment.providers.album_assembler import get_album_assembler
from fulfillment.providers.whatsapp import get_messaging_provider
from fulfillment.services import messages
from fulfillment.services.audit import record_trial_event
from fulfillment.services.idempotency import admit_event
from fulfillment.services.payment_gateway import get_payment_gateway
from fulfillment.utils import utcnow

logger = logging.getLogger(__name__)

# Amounts in paise, computed server-side
PACKAGE_PRICES = {
    "digital": 19900,
    "ebook": 59900,
    "printed": 99900,
}

# Stop polling orders the buyer abandoned long ago
STALE_ORDER_MAX_AGE = timedelta(hours=48)


@dataclass(frozen=True)
class PaymentUpdate:
    merchant_order_id: str
    state: str
    applied: bool
    already_processed: bool = False


def payment_event_key(merchant_order_id: str, state: str) -> str:
    return f"phonepe:{merchant_order_id}:{state}"


def activation_key(merchant_order_id: str) -> str:
    return f"trial-activation:{merchant_order_id}"


# ─── Checkout ────────────────────────────────────────────────────────────────

def create_payment_order(trial: Trial, package_type: str, redirect_url: str) -> PaymentOrder:
    """
    Create a PaymentOrder for a trial and open it with the provider.
    The provider redirect URL is stored on the order.
    """
    if package_type not in PACKAGE_PRICES:
        raise ValueError(f"Unknown package type: {package_type}")

    amount = PACKAGE_PRICES[package_type]
    order = PaymentOrder.objects.create(
        merchant_order_id=f"KH{uuid4().hex[:24].upper()}",
        trial=trial,
        amount=amount,
        package_type=package_type,
        metadata={"albumId": str(trial.album_id), "packageType": package_type},
    )

    try:
        result = get_payment_gateway().create_order(
            amount=amount,
            merchant_order_id=order.merchant_order_id,
            user_id=trial.buyer_phone,
            redirect_url=redirect_url,
            metadata=order.metadata,
        )
    except PaymentGatewayError as e:
        # A transient failure may still have created the order upstream; leave it for polling
        if not e.transient:
            PaymentOrder.objects.filter(id=order.id, state=PaymentState.PENDING).update(
                state=PaymentState.FAILED, updated_at=utcnow(),
            )
        raise

    order.transaction_id = result.transaction_id
    order.redirect_url = result.redirect_url
    order.save(update_fields=["transaction_id", "redirect_url", "updated_at"])
    logger.info("Checkout %s opened for trial %s (%s, %d paise)", order.merchant_order_id, trial.id,
                package_type, amount)
    return order


# ─── Payment updates (webhook + polling) ─────────────────────────────────────

def apply_payment_update(merchant_order_id: str, state: str, transaction_id: str | None = None,
                         amount: int | None = None, source: str = "phonepe") -> PaymentUpdate:
    """
    Apply a reported order state at most once.

    Ledger admission and the order state change share one transaction: a
    validation failure rolls back the ledger row too, so a corrected
    redelivery is not mistaken for a duplicate. Orders only leave PENDING.
    Raises WebhookValidationError for unknown orders, unknown states and
    amount mismatches.
    """
    if state not in PaymentState.values:
        raise WebhookValidationError(f"Unknown payment state {state!r} for order {merchant_order_id}")

    with transaction.atomic():
        admission = admit_event(payment_event_key(merchant_order_id, state), source=source)
        if admission.already_processed:
            return PaymentUpdate(merchant_order_id, state, applied=False, already_processed=True)

        order = PaymentOrder.objects.select_for_update().filter(merchant_order_id=merchant_order_id).first()
        if order is None:
            raise WebhookValidationError(f"Unknown merchant order {merchant_order_id}")

        if state == PaymentState.PENDING:
            return PaymentUpdate(merchant_order_id, state, applied=False)

        if order.is_terminal:
            logger.warning(
                "Order %s already %s; ignoring reported %s", merchant_order_id, order.state, state,
            )
            return PaymentUpdate(merchant_order_id, state, applied=False)

        if amount is not None and amount != order.amount:
            raise WebhookValidationError(
                f"Amount mismatch for order {merchant_order_id}: expected {order.amount}, got {amount}"
            )

        now = utcnow()
        PaymentOrder.objects.filter(id=order.id, state=PaymentState.PENDING).update(
            state=state,
            transaction_id=transaction_id or order.transaction_id,
            completed_at=now if state == PaymentState.COMPLETED else None,
            updated_at=now,
        )

    logger.info("Order %s moved to %s via %s", merchant_order_id, state, source)
    if state == PaymentState.COMPLETED:
        activate_trial_for_order(merchant_order_id)
    return PaymentUpdate(merchant_order_id, state, applied=True)


def activate_trial_for_order(merchant_order_id: str) -> bool:
    """
    Activate the trial behind a completed order. Guarded twice: the
    trial-activation ledger key and activated_at IS NULL. Returns True only
    for the call that performed the activation.
    """
    with transaction.atomic():
        order = PaymentOrder.objects.select_for_update().filter(merchant_order_id=merchant_order_id).first()
        if order is None or order.state != PaymentState.COMPLETED or order.trial_id is None:
            return False

        admission = admit_event(activation_key(merchant_order_id), source="system")
        if admission.already_processed:
            return False

        activated = Trial.objects.filter(id=order.trial_id, activated_at__isnull=True).update(
            activated_at=utcnow(), updated_at=utcnow(),
        )
        if not activated:
            logger.warning("Trial %s for order %s was already active", order.trial_id, merchant_order_id)
            return False

        record_trial_event(order.trial_id, "activated", f"Paid via order {merchant_order_id}",
                           {"merchant_order_id": merchant_order_id, "amount": order.amount})
        trial_id = order.trial_id
        transaction.on_commit(lambda: send_buyer_onboarding(trial_id))

    logger.info("Trial %s activated by order %s", trial_id, merchant_order_id)
    return True


def activate_free_trial(trial: Trial) -> bool:
    """Free trials need no payment: activate on creation and onboard the buyer."""
    activated = Trial.objects.filter(id=trial.id, activated_at__isnull=True).update(
        activated_at=utcnow(), updated_at=utcnow(),
    )
    if not activated:
        return False
    record_trial_event(trial, "activated", "Free trial activated")
    transaction.on_commit(lambda: send_buyer_onboarding(trial.id))
    return True


def send_buyer_onboarding(trial_id) -> bool:
    """Confirmation plus the link the buyer forwards to the storyteller."""
    trial = Trial.objects.select_related("album").get(id=trial_id)
    provider = get_messaging_provider()
    try:
        provider.send_text(trial.buyer_phone, messages.render(
            "buyer_confirmation", "en",
            buyer_name=trial.buyer_name, storyteller_name=trial.storyteller_name, album_title=trial.album.title,
        ))
        provider.send_text(trial.buyer_phone, messages.render(
            "shareable_link", "en",
            storyteller_name=trial.storyteller_name, link=messages.storyteller_link(trial),
        ))
    except MessagingError as e:
        logger.error("Buyer onboarding for trial %s failed: %s", trial.id, e)
        return False
    return True


# ─── Trial completion ────────────────────────────────────────────────────────

def on_trial_completed(trial: Trial) -> bool:
    """
    Hand a completed trial to the album assembler exactly once. The claim
    on fulfillment_requested_at is released if the assembler fails, so the
    periodic reconcile pass tries again.
    """
    now = utcnow()
    claimed = Trial.objects.filter(
        id=trial.id,
        conversation_state=ConversationState.COMPLETED,
        fulfillment_requested_at__isnull=True,
    ).update(fulfillment_requested_at=now, updated_at=now)
    if not claimed:
        logger.info("Fulfillment for trial %s already requested", trial.id)
        return False

    try:
        get_album_assembler().assemble(trial)
    except Exception:
        logger.exception("Album assembly hand-off failed for trial %s", trial.id)
        Trial.objects.filter(id=trial.id, fulfillment_requested_at=now).update(
            fulfillment_requested_at=None, updated_at=utcnow(),
        )
        return False

    record_trial_event(trial, "fulfillment_requested", "Album assembly requested")
    logger.info("Fulfillment requested for trial %s", trial.id)

    provider = get_messaging_provider()
    for phone, key in ((trial.storyteller_phone, "storyteller_completed"), (trial.buyer_phone, "buyer_completed")):
        if not phone:
            continue
        language = trial.language_preference if key == "storyteller_completed" else "en"
        try:
            provider.send_text(phone, messages.render(
                key, language, storyteller_name=trial.storyteller_name, buyer_name=trial.buyer_name,
            ))
        except MessagingError as e:
            logger.error("Completion message %s for trial %s failed: %s", key, trial.id, e)
    return True


# ─── Periodic reconciliation ─────────────────────────────────────────────────

def reconcile_payments(now: datetime | None = None) -> str:
    """
    Runs via django-q Schedule. Three recovery passes:
    1. completed orders whose trial was never activated
    2. PENDING orders older than PAYMENT_RECONCILE_AFTER_MINUTES: poll the provider
    3. completed trials whose album assembly was never requested
    """
    now = now or utcnow()
    activated = polled = fulfilled = 0

    unactivated = (
        PaymentOrder.objects
        .filter(state=PaymentState.COMPLETED, trial__isnull=False, trial__activated_at__isnull=True)
        .values_list("merchant_order_id", flat=True)
    )
    for merchant_order_id in unactivated:
        try:
            if activate_trial_for_order(merchant_order_id):
                activated += 1
        except Exception:
            logger.exception("Re-activation failed for order %s", merchant_order_id)

    stale_before = now - timedelta(minutes=settings.PAYMENT_RECONCILE_AFTER_MINUTES)
    pending = list(
        PaymentOrder.objects
        .filter(state=PaymentState.PENDING, created_at__lte=stale_before, created_at__gte=now - STALE_ORDER_MAX_AGE)
        .values_list("merchant_order_id", flat=True)
    )
    if pending:
        try:
            gateway = get_payment_gateway()
        except ImproperlyConfigured as e:
            logger.warning("Skipping payment polling: %s", e)
            pending = []
        for merchant_order_id in pending:
            try:
                status = gateway.check_status(merchant_order_id)
                update = apply_payment_update(
                    merchant_order_id, status.state, status.transaction_id, status.amount, source="poll",
                )
                if update.applied:
                    polled += 1
            except Exception:
                logger.exception("Status poll failed for order %s", merchant_order_id)

    unfulfilled = Trial.objects.filter(
        conversation_state=ConversationState.COMPLETED, fulfillment_requested_at__isnull=True,
    ).select_related("album")
    for trial in unfulfilled:
        try:
            if on_trial_completed(trial):
                fulfilled += 1
        except Exception:
            logger.exception("Fulfillment retry failed for trial %s", trial.id)

    return f"reconcile complete: {activated} activated, {polled} orders settled, {fulfilled} fulfillments requested"
