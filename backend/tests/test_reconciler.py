from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from fulfillment.exceptions import PaymentGatewayError, WebhookValidationError
from fulfillment.models import PaymentOrder, PaymentState, Trial, TrialEvent
from fulfillment.services import reconciler
from fulfillment.services.payment_gateway import OrderResult, OrderStatus
from fulfillment.utils import utcnow
from tests.helpers import BUYER_PHONE, ledger_has, run_concurrently

pytestmark = pytest.mark.django_db(transaction=True)


@pytest.fixture
def unpaid_trial(make_trial):
    return make_trial(activated_at=None)


@pytest.fixture
def order(unpaid_trial):
    return PaymentOrder.objects.create(
        merchant_order_id="M123", trial=unpaid_trial, amount=19900, package_type="digital",
    )


@pytest.fixture
def gateway():
    mock_gateway = MagicMock()
    with patch("fulfillment.services.reconciler.get_payment_gateway", return_value=mock_gateway):
        yield mock_gateway


def _activations(trial):
    return TrialEvent.objects.filter(trial_id=trial.id, event_type="activated").count()


# ─── Checkout ────────────────────────────────────────────────────────────────

def test_checkout_opens_order_with_server_side_price(unpaid_trial, gateway):
    gateway.create_order.return_value = OrderResult(transaction_id="OMO1", redirect_url="https://pay.example/1")

    order = reconciler.create_payment_order(unpaid_trial, "ebook", "https://kahani.example/return")

    assert order.merchant_order_id.startswith("KH")
    assert len(order.merchant_order_id) == 26
    assert order.amount == 59900
    assert order.state == PaymentState.PENDING
    assert order.redirect_url == "https://pay.example/1"
    assert order.transaction_id == "OMO1"
    kwargs = gateway.create_order.call_args[1]
    assert kwargs["amount"] == 59900
    assert kwargs["user_id"] == BUYER_PHONE
    assert kwargs["metadata"]["packageType"] == "ebook"


def test_rejected_checkout_marks_order_failed(unpaid_trial, gateway):
    gateway.create_order.side_effect = PaymentGatewayError("bad request", code="BAD_REQUEST", http_status=400)

    with pytest.raises(PaymentGatewayError):
        reconciler.create_payment_order(unpaid_trial, "digital", "https://kahani.example/return")

    assert PaymentOrder.objects.get(trial=unpaid_trial).state == PaymentState.FAILED


def test_transient_checkout_failure_leaves_order_pending(unpaid_trial, gateway):
    gateway.create_order.side_effect = PaymentGatewayError("timeout", transient=True)

    with pytest.raises(PaymentGatewayError):
        reconciler.create_payment_order(unpaid_trial, "digital", "https://kahani.example/return")

    assert PaymentOrder.objects.get(trial=unpaid_trial).state == PaymentState.PENDING


def test_unknown_package_is_rejected(unpaid_trial, gateway):
    with pytest.raises(ValueError):
        reconciler.create_payment_order(unpaid_trial, "platinum", "https://kahani.example/return")
    gateway.create_order.assert_not_called()


# ─── Payment updates ─────────────────────────────────────────────────────────

def test_repeated_completion_is_applied_once(order, unpaid_trial, whatsapp):
    first = reconciler.apply_payment_update("M123", "COMPLETED", "TXN-1", 19900)
    second = reconciler.apply_payment_update("M123", "COMPLETED", "TXN-1", 19900)

    assert first.applied and not first.already_processed
    assert second.already_processed and not second.applied

    order.refresh_from_db()
    assert order.state == PaymentState.COMPLETED
    assert order.transaction_id == "TXN-1"
    assert order.completed_at is not None

    trial = Trial.objects.get(id=unpaid_trial.id)
    assert trial.activated_at is not None
    assert _activations(trial) == 1
    assert ledger_has("trial-activation:M123")

    sent = whatsapp.messages_to(BUYER_PHONE)
    assert len(sent) == 2
    assert "thank you for choosing Kahani" in sent[0]
    assert f"st_{trial.id}" in sent[1]


def test_concurrent_webhook_and_poll_activate_once(order, unpaid_trial, whatsapp):
    results, errors = run_concurrently(
        4, lambda: reconciler.apply_payment_update("M123", "COMPLETED", "TXN-1", 19900),
    )

    assert errors == []
    assert sorted(r.applied for r in results) == [False, False, False, True]
    assert PaymentOrder.objects.get(id=order.id).state == PaymentState.COMPLETED
    assert _activations(unpaid_trial) == 1
    assert len(whatsapp.messages_to(BUYER_PHONE)) == 2


def test_amount_mismatch_is_rejected_without_consuming_the_key(order):

    with pytest.raises(WebhookValidationError):
        reconciler.apply_payment_update("M123", "COMPLETED", "TXN-1", 100)

    order.refresh_from_db()
    assert order.state == PaymentState.PENDING
    assert not ledger_has("phonepe:M123:COMPLETED")
    assert reconciler.apply_payment_update("M123", "COMPLETED", "TXN-1", 19900).applied


def test_unknown_order_and_state_are_rejected(order):
    with pytest.raises(WebhookValidationError):
        reconciler.apply_payment_update("M-nope", "COMPLETED")
    with pytest.raises(WebhookValidationError):
        reconciler.apply_payment_update("M123", "REFUNDED")


def test_terminal_orders_do_not_change(order, unpaid_trial):
    reconciler.apply_payment_update("M123", "COMPLETED", "TXN-1", 19900)

    update = reconciler.apply_payment_update("M123", "FAILED", "TXN-1", 19900)

    assert not update.applied
    order.refresh_from_db()
    assert order.state == PaymentState.COMPLETED


def test_failed_payment_does_not_activate(order, unpaid_trial, whatsapp):
    assert reconciler.apply_payment_update("M123", "FAILED", "TXN-1").applied

    assert Trial.objects.get(id=unpaid_trial.id).activated_at is None
    assert whatsapp.outbox == []


def test_pending_report_changes_nothing(order):
    update = reconciler.apply_payment_update("M123", "PENDING")

    assert not update.applied
    order.refresh_from_db()
    assert order.state == PaymentState.PENDING


# ─── Recovery ────────────────────────────────────────────────────────────────

def test_crash_between_confirmation_and_activation_is_recovered(order, unpaid_trial):
    with patch("fulfillment.services.reconciler.activate_trial_for_order", side_effect=RuntimeError("worker killed")):
        with pytest.raises(RuntimeError):
            reconciler.apply_payment_update("M123", "COMPLETED", "TXN-1", 19900)

    assert PaymentOrder.objects.get(id=order.id).state == PaymentState.COMPLETED
    assert Trial.objects.get(id=unpaid_trial.id).activated_at is None

    # The provider redelivers: the ledger absorbs it, activation still pending
    assert reconciler.apply_payment_update("M123", "COMPLETED", "TXN-1", 19900).already_processed

    result = reconciler.reconcile_payments()
    reconciler.reconcile_payments()

    assert result.startswith("reconcile complete: 1 activated")
    assert Trial.objects.get(id=unpaid_trial.id).activated_at is not None
    assert _activations(unpaid_trial) == 1


def test_stale_pending_orders_are_polled(order, unpaid_trial, gateway, settings):
    settings.PAYMENT_RECONCILE_AFTER_MINUTES = 10
    PaymentOrder.objects.filter(id=order.id).update(created_at=utcnow() - timedelta(minutes=15))
    PaymentOrder.objects.create(merchant_order_id="M-fresh", trial=unpaid_trial, amount=19900)
    gateway.check_status.return_value = OrderStatus(
        merchant_order_id="M123", transaction_id="TXN-9", amount=19900, state="COMPLETED",
    )

    result = reconciler.reconcile_payments()

    gateway.check_status.assert_called_once_with("M123")
    assert "1 orders settled" in result
    assert PaymentOrder.objects.get(id=order.id).state == PaymentState.COMPLETED
    assert Trial.objects.get(id=unpaid_trial.id).activated_at is not None


def test_abandoned_orders_are_not_polled_forever(order, gateway):
    PaymentOrder.objects.filter(id=order.id).update(created_at=utcnow() - timedelta(days=3))

    reconciler.reconcile_payments()

    gateway.check_status.assert_not_called()


def test_free_trial_activates_once(unpaid_trial, whatsapp):
    assert reconciler.activate_free_trial(unpaid_trial)
    assert not reconciler.activate_free_trial(unpaid_trial)

    assert _activations(unpaid_trial) == 1
    assert len(whatsapp.messages_to(BUYER_PHONE)) == 2
