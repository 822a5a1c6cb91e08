import hashlib
import json
import threading
import time
from unittest.mock import MagicMock

import pytest
import requests
from django.core.exceptions import ImproperlyConfigured

from fulfillment.exceptions import PaymentGatewayError
from fulfillment.services import payment_gateway
from fulfillment.services.payment_gateway import PhonePeClient


def _response(status_code=200, body=None):
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.ok = status_code < 400
    response.json.return_value = body if body is not None else {}
    response.text = json.dumps(body or {})
    return response


def _token(value="tok-1"):
    return _response(200, {"access_token": value, "expires_at": 1893456000})


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(session, clock):
    return PhonePeClient(
        client_id="client-id",
        client_secret="client-secret",
        environment="sandbox",
        webhook_username="hookuser",
        webhook_password="hookpass",
        token_ttl_seconds=900,
        max_attempts=3,
        backoff_seconds=0,
        session=session,
        clock=clock,
    )


# ─── Configuration ───────────────────────────────────────────────────────────

def test_missing_credentials_prevent_construction():
    with pytest.raises(ImproperlyConfigured):
        PhonePeClient(client_id="", client_secret="secret")
    with pytest.raises(ImproperlyConfigured):
        PhonePeClient(client_id="id", client_secret="")


def test_unknown_environment_is_rejected():
    with pytest.raises(ImproperlyConfigured):
        PhonePeClient(client_id="id", client_secret="secret", environment="staging")


def test_environment_selects_endpoints():
    sandbox = PhonePeClient(client_id="id", client_secret="secret", environment="sandbox")
    production = PhonePeClient(client_id="id", client_secret="secret", environment="production")

    assert sandbox.base_url == "https://api-preprod.phonepe.com/apis/pg-sandbox"
    assert sandbox.auth_url == "https://api-preprod.phonepe.com/apis/pg-sandbox/v1/oauth/token"
    assert production.base_url == "https://api.phonepe.com/apis/pg"
    assert production.auth_url == "https://api.phonepe.com/apis/identity-manager/v1/oauth/token"


# ─── Token cache ─────────────────────────────────────────────────────────────

def test_token_is_reused_within_ttl(client, session, clock):
    session.request.return_value = _token("tok-1")

    first = client.get_auth_token()
    clock.advance(899)
    second = client.get_auth_token()

    assert first == second == "tok-1"
    assert session.request.call_count == 1
    method, url = session.request.call_args[0]
    assert method == "POST"
    assert url.endswith("/v1/oauth/token")
    assert session.request.call_args[1]["data"]["grant_type"] == "client_credentials"


def test_expired_token_triggers_exactly_one_refetch(client, session, clock):
    session.request.side_effect = [_token("tok-1"), _token("tok-2")]

    assert client.get_auth_token() == "tok-1"
    clock.advance(901)
    assert client.get_auth_token() == "tok-2"
    assert client.get_auth_token() == "tok-2"
    assert session.request.call_count == 2


def test_concurrent_cache_misses_collapse_into_one_fetch(client, session):
    def slow_token(*args, **kwargs):
        time.sleep(0.05)
        return _token("tok-shared")

    session.request.side_effect = slow_token
    tokens = []
    threads = [threading.Thread(target=lambda: tokens.append(client.get_auth_token())) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert tokens == ["tok-shared"] * 8
    assert session.request.call_count == 1


def test_auth_failure_raises_typed_error(client, session):
    session.request.return_value = _response(400, {"code": "INVALID_CLIENT", "message": "Bad client"})

    with pytest.raises(PaymentGatewayError) as exc:
        client.get_auth_token()

    assert exc.value.code == "INVALID_CLIENT"
    assert exc.value.http_status == 400
    assert not exc.value.transient


# ─── Orders ──────────────────────────────────────────────────────────────────

def test_create_order_sends_checkout_payload(client, session):
    session.request.side_effect = [
        _token("tok-1"),
        _response(200, {"orderId": "OMO123", "state": "PENDING", "redirectUrl": "https://pay.example/abc"}),
    ]

    result = client.create_order(
        amount=19900, merchant_order_id="M123", user_id="919812345678",
        redirect_url="https://kahani.example/return", metadata={"albumId": "a-1", "packageType": "digital"},
    )

    assert result.transaction_id == "OMO123"
    assert result.redirect_url == "https://pay.example/abc"

    method, url = session.request.call_args[0]
    kwargs = session.request.call_args[1]
    assert method == "POST"
    assert url.endswith("/checkout/v2/pay")
    assert kwargs["headers"]["Authorization"] == "O-Bearer tok-1"
    assert kwargs["json"]["merchantOrderId"] == "M123"
    assert kwargs["json"]["amount"] == 19900
    assert kwargs["json"]["paymentFlow"]["merchantUrls"]["redirectUrl"] == "https://kahani.example/return"
    assert kwargs["json"]["metaInfo"] == {"udf1": "a-1", "udf2": "digital", "udf3": "919812345678"}


def test_create_order_rejects_non_positive_amount(client, session):
    with pytest.raises(ValueError):
        client.create_order(amount=0, merchant_order_id="M1", user_id="u", redirect_url="https://x")
    session.request.assert_not_called()


def test_create_order_error_carries_provider_code(client, session):
    session.request.side_effect = [
        _token(),
        _response(400, {"code": "BAD_REQUEST", "message": "Invalid amount"}),
    ]

    with pytest.raises(PaymentGatewayError) as exc:
        client.create_order(amount=100, merchant_order_id="M1", user_id="u", redirect_url="https://x")

    assert exc.value.code == "BAD_REQUEST"
    assert exc.value.http_status == 400
    assert "Invalid amount" in str(exc.value)
    assert not exc.value.transient


def test_create_order_missing_redirect_url_is_malformed(client, session):
    session.request.side_effect = [_token(), _response(200, {"orderId": "OMO1"})]

    with pytest.raises(PaymentGatewayError):
        client.create_order(amount=100, merchant_order_id="M1", user_id="u", redirect_url="https://x")


def test_server_errors_are_retried_then_reported_transient(client, session):
    session.request.side_effect = [_token()] + [_response(503, {"code": "UNAVAILABLE"})] * 3

    with pytest.raises(PaymentGatewayError) as exc:
        client.create_order(amount=100, merchant_order_id="M1", user_id="u", redirect_url="https://x")

    assert exc.value.transient
    assert exc.value.http_status == 503
    assert session.request.call_count == 4  # token + three attempts


def test_connection_errors_surface_as_transient(client, session):
    session.request.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(PaymentGatewayError) as exc:
        client.get_auth_token()

    assert exc.value.transient
    assert session.request.call_count == 3


def test_rejected_token_is_refreshed_once(client, session):
    session.request.side_effect = [
        _token("stale"),
        _response(401, {"code": "UNAUTHORIZED"}),
        _token("fresh"),
        _response(200, {"orderId": "OMO9", "redirectUrl": "https://pay.example/9"}),
    ]

    result = client.create_order(amount=100, merchant_order_id="M9", user_id="u", redirect_url="https://x")

    assert result.transaction_id == "OMO9"
    assert session.request.call_args[1]["headers"]["Authorization"] == "O-Bearer fresh"


def test_check_status_reads_latest_payment_attempt(client, session):
    session.request.side_effect = [
        _token(),
        _response(200, {
            "orderId": "OMO123",
            "state": "COMPLETED",
            "amount": 19900,
            "paymentDetails": [{"transactionId": "TXN-1", "amount": 19900, "state": "COMPLETED"}],
        }),
    ]

    status = client.check_status("M123")

    assert status.state == "COMPLETED"
    assert status.transaction_id == "TXN-1"
    assert status.amount == 19900
    method, url = session.request.call_args[0]
    assert method == "GET"
    assert url.endswith("/checkout/v2/order/M123/status")


def test_check_status_rejects_unknown_state(client, session):
    session.request.side_effect = [_token(), _response(200, {"orderId": "OMO1", "state": "REFUNDED"})]

    with pytest.raises(PaymentGatewayError):
        client.check_status("M1")


# ─── Webhook authorization ───────────────────────────────────────────────────

def _expected(username="hookuser", password="hookpass"):
    return hashlib.sha256(f"{username}:{password}".encode()).hexdigest()


def test_valid_webhook_authorization_is_accepted(client):
    assert client.verify_webhook_authorization(_expected())
    assert client.verify_webhook_authorization(f"  {_expected().upper()} ")


def test_same_length_wrong_digest_is_rejected(client):
    wrong = _expected(password="other")
    assert len(wrong) == len(_expected())
    assert not client.verify_webhook_authorization(wrong)


def test_missing_webhook_secret_fails_closed(session):
    unconfigured = PhonePeClient(client_id="id", client_secret="secret", session=session)
    assert not unconfigured.verify_webhook_authorization(_expected())


@pytest.mark.parametrize("header", ["", None, "   ", "sha256", b"bytes-header", "नमस्ते"])
def test_empty_or_malformed_header_is_rejected(client, header):
    assert client.verify_webhook_authorization(header) is False


def test_unconfigured_gateway_rejects_every_webhook(settings):
    settings.PHONEPE_CLIENT_ID = ""
    payment_gateway.get_payment_gateway.cache_clear()

    assert payment_gateway.verify_webhook_authorization(_expected()) is False
