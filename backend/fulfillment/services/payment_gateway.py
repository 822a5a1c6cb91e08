"""
Payment Gateway Client (PhonePe Standard Checkout v2).

- get_auth_token()                 OAuth client-credentials token, cached per client instance
- create_order(...)                start a checkout; returns the provider order id + redirect URL
- check_status(merchant_order_id)  read-only poll of settlement state
- verify_webhook_authorization(h)  constant-time check of the webhook Authorization header

The token cache lives on the client object, which get_payment_gateway()
constructs once per process. A lock collapses concurrent refreshes into a
single fetch; each process keeps its own cache, so the TTL bounds staleness
per instance only.
"""
import hashlib
import hmac
import logging
import threading
import time
from dataclasses import dataclass
from functools import lru_cache

import requests
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from fulfillment.exceptions import PaymentGatewayError
from fulfillment.http import is_retryable_status, request_with_retry

logger = logging.getLogger(__name__)

PRODUCTION_BASE_URL = "https://api.phonepe.com/apis/pg"
SANDBOX_BASE_URL = "https://api-preprod.phonepe.com/apis/pg-sandbox"
PRODUCTION_AUTH_URL = "https://api.phonepe.com/apis/identity-manager/v1/oauth/token"

ORDER_STATES = ("PENDING", "COMPLETED", "FAILED")


@dataclass(frozen=True)
class OrderResult:
    transaction_id: str
    redirect_url: str


@dataclass(frozen=True)
class OrderStatus:
    merchant_order_id: str
    transaction_id: str
    amount: int
    state: str


class PhonePeClient:

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        client_version: str = "1",
        environment: str = "sandbox",
        merchant_id: str = "",
        webhook_username: str = "",
        webhook_password: str = "",
        token_ttl_seconds: int = 900,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout: float = 15,
        session: requests.Session | None = None,
        clock=time.monotonic,
    ):
        if not client_id or not client_secret:
            raise ImproperlyConfigured("PHONEPE_CLIENT_ID and PHONEPE_CLIENT_SECRET must be set")
        if environment not in ("sandbox", "production"):
            raise ImproperlyConfigured(f"PHONEPE_ENVIRONMENT must be sandbox or production, got {environment!r}")

        self.client_id = client_id
        self.client_secret = client_secret
        self.client_version = client_version
        self.environment = environment
        self.merchant_id = merchant_id
        self.webhook_username = webhook_username
        self.webhook_password = webhook_password
        self.token_ttl_seconds = token_ttl_seconds
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock

        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_settings(cls) -> "PhonePeClient":
        return cls(
            client_id=settings.PHONEPE_CLIENT_ID,
            client_secret=settings.PHONEPE_CLIENT_SECRET,
            client_version=settings.PHONEPE_CLIENT_VERSION,
            environment=settings.PHONEPE_ENVIRONMENT,
            merchant_id=settings.PHONEPE_MERCHANT_ID,
            webhook_username=settings.PHONEPE_WEBHOOK_USERNAME,
            webhook_password=settings.PHONEPE_WEBHOOK_PASSWORD,
            token_ttl_seconds=settings.PHONEPE_TOKEN_TTL_SECONDS,
            max_attempts=settings.PHONEPE_MAX_ATTEMPTS,
            backoff_seconds=settings.PHONEPE_RETRY_BACKOFF_SECONDS,
            timeout=settings.PHONEPE_TIMEOUT_SECONDS,
        )

    # ─── URLs ────────────────────────────────────────────────────────────────

    @property
    def base_url(self) -> str:
        return PRODUCTION_BASE_URL if self.environment == "production" else SANDBOX_BASE_URL

    @property
    def auth_url(self) -> str:
        # Production auth lives under identity-manager, sandbox under the pg base
        if self.environment == "production":
            return PRODUCTION_AUTH_URL
        return f"{self.base_url}/v1/oauth/token"

    # ─── Auth token ──────────────────────────────────────────────────────────

    def _cached_token(self) -> str | None:
        if self._token and self.clock() < self._token_expires_at:
            return self._token
        return None

    def get_auth_token(self) -> str:
        token = self._cached_token()
        if token:
            return token

        with self._token_lock:
            # Another caller may have refreshed while we waited
            token = self._cached_token()
            if token:
                return token

            token = self._fetch_token()
            self._token = token
            self._token_expires_at = self.clock() + self.token_ttl_seconds
            logger.info("PhonePe auth token cached for %ss (%s)", self.token_ttl_seconds, self.environment)
            return token

    def invalidate_token(self):
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    def _fetch_token(self) -> str:
        logger.info(
            "Fetching PhonePe auth token (client %s..., version %s)",
            self.client_id[:8], self.client_version,
        )
        try:
            response = request_with_retry(
                self.session, "POST", self.auth_url,
                max_attempts=self.max_attempts,
                backoff_seconds=self.backoff_seconds,
                label="phonepe-auth",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "client_version": self.client_version,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PaymentGatewayError(f"PhonePe auth request failed: {e}", transient=True) from e

        data = self._json(response)
        if not response.ok:
            raise PaymentGatewayError(
                f"PhonePe auth failed: {data.get('message') or response.text[:200]}",
                code=data.get("code"),
                http_status=response.status_code,
                transient=is_retryable_status(response.status_code),
            )
        if not data.get("access_token"):
            raise PaymentGatewayError("PhonePe auth response missing access_token", http_status=response.status_code)
        return data["access_token"]

    # ─── Orders ──────────────────────────────────────────────────────────────

    def create_order(self, amount: int, merchant_order_id: str, user_id: str, redirect_url: str,
                     metadata: dict | None = None) -> OrderResult:
        """
        Create a PG_CHECKOUT order. The merchant order id is the caller's
        idempotency handle; this client does not deduplicate.
        Raises PaymentGatewayError on non-2xx or a body missing orderId/redirectUrl.
        """
        if not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"amount must be a positive integer in paise, got {amount!r}")

        payload = {
            "merchantOrderId": merchant_order_id,
            "amount": amount,
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "merchantUrls": {"redirectUrl": redirect_url},
            },
        }
        if metadata or user_id:
            metadata = metadata or {}
            payload["metaInfo"] = {
                "udf1": str(metadata.get("albumId") or ""),
                "udf2": str(metadata.get("packageType") or ""),
                "udf3": str(user_id or ""),
            }

        logger.info("Creating PhonePe order %s for %d paise (%s)", merchant_order_id, amount, self.environment)
        response = self._authorized("POST", f"{self.base_url}/checkout/v2/pay", json=payload)
        data = self._json(response)

        if not response.ok or not data.get("orderId") or not data.get("redirectUrl"):
            logger.error("PhonePe order %s creation failed: %s %s", merchant_order_id, response.status_code, data)
            raise PaymentGatewayError(
                f"PhonePe order failed: {data.get('message') or data.get('code') or 'missing orderId/redirectUrl'}",
                code=data.get("code"),
                http_status=response.status_code,
                transient=is_retryable_status(response.status_code),
            )

        logger.info("PhonePe order created: %s -> %s", merchant_order_id, data["orderId"])
        return OrderResult(transaction_id=data["orderId"], redirect_url=data["redirectUrl"])

    def check_status(self, merchant_order_id: str) -> OrderStatus:
        url = f"{self.base_url}/checkout/v2/order/{merchant_order_id}/status"
        response = self._authorized("GET", url, params={"details": "true", "errorContext": "true"})
        data = self._json(response)

        if not response.ok:
            raise PaymentGatewayError(
                f"PhonePe status check failed: {data.get('message') or data.get('code') or response.status_code}",
                code=data.get("code"),
                http_status=response.status_code,
                transient=is_retryable_status(response.status_code),
            )

        state = data.get("state")
        if state not in ORDER_STATES:
            raise PaymentGatewayError(
                f"PhonePe status for {merchant_order_id} has unexpected state {state!r}",
                http_status=response.status_code,
            )

        details = data.get("paymentDetails") or []
        latest = details[0] if details else {}
        transaction_id = (
            latest.get("transactionId") or data.get("transactionId") or data.get("orderId") or merchant_order_id
        )
        amount = data.get("amount") or latest.get("amount") or 0

        logger.info("PhonePe order %s is %s (txn %s, %s paise)", merchant_order_id, state, transaction_id, amount)
        return OrderStatus(
            merchant_order_id=merchant_order_id,
            transaction_id=transaction_id,
            amount=int(amount),
            state=state,
        )

    def _authorized(self, method: str, url: str, **kwargs) -> requests.Response:
        """Authenticated request; a 401 drops the cached token and retries once with a fresh one."""
        for attempt in range(2):
            token = self.get_auth_token()
            try:
                response = request_with_retry(
                    self.session, method, url,
                    max_attempts=self.max_attempts,
                    backoff_seconds=self.backoff_seconds,
                    label="phonepe",
                    headers={"Content-Type": "application/json", "Authorization": f"O-Bearer {token}"},
                    timeout=self.timeout,
                    **kwargs,
                )
            except requests.RequestException as e:
                raise PaymentGatewayError(f"PhonePe {method} {url} failed: {e}", transient=True) from e

            if response.status_code == 401 and attempt == 0:
                logger.warning("PhonePe rejected cached token; refreshing")
                self.invalidate_token()
                continue
            return response
        return response

    @staticmethod
    def _json(response: requests.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # ─── Webhooks ────────────────────────────────────────────────────────────

    def expected_webhook_authorization(self) -> str | None:
        if not self.webhook_username or not self.webhook_password:
            return None
        return hashlib.sha256(f"{self.webhook_username}:{self.webhook_password}".encode()).hexdigest()

    def verify_webhook_authorization(self, header: str | None) -> bool:
        """
        PhonePe sends SHA256(username:password) as the Authorization header.
        Returns False (never raises) on missing credentials, an empty or
        malformed header, or any mismatch.
        """
        try:
            expected = self.expected_webhook_authorization()
            if expected is None:
                logger.error("PhonePe webhook credentials not configured; rejecting")
                return False
            if not header or not isinstance(header, str):
                return False
            provided = header.strip().lower()
            return hmac.compare_digest(expected.encode(), provided.encode())
        except Exception:
            logger.exception("PhonePe webhook authorization check errored; rejecting")
            return False


@lru_cache(maxsize=1)
def get_payment_gateway() -> PhonePeClient:
    """Process-wide client. Raises ImproperlyConfigured when credentials are missing."""
    return PhonePeClient.from_settings()


def verify_webhook_authorization(header: str | None) -> bool:
    """Fail-closed wrapper for views: an unconfigured gateway rejects every webhook."""
    try:
        client = get_payment_gateway()
    except ImproperlyConfigured as e:
        logger.error("PhonePe gateway not configured (%s); rejecting webhook", e)
        return False
    return client.verify_webhook_authorization(header)
