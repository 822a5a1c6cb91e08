"""
Outbound HTTP with bounded retries, shared by the PhonePe and WhatsApp clients.

Connection errors, timeouts, HTTP 429 and 5xx are treated as transient and
retried with exponential backoff (base * 2**attempt). Anything else is
returned to the caller on the first attempt.

Requests that must not run twice (idempotent=False, e.g. sending a WhatsApp
message) are only retried when the server cannot have acted on them: the
connection was never established, or the server answered 429. A read
timeout or a 5xx may follow a delivered message, so those are returned or
raised on the first attempt.
"""
import logging
import time

import requests

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}
RATE_LIMITED = 429


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS or status_code >= 500


def request_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    label: str = "http",
    idempotent: bool = True,
    **kwargs,
) -> requests.Response:
    """
    Perform a request, retrying transient failures.

    Returns the last response (which may still be a 429/5xx once attempts are
    exhausted). Raises the last requests.RequestException if every attempt
    failed before a response arrived.
    """
    # ConnectTimeout is a ConnectionError; ReadTimeout is not
    retry_errors = (requests.ConnectionError, requests.Timeout) if idempotent else (requests.ConnectionError,)
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        last = attempt == attempts - 1
        try:
            response = session.request(method, url, **kwargs)
        except retry_errors as e:
            if last:
                logger.error("%s %s %s failed after %d attempts: %s", label, method, url, attempts, e)
                raise
            logger.warning("%s %s %s attempt %d failed: %s", label, method, url, attempt + 1, e)
        else:
            retryable = (
                is_retryable_status(response.status_code) if idempotent
                else response.status_code == RATE_LIMITED
            )
            if not retryable or last:
                return response
            logger.warning(
                "%s %s %s attempt %d returned %s; retrying",
                label, method, url, attempt + 1, response.status_code,
            )

        delay = backoff_seconds * (2 ** attempt)
        if delay > 0:
            time.sleep(delay)

    raise AssertionError("unreachable")
