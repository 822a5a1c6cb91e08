"""
Webhook Idempotency Layer.

admit_event(key) inserts a WebhookEvent row and reports whether the key had
already been seen. Admission is a single INSERT guarded by the unique
constraint on idempotency_key, never read-then-write, so concurrent
deliveries of the same event race at the database and exactly one wins.

When called inside the caller's transaction, the ledger row commits or
rolls back together with the state change it guards.
"""
import logging
from dataclasses import dataclass

from django.db import IntegrityError, transaction

from fulfillment.models import WebhookEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    key: str
    already_processed: bool


def admit_event(idempotency_key: str, source: str = "") -> Admission:
    if not idempotency_key:
        raise ValueError("idempotency_key must be non-empty")

    try:
        # Savepoint so a duplicate doesn't poison an enclosing transaction
        with transaction.atomic():
            WebhookEvent.objects.create(idempotency_key=idempotency_key, source=source)
    except IntegrityError:
        logger.warning("Duplicate event %s (%s) already processed, skipping", idempotency_key, source or "unknown")
        return Admission(key=idempotency_key, already_processed=True)

    return Admission(key=idempotency_key, already_processed=False)


def release_event(idempotency_key: str) -> bool:
    """
    Forget a key whose processing failed outside the ledger's transaction,
    so the provider's redelivery is handled instead of skipped.
    """
    deleted, _ = WebhookEvent.objects.filter(idempotency_key=idempotency_key).delete()
    if deleted:
        logger.warning("Released event %s for redelivery", idempotency_key)
    return bool(deleted)
