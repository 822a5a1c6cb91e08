"""Append-only trial audit log."""
import logging

from fulfillment.models import TrialEvent

logger = logging.getLogger(__name__)


def record_trial_event(trial, event_type: str, description: str, payload: dict | None = None) -> TrialEvent:
    event = TrialEvent.objects.create(
        trial_id=trial.id if hasattr(trial, "id") else trial,
        event_type=event_type,
        description=description,
        payload=payload or {},
    )
    logger.debug("Trial %s event %s: %s", event.trial_id, event_type, description)
    return event
