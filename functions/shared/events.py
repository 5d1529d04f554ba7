"""
Event records that decouple state reconciliation from email dispatch.

A write here lands in the store's change stream and is picked up by the
email sender. The emitter only appends; deduplication of equivalent events
belongs to the consumer.
"""

import logging
import random
import string
import time
from enum import Enum

from .constants import DETAILS_SK, EVENT_PREFIX
from .dynamo import RecordStore, utc_now_iso

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase


class LifecycleEvent(str, Enum):
    """Customer lifecycle events that can trigger an email."""

    LICENSE_CREATED = "LICENSE_CREATED"
    LICENSE_REVOKED = "LICENSE_REVOKED"
    LICENSE_SUSPENDED = "LICENSE_SUSPENDED"
    CUSTOMER_CREATED = "CUSTOMER_CREATED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    TRIAL_ENDING = "TRIAL_ENDING"
    TEAM_INVITE_CREATED = "TEAM_INVITE_CREATED"


def new_event_id() -> str:
    """Time-ordered id with a random suffix: '<epoch ms>-<7 base36 chars>'."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"{int(time.time() * 1000)}-{suffix}"


class EventEmitter:
    """Writes event records into the store."""

    def __init__(self, store: RecordStore):
        self.store = store

    def write_event_record(self, event_type: LifecycleEvent | str, data: dict) -> str:
        """
        Append a new event record.

        Args:
            event_type: Lifecycle event type
            data: Denormalized fields the email template needs

        Returns:
            The generated event id
        """
        event_type = LifecycleEvent(event_type).value
        event_id = new_event_id()
        item = {
            **data,
            "PK": f"{EVENT_PREFIX}{event_id}",
            "SK": DETAILS_SK,
            "eventId": event_id,
            "eventType": event_type,
            "createdAt": utc_now_iso(),
        }
        self.store.put_event_record(item)
        logger.info(f"Event record written: {event_type}", extra={"event_id": event_id, "event_type": event_type})
        return event_id
