"""
Customer Update - SQS consumer for billing change events.

Applies billing-provider subscription events to customer and license state:
- checkout.session.completed: link subscription, mark active
- customer.subscription.updated: merge status/plan/period changes
- customer.subscription.deleted: cancel customer and licenses
- invoice.payment_succeeded: reset failures, reactivate licenses
- invoice.payment_failed: count failures, suspend licenses at the limit

Triggered by: CustomerUpdate SQS queue (stream -> SNS -> SQS fan-out).
Delivery is at-least-once; every transition is a set of single-record
last-writer-wins updates, safe to re-run on redelivery.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from shared.constants import (
    ACTIVE_STATUSES,
    LICENSE_ACTIVE,
    LICENSE_CANCELED,
    LICENSE_SUSPENDED,
    MAX_PAYMENT_FAILURES,
    SUBSCRIPTION_STATUSES,
)
from shared.dynamo import RecordStore, utc_now_iso
from shared.events import EventEmitter, LifecycleEvent
from shared.licenses import LicenseSynchronizer
from shared.logging_utils import configure_structured_logging, log_batch_result, set_request_id
from shared.mailer import mask_email
from shared.metrics import emit_batch_result_metrics
from shared.stream_fields import get_field, parse_change_message
from shared.types import BatchResult, ChangeMessage, CustomerRecord, SQSRecord

logger = logging.getLogger(__name__)


class BillingEvent(str, Enum):
    """Billing-provider event types the reconciler understands."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"


def normalize_timestamp(value):
    """Epoch seconds become ISO-8601 UTC strings; strings pass through."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return value


def parse_flag(value) -> Optional[bool]:
    """Accept a BOOL attribute or a "true"/"false" string."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


class CustomerReconciler:
    """Translates one billing change event into customer/license state."""

    def __init__(
        self,
        store: RecordStore,
        emitter: Optional[EventEmitter] = None,
        licenses: Optional[LicenseSynchronizer] = None,
        max_payment_failures: int = MAX_PAYMENT_FAILURES,
    ):
        self.store = store
        self.emitter = emitter or EventEmitter(store)
        self.licenses = licenses or LicenseSynchronizer(store)
        self.max_payment_failures = max_payment_failures
        self._handlers: dict[BillingEvent, Callable[[dict], None]] = {
            BillingEvent.CHECKOUT_COMPLETED: self.handle_checkout_completed,
            BillingEvent.SUBSCRIPTION_UPDATED: self.handle_subscription_updated,
            BillingEvent.SUBSCRIPTION_DELETED: self.handle_subscription_deleted,
            BillingEvent.PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            BillingEvent.PAYMENT_FAILED: self.handle_payment_failed,
        }

    def handler_for(self, event_type) -> Optional[Callable[[dict], None]]:
        try:
            return self._handlers[BillingEvent(event_type)]
        except ValueError:
            return None

    def _find_customer(self, image: dict, event_type: BillingEvent) -> Optional[CustomerRecord]:
        stripe_customer_id = get_field(image, "stripeCustomerId")
        if not stripe_customer_id:
            logger.warning(f"No stripeCustomerId on {event_type.value} event")
            return None

        customer = self.store.get_customer_by_stripe_id(stripe_customer_id)
        if not customer:
            # Provider events can arrive before the customer record is synced
            logger.warning(
                f"Customer not found for {stripe_customer_id}",
                extra={"stripe_customer_id": stripe_customer_id, "event_type": event_type.value},
            )
            return None
        return customer

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def handle_checkout_completed(self, image: dict) -> None:
        customer = self._find_customer(image, BillingEvent.CHECKOUT_COMPLETED)
        if not customer:
            return

        subscription_id = get_field(image, "subscriptionId")
        if not subscription_id:
            logger.info(f"Checkout for {customer['userId']} carried no subscription id")
            return

        self.store.update_customer(customer["userId"], {
            "subscriptionId": subscription_id,
            "subscriptionStatus": "active",
            "checkoutCompletedAt": utc_now_iso(),
        })
        logger.info(f"Customer {customer['userId']} linked to subscription {subscription_id}")

    def handle_subscription_updated(self, image: dict) -> None:
        customer = self._find_customer(image, BillingEvent.SUBSCRIPTION_UPDATED)
        if not customer:
            return

        user_id = customer["userId"]
        status = get_field(image, "subscriptionStatus")
        cancel_at_period_end = parse_flag(get_field(image, "cancelAtPeriodEnd"))
        if status and status not in SUBSCRIPTION_STATUSES:
            logger.warning(f"Unexpected subscription status {status} for {user_id}")

        updates = {
            "subscriptionUpdatedAt": utc_now_iso(),
            "subscriptionStatus": status or None,
            "planId": get_field(image, "planId") or None,
            "currentPeriodEnd": normalize_timestamp(get_field(image, "currentPeriodEnd")) or None,
            "cancelAtPeriodEnd": cancel_at_period_end,
        }
        self.store.update_customer(user_id, updates)

        if status and status not in ACTIVE_STATUSES:
            count = self.licenses.sync_customer_licenses(user_id, status)
            logger.info(f"Mirrored status {status} onto {count} licenses for {user_id}")

        logger.info(
            f"Subscription updated for {user_id}",
            extra={"user_id": user_id, "status": status, "plan_id": updates["planId"]},
        )

    def handle_subscription_deleted(self, image: dict) -> None:
        customer = self._find_customer(image, BillingEvent.SUBSCRIPTION_DELETED)
        if not customer:
            return

        user_id = customer["userId"]
        email = customer.get("email")
        now = utc_now_iso()
        access_until = normalize_timestamp(get_field(image, "currentPeriodEnd")) or now

        self.store.update_customer(user_id, {
            "subscriptionStatus": "canceled",
            "canceledAt": now,
            "accessUntil": access_until,
        })

        self.licenses.sync_customer_licenses(user_id, LICENSE_CANCELED, {
            "eventType": LifecycleEvent.SUBSCRIPTION_CANCELLED.value,
            "email": email,
            "accessUntil": access_until,
        })

        self.emitter.write_event_record(LifecycleEvent.SUBSCRIPTION_CANCELLED, {
            "email": email,
            "userId": user_id,
            "accessUntil": access_until,
        })
        logger.info(f"Subscription canceled for {user_id}, access until {access_until}")

    def handle_payment_succeeded(self, image: dict) -> None:
        customer = self._find_customer(image, BillingEvent.PAYMENT_SUCCEEDED)
        if not customer:
            return

        user_id = customer["userId"]
        email = customer.get("email")
        was_suspended = (
            customer.get("subscriptionStatus") == "past_due"
            or int(customer.get("paymentFailureCount") or 0) > 0
        )

        self.store.update_customer(user_id, {
            "subscriptionStatus": "active",
            "paymentFailureCount": 0,
            "lastPaymentSuccessAt": utc_now_iso(),
            "lastInvoiceId": get_field(image, "invoiceId"),
        })

        if was_suspended:
            self.licenses.sync_customer_licenses(user_id, LICENSE_ACTIVE, {
                "eventType": LifecycleEvent.SUBSCRIPTION_REACTIVATED.value,
                "email": email,
            })
            self.emitter.write_event_record(LifecycleEvent.SUBSCRIPTION_REACTIVATED, {
                "email": email,
                "userId": user_id,
            })

        logger.info(f"Payment succeeded for {user_id}", extra={"user_id": user_id, "was_suspended": was_suspended})

    def handle_payment_failed(self, image: dict) -> None:
        customer = self._find_customer(image, BillingEvent.PAYMENT_FAILED)
        if not customer:
            return

        user_id = customer["userId"]
        email = customer.get("email")
        invoice_id = get_field(image, "invoiceId")
        attempt = get_field(image, "attemptCount")
        previous_count = int(customer.get("paymentFailureCount") or 0)

        # A redelivered message for an attempt already counted must not count twice
        already_counted = (
            invoice_id is not None
            and attempt is not None
            and customer.get("lastFailedInvoiceId") == invoice_id
            and customer.get("lastFailedAttempt") == attempt
        )
        failure_count = previous_count if already_counted else previous_count + 1

        self.store.update_customer(user_id, {
            "subscriptionStatus": "past_due",
            "paymentFailureCount": failure_count,
            "lastPaymentFailedAt": utc_now_iso(),
            "lastFailedInvoiceId": invoice_id,
            "lastFailedAttempt": attempt,
        })

        suspended = failure_count >= self.max_payment_failures
        if suspended:
            self.licenses.sync_customer_licenses(user_id, LICENSE_SUSPENDED, {
                "suspendedAt": utc_now_iso(),
                "suspendReason": "payment_failed",
            })

        if not already_counted:
            self.emitter.write_event_record(LifecycleEvent.PAYMENT_FAILED, {
                "email": email,
                "userId": user_id,
                "attemptCount": failure_count,
                "retryDate": normalize_timestamp(get_field(image, "nextRetryAt")),
            })

        logger.info(
            f"Payment failed for {user_id} ({failure_count}/{self.max_payment_failures})",
            extra={
                "user_id": user_id,
                "email": mask_email(email),
                "failure_count": failure_count,
                "suspended": suspended,
                "redelivery": already_counted,
            },
        )

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    def process_message(self, message: ChangeMessage) -> bool:
        """
        Apply one change message.

        Returns:
            True if a transition ran, False if the message was not applicable
        """
        image = message.get("newImage") or {}
        event_type = get_field(image, "eventType")
        handler = self.handler_for(event_type)
        if handler is None:
            logger.info(f"No handler for event type {event_type}")
            return False

        handler(image)
        return True

    def process_batch(self, records: list[SQSRecord]) -> BatchResult:
        """Process SQS records sequentially; the first error aborts the invocation."""
        success = 0
        skipped = 0

        for record in records:
            message = parse_change_message(record.get("body", ""))
            event_type = get_field(message["newImage"], "eventType")
            try:
                if self.process_message(message):
                    success += 1
                    logger.info(f"Processed {event_type}", extra={"message_id": record.get("messageId")})
                else:
                    skipped += 1
            except Exception as e:
                logger.error(
                    f"Handler failed for {event_type}: {e}",
                    extra={"message_id": record.get("messageId"), "event_type": event_type},
                    exc_info=True,
                )
                raise

        return {
            "processed": success + skipped,
            "success": success,
            "skipped": skipped,
            "failed": 0,
            "batchItemFailures": [],
        }


_reconciler: Optional[CustomerReconciler] = None


def _get_reconciler() -> CustomerReconciler:
    global _reconciler
    if _reconciler is None:
        _reconciler = CustomerReconciler(RecordStore())
    return _reconciler


def handler(event, context):
    """
    Lambda handler for the CustomerUpdate queue.

    Any transition error propagates so the queue retries the invocation or
    dead-letters the message.
    """
    configure_structured_logging()
    set_request_id(event, context)

    records = event.get("Records", [])
    logger.info(f"Customer update batch received: {len(records)} records")

    result = _get_reconciler().process_batch(records)
    log_batch_result(logger, "customer-update", result["processed"], result["success"], result["skipped"], 0)
    emit_batch_result_metrics("CustomerUpdate", result)
    return result
