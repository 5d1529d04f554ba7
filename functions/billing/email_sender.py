"""
Email Sender - SQS consumer that turns event records into emails.

Event flow:
    store write (with eventType) -> stream -> stream processor -> SNS -> SQS
    -> this Lambda -> SES

Each message is checked, in order, for: an event type, a mapped template,
the insert-only rule for welcome emails, the customer's emailsSent ledger,
a recipient address and the recipient's SES verification status. Only then
is the email sent and the ledger stamped.

Failures are reported per message through batchItemFailures so one bad
message never blocks its siblings.
"""

import logging
from typing import Optional

from shared.constants import USER_PREFIX, VERIFIED_STATUS
from shared.dynamo import RecordStore
from shared.email_templates import EmailTemplates, template_for_event
from shared.events import LifecycleEvent
from shared.logging_utils import configure_structured_logging, log_batch_result, set_request_id
from shared.mailer import Mailer, mask_email
from shared.metrics import emit_batch_result_metrics
from shared.stream_fields import get_field, parse_change_message
from shared.types import BatchResult, ChangeMessage, SQSRecord

logger = logging.getLogger(__name__)

SENT = "sent"
SKIPPED = "skipped"

# Denormalized event record fields passed through to templates
TEMPLATE_FIELDS = (
    "licenseKey",
    "planName",
    "sessionId",
    "accessUntil",
    "attemptCount",
    "retryDate",
    "organizationName",
    "daysRemaining",
    "inviterName",
    "inviteToken",
)


def resolve_user_id(message: ChangeMessage) -> Optional[str]:
    """Owning user id from the image's userId or a USER#<id> partition key."""
    image = message.get("newImage") or {}
    user_id = get_field(image, "userId")
    if user_id:
        return str(user_id)

    for source in (message.get("keys") or {}, image):
        pk = get_field(source, "PK")
        if isinstance(pk, str) and pk.startswith(USER_PREFIX):
            return pk[len(USER_PREFIX):]
    return None


class EmailDispatcher:
    """Decides whether an event record warrants an email, and sends it."""

    def __init__(self, store: RecordStore, mailer: Mailer, templates: Optional[EmailTemplates] = None):
        self.store = store
        self.mailer = mailer
        self.templates = templates or EmailTemplates()

    def _already_sent(self, customer: Optional[dict], event_type: str) -> bool:
        """True when the customer's emailsSent ledger has any entry for this event type."""
        if not customer:
            return False
        return bool((customer.get("emailsSent") or {}).get(event_type))

    def _recipient_verified(self, email: str) -> bool:
        try:
            status = self.mailer.get_verification_status(email)
        except Exception as e:
            # Fail open: the send itself will surface a real problem
            logger.warning(f"Verification check failed for {mask_email(email)}, sending anyway: {e}")
            return True

        if status != VERIFIED_STATUS:
            logger.info(
                f"Recipient not verified ({status}), skipping",
                extra={"email": mask_email(email), "verification_status": status},
            )
            return False
        return True

    def dispatch(self, message: ChangeMessage) -> str:
        """
        Process one change message.

        Returns:
            "sent" or "skipped"

        Raises:
            Exception: template rendering or SES send failed
        """
        image = message.get("newImage") or {}
        event_name = message.get("eventName")
        event_type = get_field(image, "eventType")

        if not event_type:
            logger.debug("No eventType on record", extra={"event_name": event_name})
            return SKIPPED

        template_name = template_for_event(event_type)
        if not template_name:
            logger.debug(f"No email mapped for {event_type}")
            return SKIPPED

        # Profile updates keep eventType=CUSTOMER_CREATED; only the insert welcomes
        if event_type == LifecycleEvent.CUSTOMER_CREATED.value and event_name in ("MODIFY", "REMOVE"):
            logger.debug(f"Ignoring {event_name} of CUSTOMER_CREATED record")
            return SKIPPED

        user_id = resolve_user_id(message)
        customer = self.store.get_customer(user_id) if user_id else None

        if self._already_sent(customer, event_type):
            logger.info(
                f"{event_type} email already sent to {user_id}",
                extra={"user_id": user_id, "event_type": event_type},
            )
            return SKIPPED

        email = get_field(image, "email") or (customer or {}).get("email")
        if not email:
            logger.warning(f"No recipient for {event_type}", extra={"user_id": user_id})
            return SKIPPED

        data = {"email": email}
        for field in TEMPLATE_FIELDS:
            data[field] = get_field(image, field)
        content = self.templates.render(template_name, data)

        if not self._recipient_verified(email):
            return SKIPPED

        message_id = self.mailer.send(email, content)
        logger.info(
            f"Email sent: {template_name}",
            extra={"template": template_name, "email": mask_email(email), "ses_message_id": message_id},
        )

        if customer:
            try:
                self.store.mark_email_sent(user_id, event_type, clear_pending=True)
            except Exception as e:
                # The scheduled retry job dedups against the ledger anyway
                logger.warning(f"Failed to stamp emailsSent for {user_id}: {e}")

        return SENT

    def process_batch(self, records: list[SQSRecord]) -> BatchResult:
        success = 0
        skipped = 0
        failed = 0
        failed_item_ids = []

        for record in records:
            message_id = record.get("messageId")
            try:
                message = parse_change_message(record.get("body", ""))
                if self.dispatch(message) == SENT:
                    success += 1
                else:
                    skipped += 1
            except Exception as e:
                logger.error(f"Email failed for message {message_id}: {e}", exc_info=True)
                failed += 1
                if message_id:
                    failed_item_ids.append(message_id)

        return {
            "processed": success + skipped + failed,
            "success": success,
            "skipped": skipped,
            "failed": failed,
            "batchItemFailures": [{"itemIdentifier": item_id} for item_id in failed_item_ids],
        }


_dispatcher: Optional[EmailDispatcher] = None


def _get_dispatcher() -> EmailDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = EmailDispatcher(RecordStore(), Mailer())
    return _dispatcher


def handler(event, context):
    """Lambda handler for the email queue. Returns partial batch failures."""
    configure_structured_logging()
    set_request_id(event, context)

    records = event.get("Records", [])
    logger.info(f"Email batch received: {len(records)} records")

    result = _get_dispatcher().process_batch(records)
    log_batch_result(logger, "email-sender", result["processed"], result["success"], result["skipped"], result["failed"])
    emit_batch_result_metrics("EmailSender", result)
    return result
