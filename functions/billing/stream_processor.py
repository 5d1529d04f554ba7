"""
Stream Processor - fans DynamoDB stream records out to SNS topics.

Triggered by: DynamoDB Stream on the PLG table.
Publishes to: payment, customer or license topic, each subscribed by the
queues that feed the customer-update and email-sender Lambdas.
"""

import json
import logging
import time
from typing import Optional

from shared.constants import (
    CUSTOMER_EVENTS_TOPIC_ARN,
    ENVIRONMENT,
    EVENT_PREFIX,
    LICENSE_EVENTS_TOPIC_ARN,
    LICENSE_PREFIX,
    PAYMENT_EVENTS_TOPIC_ARN,
)
from shared.aws_clients import get_sns
from shared.dynamo import utc_now_iso
from shared.logging_utils import configure_structured_logging, log_batch_result, log_external_call, set_request_id
from shared.metrics import emit_batch_result_metrics
from shared.stream_fields import get_field
from shared.types import BatchResult, DynamoDBStreamRecord

logger = logging.getLogger(__name__)

PAYMENT = "PAYMENT"
CUSTOMER = "CUSTOMER"
LICENSE = "LICENSE"


def classify_record(record: dict) -> str:
    """
    Pick the topic category for a stream record.

    EVENT# records are routed by the words in their eventType; everything
    else by key prefix.
    """
    stream = record.get("dynamodb") or {}
    keys = stream.get("Keys") or {}
    pk = get_field(keys, "PK") or ""
    sk = get_field(keys, "SK") or ""

    if pk.startswith(EVENT_PREFIX):
        event_type = str(get_field(stream.get("NewImage"), "eventType") or "").lower()
        if any(word in event_type for word in ("payment", "invoice", "subscription")):
            return PAYMENT
        if any(word in event_type for word in ("license", "machine")):
            return LICENSE
        return CUSTOMER

    if sk.startswith(("SUB#", "INV#")):
        return PAYMENT
    if pk.startswith(LICENSE_PREFIX) or sk.startswith((LICENSE_PREFIX, "DEVICE#", "MACHINE#")):
        return LICENSE
    return CUSTOMER


def build_message(record: dict, environment: Optional[str] = ENVIRONMENT) -> dict:
    stream = record.get("dynamodb") or {}
    return {
        "eventName": record.get("eventName"),
        "keys": stream.get("Keys"),
        "newImage": stream.get("NewImage"),
        "oldImage": stream.get("OldImage"),
        "timestamp": utc_now_iso(),
        "environment": environment,
    }


class StreamPublisher:
    """Publishes classified stream records to their topics."""

    def __init__(self, sns_client=None, topics: Optional[dict[str, Optional[str]]] = None):
        self.sns = sns_client if sns_client is not None else get_sns()
        self.topics = topics if topics is not None else {
            PAYMENT: PAYMENT_EVENTS_TOPIC_ARN,
            CUSTOMER: CUSTOMER_EVENTS_TOPIC_ARN,
            LICENSE: LICENSE_EVENTS_TOPIC_ARN,
        }

    def publish(self, record: DynamoDBStreamRecord) -> bool:
        """
        Publish one record.

        Returns:
            True if published, False if no topic is configured for its category
        """
        category = classify_record(record)
        topic_arn = self.topics.get(category)
        if not topic_arn:
            logger.warning(f"No topic configured for {category}")
            return False

        event_name = record.get("eventName") or "UNKNOWN"
        start = time.monotonic()
        try:
            self.sns.publish(
                TopicArn=topic_arn,
                Message=json.dumps(build_message(record)),
                MessageAttributes={
                    "eventType": {"DataType": "String", "StringValue": category},
                    "eventName": {"DataType": "String", "StringValue": event_name},
                },
            )
        except Exception as e:
            log_external_call(logger, "sns", "Publish", False, (time.monotonic() - start) * 1000, str(e))
            raise

        log_external_call(logger, "sns", "Publish", True, (time.monotonic() - start) * 1000)
        logger.debug(f"Published {event_name} to {category}")
        return True

    def process_batch(self, records: list[DynamoDBStreamRecord]) -> BatchResult:
        success = 0
        skipped = 0
        failed = 0
        failed_item_ids = []

        for record in records:
            try:
                if self.publish(record):
                    success += 1
                else:
                    skipped += 1
            except Exception as e:
                logger.error(f"Failed to publish stream record: {e}", exc_info=True)
                failed += 1
                sequence_number = (record.get("dynamodb") or {}).get("SequenceNumber")
                if sequence_number:
                    failed_item_ids.append(sequence_number)

        return {
            "processed": success + skipped + failed,
            "success": success,
            "skipped": skipped,
            "failed": failed,
            "batchItemFailures": [{"itemIdentifier": item_id} for item_id in failed_item_ids],
        }


_publisher: Optional[StreamPublisher] = None


def _get_publisher() -> StreamPublisher:
    global _publisher
    if _publisher is None:
        _publisher = StreamPublisher()
    return _publisher


def handler(event, context):
    """
    Lambda handler for the table's DynamoDB stream.

    Returns batchItemFailures so only records that failed to publish are
    retried.
    """
    configure_structured_logging()
    set_request_id(event, context)

    records = event.get("Records", [])
    logger.info(f"Stream batch received: {len(records)} records")

    result = _get_publisher().process_batch(records)
    log_batch_result(logger, "stream-processor", result["processed"], result["success"], result["skipped"], result["failed"])
    emit_batch_result_metrics("StreamProcessor", result)
    return result
