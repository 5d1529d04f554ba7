"""
Shared Type Definitions for Lambda Handlers.

Provides TypedDict definitions for AWS Lambda events, change messages,
store records and handler responses.
"""

from typing import Any, Optional, TypedDict


class SQSRecord(TypedDict, total=False):
    """SQS record from event."""

    messageId: str
    receiptHandle: str
    body: str
    attributes: dict[str, str]
    messageAttributes: dict[str, Any]
    md5OfBody: str
    eventSource: str
    eventSourceARN: str
    awsRegion: str


class DynamoDBStreamRecord(TypedDict, total=False):
    """DynamoDB stream record."""

    eventID: str
    eventName: str  # INSERT, MODIFY, REMOVE
    eventVersion: str
    eventSource: str
    awsRegion: str
    dynamodb: dict[str, Any]
    eventSourceARN: str


class ChangeMessage(TypedDict, total=False):
    """Envelope published by the stream fan-out and delivered via SQS."""

    eventName: str  # INSERT, MODIFY, REMOVE
    newImage: dict[str, dict[str, Any]]
    oldImage: Optional[dict[str, dict[str, Any]]]
    keys: dict[str, dict[str, Any]]
    timestamp: str
    environment: str


class BatchItemFailure(TypedDict):
    """Partial batch failure entry understood by the Lambda event source."""

    itemIdentifier: str


class BatchResult(TypedDict):
    """Standard return value of the queue-triggered handlers."""

    processed: int
    success: int
    skipped: int
    failed: int
    batchItemFailures: list[BatchItemFailure]


class CustomerRecord(TypedDict, total=False):
    """Customer profile (PK=USER#<userId>, SK=PROFILE)."""

    PK: str
    SK: str
    GSI1PK: str
    userId: str
    email: str
    stripeCustomerId: str
    subscriptionId: str
    subscriptionStatus: str
    paymentFailureCount: int
    accountType: str
    eventType: str
    emailsSent: dict[str, str]
    emailPendingVerification: bool
    currentPeriodEnd: str
    canceledAt: str
    createdAt: str
    updatedAt: str


class LicenseRecord(TypedDict, total=False):
    """License details (PK=LICENSE#<licenseId>, SK=DETAILS)."""

    PK: str
    SK: str
    keygenLicenseId: str
    userId: str
    status: str
    updatedAt: str


class EmailContent(TypedDict):
    """Rendered email."""

    subject: str
    html: str
    text: str
