"""
Shared constants for the PLG lifecycle pipeline.
"""

import os

# Single-table store
TABLE_NAME = os.environ.get("DYNAMODB_TABLE_NAME", "plg-table")
STRIPE_CUSTOMER_INDEX = "GSI1"
ENVIRONMENT = os.environ.get("ENVIRONMENT", "staging")

# Key prefixes
USER_PREFIX = "USER#"
LICENSE_PREFIX = "LICENSE#"
EVENT_PREFIX = "EVENT#"
VERSION_PREFIX = "VERSION#"
STRIPE_PREFIX = "STRIPE#"

PROFILE_SK = "PROFILE"
DETAILS_SK = "DETAILS"
CURRENT_SK = "CURRENT"

# Subscription status values mirrored from the billing provider
SUBSCRIPTION_STATUSES = ["trialing", "active", "past_due", "canceled", "none"]
ACTIVE_STATUSES = ("active", "trialing")

# License status values
LICENSE_ACTIVE = "active"
LICENSE_SUSPENDED = "suspended"
LICENSE_CANCELED = "canceled"

# Payment failures before licenses are suspended
MAX_PAYMENT_FAILURES = int(os.environ.get("MAX_PAYMENT_FAILURES", "3"))

# Mail
FROM_EMAIL = os.environ.get("SES_FROM_EMAIL", "noreply@hic-ai.com")
APP_URL = os.environ.get("APP_URL", "https://mouse.hic-ai.com")
COMPANY_NAME = os.environ.get("COMPANY_NAME", "HIC AI")
PRODUCT_NAME = os.environ.get("PRODUCT_NAME", "Mouse")
VERIFIED_STATUS = "Success"

# SES GetIdentityVerificationAttributes accepts at most 100 identities
SES_VERIFICATION_BATCH_SIZE = 100

# Scheduled jobs
TRIAL_REMINDER_DAYS = 3
WINBACK_WINDOWS = {"winback-30": 30, "winback-90": 90}
VERSION_PRODUCT = "mouse"

# Fan-out topics
PAYMENT_EVENTS_TOPIC_ARN = os.environ.get("PAYMENT_EVENTS_TOPIC_ARN")
CUSTOMER_EVENTS_TOPIC_ARN = os.environ.get("CUSTOMER_EVENTS_TOPIC_ARN")
LICENSE_EVENTS_TOPIC_ARN = os.environ.get("LICENSE_EVENTS_TOPIC_ARN")

# DynamoDB throttling error codes that should trigger retry
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
