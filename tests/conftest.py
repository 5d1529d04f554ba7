"""
Shared pytest fixtures for the PLG lifecycle pipeline tests.
"""

import json
import os
import sys
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

TABLE_NAME = "plg-table"


def pytest_configure(config):
    """Set AWS credentials and config before test collection.

    This runs before test collection starts, so module-level configuration
    in shared.constants sees the test values.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")
    os.environ.setdefault("DYNAMODB_TABLE_NAME", TABLE_NAME)
    os.environ.setdefault("SES_FROM_EMAIL", "noreply@example.com")
    os.environ.setdefault("APP_URL", "https://app.example.com")
    os.environ.setdefault("ENVIRONMENT", "test")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons and cached handler components between tests."""
    yield
    try:
        from shared.aws_clients import reset_clients
        reset_clients()
    except ImportError:
        pass

    for module_name, attr in (
        ("billing.customer_update", "_reconciler"),
        ("billing.email_sender", "_dispatcher"),
        ("billing.scheduled_tasks", "_tasks"),
        ("billing.stream_processor", "_publisher"),
    ):
        module = sys.modules.get(module_name)
        if module is not None:
            setattr(module, attr, None)


def create_plg_table(dynamodb):
    """Create the single PLG table with its Stripe customer index."""
    return dynamodb.create_table(
        TableName=TABLE_NAME,
        KeySchema=[
            {"AttributeName": "PK", "KeyType": "HASH"},
            {"AttributeName": "SK", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "PK", "AttributeType": "S"},
            {"AttributeName": "SK", "AttributeType": "S"},
            {"AttributeName": "GSI1PK", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "GSI1",
                "KeySchema": [{"AttributeName": "GSI1PK", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with the PLG table."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_plg_table(dynamodb)
        yield dynamodb


@pytest.fixture
def plg_table(mock_dynamodb):
    return mock_dynamodb.Table(TABLE_NAME)


@pytest.fixture
def store(plg_table):
    from shared.dynamo import RecordStore

    return RecordStore(table=plg_table)


@pytest.fixture
def ses_client():
    """SES client stub: every address verified, every send accepted."""
    client = MagicMock()
    client.send_email.return_value = {"MessageId": "ses-msg-1"}

    def verification(Identities):
        return {
            "VerificationAttributes": {
                email: {"VerificationStatus": "Success"} for email in Identities
            }
        }

    client.get_identity_verification_attributes.side_effect = verification
    return client


@pytest.fixture
def mailer(ses_client):
    from shared.mailer import Mailer

    return Mailer(ses_client=ses_client, from_email="noreply@example.com")


def put_customer(table, user_id="user_1", stripe_customer_id="cus_1", **attrs):
    """Seed a customer profile record."""
    item = {
        "PK": f"USER#{user_id}",
        "SK": "PROFILE",
        "GSI1PK": f"STRIPE#{stripe_customer_id}",
        "userId": user_id,
        "email": f"{user_id}@example.com",
        "stripeCustomerId": stripe_customer_id,
        "subscriptionStatus": "active",
        "paymentFailureCount": 0,
        "emailsSent": {},
        "createdAt": "2024-01-01T00:00:00.000Z",
    }
    item.update(attrs)
    table.put_item(Item=item)
    return item


def put_license(table, user_id, license_id, status="active"):
    """Seed a license link under the customer plus the license details record."""
    table.put_item(Item={
        "PK": f"USER#{user_id}",
        "SK": f"LICENSE#{license_id}",
        "keygenLicenseId": license_id,
        "userId": user_id,
    })
    table.put_item(Item={
        "PK": f"LICENSE#{license_id}",
        "SK": "DETAILS",
        "keygenLicenseId": license_id,
        "userId": user_id,
        "status": status,
    })


def typed_image(**fields):
    """Build a typed stream image from plain values."""
    from boto3.dynamodb.types import TypeSerializer

    serializer = TypeSerializer()
    return {name: serializer.serialize(value) for name, value in fields.items()}


def sqs_record(new_image, event_name="INSERT", message_id="msg-1", keys=None):
    """Wrap a change message the way the queue delivers it."""
    body = {
        "eventName": event_name,
        "keys": keys or {},
        "newImage": new_image,
        "timestamp": "2024-01-01T00:00:00.000Z",
        "environment": "test",
    }
    return {"messageId": message_id, "body": json.dumps(body)}


@pytest.fixture
def lambda_context():
    context = MagicMock()
    context.aws_request_id = "req-123"
    context.function_name = "plg-test"
    return context
