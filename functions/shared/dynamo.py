"""
DynamoDB single-table store for customers, licenses and event records.

Key layout:
    USER#<userId>        / PROFILE            customer profile (GSI1PK=STRIPE#<id>)
    USER#<userId>        / LICENSE#<id>       license owned by the customer
    LICENSE#<id>         / DETAILS            license status record
    EVENT#<eventId>      / DETAILS            write-once event record
    VERSION#<product>    / CURRENT            version config singleton

Every write is a single-record update or put; nothing is transactional and
the last writer wins per field.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from boto3.dynamodb.conditions import Attr, ConditionBase, Key
from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .constants import (
    CURRENT_SK,
    DETAILS_SK,
    LICENSE_PREFIX,
    PROFILE_SK,
    STRIPE_CUSTOMER_INDEX,
    STRIPE_PREFIX,
    TABLE_NAME,
    USER_PREFIX,
    VERSION_PREFIX,
)
from .errors import ConfigurationError
from .retry import retry_sync
from .types import CustomerRecord, LicenseRecord

logger = logging.getLogger(__name__)


def from_decimal(obj):
    """Convert Decimals from DynamoDB into int/float."""
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    elif isinstance(obj, dict):
        return {k: from_decimal(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [from_decimal(v) for v in obj]
    return obj


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def user_key(user_id: str) -> dict:
    return {"PK": f"{USER_PREFIX}{user_id}", "SK": PROFILE_SK}


def license_key(license_id: str) -> dict:
    return {"PK": f"{LICENSE_PREFIX}{license_id}", "SK": DETAILS_SK}


def _build_set_expression(fields: dict) -> tuple[str, dict, dict]:
    """Build a SET expression with placeholder names for every field."""
    parts = []
    names = {}
    values = {}
    for i, (field, value) in enumerate(fields.items()):
        parts.append(f"#f{i} = :v{i}")
        names[f"#f{i}"] = field
        values[f":v{i}"] = value
    return "SET " + ", ".join(parts), names, values


class RecordStore:
    """Typed access to the single wide table."""

    def __init__(self, table=None, table_name: str = TABLE_NAME):
        if table is None:
            if not table_name:
                raise ConfigurationError("DYNAMODB_TABLE_NAME is not set")
            table = get_dynamodb().Table(table_name)
        self.table = table

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _query_all(self, **kwargs) -> list[dict]:
        items = []
        response = retry_sync(self.table.query, **kwargs)
        items.extend(response.get("Items", []))

        # Handle pagination
        while "LastEvaluatedKey" in response:
            response = retry_sync(
                self.table.query,
                ExclusiveStartKey=response["LastEvaluatedKey"],
                **kwargs,
            )
            items.extend(response.get("Items", []))

        return [from_decimal(item) for item in items]

    def get_customer(self, user_id: str) -> Optional[CustomerRecord]:
        response = retry_sync(self.table.get_item, Key=user_key(user_id))
        item = response.get("Item")
        return from_decimal(item) if item else None

    def get_customer_by_stripe_id(self, stripe_customer_id: str) -> Optional[CustomerRecord]:
        """
        Look up a customer by billing-provider customer id via GSI1.

        The index may also project non-profile records that share the
        customer id; the profile record wins when present.
        """
        items = self._query_all(
            IndexName=STRIPE_CUSTOMER_INDEX,
            KeyConditionExpression=Key("GSI1PK").eq(f"{STRIPE_PREFIX}{stripe_customer_id}"),
        )
        if not items:
            return None
        for item in items:
            if item.get("SK") == PROFILE_SK:
                return item
        return items[0]

    def get_customer_licenses(self, user_id: str) -> list[dict]:
        """Return the license links stored under a customer's partition."""
        return self._query_all(
            KeyConditionExpression=(
                Key("PK").eq(f"{USER_PREFIX}{user_id}") & Key("SK").begins_with(LICENSE_PREFIX)
            ),
        )

    def get_license(self, license_id: str) -> Optional[LicenseRecord]:
        response = retry_sync(self.table.get_item, Key=license_key(license_id))
        item = response.get("Item")
        return from_decimal(item) if item else None

    def scan_customers(self, condition: Optional[ConditionBase] = None) -> list[CustomerRecord]:
        """
        Scan customer profiles matching a filter condition.

        Args:
            condition: boto3 Attr condition combined with SK = PROFILE
        """
        filter_expression = Attr("SK").eq(PROFILE_SK)
        if condition is not None:
            filter_expression = filter_expression & condition

        items = []
        response = retry_sync(self.table.scan, FilterExpression=filter_expression)
        items.extend(response.get("Items", []))

        while "LastEvaluatedKey" in response:
            response = retry_sync(
                self.table.scan,
                FilterExpression=filter_expression,
                ExclusiveStartKey=response["LastEvaluatedKey"],
            )
            items.extend(response.get("Items", []))

        return [from_decimal(item) for item in items]

    def get_version_config(self, product: str) -> Optional[dict]:
        response = retry_sync(
            self.table.get_item,
            Key={"PK": f"{VERSION_PREFIX}{product}", "SK": CURRENT_SK},
        )
        item = response.get("Item")
        return from_decimal(item) if item else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _update(self, key: dict, fields: dict) -> None:
        fields = {k: v for k, v in fields.items() if v is not None}
        fields["updatedAt"] = utc_now_iso()
        expression, names, values = _build_set_expression(fields)
        self.table.update_item(
            Key=key,
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )

    def update_customer(self, user_id: str, updates: dict) -> None:
        """Apply field assignments to a customer profile, stamping updatedAt."""
        self._update(user_key(user_id), updates)

    def update_license_status(self, license_id: str, status: str, metadata: Optional[dict] = None) -> None:
        """Set status (plus any metadata fields) on exactly one license record."""
        fields = dict(metadata or {})
        fields["status"] = status
        self._update(license_key(license_id), fields)

    def update_version_config(self, product: str, updates: dict) -> None:
        self._update({"PK": f"{VERSION_PREFIX}{product}", "SK": CURRENT_SK}, updates)

    def put_event_record(self, item: dict) -> None:
        self.table.put_item(Item={k: v for k, v in item.items() if v is not None})

    def mark_email_sent(self, user_id: str, email_type: str, clear_pending: bool = False) -> str:
        """
        Record that an email of `email_type` went out to a customer.

        Stamps emailsSent[email_type] and optionally clears the pending
        verification flag. Profiles written without an emailsSent map get
        one created.

        Returns:
            The timestamp written
        """
        now = utc_now_iso()
        names = {"#sent": "emailsSent", "#type": email_type, "#updated": "updatedAt"}
        values: dict[str, Any] = {":ts": now}
        set_parts = ["#sent.#type = :ts", "#updated = :ts"]
        if clear_pending:
            names["#pending"] = "emailPendingVerification"
            values[":false"] = False
            set_parts.append("#pending = :false")

        try:
            self.table.update_item(
                Key=user_key(user_id),
                UpdateExpression="SET " + ", ".join(set_parts),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
            return now
        except ClientError as e:
            if e.response["Error"]["Code"] != "ValidationException":
                raise
            logger.info(f"emailsSent map missing for {user_id}, creating it")

        # The nested path is invalid until the map exists
        del names["#type"]
        values[":sent"] = {email_type: now}
        set_parts[0] = "#sent = :sent"
        self.table.update_item(
            Key=user_key(user_id),
            UpdateExpression="SET " + ", ".join(set_parts),
            ConditionExpression="attribute_not_exists(#sent)",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
        return now
