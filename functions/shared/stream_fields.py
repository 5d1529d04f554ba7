"""
Decoding of DynamoDB stream images and change messages.

Stream images arrive in the typed wire format ({"S": ...}, {"N": ...},
{"BOOL": ...}). Everything past this module only ever sees plain Python
scalars: str, int/float, bool, dict, list or None.
"""

import json
from decimal import Decimal
from typing import Any, Optional

from boto3.dynamodb.types import TypeDeserializer

from .errors import StreamRecordError
from .types import ChangeMessage

_deserializer = TypeDeserializer()


def _plain(value: Any) -> Any:
    """Convert Decimals (and containers of them) to int/float."""
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"non-finite number {value}")
        if value % 1 == 0:
            return int(value)
        return float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, set):
        return {_plain(v) for v in value}
    return value


def decode_attribute(wrapped: dict, field_name: str = "") -> Any:
    """Decode one typed attribute value into a plain scalar or container."""
    try:
        return _plain(_deserializer.deserialize(wrapped))
    except (TypeError, AttributeError, ValueError, ArithmeticError) as e:
        raise StreamRecordError(
            f"Cannot decode attribute {field_name or '<unnamed>'}: {e}",
            details={"field": field_name},
        ) from e


def get_field(image: Optional[dict], field_name: str) -> Any:
    """
    Get a single field from a stream image as a plain value.

    Returns None only when the field is absent or explicitly NULL. An
    explicit {"BOOL": false} is returned as False and {"N": "0"} as 0, so
    callers can tell "not provided" apart from "false" or "zero".

    Args:
        image: Typed attribute map (NewImage/OldImage/Keys)
        field_name: Attribute name

    Returns:
        Decoded value or None
    """
    if not image:
        return None
    wrapped = image.get(field_name)
    if wrapped is None:
        return None
    return decode_attribute(wrapped, field_name)


def deserialize_image(image: Optional[dict]) -> dict:
    """Decode a whole typed image into a plain dict."""
    if not image:
        return {}
    return {name: decode_attribute(wrapped, name) for name, wrapped in image.items()}


def parse_change_message(body: str) -> ChangeMessage:
    """
    Parse the JSON body of a queue-delivered change message.

    SNS-to-SQS subscriptions without raw delivery wrap the payload in an
    SNS envelope; the inner "Message" is unwrapped when present.

    Raises:
        StreamRecordError: body is not a JSON object
    """
    try:
        message = json.loads(body)
    except (TypeError, json.JSONDecodeError) as e:
        raise StreamRecordError(f"Change message is not valid JSON: {e}") from e

    if isinstance(message, dict) and message.get("Type") == "Notification" and "Message" in message:
        return parse_change_message(message["Message"])

    if not isinstance(message, dict):
        raise StreamRecordError("Change message must be a JSON object")

    message["newImage"] = message.get("newImage") or {}
    message["keys"] = message.get("keys") or {}
    return message
