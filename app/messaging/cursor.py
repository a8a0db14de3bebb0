"""Opaque keyset cursors over the (created_at, id) message order."""

import binascii
from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime

from app.core.datetime_utils import to_naive_utc
from app.core.exceptions import ValidationError

CursorPair = tuple[datetime, str]


def encode_cursor(value: CursorPair) -> str:
    created_at, message_id = value
    payload = f"{created_at.isoformat()}|{message_id}"
    return urlsafe_b64encode(payload.encode()).decode()


def decode_cursor(cursor: str) -> CursorPair:
    try:
        decoded = urlsafe_b64decode(cursor.encode()).decode()
        created_str, message_id = decoded.split("|", maxsplit=1)
        created_at = datetime.fromisoformat(created_str)
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ValidationError("Invalid cursor", field="cursor") from exc
    if not message_id:
        raise ValidationError("Invalid cursor", field="cursor")
    return to_naive_utc(created_at), message_id
