from datetime import UTC, datetime
from typing import Annotated

from pydantic.functional_serializers import PlainSerializer


def _serialize_utc_datetime(v: datetime | None) -> str | None:
    if v is None:
        return None
    if v.tzinfo is None:
        v = v.replace(tzinfo=UTC)
    return v.isoformat()


UTCDatetime = Annotated[datetime, PlainSerializer(_serialize_utc_datetime)]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in DateTime columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v
    return v.astimezone(UTC).replace(tzinfo=None)
