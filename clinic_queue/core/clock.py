"""Time helpers shared by the scheduling services."""

from datetime import UTC, date, datetime
from typing import Annotated
from zoneinfo import ZoneInfo

from pydantic import AfterValidator

from clinic_queue.config import settings


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime read from the store to aware UTC.

    Naive values are stored as UTC by every writer in this package.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def service_day_for(value: datetime, timezone: str | None = None) -> date:
    """Clinic-local calendar date an appointment time falls on."""
    zone = ZoneInfo(timezone or settings.clinic_timezone)
    return as_utc(value).astimezone(zone).date()


# Response field type; SQLite hands back naive values
UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]
