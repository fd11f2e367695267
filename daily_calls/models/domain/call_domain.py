# daily_calls/models/domain/call_domain.py
"""
Call Domain Models
Rows read from the users/calls tables and the scheduling rules applied to them.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from daily_calls.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Call statuses that count as "this user already has a call today"
LIVE_CALL_STATUSES = ("queued", "ringing", "in_progress", "completed")


@dataclass(slots=True)
class DueUser:
    user_id: str
    phone: str
    name: str | None
    scheduled_at: datetime
    local_tz: str
    call_time: str
    call_date: date


@dataclass(slots=True)
class CallRecord:
    id: str
    user_id: str
    to_number: str
    status: str
    vendor_call_id: str | None = None
    agent_id: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class UserProfile:
    user_id: str
    name: str | None
    local_tz: str


def resolve_timezone(name: str | None, default: str) -> ZoneInfo:
    """ZoneInfo for ``name``, falling back to ``default`` when missing or unknown."""
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown user timezone, using default", timezone=name, default=default)
    return ZoneInfo(default)


def parse_call_time(value: str | time | None, default: str) -> time:
    """Parse "HH:MM[:SS]" (or a time column value) into a time."""
    if isinstance(value, time):
        return value
    raw = value or default
    try:
        return time.fromisoformat(raw)
    except ValueError:
        logger.warning("Invalid call_time, using default", call_time=raw, default=default)
        return time.fromisoformat(default)


def local_day_start(now: datetime, tz: ZoneInfo) -> datetime:
    """Midnight of ``now``'s local date in ``tz``."""
    local_now = now.astimezone(tz)
    return datetime.combine(local_now.date(), time.min, tzinfo=tz)


def is_within_call_window(
    now: datetime, tz: ZoneInfo, call_time: time, window_minutes: int
) -> bool:
    """
    True when the user's local wall-clock time is in
    ``[call_time, call_time + window_minutes)``.

    Compared at minute precision, so a 5 minute window lines up with a
    */5 cron cadence.
    """
    local_now = now.astimezone(tz)
    current_minutes = local_now.hour * 60 + local_now.minute
    call_minutes = call_time.hour * 60 + call_time.minute
    return call_minutes <= current_minutes < call_minutes + window_minutes


def scheduled_at_for(now: datetime, tz: ZoneInfo, call_time: time) -> datetime:
    """The user's call slot for today, as an aware datetime."""
    local_now = now.astimezone(tz)
    return datetime.combine(
        local_now.date(), call_time.replace(second=0, microsecond=0), tzinfo=tz
    )
