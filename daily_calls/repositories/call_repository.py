"""
Repository for the users and calls tables.

The scheduling jobs and the webhook route only touch the database through
this class, so tests can swap it for an in-memory store with the same
methods.
"""

from datetime import datetime, timedelta
from typing import Any

from psycopg.types.json import Jsonb

from daily_calls.config import settings
from daily_calls.db.helpers import execute_query, fetch_all, fetch_one, fetch_val
from daily_calls.infrastructure.observability.logging import get_logger
from daily_calls.models.domain.call_domain import (
    LIVE_CALL_STATUSES,
    CallRecord,
    DueUser,
    UserProfile,
    is_within_call_window,
    parse_call_time,
    resolve_timezone,
    scheduled_at_for,
)

logger = get_logger(__name__)

CALL_COLUMNS = """
    id::text AS id,
    user_id::text AS user_id,
    to_number,
    status,
    vendor_call_id,
    agent_id,
    created_at
"""

# Statuses that close out a call
COMPLETION_STATUSES = ("completed", "failed")


def _call_from_row(row: dict[str, Any]) -> CallRecord:
    return CallRecord(
        id=row["id"],
        user_id=row["user_id"],
        to_number=row["to_number"],
        status=row["status"],
        vendor_call_id=row.get("vendor_call_id"),
        agent_id=row.get("agent_id"),
        created_at=row.get("created_at"),
    )


class CallRepository:
    """Raw SQL access to users and calls."""

    @classmethod
    async def find_users_due_for_call(cls, now: datetime) -> list[DueUser]:
        """
        Users whose local call time falls in the current window and who have
        no live call (queued, ringing, in progress or completed) on their
        local date yet.

        Raises:
            DatabaseError: the users query failed
        """
        query = """
            SELECT
                u.id::text AS user_id,
                u.phone,
                u.name,
                u.local_tz,
                u.call_time::text AS call_time,
                MAX(c.created_at) AS last_live_call_at
            FROM users u
            LEFT JOIN calls c
              ON c.user_id = u.id
             AND c.status = ANY(%s)
             AND c.created_at >= %s
            WHERE u.call_enabled = true
              AND u.phone IS NOT NULL
              AND u.phone <> ''
            GROUP BY u.id, u.phone, u.name, u.local_tz, u.call_time
        """
        # Local "today" is never more than a day and a half away from UTC now
        rows = await fetch_all(query, (list(LIVE_CALL_STATUSES), now - timedelta(hours=48)))

        due: list[DueUser] = []
        for row in rows:
            tz = resolve_timezone(row.get("local_tz"), settings.DEFAULT_TIMEZONE)
            call_time = parse_call_time(row.get("call_time"), settings.DEFAULT_CALL_TIME)
            local_date = now.astimezone(tz).date()

            last_live = row.get("last_live_call_at")
            if last_live is not None and last_live.astimezone(tz).date() == local_date:
                continue

            if not is_within_call_window(now, tz, call_time, settings.CALL_TIME_WINDOW_MINUTES):
                continue

            due.append(
                DueUser(
                    user_id=row["user_id"],
                    phone=row["phone"],
                    name=row.get("name"),
                    scheduled_at=scheduled_at_for(now, tz, call_time),
                    local_tz=tz.key,
                    call_time=call_time.strftime("%H:%M:%S"),
                    call_date=local_date,
                )
            )

        logger.info(
            "Users due for call resolved",
            candidates=len(rows),
            due=len(due),
            window_minutes=settings.CALL_TIME_WINDOW_MINUTES,
        )
        return due

    @classmethod
    async def get_call(cls, call_id: str) -> CallRecord | None:
        row = await fetch_one(f"SELECT {CALL_COLUMNS} FROM calls WHERE id = %s", (call_id,))
        return _call_from_row(row) if row else None

    @classmethod
    async def record_call_initiated(
        cls,
        call_id: str,
        vendor_call_id: str | None,
        user_id: str,
        to_number: str,
        agent_id: str | None = None,
        scheduled_at: datetime | None = None,
        vendor_payload: dict[str, Any] | None = None,
    ) -> CallRecord:
        """Upsert the call row for a call the vendor accepted."""
        query = f"""
            INSERT INTO calls (
                id, user_id, to_number, agent_id, scheduled_at,
                status, vendor_call_id, vendor_payload
            )
            VALUES (%s, %s, %s, %s, %s, 'ringing', %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                vendor_call_id = EXCLUDED.vendor_call_id,
                vendor_payload = EXCLUDED.vendor_payload,
                status = EXCLUDED.status
            RETURNING {CALL_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                call_id,
                user_id,
                to_number,
                agent_id,
                scheduled_at,
                vendor_call_id,
                Jsonb(vendor_payload or {}),
            ),
        )
        logger.info(
            "Call recorded as initiated",
            call_id=call_id,
            vendor_call_id=vendor_call_id,
            user_id=user_id,
        )
        return _call_from_row(row)

    @classmethod
    async def record_call_failed(
        cls,
        call_id: str,
        user_id: str,
        to_number: str,
        error: str,
        agent_id: str | None = None,
        scheduled_at: datetime | None = None,
    ) -> None:
        """Mark a call attempt the vendor never accepted. Placed calls are left alone."""
        query = """
            INSERT INTO calls (
                id, user_id, to_number, agent_id, scheduled_at, status, vendor_payload
            )
            VALUES (%s, %s, %s, %s, %s, 'failed', %s)
            ON CONFLICT (id) DO UPDATE SET
                status = 'failed',
                vendor_payload = EXCLUDED.vendor_payload
            WHERE calls.vendor_call_id IS NULL AND calls.status <> ALL(%s)
        """
        await execute_query(
            query,
            (
                call_id,
                user_id,
                to_number,
                agent_id,
                scheduled_at,
                Jsonb({"error": error}),
                list(LIVE_CALL_STATUSES),
            ),
        )
        logger.info("Call recorded as failed", call_id=call_id, user_id=user_id)

    @classmethod
    async def record_call_status(
        cls,
        vendor_call_id: str | None,
        status: str,
        transcript: str | None = None,
        recording_url: str | None = None,
        duration: float | None = None,
        vendor_payload: dict[str, Any] | None = None,
        call_id: str | None = None,
    ) -> CallRecord | None:
        """
        Apply a webhook status update.

        Matches on ``vendor_call_id`` first, then on our own ``call_id`` for
        vendors that only echo metadata. Returns None when no call matches.
        """
        set_clause = """
            status = %s,
            vendor_payload = %s,
            transcript = COALESCE(%s, transcript),
            recording_url = COALESCE(%s, recording_url),
            duration = COALESCE(%s, duration),
            completed_at = CASE WHEN %s THEN NOW() ELSE completed_at END
        """
        params = (
            status,
            Jsonb(vendor_payload or {}),
            transcript,
            recording_url,
            duration,
            status in COMPLETION_STATUSES,
        )

        row = None
        if vendor_call_id:
            row = await fetch_one(
                f"UPDATE calls SET {set_clause} WHERE vendor_call_id = %s RETURNING {CALL_COLUMNS}",
                params + (vendor_call_id,),
            )
        if row is None and call_id:
            row = await fetch_one(
                f"UPDATE calls SET {set_clause} WHERE id::text = %s RETURNING {CALL_COLUMNS}",
                params + (call_id,),
            )
        return _call_from_row(row) if row else None

    @classmethod
    async def count_calls_since(cls, user_id: str, since: datetime) -> int:
        count = await fetch_val(
            "SELECT COUNT(*) AS count FROM calls WHERE user_id = %s AND created_at >= %s",
            (user_id, since),
        )
        return int(count or 0)

    @classmethod
    async def get_user_profile(cls, user_id: str) -> UserProfile | None:
        row = await fetch_one(
            "SELECT id::text AS user_id, name, local_tz FROM users WHERE id = %s",
            (user_id,),
        )
        if not row:
            return None
        return UserProfile(
            user_id=row["user_id"],
            name=row.get("name"),
            local_tz=row.get("local_tz") or settings.DEFAULT_TIMEZONE,
        )

    @classmethod
    async def get_user_name(cls, user_id: str) -> str | None:
        profile = await cls.get_user_profile(user_id)
        return profile.name if profile else None
