"""Per-ticket debounce state.

One debounce_state row per ticket. Each inbound message pushes
debounce_until forward; only the first message of a burst asks for a
timer (needs_timer), later ones just extend the deadline. The timer task
calls claim(), which either reports the new deadline, or sets the
processing flag with a compare-and-set so one processor owns the batch.

Columns:
- debounce_until: deadline of the current quiet window
- scheduled: a fire task is pending (or a batch is being processed)
- processing/claimed_at: claim flag and its age, for stale-claim takeover
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

_ENSURE_STATE_SQL = """
INSERT INTO debounce_state (ticket_id, debounce_until, scheduled, processing, last_updated)
VALUES (%s, %s, false, false, %s)
ON CONFLICT (ticket_id) DO NOTHING
"""

_LOCK_STATE_SQL = """
SELECT debounce_until, scheduled, processing, claimed_at
FROM debounce_state
WHERE ticket_id = %s
FOR UPDATE
"""

_EXTEND_SQL = """
UPDATE debounce_state
SET debounce_until = GREATEST(debounce_until, %s), scheduled = true, last_updated = %s
WHERE ticket_id = %s
"""

_CLAIM_SQL = """
UPDATE debounce_state
SET processing = true, claimed_at = %s, last_updated = %s
WHERE ticket_id = %s
  AND debounce_until <= %s
  AND (processing = false OR claimed_at IS NULL OR claimed_at < %s)
RETURNING debounce_until
"""

_RELEASE_SQL = """
UPDATE debounce_state
SET processing = false, claimed_at = NULL,
    scheduled = (debounce_until > %s), last_updated = %s
WHERE ticket_id = %s
RETURNING scheduled, debounce_until
"""

_ABORT_SQL = """
UPDATE debounce_state
SET processing = false, claimed_at = NULL, last_updated = %s
WHERE ticket_id = %s
"""

_DUE_SQL = """
SELECT ticket_id
FROM debounce_state
WHERE scheduled = true
  AND debounce_until <= %s
  AND (processing = false OR claimed_at IS NULL OR claimed_at < %s)
ORDER BY debounce_until ASC
LIMIT %s
"""


@dataclass(frozen=True)
class DebounceDecision:
    debounce_until: datetime
    needs_timer: bool


ClaimStatus = Literal["claimed", "not_expired_yet", "in_flight", "noop"]


@dataclass(frozen=True)
class Claim:
    status: ClaimStatus
    debounce_until: datetime | None = None

    @property
    def claimed(self) -> bool:
        return self.status == "claimed"


@dataclass(frozen=True)
class Release:
    rescheduled: bool
    debounce_until: datetime | None


def register_message(
    cur: Any,
    ticket_id: str,
    *,
    now: datetime,
    window_seconds: float,
) -> DebounceDecision:
    """Extend the ticket's window to now + window_seconds.

    The deadline never moves backwards. needs_timer is True only when no
    fire task was pending for the ticket.
    """
    deadline = now + timedelta(seconds=window_seconds)
    cur.execute(_ENSURE_STATE_SQL, (ticket_id, deadline, now))
    cur.execute(_LOCK_STATE_SQL, (ticket_id,))
    current_until, scheduled, _processing, _claimed_at = cur.fetchone()
    cur.execute(_EXTEND_SQL, (deadline, now, ticket_id))
    return DebounceDecision(
        debounce_until=max(current_until, deadline),
        needs_timer=not scheduled,
    )


def claim(cur: Any, ticket_id: str, *, now: datetime, lease_seconds: float) -> Claim:
    """Try to take ownership of the ticket's pending batch."""
    cur.execute(_LOCK_STATE_SQL, (ticket_id,))
    row = cur.fetchone()
    if row is None:
        return Claim(status="noop")

    debounce_until, scheduled, processing, claimed_at = row
    if not scheduled:
        return Claim(status="noop", debounce_until=debounce_until)

    if debounce_until > now:
        return Claim(status="not_expired_yet", debounce_until=debounce_until)

    stale_before = now - timedelta(seconds=lease_seconds)
    if processing and claimed_at is not None and claimed_at >= stale_before:
        return Claim(status="in_flight", debounce_until=debounce_until)

    cur.execute(_CLAIM_SQL, (now, now, ticket_id, now, stale_before))
    claimed_row = cur.fetchone()
    if claimed_row is None:
        return Claim(status="in_flight", debounce_until=debounce_until)
    return Claim(status="claimed", debounce_until=claimed_row[0])


def release(
    cur: Any,
    ticket_id: str,
    *,
    claimed_until: datetime,
    now: datetime,
) -> Release:
    """Drop the claim after a batch was handled.

    If messages arrived while processing, debounce_until moved past
    claimed_until and the row stays scheduled; the caller must then
    schedule a new fire task for debounce_until.
    """
    cur.execute(_RELEASE_SQL, (claimed_until, now, ticket_id))
    row = cur.fetchone()
    if row is None:
        return Release(rescheduled=False, debounce_until=None)
    return Release(rescheduled=bool(row[0]), debounce_until=row[1])


def abort(cur: Any, ticket_id: str, *, now: datetime) -> None:
    """Drop the claim after a failure; the row stays scheduled for a retry."""
    cur.execute(_ABORT_SQL, (now, ticket_id))


def find_due(
    cur: Any,
    *,
    now: datetime,
    grace_seconds: float,
    lease_seconds: float,
    limit: int,
) -> list[str]:
    """Tickets whose fire task looks lost: overdue by grace_seconds and unclaimed."""
    cur.execute(
        _DUE_SQL,
        (
            now - timedelta(seconds=grace_seconds),
            now - timedelta(seconds=lease_seconds),
            limit,
        ),
    )
    return [str(row[0]) for row in cur.fetchall()]
