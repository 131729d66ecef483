"""Idempotency guard keyed by gateway message id.

The read here is the fast path for webhook retries. Concurrent deliveries
that both pass it are serialized by the unique constraint on
messages.message_id (see message_store.append_message).
"""

from dataclasses import dataclass
from typing import Any, Literal

_LOOKUP_SQL = "SELECT ticket_id FROM messages WHERE message_id = %s"


@dataclass(frozen=True)
class GuardResult:
    status: Literal["proceed", "already_processed"]
    ticket_id: str | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.status == "already_processed"


PROCEED = GuardResult(status="proceed")


def check_message(cur: Any, message_id: str) -> GuardResult:
    cur.execute(_LOOKUP_SQL, (message_id,))
    row = cur.fetchone()
    if row is None:
        return PROCEED
    return GuardResult(status="already_processed", ticket_id=str(row[0]))
