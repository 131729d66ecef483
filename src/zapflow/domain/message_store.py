"""Message store: tickets, raw messages and the ticket thread.

append_message() is one logical unit: the ticket upsert and both message
inserts run on the caller's cursor, so any failure rolls all of them back
with the caller's transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import psycopg2
import psycopg2.errors
from psycopg2.extras import Json

from zapflow.whatsapp.models import MediaInfo, Message
from zapflow.whatsapp.normalizer import with_tenant


class StorageError(Exception):
    """Datastore unavailable; the caller's retry policy applies."""

    pass


class UnknownTenantError(Exception):
    """Instance or client not registered. Not retried."""

    pass


class DuplicateMessageError(Exception):
    """A concurrent delivery inserted the same message id first."""

    pass


@dataclass(frozen=True)
class Instance:
    instance_id: str
    client_id: str
    status: str


@dataclass(frozen=True)
class Ticket:
    id: str
    client_id: str
    chat_id: str
    instance_id: str
    customer_name: str | None
    customer_phone: str | None
    last_message: str | None
    last_message_at: datetime | None
    current_stage_id: str | None = None
    assigned_queue_id: str | None = None


@dataclass(frozen=True)
class HistoryEntry:
    message_id: str
    from_me: bool
    content: str


_INSTANCE_SQL = """
SELECT instance_id, client_id, status
FROM whatsapp_instances
WHERE instance_id = %s
"""

# last_message only moves forward in time; retried webhooks may arrive late.
_UPSERT_TICKET_SQL = """
INSERT INTO tickets (
    client_id, chat_id, instance_id, customer_name, customer_phone,
    last_message, last_message_at
)
VALUES (%s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (client_id, chat_id, instance_id) DO UPDATE
SET last_message = CASE
        WHEN tickets.last_message_at IS NULL
          OR EXCLUDED.last_message_at >= tickets.last_message_at
        THEN EXCLUDED.last_message
        ELSE tickets.last_message
    END,
    last_message_at = GREATEST(tickets.last_message_at, EXCLUDED.last_message_at),
    customer_name = COALESCE(EXCLUDED.customer_name, tickets.customer_name),
    updated_at = now()
RETURNING id
"""

_INSERT_MESSAGE_SQL = """
INSERT INTO messages (
    message_id, ticket_id, client_id, instance_id, chat_id, from_me,
    body, message_type, sender_name, sent_at, media, status
)
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (message_id) DO NOTHING
"""

_INSERT_TICKET_MESSAGE_SQL = """
INSERT INTO ticket_messages (
    ticket_id, message_id, from_me, sender_name, content, message_type,
    sent_at, is_ai_response, media
)
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (message_id) DO NOTHING
"""

_GET_TICKET_SQL = """
SELECT id, client_id, chat_id, instance_id, customer_name, customer_phone,
       last_message, last_message_at, current_stage_id, assigned_queue_id
FROM tickets
WHERE id = %s
"""

_HISTORY_SQL = """
SELECT message_id, from_me, content
FROM ticket_messages
WHERE ticket_id = %s
ORDER BY sent_at DESC
LIMIT %s
"""

_PENDING_INBOUND_SQL = """
SELECT message_id, chat_id, instance_id, client_id, from_me, body,
       message_type, sender_name, sent_at
FROM messages
WHERE ticket_id = %s AND from_me = false AND status = 'received'
ORDER BY sent_at ASC, created_at ASC
"""

_MARK_PROCESSED_SQL = """
UPDATE messages
SET status = 'processed', batch_id = %s, processed_at = now()
WHERE message_id = ANY(%s) AND status = 'received'
"""

# Replies the gateway acknowledged without an id are stored as "<kind>_<hex>".
LOCAL_REPLY_KINDS = ("ai", "fallback")
ECHO_MATCH_SECONDS = 120

_FIND_LOCAL_REPLY_SQL = """
SELECT message_id, ticket_id
FROM messages
WHERE chat_id = %s AND instance_id = %s AND from_me = true
  AND split_part(message_id, '_', 1) = ANY(%s)
  AND body = %s
  AND sent_at BETWEEN %s AND %s
ORDER BY sent_at DESC
LIMIT 1
FOR UPDATE
"""

_RENAME_MESSAGE_SQL = """
UPDATE messages SET message_id = %s WHERE message_id = %s
"""

_RENAME_TICKET_MESSAGE_SQL = """
UPDATE ticket_messages SET message_id = %s WHERE message_id = %s
"""


def lookup_instance(cur: Any, instance_id: str) -> Instance | None:
    cur.execute(_INSTANCE_SQL, (instance_id,))
    row = cur.fetchone()
    if row is None:
        return None
    return Instance(instance_id=row[0], client_id=row[1], status=row[2])


def _media_json(media: MediaInfo | None) -> Json | None:
    return Json(media.to_dict()) if media is not None else None


def append_message(cur: Any, message: Message, *, is_ai_response: bool = False) -> str:
    """Persist a message and append it to its ticket. Returns the ticket id.

    The ticket for (client_id, chat_id, instance_id) is created on first
    use. When message.client_id is unset the tenant is resolved from the
    instance.

    Raises:
        UnknownTenantError: Instance unknown or a foreign key does not resolve.
        DuplicateMessageError: message_id already stored (race with another delivery).
        StorageError: Datastore unavailable.
    """
    try:
        if message.client_id is None:
            instance = lookup_instance(cur, message.instance_id)
            if instance is None:
                raise UnknownTenantError(f"unknown instance {message.instance_id}")
            message = with_tenant(message, instance.client_id)

        cur.execute(
            _UPSERT_TICKET_SQL,
            (
                message.client_id,
                message.chat_id,
                message.instance_id,
                None if message.from_me else message.sender_name,
                message.customer_phone,
                message.body,
                message.timestamp,
            ),
        )
        ticket_id = str(cur.fetchone()[0])

        cur.execute(
            _INSERT_MESSAGE_SQL,
            (
                message.message_id,
                ticket_id,
                message.client_id,
                message.instance_id,
                message.chat_id,
                message.from_me,
                message.body,
                message.message_type,
                message.sender_name,
                message.timestamp,
                _media_json(message.media),
                "sent" if message.from_me else "received",
            ),
        )
        if cur.rowcount == 0:
            raise DuplicateMessageError(message.message_id)

        cur.execute(
            _INSERT_TICKET_MESSAGE_SQL,
            (
                ticket_id,
                message.message_id,
                message.from_me,
                message.sender_name,
                message.body,
                message.message_type,
                message.timestamp,
                is_ai_response,
                _media_json(message.media),
            ),
        )
    except psycopg2.errors.ForeignKeyViolation as e:
        raise UnknownTenantError("tenant reference does not resolve") from e
    except psycopg2.OperationalError as e:
        raise StorageError(str(e)) from e

    return ticket_id


def get_ticket(cur: Any, ticket_id: str) -> Ticket | None:
    cur.execute(_GET_TICKET_SQL, (ticket_id,))
    row = cur.fetchone()
    if row is None:
        return None
    return Ticket(
        id=str(row[0]),
        client_id=row[1],
        chat_id=row[2],
        instance_id=row[3],
        customer_name=row[4],
        customer_phone=row[5],
        last_message=row[6],
        last_message_at=row[7],
        current_stage_id=row[8],
        assigned_queue_id=row[9],
    )


def load_history(
    cur: Any,
    ticket_id: str,
    limit: int,
    exclude: frozenset[str] = frozenset(),
) -> list[HistoryEntry]:
    """Most recent `limit` thread entries, oldest first, minus `exclude` ids."""
    cur.execute(_HISTORY_SQL, (ticket_id, limit))
    rows = cur.fetchall()
    entries = [
        HistoryEntry(message_id=row[0], from_me=bool(row[1]), content=row[2] or "")
        for row in rows
        if row[0] not in exclude
    ]
    entries.reverse()
    return entries


def pending_inbound(cur: Any, ticket_id: str) -> list[Message]:
    """Inbound messages not yet answered, in timestamp order."""
    cur.execute(_PENDING_INBOUND_SQL, (ticket_id,))
    return [
        Message(
            message_id=row[0],
            chat_id=row[1],
            instance_id=row[2],
            client_id=row[3],
            from_me=bool(row[4]),
            body=row[5] or "",
            message_type=row[6],
            sender_name=row[7],
            timestamp=row[8],
        )
        for row in cur.fetchall()
    ]


def mark_processed(cur: Any, message_ids: list[str], batch_id: str) -> int:
    cur.execute(_MARK_PROCESSED_SQL, (batch_id, list(message_ids)))
    return cur.rowcount


def adopt_echo(cur: Any, message: Message, *, window_seconds: float = ECHO_MATCH_SECONDS) -> str | None:
    """Move a locally-ided reply onto the id its gateway echo carries.

    Matches a reply on the same chat with the same body sent within
    window_seconds of the echo. Returns the reply's ticket id, or None
    when nothing matched and the echo should be stored as usual.
    """
    if not message.from_me or not message.body:
        return None
    window = timedelta(seconds=window_seconds)
    try:
        cur.execute(
            _FIND_LOCAL_REPLY_SQL,
            (
                message.chat_id,
                message.instance_id,
                list(LOCAL_REPLY_KINDS),
                message.body,
                message.timestamp - window,
                message.timestamp + window,
            ),
        )
        row = cur.fetchone()
        if row is None:
            return None
        local_id, ticket_id = row
        cur.execute(_RENAME_MESSAGE_SQL, (message.message_id, local_id))
        cur.execute(_RENAME_TICKET_MESSAGE_SQL, (message.message_id, local_id))
    except psycopg2.OperationalError as e:
        raise StorageError(str(e)) from e
    return str(ticket_id)
