"""Webhook ingestion: guard, store, then debounce for inbound messages."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from zapflow.whatsapp.models import Message

from .debounce import register_message
from .idempotency import check_message
from .message_store import adopt_echo, append_message


@dataclass(frozen=True)
class IngestResult:
    status: Literal["stored", "duplicate"]
    message_id: str
    ticket_id: str | None
    debounce_until: datetime | None = None
    needs_timer: bool = False


def ingest_message(
    cur: Any,
    message: Message,
    *,
    now: datetime,
    window_seconds: float,
) -> IngestResult:
    """Store one normalized message on the caller's transaction.

    Outbound echoes (fromMe) are stored but never open a debounce window.
    An echo of a reply stored under a local id renames that reply instead
    and reports a duplicate.

    Raises:
        DuplicateMessageError: Lost an insert race to a concurrent delivery;
            the caller must roll back and report a duplicate.
        UnknownTenantError, StorageError: From the message store.
    """
    guard = check_message(cur, message.message_id)
    if guard.is_duplicate:
        return IngestResult(
            status="duplicate",
            message_id=message.message_id,
            ticket_id=guard.ticket_id,
        )

    if message.from_me:
        adopted = adopt_echo(cur, message)
        if adopted is not None:
            return IngestResult(status="duplicate", message_id=message.message_id, ticket_id=adopted)

    ticket_id = append_message(cur, message)
    if message.from_me:
        return IngestResult(status="stored", message_id=message.message_id, ticket_id=ticket_id)

    decision = register_message(cur, ticket_id, now=now, window_seconds=window_seconds)
    return IngestResult(
        status="stored",
        message_id=message.message_id,
        ticket_id=ticket_id,
        debounce_until=decision.debounce_until,
        needs_timer=decision.needs_timer,
    )
