"""Outbound dispatcher: gateway send, then write-back to the ticket.

deliver() adds a per-batch guard on assistant_replies so a re-run of the
same batch (task retry, stale claim takeover) never sends a second reply.

Security: NEVER log chat ids or reply text. Only hashes and lengths.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from zapflow.infra.db import TxnFactory, txn
from zapflow.infra.settings import Settings
from zapflow.infra.time import utc_now
from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import hash_identifier, id_prefix, safe_log_context
from zapflow.whatsapp.gateway import GatewayClient, SendError
from zapflow.whatsapp.models import Message

from .assistant import OutboundAudio
from .message_store import DuplicateMessageError, StorageError, Ticket, UnknownTenantError, append_message

logger = get_logger(__name__)

LEASE_SECONDS = 60

ReplyKind = Literal["ai", "fallback"]

AI_SENDER_NAME = "🤖 Assistente"
FALLBACK_SENDER_NAME = "🤖 Assistente (Fallback)"

_ENSURE_REPLY_SQL = """
INSERT INTO assistant_replies (batch_id, ticket_id, kind, status, attempt_count, created_at, updated_at)
VALUES (%s, %s, %s, 'pending', 0, %s, %s)
ON CONFLICT (batch_id) DO NOTHING
"""

_LOCK_REPLY_SQL = """
SELECT status, attempt_count, updated_at
FROM assistant_replies
WHERE batch_id = %s
FOR UPDATE
"""

_ACQUIRE_REPLY_SQL = """
UPDATE assistant_replies
SET status = 'sending', kind = %s, attempt_count = attempt_count + 1, updated_at = %s
WHERE batch_id = %s
"""

_MARK_REPLY_SENT_SQL = """
UPDATE assistant_replies
SET status = 'sent', message_id = %s, last_error = NULL, updated_at = %s
WHERE batch_id = %s
"""

_MARK_REPLY_FAILED_SQL = """
UPDATE assistant_replies
SET status = 'failed', last_error = %s, updated_at = %s
WHERE batch_id = %s
"""


@dataclass(frozen=True)
class OutboundContent:
    text: str
    audio: tuple[OutboundAudio, ...] = field(default_factory=tuple)
    kind: ReplyKind = "ai"

    @property
    def sender_name(self) -> str:
        return FALLBACK_SENDER_NAME if self.kind == "fallback" else AI_SENDER_NAME


@dataclass(frozen=True)
class SendResult:
    ok: bool
    status: Literal["sent", "failed", "already_sent", "already_failed", "lease_held"]
    message_ids: tuple[str, ...] = ()
    attempts: int = 0
    error: str | None = None
    recorded: bool = False


class OutboundDispatcher:
    def __init__(
        self,
        gateway: GatewayClient,
        settings: Settings,
        *,
        txn: TxnFactory = txn,
    ) -> None:
        self._gateway = gateway
        self._settings = settings
        self._txn = txn

    def _send_once(self, instance_id: str, chat_id: str, part: OutboundAudio | str) -> str | None:
        if isinstance(part, OutboundAudio):
            return self._gateway.send_audio(instance_id, chat_id, part.url)
        return self._gateway.send_text(instance_id, chat_id, part)

    def _send_with_retry(
        self,
        instance_id: str,
        chat_id: str,
        part: OutboundAudio | str,
        log_ctx: dict[str, str],
    ) -> tuple[str | None, int]:
        """Bounded attempts; permanent gateway errors stop immediately.

        Raises:
            SendError: The last failure.
        """
        max_attempts = max(1, self._settings.dispatch_max_attempts)
        for attempt in range(1, max_attempts + 1):
            try:
                return self._send_once(instance_id, chat_id, part), attempt
            except SendError as e:
                if not e.retryable or attempt == max_attempts:
                    raise
                logger.warning(
                    "outbound send failed, retrying",
                    extra={"extra_fields": {**log_ctx, "attempt": str(attempt), "error": str(e)}},
                )
                time.sleep(self._settings.dispatch_retry_seconds * (2 ** (attempt - 1)))
        raise SendError("no attempt made")

    def send(
        self,
        instance_id: str,
        chat_id: str,
        content: OutboundContent,
        *,
        client_id: str | None = None,
    ) -> SendResult:
        """Send text then any audio parts, recording each sent part on the ticket."""
        log_ctx = safe_log_context(
            instance_id=instance_id,
            to_hash=hash_identifier(chat_id),
            kind=content.kind,
            text_len=len(content.text),
            audio_count=len(content.audio),
        )
        parts: list[OutboundAudio | str] = []
        if content.text.strip():
            parts.append(content.text)
        parts.extend(content.audio)
        if not parts:
            return SendResult(ok=False, status="failed", error="empty content")

        sent_ids: list[str] = []
        attempts = 0
        recorded = True
        for part in parts:
            try:
                gateway_id, used = self._send_with_retry(instance_id, chat_id, part, log_ctx)
            except SendError as e:
                attempts += self._settings.dispatch_max_attempts
                logger.error(
                    "outbound send failed",
                    extra={"extra_fields": {**log_ctx, "error": str(e)}},
                )
                return SendResult(
                    ok=False,
                    status="failed",
                    message_ids=tuple(sent_ids),
                    attempts=attempts,
                    error=str(e),
                    recorded=recorded,
                )
            attempts += used
            if gateway_id:
                message_id = gateway_id
            else:
                # the echo webhook moves this row onto the gateway id
                message_id = f"{content.kind}_{uuid.uuid4().hex}"
                logger.warning(
                    "gateway returned no message id",
                    extra={"extra_fields": {**log_ctx, "message_id": id_prefix(message_id)}},
                )
            sent_ids.append(message_id)
            recorded = self._record(message_id, instance_id, chat_id, part, content, client_id, log_ctx) and recorded

        logger.info("outbound reply sent", extra={"extra_fields": log_ctx})
        return SendResult(
            ok=True,
            status="sent",
            message_ids=tuple(sent_ids),
            attempts=attempts,
            recorded=recorded,
        )

    def _record(
        self,
        message_id: str,
        instance_id: str,
        chat_id: str,
        part: OutboundAudio | str,
        content: OutboundContent,
        client_id: str | None,
        log_ctx: dict[str, str],
    ) -> bool:
        """Write the sent part back to the ticket. Already delivered, so never raises."""
        is_audio = isinstance(part, OutboundAudio)
        message = Message(
            message_id=message_id,
            chat_id=chat_id,
            instance_id=instance_id,
            client_id=client_id,
            from_me=True,
            body=part.text if is_audio else part,
            message_type="audio" if is_audio else "text",
            sender_name=content.sender_name,
            timestamp=utc_now(),
        )
        try:
            with self._txn() as cur:
                append_message(cur, message, is_ai_response=True)
        except DuplicateMessageError:
            # the gateway echo webhook stored it first
            return True
        except (StorageError, UnknownTenantError) as e:
            logger.error(
                "sent reply not recorded",
                extra={"extra_fields": {**log_ctx, "message_id": id_prefix(message_id), "error": type(e).__name__}},
            )
            return False
        return True

    def deliver(
        self,
        *,
        batch_id: str,
        ticket: Ticket,
        instance_id: str,
        content: OutboundContent,
        now: datetime | None = None,
    ) -> SendResult:
        """Send the reply for a batch at most once.

        A reply row in 'sent' or 'failed' is final; a fresh 'sending'
        lease means another worker is on it.
        """
        now = now or utc_now()
        log_ctx = safe_log_context(
            batch_id=id_prefix(batch_id, 12),
            ticket_id=id_prefix(ticket.id),
            kind=content.kind,
        )

        with self._txn() as cur:
            cur.execute(_ENSURE_REPLY_SQL, (batch_id, ticket.id, content.kind, now, now))
            cur.execute(_LOCK_REPLY_SQL, (batch_id,))
            status, attempt_count, updated_at = cur.fetchone()

            if status == "sent":
                logger.info("batch reply already sent", extra={"extra_fields": log_ctx})
                return SendResult(ok=True, status="already_sent")
            if status == "failed":
                logger.info("batch reply already failed", extra={"extra_fields": log_ctx})
                return SendResult(ok=False, status="already_failed")
            if status == "sending" and attempt_count > 0:
                if (now - updated_at).total_seconds() < LEASE_SECONDS:
                    logger.info("batch reply lease held", extra={"extra_fields": log_ctx})
                    return SendResult(ok=False, status="lease_held")
                # stale lease, take over

            cur.execute(_ACQUIRE_REPLY_SQL, (content.kind, now, batch_id))

        result = self.send(instance_id, ticket.chat_id, content, client_id=ticket.client_id)

        with self._txn() as cur:
            if result.ok:
                cur.execute(_MARK_REPLY_SENT_SQL, (result.message_ids[0], utc_now(), batch_id))
            else:
                cur.execute(_MARK_REPLY_FAILED_SQL, (result.error or "send failed", utc_now(), batch_id))
        return result
