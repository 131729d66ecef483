"""Batch processor: fires a ticket's debounce window.

fire() is the handler behind the scheduled task. Each step runs in its
own short transaction so no row lock is held across the LLM or gateway
calls; the claim flag on debounce_state is what keeps a second processor
out in the meantime.
"""

from __future__ import annotations

import hashlib
import time
from datetime import datetime
from typing import Any

from zapflow.infra.db import TxnFactory, txn
from zapflow.infra.settings import Settings
from zapflow.infra.time import epoch_millis, utc_now
from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import id_prefix, safe_log_context
from zapflow.tasks.client import TasksClient
from zapflow.tasks.contracts import FireBatchTaskV1

from . import debounce
from .assistant import AssistantInvoker
from .dispatcher import OutboundContent, OutboundDispatcher
from .message_store import get_ticket, mark_processed, pending_inbound

logger = get_logger(__name__)

FIRE_TASK_PATH = "/tasks/batches/fire"


def batch_id_for(ticket_id: str, message_ids: list[str]) -> str:
    """Stable id for a set of messages; a re-claimed identical batch maps to the same id."""
    digest = hashlib.sha256()
    digest.update(ticket_id.encode())
    for message_id in sorted(message_ids):
        digest.update(b"\x00")
        digest.update(message_id.encode())
    return digest.hexdigest()


def fire_task_id(ticket_id: str, deadline: datetime) -> str:
    return f"debounce:{ticket_id}:{epoch_millis(deadline)}"


def schedule_fire(
    tasks_client: TasksClient,
    ticket_id: str,
    deadline: datetime,
    correlation_id: str | None = None,
) -> bool:
    """Enqueue the fire task for a ticket's deadline (idempotent per deadline)."""
    task = FireBatchTaskV1(
        task_id=fire_task_id(ticket_id, deadline),
        ticket_id=ticket_id,
        correlation_id=correlation_id,
    )
    return tasks_client.enqueue_http(
        task_id=task.task_id,
        url_path=FIRE_TASK_PATH,
        payload=task.to_dict(),
        correlation_id=correlation_id,
        schedule_time=deadline,
    )


class BatchProcessor:
    def __init__(
        self,
        settings: Settings,
        *,
        invoker: AssistantInvoker,
        dispatcher: OutboundDispatcher,
        tasks_client: TasksClient,
        txn: TxnFactory = txn,
    ) -> None:
        self._settings = settings
        self._invoker = invoker
        self._dispatcher = dispatcher
        self._tasks_client = tasks_client
        self._txn = txn

    def fire(self, ticket_id: str, correlation_id: str | None = None) -> dict[str, Any]:
        """Process the ticket's batch if its window has expired.

        Returns a dict with "status":
        - "noop": nothing scheduled (already handled)
        - "not_expired_yet": window extended; a task for the new deadline was enqueued
        - "in_flight": another processor holds the claim
        - "empty": claimed, but no pending inbound messages
        - "replied" / "fallback": batch handled

        Raises:
            Exception: Anything unexpected after the claim; the claim is
                dropped first so a retry or the sweep can pick the batch up.
        """
        now = utc_now()
        log_ctx = safe_log_context(ticket_id=id_prefix(ticket_id))

        with self._txn() as cur:
            claim = debounce.claim(
                cur,
                ticket_id,
                now=now,
                lease_seconds=self._settings.claim_lease_seconds,
            )
            if claim.claimed:
                messages = pending_inbound(cur, ticket_id)
                ticket = get_ticket(cur, ticket_id)

        if claim.status == "not_expired_yet":
            schedule_fire(self._tasks_client, ticket_id, claim.debounce_until, correlation_id)
            return {"status": "not_expired_yet", "debounce_until": claim.debounce_until.isoformat()}
        if not claim.claimed:
            logger.info("batch fire skipped", extra={"extra_fields": {**log_ctx, "status": claim.status}})
            return {"status": claim.status}

        claimed_until = claim.debounce_until
        try:
            if not messages or ticket is None:
                outcome: dict[str, Any] = {"status": "empty"}
            else:
                outcome = self._process(ticket, messages, log_ctx)
        except Exception:
            logger.exception("batch processing failed", extra={"extra_fields": log_ctx})
            with self._txn() as cur:
                debounce.abort(cur, ticket_id, now=utc_now())
            raise

        with self._txn() as cur:
            if messages:
                mark_processed(cur, [m.message_id for m in messages], outcome.get("batch_id", ""))
            released = debounce.release(cur, ticket_id, claimed_until=claimed_until, now=utc_now())

        if released.rescheduled and released.debounce_until is not None:
            # messages arrived while this batch was being answered
            schedule_fire(self._tasks_client, ticket_id, released.debounce_until, correlation_id)
            outcome["rescheduled"] = True

        logger.info(
            "batch fire completed",
            extra={"extra_fields": {**log_ctx, "status": outcome["status"], "batch_size": str(len(messages))}},
        )
        return outcome

    def _process(self, ticket, messages, log_ctx: dict[str, str]) -> dict[str, Any]:
        batch_id = batch_id_for(ticket.id, [m.message_id for m in messages])
        result = self._invoker.invoke(ticket.id, messages)

        if result.ok:
            content = OutboundContent(text=result.text, audio=result.audio, kind="ai")
            self._respect_delay(result.response_delay_seconds, log_ctx)
        else:
            content = OutboundContent(text=result.fallback_text or self._settings.fallback_response, kind="fallback")

        instance_id = result.instance_id or ticket.instance_id
        send = self._dispatcher.deliver(
            batch_id=batch_id,
            ticket=ticket,
            instance_id=instance_id,
            content=content,
        )
        if not send.ok and send.status == "failed":
            # best effort: left for operational visibility, no retry loop
            logger.error(
                "batch reply not delivered",
                extra={"extra_fields": {**log_ctx, "kind": content.kind, "error": send.error or ""}},
            )

        return {
            "status": "replied" if result.ok else "fallback",
            "batch_id": batch_id,
            "batch_size": len(messages),
            "error": result.error,
            "delivery": send.status,
        }

    def _respect_delay(self, requested: float, log_ctx: dict[str, str]) -> None:
        """Hold the reply for the assistant's configured typing delay."""
        delay = min(requested, self._settings.max_response_delay_seconds)
        if delay <= 0:
            return
        logger.info(
            "delaying reply",
            extra={"extra_fields": {**log_ctx, "delay_seconds": str(delay)}},
        )
        time.sleep(delay)

    def sweep(self, correlation_id: str | None = None) -> list[dict[str, Any]]:
        """Fire tickets whose timer task looks lost."""
        with self._txn() as cur:
            due = debounce.find_due(
                cur,
                now=utc_now(),
                grace_seconds=self._settings.sweep_grace_seconds,
                lease_seconds=self._settings.claim_lease_seconds,
                limit=self._settings.sweep_limit,
            )

        results = []
        for ticket_id in due:
            try:
                outcome = self.fire(ticket_id, correlation_id)
            except Exception as e:
                # one bad ticket must not starve the rest of the sweep
                outcome = {"status": "error", "error": type(e).__name__}
            results.append({"ticket_id": ticket_id, **outcome})
        return results
