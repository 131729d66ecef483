"""Gateway webhook: normalize, dedupe, store, and open the debounce window.

Security:
- Chat ids and message bodies exist only in memory and in the database
- Task payloads carry ticket ids only
- Logs carry message id prefixes and chat hashes, never raw values
"""

import hmac
import os
from typing import Any

from fastapi import APIRouter, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from zapflow.api.pipeline import Pipeline
from zapflow.api.task_auth import is_local_dev
from zapflow.domain.batches import schedule_fire
from zapflow.domain.ingestion import IngestResult, ingest_message
from zapflow.domain.message_store import DuplicateMessageError, StorageError, UnknownTenantError
from zapflow.infra.time import utc_now
from zapflow.observability.correlation import get_correlation_id
from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import hash_identifier, id_prefix, safe_log_context
from zapflow.whatsapp.models import Message
from zapflow.whatsapp.normalizer import InvalidPayloadError, is_message_event, normalize

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(__name__)


def _error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _store(pipeline: Pipeline, message: Message, correlation_id: str) -> IngestResult:
    """One message, its debounce update and any timer enqueue, in one transaction."""
    with pipeline.txn() as cur:
        outcome = ingest_message(
            cur,
            message,
            now=utc_now(),
            window_seconds=pipeline.settings.debounce_window_seconds,
        )
        if outcome.needs_timer and outcome.debounce_until is not None:
            schedule_fire(
                pipeline.tasks_client,
                outcome.ticket_id,
                outcome.debounce_until,
                correlation_id,
            )
    return outcome


def _secret_ok(provided: str | None, correlation_id: str) -> bool:
    """Fail closed unless a secret is configured (local dev excepted)."""
    expected = os.environ.get("GATEWAY_WEBHOOK_SECRET", "")
    if not expected:
        if is_local_dev():
            logger.warning(
                "GATEWAY_WEBHOOK_SECRET not set - skipping validation (local dev)",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
            )
            return True
        logger.error(
            "GATEWAY_WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(
            "webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    return True


@router.post("/whatsapp")
async def whatsapp_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
) -> JSONResponse:
    """Receive a gateway event.

    Each message is stored in its own transaction together with the
    debounce update and, for the first message of a burst, the fire task
    enqueue. A failed enqueue rolls the message back so the gateway
    retries the delivery.

    Returns:
        200 with per-message results, or {ignored: true} for non-message events.
        400 on invalid JSON or payload shape.
        401 on secret failure.
        404 if the instance is unknown.
        500 on storage failure (gateway retries).
    """
    correlation_id = get_correlation_id()
    if not _secret_ok(x_webhook_secret, correlation_id):
        return _error(401, "unauthorized")

    try:
        payload: Any = await request.json()
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return _error(400, "invalid json")

    if not isinstance(payload, dict):
        return _error(400, "payload must be an object")

    if not is_message_event(payload):
        logger.info(
            "non-message event ignored",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, event=payload.get("event"))},
        )
        return JSONResponse(status_code=200, content={"success": True, "ignored": True})

    try:
        messages = normalize(payload)
    except InvalidPayloadError as e:
        logger.warning(
            "invalid webhook payload shape",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(e))},
        )
        return _error(400, str(e))

    pipeline = request.app.state.pipeline
    results: list[dict[str, Any]] = []

    for message in messages:
        log_ctx = safe_log_context(
            correlationId=correlation_id,
            message_id=id_prefix(message.message_id),
            chat_hash=hash_identifier(message.chat_id),
            instance_id=message.instance_id,
            from_me=message.from_me,
            message_type=message.message_type,
        )
        try:
            outcome = await run_in_threadpool(_store, pipeline, message, correlation_id)
        except DuplicateMessageError:
            # concurrent delivery of the same id won the insert
            logger.info("duplicate message (insert race)", extra={"extra_fields": log_ctx})
            results.append({"messageId": message.message_id, "ticketId": None, "status": "duplicate"})
            continue
        except UnknownTenantError:
            logger.warning("unknown instance", extra={"extra_fields": log_ctx})
            return _error(404, "unknown instance")
        except StorageError:
            logger.exception("message storage failed", extra={"extra_fields": log_ctx})
            return _error(500, "storage unavailable")
        except Exception:
            logger.exception("webhook processing failed", extra={"extra_fields": log_ctx})
            return _error(500, "processing failed")

        logger.info(
            "webhook message processed",
            extra={
                "extra_fields": {
                    **log_ctx,
                    "status": outcome.status,
                    "ticket_id": id_prefix(outcome.ticket_id),
                    "needs_timer": str(outcome.needs_timer).lower(),
                }
            },
        )
        results.append({
            "messageId": message.message_id,
            "ticketId": outcome.ticket_id,
            "status": outcome.status,
        })

    return JSONResponse(status_code=200, content={"success": True, "results": results})
