"""Worker routes for debounce batches."""

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from zapflow.api.task_auth import verify_task_auth
from zapflow.observability.correlation import bound_correlation_id, get_correlation_id
from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import id_prefix, safe_log_context
from zapflow.tasks.contracts import FireBatchTaskV1

router = APIRouter(prefix="/tasks/batches", tags=["tasks"])

logger = get_logger(__name__)


def _require_task_auth(request: Request) -> None:
    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/fire")
async def handle_fire(request: Request) -> JSONResponse:
    """Fire a ticket's debounce window.

    Status in the 200 body:
    - "noop": nothing pending (already handled)
    - "not_expired_yet": window extended, task re-enqueued for the new deadline
    - "in_flight": another worker holds the claim
    - "empty", "replied", "fallback": batch handled

    Unexpected failures return 500 so Cloud Tasks retries; the claim is
    released before that. The batch runs in the threadpool since it
    blocks on the database, the LLM and the gateway.

    Expected payload:
    - task_id: Unique task identifier (required)
    - ticket_id: Ticket UUID (required)
    - correlation_id: Optional correlation ID
    """
    _require_task_auth(request)
    correlation_id = get_correlation_id()

    try:
        payload: Any = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"ok": False, "error": "invalid json"})

    try:
        task = FireBatchTaskV1.from_dict(payload)
    except ValueError as e:
        logger.warning(
            "invalid fire task payload",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(e))},
        )
        return JSONResponse(status_code=400, content={"ok": False, "error": str(e)})

    processor = request.app.state.pipeline.batches
    with bound_correlation_id(task.correlation_id) as cid:
        log_ctx = safe_log_context(
            correlationId=cid,
            task_id_prefix=id_prefix(task.task_id, 16),
            ticket_id=id_prefix(task.ticket_id),
        )
        logger.info("batch fire task received", extra={"extra_fields": log_ctx})
        try:
            result = await run_in_threadpool(processor.fire, task.ticket_id, cid)
        except Exception:
            logger.exception("batch fire task failed", extra={"extra_fields": log_ctx})
            return JSONResponse(status_code=500, content={"ok": False, "error": "processing failed"})

    return JSONResponse(status_code=200, content={"ok": True, **result})


@router.post("/sweep")
async def handle_sweep(request: Request) -> JSONResponse:
    """Fire every ticket whose timer looks lost. Meant for a cron-style scheduler."""
    _require_task_auth(request)
    processor = request.app.state.pipeline.batches

    try:
        fired = await run_in_threadpool(processor.sweep, get_correlation_id())
    except Exception:
        logger.exception(
            "batch sweep failed",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
        return JSONResponse(status_code=500, content={"ok": False, "error": "sweep failed"})

    logger.info(
        "batch sweep completed",
        extra={"extra_fields": safe_log_context(correlationId=get_correlation_id(), fired=len(fired))},
    )
    return JSONResponse(status_code=200, content={"ok": True, "fired": fired})
