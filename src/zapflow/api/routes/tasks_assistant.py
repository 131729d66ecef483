"""Assistant-processing trigger: one message in, one reply out (not sent)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from zapflow.api.task_auth import verify_task_auth
from zapflow.infra.time import utc_now
from zapflow.observability.correlation import get_correlation_id
from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import id_prefix, safe_log_context

router = APIRouter(prefix="/tasks/assistant", tags=["tasks"])

logger = get_logger(__name__)


# ── Schemas ───────────────────────────────────────────────


class ProcessMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    assistant_id: str = Field(alias="assistantId", min_length=1)
    message_text: str = Field(default="", alias="messageText")
    instance_id: str | None = Field(default=None, alias="instanceId")
    chat_id: str | None = Field(default=None, alias="chatId")
    message_id: str | None = Field(default=None, alias="messageId")
    is_audio_message: bool = Field(default=False, alias="isAudioMessage")


def _failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "timestamp": utc_now().isoformat()},
    )


# ── POST /tasks/assistant/process ─────────────────────────


@router.post("/process")
async def process_message(request: Request) -> JSONResponse:
    """Generate the assistant reply for a single message.

    With isAudioMessage, messageText carries base64 audio.

    Returns:
        200 {success: true, response, isAudio, audio, timestamp, settings}
        400 bad input, 422 fatal configuration, 500 LLM retries exhausted.
    """
    correlation_id = get_correlation_id()
    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        raw: Any = await request.json()
    except ValueError:
        return _failure(400, "invalid json")

    try:
        body = ProcessMessageRequest.model_validate(raw)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        return _failure(400, f"invalid fields: {', '.join(fields) or 'payload'}")

    invoker = request.app.state.pipeline.invoker
    result = await run_in_threadpool(
        invoker.respond,
        assistant_id=body.assistant_id,
        message_text=body.message_text,
        instance_id=body.instance_id,
        is_audio_message=body.is_audio_message,
    )

    logger.info(
        "assistant trigger handled",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                assistant_id=id_prefix(body.assistant_id),
                message_id=id_prefix(body.message_id),
                ok=result.ok,
                error=result.error,
                attempts=result.attempts,
            )
        },
    )

    if not result.ok:
        return _failure(422 if result.fatal else 500, result.error or "assistant failed")

    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "response": result.text,
            "isAudio": result.is_audio,
            "audio": [{"url": a.url, "source": a.source} for a in result.audio],
            "timestamp": utc_now().isoformat(),
            "settings": result.settings_dict(),
        },
    )
