"""Assistant invoker: configuration, context, LLM call, retry and fallback.

invoke() never raises for configuration or LLM failures; it returns an
AssistantResult with ok=False and the text the caller should send as the
fallback. Storage errors while resolving configuration do propagate, so
the fire task is retried by the task queue.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from zapflow.infra.db import TxnFactory, txn
from zapflow.infra.settings import Settings
from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import id_prefix, safe_log_context
from zapflow.services.llm.base import EmptyResponseError, LLMError, LLMProvider
from zapflow.services.llm.openai_provider import OpenAIProvider
from zapflow.services.speech import SpeechClient, SpeechError
from zapflow.whatsapp.models import Message

from .assistant_config import (
    AICredentials,
    AssistantConfig,
    find_ai_credentials,
    find_connected_instance,
    find_queue_assistant,
    get_assistant,
)
from .message_store import HistoryEntry, get_ticket, load_history
from .prompt import build_messages, concat_batch
from .voice import plan_audio

logger = get_logger(__name__)

# Empty completions get one more try, transport errors the full attempt cap.
EMPTY_RESPONSE_RETRIES = 1

ProviderFactory = Callable[[str, str], LLMProvider]


class FatalAssistantError(Exception):
    """Misconfiguration or unusable input. Never retried."""

    code = "fatal"


class TicketNotFoundError(FatalAssistantError):
    code = "ticket_not_found"


class AssistantNotFoundError(FatalAssistantError):
    code = "assistant_not_found"


class NoActiveAssistantError(FatalAssistantError):
    code = "no_active_assistant"


class NoAICredentialsError(FatalAssistantError):
    code = "no_ai_credentials"


class NoConnectedInstanceError(FatalAssistantError):
    code = "no_connected_instance"


class NoContentError(FatalAssistantError):
    code = "no_content"


class TranscriptionError(FatalAssistantError):
    code = "transcription_failed"


class RetriesExhaustedError(Exception):
    """The provider never produced a reply; carries the last error."""

    def __init__(self, error: LLMError, attempts: int):
        super().__init__(str(error))
        self.error = error
        self.attempts = attempts


@dataclass(frozen=True)
class OutboundAudio:
    url: str
    text: str
    source: Literal["synthesized", "library"]


@dataclass(frozen=True)
class AssistantResult:
    ok: bool
    text: str = ""
    audio: tuple[OutboundAudio, ...] = field(default_factory=tuple)
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    instance_id: str | None = None
    fallback_text: str | None = None
    error: str | None = None
    fatal: bool = False
    attempts: int = 0
    response_delay_seconds: float = 0.0

    @property
    def is_audio(self) -> bool:
        return bool(self.audio)

    def settings_dict(self) -> dict[str, Any]:
        return {
            "temperature": self.temperature,
            "maxTokens": self.max_tokens,
            "model": self.model,
        }


def _default_provider_factory(api_key: str, default_model: str) -> LLMProvider:
    return OpenAIProvider(api_key=api_key, default_model=default_model)


class AssistantInvoker:
    """Turns a batch of inbound messages into one assistant reply."""

    def __init__(
        self,
        settings: Settings,
        *,
        txn: TxnFactory = txn,
        provider_factory: ProviderFactory = _default_provider_factory,
        speech: SpeechClient | None = None,
    ) -> None:
        self._settings = settings
        self._txn = txn
        self._provider_factory = provider_factory
        self._speech = speech

    # -- batch path --------------------------------------------------------

    def invoke(self, ticket_id: str, messages: list[Message]) -> AssistantResult:
        """Produce the reply for a claimed batch.

        Config resolution, content assembly and LLM failures yield
        ok=False with fallback_text set; the caller sends the fallback.
        """
        log_ctx = safe_log_context(ticket_id=id_prefix(ticket_id), batch_size=len(messages))

        with self._txn() as cur:
            ticket = get_ticket(cur, ticket_id)
            if ticket is None:
                return self._fatal(TicketNotFoundError(ticket_id), None, None, log_ctx)
            config = find_queue_assistant(cur, ticket.client_id, ticket.assigned_queue_id)
            credentials = find_ai_credentials(cur, ticket.client_id)
            instance_id = find_connected_instance(cur, ticket.client_id, ticket.instance_id)

        # report every missing piece, then fail on the first
        missing: list[FatalAssistantError] = []
        if config is None:
            missing.append(NoActiveAssistantError(ticket.client_id))
        if credentials is None:
            missing.append(NoAICredentialsError(ticket.client_id))
        if instance_id is None:
            missing.append(NoConnectedInstanceError(ticket.client_id))
        if missing:
            logger.warning(
                "assistant configuration incomplete",
                extra={"extra_fields": {**log_ctx, "missing": ",".join(e.code for e in missing)}},
            )
            return self._fatal(missing[0], config, instance_id or ticket.instance_id, log_ctx)

        user_turn = concat_batch(messages)
        if not user_turn:
            return self._fatal(NoContentError(ticket_id), config, instance_id, log_ctx)

        history = self._load_history(ticket_id, {m.message_id for m in messages}, log_ctx)
        return self._generate(config, credentials, history, user_turn, instance_id, log_ctx)

    def _load_history(
        self,
        ticket_id: str,
        exclude: set[str],
        log_ctx: dict[str, str],
    ) -> list[HistoryEntry]:
        """Recent thread context; any failure degrades to no context."""
        try:
            with self._txn() as cur:
                return load_history(
                    cur,
                    ticket_id,
                    self._settings.history_fetch_limit,
                    exclude=frozenset(exclude),
                )
        except Exception as e:
            logger.warning(
                "history load failed, continuing without context",
                extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
            )
            return []

    # -- trigger path ------------------------------------------------------

    def respond(
        self,
        *,
        assistant_id: str,
        message_text: str,
        instance_id: str | None = None,
        is_audio_message: bool = False,
    ) -> AssistantResult:
        """Reply to one message for a given assistant, without sending it.

        With is_audio_message, message_text holds base64 audio that is
        transcribed first when the assistant has audio processing enabled.
        """
        log_ctx = safe_log_context(assistant_id=id_prefix(assistant_id), is_audio=is_audio_message)

        with self._txn() as cur:
            config = get_assistant(cur, assistant_id)
            credentials = find_ai_credentials(cur, config.client_id) if config else None

        if config is None:
            return self._fatal(AssistantNotFoundError(assistant_id), None, instance_id, log_ctx)
        if credentials is None:
            return self._fatal(NoAICredentialsError(config.client_id), config, instance_id, log_ctx)

        text = message_text or ""
        if is_audio_message and config.audio_processing_enabled:
            if self._speech is None:
                return self._fatal(TranscriptionError("speech disabled"), config, instance_id, log_ctx)
            try:
                text = self._speech.transcribe(text, openai_api_key=credentials.api_key)
            except SpeechError as e:
                return self._fatal(TranscriptionError(str(e)), config, instance_id, log_ctx)

        if not text.strip():
            return self._fatal(NoContentError(assistant_id), config, instance_id, log_ctx)

        return self._generate(config, credentials, [], text.strip(), instance_id, log_ctx)

    # -- shared ------------------------------------------------------------

    def _fallback_text(self, config: AssistantConfig | None) -> str:
        if config is not None and config.fallback_response:
            return config.fallback_response
        return self._settings.fallback_response

    def _fatal(
        self,
        error: FatalAssistantError,
        config: AssistantConfig | None,
        instance_id: str | None,
        log_ctx: dict[str, str],
    ) -> AssistantResult:
        logger.warning(
            "assistant invocation aborted",
            extra={"extra_fields": {**log_ctx, "error": error.code}},
        )
        return AssistantResult(
            ok=False,
            instance_id=instance_id,
            fallback_text=self._fallback_text(config),
            error=error.code,
            fatal=True,
        )

    def _generate(
        self,
        config: AssistantConfig,
        credentials: AICredentials,
        history: list[HistoryEntry],
        user_turn: str,
        instance_id: str | None,
        log_ctx: dict[str, str],
    ) -> AssistantResult:
        settings = self._settings
        model = config.model or credentials.default_model or settings.default_model
        provider = self._provider_factory(credentials.api_key, model)
        chat = build_messages(config, history, user_turn, settings)

        try:
            reply, attempts = self._complete(provider, chat, model, config, log_ctx)
        except RetriesExhaustedError as e:
            logger.error(
                "assistant reply failed after retries",
                extra={
                    "extra_fields": {
                        **log_ctx,
                        "error": e.error.code,
                        "model": model,
                        "attempts": str(e.attempts),
                    }
                },
            )
            return AssistantResult(
                ok=False,
                model=model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                instance_id=instance_id,
                fallback_text=self._fallback_text(config),
                error=e.error.code,
                attempts=e.attempts,
            )

        text, audio = self._render_audio(reply, config, log_ctx)
        logger.info(
            "assistant reply generated",
            extra={
                "extra_fields": {
                    **log_ctx,
                    "model": model,
                    "attempts": str(attempts),
                    "reply_len": str(len(text)),
                    "audio_count": str(len(audio)),
                }
            },
        )
        return AssistantResult(
            ok=True,
            text=text,
            audio=audio,
            model=model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            instance_id=instance_id,
            fallback_text=self._fallback_text(config),
            attempts=attempts,
            response_delay_seconds=config.response_delay_seconds,
        )

    def _complete(
        self,
        provider: LLMProvider,
        chat: list[dict[str, str]],
        model: str,
        config: AssistantConfig,
        log_ctx: dict[str, str],
    ) -> tuple[str, int]:
        """Call the provider with timeout and exponential backoff.

        Returns (reply text, attempts used).

        Raises:
            RetriesExhaustedError: Wraps the last failure and the attempts used.
        """
        settings = self._settings
        last_error: LLMError = LLMError("no attempt made")
        empty_responses = 0
        attempt = 0

        for attempt in range(1, settings.llm_max_attempts + 1):
            try:
                response = provider.generate(
                    chat,
                    model=model,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                    timeout_seconds=settings.llm_timeout_seconds,
                )
            except LLMError as e:
                last_error = e
            else:
                content = (response.content or "").strip()
                if content:
                    return content, attempt
                last_error = EmptyResponseError("empty completion")
                empty_responses += 1
                if empty_responses > EMPTY_RESPONSE_RETRIES:
                    break

            if attempt < settings.llm_max_attempts:
                delay = settings.llm_retry_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "llm attempt failed, retrying",
                    extra={
                        "extra_fields": {
                            **log_ctx,
                            "attempt": str(attempt),
                            "error": last_error.code,
                            "delay_seconds": str(delay),
                        }
                    },
                )
                time.sleep(delay)

        raise RetriesExhaustedError(last_error, attempt) from last_error

    def _render_audio(
        self,
        reply: str,
        config: AssistantConfig,
        log_ctx: dict[str, str],
    ) -> tuple[str, tuple[OutboundAudio, ...]]:
        """Resolve audio markers. Failed syntheses fall back to text."""
        plan = plan_audio(reply, config.audio_library)
        if not plan.instructions:
            return plan.text, ()

        audio: list[OutboundAudio] = []
        spoken_fallback: list[str] = []
        for instruction in plan.instructions:
            if instruction.kind == "library" and instruction.clip is not None:
                audio.append(
                    OutboundAudio(url=instruction.clip.url, text=instruction.clip.name, source="library")
                )
                continue

            synthesized = None
            if config.can_synthesize and self._speech is not None:
                try:
                    synthesized = self._speech.synthesize(
                        instruction.text,
                        voice_id=config.eleven_labs_voice_id or "",
                        api_key=config.eleven_labs_api_key or "",
                        model=config.eleven_labs_model,
                        voice_settings=config.voice_settings,
                    )
                except SpeechError as e:
                    logger.warning(
                        "voice synthesis failed, sending text",
                        extra={"extra_fields": {**log_ctx, "error": str(e)}},
                    )
            if synthesized is None:
                spoken_fallback.append(instruction.text)
            else:
                audio.append(
                    OutboundAudio(url=synthesized.as_data_uri(), text=instruction.text, source="synthesized")
                )

        text = "\n\n".join(part for part in [plan.text, *spoken_fallback] if part)
        if not text and not audio:
            # only unknown library triggers: keep the raw reply
            text = reply
        return text, tuple(audio)
