"""Bounded prompt assembly for the chat completion call.

Every bound applies regardless of how large the stored data is:
system prompt, each history entry and the user turn are truncated, and
history is count-limited.
"""

from __future__ import annotations

from typing import Iterable

from zapflow.infra.settings import Settings
from zapflow.whatsapp.models import Message

from .assistant_config import AssistantConfig
from .message_store import HistoryEntry
from .voice import audio_prompt_instructions

DEFAULT_SYSTEM_PROMPT = "Você é um assistente útil."
WHATSAPP_INSTRUCTION = (
    "Você está respondendo mensagens do WhatsApp. "
    "Seja direto, útil e mantenha o contexto da conversa."
)
REFERENCE_FILES_PREFIX = "Arquivos de referência disponíveis:"


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def concat_batch(messages: Iterable[Message]) -> str:
    """Inbound bodies of a batch, one per line; outbound and blank ones skipped."""
    return "\n".join(
        m.body.strip() for m in messages if not m.from_me and m.body and m.body.strip()
    )


def build_system_prompt(config: AssistantConfig, settings: Settings) -> str:
    parts = [(config.prompt or "").strip() or DEFAULT_SYSTEM_PROMPT]
    if config.custom_files:
        parts.append(f"{REFERENCE_FILES_PREFIX} {', '.join(config.custom_files)}")
    parts.append(WHATSAPP_INSTRUCTION)
    audio = audio_prompt_instructions(config.can_synthesize, config.audio_library)
    if audio:
        parts.append(audio)
    return truncate("\n\n".join(parts), settings.system_prompt_chars)


def history_turns(history: list[HistoryEntry], settings: Settings) -> list[dict[str, str]]:
    """Last history_window entries as chat turns; blank entries dropped."""
    window = settings.history_window
    recent = history[-window:] if window > 0 else []
    turns = []
    for entry in recent:
        content = truncate(entry.content or "", settings.history_message_chars)
        if not content.strip():
            continue
        turns.append({"role": "assistant" if entry.from_me else "user", "content": content})
    return turns


def build_messages(
    config: AssistantConfig,
    history: list[HistoryEntry],
    user_turn: str,
    settings: Settings,
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": build_system_prompt(config, settings)},
        *history_turns(history, settings),
        {"role": "user", "content": truncate(user_turn, settings.user_turn_chars)},
    ]
