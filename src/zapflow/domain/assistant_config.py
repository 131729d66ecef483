"""Assistant, credential and instance lookups for a tenant.

These tables are owned by the admin UI; the pipeline only reads them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .voice import AudioClip

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TTS_MODEL = "eleven_multilingual_v2"
MAX_RESPONSE_DELAY_SECONDS = 60.0

_QUEUE_ASSISTANT_SQL = """
SELECT q.id, a.id, a.client_id, a.name, a.prompt, a.model,
       a.advanced_settings, a.fallback_response
FROM queues q
JOIN assistants a ON a.id = q.assistant_id
WHERE q.client_id = %s AND q.is_active = true AND a.is_active = true
ORDER BY (q.id = %s) DESC NULLS LAST, q.priority ASC, q.created_at ASC
LIMIT 1
"""

_ASSISTANT_SQL = """
SELECT NULL, a.id, a.client_id, a.name, a.prompt, a.model,
       a.advanced_settings, a.fallback_response
FROM assistants a
WHERE a.id = %s
"""

_AI_CREDENTIALS_SQL = """
SELECT openai_api_key, default_model
FROM client_ai_configs
WHERE client_id = %s
"""

_CONNECTED_INSTANCE_SQL = """
SELECT instance_id
FROM whatsapp_instances
WHERE client_id = %s AND status = 'connected'
ORDER BY (instance_id = %s) DESC NULLS LAST, created_at ASC
LIMIT 1
"""


def clamp(value: Any, low: float, high: float, default: float) -> float:
    """Clamp a numeric setting; missing or non-numeric values use default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _parse_settings(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _parse_library(raw: Any) -> tuple[AudioClip, ...]:
    if not isinstance(raw, list):
        return ()
    clips = []
    for item in raw:
        if isinstance(item, dict) and item.get("trigger") and item.get("url"):
            clips.append(
                AudioClip(
                    trigger=str(item["trigger"]),
                    name=str(item.get("name") or item["trigger"]),
                    url=str(item["url"]),
                )
            )
    return tuple(clips)


def _parse_file_names(raw: Any) -> tuple[str, ...]:
    """Names of the reference files attached to the assistant."""
    if not isinstance(raw, list):
        return ()
    names = []
    for item in raw:
        name = item.get("name") if isinstance(item, dict) else item
        if isinstance(name, str) and name.strip():
            names.append(name.strip())
    return tuple(names)


@dataclass(frozen=True)
class AssistantConfig:
    assistant_id: str
    client_id: str
    name: str
    prompt: str | None
    model: str | None
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    fallback_response: str | None = None
    queue_id: str | None = None
    voice_cloning_enabled: bool = False
    eleven_labs_voice_id: str | None = None
    eleven_labs_api_key: str | None = None
    eleven_labs_model: str = DEFAULT_TTS_MODEL
    voice_settings: dict | None = None
    audio_processing_enabled: bool = False
    audio_library: tuple[AudioClip, ...] = field(default_factory=tuple)
    custom_files: tuple[str, ...] = field(default_factory=tuple)
    response_delay_seconds: float = 0.0

    @property
    def can_synthesize(self) -> bool:
        return bool(
            self.voice_cloning_enabled
            and self.eleven_labs_voice_id
            and self.eleven_labs_api_key
        )

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> "AssistantConfig":
        """Build from (queue_id, id, client_id, name, prompt, model, advanced_settings, fallback)."""
        queue_id, assistant_id, client_id, name, prompt, model, advanced, fallback = row
        settings = _parse_settings(advanced)
        return cls(
            assistant_id=str(assistant_id),
            client_id=str(client_id),
            name=name or "",
            prompt=prompt,
            model=model or None,
            temperature=clamp(settings.get("temperature"), 0.0, 2.0, DEFAULT_TEMPERATURE),
            max_tokens=int(clamp(settings.get("max_tokens"), 100, 4000, DEFAULT_MAX_TOKENS)),
            fallback_response=fallback or None,
            queue_id=str(queue_id) if queue_id is not None else None,
            voice_cloning_enabled=bool(settings.get("voice_cloning_enabled")),
            eleven_labs_voice_id=settings.get("eleven_labs_voice_id") or None,
            eleven_labs_api_key=settings.get("eleven_labs_api_key") or None,
            eleven_labs_model=settings.get("eleven_labs_model") or DEFAULT_TTS_MODEL,
            voice_settings=settings.get("voice_settings") or None,
            audio_processing_enabled=bool(settings.get("audio_processing_enabled")),
            audio_library=_parse_library(settings.get("audio_library")),
            custom_files=_parse_file_names(settings.get("custom_files")),
            response_delay_seconds=clamp(
                settings.get("response_delay_seconds"), 0.0, MAX_RESPONSE_DELAY_SECONDS, 0.0
            ),
        )


@dataclass(frozen=True)
class AICredentials:
    api_key: str
    default_model: str | None = None


def find_queue_assistant(
    cur: Any,
    client_id: str,
    preferred_queue_id: str | None = None,
) -> AssistantConfig | None:
    """Active queue with an active assistant; the ticket's own queue wins."""
    cur.execute(_QUEUE_ASSISTANT_SQL, (client_id, preferred_queue_id))
    row = cur.fetchone()
    return AssistantConfig.from_row(row) if row is not None else None


def get_assistant(cur: Any, assistant_id: str) -> AssistantConfig | None:
    cur.execute(_ASSISTANT_SQL, (assistant_id,))
    row = cur.fetchone()
    return AssistantConfig.from_row(row) if row is not None else None


def find_ai_credentials(cur: Any, client_id: str) -> AICredentials | None:
    cur.execute(_AI_CREDENTIALS_SQL, (client_id,))
    row = cur.fetchone()
    if row is None or not row[0]:
        return None
    return AICredentials(api_key=row[0], default_model=row[1] or None)


def find_connected_instance(
    cur: Any,
    client_id: str,
    preferred_instance_id: str | None = None,
) -> str | None:
    cur.execute(_CONNECTED_INSTANCE_SQL, (client_id, preferred_instance_id))
    row = cur.fetchone()
    return str(row[0]) if row is not None else None
