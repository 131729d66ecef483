"""Client for the external speech functions (text-to-speech, speech-to-text).

Both functions are black boxes reached over HTTP. Voice settings and
credentials come from the assistant's advanced settings.
"""

from dataclasses import dataclass
from typing import Any

import requests

from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_TTS_MODEL = "eleven_multilingual_v2"


class SpeechError(Exception):
    """Speech function failed or is not configured."""

    pass


@dataclass(frozen=True)
class SynthesizedAudio:
    audio_base64: str
    mime_type: str = "audio/mpeg"

    def as_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.audio_base64}"


class SpeechClient:
    def __init__(self, base_url: str, *, timeout: float = 30.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._base_url)

    def _call(self, function: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self.enabled:
            raise SpeechError("speech functions not configured")
        try:
            response = requests.post(
                f"{self._base_url}/{function}",
                json=body,
                timeout=self._timeout,
            )
            response.raise_for_status()
            result = response.json()
        except requests.RequestException as e:
            raise SpeechError(f"{function} request failed: {type(e).__name__}") from e
        except ValueError as e:
            raise SpeechError(f"{function} returned invalid json") from e

        if not isinstance(result, dict) or result.get("error"):
            logger.warning(
                "speech function reported error",
                extra={"extra_fields": safe_log_context(function=function)},
            )
            raise SpeechError(f"{function} reported an error")
        return result

    def synthesize(
        self,
        text: str,
        *,
        voice_id: str,
        api_key: str,
        model: str = DEFAULT_TTS_MODEL,
        voice_settings: dict | None = None,
    ) -> SynthesizedAudio:
        """Text-to-speech. Raises SpeechError on any failure."""
        result = self._call(
            "text-to-speech",
            {
                "text": text,
                "voiceId": voice_id,
                "apiKey": api_key,
                "model": model,
                "voiceSettings": voice_settings,
            },
        )
        audio = result.get("audioBase64")
        if not result.get("success") or not audio:
            raise SpeechError("text-to-speech returned no audio")
        return SynthesizedAudio(audio_base64=audio)

    def transcribe(self, audio_base64: str, *, openai_api_key: str) -> str:
        """Speech-to-text. Raises SpeechError on any failure."""
        result = self._call(
            "speech-to-text",
            {"audio": audio_base64, "openaiApiKey": openai_api_key},
        )
        text = (result.get("text") or "").strip()
        if not text:
            raise SpeechError("speech-to-text returned no text")
        return text
