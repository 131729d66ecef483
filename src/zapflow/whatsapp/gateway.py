"""Outbound messaging through the WhatsApp gateway (CodeChat v2 API).

Security: NEVER log recipients or text. Only log hashes and lengths.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

from zapflow.observability.logging import get_logger
from zapflow.observability.redaction import hash_identifier, safe_log_context

logger = get_logger(__name__)

SEND_DELAY_MS = 1200

# Suffixes the gateway may put on a chat id; groups keep theirs.
_PERSONAL_SUFFIXES = ("@s.whatsapp.net", "@c.us")
_GROUP_SUFFIX = "@g.us"


class SendError(Exception):
    """Gateway send failed.

    Attributes:
        status_code: HTTP status from the gateway, None for network errors.
        retryable: False for 4xx other than 429 and for missing config.
    """

    def __init__(self, reason: str, *, status_code: int | None = None, retryable: bool = True):
        super().__init__(reason)
        self.status_code = status_code
        self.retryable = retryable


@dataclass(frozen=True)
class MediaDescriptor:
    mediatype: str  # image | video | audio | document
    url: str
    caption: str | None = None
    file_name: str | None = None


def format_recipient(chat_id: str, suffix: str = "") -> str:
    """Gateway recipient for a chat id; group ids pass through unchanged."""
    if chat_id.endswith(_GROUP_SUFFIX):
        return chat_id
    number = chat_id
    for personal in _PERSONAL_SUFFIXES:
        if number.endswith(personal):
            number = number[: -len(personal)]
            break
    return f"{number}{suffix}" if suffix else number


def _extract_message_id(body: dict[str, Any]) -> str | None:
    key = body.get("key")
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    for field in ("keyId", "messageId", "id"):
        if body.get(field):
            return str(body[field])
    return None


def _sanitize_error(exc: Exception) -> str:
    """PII-free description of a transport failure."""
    if isinstance(exc, urllib.error.HTTPError):
        return f"HTTPError {exc.code}"
    if isinstance(exc, urllib.error.URLError):
        return f"URLError: {type(exc.reason).__name__}"
    if isinstance(exc, TimeoutError):
        return "TimeoutError"
    return type(exc).__name__


class GatewayClient:
    """Thin client for the gateway send endpoints. One attempt per call."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        recipient_suffix: str = "",
        timeout: float = 15.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._recipient_suffix = recipient_suffix
        self._timeout = timeout

    def _do_request(self, url: str, data: bytes, headers: dict[str, str]) -> dict[str, Any]:
        req = urllib.request.Request(url, data=data, headers=headers, method="POST")
        with urllib.request.urlopen(req, timeout=self._timeout) as resp:
            raw = resp.read().decode()
        parsed = json.loads(raw) if raw else {}
        return parsed if isinstance(parsed, dict) else {}

    def _post(self, instance_id: str, path: str, chat_id: str, body: dict[str, Any]) -> str | None:
        if not self._base_url or not self._api_key:
            raise SendError("gateway not configured", retryable=False)

        url = f"{self._base_url}/api/v2/instance/{instance_id}/send/{path}"
        headers = {
            "Content-Type": "application/json",
            "apikey": self._api_key,
        }
        data = json.dumps(body).encode("utf-8")
        log_ctx = safe_log_context(
            instance_id=instance_id,
            kind=path,
            to_hash=hash_identifier(chat_id),
        )

        try:
            response = self._do_request(url, data, headers)
        except urllib.error.HTTPError as e:
            retryable = e.code == 429 or e.code >= 500
            logger.warning(
                "gateway send rejected",
                extra={"extra_fields": {**log_ctx, "status_code": str(e.code)}},
            )
            raise SendError(_sanitize_error(e), status_code=e.code, retryable=retryable) from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            logger.warning(
                "gateway send failed",
                extra={"extra_fields": {**log_ctx, "error": _sanitize_error(e)}},
            )
            raise SendError(_sanitize_error(e)) from e
        except ValueError:
            # 2xx with a body that is not JSON: the message went out
            logger.info("gateway response not json", extra={"extra_fields": log_ctx})
            return None

        logger.info("gateway send ok", extra={"extra_fields": log_ctx})
        return _extract_message_id(response)

    def send_text(self, instance_id: str, chat_id: str, text: str) -> str | None:
        """Send a text message. Returns the gateway message id when reported.

        Raises:
            SendError: On HTTP, network or configuration failure.
        """
        body = {
            "recipient": format_recipient(chat_id, self._recipient_suffix),
            "textMessage": {"text": text},
            "options": {"delay": SEND_DELAY_MS, "presence": "composing"},
        }
        return self._post(instance_id, "text", chat_id, body)

    def send_media(self, instance_id: str, chat_id: str, media: MediaDescriptor) -> str | None:
        body = {
            "recipient": format_recipient(chat_id, self._recipient_suffix),
            "mediaMessage": {
                "mediatype": media.mediatype,
                "url": media.url,
                "caption": media.caption,
                "fileName": media.file_name,
            },
            "options": {"delay": SEND_DELAY_MS, "presence": "composing"},
        }
        return self._post(instance_id, "media", chat_id, body)

    def send_audio(self, instance_id: str, chat_id: str, audio_url: str) -> str | None:
        """Send a voice note. audio_url may be an https URL or a data: URI."""
        body = {
            "recipient": format_recipient(chat_id, self._recipient_suffix),
            "audioMessage": {"url": audio_url},
            "options": {"delay": SEND_DELAY_MS, "presence": "recording"},
        }
        return self._post(instance_id, "audio", chat_id, body)
