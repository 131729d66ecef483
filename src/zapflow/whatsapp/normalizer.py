"""Gateway webhook normalizer: heterogeneous event shapes -> Message.

The gateway has shipped several payload layouts over time. Content is
extracted by one parser per layout, tried in priority order:

1. MediaEnvelope  - ``contentType`` + ``content`` object (CodeChat v2)
2. LegacyText     - ``message.conversation`` / ``message.extendedTextMessage.text``
3. FlatText       - ``content.text``
4. TypedMedia     - ``message.audioMessage``, ``message.imageMessage``, ...

The first parser that returns a value wins.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Union

from zapflow.infra.time import from_epoch, parse_iso, utc_now

from .models import MediaInfo, Message, MessageType

MESSAGE_EVENTS = frozenset({"messages.upsert", "messagesUpsert", "MESSAGES_UPSERT"})

_TEXT_CONTENT_TYPES = frozenset({"text", "conversation", "extendedText"})

# media kind -> (placeholder, messageType)
_MEDIA_KINDS: dict[str, tuple[str, MessageType]] = {
    "audio": ("🎵 Áudio", "audio"),
    "ptt": ("🎵 Áudio", "ptt"),
    "image": ("📷 Imagem", "image"),
    "video": ("📹 Vídeo", "video"),
    "document": ("📄 Documento", "document"),
    "sticker": ("🎨 Figurinha", "image"),
}

_TRUE_STRINGS = frozenset({"true", "1", "yes", "y", "t"})


class InvalidPayloadError(Exception):
    """Raised when a webhook payload has an unusable shape."""

    pass


class UnrecognizedContentError(InvalidPayloadError):
    """Raised when no content parser matches the message data."""

    pass


@dataclass(frozen=True)
class MediaEnvelope:
    kind: str
    media: MediaInfo
    caption: str | None = None


@dataclass(frozen=True)
class LegacyText:
    text: str


@dataclass(frozen=True)
class FlatText:
    text: str


@dataclass(frozen=True)
class TypedMedia:
    kind: str
    media: MediaInfo
    caption: str | None = None


Content = Union[MediaEnvelope, LegacyText, FlatText, TypedMedia]


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(*values: Any) -> Any:
    """First value that is neither None nor an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _media_kind(content_type: str) -> str:
    kind = content_type[:-len("Message")] if content_type.endswith("Message") else content_type
    return kind.lower()


def _int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dict):
        # protobuf Long serialized as {"low": .., "high": .., "unsigned": ..}
        value = value.get("low")
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _media_info(raw: dict[str, Any]) -> MediaInfo:
    return MediaInfo(
        url=raw.get("url"),
        media_key=raw.get("mediaKey"),
        mime_type=raw.get("mimetype") or raw.get("mimeType"),
        duration_seconds=_int_or_none(raw.get("seconds")),
        direct_path=raw.get("directPath"),
        file_name=raw.get("fileName"),
        file_length=_int_or_none(raw.get("fileLength")),
        file_sha256=raw.get("fileSha256"),
    )


# -- parsers ---------------------------------------------------------------


def parse_media_envelope(data: dict[str, Any]) -> MediaEnvelope | None:
    content_type = data.get("contentType")
    content = data.get("content")
    if not isinstance(content_type, str) or not isinstance(content, dict):
        return None
    kind = _media_kind(content_type)
    if kind not in _MEDIA_KINDS:
        return None
    if kind == "audio" and content.get("ptt") is True:
        kind = "ptt"
    return MediaEnvelope(kind=kind, media=_media_info(content), caption=content.get("caption"))


def parse_legacy_text(data: dict[str, Any]) -> LegacyText | None:
    message = _as_dict(data.get("message"))
    text = _first(
        message.get("conversation"),
        _as_dict(message.get("extendedTextMessage")).get("text"),
    )
    if not isinstance(text, str):
        return None
    return LegacyText(text=text)


def parse_flat_text(data: dict[str, Any]) -> FlatText | None:
    content = data.get("content")
    if isinstance(content, dict) and isinstance(content.get("text"), str):
        return FlatText(text=content["text"])
    content_type = data.get("contentType")
    if isinstance(content, str) and isinstance(content_type, str):
        if _media_kind(content_type) in _TEXT_CONTENT_TYPES:
            return FlatText(text=content)
    return None


def parse_typed_media(data: dict[str, Any]) -> TypedMedia | None:
    message = _as_dict(data.get("message"))
    for kind in ("audio", "image", "video", "document", "sticker"):
        raw = message.get(f"{kind}Message")
        if isinstance(raw, dict):
            if kind == "audio" and raw.get("ptt") is True:
                kind = "ptt"
            return TypedMedia(kind=kind, media=_media_info(raw), caption=raw.get("caption"))
    return None


PARSERS: tuple[Callable[[dict[str, Any]], Content | None], ...] = (
    parse_media_envelope,
    parse_legacy_text,
    parse_flat_text,
    parse_typed_media,
)


def extract_content(data: dict[str, Any]) -> Content:
    """Run the parsers in priority order.

    Raises:
        UnrecognizedContentError: If no parser matches.
    """
    for parser in PARSERS:
        content = parser(data)
        if content is not None:
            return content
    raise UnrecognizedContentError("no content parser matched")


def render_content(content: Content) -> tuple[str, MessageType, MediaInfo | None]:
    """Body, messageType and media bundle for a parsed content variant."""
    if isinstance(content, (LegacyText, FlatText)):
        return content.text, "text", None

    placeholder, message_type = _MEDIA_KINDS[content.kind]
    if content.kind == "document":
        placeholder = f"📄 {content.media.file_name or 'Documento'}"
    body = f"{placeholder}: {content.caption}" if content.caption else placeholder
    return body, message_type, content.media


# -- field resolution ------------------------------------------------------


def is_message_event(payload: dict[str, Any]) -> bool:
    return payload.get("event") in MESSAGE_EVENTS


def coerce_from_me(value: Any) -> bool:
    """Gateway builds send fromMe as bool, "true"/"false" or 1/0."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def resolve_instance_id(payload: dict[str, Any]) -> str | None:
    """Instance object -> data field -> top-level field -> instance-in-data."""
    data = _as_dict(payload.get("data"))
    instance = payload.get("instance")
    explicit = instance if isinstance(instance, str) else _as_dict(instance).get("instanceId")
    found = _first(
        explicit,
        data.get("instanceInstanceId"),
        payload.get("instanceId"),
        _as_dict(data.get("instance")).get("instanceId"),
    )
    return str(found) if found is not None else None


def _resolve_timestamp(data: dict[str, Any], now: datetime) -> datetime:
    raw = data.get("messageTimestamp")
    if isinstance(raw, str) and raw.isdigit():
        raw = int(raw)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool) and raw > 0:
        try:
            return from_epoch(raw)
        except (OverflowError, OSError, ValueError):
            # out of datetime range: treat as absent
            pass
    created_at = data.get("createdAt")
    if isinstance(created_at, str):
        parsed = parse_iso(created_at)
        if parsed is not None:
            return parsed
    return now


def normalize_message(data: dict[str, Any], instance_id: str, now: datetime) -> Message:
    """Map one message object to a Message.

    Raises:
        InvalidPayloadError: If the message id or chat id is missing.
    """
    key = _as_dict(data.get("key"))

    message_id = _first(data.get("keyId"), data.get("messageId"), key.get("id"))
    if not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid message id")

    chat_id = _first(data.get("keyRemoteJid"), data.get("remoteJid"), key.get("remoteJid"))
    if not isinstance(chat_id, str):
        raise InvalidPayloadError("missing chat id")

    from_me_raw = data.get("keyFromMe")
    if from_me_raw is None:
        from_me_raw = data.get("fromMe")
    if from_me_raw is None:
        from_me_raw = key.get("fromMe")

    try:
        body, message_type, media = render_content(extract_content(data))
    except UnrecognizedContentError:
        body, message_type, media = "", "text", None

    sender_name = _first(data.get("pushName"), data.get("verifiedBizName"))

    return Message(
        message_id=message_id,
        chat_id=chat_id,
        instance_id=instance_id,
        from_me=coerce_from_me(from_me_raw),
        body=body,
        message_type=message_type,
        timestamp=_resolve_timestamp(data, now),
        sender_name=sender_name if isinstance(sender_name, str) else None,
        media=media,
    )


def normalize(payload: dict[str, Any], now: datetime | None = None) -> list[Message]:
    """Normalize a message event. ``data`` may be one object or a list.

    Raises:
        InvalidPayloadError: If data is missing or the instance cannot be resolved.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("payload must be an object")

    data = payload.get("data")
    if isinstance(data, dict):
        items = [data]
    elif isinstance(data, list) and data and all(isinstance(item, dict) for item in data):
        items = data
    else:
        raise InvalidPayloadError("missing data")

    now = now or utc_now()
    messages = []
    for item in items:
        # instance may live inside each item when data is a list
        instance_id = resolve_instance_id({**payload, "data": item})
        if not instance_id:
            raise InvalidPayloadError("instance id not resolvable")
        messages.append(normalize_message(item, instance_id, now))
    return messages


def with_tenant(message: Message, client_id: str) -> Message:
    return replace(message, client_id=client_id)
