"""WhatsApp message models.

`Message` carries PII (chat_id, body). It lives in memory and in the
database; never log it and never put it in a task payload.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

MessageType = Literal["text", "audio", "ptt", "image", "video", "document"]


@dataclass(frozen=True)
class MediaInfo:
    """Media reference fields as sent by the gateway."""

    url: str | None = None
    media_key: str | None = None
    mime_type: str | None = None
    duration_seconds: int | None = None
    direct_path: str | None = None
    file_name: str | None = None
    file_length: int | None = None
    file_sha256: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass(frozen=True)
class Message:
    """Canonical inbound or outbound WhatsApp message."""

    message_id: str
    chat_id: str
    instance_id: str
    from_me: bool
    body: str
    message_type: MessageType
    timestamp: datetime
    sender_name: str | None = None
    media: MediaInfo | None = None
    client_id: str | None = None

    @property
    def customer_phone(self) -> str:
        return self.chat_id.split("@", 1)[0]
