from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from isp_support.logging_config import get_logger
from isp_support.services.errors import TransportError

logger = get_logger("transport")


@dataclass
class MediaPayload:
    kind: str  # image, audio, document, video, qr
    data: str  # gateway media reference, URL or raw QR payload
    mimetype: Optional[str] = None
    filename: Optional[str] = None


@dataclass
class TransportMessage:
    id: str
    chat_id: str
    body: str = ""
    sender_id: Optional[str] = None


@dataclass
class ChatMetadata:
    chat_id: str
    name: Optional[str] = None
    is_group: bool = False


class Transport(ABC):
    """Chat transport the routing engine talks through."""

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> Optional[str]:
        """Send text, return the transport message id."""

    @abstractmethod
    async def send_media(self, chat_id: str, media: MediaPayload, caption: Optional[str] = None) -> Optional[str]:
        """Send media with optional caption, return the transport message id."""

    @abstractmethod
    async def resolve_quoted(self, message_id: str) -> Optional[TransportMessage]:
        """Fetch a previously sent/received message by id."""

    @abstractmethod
    async def get_chat_metadata(self, chat_id: str) -> Optional[ChatMetadata]:
        """Contact or group metadata."""

    @abstractmethod
    async def download_media(self, media_ref: str) -> tuple[bytes, Optional[str]]:
        """Return (content, mimetype) for an inbound media reference."""


async def send_best_effort(transport: Transport, chat_id: str, text: str) -> Optional[str]:
    """send_text that logs delivery failures instead of raising."""
    try:
        return await transport.send_text(chat_id, text)
    except TransportError as e:
        logger.warning(f"Delivery failed: {e}", extra={"context": {"chat_id": chat_id}})
        return None
