from typing import Optional

from isp_support.logging_config import get_logger
from isp_support.schemas.session import SessionRecord
from isp_support.schemas.webhook import InboundEvent
from isp_support.services.errors import TransportError
from isp_support.services.session_service import SessionLifecycle
from isp_support.services.transport import MediaPayload, Transport

logger = get_logger("relay_service")


def media_from_event(event: InboundEvent) -> Optional[MediaPayload]:
    if not event.has_media:
        return None
    kind = (event.media_type or "document").split("/")[0]
    if kind == "application":
        kind = "document"
    return MediaPayload(kind=kind, data=event.media_ref, mimetype=event.media_type)


class Relay:
    """Forwards messages between a client chat and its assigned agent group."""

    def __init__(self, transport: Transport, lifecycle: SessionLifecycle):
        self.transport = transport
        self.lifecycle = lifecycle

    async def _forward(self, chat_id: str, text: str, media: Optional[MediaPayload]) -> bool:
        try:
            if media is not None:
                await self.transport.send_media(chat_id, media, caption=text or None)
            else:
                await self.transport.send_text(chat_id, text)
        except TransportError as e:
            logger.error(f"Relay delivery failed: {e}", extra={"context": {"chat_id": chat_id}})
            return False
        return True

    async def relay_to_agent(self, record: SessionRecord, event: InboundEvent) -> bool:
        name = record.client_name or event.sender_name or record.client_id.split("@")[0]
        text = f"*{name}:* {event.text}" if event.text else f"*{name}:*"
        delivered = await self._forward(record.assigned_group_id, text, media_from_event(event))
        if delivered:
            await self.lifecycle.reset_timer(record)
        return delivered

    async def relay_to_client(self, record: SessionRecord, event: InboundEvent) -> bool:
        delivered = await self._forward(record.client_id, event.text, media_from_event(event))
        if delivered:
            await self.lifecycle.reset_timer(record)
        return delivered
