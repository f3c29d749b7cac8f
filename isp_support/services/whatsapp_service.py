import re
from typing import Optional

import httpx

from isp_support.logging_config import get_logger
from isp_support.services.errors import TransportError
from isp_support.services.transport import ChatMetadata, MediaPayload, Transport, TransportMessage

logger = get_logger("whatsapp_service")


class WhatsAppGateway(Transport):
    """HTTP client for the WhatsApp Web gateway process."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, chat_id: str = "", json: Optional[dict] = None) -> dict:
        """Make request to the gateway API. Raises TransportError on any failure."""
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, json=json, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"Gateway request error: {e}")
            raise TransportError(chat_id, str(e)) from e

        if response.status_code >= 400:
            logger.error(f"Gateway error {response.status_code}: {response.text[:200]}")
            raise TransportError(chat_id, f"status {response.status_code}")

        data = response.json() if response.content else {}
        if isinstance(data, dict) and data.get("ok") is False:
            raise TransportError(chat_id, data.get("error") or "gateway refused message")
        return data

    async def send_text(self, chat_id: str, text: str) -> Optional[str]:
        """Send text message to a chat."""
        data = await self._request("POST", "/messages/text", chat_id, json={"chatId": chat_id, "text": text})
        return data.get("id")

    async def send_media(self, chat_id: str, media: MediaPayload, caption: Optional[str] = None) -> Optional[str]:
        """Send image/audio/document or a QR payload rendered by the gateway."""
        payload = {
            "chatId": chat_id,
            "media": {
                "kind": media.kind,
                "data": media.data,
                "mimetype": media.mimetype,
                "filename": media.filename,
            },
        }
        if caption:
            payload["caption"] = caption
        data = await self._request("POST", "/messages/media", chat_id, json=payload)
        return data.get("id")

    async def resolve_quoted(self, message_id: str) -> Optional[TransportMessage]:
        try:
            data = await self._request("GET", f"/messages/{message_id}")
        except TransportError as e:
            logger.warning(f"Quoted message {message_id} not resolved: {e}")
            return None
        return TransportMessage(
            id=str(data.get("id") or message_id),
            chat_id=data.get("chatId", ""),
            body=data.get("body") or "",
            sender_id=data.get("senderId"),
        )

    async def get_chat_metadata(self, chat_id: str) -> Optional[ChatMetadata]:
        try:
            data = await self._request("GET", f"/chats/{chat_id}", chat_id)
        except TransportError as e:
            logger.warning(f"Chat metadata unavailable for {chat_id}: {e}")
            return None
        return ChatMetadata(chat_id=chat_id, name=data.get("name"), is_group=bool(data.get("isGroup")))

    async def download_media(self, media_ref: str) -> tuple[bytes, Optional[str]]:
        url = f"{self.base_url}/media/{media_ref}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            raise TransportError(media_ref, str(e)) from e
        if response.status_code != 200:
            raise TransportError(media_ref, f"media download status {response.status_code}")
        return response.content, response.headers.get("content-type")


def format_ticket_notification(
    ticket_id: str,
    client_name: Optional[str],
    client_id: str,
    message: str,
    sentiment: str,
) -> str:
    """Ticket notification posted to the triage channel."""
    name = client_name or "Cliente sin identificar"
    phone = client_id.split("@")[0]

    sentiment_labels = {
        "enojado": "😡 Enojado",
        "frustrado": "😣 Frustrado",
        "contento": "🙂 Contento",
        "neutro": "😐 Neutro",
    }
    sentiment_label = sentiment_labels.get(sentiment, sentiment)

    return f"""🔔 *Nuevo ticket #{ticket_id}*

*Cliente:* {name}
*Teléfono:* {phone}
*Ánimo:* {sentiment_label}

*Mensaje:*
{message}

_Respondé a este mensaje para tomar el caso._"""


def format_case_brief(ticket_id: str, client_name: Optional[str], client_id: str, message: str) -> str:
    """Case brief sent to the relay group once an agent claims the ticket."""
    name = client_name or "Cliente sin identificar"
    return f"""📋 *Caso #{ticket_id}*

*Cliente:* {name}
*Teléfono:* {client_id.split("@")[0]}

*Consulta inicial:*
{message}

Todo lo que escribas acá se reenvía al cliente.
Comandos: /fin para cerrar, /agendar <fecha> para proponer una visita."""


AUTOMATIC_MESSAGE_HEADER = "*MENSAJE AUTOMÁTICO*"


def billing_push_chat_id(number: str) -> str:
    """Local Argentine mobile number from the billing system -> WhatsApp chat id."""
    digits = re.sub(r"\D", "", number or "")
    return f"549{digits}@c.us"


def format_automatic_message(text: str) -> str:
    # Billing templates leave unresolved {placeholders} braces behind.
    body = re.sub(r"[{}]", "", text)
    return f"{AUTOMATIC_MESSAGE_HEADER}\n\n{body}"
