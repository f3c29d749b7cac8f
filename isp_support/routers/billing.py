from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request

from isp_support.config import settings
from isp_support.logging_config import get_logger
from isp_support.services.errors import TransportError
from isp_support.services.whatsapp_service import billing_push_chat_id, format_automatic_message

logger = get_logger("billing_push")

router = APIRouter(tags=["billing"])


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    parts = (authorization or "").split(" ")
    return parts[1] if len(parts) > 1 and parts[1] else None


@router.get("/send-message")
async def send_message(
    request: Request,
    destinatario: Optional[str] = Query(default=None),
    mensaje: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    """Push a notice from the billing system (due dates, cut-offs) to a client's WhatsApp."""
    token = _bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Token no proporcionado")
    if token != settings.billing_push_token:
        logger.warning("Billing push rejected: invalid token")
        raise HTTPException(status_code=403, detail="Token inválido")
    if not destinatario or not mensaje:
        raise HTTPException(status_code=400, detail='Faltan los parámetros "destinatario" o "mensaje"')

    chat_id = billing_push_chat_id(destinatario)
    transport = request.app.state.runtime.transport
    try:
        await transport.send_text(chat_id, format_automatic_message(mensaje))
    except TransportError as e:
        logger.error(f"Billing push to {chat_id} failed: {e}")
        raise HTTPException(status_code=500, detail=f"El bot no pudo enviar el mensaje: {e.message}")

    logger.info("Billing push delivered", extra={"context": {"chat_id": chat_id}})
    return {"status": "success", "message": "Mensaje enviado correctamente"}
