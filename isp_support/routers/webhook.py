from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse

from isp_support.config import settings
from isp_support.logging_config import get_logger
from isp_support.schemas.webhook import InboundEvent, WebhookResponse
from isp_support.services.payment_service import BAD_NOTIFICATION, reconcile_payment

logger = get_logger("webhook")

router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.post("/inbound", response_model=WebhookResponse)
async def handle_inbound(
    event: InboundEvent,
    request: Request,
    x_webhook_secret: str | None = Header(default=None),
):
    """Inbound message from the WhatsApp gateway."""
    if settings.webhook_secret and (x_webhook_secret or "").strip() != settings.webhook_secret:
        logger.warning("Webhook rejected: bad secret", extra={"context": {"chat_id": event.chat_id}})
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    runtime = request.app.state.runtime
    route = await runtime.dispatcher.dispatch(event)
    logger.info(
        "Inbound processed",
        extra={"context": {"chat_id": event.chat_id, "is_group": event.is_group, "route": route}},
    )
    return WebhookResponse(success=route != "error", message="processed", route=route)


@router.api_route("/mercadopago", methods=["GET", "POST"], response_class=PlainTextResponse)
async def handle_mercadopago_ipn(request: Request):
    """MercadoPago IPN: ``?topic=payment&id=<payment id>`` (newer senders use ``type`` and ``data.id``)."""
    params = request.query_params
    topic = params.get("topic") or params.get("type")
    payment_id = params.get("id") or params.get("data.id")
    logger.info("IPN received", extra={"context": {"topic": topic, "payment_id": payment_id}})

    runtime = request.app.state.runtime
    result = await reconcile_payment(runtime.payments, runtime.billing, topic, payment_id)
    if result.ok:
        return PlainTextResponse(result.value)
    status_code = 400 if result.error_code == BAD_NOTIFICATION else 500
    return PlainTextResponse(result.error, status_code=status_code)
