from typing import Optional

import httpx

from isp_support.logging_config import get_logger
from isp_support.schemas.conversation import Invoice
from isp_support.services.billing_service import BillingService
from isp_support.services.result import Result

logger = get_logger("payment_service")

MP_API_BASE_URL = "https://api.mercadopago.com"

# MercadoPago's IPN tool sends this id when testing the endpoint.
IPN_TEST_PAYMENT_ID = "123456"
BAD_NOTIFICATION = "bad_notification"


class PaymentService:
    """MercadoPago in-store QR orders and payment lookups."""

    def __init__(
        self,
        access_token: Optional[str],
        user_id: Optional[str],
        external_pos_id: Optional[str],
        timeout: float = 15.0,
    ):
        self.access_token = access_token
        self.user_id = user_id
        self.external_pos_id = external_pos_id
        self.timeout = timeout

    async def create_invoice_qr(self, invoice: Invoice, client_name: str) -> Result[str]:
        """Create a QR order for the invoice. Returns the qr_data string."""
        if not (self.access_token and self.user_id and self.external_pos_id):
            return Result.failure("Credenciales de Mercado Pago incompletas", "not_configured")
        if invoice.amount <= 0:
            return Result.failure(f"Monto inválido para factura {invoice.id}", "invalid_amount")

        description = f"Factura {invoice.id}"
        payload = {
            "external_reference": invoice.id,
            "title": f"Pago de {client_name}",
            "description": f"Cobro por: {description}",
            "total_amount": invoice.amount,
            "items": [
                {
                    "title": description,
                    "unit_price": invoice.amount,
                    "quantity": 1,
                    "unit_measure": "unit",
                    "total_amount": invoice.amount,
                }
            ],
        }
        url = f"{MP_API_BASE_URL}/instore/orders/qr/seller/collectors/{self.user_id}/pos/{self.external_pos_id}/qrs"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.put(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error(f"MercadoPago request error: {e}")
            return Result.failure(str(e), "connection_error")

        if response.status_code not in (200, 201):
            logger.error(f"MercadoPago error {response.status_code}: {response.text[:200]}")
            return Result.failure(f"status {response.status_code}", "http_error")

        qr_data = response.json().get("qr_data")
        if not qr_data:
            return Result.failure("La respuesta de Mercado Pago no incluyó 'qr_data'", "invalid_response")
        logger.info("QR order created", extra={"context": {"invoice_id": invoice.id, "amount": invoice.amount}})
        return Result.success(qr_data)

    async def get_payment(self, payment_id: str) -> Result[dict]:
        if not self.access_token:
            return Result.failure("Credenciales de Mercado Pago incompletas", "not_configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{MP_API_BASE_URL}/v1/payments/{payment_id}",
                    headers={"Authorization": f"Bearer {self.access_token}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"MercadoPago payment lookup error: {e}")
            return Result.failure(str(e), "connection_error")
        if response.status_code != 200:
            logger.error(f"MercadoPago payment {payment_id} status {response.status_code}: {response.text[:200]}")
            return Result.failure(f"status {response.status_code}", "http_error")
        return Result.success(response.json())


async def reconcile_payment(
    payments: PaymentService,
    billing: BillingService,
    topic: Optional[str],
    payment_id: Optional[str],
) -> Result[str]:
    """Handle one IPN notification: approved payments are registered against their invoice.

    Success values are the acknowledgement text; ``BAD_NOTIFICATION`` marks
    notifications MercadoPago should not retry.
    """
    if topic == "payment" and payment_id == IPN_TEST_PAYMENT_ID:
        return Result.success("Test notification received successfully.")
    if topic != "payment":
        logger.info(f"IPN notification ignored (topic: {topic})")
        return Result.success("Notification ignored")
    if not payment_id:
        return Result.failure("Missing payment ID", BAD_NOTIFICATION)

    fetched = await payments.get_payment(payment_id)
    if not fetched.ok:
        return Result.failure(f"Could not fetch payment details: {fetched.error}", fetched.error_code)
    payment = fetched.value
    if payment.get("status") != "approved":
        logger.info(f"Payment {payment_id} not approved (status: {payment.get('status')})")
        return Result.success("Payment not approved")

    invoice_id = payment.get("external_reference")
    if not invoice_id:
        logger.error(f"Payment {payment_id} has no external_reference")
        return Result.failure("Missing external_reference", BAD_NOTIFICATION)

    registered = await billing.register_payment(str(invoice_id), payment.get("transaction_amount"), str(payment_id))
    if not registered.ok:
        logger.error(f"Registering payment {payment_id} for invoice {invoice_id} failed: {registered.error}")
        return Result.failure("Failed to register payment", registered.error_code)
    return Result.success("Payment registered successfully")
