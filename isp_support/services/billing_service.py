"""Mikrowisp billing API client: client lookup, invoices, payments and emitter monitoring."""

import asyncio
import re
from datetime import datetime
from typing import Optional

import httpx

from isp_support.logging_config import get_logger
from isp_support.schemas.conversation import ClientProfile, Invoice, ServiceInfo
from isp_support.services.result import NOT_FOUND, Result

logger = get_logger("billing_service")

DNI_PATTERN = re.compile(r"^\d{7,8}$")
MOBILE_PATTERN = re.compile(r"^\d{10}$")
PENDING_INVOICE_STATES = ("no pagado", "vencido")


def normalize_identifier(text: str) -> str:
    """Strip dots, dashes and spaces a client may type around a DNI or phone."""
    return re.sub(r"[\s.\-()+]", "", text or "")


def identifier_kind(text: str) -> Optional[str]:
    """'dni', 'mobile' or None."""
    value = normalize_identifier(text)
    if DNI_PATTERN.match(value):
        return "dni"
    if MOBILE_PATTERN.match(value):
        return "mobile"
    return None


def mobile_from_chat_id(chat_id: str) -> str:
    """Last 10 digits of a WhatsApp id, the way Mikrowisp stores mobiles."""
    digits = re.sub(r"\D", "", chat_id.split("@")[0])
    return digits[-10:]


def _parse_date(value: Optional[str]) -> datetime:
    for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value or "", fmt)
        except ValueError:
            continue
    return datetime.min


def _to_amount(value) -> float:
    text = str(value or "").replace("$", "").strip()
    if "," in text:
        # 1.234,50 style
        text = text.replace(".", "").replace(",", ".")
    try:
        return float(text)
    except ValueError:
        return 0.0


class BillingService:
    def __init__(
        self,
        server_ip: Optional[str],
        api_token: Optional[str],
        emitter_devices: Optional[dict[str, int]] = None,
        timeout: float = 15.0,
        payment_gateway: Optional[str] = None,
    ):
        self.server_ip = server_ip
        self.api_token = api_token
        self.emitter_devices = emitter_devices or {}
        self.payment_gateway = payment_gateway
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.server_ip and self.api_token)

    async def _post(self, endpoint: str, body: dict) -> Result[dict]:
        if not self.configured:
            return Result.failure("Configuración de MikroWISP incompleta", "not_configured")
        url = f"https://{self.server_ip}/api/v1/{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json={"token": self.api_token, **body})
        except httpx.HTTPError as e:
            logger.error(f"Mikrowisp {endpoint} request error: {e}")
            return Result.failure(str(e), "connection_error")
        if response.status_code != 200:
            logger.error(f"Mikrowisp {endpoint} status {response.status_code}")
            return Result.failure(f"status {response.status_code}", "http_error")
        data = response.json()
        if data.get("estado") != "exito":
            return Result.failure(data.get("mensaje") or "respuesta no exitosa", NOT_FOUND)
        return Result.success(data)

    async def get_client_details(self, identifier: str) -> Result[ClientProfile]:
        """Look up a client by DNI (7-8 digits) or mobile (10 digits)."""
        value = normalize_identifier(identifier)
        kind = identifier_kind(value)
        if kind is None:
            return Result.failure(f"El identificador '{identifier}' no es válido", "invalid_identifier")

        result = await self._post("GetClientsDetails", {"cedula": value} if kind == "dni" else {"movil": value})
        if not result.ok:
            return result
        rows = result.value.get("datos") or []
        if not rows:
            return Result.failure("No se encontraron datos para el identificador", NOT_FOUND)

        raw = rows[0]
        services = await asyncio.gather(*(self._service_info(s) for s in raw.get("servicios") or []))
        profile = ClientProfile(
            id=str(raw.get("id")),
            name=raw.get("nombre") or "",
            dni=raw.get("cedula") or (value if kind == "dni" else None),
            mobile=raw.get("movil") or (value if kind == "mobile" else None),
            balance=str(raw["facturacion"].get("total_facturas")) if isinstance(raw.get("facturacion"), dict) else None,
            services=list(services),
        )
        logger.info("Client resolved", extra={"context": {"kind": kind, "client_id": profile.id}})
        return Result.success(profile)

    async def _service_info(self, service: dict) -> ServiceInfo:
        device_id = self.emitter_devices.get(service.get("emisor") or "")
        if device_id is None:
            emitter_status = "FUERA DE LINEA ❌"
        else:
            emitter_status = await self.get_device_status(device_id)
        status_user = (service.get("status_user") or "").lower()
        if not status_user:
            antenna = "Desconocido ❓"
        else:
            antenna = "ONLINE ✅" if status_user == "online" else "OFFLINE ❌"
        return ServiceInfo(
            plan=service.get("perfil") or service.get("plan"),
            address=service.get("direccion"),
            emitter=service.get("emisor"),
            emitter_status=emitter_status,
            antenna_status=antenna,
        )

    async def get_device_status(self, device_id: int) -> str:
        result = await self._post("GetMonitoreo", {"id": device_id})
        if not result.ok:
            return "No encontrado ❓" if result.error_code == NOT_FOUND else "Error de conexión ⚠️"
        devices = result.value.get("equipos") or []
        if not devices:
            return "No encontrado ❓"
        state = devices[0].get("estado")
        if state == 1:
            return "OK ✅"
        if state == 0:
            return "Fallando ❌"
        return "Desconocido ❓"

    async def list_pending_invoices(self, client: ClientProfile) -> Result[list[Invoice]]:
        """Unpaid or overdue invoices, most recent due date first."""
        result = await self._post("GetInvoices", {"idcliente": int(client.id), "limit": 5})
        if not result.ok:
            return result
        invoices = [
            Invoice(
                id=str(row.get("id")),
                due_date=row.get("vencimiento"),
                total=str(row.get("total2") or row.get("total")),
                amount=_to_amount(row.get("total")),
            )
            for row in result.value.get("facturas") or []
            if str(row.get("estado", "")).lower() in PENDING_INVOICE_STATES
        ]
        invoices.sort(key=lambda inv: _parse_date(inv.due_date), reverse=True)
        return Result.success(invoices)

    async def register_payment(self, invoice_id: str, amount: float, transaction_id: str) -> Result[dict]:
        """Mark an invoice as paid through the configured payment gateway."""
        try:
            invoice_number = int(invoice_id)
        except (TypeError, ValueError):
            return Result.failure(f"Factura inválida: {invoice_id!r}", "invalid_invoice")
        result = await self._post(
            "PaidInvoice",
            {
                "idfactura": invoice_number,
                "pasarela": self.payment_gateway,
                "cantidad": amount,
                "idtransaccion": transaction_id,
            },
        )
        if result.ok:
            logger.info(
                "Payment registered",
                extra={"context": {"invoice_id": invoice_number, "amount": amount, "transaction_id": transaction_id}},
            )
        return result
