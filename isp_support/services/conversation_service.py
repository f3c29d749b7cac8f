"""Per-client conversation state machine for the automated part of the chat."""

import asyncio
from typing import Optional

from isp_support.logging_config import get_logger
from isp_support.schemas.conversation import ClientProfile, ConversationState, Invoice
from isp_support.schemas.webhook import InboundEvent
from isp_support.services.ai_service import NO_ANSWER, AIService, strip_sales_sentinels
from isp_support.services.billing_service import BillingService, identifier_kind, mobile_from_chat_id, normalize_identifier
from isp_support.services.errors import TransportError
from isp_support.services.event_bus import LEAD_QUALIFIED, TICKET_CREATED, Event, EventBus
from isp_support.services.menu_service import MenuAction, MenuResolver, find_option, is_numeric_option
from isp_support.services.payment_service import PaymentService
from isp_support.services.result import Result
from isp_support.services.session_store import SessionStore
from isp_support.services.state_machine import ConversationStep, TicketStatus
from isp_support.services.ticket_store import ROOT_MENU_ID, RecordStore
from isp_support.services.transport import MediaPayload, Transport, send_best_effort

logger = get_logger("conversation_service")

ASK_IDENTIFICATION = (
    "¡Hola! 👋 Soy el asistente virtual.\n"
    "Si ya sos cliente, escribí tu *DNI* o el *celular* registrado.\n"
    "Si todavía no sos cliente, decime tu *nombre* y te cuento nuestros planes."
)
ASK_NAME = "No encontramos una cuenta con ese dato. ¿Cómo te llamás?"
INVALID_OPTION = "Opción inválida. Respondé con uno de los números del menú."
BACK_TO_MENU_HINT = "\n\nEscribí *0* para volver al menú principal."
ALREADY_IN_QUEUE = "Tu caso ya está en la fila de atención. Un agente te va a responder a la brevedad 🙏"
OPEN_TICKET_EXISTS = "Ya tenés un caso abierto (#{ticket_id}). Un agente te va a atender a la brevedad."
TICKET_CREATED_REPLY = "Derivamos tu consulta a un agente (caso #{ticket_id}). Te van a responder por este mismo chat."
GENERIC_APOLOGY = "Disculpá, tuvimos un problema procesando tu mensaje. Un agente lo va a revisar."
RESET_REPLY = "Listo, reiniciamos la conversación. Escribinos cuando quieras."
LEAD_CONFIRMED = "¡Genial! Un asesor comercial se va a contactar con vos a la brevedad. ¡Gracias!"
LEAD_DECLINED = "Entendido. Si más adelante te interesa, escribinos cuando quieras. ¡Que tengas buen día!"
NO_PENDING_INVOICES = "No tenés facturas pendientes 🎉"
INVOICES_UNAVAILABLE = "No pudimos consultar tus facturas en este momento. Probá de nuevo más tarde."
QR_DECLINED = "Entendido, no generamos el QR."
QR_FAILED = "No pudimos generar el QR de pago. Ya avisamos a un agente para ayudarte."
RECEIPT_UNREADABLE = "No pude leer el comprobante. ¿Podés enviarlo de nuevo con mejor calidad?"
RECEIPT_ASK_DNI = "Recibimos tu comprobante 🧾. Para asignarlo, enviános el DNI del titular del servicio."
RECEIPT_MANUAL_REVIEW = "No encontramos la cuenta. Un agente va a revisar el comprobante manualmente."
AUDIO_UNREADABLE = "No pude entender el audio, ¿podés escribirlo?"
MEDIA_UNSUPPORTED = "Por ahora solo puedo procesar texto, audios, imágenes y PDF."


def _first_name(name: Optional[str]) -> str:
    return (name or "").split(" ")[0].title()


def format_invoices(invoices: list[Invoice]) -> str:
    lines = ["*Facturas pendientes:*", ""]
    for index, invoice in enumerate(invoices, start=1):
        due = f" - vence {invoice.due_date}" if invoice.due_date else ""
        lines.append(f"{index}. Factura {invoice.id}: ${invoice.total}{due}")
    lines.append("")
    lines.append("Respondé con el número de la factura que querés pagar.")
    return "\n".join(lines)


def format_account_status(profile: ClientProfile) -> str:
    lines = [f"*Estado de cuenta de {profile.name}*"]
    if profile.balance:
        lines.append(f"Saldo: ${profile.balance}")
    for service in profile.services:
        lines.append("")
        lines.append(f"📶 Plan: {service.plan or '-'}")
        if service.address:
            lines.append(f"📍 {service.address}")
        lines.append(f"Emisor: {service.emitter_status or 'Desconocido ❓'}")
        lines.append(f"Antena: {service.antenna_status or 'Desconocido ❓'}")
    if not profile.services:
        lines.append("No encontramos servicios activos.")
    return "\n".join(lines)


def format_lead_notification(name: str, client_id: str, history: list[dict]) -> str:
    summary = "\n".join(f"{'👤' if turn['role'] == 'user' else '🤖'} {turn['text']}" for turn in history[-6:])
    return f"""🎯 *Nuevo lead calificado*

*Nombre:* {name}
*Teléfono:* {client_id.split("@")[0]}

*Resumen:*
{summary}"""


class ConversationEngine:
    def __init__(
        self,
        store: SessionStore,
        records: RecordStore,
        menus: MenuResolver,
        ai: AIService,
        billing: BillingService,
        payments: PaymentService,
        transport: Transport,
        bus: EventBus,
        sales_group_id: Optional[str] = None,
    ):
        self.store = store
        self.records = records
        self.menus = menus
        self.ai = ai
        self.billing = billing
        self.payments = payments
        self.transport = transport
        self.bus = bus
        self.sales_group_id = sales_group_id
        bus.subscribe(LEAD_QUALIFIED, self.on_lead_qualified)

        self._steps = {
            ConversationStep.AWAITING_IDENTIFICATION: self._on_identification,
            ConversationStep.SALES_GET_NAME: self._on_sales_turn,
            ConversationStep.AWAITING_SALES_CONFIRMATION: self._on_sales_confirmation,
            ConversationStep.MENU_NAVIGATION: self._on_menu,
            ConversationStep.AWAITING_INVOICE_SELECTION: self._on_invoice_selection,
            ConversationStep.AWAITING_QR_CONFIRMATION: self._on_qr_confirmation,
            ConversationStep.AWAITING_DNI_FOR_RECEIPT: self._on_receipt_dni,
            ConversationStep.AWAITING_AGENT: self._on_awaiting_agent,
        }

    async def _send(self, client_id: str, text: str) -> None:
        await send_best_effort(self.transport, client_id, text)

    async def _save(self, client_id: str, state: ConversationState) -> None:
        await self.store.save_state(client_id, state)

    # Entry points

    async def reset(self, client_id: str) -> None:
        """Client-side !fin: forget everything about the conversation."""
        await self.store.delete_state(client_id)
        logger.info("Conversation reset by client", extra={"context": {"client_id": client_id}})
        await self._send(client_id, RESET_REPLY)

    async def handle(self, event: InboundEvent) -> str:
        """Process one private message. Returns the step the conversation is left in."""
        client_id = event.chat_id
        state = await self.store.get_state(client_id)
        text = event.text

        if event.has_media:
            media_kind = (event.media_type or "").split("/")[0]
            if media_kind == "audio":
                text = await self._transcribe(event)
                if not text:
                    await self._send(client_id, AUDIO_UNREADABLE)
                    return state.step.value if state else ConversationStep.NONE.value
            elif media_kind == "image" or event.media_type == "application/pdf":
                return await self._on_receipt(client_id, state, event)
            else:
                await self._send(client_id, MEDIA_UNSUPPORTED)
                return state.step.value if state else ConversationStep.NONE.value

        if not text:
            return state.step.value if state else ConversationStep.NONE.value

        if state is None or state.step == ConversationStep.NONE:
            return await self._on_first_message(client_id, ConversationState())

        logger.debug(f"Step {state.step.value} for {client_id}")
        return await self._steps[state.step](client_id, state, text)

    # Identification

    async def _on_first_message(self, client_id: str, state: ConversationState) -> str:
        mobile = mobile_from_chat_id(client_id)
        if identifier_kind(mobile) == "mobile":
            result = await self.billing.get_client_details(mobile)
            if result.ok:
                return await self._welcome(client_id, state, result.value)

        state.step = ConversationStep.AWAITING_IDENTIFICATION
        await self._save(client_id, state)
        await self._send(client_id, ASK_IDENTIFICATION)
        return state.step.value

    async def _welcome(self, client_id: str, state: ConversationState, profile: ClientProfile) -> str:
        state.is_client = True
        state.client_profile = profile
        options, menu_text = await self.menus.load(ROOT_MENU_ID)
        state.current_menu_parent = ROOT_MENU_ID
        state.current_menu_options = options
        state.step = ConversationStep.MENU_NAVIGATION
        await self._save(client_id, state)
        await self._send(client_id, f"¡Hola {_first_name(profile.name)}! 👋 Bienvenido a la atención al cliente.\n\n{menu_text}")
        return state.step.value

    async def _on_identification(self, client_id: str, state: ConversationState, text: str) -> str:
        if identifier_kind(text) is None:
            return await self._start_prospect(client_id, state, text)

        result = await self.billing.get_client_details(text)
        if result.ok:
            return await self._welcome(client_id, state, result.value)

        logger.info("Identifier not resolved", extra={"context": {"client_id": client_id, "error": result.error}})
        state.is_client = False
        state.step = ConversationStep.SALES_GET_NAME
        await self._save(client_id, state)
        await self._send(client_id, ASK_NAME)
        return state.step.value

    # Sales dialogue

    async def _start_prospect(self, client_id: str, state: ConversationState, name: str) -> str:
        state.is_client = False
        state.prospect_name = name.strip()
        lead = await asyncio.to_thread(self.records.create_lead, client_id, state.prospect_name)
        state.lead_id = lead.id
        state.step = ConversationStep.SALES_GET_NAME
        logger.info("Prospect started", extra={"context": {"client_id": client_id, "lead_id": lead.id}})
        return await self._sales_turn(client_id, state, f"Hola, mi nombre es {state.prospect_name}.")

    async def _on_sales_turn(self, client_id: str, state: ConversationState, text: str) -> str:
        if not state.prospect_name:
            return await self._start_prospect(client_id, state, text)
        return await self._sales_turn(client_id, state, text)

    async def _sales_turn(self, client_id: str, state: ConversationState, text: str) -> str:
        state.add_turn("user", text)
        knowledge = await asyncio.to_thread(self.records.list_faqs, "ventas")
        reply = await self.ai.sales_reply(state.history_as_messages(), state.prospect_name, knowledge)
        clean, wants_to_close = strip_sales_sentinels(reply)
        state.add_turn("model", clean)
        if wants_to_close:
            state.step = ConversationStep.AWAITING_SALES_CONFIRMATION
        await self._save(client_id, state)
        await self._send(client_id, clean)
        return state.step.value

    async def _on_sales_confirmation(self, client_id: str, state: ConversationState, text: str) -> str:
        state.add_turn("user", text)
        answer = await self.ai.analyze_confirmation(text)
        if answer == "SI":
            if state.lead_id:
                await asyncio.to_thread(self.records.update_lead, state.lead_id, "qualified", text)
            await self.bus.publish(
                LEAD_QUALIFIED,
                client_id=client_id,
                name=state.prospect_name or "",
                history=state.history_as_messages(),
            )
            await self._send(client_id, LEAD_CONFIRMED)
        else:
            if state.lead_id:
                await asyncio.to_thread(self.records.update_lead, state.lead_id, "declined")
            await self._send(client_id, LEAD_DECLINED)
        await self.store.delete_state(client_id)
        return ConversationStep.NONE.value

    async def on_lead_qualified(self, event: Event) -> None:
        if not self.sales_group_id:
            logger.warning("Qualified lead without sales group configured")
            return
        payload = event.payload
        await send_best_effort(
            self.transport,
            self.sales_group_id,
            format_lead_notification(payload["name"], payload["client_id"], payload["history"]),
        )

    # Menu

    async def _show_menu(self, client_id: str, state: ConversationState, parent_id: str, prefix: str = "") -> str:
        options, menu_text = await self.menus.load(parent_id)
        state.current_menu_parent = parent_id
        state.current_menu_options = options
        state.step = ConversationStep.MENU_NAVIGATION
        await self._save(client_id, state)
        await self._send(client_id, f"{prefix}{menu_text}")
        return state.step.value

    async def _on_menu(self, client_id: str, state: ConversationState, text: str) -> str:
        parent_id = state.current_menu_parent or ROOT_MENU_ID
        if not is_numeric_option(text):
            return await self._answer_question(client_id, state, text)

        order = int(text)
        if order == 0 and parent_id != ROOT_MENU_ID:
            return await self._show_menu(client_id, state, ROOT_MENU_ID)

        option = find_option(state.current_menu_options, order)
        if option is None:
            _, menu_text = await self.menus.load(parent_id)
            await self._send(client_id, f"{INVALID_OPTION}\n\n{menu_text}")
            return state.step.value

        logger.info("Menu option selected", extra={"context": {"client_id": client_id, "option": option.id}})
        if option.action == MenuAction.SUBMENU:
            return await self._show_menu(client_id, state, option.id)
        if option.action == MenuAction.REPLY:
            return await self._show_menu(client_id, state, parent_id, prefix=f"{option.reply_text or option.title}\n\n")
        if option.action == MenuAction.TICKET:
            return await self._create_ticket(client_id, state, option.title)
        if option.action == MenuAction.INVOICE_PAYMENT:
            return await self._start_invoice_flow(client_id, state)
        if option.action == MenuAction.ACCOUNT_STATUS and state.client_profile:
            return await self._show_menu(
                client_id, state, parent_id, prefix=f"{format_account_status(state.client_profile)}\n\n"
            )

        logger.warning(f"Unsupported menu action {option.action} on {option.id}")
        return await self._create_ticket(client_id, state, option.title)

    async def _answer_question(self, client_id: str, state: ConversationState, text: str) -> str:
        state.add_turn("user", text)
        faqs = await asyncio.to_thread(self.records.list_faqs, "soporte")
        answer = await self.ai.answer_support_question(state.history_as_messages(), faqs)
        if NO_ANSWER in answer:
            return await self._create_ticket(client_id, state, text)
        state.add_turn("model", answer)
        await self._save(client_id, state)
        await self._send(client_id, f"{answer}{BACK_TO_MENU_HINT}")
        return state.step.value

    # Tickets

    async def _create_ticket(self, client_id: str, state: ConversationState, message: str) -> str:
        """Hand the conversation to a human. One open ticket per client."""
        existing = await asyncio.to_thread(self.records.find_open_ticket, client_id)
        if existing is not None:
            state.step = ConversationStep.AWAITING_AGENT
            state.ticket_id = existing.id
            await self._save(client_id, state)
            await self._send(client_id, OPEN_TICKET_EXISTS.format(ticket_id=existing.id))
            return state.step.value

        sentiment, intent = await asyncio.gather(self.ai.analyze_sentiment(message), self.ai.classify_intent(message))
        name = state.client_profile.name if state.client_profile else state.prospect_name
        ticket = await asyncio.to_thread(self.records.create_ticket, client_id, name, message, sentiment, intent)

        state.step = ConversationStep.AWAITING_AGENT
        state.ticket_id = ticket.id
        await self._save(client_id, state)
        logger.info(
            "Ticket created",
            extra={"context": {"client_id": client_id, "ticket_id": ticket.id, "sentiment": sentiment, "intent": intent}},
        )
        await self.bus.publish(TICKET_CREATED, ticket=ticket)
        await self._send(client_id, TICKET_CREATED_REPLY.format(ticket_id=ticket.id))
        return state.step.value

    async def _on_awaiting_agent(self, client_id: str, state: ConversationState, text: str) -> str:
        ticket = await asyncio.to_thread(self.records.get_ticket, state.ticket_id) if state.ticket_id else None
        if ticket is not None and ticket.status == TicketStatus.PENDING.value:
            await self._send(client_id, ALREADY_IN_QUEUE)
            return state.step.value

        await self.store.delete_state(client_id)
        return await self._on_first_message(client_id, ConversationState())

    # Invoice payment

    async def _start_invoice_flow(self, client_id: str, state: ConversationState) -> str:
        if state.client_profile is None:
            return await self._create_ticket(client_id, state, "Pago de factura")
        result: Result[list[Invoice]] = await self.billing.list_pending_invoices(state.client_profile)
        if not result.ok:
            logger.warning(f"Invoice listing failed: {result.error}")
            return await self._show_menu(client_id, state, state.current_menu_parent or ROOT_MENU_ID, f"{INVOICES_UNAVAILABLE}\n\n")
        if not result.value:
            return await self._show_menu(client_id, state, state.current_menu_parent or ROOT_MENU_ID, f"{NO_PENDING_INVOICES}\n\n")

        state.pending_invoices = result.value
        state.selected_invoice = None
        state.step = ConversationStep.AWAITING_INVOICE_SELECTION
        await self._save(client_id, state)
        await self._send(client_id, format_invoices(state.pending_invoices))
        return state.step.value

    async def _on_invoice_selection(self, client_id: str, state: ConversationState, text: str) -> str:
        if is_numeric_option(text) and 1 <= int(text) <= len(state.pending_invoices):
            invoice = state.pending_invoices[int(text) - 1]
            state.selected_invoice = invoice
            state.step = ConversationStep.AWAITING_QR_CONFIRMATION
            await self._save(client_id, state)
            await self._send(
                client_id,
                f"Elegiste la factura {invoice.id} por ${invoice.total}.\n"
                "¿Querés que te genere un QR de Mercado Pago para pagarla? (SI/NO)",
            )
            return state.step.value

        await self._send(client_id, f"Opción inválida.\n\n{format_invoices(state.pending_invoices)}")
        return state.step.value

    async def _on_qr_confirmation(self, client_id: str, state: ConversationState, text: str) -> str:
        answer = await self.ai.analyze_confirmation(text)
        if answer != "SI" or state.selected_invoice is None:
            await self.store.delete_state(client_id)
            await self._send(client_id, QR_DECLINED)
            return ConversationStep.NONE.value

        invoice = state.selected_invoice
        name = state.client_profile.name if state.client_profile else ""
        result = await self.payments.create_invoice_qr(invoice, name)
        if not result.ok:
            logger.error(f"QR generation failed for invoice {invoice.id}: {result.error}")
            await self._send(client_id, QR_FAILED)
            return await self._create_ticket(client_id, state, f"Falló la generación del QR para la factura {invoice.id}")

        try:
            await self.transport.send_media(
                client_id,
                MediaPayload(kind="qr", data=result.value, filename=f"qr_factura_{invoice.id}.png"),
                caption=f"Escaneá este QR con Mercado Pago para pagar la factura {invoice.id} (${invoice.total}).",
            )
        except TransportError as e:
            logger.error(f"QR delivery failed: {e}")
        await self.store.delete_state(client_id)
        return ConversationStep.NONE.value

    # Payment receipts

    async def _transcribe(self, event: InboundEvent) -> Optional[str]:
        try:
            content, mimetype = await self.transport.download_media(event.media_ref)
        except TransportError as e:
            logger.warning(f"Audio download failed: {e}")
            return None
        return await self.ai.transcribe(content, mimetype or event.media_type)

    async def _on_receipt(self, client_id: str, state: Optional[ConversationState], event: InboundEvent) -> str:
        try:
            content, mimetype = await self.transport.download_media(event.media_ref)
        except TransportError as e:
            logger.warning(f"Receipt download failed: {e}")
            await self._send(client_id, RECEIPT_UNREADABLE)
            return state.step.value if state else ConversationStep.NONE.value

        analysis = await self.ai.analyze_receipt(content, mimetype or event.media_type)
        if "error" in analysis:
            await self._send(client_id, RECEIPT_UNREADABLE)
            return state.step.value if state else ConversationStep.NONE.value

        known = state.client_profile if state and state.client_profile else None
        receipt = await asyncio.to_thread(
            self.records.create_receipt,
            client_id,
            analysis,
            event.media_ref,
            known.id if known else None,
        )
        logger.info(
            "Payment receipt registered",
            extra={"context": {"receipt_id": receipt.id, "client_id": client_id, "assigned": bool(known)}},
        )
        if known:
            amount = analysis.get("monto")
            await self._send(client_id, f"¡Gracias {_first_name(known.name)}! Registramos tu comprobante por ${amount}.")
            return state.step.value

        state = state or ConversationState()
        state.pending_receipt_id = receipt.id
        state.step = ConversationStep.AWAITING_DNI_FOR_RECEIPT
        await self._save(client_id, state)
        await self._send(client_id, RECEIPT_ASK_DNI)
        return state.step.value

    async def _on_receipt_dni(self, client_id: str, state: ConversationState, text: str) -> str:
        dni = normalize_identifier(text)
        if identifier_kind(dni):
            result = await self.billing.get_client_details(dni)
        else:
            result = Result.failure(f"'{text}' is not an identifier", "invalid_identifier")

        if not result.ok:
            if state.pending_receipt_id:
                await asyncio.to_thread(self.records.update_receipt, state.pending_receipt_id, "manual_review")
            await self.store.delete_state(client_id)
            await self._send(client_id, RECEIPT_MANUAL_REVIEW)
            return ConversationStep.NONE.value

        profile = result.value
        if state.pending_receipt_id:
            await asyncio.to_thread(self.records.update_receipt, state.pending_receipt_id, "assigned", profile.id)
        await self.store.delete_state(client_id)
        await self._send(client_id, f"Listo {_first_name(profile.name)}, asignamos el comprobante a tu cuenta ✅")
        return ConversationStep.NONE.value

    async def apologize(self, client_id: str) -> None:
        await self._send(client_id, GENERIC_APOLOGY)
