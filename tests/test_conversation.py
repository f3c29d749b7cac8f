import asyncio

from conftest import KNOWN_CLIENT, SALES_GROUP, TRIAGE_CHAT, UNKNOWN_CLIENT

from isp_support.models import Lead, PaymentReceipt
from isp_support.schemas.webhook import InboundEvent
from isp_support.services.conversation_service import (
    ALREADY_IN_QUEUE,
    ASK_IDENTIFICATION,
    ASK_NAME,
    AUDIO_UNREADABLE,
    BACK_TO_MENU_HINT,
    INVALID_OPTION,
    LEAD_CONFIRMED,
    LEAD_DECLINED,
    MEDIA_UNSUPPORTED,
    NO_PENDING_INVOICES,
    QR_DECLINED,
    QR_FAILED,
    RECEIPT_ASK_DNI,
    RECEIPT_MANUAL_REVIEW,
    RECEIPT_UNREADABLE,
    RESET_REPLY,
    format_account_status,
)
from isp_support.services.state_machine import ConversationStep, TicketStatus

ROOT_MENU = "*Menú principal*\n\n1. Soporte técnico\n2. Pagar factura\n5. Horarios de atención"
SUPPORT_MENU = "*Soporte técnico*\n\n1. No tengo internet\n2. Estado de mi servicio\n0. Volver al menú principal"


def say(runtime, text=None, client=KNOWN_CLIENT, **kwargs):
    event = InboundEvent(sender_id=client, chat_id=client, body=text, **kwargs)
    return asyncio.run(runtime.engine.handle(event))


def state_of(runtime, client=KNOWN_CLIENT):
    return asyncio.run(runtime.store.get_state(client))


class TestKnownClient:
    def test_welcome_shows_root_menu(self, runtime, transport):
        step = say(runtime, "hola")

        assert step == ConversationStep.MENU_NAVIGATION.value
        assert transport.last_text_to(KNOWN_CLIENT) == f"¡Hola Maria! 👋 Bienvenido a la atención al cliente.\n\n{ROOT_MENU}"
        state = state_of(runtime)
        assert state.is_client is True
        assert [option.order for option in state.current_menu_options] == [1, 2, 5]

    def test_unknown_order_keeps_state(self, runtime, transport):
        say(runtime, "hola")
        before = state_of(runtime)

        step = say(runtime, "3")

        assert step == ConversationStep.MENU_NAVIGATION.value
        assert transport.last_text_to(KNOWN_CLIENT) == f"{INVALID_OPTION}\n\n{ROOT_MENU}"
        assert state_of(runtime) == before

    def test_zero_at_root_is_invalid(self, runtime, transport):
        say(runtime, "hola")
        say(runtime, "0")
        assert transport.last_text_to(KNOWN_CLIENT).startswith(INVALID_OPTION)

    def test_submenu_and_back(self, runtime, transport):
        say(runtime, "hola")

        say(runtime, "1")
        assert transport.last_text_to(KNOWN_CLIENT) == SUPPORT_MENU
        assert state_of(runtime).current_menu_parent == "soporte"

        say(runtime, "0")
        assert transport.last_text_to(KNOWN_CLIENT) == ROOT_MENU
        assert state_of(runtime).current_menu_parent == "principal"

    def test_reply_option_reprints_menu(self, runtime, transport):
        say(runtime, "hola")
        say(runtime, "5")
        assert transport.last_text_to(KNOWN_CLIENT) == f"Atendemos de lunes a viernes de 8 a 20 hs.\n\n{ROOT_MENU}"

    def test_account_status(self, runtime, transport, known_profile):
        say(runtime, "hola")
        say(runtime, "1")
        say(runtime, "2")

        text = transport.last_text_to(KNOWN_CLIENT)
        assert text.startswith(format_account_status(known_profile))
        assert "📶 Plan: 100 Megas" in text
        assert "Emisor: OK ✅" in text

    def test_menu_ticket_is_announced_to_triage(self, runtime, transport):
        say(runtime, "hola")
        say(runtime, "1")
        step = say(runtime, "1")

        assert step == ConversationStep.AWAITING_AGENT.value
        state = state_of(runtime)
        ticket = runtime.records.get_ticket(state.ticket_id)
        assert ticket.status == TicketStatus.PENDING.value
        assert ticket.initial_message == "No tengo internet"
        assert ticket.client_name == "maria gomez"
        assert ticket.notification_message_id is not None
        assert f"#{ticket.id}" in transport.last_text_to(TRIAGE_CHAT)
        assert f"caso #{ticket.id}" in transport.last_text_to(KNOWN_CLIENT)

    def test_waiting_client_is_told_to_hold_on(self, runtime, transport):
        say(runtime, "hola")
        say(runtime, "1")
        say(runtime, "1")
        notifications = len(transport.texts_to(TRIAGE_CHAT))

        step = say(runtime, "¿hola? ¿hay alguien?")

        assert step == ConversationStep.AWAITING_AGENT.value
        assert transport.last_text_to(KNOWN_CLIENT) == ALREADY_IN_QUEUE
        assert len(transport.texts_to(TRIAGE_CHAT)) == notifications

    def test_closed_ticket_starts_over(self, runtime, transport):
        say(runtime, "hola")
        say(runtime, "1")
        say(runtime, "1")
        runtime.records.close_ticket(state_of(runtime).ticket_id, "resuelto por el agente")

        step = say(runtime, "hola de nuevo")

        assert step == ConversationStep.MENU_NAVIGATION.value
        assert transport.last_text_to(KNOWN_CLIENT).endswith(ROOT_MENU)

    def test_open_ticket_is_not_duplicated(self, runtime, transport):
        existing = runtime.records.create_ticket(KNOWN_CLIENT, "maria gomez", "Sin señal")
        say(runtime, "hola")
        say(runtime, "1")
        say(runtime, "1")

        assert len(runtime.records.list_tickets()) == 1
        assert f"#{existing.id}" in transport.last_text_to(KNOWN_CLIENT)
        assert state_of(runtime).ticket_id == existing.id

    def test_free_text_answered_from_faqs(self, runtime, transport, llm):
        llm.responses.append("Desenchufalo 30 segundos.")
        say(runtime, "hola")

        step = say(runtime, "¿cómo reinicio el router?")

        assert step == ConversationStep.MENU_NAVIGATION.value
        assert transport.last_text_to(KNOWN_CLIENT) == f"Desenchufalo 30 segundos.{BACK_TO_MENU_HINT}"
        assert "reinicio el router" in llm.calls[0][0]["content"]

    def test_unanswerable_question_becomes_ticket(self, runtime, transport):
        say(runtime, "hola")

        step = say(runtime, "me cobraron dos veces la instalación")

        assert step == ConversationStep.AWAITING_AGENT.value
        ticket = runtime.records.get_ticket(state_of(runtime).ticket_id)
        assert ticket.initial_message == "me cobraron dos veces la instalación"


class TestIdentification:
    def test_unknown_number_is_asked_to_identify(self, runtime, transport, billing):
        step = say(runtime, "hola", client=UNKNOWN_CLIENT)

        assert step == ConversationStep.AWAITING_IDENTIFICATION.value
        assert transport.last_text_to(UNKNOWN_CLIENT) == ASK_IDENTIFICATION
        assert billing.lookups == ["3519999999"]

    def test_dni_identifies_client(self, runtime, transport):
        say(runtime, "hola", client=UNKNOWN_CLIENT)

        step = say(runtime, "30.123.456", client=UNKNOWN_CLIENT)

        assert step == ConversationStep.MENU_NAVIGATION.value
        assert state_of(runtime, UNKNOWN_CLIENT).client_profile.id == "1042"

    def test_unknown_dni_asks_for_name(self, runtime, transport, llm):
        say(runtime, "hola", client=UNKNOWN_CLIENT)

        step = say(runtime, "30999888", client=UNKNOWN_CLIENT)

        assert step == ConversationStep.SALES_GET_NAME.value
        assert transport.last_text_to(UNKNOWN_CLIENT) == ASK_NAME
        state = state_of(runtime, UNKNOWN_CLIENT)
        assert state.is_client is False
        assert state.prospect_name is None

        llm.responses.append("¡Hola Juan! ¿En qué barrio vivís?")
        say(runtime, "Juan", client=UNKNOWN_CLIENT)
        assert state_of(runtime, UNKNOWN_CLIENT).prospect_name == "Juan"


class TestSalesDialogue:
    def _lead(self, runtime):
        with runtime.records._session() as db:
            return db.query(Lead).one()

    def test_prospect_is_qualified_and_sent_to_sales(self, runtime, transport, llm):
        llm.responses.extend(
            [
                "¡Hola Juan! ¿En qué barrio vivís así reviso la cobertura?",
                "¡Tenemos cobertura en Av. Colón! El plan de 100 megas cuesta $15.000. "
                "¿Querés que un asesor se ponga en contacto? [DIRECCION_DETECTADA]",
            ]
        )
        say(runtime, "hola", client=UNKNOWN_CLIENT)

        step = say(runtime, "Juan Perez", client=UNKNOWN_CLIENT)
        assert step == ConversationStep.SALES_GET_NAME.value
        assert transport.last_text_to(UNKNOWN_CLIENT).startswith("¡Hola Juan!")
        assert self._lead(runtime).status == "prospect"

        step = say(runtime, "Vivo en Av. Colón 1234", client=UNKNOWN_CLIENT)
        assert step == ConversationStep.AWAITING_SALES_CONFIRMATION.value
        offer = transport.last_text_to(UNKNOWN_CLIENT)
        assert "[DIRECCION_DETECTADA]" not in offer
        assert offer.endswith("¿Querés que un asesor se ponga en contacto?")

        step = say(runtime, "si dale", client=UNKNOWN_CLIENT)

        assert step == ConversationStep.NONE.value
        assert transport.last_text_to(UNKNOWN_CLIENT) == LEAD_CONFIRMED
        assert state_of(runtime, UNKNOWN_CLIENT) is None
        lead = self._lead(runtime)
        assert lead.status == "qualified"
        assert lead.name == "Juan Perez"
        notification = transport.last_text_to(SALES_GROUP)
        assert "*Nombre:* Juan Perez" in notification
        assert "*Teléfono:* 5493519999999" in notification
        assert "Vivo en Av. Colón 1234" in notification

    def test_prospect_declines(self, runtime, transport, llm):
        llm.responses.extend(["¡Hola Juan!", "¿Querés contratar? [CIERRE_DIRECTO]"])
        say(runtime, "hola", client=UNKNOWN_CLIENT)
        say(runtime, "Juan", client=UNKNOWN_CLIENT)
        say(runtime, "quiero contratar", client=UNKNOWN_CLIENT)

        step = say(runtime, "no, gracias", client=UNKNOWN_CLIENT)

        assert step == ConversationStep.NONE.value
        assert transport.last_text_to(UNKNOWN_CLIENT) == LEAD_DECLINED
        assert self._lead(runtime).status == "declined"
        assert transport.texts_to(SALES_GROUP) == []

    def test_model_outage_keeps_dialogue_alive(self, runtime, transport):
        say(runtime, "hola", client=UNKNOWN_CLIENT)

        step = say(runtime, "Juan", client=UNKNOWN_CLIENT)

        assert step == ConversationStep.SALES_GET_NAME.value
        assert "asesor humano" in transport.last_text_to(UNKNOWN_CLIENT)


class TestInvoicePayment:
    def _to_invoices(self, runtime):
        say(runtime, "hola")
        return say(runtime, "2")

    def test_lists_invoices(self, runtime, transport):
        step = self._to_invoices(runtime)

        assert step == ConversationStep.AWAITING_INVOICE_SELECTION.value
        text = transport.last_text_to(KNOWN_CLIENT)
        assert "1. Factura 901: $4.500,00 - vence 2024-06-10" in text
        assert "2. Factura 877: $4.200,00 - vence 2024-05-10" in text

    def test_no_pending_invoices(self, runtime, transport, billing):
        billing.invoices = []

        step = self._to_invoices(runtime)

        assert step == ConversationStep.MENU_NAVIGATION.value
        assert transport.last_text_to(KNOWN_CLIENT) == f"{NO_PENDING_INVOICES}\n\n{ROOT_MENU}"

    def test_invalid_selection_reprompts(self, runtime, transport):
        self._to_invoices(runtime)

        step = say(runtime, "7")

        assert step == ConversationStep.AWAITING_INVOICE_SELECTION.value
        assert transport.last_text_to(KNOWN_CLIENT).startswith("Opción inválida.")

    def test_qr_is_sent(self, runtime, transport):
        self._to_invoices(runtime)
        assert say(runtime, "2") == ConversationStep.AWAITING_QR_CONFIRMATION.value
        assert "factura 877" in transport.last_text_to(KNOWN_CLIENT)

        step = say(runtime, "si")

        assert step == ConversationStep.NONE.value
        chat_id, media, caption = transport.media[-1]
        assert chat_id == KNOWN_CLIENT
        assert media.kind == "qr"
        assert media.data == "00020101021243650016COM.MERCADOLIBRE"
        assert "877" in caption
        assert runtime.engine.payments.orders[0].id == "877"
        assert state_of(runtime) is None

    def test_qr_declined(self, runtime, transport):
        self._to_invoices(runtime)
        say(runtime, "1")

        step = say(runtime, "no")

        assert step == ConversationStep.NONE.value
        assert transport.last_text_to(KNOWN_CLIENT) == QR_DECLINED
        assert transport.media == []

    def test_qr_failure_hands_over_to_agent(self, runtime, transport):
        runtime.engine.payments.qr_data = None
        self._to_invoices(runtime)
        say(runtime, "1")

        step = say(runtime, "dale")

        assert step == ConversationStep.AWAITING_AGENT.value
        assert QR_FAILED in transport.texts_to(KNOWN_CLIENT)
        ticket = runtime.records.get_ticket(state_of(runtime).ticket_id)
        assert "901" in ticket.initial_message


class TestReceipts:
    ANALYSIS = '{"monto": 4500, "referencia": "OP-778", "fecha": "2024-06-01"}'

    def _receipt(self, runtime):
        with runtime.records._session() as db:
            return db.query(PaymentReceipt).one()

    def test_unknown_sender_is_asked_for_dni(self, runtime, transport, llm):
        transport.downloads["r1"] = (b"\xff\xd8", "image/jpeg")
        llm.responses.append(self.ANALYSIS)

        step = say(runtime, None, client=UNKNOWN_CLIENT, media_ref="r1", media_type="image/jpeg")

        assert step == ConversationStep.AWAITING_DNI_FOR_RECEIPT.value
        assert transport.last_text_to(UNKNOWN_CLIENT) == RECEIPT_ASK_DNI
        receipt = self._receipt(runtime)
        assert receipt.status == "unassigned"
        assert float(receipt.amount) == 4500.0

        step = say(runtime, "30.123.456", client=UNKNOWN_CLIENT)

        assert step == ConversationStep.NONE.value
        receipt = self._receipt(runtime)
        assert receipt.status == "assigned"
        assert receipt.client_id == "1042"
        assert transport.last_text_to(UNKNOWN_CLIENT).startswith("Listo Maria")

    def test_unknown_dni_goes_to_manual_review(self, runtime, transport, llm):
        transport.downloads["r1"] = (b"%PDF", "application/pdf")
        llm.responses.append(self.ANALYSIS)
        say(runtime, None, client=UNKNOWN_CLIENT, media_ref="r1", media_type="application/pdf")

        step = say(runtime, "30999888", client=UNKNOWN_CLIENT)

        assert step == ConversationStep.NONE.value
        assert transport.last_text_to(UNKNOWN_CLIENT) == RECEIPT_MANUAL_REVIEW
        assert self._receipt(runtime).status == "manual_review"
        assert state_of(runtime, UNKNOWN_CLIENT) is None

    def test_conversation_restarts_after_manual_review(self, runtime, transport, llm):
        transport.downloads["r1"] = (b"%PDF", "application/pdf")
        llm.responses.append(self.ANALYSIS)
        say(runtime, None, client=UNKNOWN_CLIENT, media_ref="r1", media_type="application/pdf")
        say(runtime, "30999888", client=UNKNOWN_CLIENT)

        step = say(runtime, "hola", client=UNKNOWN_CLIENT)

        assert step == ConversationStep.AWAITING_IDENTIFICATION.value
        assert transport.last_text_to(UNKNOWN_CLIENT) == ASK_IDENTIFICATION
        assert transport.texts_to(UNKNOWN_CLIENT).count(RECEIPT_MANUAL_REVIEW) == 1

    def test_identified_client_is_thanked(self, runtime, transport, llm):
        say(runtime, "hola")
        transport.downloads["r2"] = (b"\xff\xd8", "image/jpeg")
        llm.responses.append(self.ANALYSIS)

        step = say(runtime, None, media_ref="r2", media_type="image/jpeg")

        assert step == ConversationStep.MENU_NAVIGATION.value
        assert transport.last_text_to(KNOWN_CLIENT) == "¡Gracias Maria! Registramos tu comprobante por $4500."
        assert self._receipt(runtime).client_id == "1042"

    def test_unreadable_receipt(self, runtime, transport, llm):
        transport.downloads["r3"] = (b"??", "image/png")
        llm.responses.append("esto no es un comprobante")

        say(runtime, None, client=UNKNOWN_CLIENT, media_ref="r3", media_type="image/png")

        assert transport.last_text_to(UNKNOWN_CLIENT) == RECEIPT_UNREADABLE
        assert state_of(runtime, UNKNOWN_CLIENT) is None


class TestMediaAndReset:
    def test_voice_note_is_transcribed(self, runtime, transport, llm):
        llm.transcript = "hola, quiero pagar"
        transport.downloads["a1"] = (b"OggS", "audio/ogg")

        step = say(runtime, None, client=UNKNOWN_CLIENT, media_ref="a1", media_type="audio/ogg; codecs=opus")

        assert step == ConversationStep.AWAITING_IDENTIFICATION.value

    def test_voice_note_without_transcript(self, runtime, transport):
        transport.downloads["a1"] = (b"OggS", "audio/ogg")

        step = say(runtime, None, client=UNKNOWN_CLIENT, media_ref="a1", media_type="audio/ogg")

        assert step == ConversationStep.NONE.value
        assert transport.last_text_to(UNKNOWN_CLIENT) == AUDIO_UNREADABLE

    def test_video_is_unsupported(self, runtime, transport):
        say(runtime, None, client=UNKNOWN_CLIENT, media_ref="v1", media_type="video/mp4")
        assert transport.last_text_to(UNKNOWN_CLIENT) == MEDIA_UNSUPPORTED

    def test_reset_forgets_state(self, runtime, transport):
        say(runtime, "hola")
        say(runtime, "1")

        asyncio.run(runtime.engine.reset(KNOWN_CLIENT))

        assert state_of(runtime) is None
        assert transport.last_text_to(KNOWN_CLIENT) == RESET_REPLY
        say(runtime, "hola")
        assert transport.last_text_to(KNOWN_CLIENT).endswith(ROOT_MENU)
