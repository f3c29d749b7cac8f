"""Ticket triage: agents claim pending tickets by replying to their notification."""

import asyncio
import re
from datetime import datetime, timezone
from typing import Optional

from isp_support.logging_config import get_logger
from isp_support.models import Ticket
from isp_support.schemas.session import SessionRecord
from isp_support.schemas.webhook import InboundEvent
from isp_support.services.alert_service import alert_warning
from isp_support.services.errors import StoreError
from isp_support.services.event_bus import TICKET_CREATED, Event, EventBus
from isp_support.services.locks import KeyedLocks
from isp_support.services.pool_service import SupportGroupPool
from isp_support.services.result import NO_AGENTS, NOT_FOUND, RACE_LOST, Result
from isp_support.services.session_service import SessionLifecycle
from isp_support.services.session_store import SessionStore
from isp_support.services.state_machine import TicketStatus, can_transition
from isp_support.services.ticket_store import RecordStore
from isp_support.services.transport import Transport, send_best_effort
from isp_support.services.whatsapp_service import format_case_brief, format_ticket_notification

logger = get_logger("triage_service")

TICKET_REF_PATTERN = re.compile(r"#([0-9a-f]{6,32})\b")

NO_AGENTS_NOTICE = "⚠️ No hay agentes libres en este momento. El ticket #{ticket_id} sigue pendiente."
CLIENT_AGENT_JOINED = "👋 Un agente de soporte tomó tu caso y ya está con vos. Podés escribirle por acá."


def parse_ticket_ref(text: Optional[str]) -> Optional[str]:
    match = TICKET_REF_PATTERN.search(text or "")
    return match.group(1) if match else None


class TriageDesk:
    def __init__(
        self,
        triage_chat_id: str,
        transport: Transport,
        records: RecordStore,
        store: SessionStore,
        pool: SupportGroupPool,
        lifecycle: SessionLifecycle,
        bus: Optional[EventBus] = None,
        client_locks: Optional[KeyedLocks] = None,
    ):
        self.triage_chat_id = triage_chat_id
        self.transport = transport
        self.records = records
        self.store = store
        self.pool = pool
        self.lifecycle = lifecycle
        self.client_locks = client_locks if client_locks is not None else KeyedLocks()
        if bus is not None:
            bus.subscribe(TICKET_CREATED, self.on_ticket_created)

    async def on_ticket_created(self, event: Event) -> None:
        """Broadcast a new ticket to the triage channel and remember the message id."""
        ticket: Ticket = event.payload["ticket"]
        text = format_ticket_notification(
            ticket.id,
            ticket.client_name,
            ticket.client_id,
            ticket.initial_message,
            ticket.sentiment or "neutro",
        )
        message_id = await send_best_effort(self.transport, self.triage_chat_id, text)
        if message_id:
            await asyncio.to_thread(self.records.upsert_ticket, ticket.id, notification_message_id=message_id)

    async def resolve_ticket(self, event: InboundEvent) -> Optional[Ticket]:
        """Map the quoted notification to its ticket."""
        if event.quoted_message_id:
            ticket = await asyncio.to_thread(self.records.find_ticket_by_notification, event.quoted_message_id)
            if ticket is not None:
                return ticket

        ticket_id = parse_ticket_ref(event.quoted_body)
        if ticket_id is None and event.quoted_message_id:
            quoted = await self.transport.resolve_quoted(event.quoted_message_id)
            ticket_id = parse_ticket_ref(quoted.body if quoted else None)
        if ticket_id is None:
            return None
        return await asyncio.to_thread(self.records.get_ticket, ticket_id)

    async def claim(self, event: InboundEvent) -> Result[SessionRecord]:
        """First valid claim wins; later claims on the same ticket are no-ops."""
        ticket = await self.resolve_ticket(event)
        if ticket is None:
            return Result.failure("quoted message is not a ticket notification", NOT_FOUND)
        if not can_transition(TicketStatus(ticket.status), TicketStatus.IN_PROGRESS):
            logger.info(f"Claim on {ticket.id} ignored, status {ticket.status}")
            return Result.failure(f"ticket {ticket.id} already {ticket.status}", RACE_LOST)

        agent_id = event.sender_id
        # Same lock the dispatcher takes for the client chat.
        async with self.client_locks.hold(ticket.client_id):
            group_id, claimed = await self._allocate_and_claim(ticket.id, agent_id)
            if claimed:
                record = SessionRecord(
                    ticket_id=ticket.id,
                    client_id=ticket.client_id,
                    client_name=ticket.client_name,
                    assigned_group_id=group_id,
                    agent_id=agent_id,
                    last_activity_at=datetime.now(timezone.utc),
                )
                await self._start_session(record)
                await self.store.delete_state(ticket.client_id)

        if group_id is None:
            await send_best_effort(self.transport, self.triage_chat_id, NO_AGENTS_NOTICE.format(ticket_id=ticket.id))
            await alert_warning("Pool de soporte agotado", {"ticket_id": ticket.id, "pool": self.pool.snapshot()})
            return Result.failure("no free support group", NO_AGENTS)
        if not claimed:
            logger.info(f"Claim on {ticket.id} lost the race", extra={"context": {"agent_id": agent_id}})
            return Result.failure(f"ticket {ticket.id} claimed by another agent", RACE_LOST)

        logger.info(
            "Ticket claimed",
            extra={"context": {"ticket_id": ticket.id, "agent_id": agent_id, "group_id": group_id}},
        )

        agent_name = event.sender_name or agent_id.split("@")[0]
        await send_best_effort(
            self.transport,
            self.triage_chat_id,
            f"✅ Ticket #{ticket.id} tomado por {agent_name}.",
        )
        await send_best_effort(
            self.transport,
            group_id,
            format_case_brief(ticket.id, ticket.client_name, ticket.client_id, ticket.initial_message),
        )
        await send_best_effort(self.transport, ticket.client_id, CLIENT_AGENT_JOINED)
        return Result.success(record)

    async def _allocate_and_claim(self, ticket_id: str, agent_id: str) -> tuple[Optional[str], bool]:
        """Pick a free group and move the ticket to in_progress as one step under the pool lock."""
        claimed = False
        async with self.pool.lock:
            group_id = self.pool.allocate()
            if group_id is not None:
                try:
                    claimed = await asyncio.to_thread(self.records.claim_ticket, ticket_id, agent_id, group_id)
                finally:
                    if not claimed:
                        self.pool.release(group_id)
        return group_id, claimed

    async def _start_session(self, record: SessionRecord) -> None:
        try:
            await self.lifecycle.start(record)
        except StoreError:
            logger.error(f"Session start failed for {record.ticket_id}, reverting claim")
            async with self.pool.lock:
                self.pool.release(record.assigned_group_id)
            await asyncio.to_thread(self.records.revert_claim, record.ticket_id, record.assigned_group_id)
            raise
