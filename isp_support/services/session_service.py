"""Lifecycle of human-handled sessions: inactivity timers, closing and group commands."""

import asyncio
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from isp_support.logging_config import get_logger
from isp_support.schemas.session import PendingAppointment, SessionRecord
from isp_support.services.ai_service import AIService
from isp_support.services.alert_service import alert_error
from isp_support.services.calendar_service import CalendarService
from isp_support.services.errors import StoreError
from isp_support.services.locks import KeyedLocks
from isp_support.services.pool_service import SupportGroupPool
from isp_support.services.session_store import SessionStore, session_group_key
from isp_support.services.state_machine import CloseReason
from isp_support.services.ticket_store import RecordStore
from isp_support.services.transport import Transport, send_best_effort

logger = get_logger("session_service")

WEEKDAY_NAMES = ("lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo")

AGENDAR_USAGE = "Uso: /agendar <fecha y hora>, por ejemplo: /agendar mañana a las 10"
AGENDAR_UNPARSED = "No pude interpretar la fecha. Probá con algo como: /agendar viernes a las 15"

CLOSE_RETRY_SECONDS = 60


def format_appointment(start: datetime) -> str:
    return f"{WEEKDAY_NAMES[start.weekday()]} {start:%d/%m} a las {start:%H:%M}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionLifecycle:
    """Owns the inactivity timer of every in-progress session.

    Each (re)arm bumps a per-ticket version; a timer only closes the session
    if its version is still current when it fires.
    """

    def __init__(
        self,
        store: SessionStore,
        records: RecordStore,
        pool: SupportGroupPool,
        transport: Transport,
        ai: AIService,
        calendar: Optional[CalendarService] = None,
        timeout_seconds: float = 900,
        tz: str = "UTC",
    ):
        self.store = store
        self.records = records
        self.pool = pool
        self.transport = transport
        self.ai = ai
        self.calendar = calendar
        self.timeout_seconds = timeout_seconds
        self.tz = ZoneInfo(tz)
        self._versions: dict[str, int] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._close_locks = KeyedLocks()

    # Timers

    def _arm(self, ticket_id: str, delay: float) -> None:
        version = self._versions.get(ticket_id, 0) + 1
        self._versions[ticket_id] = version
        self._cancel_task(ticket_id)
        self._timers[ticket_id] = asyncio.create_task(self._expire(ticket_id, version, max(delay, 0)))

    def _cancel_task(self, ticket_id: str) -> None:
        task = self._timers.pop(ticket_id, None)
        # A firing timer closes its own session; never cancel it from inside.
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _disarm(self, ticket_id: str) -> None:
        self._versions.pop(ticket_id, None)
        self._cancel_task(ticket_id)

    async def _expire(self, ticket_id: str, version: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._versions.get(ticket_id) != version:
            return
        logger.info("Session inactivity timeout", extra={"context": {"ticket_id": ticket_id}})
        try:
            await self.close(ticket_id, CloseReason.INACTIVITY)
        except StoreError as e:
            logger.error(f"Inactivity close failed for {ticket_id}, retrying in {CLOSE_RETRY_SECONDS}s: {e}")
            await alert_error("Cierre por inactividad falló", {"ticket_id": ticket_id, "error": str(e)})
            self._arm(ticket_id, CLOSE_RETRY_SECONDS)

    def has_timer(self, ticket_id: str) -> bool:
        return ticket_id in self._versions

    async def start(self, record: SessionRecord) -> None:
        """Persist a freshly claimed session and arm its timer."""
        await self.store.save_session(record)
        self._arm(record.ticket_id, self.timeout_seconds)

    async def _update_if_open(self, ticket_id: str, **changes) -> Optional[SessionRecord]:
        """Change only the given fields of the stored record, unless the session was closed meanwhile."""
        async with self._close_locks.hold(ticket_id):
            stored = await self.store.get_session(ticket_id)
            if stored is None:
                return None
            for field, value in changes.items():
                setattr(stored, field, value)
            await self.store.save_session(stored)
            return stored

    async def reset_timer(self, record: SessionRecord) -> None:
        """Record activity and push the inactivity deadline a full window ahead."""
        record.last_activity_at = _now()
        if await self._update_if_open(record.ticket_id, last_activity_at=record.last_activity_at) is not None:
            self._arm(record.ticket_id, self.timeout_seconds)

    async def _take_appointment(self, ticket_id: str) -> Optional[PendingAppointment]:
        async with self._close_locks.hold(ticket_id):
            stored = await self.store.get_session(ticket_id)
            if stored is None or stored.pending_appointment is None:
                return None
            appointment = stored.pending_appointment
            stored.pending_appointment = None
            await self.store.save_session(stored)
            return appointment

    # Closing

    async def close(self, ticket_id: str, reason: CloseReason) -> bool:
        """Close a session once. Returns False when it was already closed.

        The ticket is closed in SQL before the mirrors go away, so a failed
        close leaves the session in place and can be retried.
        """
        async with self._close_locks.hold(ticket_id):
            record = await self.store.get_session(ticket_id)
            if record is None:
                self._disarm(ticket_id)
                logger.info(f"Session {ticket_id} already closed")
                return False

            await asyncio.to_thread(self.records.close_ticket, ticket_id, reason.value)
            self._disarm(ticket_id)
            await self.store.delete_session(record)
            async with self.pool.lock:
                self.pool.release(record.assigned_group_id)

            logger.info(
                "Session closed",
                extra={"context": {"ticket_id": ticket_id, "reason": reason.value, "group_id": record.assigned_group_id}},
            )
            await send_best_effort(
                self.transport,
                record.client_id,
                f"Tu caso #{ticket_id} fue cerrado ({reason.value}). ¡Gracias por comunicarte! "
                "Si necesitás algo más, escribinos cuando quieras.",
            )
            await send_best_effort(
                self.transport,
                record.assigned_group_id,
                f"✅ Caso #{ticket_id} cerrado: {reason.value}. El grupo queda libre.",
            )
            return True

    # Group commands

    async def handle_group_command(self, record: SessionRecord, text: str) -> bool:
        """/fin and /agendar. Returns True when the text was a command."""
        command, _, argument = text.strip().partition(" ")
        command = command.lower()
        if command == "/fin":
            await self.close(record.ticket_id, CloseReason.AGENT)
            return True
        if command == "/agendar":
            await self._propose_appointment(record, argument.strip())
            return True
        return False

    async def _propose_appointment(self, record: SessionRecord, text: str) -> None:
        if not text:
            await send_best_effort(self.transport, record.assigned_group_id, AGENDAR_USAGE)
            return
        parsed = await self.ai.parse_appointment(text, datetime.now(self.tz))
        if parsed is None:
            await send_best_effort(self.transport, record.assigned_group_id, AGENDAR_UNPARSED)
            return

        start, end = parsed
        appointment = PendingAppointment(starts_at=start, ends_at=end, source_text=text)
        if await self._update_if_open(record.ticket_id, pending_appointment=appointment) is None:
            return
        record.pending_appointment = appointment
        logger.info(
            "Appointment proposed",
            extra={"context": {"ticket_id": record.ticket_id, "starts_at": start.isoformat()}},
        )
        await send_best_effort(
            self.transport,
            record.assigned_group_id,
            f"📅 Propuesta de visita: *{format_appointment(start)}*.\n¿Confirmás? Respondé SI o NO.",
        )

    async def handle_appointment_answer(self, record: SessionRecord, text: str) -> bool:
        """Consume one yes/no answer for a pending appointment."""
        appointment = await self._take_appointment(record.ticket_id)
        if appointment is None:
            return False
        record.pending_appointment = None

        answer = await self.ai.analyze_confirmation(text)
        if answer != "SI":
            await send_best_effort(self.transport, record.assigned_group_id, "Propuesta de visita cancelada.")
            return True

        when = format_appointment(appointment.starts_at.astimezone(self.tz))
        if self.calendar is None:
            await send_best_effort(self.transport, record.assigned_group_id, "El calendario no está configurado.")
            return True
        result = await self.calendar.create_event(
            title=f"Visita técnica - {record.client_name or record.client_id}",
            description=f"Caso #{record.ticket_id}. Teléfono: {record.client_id.split('@')[0]}. {appointment.source_text}",
            start=appointment.starts_at,
            end=appointment.ends_at,
        )
        if not result.ok:
            await send_best_effort(self.transport, record.assigned_group_id, f"❌ {result.error}.")
            return True
        await send_best_effort(self.transport, record.assigned_group_id, f"✅ Visita agendada para {when}.")
        await send_best_effort(self.transport, record.client_id, f"📅 Agendamos la visita técnica para el {when}.")
        return True

    # Process lifecycle

    async def recover(self) -> int:
        """Re-arm timers and pool state for sessions that survived a restart."""
        sessions = {record.ticket_id: record for record in await self.store.list_sessions()}
        busy = []
        for group_id, ticket_id in (await self.store.busy_groups()).items():
            if ticket_id in sessions:
                busy.append(group_id)
            else:
                logger.warning(f"Dropping stale group pointer {group_id} -> {ticket_id}")
                await self.store.delete(session_group_key(group_id))
        self.pool.restore(busy)

        now = _now()
        for record in sessions.values():
            elapsed = (now - record.last_activity_at).total_seconds()
            self._arm(record.ticket_id, self.timeout_seconds - elapsed)
        logger.info(f"Recovered {len(sessions)} session(s)", extra={"context": {"pool": self.pool.snapshot()}})
        return len(sessions)

    def shutdown(self) -> None:
        for ticket_id in list(self._timers):
            self._disarm(ticket_id)
