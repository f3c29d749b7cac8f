"""Routes inbound transport events to triage, group commands, relay or the conversation engine."""

from isp_support.logging_config import get_logger
from isp_support.schemas.webhook import InboundEvent
from isp_support.services.alert_service import alert_error
from isp_support.services.conversation_service import ConversationEngine
from isp_support.services.errors import StoreError
from isp_support.services.pool_service import SupportGroupPool
from isp_support.services.relay_service import Relay
from isp_support.services.session_service import SessionLifecycle
from isp_support.services.session_store import SessionStore
from isp_support.services.triage_service import TriageDesk

logger = get_logger("dispatcher")

CLIENT_RESET_COMMAND = "!fin"


class Route:
    IGNORED = "ignored"
    CLAIM = "claim"
    GROUP_COMMAND = "group_command"
    APPOINTMENT_ANSWER = "appointment_answer"
    RELAY_TO_CLIENT = "relay_to_client"
    RELAY_TO_AGENT = "relay_to_agent"
    CLIENT_RESET = "client_reset"
    CONVERSATION = "conversation"
    ERROR = "error"


class Dispatcher:
    """Serializes work per chat; different chats run concurrently."""

    def __init__(
        self,
        store: SessionStore,
        pool: SupportGroupPool,
        engine: ConversationEngine,
        triage: TriageDesk,
        lifecycle: SessionLifecycle,
        relay: Relay,
    ):
        self.store = store
        self.pool = pool
        self.engine = engine
        self.triage = triage
        self.lifecycle = lifecycle
        self.relay = relay
        self._locks = triage.client_locks

    async def dispatch(self, event: InboundEvent) -> str:
        if event.from_me:
            return Route.IGNORED
        async with self._locks.hold(event.chat_id):
            try:
                if event.is_group:
                    return await self._dispatch_group(event)
                return await self._dispatch_private(event)
            except StoreError as e:
                logger.error(f"Store failure while handling {event.chat_id}: {e}")
                await alert_error(
                    "Fallo de almacenamiento procesando mensaje",
                    {"chat_id": event.chat_id, "operation": e.operation, "error": e.message},
                )
                if not event.is_group:
                    await self.engine.apologize(event.chat_id)
                return Route.ERROR

    async def _dispatch_group(self, event: InboundEvent) -> str:
        if event.chat_id == self.triage.triage_chat_id:
            if not (event.quoted_message_id or event.quoted_body):
                return Route.IGNORED
            result = await self.triage.claim(event)
            logger.info(
                "Claim processed",
                extra={"context": {"ok": result.ok, "code": result.error_code, "agent_id": event.sender_id}},
            )
            return Route.CLAIM

        if not self.pool.is_member(event.chat_id):
            return Route.IGNORED
        record = await self.store.find_session_by_group(event.chat_id)
        if record is None:
            return Route.IGNORED

        if await self.lifecycle.handle_group_command(record, event.text):
            return Route.GROUP_COMMAND
        if record.pending_appointment is not None and not event.has_media:
            await self.lifecycle.handle_appointment_answer(record, event.text)
            return Route.APPOINTMENT_ANSWER
        await self.relay.relay_to_client(record, event)
        return Route.RELAY_TO_CLIENT

    async def _dispatch_private(self, event: InboundEvent) -> str:
        if event.text.lower() == CLIENT_RESET_COMMAND:
            await self.engine.reset(event.chat_id)
            return Route.CLIENT_RESET

        record = await self.store.find_session_by_client(event.chat_id)
        if record is not None:
            await self.relay.relay_to_agent(record, event)
            return Route.RELAY_TO_AGENT

        await self.engine.handle(event)
        return Route.CONVERSATION
