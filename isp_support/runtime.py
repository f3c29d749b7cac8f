"""Wiring of the routing engine. Everything stateful is created here once per process."""

from dataclasses import dataclass
from typing import Optional

from isp_support.config import Settings
from isp_support.services.ai_service import AIService
from isp_support.services.billing_service import BillingService
from isp_support.services.calendar_service import CalendarService
from isp_support.services.conversation_service import ConversationEngine
from isp_support.services.dispatcher import Dispatcher
from isp_support.services.event_bus import EventBus
from isp_support.services.llm import LLMProvider, OpenAIProvider
from isp_support.services.menu_service import MenuResolver
from isp_support.services.payment_service import PaymentService
from isp_support.services.pool_service import SupportGroupPool
from isp_support.services.relay_service import Relay
from isp_support.services.session_service import SessionLifecycle
from isp_support.services.session_store import SessionStore
from isp_support.services.ticket_store import RecordStore
from isp_support.services.transport import Transport
from isp_support.services.triage_service import TriageDesk


@dataclass
class Runtime:
    store: SessionStore
    records: RecordStore
    pool: SupportGroupPool
    lifecycle: SessionLifecycle
    triage: TriageDesk
    engine: ConversationEngine
    dispatcher: Dispatcher
    transport: Transport
    billing: BillingService
    payments: PaymentService
    redis_client: Optional[object] = None


def build_runtime(
    settings: Settings,
    redis_client,
    session_factory,
    transport: Transport,
    llm: Optional[LLMProvider] = None,
    billing: Optional[BillingService] = None,
    payments: Optional[PaymentService] = None,
    calendar: Optional[CalendarService] = None,
) -> Runtime:
    if llm is None and settings.openai_api_key:
        llm = OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.openai_model,
            timeout_seconds=settings.openai_timeout_seconds,
            max_attempts=settings.openai_max_attempts,
            retry_backoff_seconds=settings.openai_retry_backoff_seconds,
        )
    billing = billing or BillingService(
        settings.mkw_server_ip,
        settings.mkw_api_token,
        settings.emitter_device_map,
        payment_gateway=settings.mkw_payment_gateway,
    )
    payments = payments or PaymentService(settings.mp_access_token, settings.mp_user_id, settings.mp_external_pos_id)
    calendar = calendar or CalendarService(settings.calendar_id, settings.calendar_access_token, settings.timezone)

    bus = EventBus()
    store = SessionStore(redis_client, conversation_ttl_seconds=settings.conversation_ttl_seconds)
    records = RecordStore(session_factory)
    pool = SupportGroupPool(settings.support_groups)
    ai = AIService(llm, model=settings.openai_model)

    lifecycle = SessionLifecycle(
        store,
        records,
        pool,
        transport,
        ai,
        calendar=calendar,
        timeout_seconds=settings.session_timeout_seconds,
        tz=settings.timezone,
    )
    triage = TriageDesk(settings.triage_group_id, transport, records, store, pool, lifecycle, bus=bus)
    engine = ConversationEngine(
        store,
        records,
        MenuResolver(records),
        ai,
        billing,
        payments,
        transport,
        bus,
        sales_group_id=settings.sales_group_id or None,
    )
    dispatcher = Dispatcher(store, pool, engine, triage, lifecycle, Relay(transport, lifecycle))
    return Runtime(
        store=store,
        records=records,
        pool=pool,
        lifecycle=lifecycle,
        triage=triage,
        engine=engine,
        dispatcher=dispatcher,
        transport=transport,
        billing=billing,
        payments=payments,
        redis_client=redis_client,
    )
