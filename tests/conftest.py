import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from fnmatch import fnmatch  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from isp_support.config import Settings  # noqa: E402
from isp_support.database import Base  # noqa: E402
from isp_support.models import Faq, MenuNode  # noqa: E402
from isp_support.runtime import build_runtime  # noqa: E402
from isp_support.schemas.conversation import ClientProfile, Invoice, ServiceInfo  # noqa: E402
from isp_support.schemas.webhook import InboundEvent  # noqa: E402
from isp_support.services.errors import ClassifierError, TransportError  # noqa: E402
from isp_support.services.llm import LLMProvider, LLMResponse  # noqa: E402
from isp_support.services.result import NOT_FOUND, Result  # noqa: E402
from isp_support.services.ticket_store import ROOT_MENU_ID, RecordStore  # noqa: E402
from isp_support.services.transport import ChatMetadata, Transport, TransportMessage  # noqa: E402

TRIAGE_CHAT = "triage@g.us"
SUPPORT_GROUPS = ["soporte1@g.us", "soporte2@g.us"]
SALES_GROUP = "ventas@g.us"
KNOWN_CLIENT = "5493511234567@c.us"
UNKNOWN_CLIENT = "5493519999999@c.us"


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.ops.clear()
        return False

    def set(self, key, value, ex=None):
        self.ops.append(("set", key, value, ex))
        return self

    def delete(self, *keys):
        self.ops.append(("delete", keys))
        return self

    async def execute(self):
        self.redis.transactions += 1
        results = []
        for op in self.ops:
            if op[0] == "set":
                results.append(await self.redis.set(op[1], op[2], ex=op[3]))
            else:
                results.append(await self.redis.delete(*op[1]))
        self.ops.clear()
        return results


class FakeRedis:
    """In-memory stand-in for redis.asyncio with decode_responses=True."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.transactions = 0

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        if ex:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def scan_iter(self, match=None):
        for key in list(self.data):
            if match is None or fnmatch(key, match):
                yield key

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        return None


class FakeTransport(Transport):
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.media: list[tuple[str, object, Optional[str]]] = []
        self.quoted: dict[str, TransportMessage] = {}
        self.downloads: dict[str, tuple[bytes, str]] = {}
        self.failing_chats: set[str] = set()
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"msg-{self._counter}"

    async def send_text(self, chat_id, text):
        if chat_id in self.failing_chats:
            raise TransportError(chat_id, "gateway down")
        self.sent.append((chat_id, text))
        return self._next_id()

    async def send_media(self, chat_id, media, caption=None):
        if chat_id in self.failing_chats:
            raise TransportError(chat_id, "gateway down")
        self.media.append((chat_id, media, caption))
        return self._next_id()

    async def resolve_quoted(self, message_id):
        return self.quoted.get(message_id)

    async def get_chat_metadata(self, chat_id):
        return ChatMetadata(chat_id=chat_id, is_group=chat_id.endswith("@g.us"))

    async def download_media(self, media_ref):
        if media_ref not in self.downloads:
            raise TransportError(media_ref, "media not found")
        return self.downloads[media_ref]

    def texts_to(self, chat_id: str) -> list[str]:
        return [text for chat, text in self.sent if chat == chat_id]

    def last_text_to(self, chat_id: str) -> Optional[str]:
        texts = self.texts_to(chat_id)
        return texts[-1] if texts else None


class FakeLLMProvider(LLMProvider):
    """Returns scripted answers in order; raises once the script runs out."""

    def __init__(self, responses=None, transcript: str = ""):
        self.responses = list(responses or [])
        self.transcript = transcript
        self.calls: list[list[dict]] = []

    def generate(self, messages, model=None, temperature=0.7, max_tokens=1000, response_format=None):
        self.calls.append(messages)
        if not self.responses:
            raise ClassifierError("no scripted response")
        return LLMResponse(content=self.responses.pop(0), model=model or "fake")

    def transcribe_audio(self, *, audio_bytes, filename, mime_type=None):
        if not self.transcript:
            raise ClassifierError("no transcript")
        return self.transcript


class FakeBilling:
    def __init__(self, clients: Optional[dict[str, ClientProfile]] = None, invoices: Optional[list[Invoice]] = None):
        self.clients = clients or {}
        self.invoices = invoices if invoices is not None else []
        self.lookups: list[str] = []
        self.paid: list[tuple] = []

    async def get_client_details(self, identifier: str) -> Result[ClientProfile]:
        value = "".join(ch for ch in identifier if ch.isdigit())
        self.lookups.append(value)
        profile = self.clients.get(value)
        if profile is None:
            return Result.failure("No se encontraron datos para el identificador", NOT_FOUND)
        return Result.success(profile)

    async def list_pending_invoices(self, client: ClientProfile) -> Result[list[Invoice]]:
        return Result.success(list(self.invoices))

    async def register_payment(self, invoice_id: str, amount: float, transaction_id: str) -> Result[dict]:
        self.paid.append((invoice_id, amount, transaction_id))
        return Result.success({"estado": "exito"})


class FakePayments:
    def __init__(self, qr_data: Optional[str] = "00020101021243650016COM.MERCADOLIBRE"):
        self.qr_data = qr_data
        self.orders: list[Invoice] = []
        self.payments: dict[str, dict] = {}

    async def create_invoice_qr(self, invoice: Invoice, client_name: str) -> Result[str]:
        self.orders.append(invoice)
        if self.qr_data is None:
            return Result.failure("Error al generar QR", "http_error")
        return Result.success(self.qr_data)

    async def get_payment(self, payment_id: str) -> Result[dict]:
        payment = self.payments.get(payment_id)
        if payment is None:
            return Result.failure("status 404", "http_error")
        return Result.success(payment)


class FakeCalendar:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.events: list[dict] = []

    async def create_event(self, title, description, start, end) -> Result[str]:
        self.events.append({"title": title, "description": description, "start": start, "end": end})
        if not self.ok:
            return Result.failure("No se pudo agendar la visita en el calendario", "http_error")
        return Result.success("evt-1")


def seed_menu(records: RecordStore) -> None:
    nodes = [
        MenuNode(id=ROOT_MENU_ID, parent_id=None, order=0, title="Menú principal", action="submenu"),
        MenuNode(id="soporte", parent_id=ROOT_MENU_ID, order=1, title="Soporte técnico", action="submenu"),
        MenuNode(id="pagar", parent_id=ROOT_MENU_ID, order=2, title="Pagar factura", action="invoice_payment"),
        MenuNode(
            id="horarios",
            parent_id=ROOT_MENU_ID,
            order=5,
            title="Horarios de atención",
            action="reply",
            reply_text="Atendemos de lunes a viernes de 8 a 20 hs.",
        ),
        MenuNode(id="sin_internet", parent_id="soporte", order=1, title="No tengo internet", action="ticket"),
        MenuNode(id="estado", parent_id="soporte", order=2, title="Estado de mi servicio", action="account_status"),
    ]
    with records._session() as db:
        db.add_all(nodes)
        db.add(Faq(category="soporte", question="¿Cómo reinicio el router?", answer="Desenchufalo 30 segundos."))
        db.add(Faq(category="ventas", question="¿Qué planes hay?", answer="50, 100 y 300 megas."))
        db.commit()


@pytest.fixture
def records(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'records.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    store = RecordStore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))
    seed_menu(store)
    yield store
    engine.dispose()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def known_profile():
    return ClientProfile(
        id="1042",
        name="maria gomez",
        dni="30123456",
        mobile="3511234567",
        balance="4500",
        services=[
            ServiceInfo(
                plan="100 Megas",
                address="San Martín 123",
                emitter="Emisor Norte",
                emitter_status="OK ✅",
                antenna_status="ONLINE ✅",
            )
        ],
    )


@pytest.fixture
def billing(known_profile):
    return FakeBilling(
        clients={"3511234567": known_profile, "30123456": known_profile},
        invoices=[
            Invoice(id="901", due_date="2024-06-10", total="4.500,00", amount=4500.0),
            Invoice(id="877", due_date="2024-05-10", total="4.200,00", amount=4200.0),
        ],
    )


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        triage_group_id=TRIAGE_CHAT,
        support_group_ids=",".join(SUPPORT_GROUPS),
        sales_group_id=SALES_GROUP,
        session_timeout_seconds=60,
        conversation_ttl_seconds=3600,
        openai_api_key=None,
    )


@pytest.fixture
def llm():
    return FakeLLMProvider()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def runtime(test_settings, fake_redis, records, transport, llm, billing, calendar):
    return build_runtime(
        test_settings,
        fake_redis,
        records._session_factory,
        transport,
        llm=llm,
        billing=billing,
        payments=FakePayments(),
        calendar=calendar,
    )


async def open_session(runtime, client_id, agent_id="5493510000001@c.us", client_name="Ana Lopez"):
    """Create a ticket for ``client_id`` and have an agent claim it. Returns the SessionRecord."""
    ticket = await asyncio.to_thread(runtime.records.create_ticket, client_id, client_name, "No tengo internet")
    claim = InboundEvent(
        sender_id=agent_id,
        chat_id=TRIAGE_CHAT,
        is_group=True,
        body="yo",
        quoted_body=f"🔔 Nuevo ticket #{ticket.id}",
    )
    result = await runtime.triage.claim(claim)
    assert result.ok, result.error
    return result.value
