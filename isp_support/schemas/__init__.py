from isp_support.schemas.conversation import ClientProfile, ConversationState, Invoice, MenuOption
from isp_support.schemas.session import PendingAppointment, SessionRecord
from isp_support.schemas.ticket import TicketListResponse, TicketOut
from isp_support.schemas.webhook import InboundEvent, WebhookResponse

__all__ = [
    "ClientProfile",
    "ConversationState",
    "Invoice",
    "MenuOption",
    "SessionRecord",
    "PendingAppointment",
    "InboundEvent",
    "WebhookResponse",
    "TicketOut",
    "TicketListResponse",
]
