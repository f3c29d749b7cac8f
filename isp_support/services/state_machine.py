from enum import Enum


class TicketStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


OPEN_STATUSES = (TicketStatus.PENDING.value, TicketStatus.IN_PROGRESS.value)

VALID_TRANSITIONS = {
    TicketStatus.PENDING: [TicketStatus.IN_PROGRESS, TicketStatus.CLOSED],
    TicketStatus.IN_PROGRESS: [TicketStatus.CLOSED],
    TicketStatus.CLOSED: [],
}


class ConversationStep(str, Enum):
    NONE = "none"
    AWAITING_IDENTIFICATION = "awaiting_identification"
    SALES_GET_NAME = "sales_get_name"
    AWAITING_SALES_CONFIRMATION = "awaiting_sales_confirmation"
    MENU_NAVIGATION = "menu_navigation"
    AWAITING_INVOICE_SELECTION = "awaiting_invoice_selection"
    AWAITING_QR_CONFIRMATION = "awaiting_qr_confirmation"
    AWAITING_DNI_FOR_RECEIPT = "awaiting_dni_for_receipt"
    AWAITING_AGENT = "awaiting_agent"


class CloseReason(str, Enum):
    AGENT = "resuelto por el agente"
    INACTIVITY = "inactividad"


class InvalidTransitionError(Exception):
    def __init__(self, from_state: TicketStatus, to_state: TicketStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: TicketStatus, to_state: TicketStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: TicketStatus, to_state: TicketStatus) -> TicketStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def claim(current_state: TicketStatus) -> TicketStatus:
    """Agent claims a pending ticket."""
    return transition(current_state, TicketStatus.IN_PROGRESS)


def close(current_state: TicketStatus) -> TicketStatus:
    """Close the ticket. Closure is terminal."""
    return transition(current_state, TicketStatus.CLOSED)


def is_open(status: str) -> bool:
    return status in OPEN_STATUSES
