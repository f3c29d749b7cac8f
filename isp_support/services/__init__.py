from isp_support.services.result import Result
from isp_support.services.state_machine import (
    CloseReason,
    ConversationStep,
    InvalidTransitionError,
    TicketStatus,
    can_transition,
    claim,
    close,
    transition,
)
