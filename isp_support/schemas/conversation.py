from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from isp_support.services.state_machine import ConversationStep

CONVERSATION_SCHEMA_VERSION = 1


class ServiceInfo(BaseModel):
    plan: Optional[str] = None
    address: Optional[str] = None
    emitter: Optional[str] = None
    emitter_status: Optional[str] = None
    antenna_status: Optional[str] = None


class ClientProfile(BaseModel):
    id: str
    name: str
    dni: Optional[str] = None
    mobile: Optional[str] = None
    balance: Optional[str] = None
    services: list[ServiceInfo] = Field(default_factory=list)


class Invoice(BaseModel):
    id: str
    due_date: Optional[str] = None
    total: str
    amount: float = 0.0


class MenuOption(BaseModel):
    id: str
    order: int
    title: str
    action: str
    reply_text: Optional[str] = None


class ChatTurn(BaseModel):
    role: Literal["user", "model"]
    text: str


class ConversationState(BaseModel):
    schema_version: int = CONVERSATION_SCHEMA_VERSION
    step: ConversationStep = ConversationStep.NONE
    is_client: Optional[bool] = None
    client_profile: Optional[ClientProfile] = None
    prospect_name: Optional[str] = None
    lead_id: Optional[str] = None
    chat_history: list[ChatTurn] = Field(default_factory=list)
    current_menu_parent: Optional[str] = None
    current_menu_options: list[MenuOption] = Field(default_factory=list)
    pending_invoices: list[Invoice] = Field(default_factory=list)
    selected_invoice: Optional[Invoice] = None
    pending_receipt_id: Optional[str] = None
    ticket_id: Optional[str] = None

    def add_turn(self, role: str, text: str) -> None:
        self.chat_history.append(ChatTurn(role=role, text=text))

    def history_as_messages(self) -> list[dict[str, Any]]:
        return [{"role": turn.role, "text": turn.text} for turn in self.chat_history]
