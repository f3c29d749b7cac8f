from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class TicketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    client_name: Optional[str] = None
    initial_message: Optional[str] = None
    sentiment: Optional[str] = None
    intent: Optional[str] = None
    status: str
    assigned_agent_id: Optional[str] = None
    assigned_group_id: Optional[str] = None
    created_at: datetime
    claimed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None


class TicketListResponse(BaseModel):
    count: int
    tickets: list[TicketOut]
