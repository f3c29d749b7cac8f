from datetime import datetime
from typing import Optional

from pydantic import BaseModel

SESSION_SCHEMA_VERSION = 1


class PendingAppointment(BaseModel):
    starts_at: datetime
    ends_at: datetime
    source_text: str


class SessionRecord(BaseModel):
    schema_version: int = SESSION_SCHEMA_VERSION
    ticket_id: str
    client_id: str
    client_name: Optional[str] = None
    assigned_group_id: str
    agent_id: str
    last_activity_at: datetime
    pending_appointment: Optional[PendingAppointment] = None
