import uuid

from sqlalchemy import Column, DateTime, Index, String, Text

from isp_support.database import Base


def _new_ticket_id() -> str:
    return uuid.uuid4().hex[:12]


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(String(32), primary_key=True, default=_new_ticket_id)
    client_id = Column(String(64), nullable=False)
    client_name = Column(Text)
    initial_message = Column(Text)
    sentiment = Column(String(20), default="neutro")  # enojado, frustrado, neutro, contento
    intent = Column(String(30))  # ventas, soporte, pregunta_general
    status = Column(String(20), nullable=False, default="pending")  # pending, in_progress, closed
    assigned_agent_id = Column(String(64))
    assigned_group_id = Column(String(64))
    notification_message_id = Column(String(128))
    created_at = Column(DateTime(timezone=True), nullable=False)
    claimed_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    close_reason = Column(Text)

    __table_args__ = (Index("ix_tickets_client_status", "client_id", "status"),)
