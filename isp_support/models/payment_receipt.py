import uuid

from sqlalchemy import JSON, Column, DateTime, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from isp_support.database import Base


class PaymentReceipt(Base):
    __tablename__ = "payment_receipts"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    sender_id = Column(String(64), nullable=False)
    client_id = Column(String(64))  # billing client id once bound
    amount = Column(Numeric(12, 2))
    reference = Column(Text)
    paid_at = Column(Text)
    media_ref = Column(Text)
    analysis = Column(JSON().with_variant(JSONB, "postgresql"), default=dict)
    status = Column(String(20), nullable=False, default="unassigned")  # unassigned, assigned, manual_review
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))
