import uuid

from sqlalchemy import Column, DateTime, String, Text

from isp_support.database import Base


class Lead(Base):
    __tablename__ = "leads"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    client_id = Column(String(64), nullable=False, index=True)
    name = Column(Text)
    status = Column(String(20), nullable=False, default="prospect")  # prospect, qualified, declined
    summary = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))
