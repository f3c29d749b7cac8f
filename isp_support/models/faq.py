import uuid

from sqlalchemy import Boolean, Column, String, Text

from isp_support.database import Base


class Faq(Base):
    """Knowledge entry used by the support and sales dialogues."""

    __tablename__ = "faqs"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    category = Column(String(20), nullable=False, index=True)  # soporte, ventas
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
