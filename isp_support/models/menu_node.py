from sqlalchemy import Column, Integer, String, Text

from isp_support.database import Base


class MenuNode(Base):
    __tablename__ = "menu_nodes"

    id = Column(String(64), primary_key=True)
    parent_id = Column(String(64), index=True)  # None for the root node
    order = Column("position", Integer, nullable=False, default=0)
    title = Column(Text, nullable=False)
    action = Column(String(30), nullable=False, default="submenu")  # submenu, reply, ticket, invoice_payment, account_status
    reply_text = Column(Text)
