from isp_support.models.faq import Faq
from isp_support.models.lead import Lead
from isp_support.models.menu_node import MenuNode
from isp_support.models.payment_receipt import PaymentReceipt
from isp_support.models.ticket import Ticket

__all__ = [
    "Ticket",
    "MenuNode",
    "Faq",
    "Lead",
    "PaymentReceipt",
]
