import asyncio
from typing import Optional

from isp_support.logging_config import get_logger
from isp_support.schemas.conversation import MenuOption
from isp_support.services.ticket_store import ROOT_MENU_ID, RecordStore

logger = get_logger("menu_service")

BACK_OPTION = "0. Volver al menú principal"
DEFAULT_MENU_TITLE = "Elegí una opción respondiendo con el número:"


class MenuAction:
    SUBMENU = "submenu"
    REPLY = "reply"
    TICKET = "ticket"
    INVOICE_PAYMENT = "invoice_payment"
    ACCOUNT_STATUS = "account_status"


def is_numeric_option(text: str) -> bool:
    """Strict all-digit check; '3.' or ' 3)' are not options."""
    return bool(text) and text.isascii() and text.isdigit()


def find_option(options: list[MenuOption], order: int) -> Optional[MenuOption]:
    for option in options:
        if option.order == order:
            return option
    return None


def render_menu(title: Optional[str], options: list[MenuOption], parent_id: str) -> str:
    lines = [f"*{title}*" if title else DEFAULT_MENU_TITLE, ""]
    lines.extend(f"{option.order}. {option.title}" for option in options)
    if parent_id != ROOT_MENU_ID:
        lines.append(BACK_OPTION)
    return "\n".join(lines)


class MenuResolver:
    """Ordered sibling lists from the menu tree, rendered as numbered text."""

    def __init__(self, records: RecordStore):
        self.records = records

    async def load(self, parent_id: str = ROOT_MENU_ID) -> tuple[list[MenuOption], str]:
        """Options under ``parent_id`` and their rendered text."""
        node = await asyncio.to_thread(self.records.get_menu_node, parent_id)
        children = await asyncio.to_thread(self.records.list_menu_children, parent_id)
        options = [
            MenuOption(id=child.id, order=child.order, title=child.title, action=child.action, reply_text=child.reply_text)
            for child in children
        ]
        if not options:
            logger.warning(f"Menu node {parent_id} has no children")
        return options, render_menu(node.title if node else None, options, parent_id)
