from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from isp_support.logging_config import get_logger
from isp_support.models import Faq, Lead, MenuNode, PaymentReceipt, Ticket
from isp_support.services.errors import StoreError
from isp_support.services.state_machine import OPEN_STATUSES, TicketStatus, claim, close

logger = get_logger("ticket_store")

ROOT_MENU_ID = "principal"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value).replace("$", "").replace(",", ".").strip())
    except (InvalidOperation, ValueError):
        return None


class RecordStore:
    """Durable records: tickets, menu tree, FAQs, leads and payment receipts."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    # Tickets

    def create_ticket(
        self,
        client_id: str,
        client_name: Optional[str],
        initial_message: str,
        sentiment: str = "neutro",
        intent: Optional[str] = None,
    ) -> Ticket:
        try:
            with self._session() as db:
                ticket = Ticket(
                    client_id=client_id,
                    client_name=client_name,
                    initial_message=initial_message,
                    sentiment=sentiment,
                    intent=intent,
                    status=TicketStatus.PENDING.value,
                    created_at=_now(),
                )
                db.add(ticket)
                db.commit()
                db.refresh(ticket)
                logger.info(f"Ticket {ticket.id} created for {client_id}")
                return ticket
        except SQLAlchemyError as exc:
            raise StoreError("create_ticket", str(exc)) from exc

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        try:
            with self._session() as db:
                return db.get(Ticket, ticket_id)
        except SQLAlchemyError as exc:
            raise StoreError("get_ticket", str(exc)) from exc

    def find_open_ticket(self, client_id: str) -> Optional[Ticket]:
        try:
            with self._session() as db:
                return (
                    db.query(Ticket)
                    .filter(Ticket.client_id == client_id, Ticket.status.in_(OPEN_STATUSES))
                    .order_by(Ticket.created_at.desc())
                    .first()
                )
        except SQLAlchemyError as exc:
            raise StoreError("find_open_ticket", str(exc)) from exc

    def find_ticket_by_notification(self, message_id: str) -> Optional[Ticket]:
        try:
            with self._session() as db:
                return db.query(Ticket).filter(Ticket.notification_message_id == message_id).first()
        except SQLAlchemyError as exc:
            raise StoreError("find_ticket_by_notification", str(exc)) from exc

    def upsert_ticket(self, ticket_id: str, **fields) -> None:
        """Merge fields into an existing ticket row."""
        try:
            with self._session() as db:
                ticket = db.get(Ticket, ticket_id)
                if ticket is None:
                    ticket = Ticket(id=ticket_id, created_at=_now(), **fields)
                    db.add(ticket)
                else:
                    for key, value in fields.items():
                        setattr(ticket, key, value)
                db.commit()
        except SQLAlchemyError as exc:
            raise StoreError("upsert_ticket", str(exc)) from exc

    def claim_ticket(self, ticket_id: str, agent_id: str, group_id: str) -> bool:
        """Compare-and-swap pending -> in_progress. False when another claim won."""
        try:
            with self._session() as db:
                result = db.execute(
                    update(Ticket)
                    .where(Ticket.id == ticket_id, Ticket.status == TicketStatus.PENDING.value)
                    .values(
                        status=claim(TicketStatus.PENDING).value,
                        assigned_agent_id=agent_id,
                        assigned_group_id=group_id,
                        claimed_at=_now(),
                    )
                )
                db.commit()
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise StoreError("claim_ticket", str(exc)) from exc

    def revert_claim(self, ticket_id: str, group_id: str) -> bool:
        """Undo a claim whose session could not be started; the ticket is pending again."""
        try:
            with self._session() as db:
                result = db.execute(
                    update(Ticket)
                    .where(
                        Ticket.id == ticket_id,
                        Ticket.status == TicketStatus.IN_PROGRESS.value,
                        Ticket.assigned_group_id == group_id,
                    )
                    .values(
                        status=TicketStatus.PENDING.value,
                        assigned_agent_id=None,
                        assigned_group_id=None,
                        claimed_at=None,
                    )
                )
                db.commit()
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise StoreError("revert_claim", str(exc)) from exc

    def close_ticket(self, ticket_id: str, reason: str) -> bool:
        try:
            with self._session() as db:
                result = db.execute(
                    update(Ticket)
                    .where(Ticket.id == ticket_id, Ticket.status != TicketStatus.CLOSED.value)
                    .values(status=close(TicketStatus.IN_PROGRESS).value, closed_at=_now(), close_reason=reason)
                )
                db.commit()
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise StoreError("close_ticket", str(exc)) from exc

    def list_tickets(self, status: Optional[str] = None, limit: int = 100) -> list[Ticket]:
        try:
            with self._session() as db:
                query = db.query(Ticket)
                if status:
                    query = query.filter(Ticket.status == status)
                return query.order_by(Ticket.created_at.desc()).limit(limit).all()
        except SQLAlchemyError as exc:
            raise StoreError("list_tickets", str(exc)) from exc

    # Menu tree

    def get_menu_node(self, node_id: str) -> Optional[MenuNode]:
        try:
            with self._session() as db:
                return db.get(MenuNode, node_id)
        except SQLAlchemyError as exc:
            raise StoreError("get_menu_node", str(exc)) from exc

    def list_menu_children(self, parent_id: str) -> list[MenuNode]:
        try:
            with self._session() as db:
                return db.query(MenuNode).filter(MenuNode.parent_id == parent_id).order_by(MenuNode.order).all()
        except SQLAlchemyError as exc:
            raise StoreError("list_menu_children", str(exc)) from exc

    def list_faqs(self, category: str) -> list[dict]:
        try:
            with self._session() as db:
                rows = db.query(Faq).filter(Faq.category == category, Faq.is_active.is_(True)).all()
                return [{"question": row.question, "answer": row.answer} for row in rows]
        except SQLAlchemyError as exc:
            raise StoreError("list_faqs", str(exc)) from exc

    # Leads

    def create_lead(self, client_id: str, name: str) -> Lead:
        try:
            with self._session() as db:
                lead = Lead(client_id=client_id, name=name, status="prospect", created_at=_now())
                db.add(lead)
                db.commit()
                db.refresh(lead)
                return lead
        except SQLAlchemyError as exc:
            raise StoreError("create_lead", str(exc)) from exc

    def update_lead(self, lead_id: str, status: str, summary: Optional[str] = None) -> None:
        try:
            with self._session() as db:
                lead = db.get(Lead, lead_id)
                if lead is None:
                    logger.warning(f"Lead {lead_id} not found")
                    return
                lead.status = status
                if summary is not None:
                    lead.summary = summary
                lead.updated_at = _now()
                db.commit()
        except SQLAlchemyError as exc:
            raise StoreError("update_lead", str(exc)) from exc

    # Payment receipts

    def create_receipt(
        self,
        sender_id: str,
        analysis: dict,
        media_ref: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> PaymentReceipt:
        try:
            with self._session() as db:
                receipt = PaymentReceipt(
                    sender_id=sender_id,
                    client_id=client_id,
                    amount=_to_decimal(analysis.get("monto")),
                    reference=analysis.get("referencia"),
                    paid_at=analysis.get("fecha"),
                    media_ref=media_ref,
                    analysis=analysis,
                    status="assigned" if client_id else "unassigned",
                    created_at=_now(),
                )
                db.add(receipt)
                db.commit()
                db.refresh(receipt)
                return receipt
        except SQLAlchemyError as exc:
            raise StoreError("create_receipt", str(exc)) from exc

    def update_receipt(self, receipt_id: str, status: str, client_id: Optional[str] = None) -> bool:
        try:
            with self._session() as db:
                receipt = db.get(PaymentReceipt, receipt_id)
                if receipt is None:
                    return False
                receipt.status = status
                if client_id is not None:
                    receipt.client_id = client_id
                receipt.updated_at = _now()
                db.commit()
                return True
        except SQLAlchemyError as exc:
            raise StoreError("update_receipt", str(exc)) from exc
