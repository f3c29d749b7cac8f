import asyncio
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from isp_support.schemas.ticket import TicketListResponse, TicketOut
from isp_support.services.state_machine import TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


@router.get("", response_model=TicketListResponse)
async def list_tickets(
    request: Request,
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
):
    """Read-only ticket listing, newest first."""
    if status is not None and status not in {s.value for s in TicketStatus}:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    records = request.app.state.runtime.records
    tickets = await asyncio.to_thread(records.list_tickets, status, limit)
    return TicketListResponse(count=len(tickets), tickets=[TicketOut.model_validate(t) for t in tickets])


@router.get("/{ticket_id}", response_model=TicketOut)
async def get_ticket(ticket_id: str, request: Request):
    ticket = await asyncio.to_thread(request.app.state.runtime.records.get_ticket, ticket_id)
    if ticket is None:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return TicketOut.model_validate(ticket)
