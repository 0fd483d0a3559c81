from fastapi import APIRouter, Depends, HTTPException
from typing import Optional
import logging

from ..db import get_db
from ..schemas.pydantic_schemas import TicketCommentCreate, TicketCreate, TicketUpdate
from ..services.orders import reference_number
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()

TICKETS = "support_tickets"


def _require_ticket(db, user_id: str, ticket_id: str):
    ticket = db.get_owned(TICKETS, user_id, ticket_id)
    if not ticket:
        raise HTTPException(status_code=404, detail="Ticket introuvable")
    return ticket


@router.get("")
async def list_tickets(status: Optional[str] = None, priority: Optional[str] = None,
                       user=Depends(get_current_user)):
    filters = [("eq", "user_id", user["id"])]
    if status:
        filters.append(("eq", "status", status))
    if priority:
        filters.append(("eq", "priority", priority))
    return {"tickets": get_db().select(TICKETS, filters, order="created_at", desc=True)}


@router.post("", status_code=201)
async def create_ticket(body: TicketCreate, user=Depends(get_current_user)):
    db = get_db()
    if body.contact_id and not db.get_owned("contacts", user["id"], body.contact_id):
        raise HTTPException(status_code=404, detail="Contact introuvable")
    ticket = db.create_owned(TICKETS, user["id"], dict(
        body.model_dump(),
        case_number=reference_number("SAV"),
        status="open",
    ))
    return {"ticket": ticket}


@router.get("/{ticket_id}")
async def get_ticket(ticket_id: str, user=Depends(get_current_user)):
    return {"ticket": _require_ticket(get_db(), user["id"], ticket_id)}


@router.patch("/{ticket_id}")
async def update_ticket(ticket_id: str, body: TicketUpdate, user=Depends(get_current_user)):
    db = get_db()
    _require_ticket(db, user["id"], ticket_id)
    return {"ticket": db.update_owned(TICKETS, user["id"], ticket_id, body.model_dump(exclude_unset=True))}


@router.delete("/{ticket_id}")
async def delete_ticket(ticket_id: str, user=Depends(get_current_user)):
    db = get_db()
    _require_ticket(db, user["id"], ticket_id)
    db.delete("ticket_comments", [("eq", "ticket_id", ticket_id)])
    db.delete_owned(TICKETS, user["id"], ticket_id)
    return {"success": True}


@router.get("/{ticket_id}/comments")
async def list_comments(ticket_id: str, user=Depends(get_current_user)):
    db = get_db()
    _require_ticket(db, user["id"], ticket_id)
    return {"comments": db.select("ticket_comments", [("eq", "ticket_id", ticket_id)], order="created_at")}


@router.post("/{ticket_id}/comments", status_code=201)
async def add_comment(ticket_id: str, body: TicketCommentCreate, user=Depends(get_current_user)):
    db = get_db()
    _require_ticket(db, user["id"], ticket_id)
    comment = db.insert("ticket_comments", dict(body.model_dump(), ticket_id=ticket_id, user_id=user["id"]))
    return {"comment": comment}
