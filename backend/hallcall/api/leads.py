from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
import logging

from ..db import get_db
from ..schemas.pydantic_schemas import LeadUpdate
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()


def _matches_search(lead, needle: str) -> bool:
    haystack = " ".join(str(lead.get(k) or "") for k in ("contact_name", "contact_phone", "contact_email",
                                                           "contact_company"))
    return needle in haystack.lower()


@router.get("")
async def list_leads(
    status: Optional[str] = None,
    interest: Optional[int] = Query(default=None, ge=1, le=5),
    search: Optional[str] = None,
    agent_id: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=25, ge=1, le=100),
    user=Depends(get_current_user),
):
    """Leads qualified by the commercial agents, newest first."""
    filters = [("eq", "user_id", user["id"])]
    if status:
        filters.append(("eq", "status", status))
    if interest:
        filters.append(("gte", "interest_level", interest))
    if agent_id:
        filters.append(("eq", "agent_id", agent_id))
    leads = get_db().select("leads", filters, order="created_at", desc=True)
    if search and search.strip():
        leads = [lead for lead in leads if _matches_search(lead, search.strip().lower())]
    start = (page - 1) * page_size
    return {"leads": leads[start:start + page_size], "total": len(leads), "page": page, "page_size": page_size}


@router.patch("/{lead_id}")
async def update_lead(lead_id: str, body: LeadUpdate, user=Depends(get_current_user)):
    lead = get_db().update_owned("leads", user["id"], lead_id, body.model_dump(exclude_unset=True))
    if not lead:
        raise HTTPException(status_code=404, detail="Lead introuvable")
    return {"lead": lead}
