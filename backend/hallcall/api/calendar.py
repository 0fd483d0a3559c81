from fastapi import APIRouter, Depends, HTTPException
import logging

from ..db import get_db
from ..schemas.pydantic_schemas import CalendarSyncRequest
from ..services.calendar import create_external_event, list_upcoming_events
from ..services.oauth import get_access_token
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sync")
async def sync_calendar(body: CalendarSyncRequest, user=Depends(get_current_user)):
    db = get_db()
    integration = db.get_calendar_integration(user["id"])
    if not integration:
        raise HTTPException(status_code=400, detail="Aucune integration calendrier active. Connectez Google ou Microsoft.")

    if body.action == "list":
        return {"events": await list_upcoming_events(db, integration)}

    if body.action == "create" and body.event:
        provider = integration["provider"]
        event = body.event.model_dump()
        token = await get_access_token(db, integration)
        created = await create_external_event(provider, token, event)
        db.insert("appointments", {
            "user_id": user["id"],
            "title": event["title"],
            "description": event.get("description") or "",
            "start_at": event["start_at"],
            "end_at": event["end_at"],
            "location": event.get("location") or "",
            "status": "scheduled",
            "external_event_id": created["event_id"],
            "external_calendar_id": provider,
        })
        logger.info(f"{provider} event {created['event_id']} created for user {user['id']}")
        return {"success": True, "externalEventId": created["event_id"]}

    raise HTTPException(status_code=400, detail="Action invalide. Utilisez 'list' ou 'create'")
