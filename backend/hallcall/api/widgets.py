from fastapi import APIRouter, Depends, HTTPException, Request, Response
from typing import Any, Dict, Optional
import logging

from ..db import get_db
from ..schemas.pydantic_schemas import WidgetCreate, WidgetUpdate
from ..services.voice_client import VendorAPIError, VoiceAgentClient, VoiceNotConfigured
from ..services.widget_script import generate_embed_script, is_origin_allowed
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()

# Embed endpoints are fetched from arbitrary customer sites
PUBLIC_CORS = {"Access-Control-Allow-Origin": "*"}


def _request_origin(request: Request) -> Optional[str]:
    return request.headers.get("origin") or request.headers.get("referer")


def _public_widget(vendor_agent_id: str) -> Optional[Dict[str, Any]]:
    db = get_db()
    agent = db.get_agent_by_vendor_id(vendor_agent_id)
    if not agent:
        return None
    return db.get_active_widget(agent["id"])


# Owner CRUD
@router.get("")
async def list_widgets(user=Depends(get_current_user)):
    return {"widgets": get_db().list_owned("widgets", user["id"])}


@router.post("", status_code=201)
async def create_widget(body: WidgetCreate, user=Depends(get_current_user)):
    db = get_db()
    if not db.get_owned("agents", user["id"], body.agent_id):
        raise HTTPException(status_code=404, detail="Agent introuvable")
    return {"widget": db.create_owned("widgets", user["id"], body.model_dump())}


@router.patch("/{widget_id}")
async def update_widget(widget_id: str, body: WidgetUpdate, user=Depends(get_current_user)):
    row = get_db().update_owned("widgets", user["id"], widget_id, body.model_dump(exclude_unset=True))
    if not row:
        raise HTTPException(status_code=404, detail="Widget introuvable")
    return {"widget": row}


@router.delete("/{widget_id}")
async def delete_widget(widget_id: str, user=Depends(get_current_user)):
    if not get_db().delete_owned("widgets", user["id"], widget_id):
        raise HTTPException(status_code=404, detail="Widget introuvable")
    return {"success": True}


# Public embed endpoints, called from third-party pages
@router.get("/config/{vendor_agent_id}")
async def widget_config(vendor_agent_id: str, request: Request, response: Response):
    response.headers.update(PUBLIC_CORS)
    widget = _public_widget(vendor_agent_id)
    if not widget:
        raise HTTPException(status_code=404, detail="Widget not found", headers=PUBLIC_CORS)
    origin = _request_origin(request)
    if not is_origin_allowed(origin, widget.get("domain_whitelist")):
        logger.warning(f"Widget {widget['id']} requested from unauthorized origin {origin}")
        raise HTTPException(status_code=403, detail="Domain not authorized", headers=PUBLIC_CORS)
    return {"config": widget.get("config") or {}, "name": widget.get("name")}


@router.get("/signed-url/{vendor_agent_id}")
async def widget_signed_url(vendor_agent_id: str, request: Request, response: Response):
    response.headers.update(PUBLIC_CORS)
    widget = _public_widget(vendor_agent_id)
    if not widget:
        raise HTTPException(status_code=403, detail="Widget not active", headers=PUBLIC_CORS)
    if not is_origin_allowed(_request_origin(request), widget.get("domain_whitelist")):
        raise HTTPException(status_code=403, detail="Domain not authorized", headers=PUBLIC_CORS)
    try:
        signed_url = await VoiceAgentClient().get_signed_url(vendor_agent_id)
    except VendorAPIError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message, headers=PUBLIC_CORS)
    except VoiceNotConfigured:
        raise HTTPException(status_code=500, detail="ELEVENLABS_API_KEY not configured", headers=PUBLIC_CORS)
    return {"signed_url": signed_url}


@router.get("/script/{vendor_agent_id}")
async def widget_script(vendor_agent_id: str, request: Request):
    proto = request.headers.get("x-forwarded-proto") or "https"
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    script = generate_embed_script(vendor_agent_id, f"{proto}://{host}")
    return Response(
        content=script,
        media_type="application/javascript",
        headers={
            "Cache-Control": "public, max-age=300",
            **PUBLIC_CORS,
        },
    )
