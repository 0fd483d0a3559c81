from fastapi import APIRouter, Header, HTTPException, Request
from typing import Optional
import logging

from ..db import get_db
from ..services import commercial, orders, scheduling, support

logger = logging.getLogger(__name__)

router = APIRouter()

# family -> (config table, action handler)
FAMILIES = {
    "appointments": ("agent_rdv_config", scheduling.handle_action),
    "orders": ("agent_order_config", orders.handle_action),
    "support": ("agent_support_config", support.handle_action),
    "commercial": ("agent_commercial_config", commercial.handle_action),
}


async def _dispatch(request: Request, family: str, secret: Optional[str]):
    """Tool endpoint called by the voice agent during a call, authenticated by the agent's webhook secret."""
    if not secret:
        raise HTTPException(status_code=401, detail="Missing webhook secret")
    table, handle_action = FAMILIES[family]
    db = get_db()
    config = db.get_agent_config_by_secret(table, secret)
    if not config:
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Corps de requete invalide")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Corps de requete invalide")
    logger.info(f"{family} webhook action={body.get('action')} for user {config.get('user_id')}")
    return {"result": await handle_action(db, config, body)}


@router.post("/appointments")
async def appointment_webhook(request: Request, x_webhook_secret: Optional[str] = Header(default=None)):
    return await _dispatch(request, "appointments", x_webhook_secret)


@router.post("/orders")
async def order_webhook(request: Request, x_webhook_secret: Optional[str] = Header(default=None)):
    return await _dispatch(request, "orders", x_webhook_secret)


@router.post("/support")
async def support_webhook(request: Request, x_webhook_secret: Optional[str] = Header(default=None)):
    return await _dispatch(request, "support", x_webhook_secret)


@router.post("/commercial")
async def commercial_webhook(request: Request, x_webhook_secret: Optional[str] = Header(default=None)):
    return await _dispatch(request, "commercial", x_webhook_secret)
