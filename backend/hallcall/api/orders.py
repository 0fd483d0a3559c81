from fastapi import APIRouter, Depends, HTTPException
from typing import Optional
import logging

from ..db import get_db
from ..schemas.pydantic_schemas import OrderStatusUpdate
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()


def _with_items(db, order):
    return dict(order, items=db.select("order_items", [("eq", "order_id", order["id"])], order="created_at"))


@router.get("")
async def list_orders(status: Optional[str] = None, user=Depends(get_current_user)):
    db = get_db()
    filters = [("eq", "user_id", user["id"])]
    if status:
        filters.append(("eq", "status", status))
    orders = db.select("orders", filters, order="created_at", desc=True)
    return {"orders": [_with_items(db, o) for o in orders]}


@router.get("/{order_id}")
async def get_order(order_id: str, user=Depends(get_current_user)):
    db = get_db()
    order = db.get_owned("orders", user["id"], order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Commande introuvable")
    return {"order": _with_items(db, order)}


@router.patch("/{order_id}")
async def update_order_status(order_id: str, body: OrderStatusUpdate, user=Depends(get_current_user)):
    order = get_db().update_owned("orders", user["id"], order_id, {"status": body.status})
    if not order:
        raise HTTPException(status_code=404, detail="Commande introuvable")
    logger.info(f"Order {order.get('order_number')} moved to {body.status}")
    return {"order": order}
