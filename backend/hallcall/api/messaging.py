from fastapi import APIRouter, Depends, HTTPException
from html import escape
from typing import Optional
import logging

from ..db import get_db
from ..schemas.pydantic_schemas import (
    AppointmentEmailRequest,
    EmailSendRequest,
    NotificationTemplateCreate,
    NotificationTemplateUpdate,
    SmsSendRequest,
    SmsTemplateCreate,
)
from ..services.email_client import send_appointment_confirmation, send_user_email
from ..services.telephony import TelephonyNotConfigured, normalize_outbound, send_and_log_sms
from .deps import get_current_user

logger = logging.getLogger(__name__)

sms_router = APIRouter()
email_router = APIRouter()
templates_router = APIRouter()


@sms_router.post("/send")
async def send_sms(body: SmsSendRequest, user=Depends(get_current_user)):
    if not body.to or not body.content:
        raise HTTPException(status_code=400, detail="Champs requis: to, content")
    try:
        result = await send_and_log_sms(get_db(), user["id"], normalize_outbound(body.to), body.content,
                                        contact_id=body.contact_id, template_id=body.template_id)
    except TelephonyNotConfigured:
        raise HTTPException(status_code=500, detail="Twilio credentials not configured")
    return {"success": True, "sid": result["sid"]}


@sms_router.get("/templates")
async def list_templates(user=Depends(get_current_user)):
    return {"templates": get_db().list_owned("sms_templates", user["id"])}


@sms_router.post("/templates", status_code=201)
async def create_template(body: SmsTemplateCreate, user=Depends(get_current_user)):
    return {"template": get_db().create_owned("sms_templates", user["id"], body.model_dump())}


@sms_router.delete("/templates/{template_id}")
async def delete_template(template_id: str, user=Depends(get_current_user)):
    if not get_db().delete_owned("sms_templates", user["id"], template_id):
        raise HTTPException(status_code=404, detail="Modele introuvable")
    return {"success": True}


@sms_router.get("/history")
async def sms_history(user=Depends(get_current_user)):
    return {"history": get_db().list_owned("sms_history", user["id"], order="sent_at")}


@email_router.post("/send")
async def send_email(body: EmailSendRequest, user=Depends(get_current_user)):
    if not body.to or not body.subject or not body.body:
        raise HTTPException(status_code=400, detail="Champs requis: to, subject, body")
    html = "<div>" + escape(body.body).replace("\n", "<br>") + "</div>"
    channel = await send_user_email(get_db(), user["id"], body.to, body.subject, html)
    return {"success": True, "channel": channel}


@email_router.post("/appointment-confirmation")
async def appointment_confirmation(body: AppointmentEmailRequest, user=Depends(get_current_user)):
    channel = await send_appointment_confirmation(
        get_db(), user["id"], body.to, body.client_name, body.date, body.time,
        body.duration_minutes, body.motif, body.meeting_link,
    )
    return {"success": True, "channel": channel}


# Templates used by the support and commercial agents ({{client_name}}, {{date}}...)
@templates_router.get("")
async def list_notification_templates(type: Optional[str] = None, user=Depends(get_current_user)):
    templates = get_db().list_owned("notification_templates", user["id"])
    if type:
        templates = [t for t in templates if t.get("type") == type]
    return {"templates": templates}


@templates_router.post("", status_code=201)
async def create_notification_template(body: NotificationTemplateCreate, user=Depends(get_current_user)):
    if body.type == "email" and not body.subject:
        raise HTTPException(status_code=400, detail="Un sujet est requis pour un modele email")
    return {"template": get_db().create_owned("notification_templates", user["id"], body.model_dump())}


@templates_router.patch("/{template_id}")
async def update_notification_template(template_id: str, body: NotificationTemplateUpdate,
                                       user=Depends(get_current_user)):
    template = get_db().update_owned("notification_templates", user["id"], template_id,
                                     body.model_dump(exclude_unset=True))
    if not template:
        raise HTTPException(status_code=404, detail="Modele introuvable")
    return {"template": template}


@templates_router.delete("/{template_id}")
async def delete_notification_template(template_id: str, user=Depends(get_current_user)):
    if not get_db().delete_owned("notification_templates", user["id"], template_id):
        raise HTTPException(status_code=404, detail="Modele introuvable")
    return {"success": True}
