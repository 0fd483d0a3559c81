from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
import logging
from uuid import uuid4

from ..db import get_db, utcnow_iso
from ..schemas.pydantic_schemas import CampaignAction, CampaignContactsAdd, CampaignCreate, ContactCreate
from ..services.campaign import prepare_campaign, run_campaign
from ..services.telephony import normalize_phone
from ..services.voice_client import VoiceAgentClient
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()
contacts_router = APIRouter()

CAMPAIGNS = "campaign_groups"


def _require_campaign(db, user_id: str, campaign_id: str):
    campaign = db.get_owned(CAMPAIGNS, user_id, campaign_id)
    if not campaign:
        raise HTTPException(status_code=404, detail="Campagne introuvable")
    return campaign


@router.get("")
async def list_campaigns(user=Depends(get_current_user)):
    return {"campaigns": get_db().list_owned(CAMPAIGNS, user["id"])}


@router.post("", status_code=201)
async def create_campaign(body: CampaignCreate, user=Depends(get_current_user)):
    db = get_db()
    if not db.get_owned("agents", user["id"], body.agent_id):
        raise HTTPException(status_code=404, detail="Agent introuvable")
    campaign = db.create_owned(CAMPAIGNS, user["id"], dict(
        body.model_dump(),
        status="draft",
        total_contacts=0,
        contacts_called=0,
        contacts_answered=0,
        contacts_failed=0,
        cost_euros=0,
    ))
    return {"campaign": campaign}


@router.get("/{campaign_id}")
async def get_campaign(campaign_id: str, user=Depends(get_current_user)):
    db = get_db()
    campaign = _require_campaign(db, user["id"], campaign_id)
    return {"campaign": campaign, "contacts": db.list_campaign_contacts(campaign_id)}


@router.post("/{campaign_id}/contacts", status_code=201)
async def add_campaign_contacts(campaign_id: str, body: CampaignContactsAdd, user=Depends(get_current_user)):
    db = get_db()
    _require_campaign(db, user["id"], campaign_id)
    already = {row.get("contact_id") for row in db.list_campaign_contacts(campaign_id)}
    added = []
    for contact_id in body.contact_ids:
        if contact_id in already or not db.get_owned("contacts", user["id"], contact_id):
            continue
        added.append(db.insert("campaign_contacts", {
            "campaign_id": campaign_id,
            "contact_id": contact_id,
            "status": "pending",
        }))
        already.add(contact_id)
    db.update_campaign(campaign_id, {"total_contacts": len(already)})
    return {"added": len(added), "total_contacts": len(already)}


@router.post("/{campaign_id}/actions")
async def campaign_action(
    campaign_id: str,
    body: CampaignAction,
    background_tasks: BackgroundTasks,
    user=Depends(get_current_user),
):
    db = get_db()
    campaign = _require_campaign(db, user["id"], campaign_id)

    if body.action == "pause":
        db.update_campaign(campaign_id, {"status": "paused"})
        logger.info(f"Campaign {campaign_id} paused by user {user['id']}")
        return {"ok": True, "message": "Campagne en pause"}

    if body.action not in ("start", "resume"):
        raise HTTPException(status_code=400, detail="Action inconnue")
    if campaign.get("status") == "running":
        raise HTTPException(status_code=409, detail="Campagne deja en cours")

    phone_number_id = await prepare_campaign(db, campaign, VoiceAgentClient())
    run_id = uuid4().hex
    values = {"status": "running", "run_id": run_id}
    if body.action == "start":
        values["started_at"] = utcnow_iso()
    db.update_campaign(campaign_id, values)
    background_tasks.add_task(run_campaign, campaign_id, phone_number_id, run_id)
    logger.info(f"Campaign {campaign_id}: {body.action} requested, dialing in background")
    return {"ok": True, "message": "Campagne demarree" if body.action == "start" else "Campagne reprise"}


@contacts_router.get("")
async def list_contacts(user=Depends(get_current_user)):
    return {"contacts": get_db().list_owned("contacts", user["id"])}


@contacts_router.post("", status_code=201)
async def create_contact(body: ContactCreate, user=Depends(get_current_user)):
    values = body.model_dump()
    if values.get("phone"):
        values["phone"] = normalize_phone(values["phone"])
    return {"contact": get_db().create_owned("contacts", user["id"], values)}


@contacts_router.delete("/{contact_id}")
async def delete_contact(contact_id: str, user=Depends(get_current_user)):
    if not get_db().delete_owned("contacts", user["id"], contact_id):
        raise HTTPException(status_code=404, detail="Contact introuvable")
    return {"success": True}
