import asyncio
import logging
import os
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, retry_if_result, stop_after_delay, wait_fixed

from ..db import get_db, utcnow_iso
from .telephony import normalize_outbound
from .voice_client import VendorAPIError, VoiceAgentClient

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 5
POLL_TIMEOUT_SECONDS = 80
BETWEEN_CALLS_SECONDS = 2

TERMINAL_STATUSES = ("done", "failed")
ANSWERED_STATUSES = ("completed", "answered")
FAILED_STATUSES = ("failed", "no_answer", "busy")

# campaign id -> lock held by the loop currently dialing it
_dialing_locks: Dict[str, asyncio.Lock] = {}


class CampaignError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def twilio_settings() -> Dict[str, Optional[str]]:
    return {
        "sid": os.getenv("TWILIO_ACCOUNT_SID"),
        "token": os.getenv("TWILIO_AUTH_TOKEN"),
        "phone_number": os.getenv("TWILIO_PHONE_NUMBER"),
    }


async def prepare_campaign(db, campaign: Dict[str, Any], voice: VoiceAgentClient) -> str:
    """Validate credentials and the campaign's agent, return the vendor caller-id."""
    twilio = twilio_settings()
    if not all(twilio.values()):
        raise CampaignError(400, "Twilio non configure. Contactez l'administrateur.")
    if not voice.configured:
        raise CampaignError(400, "ELEVENLABS_API_KEY non configure")
    agent = db.get_agent(campaign["agent_id"]) if campaign.get("agent_id") else None
    if not agent or not agent.get("elevenlabs_agent_id"):
        raise CampaignError(400, "Aucun agent associe a cette campagne")
    try:
        return await voice.resolve_phone_number_id(twilio["phone_number"], twilio["sid"], twilio["token"])
    except VendorAPIError as e:
        raise CampaignError(400, f"Impossible d'enregistrer le numero: {e.status_code}")


def _still_ringing(data: Optional[Dict[str, Any]]) -> bool:
    return (data or {}).get("status") not in TERMINAL_STATUSES


async def poll_conversation(voice: VoiceAgentClient, conversation_id: str) -> Tuple[Optional[Dict[str, Any]], str]:
    """Poll until the vendor conversation is done or failed, or the deadline passes.

    Returns the terminal payload (None on timeout) and the last status seen.
    """
    seen = {"status": "initiated"}

    async def fetch() -> Dict[str, Any]:
        data = await voice.get_conversation(conversation_id)
        seen["status"] = data.get("status") or seen["status"]
        logger.info(f"Poll {conversation_id}: status={data.get('status')}")
        return data

    retrying = AsyncRetrying(
        wait=wait_fixed(POLL_INTERVAL_SECONDS),
        stop=stop_after_delay(POLL_TIMEOUT_SECONDS),
        retry=retry_if_exception_type((VendorAPIError, httpx.HTTPError)) | retry_if_result(_still_ringing),
        retry_error_callback=lambda retry_state: None,
    )
    data = await retrying(fetch)
    return data, seen["status"]


def classify_call(data: Optional[Dict[str, Any]], last_status: str) -> Tuple[str, int, float]:
    """(status, duration seconds, vendor cost) of a finished or timed-out call."""
    if data is None:
        # Picked up but still talking at the deadline counts as answered
        status = "completed" if last_status in ("in-progress", "processing") else "no_answer"
        return status, 0, 0.0
    metadata = data.get("metadata") or {}
    duration = int(round(metadata.get("call_duration_secs") or 0))
    charging = metadata.get("charging") or {}
    cost = float(charging["cost"]) if charging.get("cost") is not None else 0.0
    if data.get("status") == "failed":
        return "failed", duration, cost
    if duration == 0 and len(data.get("transcript") or []) <= 1:
        return "no_answer", duration, cost
    return "completed", duration, cost


def record_result(db, campaign_id: str, status: str, cost: float) -> None:
    fresh = db.get_campaign(campaign_id)
    if not fresh:
        return
    db.update_campaign(campaign_id, {
        "contacts_called": (fresh.get("contacts_called") or 0) + 1,
        "contacts_answered": (fresh.get("contacts_answered") or 0) + (1 if status in ANSWERED_STATUSES else 0),
        "contacts_failed": (fresh.get("contacts_failed") or 0) + (1 if status in FAILED_STATUSES else 0),
        "cost_euros": (fresh.get("cost_euros") or 0) + cost,
    })


async def run_batch(db, campaign_id: str, phone_number_id: str, voice: VoiceAgentClient,
                    run_id: Optional[str] = None) -> bool:
    """Dial the next pending contact. Returns False once there is nothing left to do.

    With a ``run_id`` the batch only proceeds while the campaign still carries that
    token, so a loop superseded by a later start or resume stops at its next batch.
    """
    campaign = db.get_campaign(campaign_id)
    if not campaign or campaign.get("status") != "running":
        logger.info(f"Campaign {campaign_id} stopped (status={(campaign or {}).get('status')})")
        return False
    if run_id is not None and campaign.get("run_id") != run_id:
        logger.info(f"Campaign {campaign_id}: run {run_id} superseded, stopping")
        return False

    budget = campaign.get("budget_euros")
    if budget and (campaign.get("cost_euros") or 0) >= budget:
        logger.info(f"Campaign {campaign_id} budget exhausted, pausing")
        db.update_campaign(campaign_id, {"status": "paused"})
        return False

    entry = db.next_pending_campaign_contact(campaign_id)
    if not entry:
        logger.info(f"Campaign {campaign_id} has no pending contacts, completing")
        db.update_campaign(campaign_id, {"status": "completed", "completed_at": utcnow_iso()})
        return False

    contact = db.select_one("contacts", [("eq", "id", entry.get("contact_id"))]) or {}
    if not contact.get("phone"):
        db.update_campaign_contact(entry["id"], {"status": "failed", "notes": "Pas de numero"})
        record_result(db, campaign_id, "failed", 0.0)
        return True

    to_number = normalize_outbound(contact["phone"])
    agent = db.get_agent(campaign["agent_id"]) or {}
    logger.info(f"Campaign {campaign_id}: calling {contact.get('first_name')} {contact.get('last_name')} at {to_number}")
    db.update_campaign_contact(entry["id"], {"status": "calling", "called_at": utcnow_iso()})

    status, duration, cost = "failed", 0, 0.0
    conversation_id = None
    try:
        placed = await voice.outbound_call(agent.get("elevenlabs_agent_id"), phone_number_id, to_number)
        conversation_id = placed.get("conversation_id")
        if conversation_id:
            conversation = db.create_conversation({
                "user_id": campaign["user_id"],
                "agent_id": agent.get("id"),
                "elevenlabs_agent_id": agent.get("elevenlabs_agent_id"),
                "elevenlabs_conversation_id": conversation_id,
                "twilio_call_sid": placed.get("callSid"),
                "call_type": "outbound",
                "caller_phone": to_number,
            })
            db.update_campaign_contact(entry["id"], {"conversation_id": conversation["id"]})
            data, last_status = await poll_conversation(voice, conversation_id)
            status, duration, cost = classify_call(data, last_status)
    except (VendorAPIError, httpx.HTTPError) as e:
        logger.error(f"Campaign {campaign_id}: call to {to_number} failed: {e}")
        status = "failed"

    logger.info(f"Campaign {campaign_id}: contact {entry['id']} -> {status}, {duration}s, cost={cost:.3f}")
    db.update_campaign_contact(entry["id"], {
        "status": status,
        "call_duration_seconds": duration,
        "cost_euros": cost,
    })
    if conversation_id:
        db.update_conversations_where("elevenlabs_conversation_id", conversation_id, {
            "status": "ended" if status == "completed" else "error",
            "duration_seconds": duration,
            "ended_at": utcnow_iso(),
        })
    record_result(db, campaign_id, status, cost)
    return True


def claim_run(db, campaign_id: str) -> str:
    """Stamp a fresh run token on the campaign; older loops stop at their next batch."""
    run_id = uuid4().hex
    db.update_campaign(campaign_id, {"run_id": run_id})
    return run_id


async def run_campaign(campaign_id: str, phone_number_id: str, run_id: Optional[str] = None) -> None:
    """Background job: dial contacts one by one until paused, out of budget or done.

    Loops of the same campaign are serialized in this process, and only the loop
    holding the current run token keeps dialing.
    """
    db = get_db()
    voice = VoiceAgentClient()
    if run_id is None:
        run_id = claim_run(db, campaign_id)
    lock = _dialing_locks.setdefault(campaign_id, asyncio.Lock())
    async with lock:
        while await run_batch(db, campaign_id, phone_number_id, voice, run_id):
            await asyncio.sleep(BETWEEN_CALLS_SECONDS)
