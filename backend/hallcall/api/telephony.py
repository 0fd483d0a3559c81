from fastapi import APIRouter, Depends, HTTPException, Request, Response
import logging

from ..db import get_db
from ..schemas.pydantic_schemas import OutboundCallRequest, PhoneNumberCreate, PhoneNumberUpdate
from ..services.campaign import twilio_settings
from ..services.telephony import normalize_outbound, phone_candidates, say_twiml
from ..services.voice_client import VendorAPIError, VoiceAgentClient, parse_conversation_id
from .deps import get_current_user

logger = logging.getLogger(__name__)

calls_router = APIRouter()
voice_router = APIRouter()
phone_numbers_router = APIRouter()

NO_AGENT_MESSAGE = "Desolee, aucun agent n'est configure pour ce numero. Au revoir."
UNAVAILABLE_MESSAGE = "Desolee, le service est temporairement indisponible. Veuillez reessayer plus tard."
ERROR_MESSAGE = "Une erreur s'est produite. Veuillez reessayer plus tard."
CONFIG_ERROR_MESSAGE = "Erreur de configuration du service. Veuillez reessayer plus tard."


def _twiml(body: str) -> Response:
    return Response(content=body, media_type="application/xml")


@calls_router.post("/outbound")
async def outbound_call(body: OutboundCallRequest, user=Depends(get_current_user)):
    db = get_db()
    agent = db.get_owned_agent(user["id"], body.elevenlabs_agent_id)
    if not agent:
        raise HTTPException(status_code=404, detail="Agent introuvable")
    if body.agent_id and body.agent_id != agent["id"]:
        raise HTTPException(status_code=404, detail="Agent introuvable")

    voice = VoiceAgentClient()
    twilio = twilio_settings()
    if not voice.configured:
        raise HTTPException(status_code=400, detail="ELEVENLABS_API_KEY non configure")
    if not all(twilio.values()):
        raise HTTPException(status_code=400, detail="Twilio non configure")

    phone_number_id = await voice.resolve_phone_number_id(twilio["phone_number"], twilio["sid"], twilio["token"])
    to_number = normalize_outbound(body.to_number)
    logger.info(f"Outbound call to {to_number} with agent {body.elevenlabs_agent_id}")
    try:
        placed = await voice.outbound_call(body.elevenlabs_agent_id, phone_number_id, to_number)
    except VendorAPIError as e:
        raise HTTPException(status_code=500, detail=f"Erreur ElevenLabs: {e.status_code}")

    conversation_id = placed.get("conversation_id")
    if conversation_id:
        db.create_conversation({
            "user_id": user["id"],
            "agent_id": agent["id"],
            "elevenlabs_agent_id": body.elevenlabs_agent_id,
            "elevenlabs_conversation_id": conversation_id,
            "twilio_call_sid": placed.get("callSid"),
            "call_type": "outbound",
            "caller_phone": to_number,
        })
    return {"ok": True, "conversation_id": conversation_id, "call_sid": placed.get("callSid")}


@voice_router.post("/voice")
async def inbound_voice_webhook(request: Request):
    """Twilio inbound webhook: hand the call to the agent mapped to the dialled number."""
    try:
        voice = VoiceAgentClient()
        if not voice.configured:
            logger.error("ELEVENLABS_API_KEY not configured, rejecting inbound call")
            return _twiml(say_twiml(CONFIG_ERROR_MESSAGE))

        form = await request.form()
        forwarded_from = form.get("ForwardedFrom") or ""
        caller = form.get("From") or ""
        to_number = form.get("To") or ""
        call_sid = form.get("CallSid") or ""
        logger.info(f"Inbound call {call_sid} from {caller} to {to_number} (forwarded from {forwarded_from or '-'})")

        lookup = forwarded_from or to_number
        db = get_db()
        record = db.find_active_phone_number(phone_candidates(lookup)) if lookup else None
        agent = db.get_agent(record["agent_id"]) if record and record.get("agent_id") else None
        if not agent or not agent.get("elevenlabs_agent_id"):
            logger.warning(f"No active agent mapped to {lookup}")
            return _twiml(say_twiml(NO_AGENT_MESSAGE))

        try:
            twiml = await voice.register_inbound_call(agent["elevenlabs_agent_id"], caller, to_number, call_sid)
        except VendorAPIError as e:
            logger.error(f"register-call failed for {call_sid}: {e.status_code}")
            return _twiml(say_twiml(UNAVAILABLE_MESSAGE))

        db.create_conversation({
            "user_id": record["user_id"],
            "agent_id": agent["id"],
            "elevenlabs_agent_id": agent["elevenlabs_agent_id"],
            "elevenlabs_conversation_id": parse_conversation_id(twiml),
            "twilio_call_sid": call_sid,
            "call_type": "inbound",
            "caller_phone": caller,
        })
        return _twiml(twiml)
    except Exception as e:
        logger.error(f"Inbound webhook error: {e}")
        return _twiml(say_twiml(ERROR_MESSAGE))


def _check_agent(db, user_id: str, agent_id):
    if agent_id and not db.get_owned("agents", user_id, agent_id):
        raise HTTPException(status_code=404, detail="Agent introuvable")


@phone_numbers_router.get("")
async def list_phone_numbers(user=Depends(get_current_user)):
    return {"phone_numbers": get_db().list_owned("phone_numbers", user["id"])}


@phone_numbers_router.post("", status_code=201)
async def create_phone_number(body: PhoneNumberCreate, user=Depends(get_current_user)):
    db = get_db()
    _check_agent(db, user["id"], body.agent_id)
    values = body.model_dump()
    values["phone_number"] = normalize_outbound(body.phone_number)
    return {"phone_number": db.create_owned("phone_numbers", user["id"], values)}


@phone_numbers_router.patch("/{phone_number_id}")
async def update_phone_number(phone_number_id: str, body: PhoneNumberUpdate, user=Depends(get_current_user)):
    db = get_db()
    values = body.model_dump(exclude_unset=True)
    _check_agent(db, user["id"], values.get("agent_id"))
    if values.get("phone_number"):
        values["phone_number"] = normalize_outbound(values["phone_number"])
    row = db.update_owned("phone_numbers", user["id"], phone_number_id, values)
    if not row:
        raise HTTPException(status_code=404, detail="Numero introuvable")
    return {"phone_number": row}


@phone_numbers_router.delete("/{phone_number_id}")
async def delete_phone_number(phone_number_id: str, user=Depends(get_current_user)):
    if not get_db().delete_owned("phone_numbers", user["id"], phone_number_id):
        raise HTTPException(status_code=404, detail="Numero introuvable")
    return {"success": True}
