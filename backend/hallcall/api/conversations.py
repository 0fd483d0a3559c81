from fastapi import APIRouter, Depends, HTTPException, Query, Response
from typing import Optional, Dict, Any, List
from datetime import datetime, timedelta, timezone
import asyncio
import math
import logging

import httpx

from ..db import get_db
from ..schemas.pydantic_schemas import ConversationStart, MessageCreate
from ..services.voice_client import VendorAPIError, VoiceAgentClient
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()

VENDOR_STATUS_MAP = {"done": "ended", "ended": "ended", "failed": "error", "error": "error"}


def _parse_ts(value: str) -> datetime:
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@router.post("/start", status_code=201)
async def start_conversation(body: ConversationStart, user=Depends(get_current_user)):
    db = get_db()
    agent = db.get_owned_agent(user["id"], body.elevenlabs_agent_id)
    if not agent:
        raise HTTPException(status_code=404, detail="Agent introuvable")
    conversation = db.create_conversation({
        "user_id": user["id"],
        "agent_id": agent["id"],
        "elevenlabs_agent_id": body.elevenlabs_agent_id,
        "call_type": "test",
    })
    return {"conversation": conversation}


@router.post("/{conversation_id}/end")
async def end_conversation(conversation_id: str, user=Depends(get_current_user)):
    db = get_db()
    conversation = db.get_owned_conversation(user["id"], conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation introuvable")

    ended_at = datetime.now(timezone.utc)
    duration = 0
    if conversation.get("started_at"):
        duration = max(0, int((ended_at - _parse_ts(conversation["started_at"])).total_seconds()))
    updated = db.update_conversation(conversation_id, {
        "status": "ended",
        "ended_at": ended_at.isoformat(),
        "duration_seconds": duration,
    })
    if conversation.get("status") != "ended":
        db.add_minutes_used(user["id"], math.ceil(duration / 60))
    return {"conversation": updated}


@router.post("/{conversation_id}/messages", status_code=201)
async def add_message(conversation_id: str, body: MessageCreate, user=Depends(get_current_user)):
    db = get_db()
    if not db.get_owned_conversation(user["id"], conversation_id):
        raise HTTPException(status_code=404, detail="Conversation introuvable")
    return {"message": db.add_message(conversation_id, body.source, body.content)}


def _transcript_messages(conv: Dict[str, Any], transcript: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    started = _parse_ts(conv["started_at"]) if conv.get("started_at") else datetime.now(timezone.utc)
    vendor_id = conv["elevenlabs_conversation_id"]
    return [
        {
            "id": f"el-{vendor_id}-{idx}",
            "source": "user" if entry.get("role") == "user" else "ai",
            "content": entry.get("message"),
            "created_at": (started + timedelta(seconds=entry.get("time_in_call_secs") or 0)).isoformat(),
        }
        for idx, entry in enumerate(transcript)
    ]


async def _enrich(db, voice: VoiceAgentClient, conv: Dict[str, Any]) -> Dict[str, Any]:
    """Refresh duration, status and transcript from the vendor; persist any drift."""
    vendor_id = conv.get("elevenlabs_conversation_id")
    if not vendor_id:
        return conv
    try:
        data = await voice.get_conversation(vendor_id)
    except VendorAPIError as e:
        logger.warning(f"Could not enrich conversation {vendor_id}: {e.status_code}")
        return conv
    except httpx.HTTPError as e:
        logger.warning(f"Could not reach the voice API for conversation {vendor_id}: {e!r}")
        return conv

    metadata = data.get("metadata") or {}
    transcript = data.get("transcript") or []
    duration = conv.get("duration_seconds")
    if metadata.get("call_duration_secs"):
        duration = round(metadata["call_duration_secs"])
    elif transcript and transcript[-1].get("time_in_call_secs"):
        duration = round(transcript[-1]["time_in_call_secs"])

    status = VENDOR_STATUS_MAP.get(data.get("status"), conv.get("status"))

    changes: Dict[str, Any] = {}
    if duration != conv.get("duration_seconds"):
        changes["duration_seconds"] = duration
    if status != conv.get("status") and conv.get("status") == "active":
        changes["status"] = status
        if not conv.get("ended_at") and metadata.get("start_time_unix_secs") and metadata.get("call_duration_secs"):
            ended = metadata["start_time_unix_secs"] + metadata["call_duration_secs"]
            changes["ended_at"] = datetime.fromtimestamp(ended, tz=timezone.utc).isoformat()
    if changes:
        db.update_conversation(conv["id"], changes)

    enriched = dict(conv, **changes)
    if transcript and not conv.get("messages"):
        enriched["messages"] = _transcript_messages(conv, transcript)
    return enriched


@router.get("")
async def list_conversations(
    elevenlabs_agent_id: Optional[str] = Query(default=None),
    user=Depends(get_current_user),
):
    db = get_db()
    conversations = db.list_conversations(user["id"], elevenlabs_agent_id, limit=50)
    voice = VoiceAgentClient()
    if voice.configured:
        conversations = list(await asyncio.gather(*(_enrich(db, voice, conv) for conv in conversations)))
    return {"conversations": conversations}


@router.get("/audio/{vendor_conversation_id}")
async def get_conversation_audio(vendor_conversation_id: str, user=Depends(get_current_user)):
    db = get_db()
    if not db.get_owned_conversation_by_vendor_id(user["id"], vendor_conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    try:
        audio = await VoiceAgentClient().get_conversation_audio(vendor_conversation_id)
    except VendorAPIError as e:
        status = 404 if e.status_code == 404 else 500
        raise HTTPException(status_code=status, detail={"error": "Audio not available", "status": e.status_code})
    return Response(
        content=audio.content,
        media_type=audio.headers.get("content-type") or "audio/mpeg",
        headers={"Cache-Control": "private, max-age=3600"},
    )
