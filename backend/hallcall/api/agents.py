from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile
from typing import Optional, Dict, Any
import secrets
from ..db import get_db
from ..schemas.pydantic_schemas import (
    AgentCreate,
    AgentFields,
    AgentUpdate,
    AppointmentProfileUpdate,
    CommercialProfileUpdate,
    OrderProfileUpdate,
    SupportProfileUpdate,
    TTSRequest,
)
from ..services import agent_profiles
from ..services.voice_client import (
    VoiceAgentClient,
    agent_row_to_vendor_shape,
    build_conversation_config,
    DEFAULT_LANGUAGE,
    DEFAULT_LLM,
    DEFAULT_TEMPERATURE,
    DEFAULT_STABILITY,
    DEFAULT_SIMILARITY_BOOST,
    DEFAULT_SPEED,
    DEFAULT_MAX_DURATION_SECONDS,
)
from .deps import get_current_user
import logging

logger = logging.getLogger(__name__)

router = APIRouter()
tts_router = APIRouter()

# Columns mirrored locally when an agent is edited through the form
SYNCED_FIELDS = (
    "name", "system_prompt", "first_message", "language", "voice_id", "llm_model",
    "temperature", "stability", "similarity_boost", "speed", "max_duration_seconds",
)
FORM_TRIGGER_FIELDS = ("name", "system_prompt", "first_message", "voice_id", "language")


def _require_owned(db, user_id: str, agent_id: str) -> Dict[str, Any]:
    agent = db.get_owned_agent(user_id, agent_id)
    if not agent:
        raise HTTPException(status_code=404, detail="Agent introuvable")
    return agent


@router.post("", status_code=201)
async def create_agent(body: AgentCreate, user=Depends(get_current_user)):
    voice = VoiceAgentClient()
    fields = body.model_dump()
    data = await voice.create_agent(body.name, build_conversation_config(fields))

    def pick(key: str, default: Any) -> Any:
        return default if fields.get(key) is None else fields[key]

    get_db().insert("agents", {
        "user_id": user["id"],
        "elevenlabs_agent_id": data.get("agent_id"),
        "name": body.name,
        "agent_type": body.agent_type or "standard",
        "system_prompt": body.system_prompt or "",
        "first_message": body.first_message or "",
        "language": body.language or DEFAULT_LANGUAGE,
        "voice_id": body.voice_id,
        "llm_model": body.llm_model or DEFAULT_LLM,
        "temperature": pick("temperature", DEFAULT_TEMPERATURE),
        "stability": pick("stability", DEFAULT_STABILITY),
        "similarity_boost": pick("similarity_boost", DEFAULT_SIMILARITY_BOOST),
        "speed": pick("speed", DEFAULT_SPEED),
        "max_duration_seconds": pick("max_duration_seconds", DEFAULT_MAX_DURATION_SECONDS),
    })
    logger.info(f"Agent {data.get('agent_id')} created for user {user['id']}")
    return data


@router.get("")
async def list_agents(user=Depends(get_current_user)):
    rows = get_db().list_agents(user["id"])
    return {"agents": [agent_row_to_vendor_shape(r) for r in rows]}


@router.get("/{agent_id}")
async def get_agent(agent_id: str, user=Depends(get_current_user)):
    _require_owned(get_db(), user["id"], agent_id)
    return await VoiceAgentClient().get_agent(agent_id)


@router.patch("/{agent_id}")
async def update_agent(agent_id: str, body: AgentUpdate, user=Depends(get_current_user)):
    db = get_db()
    _require_owned(db, user["id"], agent_id)

    fields = body.model_dump(exclude_unset=True)
    payload: Dict[str, Any] = {}
    if body.conversation_config:
        payload["conversation_config"] = body.conversation_config
    elif any(fields.get(k) for k in FORM_TRIGGER_FIELDS):
        payload["conversation_config"] = build_conversation_config(fields, tts_model="eleven_turbo_v2_5", turn=False)
    else:
        payload["conversation_config"] = {"conversation": {"text_only": False}}
    if body.name:
        payload["name"] = body.name

    data = await VoiceAgentClient().update_agent(agent_id, payload)

    local = {k: fields[k] for k in SYNCED_FIELDS if k in fields and fields[k] is not None}
    db.update_owned_agent(user["id"], agent_id, local)
    return data


@router.delete("/{agent_id}")
async def delete_agent(agent_id: str, user=Depends(get_current_user)):
    db = get_db()
    _require_owned(db, user["id"], agent_id)
    await VoiceAgentClient().delete_agent(agent_id)
    db.delete_owned_agent(user["id"], agent_id)
    logger.info(f"Agent {agent_id} deleted by user {user['id']}")
    return {"success": True}


@router.post("/{agent_id}/knowledge-base", status_code=201)
async def add_knowledge(
    agent_id: str,
    file: Optional[UploadFile] = File(default=None),
    url: Optional[str] = Form(default=None),
    name: Optional[str] = Form(default=None),
    user=Depends(get_current_user),
):
    db = get_db()
    agent = _require_owned(db, user["id"], agent_id)
    if not file and not url:
        raise HTTPException(status_code=400, detail="Un fichier ou une URL est requis")

    voice = VoiceAgentClient()
    if file:
        content = await file.read()
        doc = await voice.upload_knowledge_file(file.filename or "document", content, file.content_type, name)
        kind, label = "file", name or file.filename
    else:
        doc = await voice.add_knowledge_url(url, name)
        kind, label = "url", name or url

    doc_id = doc.get("id")
    await voice.attach_knowledge(agent_id, {"type": kind, "id": doc_id, "name": label, "usage_mode": "auto"})
    item = db.insert("knowledge_base_items", {
        "user_id": user["id"],
        "agent_id": agent["id"],
        "elevenlabs_document_id": doc_id,
        "name": label,
        "type": kind,
        "source_url": url if kind == "url" else None,
    })
    return {"item": item, "document": doc}


# kind -> (config table, local agent_type, prompt and tools builder)
PROFILES = {
    "appointment": ("agent_rdv_config", "rdv", agent_profiles.appointment_profile),
    "order": ("agent_order_config", "order", agent_profiles.order_profile),
    "support": ("agent_support_config", "support", agent_profiles.support_profile),
    "commercial": ("agent_commercial_config", "commercial", agent_profiles.commercial_profile),
}


async def _save_profile(kind: str, agent_id: str, body: AgentFields, config: Dict[str, Any], user_id: str):
    """Store the family configuration and push the composed prompt and webhook tools to the vendor agent.

    The webhook secret is generated on first save and kept afterwards, so the
    tools already deployed on the vendor side stay valid.
    """
    table, agent_type, build = PROFILES[kind]
    db = get_db()
    agent = _require_owned(db, user_id, agent_id)
    existing = db.get_agent_config(table, agent["id"]) or {}
    secret = existing.get("webhook_secret") or secrets.token_urlsafe(32)

    sent = body.model_dump(exclude={"config"}, exclude_none=True)
    fields = {k: agent.get(k) for k in SYNCED_FIELDS}
    fields.update(sent)
    # The user's own prompt is kept apart so repeated saves do not stack the generated sections
    base_prompt = sent.get("system_prompt", existing.get("base_prompt", agent.get("system_prompt") or ""))
    prompt, tools = build(base_prompt, dict(config, agent_id=agent["id"]), secret)

    conversation_config = build_conversation_config(dict(fields, system_prompt=prompt),
                                                    tts_model="eleven_turbo_v2_5", turn=False)
    conversation_config["agent"]["prompt"]["tools"] = tools
    payload = {"name": fields.get("name") or agent.get("name"), "conversation_config": conversation_config}
    data = await VoiceAgentClient().update_agent(agent_id, payload)

    local = {k: fields[k] for k in SYNCED_FIELDS if fields.get(k) is not None}
    local.update(system_prompt=prompt, agent_type=agent_type)
    db.update_owned_agent(user_id, agent_id, local)
    saved = db.upsert(table, dict(config, agent_id=agent["id"], user_id=user_id, webhook_secret=secret,
                                  base_prompt=base_prompt), on_conflict="agent_id")
    logger.info(f"{kind} profile saved for agent {agent_id} ({len(tools)} tools)")
    return {"agent": data, "config": _public_config(saved)}


def _public_config(row: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in row.items() if k != "webhook_secret"}


async def _get_profile(kind: str, agent_id: str, user_id: str):
    db = get_db()
    agent = _require_owned(db, user_id, agent_id)
    config = db.get_agent_config(PROFILES[kind][0], agent["id"])
    return {"config": _public_config(config) if config else None}


@router.put("/{agent_id}/appointment-config")
async def save_appointment_config(agent_id: str, body: AppointmentProfileUpdate, user=Depends(get_current_user)):
    return await _save_profile("appointment", agent_id, body, body.config.model_dump(), user["id"])


@router.get("/{agent_id}/appointment-config")
async def get_appointment_config(agent_id: str, user=Depends(get_current_user)):
    return await _get_profile("appointment", agent_id, user["id"])


@router.put("/{agent_id}/order-config")
async def save_order_config(agent_id: str, body: OrderProfileUpdate, user=Depends(get_current_user)):
    return await _save_profile("order", agent_id, body, body.config.model_dump(), user["id"])


@router.get("/{agent_id}/order-config")
async def get_order_config(agent_id: str, user=Depends(get_current_user)):
    return await _get_profile("order", agent_id, user["id"])


@router.put("/{agent_id}/support-config")
async def save_support_config(agent_id: str, body: SupportProfileUpdate, user=Depends(get_current_user)):
    return await _save_profile("support", agent_id, body, body.config.model_dump(), user["id"])


@router.get("/{agent_id}/support-config")
async def get_support_config(agent_id: str, user=Depends(get_current_user)):
    return await _get_profile("support", agent_id, user["id"])


@router.put("/{agent_id}/commercial-config")
async def save_commercial_config(agent_id: str, body: CommercialProfileUpdate, user=Depends(get_current_user)):
    return await _save_profile("commercial", agent_id, body, body.config.model_dump(), user["id"])


@router.get("/{agent_id}/commercial-config")
async def get_commercial_config(agent_id: str, user=Depends(get_current_user)):
    return await _get_profile("commercial", agent_id, user["id"])


@tts_router.post("")
async def text_to_speech(body: TTSRequest, user=Depends(get_current_user)):
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="voice_id et text sont requis")
    audio = await VoiceAgentClient().text_to_speech(body.voice_id, body.text)
    return Response(content=audio, media_type="audio/mpeg")
