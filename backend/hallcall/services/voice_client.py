import os
import re
import httpx
from typing import Dict, Any, List, Optional
import logging

# Set up logger
logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "fr"
DEFAULT_LLM = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_STABILITY = 0.5
DEFAULT_SIMILARITY_BOOST = 0.8
DEFAULT_SPEED = 1.0
DEFAULT_MAX_DURATION_SECONDS = 600
TTS_MAX_CHARS = 500

_CONVERSATION_ID_RE = re.compile(r'name="conversation_id"\s+value="([^"]+)"')


class VendorAPIError(Exception):
    """A vendor answered with a non-2xx status; routes pass the status through."""

    def __init__(self, status_code: int, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details


class VoiceNotConfigured(Exception):
    pass


def build_conversation_config(body: Dict[str, Any], tts_model: str = "eleven_flash_v2_5", turn: bool = True) -> Dict[str, Any]:
    """Map our agent fields onto the vendor's conversation_config, filling defaults."""
    def pick(key: str, default: Any) -> Any:
        value = body.get(key)
        return default if value is None else value

    config: Dict[str, Any] = {
        "agent": {
            "prompt": {
                "prompt": body.get("system_prompt") or "",
                "llm": body.get("llm_model") or DEFAULT_LLM,
                "temperature": pick("temperature", DEFAULT_TEMPERATURE),
                "max_tokens": -1,
            },
            "first_message": body.get("first_message") or "",
            "language": body.get("language") or DEFAULT_LANGUAGE,
        },
        "tts": {
            "voice_id": body.get("voice_id"),
            "model_id": tts_model,
            "stability": pick("stability", DEFAULT_STABILITY),
            "similarity_boost": pick("similarity_boost", DEFAULT_SIMILARITY_BOOST),
            "speed": pick("speed", DEFAULT_SPEED),
        },
        "conversation": {
            "max_duration_seconds": pick("max_duration_seconds", DEFAULT_MAX_DURATION_SECONDS),
            "text_only": False,
        },
    }
    if turn:
        config["turn"] = {"turn_eagerness": "eager", "turn_timeout": 1}
    return config


def agent_row_to_vendor_shape(row: Dict[str, Any]) -> Dict[str, Any]:
    """Render a local `agents` row the way the vendor describes an agent."""
    def pick(key: str, default: Any) -> Any:
        value = row.get(key)
        return default if value is None else value

    return {
        "agent_id": row.get("elevenlabs_agent_id"),
        "name": row.get("name"),
        "agent_type": row.get("agent_type") or "standard",
        "conversation_config": {
            "agent": {
                "first_message": row.get("first_message") or "",
                "language": row.get("language") or DEFAULT_LANGUAGE,
                "prompt": {
                    "prompt": row.get("system_prompt") or "",
                    "llm": row.get("llm_model") or DEFAULT_LLM,
                    "temperature": pick("temperature", DEFAULT_TEMPERATURE),
                    "max_tokens": -1,
                },
            },
            "tts": {
                "voice_id": row.get("voice_id") or "",
                "model_id": "eleven_turbo_v2_5",
                "stability": pick("stability", DEFAULT_STABILITY),
                "similarity_boost": pick("similarity_boost", DEFAULT_SIMILARITY_BOOST),
                "speed": pick("speed", DEFAULT_SPEED),
            },
            "conversation": {
                "max_duration_seconds": pick("max_duration_seconds", DEFAULT_MAX_DURATION_SECONDS),
            },
        },
    }


def parse_conversation_id(twiml: str) -> Optional[str]:
    match = _CONVERSATION_ID_RE.search(twiml or "")
    return match.group(1) if match else None


class VoiceAgentClient:
    """Thin async client for the conversational voice API (agents, calls, conversations)."""

    def __init__(self) -> None:
        self.api_key = os.getenv("ELEVENLABS_API_KEY")
        self.base_url = "https://api.elevenlabs.io"
        self.configured = bool(self.api_key and self.api_key.strip())

        if not self.configured:
            logger.info("VoiceAgentClient initialized without API key")

    def _headers(self, json_body: bool = True) -> Dict[str, str]:
        if not self.configured:
            raise VoiceNotConfigured("ELEVENLABS_API_KEY not configured")
        headers = {"xi-api-key": self.api_key}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def _request(self, method: str, path: str, label: str = "ElevenLabs API error",
                       timeout: float = 30.0, **kwargs) -> httpx.Response:
        headers = kwargs.pop("headers", None) or self._headers(json_body="files" not in kwargs)
        async with httpx.AsyncClient() as client:
            response = await client.request(method, f"{self.base_url}{path}", headers=headers,
                                            timeout=timeout, **kwargs)
        if response.status_code >= 400:
            logger.error(f"Voice API {method} {path} failed: {response.status_code} - {response.text}")
            raise VendorAPIError(response.status_code, f"{label}: {response.status_code}", response.text)
        return response

    # Agents
    async def create_agent(self, name: str, conversation_config: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Creating voice agent {name}")
        response = await self._request("POST", "/v1/convai/agents/create",
                                       json={"name": name, "conversation_config": conversation_config})
        return response.json()

    async def get_agent(self, agent_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/v1/convai/agents/{agent_id}")
        return response.json()

    async def update_agent(self, agent_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Updating voice agent {agent_id}")
        response = await self._request("PATCH", f"/v1/convai/agents/{agent_id}", json=payload)
        return response.json()

    async def delete_agent(self, agent_id: str) -> None:
        logger.info(f"Deleting voice agent {agent_id}")
        await self._request("DELETE", f"/v1/convai/agents/{agent_id}")

    # Knowledge base
    async def upload_knowledge_file(self, filename: str, content: bytes, content_type: Optional[str],
                                    name: Optional[str] = None) -> Dict[str, Any]:
        files = {"file": (filename, content, content_type or "application/octet-stream")}
        data = {"name": name} if name else None
        response = await self._request("POST", "/v1/convai/knowledge-base/file", timeout=60.0,
                                       files=files, data=data)
        return response.json()

    async def add_knowledge_url(self, url: str, name: Optional[str] = None) -> Dict[str, Any]:
        payload = {"url": url}
        if name:
            payload["name"] = name
        response = await self._request("POST", "/v1/convai/knowledge-base/url", json=payload)
        return response.json()

    async def attach_knowledge(self, agent_id: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Append a knowledge-base document to the agent's existing list."""
        agent = await self.get_agent(agent_id)
        prompt = ((agent.get("conversation_config") or {}).get("agent") or {}).get("prompt") or {}
        existing: List[Dict[str, Any]] = list(prompt.get("knowledge_base") or [])
        existing.append(entry)
        return await self.update_agent(agent_id, {
            "conversation_config": {"agent": {"prompt": {"knowledge_base": existing}}},
        })

    # Speech
    async def text_to_speech(self, voice_id: str, text: str) -> bytes:
        headers = self._headers()
        headers["Accept"] = "audio/mpeg"
        response = await self._request("POST", f"/v1/text-to-speech/{voice_id}", label="ElevenLabs TTS error",
                                       headers=headers, json={
                                           "text": text[:TTS_MAX_CHARS],
                                           "model_id": "eleven_multilingual_v2",
                                           "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
                                       })
        return response.content

    async def get_signed_url(self, agent_id: str) -> str:
        response = await self._request("GET", "/v1/convai/conversation/get_signed_url",
                                       params={"agent_id": agent_id})
        return response.json().get("signed_url")

    # Telephony
    async def list_phone_numbers(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/v1/convai/phone-numbers")
        data = response.json()
        if isinstance(data, list):
            return data
        return data.get("phone_numbers") or []

    async def import_twilio_number(self, phone_number: str, label: str, sid: str, token: str) -> str:
        logger.info(f"Registering {phone_number} with the voice API")
        response = await self._request("POST", "/v1/convai/phone-numbers", json={
            "phone_number": phone_number,
            "provider": "twilio",
            "label": label,
            "sid": sid,
            "token": token,
        })
        return response.json().get("phone_number_id")

    async def resolve_phone_number_id(self, phone_number: str, sid: str, token: str) -> str:
        """Return the vendor id of an imported number, importing it on first use."""
        for entry in await self.list_phone_numbers():
            if entry.get("phone_number") == phone_number:
                return entry.get("phone_number_id")
        return await self.import_twilio_number(phone_number, f"HallCall {phone_number}", sid, token)

    async def outbound_call(self, agent_id: str, phone_number_id: str, to_number: str) -> Dict[str, Any]:
        logger.info(f"Placing outbound call with agent {agent_id} to {to_number}")
        response = await self._request("POST", "/v1/convai/twilio/outbound-call", json={
            "agent_id": agent_id,
            "agent_phone_number_id": phone_number_id,
            "to_number": to_number,
            "conversation_initiation_client_data": {"dynamic_variables": {"caller_phone": to_number}},
        })
        return response.json()

    async def register_inbound_call(self, agent_id: str, from_number: str, to_number: str, call_sid: str) -> str:
        """Register a live inbound call and return the TwiML that connects it."""
        response = await self._request("POST", "/v1/convai/twilio/register-call", json={
            "agent_id": agent_id,
            "from_number": from_number,
            "to_number": to_number,
            "direction": "inbound",
            "conversation_initiation_client_data": {
                "dynamic_variables": {"call_sid": call_sid, "caller_phone": from_number},
            },
        })
        return response.text

    # Conversations
    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/v1/convai/conversations/{conversation_id}", timeout=15.0)
        return response.json()

    async def get_conversation_audio(self, conversation_id: str) -> httpx.Response:
        return await self._request("GET", f"/v1/convai/conversations/{conversation_id}/audio", timeout=60.0)
