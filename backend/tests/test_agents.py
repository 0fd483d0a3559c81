from unittest.mock import AsyncMock, patch

import httpx

from hallcall.services.voice_client import VendorAPIError, VoiceAgentClient, build_conversation_config


def test_build_conversation_config_fills_defaults():
    config = build_conversation_config({"system_prompt": "Sois poli", "voice_id": "v1", "temperature": 0})
    assert config["agent"]["prompt"] == {"prompt": "Sois poli", "llm": "gpt-4o-mini", "temperature": 0, "max_tokens": -1}
    assert config["agent"]["language"] == "fr"
    assert config["tts"]["model_id"] == "eleven_flash_v2_5"
    assert config["tts"]["speed"] == 1.0
    assert config["conversation"]["max_duration_seconds"] == 600
    assert config["turn"] == {"turn_eagerness": "eager", "turn_timeout": 1}
    assert "turn" not in build_conversation_config({}, turn=False)


def test_create_agent_mirrors_locally(client, store, user, auth_headers, voice_env):
    with patch.object(VoiceAgentClient, "create_agent", new=AsyncMock(return_value={"agent_id": "agent_new"})) as create:
        response = client.post("/api/agents", headers=auth_headers, json={
            "name": "Standard", "systemPrompt": "Bonjour", "voiceId": "voice_1", "temperature": 0.2,
        })
    assert response.status_code == 201
    assert response.json() == {"agent_id": "agent_new"}
    name, config = create.await_args.args
    assert name == "Standard"
    assert config["agent"]["prompt"]["temperature"] == 0.2

    row = store.get_owned_agent(user["id"], "agent_new")
    assert row["system_prompt"] == "Bonjour"
    assert row["voice_id"] == "voice_1"
    assert row["llm_model"] == "gpt-4o-mini"
    assert row["max_duration_seconds"] == 600


def test_list_agents_returns_vendor_shape(client, agent, auth_headers, other_headers):
    agents = client.get("/api/agents", headers=auth_headers).json()["agents"]
    assert [a["agent_id"] for a in agents] == ["agent_abc"]
    assert agents[0]["conversation_config"]["agent"]["language"] == "fr"
    assert client.get("/api/agents", headers=other_headers).json() == {"agents": []}


def test_other_tenant_cannot_touch_agent(client, store, agent, other_headers):
    with patch.object(VoiceAgentClient, "delete_agent", new=AsyncMock()) as delete, \
            patch.object(VoiceAgentClient, "get_agent", new=AsyncMock(return_value={})) as get:
        assert client.get("/api/agents/agent_abc", headers=other_headers).status_code == 404
        response = client.delete("/api/agents/agent_abc", headers=other_headers)
    assert response.status_code == 404
    assert response.json() == {"error": "Agent introuvable"}
    delete.assert_not_awaited()
    get.assert_not_awaited()
    assert store.get_agent(agent["id"]) is not None


def test_update_agent_syncs_form_fields(client, store, user, agent, auth_headers, voice_env):
    with patch.object(VoiceAgentClient, "update_agent", new=AsyncMock(return_value={"agent_id": "agent_abc"})) as update:
        response = client.patch("/api/agents/agent_abc", headers=auth_headers,
                                json={"firstMessage": "Allo ?", "speed": 1.1})
    assert response.status_code == 200
    agent_id, payload = update.await_args.args
    assert agent_id == "agent_abc"
    assert payload["conversation_config"]["tts"]["model_id"] == "eleven_turbo_v2_5"
    assert "turn" not in payload["conversation_config"]
    row = store.get_owned_agent(user["id"], "agent_abc")
    assert row["first_message"] == "Allo ?"
    assert row["speed"] == 1.1


def test_delete_agent_removes_row(client, store, user, agent, auth_headers, voice_env):
    with patch.object(VoiceAgentClient, "delete_agent", new=AsyncMock()):
        response = client.delete("/api/agents/agent_abc", headers=auth_headers)
    assert response.json() == {"success": True}
    assert store.get_owned_agent(user["id"], "agent_abc") is None


def test_vendor_error_status_is_passed_through(client, agent, auth_headers, voice_env):
    error = VendorAPIError(422, "ElevenLabs API error: 422", '{"detail": "bad voice"}')
    with patch.object(VoiceAgentClient, "get_agent", new=AsyncMock(side_effect=error)):
        response = client.get("/api/agents/agent_abc", headers=auth_headers)
    assert response.status_code == 422
    assert response.json() == {"error": "ElevenLabs API error: 422", "details": '{"detail": "bad voice"}'}


def test_missing_voice_key_is_reported(client, agent, auth_headers):
    response = client.get("/api/agents/agent_abc", headers=auth_headers)
    assert response.status_code == 500
    assert response.json() == {"error": "ELEVENLABS_API_KEY not configured"}


def test_knowledge_base_url_is_attached(client, store, agent, auth_headers, voice_env):
    with patch.object(VoiceAgentClient, "add_knowledge_url", new=AsyncMock(return_value={"id": "doc_1"})), \
            patch.object(VoiceAgentClient, "attach_knowledge", new=AsyncMock(return_value={})) as attach:
        response = client.post("/api/agents/agent_abc/knowledge-base", headers=auth_headers,
                               data={"url": "https://example.com/faq", "name": "FAQ"})
    assert response.status_code == 201
    attach.assert_awaited_once_with("agent_abc", {"type": "url", "id": "doc_1", "name": "FAQ", "usage_mode": "auto"})
    items = store.select("knowledge_base_items", [("eq", "agent_id", agent["id"])])
    assert items[0]["source_url"] == "https://example.com/faq"


def test_knowledge_base_requires_file_or_url(client, agent, auth_headers):
    response = client.post("/api/agents/agent_abc/knowledge-base", headers=auth_headers, data={"name": "x"})
    assert response.status_code == 400


def test_tts_returns_audio(client, auth_headers, voice_env):
    with patch.object(VoiceAgentClient, "text_to_speech", new=AsyncMock(return_value=b"ID3audio")):
        response = client.post("/api/tts", headers=auth_headers, json={"voiceId": "v1", "text": "Bonjour"})
    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert response.content == b"ID3audio"


def test_conversation_lifecycle_counts_minutes(client, store, user, agent, auth_headers):
    started = client.post("/api/conversations/start", headers=auth_headers, json={"agentId": "agent_abc"})
    assert started.status_code == 201
    conversation = started.json()["conversation"]
    assert conversation["status"] == "active" and conversation["call_type"] == "test"

    store.update_conversation(conversation["id"], {"started_at": "2020-01-01T00:00:00+00:00"})
    client.post(f"/api/conversations/{conversation['id']}/messages", headers=auth_headers,
                json={"source": "user", "content": "Bonjour"})
    ended = client.post(f"/api/conversations/{conversation['id']}/end", headers=auth_headers).json()["conversation"]
    assert ended["status"] == "ended"
    assert store.get_profile(user["id"])["minutes_used"] > 60

    listed = client.get("/api/conversations", headers=auth_headers).json()["conversations"]
    assert listed[0]["messages"][0]["content"] == "Bonjour"
    assert listed[0]["agent"] == {"name": "Accueil"}


def test_conversation_list_is_enriched_from_vendor(client, store, user, agent, auth_headers, voice_env):
    conv = store.create_conversation({
        "user_id": user["id"], "agent_id": agent["id"], "elevenlabs_agent_id": "agent_abc",
        "elevenlabs_conversation_id": "conv_1", "call_type": "inbound",
    })
    vendor = {
        "status": "done",
        "metadata": {"call_duration_secs": 42.4, "start_time_unix_secs": 1700000000},
        "transcript": [
            {"role": "agent", "message": "Bonjour", "time_in_call_secs": 0},
            {"role": "user", "message": "Je voudrais un rendez-vous", "time_in_call_secs": 3},
        ],
    }
    with patch.object(VoiceAgentClient, "get_conversation", new=AsyncMock(return_value=vendor)):
        listed = client.get("/api/conversations", headers=auth_headers).json()["conversations"]
    assert listed[0]["duration_seconds"] == 42
    assert listed[0]["status"] == "ended"
    assert [m["source"] for m in listed[0]["messages"]] == ["ai", "user"]
    assert store.get_owned_conversation(user["id"], conv["id"])["ended_at"].startswith("2023-11-14T22:14:02")


def test_audio_requires_owned_conversation(client, store, user, agent, auth_headers, other_headers, voice_env):
    store.create_conversation({"user_id": user["id"], "elevenlabs_conversation_id": "conv_1"})
    audio = httpx.Response(200, content=b"mp3", headers={"content-type": "audio/mpeg"})
    with patch.object(VoiceAgentClient, "get_conversation_audio", new=AsyncMock(return_value=audio)):
        assert client.get("/api/conversations/audio/conv_1", headers=other_headers).status_code == 404
        response = client.get("/api/conversations/audio/conv_1", headers=auth_headers)
    assert response.status_code == 200
    assert response.content == b"mp3"
    assert response.headers["cache-control"] == "private, max-age=3600"
