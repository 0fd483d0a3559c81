from unittest.mock import AsyncMock, patch

import pytest

from hallcall.services.agent_profiles import transfer_prompt
from hallcall.services.voice_client import VoiceAgentClient


def tool_names(payload):
    return [tool["name"] for tool in payload["conversation_config"]["agent"]["prompt"]["tools"]]


def save(client, headers, kind, body):
    with patch.object(VoiceAgentClient, "update_agent", new=AsyncMock(return_value={"agent_id": "agent_abc"})) as update:
        response = client.put(f"/api/agents/agent_abc/{kind}-config", headers=headers, json=body)
    return response, update


def test_transfer_prompt_lists_conditions():
    prompt = transfer_prompt({
        "transfer_enabled": True,
        "default_transfer_number": "+33100000000",
        "transfer_conditions": [{"condition": "demande_conseiller", "phone": "+33600000000"},
                                {"condition": "etape_critique", "phone": None}],
    })
    assert "passe TOUJOURS {{call_sid}} comme valeur du champ call_sid" in prompt
    assert "explicitly asks to speak with a human advisor or counselor. → Transferer vers +33600000000" in prompt
    assert "payment, dispute, or complaint. → Transferer vers +33100000000" in prompt
    assert transfer_prompt({"transfer_enabled": False}) == ""


def test_appointment_config_pushes_prompt_and_tools(client, store, user, agent, auth_headers, voice_env, monkeypatch):
    monkeypatch.setenv("PUBLIC_API_URL", "https://api.hallcall.test/")
    response, update = save(client, auth_headers, "appointment", {
        "systemPrompt": "Tu es l'assistant du cabinet Dupont.",
        "rdvConfig": {"transfer_enabled": True, "default_transfer_number": "+33600000000",
                      "breaks": [{"start": "12:00", "end": "13:00"}]},
    })
    assert response.status_code == 200
    assert "webhook_secret" not in response.json()["config"]

    config = store.get_agent_config("agent_rdv_config", agent["id"])
    assert len(config["webhook_secret"]) >= 32
    assert config["user_id"] == user["id"]
    assert config["breaks"] == [{"start": "12:00", "end": "13:00"}]

    agent_id, payload = update.await_args.args
    assert agent_id == "agent_abc"
    assert payload["name"] == "Accueil"
    assert tool_names(payload) == ["verifier_disponibilite", "reserver_rendez_vous", "end_call", "transferer_appel"]
    booking = payload["conversation_config"]["agent"]["prompt"]["tools"][1]
    assert booking["api_schema"]["url"] == "https://api.hallcall.test/api/webhooks/appointments"
    assert booking["api_schema"]["request_headers"] == {"x-webhook-secret": config["webhook_secret"]}
    assert booking["api_schema"]["request_body_schema"]["required"][0] == "action"

    prompt = payload["conversation_config"]["agent"]["prompt"]["prompt"]
    assert prompt.startswith("Tu es l'assistant du cabinet Dupont.")
    assert "- Pauses : 12:00 - 13:00" in prompt
    assert "## Transfert d'appel" in prompt
    row = store.get_owned_agent(user["id"], "agent_abc")
    assert row["system_prompt"] == prompt
    assert row["agent_type"] == "rdv"


def test_saving_again_keeps_secret_and_does_not_stack_sections(client, store, agent, auth_headers, voice_env):
    save(client, auth_headers, "appointment", {"systemPrompt": "Cabinet Dupont."})
    secret = store.get_agent_config("agent_rdv_config", agent["id"])["webhook_secret"]
    response, update = save(client, auth_headers, "appointment", {"rdvConfig": {"slot_duration_minutes": 45}})
    assert response.status_code == 200
    config = store.get_agent_config("agent_rdv_config", agent["id"])
    assert config["webhook_secret"] == secret
    assert config["slot_duration_minutes"] == 45
    assert len(store.select("agent_rdv_config")) == 1
    prompt = update.await_args.args[1]["conversation_config"]["agent"]["prompt"]["prompt"]
    assert prompt.startswith("Cabinet Dupont.")
    assert prompt.count("## Instructions de prise de rendez-vous") == 1


def test_saved_secret_authenticates_the_webhook(client, store, agent, auth_headers, voice_env):
    save(client, auth_headers, "appointment", {})
    secret = store.get_agent_config("agent_rdv_config", agent["id"])["webhook_secret"]
    response = client.post("/api/webhooks/appointments", json={"action": "dance"}, headers={"x-webhook-secret": secret})
    assert response.json() == {"result": "Action inconnue: dance"}


def test_other_tenant_cannot_configure_agent(client, store, agent, other_headers, voice_env):
    response, update = save(client, other_headers, "appointment", {})
    assert response.status_code == 404
    assert response.json() == {"error": "Agent introuvable"}
    update.assert_not_awaited()
    assert store.select("agent_rdv_config") == []


def test_invalid_config_is_rejected(client, store, agent, auth_headers, voice_env):
    response, update = save(client, auth_headers, "appointment", {"rdvConfig": {"start_time": "9h"}})
    assert response.status_code == 400
    assert response.json()["error"].startswith("Champ invalide: rdvConfig")
    update.assert_not_awaited()


@pytest.mark.parametrize("kind,key,config,expected", [
    ("order", "orderConfig", {"tax_rate": 0.2, "sms_enabled": True},
     ["rechercher_client", "enregistrer_client", "enregistrer_commande", "envoyer_sms_facture",
      "envoyer_email_facture", "end_call"]),
    ("support", "supportConfig", {"transfer_enabled": True, "default_transfer_number": "+33600000000"},
     ["rechercher_client", "enregistrer_client", "creer_ticket_sav", "modifier_statut_ticket", "ajouter_note_ticket",
      "envoyer_sms", "envoyer_email", "planifier_rdv", "end_call", "transferer_appel"]),
    ("commercial", "commercialConfig", {"product_name": "Box Pro", "availability_enabled": True},
     ["rechercher_contact", "enregistrer_qualification", "mettre_a_jour_contact", "proposer_rendez_vous",
      "envoyer_sms", "envoyer_email", "end_call", "verifier_disponibilite"]),
])
def test_family_configs_push_their_tools(client, store, agent, auth_headers, voice_env, kind, key, config, expected):
    response, update = save(client, auth_headers, kind, {key: config})
    assert response.status_code == 200
    payload = update.await_args.args[1]
    assert tool_names(payload) == expected
    stored = store.get_agent_config(f"agent_{kind}_config", agent["id"])
    assert stored["webhook_secret"]
    for name, value in config.items():
        assert stored[name] == value
    url = payload["conversation_config"]["agent"]["prompt"]["tools"][0]["api_schema"]["url"]
    assert url == f"http://localhost:8000/api/webhooks/{'orders' if kind == 'order' else kind}"


def test_get_config_hides_secret(client, store, agent, auth_headers, other_headers, voice_env):
    assert client.get("/api/agents/agent_abc/order-config", headers=auth_headers).json() == {"config": None}
    save(client, auth_headers, "order", {"orderConfig": {"currency": "CHF"}})
    config = client.get("/api/agents/agent_abc/order-config", headers=auth_headers).json()["config"]
    assert config["currency"] == "CHF"
    assert "webhook_secret" not in config
    assert client.get("/api/agents/agent_abc/order-config", headers=other_headers).status_code == 404
