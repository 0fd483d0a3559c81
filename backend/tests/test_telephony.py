from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from twilio.base.exceptions import TwilioRestException

from hallcall.services.scheduling import transfer_call
from hallcall.services.telephony import (
    TelephonyClient,
    dial_twiml,
    normalize_outbound,
    normalize_phone,
    phone_candidates,
    say_twiml,
    send_and_log_sms,
)
from hallcall.services.voice_client import VendorAPIError, VoiceAgentClient

VENDOR_TWIML = (
    '<?xml version="1.0" encoding="UTF-8"?><Response><Connect><Stream url="wss://x">'
    '<Parameter name="conversation_id" value="conv_in_1"/></Stream></Connect></Response>'
)


@pytest.mark.parametrize("raw,expected", [
    ("06 12 34 56 78", "+33612345678"),
    ("06.12.34.56.78", "+33612345678"),
    ("+33 6 12 34 56 78", "+33612345678"),
    ("(415) 555-0100", "4155550100"),
    ("", ""),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_normalize_outbound_adds_plus():
    assert normalize_outbound("33612345678") == "+33612345678"
    assert normalize_outbound("0612345678") == "+33612345678"


def test_phone_candidates_are_unique():
    assert phone_candidates("06 12 34 56 78") == ["06 12 34 56 78", "+33612345678"]
    assert phone_candidates(None) == []


def test_twiml_helpers_escape():
    assert say_twiml("A & B") == (
        '<?xml version="1.0" encoding="UTF-8"?><Response><Say language="fr-FR">A &amp; B</Say><Hangup/></Response>'
    )
    assert dial_twiml("+33100000000") == "<Response><Dial>+33100000000</Dial></Response>"


def _inbound(client, **form):
    return client.post("/api/telephony/voice", data=form)


def test_inbound_without_voice_key_says_config_error(client):
    response = _inbound(client, From="+33611111111", To="+33100000000", CallSid="CA1")
    assert response.headers["content-type"].startswith("application/xml")
    assert "Erreur de configuration du service" in response.text


def test_inbound_without_mapped_number_says_goodbye(client, voice_env):
    response = _inbound(client, From="+33611111111", To="+33100000000", CallSid="CA1")
    assert "aucun agent n'est configure pour ce numero. Au revoir." in response.text
    assert response.text.endswith("<Hangup/></Response>")


def test_inbound_connects_mapped_agent(client, store, user, agent, voice_env):
    store.insert("phone_numbers", {
        "user_id": user["id"], "agent_id": agent["id"], "phone_number": "+33100000000", "status": "active",
    })
    with patch.object(VoiceAgentClient, "register_inbound_call", new=AsyncMock(return_value=VENDOR_TWIML)) as register:
        response = _inbound(client, From="+33611111111", To="01 00 00 00 00", CallSid="CA42")
    assert response.text == VENDOR_TWIML
    register.assert_awaited_once_with("agent_abc", "+33611111111", "01 00 00 00 00", "CA42")

    conversation = store.select("conversations", [("eq", "twilio_call_sid", "CA42")])[0]
    assert conversation["user_id"] == user["id"]
    assert conversation["call_type"] == "inbound"
    assert conversation["elevenlabs_conversation_id"] == "conv_in_1"
    assert conversation["caller_phone"] == "+33611111111"


def test_inbound_prefers_forwarded_number(client, store, user, agent, voice_env):
    store.insert("phone_numbers", {
        "user_id": user["id"], "agent_id": agent["id"], "phone_number": "+33199999999", "status": "active",
    })
    with patch.object(VoiceAgentClient, "register_inbound_call", new=AsyncMock(return_value=VENDOR_TWIML)):
        response = _inbound(client, ForwardedFrom="+33199999999", From="+33611111111", To="+33100000000",
                            CallSid="CA43")
    assert response.text == VENDOR_TWIML


def test_inbound_vendor_failure_says_unavailable(client, store, user, agent, voice_env):
    store.insert("phone_numbers", {
        "user_id": user["id"], "agent_id": agent["id"], "phone_number": "+33100000000", "status": "active",
    })
    with patch.object(VoiceAgentClient, "register_inbound_call",
                      new=AsyncMock(side_effect=VendorAPIError(503, "down"))):
        response = _inbound(client, From="+33611111111", To="+33100000000", CallSid="CA44")
    assert "temporairement indisponible" in response.text
    assert store.select("conversations", []) == []


def test_outbound_call_requires_credentials(client, agent, auth_headers, voice_env):
    response = client.post("/api/calls/outbound", headers=auth_headers,
                           json={"elevenlabs_agent_id": "agent_abc", "to_number": "0612345678"})
    assert response.status_code == 400
    assert response.json() == {"error": "Twilio non configure"}


def test_outbound_call_records_conversation(client, store, user, agent, auth_headers, voice_env, twilio_env):
    with patch.object(VoiceAgentClient, "resolve_phone_number_id", new=AsyncMock(return_value="pn_1")), \
            patch.object(VoiceAgentClient, "outbound_call",
                         new=AsyncMock(return_value={"conversation_id": "conv_out", "callSid": "CA9"})) as call:
        response = client.post("/api/calls/outbound", headers=auth_headers,
                               json={"elevenlabs_agent_id": "agent_abc", "to_number": "06 12 34 56 78"})
    assert response.json() == {"ok": True, "conversation_id": "conv_out", "call_sid": "CA9"}
    call.assert_awaited_once_with("agent_abc", "pn_1", "+33612345678")
    conversation = store.select("conversations", [("eq", "elevenlabs_conversation_id", "conv_out")])[0]
    assert conversation["call_type"] == "outbound"
    assert conversation["twilio_call_sid"] == "CA9"
    assert conversation["agent_id"] == agent["id"]


def test_outbound_call_rejects_foreign_agent_id(client, store, user, agent, auth_headers, voice_env, twilio_env):
    other = store.create_user("rival@example.com", "secret123")
    foreign = store.insert("agents", {"user_id": other["id"], "elevenlabs_agent_id": "agent_rival", "name": "Rival"})
    with patch.object(VoiceAgentClient, "resolve_phone_number_id", new=AsyncMock(return_value="pn_1")), \
            patch.object(VoiceAgentClient, "outbound_call", new=AsyncMock()) as call:
        response = client.post("/api/calls/outbound", headers=auth_headers,
                               json={"elevenlabs_agent_id": "agent_abc", "agent_id": foreign["id"],
                                     "to_number": "0612345678"})
    assert response.status_code == 404
    assert response.json() == {"error": "Agent introuvable"}
    call.assert_not_awaited()
    assert store.select("conversations", []) == []


def test_phone_number_crud_is_owner_scoped(client, store, agent, auth_headers, other_headers):
    created = client.post("/api/phone-numbers", headers=auth_headers,
                          json={"phone_number": "01 00 00 00 00", "agent_id": agent["id"]})
    assert created.status_code == 201
    number = created.json()["phone_number"]
    assert number["phone_number"] == "+33100000000"

    assert client.post("/api/phone-numbers", headers=other_headers,
                       json={"phone_number": "0100000001", "agent_id": agent["id"]}).status_code == 404
    assert client.delete(f"/api/phone-numbers/{number['id']}", headers=other_headers).status_code == 404
    assert client.get("/api/phone-numbers", headers=other_headers).json() == {"phone_numbers": []}

    patched = client.patch(f"/api/phone-numbers/{number['id']}", headers=auth_headers, json={"status": "inactive"})
    assert patched.json()["phone_number"]["status"] == "inactive"
    assert client.delete(f"/api/phone-numbers/{number['id']}", headers=auth_headers).json() == {"success": True}


async def test_send_and_log_sms_logs_success(store, user):
    sms = MagicMock()
    sms.send_sms = AsyncMock(return_value={"sid": "SM1", "status": "queued"})
    result = await send_and_log_sms(store, user["id"], "+33612345678", "Bonjour", client=sms)
    assert result["sid"] == "SM1"
    history = store.select("sms_history", [("eq", "user_id", user["id"])])
    assert history[0]["status"] == "sent"
    assert history[0]["error_message"] is None


async def test_send_and_log_sms_logs_failure(store, user):
    sms = MagicMock()
    sms.send_sms = AsyncMock(side_effect=VendorAPIError(400, "Twilio SMS error", "invalid number"))
    with pytest.raises(VendorAPIError):
        await send_and_log_sms(store, user["id"], "+33000", "Bonjour", client=sms)
    history = store.select("sms_history", [("eq", "user_id", user["id"])])
    assert history[0]["status"] == "failed"
    assert history[0]["error_message"] == "invalid number"


async def test_twilio_errors_become_vendor_errors(twilio_env):
    telephony = TelephonyClient()
    telephony.client = MagicMock()
    telephony.client.messages.create.side_effect = TwilioRestException(400, "/Messages", msg="invalid To")
    with pytest.raises(VendorAPIError) as exc:
        await telephony.send_sms("+33000", "hi")
    assert exc.value.status_code == 400
    assert exc.value.details == "invalid To"


def test_sms_route_reports_missing_credentials(client, auth_headers):
    response = client.post("/api/sms/send", headers=auth_headers, json={"to": "0612345678", "content": "Bonjour"})
    assert response.status_code == 500
    assert response.json() == {"error": "Twilio credentials not configured"}


def test_sms_route_passes_vendor_status(client, store, user, auth_headers, twilio_env):
    with patch.object(TelephonyClient, "send_sms",
                      new=AsyncMock(side_effect=VendorAPIError(429, "Twilio SMS error", "rate limited"))):
        response = client.post("/api/sms/send", headers=auth_headers, json={"to": "0612345678", "content": "Hi"})
    assert response.status_code == 429
    assert response.json() == {"error": "Twilio SMS error", "details": "rate limited"}
    assert store.select("sms_history", [])[0]["phone_to"] == "+33612345678"


async def test_transfer_call_records_outcome(store, user):
    store.create_conversation({"user_id": user["id"], "twilio_call_sid": "CA7"})
    telephony = MagicMock()
    telephony.redirect_call = AsyncMock(return_value="CA7")
    answer = await transfer_call(store, "CA7", "+33699999999", client=telephony)
    assert answer.startswith("Le transfert vers +33699999999 est en cours.")
    telephony.redirect_call.assert_awaited_once_with("CA7", "<Response><Dial>+33699999999</Dial></Response>")
    conversation = store.select("conversations", [("eq", "twilio_call_sid", "CA7")])[0]
    assert conversation["transfer_status"] == "success"
    assert conversation["transferred_to"] == "+33699999999"


async def test_transfer_call_failure_is_recorded(store, user):
    store.create_conversation({"user_id": user["id"], "twilio_call_sid": "CA8"})
    telephony = MagicMock()
    telephony.redirect_call = AsyncMock(side_effect=VendorAPIError(404, "Twilio call update error: 404"))
    answer = await transfer_call(store, "CA8", "+33699999999", client=telephony)
    assert answer == "Erreur lors du transfert: 404. Veuillez reessayer."
    assert store.select("conversations", [("eq", "twilio_call_sid", "CA8")])[0]["transfer_status"] == "failed"
