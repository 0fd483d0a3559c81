from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

from hallcall.services import notifications, support
from hallcall.services.calendar import business_timezone
from hallcall.services.scheduling import transfer_call
from hallcall.services.support import handle_action

NOW = datetime(2025, 3, 12, 10, 0, tzinfo=business_timezone())


@pytest.fixture
def support_config(user, agent):
    return {"user_id": user["id"], "agent_id": agent["id"], "default_priority": "high",
            "default_category": "technical", "webhook_secret": "support-key"}


@pytest.fixture
def marc(store, user):
    return store.insert("contacts", {"user_id": user["id"], "first_name": "Marc", "last_name": "Petit",
                                     "phone": "+33655555555", "notes": "Client fidele"})


async def test_create_ticket_uses_configured_defaults(store, support_config, marc):
    answer = await handle_action(store, support_config, {
        "action": "create_ticket", "subject": "Box HS", "description": "Plus de connexion",
        "priority": "bogus", "client_phone": "+336 55 55 55 55",
    }, NOW)
    [ticket] = store.select("support_tickets")
    assert answer.startswith(f"Ticket SAV cree avec succes. Numero de dossier: {ticket['case_number']}.")
    assert ticket["case_number"].startswith("SAV-20250312-")
    assert (ticket["priority"], ticket["category"], ticket["status"]) == ("high", "technical", "open")
    assert ticket["contact_id"] == marc["id"]


async def test_create_ticket_requires_subject_and_description(store, support_config):
    answer = await handle_action(store, support_config, {"action": "create_ticket", "subject": "Box HS"})
    assert answer.startswith("Informations manquantes.")
    assert store.select("support_tickets") == []


async def test_search_client_shows_notes_and_tickets(store, support_config, marc):
    assert (await handle_action(store, support_config, {"action": "search_client", "query": "Petit"})).endswith(
        "Aucun ticket SAV precedent.")
    store.insert("support_tickets", {"user_id": support_config["user_id"], "contact_id": marc["id"],
                                     "case_number": "SAV-1", "subject": "Box HS", "status": "open",
                                     "priority": "high", "created_at": "2025-03-10T09:00:00+00:00"})
    answer = await handle_action(store, support_config, {"action": "search_client", "query": "+33655555555"})
    assert "- Notes: Client fidele" in answer
    assert "- SAV-1: Box HS (open, high), le 2025-03-10" in answer


async def test_ticket_status_and_notes(store, support_config, user):
    ticket = store.insert("support_tickets", {"user_id": user["id"], "case_number": "SAV-2", "subject": "x",
                                              "status": "open", "priority": "low"})
    changed = await handle_action(store, support_config, {"action": "update_ticket_status", "case_number": "SAV-2",
                                                          "new_status": "resolved"})
    assert changed == 'Ticket SAV-2 mis a jour: statut change de "open" a "resolved".'
    invalid = await handle_action(store, support_config, {"action": "update_ticket_status", "case_number": "SAV-2",
                                                          "new_status": "done"})
    assert invalid.startswith("Statut invalide.")
    note = await handle_action(store, support_config, {"action": "add_ticket_note", "case_number": "SAV-2",
                                                       "content": "Rappeler demain"})
    assert note == "Note ajoutee au ticket SAV-2 avec succes."
    [comment] = store.select("ticket_comments", [("eq", "ticket_id", ticket["id"])])
    assert comment["content"] == "Rappeler demain"
    missing = await handle_action(store, support_config, {"action": "add_ticket_note", "case_number": "SAV-9",
                                                          "content": "x"})
    assert missing.startswith("Ticket SAV-9 non trouve.")


async def test_other_tenant_tickets_are_invisible(store, support_config):
    store.insert("support_tickets", {"user_id": "someone-else", "case_number": "SAV-3", "subject": "x",
                                     "status": "open"})
    answer = await handle_action(store, support_config, {"action": "update_ticket_status", "case_number": "SAV-3",
                                                         "new_status": "closed"})
    assert answer.startswith("Ticket SAV-3 non trouve.")


async def test_sms_uses_configured_template(store, support_config, user, marc):
    template = store.insert("notification_templates", {
        "user_id": user["id"], "name": "Suivi", "type": "sms",
        "content": "Bonjour {{client_name}}, dossier {{ticket_number}}. {{inconnu}}",
    })
    support_config["sms_template_id"] = template["id"]
    with patch.object(notifications, "send_and_log_sms", new=AsyncMock(return_value={"sid": "SM1"})) as send:
        answer = await handle_action(store, support_config, {"action": "send_sms", "phone_number": "+33655555555",
                                                             "message": "Votre ticket SAV-20250312-00042"})
    assert answer == "SMS envoye avec succes au +33655555555."
    assert send.await_args.args[3] == "Bonjour Marc Petit, dossier SAV-20250312-00042. {{inconnu}}"
    assert send.await_args.kwargs["template_id"] == template["id"]


async def test_email_without_template_sends_message(store, support_config):
    with patch.object(notifications, "send_user_email", new=AsyncMock(return_value="resend")) as send:
        answer = await handle_action(store, support_config, {"action": "send_email", "email": "a@b.fr",
                                                             "subject": "Suivi", "body": "Ligne 1\nLigne 2"})
    assert answer == "Email envoye avec succes a a@b.fr."
    assert "Ligne 1<br>Ligne 2" in send.await_args.args[4]


async def test_schedule_meeting_books_thirty_minutes(store, support_config):
    event = {"event_id": "evt", "meeting_link": "https://meet.example/x", "provider": "google"}
    with patch.object(support, "create_appointment_event", new=AsyncMock(return_value=event)):
        answer = await handle_action(store, support_config, {
            "action": "schedule_meeting", "client_name": "Marc Petit", "client_phone": "+33655555555",
            "date": "2025-03-14", "time": "14:00", "motif": "Intervention",
        }, NOW)
    assert answer == ("Rendez-vous planifie avec succes pour Marc Petit le 2025-03-14 a 14:00 (30 minutes). "
                      "Motif: Intervention.")
    [appointment] = store.select("appointments")
    assert appointment["start_at"] == "2025-03-14T14:00:00+01:00"
    assert appointment["end_at"] == "2025-03-14T14:30:00+01:00"
    assert appointment["location"] == "https://meet.example/x"


async def test_transfer_falls_back_to_latest_agent_call(store, user, agent):
    store.insert("conversations", {"user_id": user["id"], "agent_id": agent["id"], "twilio_call_sid": "CA42",
                                   "status": "active", "started_at": "2025-03-12T09:00:00+00:00"})
    telephony = AsyncMock()
    answer = await transfer_call(store, "{{call_sid}}", "+33699999999", client=telephony, agent_id=agent["id"])
    telephony.redirect_call.assert_awaited_once_with("CA42", "<Response><Dial>+33699999999</Dial></Response>")
    assert answer.startswith("Le transfert vers +33699999999 est en cours.")


async def test_transfer_without_known_call_is_reported(store, agent):
    answer = await transfer_call(store, None, "+33699999999", client=AsyncMock(), agent_id=agent["id"])
    assert answer == "Impossible de determiner l'identifiant de l'appel pour le transfert."
