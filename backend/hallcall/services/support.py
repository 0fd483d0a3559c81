"""After-sales support for the voice agent webhook: tickets, notes, notifications and callbacks."""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Optional

from .calendar import create_appointment_event
from .contacts import (
    describe_contact,
    describe_matches,
    find_or_create_contact,
    full_name,
    register_contact,
    search_contacts,
    strip_spaces,
)
from .email_client import text_to_html
from .notifications import send_templated_email, send_templated_sms
from .orders import reference_number
from .scheduling import DAY_LABELS, business_now, day_code, parse_slot, record_appointment, transfer_call

logger = logging.getLogger(__name__)

TICKET_STATUSES = ("open", "in_progress", "waiting", "resolved", "closed")
TICKET_PRIORITIES = ("low", "medium", "high", "urgent")
TICKET_CATEGORIES = ("general", "technical", "billing", "feature_request", "bug")
RECENT_TICKETS_SHOWN = 5
MEETING_MINUTES = 30

_CASE_NUMBER_RE = re.compile(r"SAV-\d{8}-\d{5}")


def search_client(db, config: Dict[str, Any], query: str) -> str:
    if not (query or "").strip():
        return "Veuillez fournir un numero de telephone, une adresse email ou un nom pour rechercher le client."
    matches = search_contacts(db, config["user_id"], query)
    if not matches:
        return ("Aucun client trouve avec ces informations. Propose au client de l'enregistrer "
                "en collectant son prenom, nom, telephone et email.")
    if len(matches) > 1:
        return describe_matches(matches)

    contact = matches[0]
    answer = describe_contact(contact)
    if contact.get("notes"):
        answer += f"\n- Notes: {contact['notes']}"
    tickets = db.select("support_tickets", [("eq", "user_id", config["user_id"]), ("eq", "contact_id", contact["id"])],
                        order="created_at", desc=True, limit=RECENT_TICKETS_SHOWN)
    if not tickets:
        return answer + "\nAucun ticket SAV precedent."
    return answer + "\nTickets recents:\n" + "\n".join(
        f"- {t['case_number']}: {t['subject']} ({t['status']}, {t['priority']}), le {str(t.get('created_at'))[:10]}"
        for t in tickets
    )


def create_ticket(db, config: Dict[str, Any], params: Dict[str, Any], now: Optional[datetime] = None) -> str:
    subject = (params.get("subject") or "").strip()
    description = (params.get("description") or "").strip()
    if not subject or not description:
        return "Informations manquantes. Il faut au minimum: sujet et description du probleme."

    priority = params.get("priority") if params.get("priority") in TICKET_PRIORITIES else None
    category = params.get("category") if params.get("category") in TICKET_CATEGORIES else None
    contact = None
    if params.get("client_phone"):
        contact = db.find_contact_by_phone(config["user_id"], strip_spaces(params["client_phone"]))

    case_number = reference_number("SAV", now)
    try:
        db.insert("support_tickets", {
            "user_id": config["user_id"],
            "agent_id": config.get("agent_id"),
            "case_number": case_number,
            "contact_id": contact["id"] if contact else None,
            "subject": subject,
            "description": description,
            "status": "open",
            "priority": priority or config.get("default_priority") or "medium",
            "category": category or config.get("default_category") or "general",
        })
    except Exception as e:
        logger.error(f"Ticket insert failed for {config['user_id']}: {e}")
        return "Erreur lors de la creation du ticket. Veuillez reessayer."
    logger.info(f"Ticket {case_number} opened for user {config['user_id']}")
    return (f"Ticket SAV cree avec succes. Numero de dossier: {case_number}. "
            "Communique ce numero au client pour le suivi.")


def _find_ticket(db, user_id: str, case_number: str) -> Optional[Dict[str, Any]]:
    return db.select_one("support_tickets", [("eq", "user_id", user_id), ("eq", "case_number", case_number)])


def update_ticket_status(db, config: Dict[str, Any], case_number: Optional[str], new_status: Optional[str]) -> str:
    if not case_number or not new_status:
        return "Informations manquantes. Il faut le numero du ticket et le nouveau statut."
    if new_status not in TICKET_STATUSES:
        return f"Statut invalide. Les statuts possibles sont: {', '.join(TICKET_STATUSES)}."
    ticket = _find_ticket(db, config["user_id"], case_number)
    if not ticket:
        return f"Ticket {case_number} non trouve. Verifiez le numero du ticket."
    db.update_owned("support_tickets", config["user_id"], ticket["id"], {"status": new_status})
    return f'Ticket {case_number} mis a jour: statut change de "{ticket["status"]}" a "{new_status}".'


def add_ticket_note(db, config: Dict[str, Any], case_number: Optional[str], content: Optional[str]) -> str:
    content = (content or "").strip()
    if not case_number or not content:
        return "Informations manquantes. Il faut le numero du ticket et le contenu de la note."
    ticket = _find_ticket(db, config["user_id"], case_number)
    if not ticket:
        return f"Ticket {case_number} non trouve. Verifiez le numero du ticket."
    db.insert("ticket_comments", {
        "ticket_id": ticket["id"],
        "user_id": config["user_id"],
        "content": content,
        "is_internal": False,
    })
    return f"Note ajoutee au ticket {case_number} avec succes."


def _template_variables(db, config: Dict[str, Any], contact: Optional[Dict[str, Any]], message: str,
                        subject: str = "") -> Dict[str, Any]:
    ticket_number = ""
    if contact:
        latest = db.select_one("support_tickets", [("eq", "user_id", config["user_id"]),
                                                   ("eq", "contact_id", contact["id"])],
                               order="created_at", desc=True)
        ticket_number = latest["case_number"] if latest else ""
    if not ticket_number:
        match = _CASE_NUMBER_RE.search(message or "")
        ticket_number = match.group(0) if match else ""
    today = business_now().date()
    return {
        "client_name": full_name(contact) if contact else "",
        "client_phone": (contact or {}).get("phone") or "",
        "client_email": (contact or {}).get("email") or "",
        "ticket_number": ticket_number,
        "date": f"{DAY_LABELS[day_code(today)]} {today.isoformat()}",
        "subject": subject,
        "message": message,
    }


async def send_sms(db, config: Dict[str, Any], phone_number: Optional[str], message: Optional[str]) -> str:
    if not phone_number or not message:
        return "Informations manquantes. Il faut le numero de telephone et le message."
    phone = strip_spaces(phone_number)
    contact = db.find_contact_by_phone(config["user_id"], phone)
    variables = _template_variables(db, config, contact, message)
    try:
        await send_templated_sms(db, config["user_id"], phone, message, variables,
                                 template_id=config.get("sms_template_id"),
                                 contact_id=contact["id"] if contact else None)
    except Exception as e:
        logger.warning(f"Support SMS to {phone} failed: {e}")
        return "Erreur lors de l'envoi du SMS. Veuillez reessayer."
    return f"SMS envoye avec succes au {phone_number}."


async def send_email(db, config: Dict[str, Any], email: Optional[str], subject: Optional[str],
                     body: Optional[str]) -> str:
    if not email or not subject or not body:
        return "Informations manquantes. Il faut l'adresse email, le sujet et le contenu."
    contact = db.select_one("contacts", [("eq", "user_id", config["user_id"]), ("ilike", "email", email)])
    variables = _template_variables(db, config, contact, body, subject)
    variables["client_email"] = email
    try:
        await send_templated_email(db, config["user_id"], email, subject, text_to_html(body), variables,
                                   template_id=config.get("email_template_id"))
    except Exception as e:
        logger.warning(f"Support email to {email} failed: {e}")
        return "Erreur lors de l'envoi de l'email. Veuillez reessayer."
    return f"Email envoye avec succes a {email}."


async def schedule_meeting(db, config: Dict[str, Any], params: Dict[str, Any], now: Optional[datetime] = None) -> str:
    client_name = (params.get("client_name") or "").strip()
    client_phone = params.get("client_phone") or ""
    client_email = (params.get("client_email") or "").strip() or None
    motif = (params.get("motif") or "").strip()
    if not client_name or not client_phone or not params.get("date") or not params.get("time") or not motif:
        return "Informations manquantes. Il faut: nom du client, telephone, date, heure et motif."
    try:
        start_local, end_local = parse_slot(params["date"], params["time"], MEETING_MINUTES, now)
    except ValueError:
        return "Date ou heure invalide. Utilisez le format AAAA-MM-JJ et HH:MM."

    user_id = config["user_id"]
    contact_id = find_or_create_contact(db, user_id, client_name, strip_spaces(client_phone), client_email)
    description = f"Support: {motif}\nClient: {client_name}, Tel: {client_phone}"
    if client_email:
        description += f", Email: {client_email}"
    event = await create_appointment_event(db, user_id, motif, start_local.isoformat(), end_local.isoformat(),
                                           description)
    try:
        record_appointment(db, config, contact_id, motif, description, start_local, end_local, event)
    except Exception as e:
        logger.error(f"Support meeting insert failed for {user_id}: {e}")
        return "Erreur lors de la planification du rendez-vous. Veuillez reessayer."

    return (f"Rendez-vous planifie avec succes pour {client_name} le {start_local.date().isoformat()} "
            f"a {start_local:%H:%M} ({MEETING_MINUTES} minutes). Motif: {motif}.")


async def handle_action(db, config: Dict[str, Any], body: Dict[str, Any], now: Optional[datetime] = None) -> str:
    action = body.get("action")
    if action == "search_client":
        return search_client(db, config, body.get("query") or "")
    if action == "register_client":
        return register_contact(db, config["user_id"], body, with_company=True)
    if action == "create_ticket":
        return create_ticket(db, config, body, now)
    if action == "update_ticket_status":
        return update_ticket_status(db, config, body.get("case_number"), body.get("new_status"))
    if action == "add_ticket_note":
        return add_ticket_note(db, config, body.get("case_number"), body.get("content"))
    if action == "send_sms":
        return await send_sms(db, config, body.get("phone_number"), body.get("message"))
    if action == "send_email":
        return await send_email(db, config, body.get("email"), body.get("subject"), body.get("body"))
    if action == "schedule_meeting":
        return await schedule_meeting(db, config, body, now)
    if action == "transfer_call":
        return await transfer_call(db, body.get("call_sid"), body.get("phone_number"),
                                   agent_id=config.get("agent_id"))
    return f"Action inconnue: {action}"
