"""Outbound sales for the voice agent webhook: prospect lookup, qualification and follow-up meetings.

Every answer starts with today's date in business time so the agent never has
to guess it.
"""
import logging
from datetime import datetime
from html import escape
from typing import Any, Dict, Optional

from .calendar import create_appointment_event
from .contacts import (
    describe_contact,
    describe_matches,
    find_or_create_contact,
    full_name,
    is_valid_email,
    search_contacts,
    strip_spaces,
)
from .email_client import email_layout, send_user_email, text_to_html
from .notifications import send_templated_email, send_templated_sms
from .scheduling import (
    business_now,
    check_availability,
    parse_slot,
    record_appointment,
    today_info,
    transfer_call,
)
from .telephony import phone_candidates, send_and_log_sms

logger = logging.getLogger(__name__)

QUALIFICATION_LABELS = {
    "interested": "Interesse",
    "not_interested": "Pas interesse",
    "callback": "Rappel demande",
    "transferred": "Transfere",
    "converted": "Converti",
}
LEAD_STATUSES = ("pending",) + tuple(QUALIFICATION_LABELS)
FOLLOWUP_MINUTES = 30

AVAILABILITY_DEFAULTS = {
    "working_days": ["lun", "mar", "mer", "jeu", "ven"],
    "start_time": "09:00",
    "end_time": "17:00",
    "slot_duration_minutes": 30,
    "breaks": [],
    "min_delay_hours": 2,
    "max_horizon_days": 30,
}


def _info(now: Optional[datetime]) -> str:
    return today_info(now or business_now())


def availability_config(config: Dict[str, Any]) -> Dict[str, Any]:
    merged = {key: default if config.get(key) is None else config[key] for key, default in AVAILABILITY_DEFAULTS.items()}
    merged["user_id"] = config["user_id"]
    return merged


def search_contact(db, config: Dict[str, Any], query: str, now: Optional[datetime] = None) -> str:
    if not (query or "").strip():
        return "Veuillez fournir un numero de telephone, une adresse email ou un nom pour rechercher le contact."
    matches = search_contacts(db, config["user_id"], query)
    if not matches:
        return "Aucun contact trouve avec ces informations."
    if len(matches) > 1:
        return describe_matches(matches, noun="contacts")
    contact = matches[0]
    answer = f"{_info(now)} {describe_contact(contact, title='Contact trouve')}"
    if contact.get("notes"):
        answer += f"\n- Notes: {contact['notes']}"
    if contact.get("tags"):
        answer += f"\n- Tags: {', '.join(contact['tags'])}"
    return answer


def update_contact(db, config: Dict[str, Any], params: Dict[str, Any], now: Optional[datetime] = None) -> str:
    info = _info(now)
    caller_phone = params.get("caller_phone")
    if not caller_phone:
        return f"{info} Erreur: numero de telephone requis."
    fields = {key: (params.get(key) or "").strip() for key in ("first_name", "last_name", "email", "company", "city")}
    notes = (params.get("notes") or "").strip()
    if not any(fields.values()) and not notes:
        return f"{info} Erreur: aucune information a mettre a jour."
    if fields["email"] and not is_valid_email(fields["email"]):
        return f'{info} Erreur: adresse email "{fields["email"]}" invalide. Verifie le format (ex: nom@gmail.com).'

    candidates = list(dict.fromkeys([strip_spaces(caller_phone)] + phone_candidates(caller_phone)))
    contact = db.select_one("contacts", [("eq", "user_id", config["user_id"]), ("in", "phone", candidates)])
    if not contact:
        return f"{info} Contact introuvable pour le numero {caller_phone}."

    labels = {"first_name": "prenom", "last_name": "nom", "email": "email", "company": "entreprise", "city": "ville"}
    values = {key: value for key, value in fields.items() if value}
    parts = [f"{labels[key]}: {value}" for key, value in values.items()]
    if notes:
        # Notes are appended, never overwritten
        values["notes"] = f"{contact['notes']}\n{notes}" if contact.get("notes") else notes
        parts.append("notes ajoutees")
    db.update_owned("contacts", config["user_id"], contact["id"], values)
    logger.info(f"Contact {contact['id']} updated: {', '.join(parts)}")
    return f"{info} Contact mis a jour: {', '.join(parts)}."


async def check_followup_availability(db, config: Dict[str, Any], raw_date: Optional[str],
                                      now: Optional[datetime] = None) -> str:
    if not raw_date:
        return f"{_info(now)} Veuillez preciser une date (ex: demain, lundi, 2026-03-15)."
    return await check_availability(db, availability_config(config), raw_date, now)


def save_qualification(db, config: Dict[str, Any], params: Dict[str, Any], now: Optional[datetime] = None) -> str:
    status = params.get("status")
    if not status:
        return ("Le statut de qualification est obligatoire "
                "(interested, not_interested, callback, transferred, converted).")
    if status not in QUALIFICATION_LABELS:
        return f"Statut invalide. Valeurs acceptees: {', '.join(QUALIFICATION_LABELS)}"

    user_id = config["user_id"]
    caller_phone = params.get("caller_phone") or ""
    contact = db.find_contact_by_phone(user_id, strip_spaces(caller_phone)) if caller_phone else None

    conversation = None
    if config.get("agent_id"):
        conversation = db.select_one("conversations", [("eq", "agent_id", config["agent_id"]),
                                                       ("in", "status", ["active", "ended"])],
                                     order="started_at", desc=True)
    campaign_contact = None
    if conversation:
        campaign_contact = db.select_one("campaign_contacts", [("eq", "conversation_id", conversation["id"])])

    try:
        interest_level = int(params["interest_level"]) if params.get("interest_level") else None
    except (TypeError, ValueError):
        interest_level = None
    values = {
        "status": status,
        "interest_level": interest_level,
        "notes": params.get("notes") or None,
        "callback_date": params.get("callback_date") or None,
        "appointment_date": params.get("appointment_date") or None,
        "contact_id": contact["id"] if contact else None,
        "contact_name": full_name(contact) if contact else None,
        "contact_phone": (contact or {}).get("phone") or caller_phone or None,
        "contact_email": (contact or {}).get("email") or None,
        "contact_company": (contact or {}).get("company") or None,
    }

    # A lead may already exist from when the campaign placed the call
    lead = None
    if conversation:
        lead = db.select_one("leads", [("eq", "conversation_id", conversation["id"])])
    if not lead and campaign_contact:
        lead = db.select_one("leads", [("eq", "campaign_contact_id", campaign_contact["id"])])
    try:
        if lead:
            db.update_owned("leads", user_id, lead["id"], values)
        else:
            db.insert("leads", dict(
                values,
                user_id=user_id,
                agent_id=config.get("agent_id"),
                conversation_id=conversation["id"] if conversation else None,
                campaign_contact_id=campaign_contact["id"] if campaign_contact else None,
            ))
    except Exception as e:
        logger.error(f"Lead save failed for {user_id}: {e}")
        return "Erreur lors de l'enregistrement de la qualification. Veuillez reessayer."

    answer = f"{_info(now)} Qualification enregistree: {QUALIFICATION_LABELS[status]}"
    if interest_level:
        answer += f", niveau d'interet: {interest_level}/5"
    if values["callback_date"]:
        answer += f", rappel prevu le {values['callback_date']}"
    return answer


def _meeting_button(link: Optional[str]) -> str:
    if not link:
        return ""
    return ('<div style="text-align: center; margin: 20px 0;">'
            f'<a href="{escape(link)}" style="display: inline-block; background: #3b82f6; color: white; '
            'padding: 12px 28px; border-radius: 8px; text-decoration: none; font-weight: 600;">'
            "Rejoindre la reunion en ligne</a></div>")


async def book_followup(db, config: Dict[str, Any], params: Dict[str, Any], now: Optional[datetime] = None) -> str:
    client_name = (params.get("client_name") or "").strip()
    client_phone = params.get("client_phone") or ""
    client_email = (params.get("client_email") or "").strip() or None
    motif = (params.get("motif") or "").strip() or "Suivi commercial"
    if not client_name or not client_phone or not params.get("date") or not params.get("time"):
        return "Informations manquantes. Il faut: nom du client, telephone, date (YYYY-MM-DD) et heure (HH:MM)."
    try:
        start_local, end_local = parse_slot(params["date"], params["time"], FOLLOWUP_MINUTES, now)
    except ValueError:
        return "Date ou heure invalide. Utilisez le format AAAA-MM-JJ et HH:MM."
    date_str, slot_time = start_local.date().isoformat(), start_local.strftime("%H:%M")

    user_id = config["user_id"]
    phone = strip_spaces(client_phone)
    contact_id = find_or_create_contact(db, user_id, client_name, phone, client_email)
    product = config.get("product_name") or ""
    title = f"RDV Commercial - {product}" if product else "RDV Commercial"
    event = await create_appointment_event(db, user_id, title, start_local.isoformat(), end_local.isoformat(),
                                           f"Rendez-vous commercial avec {client_name}. Motif: {motif}")
    meeting_link = event.get("meeting_link") or ""
    try:
        record_appointment(db, config, contact_id, title, motif, start_local, end_local, event)
    except Exception as e:
        logger.error(f"Follow-up insert failed for {user_id}: {e}")
        return "Erreur lors de la reservation du rendez-vous. Veuillez reessayer."

    variables = {
        "client_name": client_name,
        "client_phone": phone,
        "client_email": client_email or "",
        "date": date_str,
        "time": slot_time,
        "motif": motif,
        "product_name": product,
        "meeting_link": meeting_link,
    }
    if config.get("sms_enabled"):
        try:
            await send_templated_sms(
                db, user_id, phone,
                f"Bonjour {client_name}, votre rendez-vous est confirme le {date_str} a {slot_time}. A bientot !",
                variables, template_id=config.get("sms_template_id"), contact_id=contact_id,
            )
        except Exception as e:
            logger.warning(f"Follow-up SMS to {phone} failed: {e}")
    if config.get("email_enabled") and client_email:
        body = (f"<p>Bonjour <strong>{escape(client_name)}</strong>,</p>"
                "<p>Votre rendez-vous est confirme :</p>"
                f"<p><strong>Date :</strong> {date_str}<br><strong>Heure :</strong> {slot_time}</p>")
        try:
            await send_templated_email(db, user_id, client_email, "Confirmation de rendez-vous commercial", body,
                                       variables, template_id=config.get("email_template_id"),
                                       footer_html=_meeting_button(meeting_link) + "<p>A bientot !</p>")
        except Exception as e:
            logger.warning(f"Follow-up email to {client_email} failed: {e}")

    answer = f"{_info(now)} Rendez-vous de suivi confirme pour {client_name} le {date_str} a {slot_time}."
    if config.get("sms_enabled"):
        answer += " SMS de confirmation envoye."
    if config.get("email_enabled") and client_email:
        answer += " Email de confirmation envoye."
    return answer + " Communique la date et l'heure au client."


async def send_sms(db, config: Dict[str, Any], phone: Optional[str], content: Optional[str]) -> str:
    if not phone or not content:
        return "Numero de telephone et contenu du SMS requis."
    phone = strip_spaces(phone)
    contact = db.find_contact_by_phone(config["user_id"], phone)
    try:
        await send_and_log_sms(db, config["user_id"], phone, content, contact_id=contact["id"] if contact else None)
    except Exception as e:
        logger.warning(f"Prospect SMS to {phone} failed: {e}")
        return "Erreur lors de l'envoi du SMS. Veuillez reessayer."
    return f"SMS envoye avec succes au {phone}."


async def send_email(db, config: Dict[str, Any], params: Dict[str, Any]) -> str:
    email, content = params.get("email"), params.get("content")
    if not email or not content:
        return "Adresse email et contenu requis."
    product = config.get("product_name")
    subject = params.get("subject") or (f"Information commerciale - {product}" if product else "Information commerciale")
    try:
        await send_user_email(db, config["user_id"], email, subject, email_layout(subject, text_to_html(content)))
    except Exception as e:
        logger.warning(f"Prospect email to {email} failed: {e}")
        return "Erreur lors de l'envoi de l'email. Veuillez reessayer."
    return f"Email envoye avec succes a {email}."


async def handle_action(db, config: Dict[str, Any], body: Dict[str, Any], now: Optional[datetime] = None) -> str:
    action = body.get("action")
    if action == "search_contact":
        return search_contact(db, config, body.get("query") or "", now)
    if action == "update_contact":
        return update_contact(db, config, body, now)
    if action == "check_availability":
        return await check_followup_availability(db, config, body.get("date"), now)
    if action == "save_qualification":
        return save_qualification(db, config, body, now)
    if action == "book_followup":
        return await book_followup(db, config, body, now)
    if action == "send_sms":
        return await send_sms(db, config, body.get("phone"), body.get("content"))
    if action == "send_email":
        return await send_email(db, config, body)
    if action == "transfer_call":
        return await transfer_call(db, body.get("call_sid"), body.get("phone_number"),
                                   agent_id=config.get("agent_id"))
    return f"Action inconnue: {action}"
