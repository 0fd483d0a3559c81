"""Appointment scheduling for the voice agent webhook.

Every date computation happens in the business timezone. Answers are French
sentences read back to the caller by the voice agent.
"""
import logging
import re
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .calendar import business_timezone, create_appointment_event, get_busy_slots
from .contacts import find_or_create_contact
from .email_client import send_appointment_confirmation
from .telephony import TelephonyClient, TelephonyNotConfigured, dial_twiml, send_and_log_sms
from .voice_client import VendorAPIError

logger = logging.getLogger(__name__)

# Index follows the Sunday-first week of the stored working_days codes
DAY_MAP = {0: "dim", 1: "lun", 2: "mar", 3: "mer", 4: "jeu", 5: "ven", 6: "sam"}

DAY_LABELS = {
    "lun": "Lundi", "mar": "Mardi", "mer": "Mercredi",
    "jeu": "Jeudi", "ven": "Vendredi", "sam": "Samedi", "dim": "Dimanche",
}

FRENCH_DAY_TO_INDEX = {
    "dimanche": 0, "dim": 0,
    "lundi": 1, "lun": 1,
    "mardi": 2, "mar": 2,
    "mercredi": 3, "mer": 3,
    "jeudi": 4, "jeu": 4,
    "vendredi": 5, "ven": 5,
    "samedi": 6, "sam": 6,
}

FRENCH_MONTH_TO_NUM = {
    "janvier": 1, "janv": 1, "jan": 1,
    "fevrier": 2, "février": 2, "fev": 2, "fév": 2,
    "mars": 3, "mar": 3,
    "avril": 4, "avr": 4,
    "mai": 5,
    "juin": 6,
    "juillet": 7, "juil": 7,
    "aout": 8, "août": 8,
    "septembre": 9, "sept": 9, "sep": 9,
    "octobre": 10, "oct": 10,
    "novembre": 11, "nov": 11,
    "decembre": 12, "décembre": 12, "dec": 12, "déc": 12,
}

MAX_PROPOSED_SLOTS = 3

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FRENCH_DATE_RE = re.compile(r"^(\d{1,2})\s+([a-zéûà]+)(?:\s+(\d{4}))?$")


def business_now() -> datetime:
    return datetime.now(business_timezone())


def time_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")[:2]
    return int(hours) * 60 + int(minutes)


def minutes_to_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def day_code(d: date) -> str:
    return DAY_MAP[d.isoweekday() % 7]


def resolve_date(text: str, now: Optional[datetime] = None) -> str:
    """Turn a spoken date (demain, lundi, 12 fevrier...) into YYYY-MM-DD.

    Unrecognised input is returned lower-cased and trimmed.
    """
    now = now or business_now()
    today = now.date()
    value = (text or "").strip().lower()

    if _ISO_DATE_RE.match(value):
        return value
    if value in ("aujourd'hui", "aujourdhui", "today"):
        return today.isoformat()
    if value in ("demain", "tomorrow"):
        return (today + timedelta(days=1)).isoformat()

    if value in FRENCH_DAY_TO_INDEX:
        current = today.isoweekday() % 7
        ahead = FRENCH_DAY_TO_INDEX[value] - current
        if ahead <= 0:
            ahead += 7
        return (today + timedelta(days=ahead)).isoformat()

    if "semaine prochaine" in value or "next week" in value:
        current = today.isoweekday() % 7
        to_monday = 1 if current == 0 else 8 - current
        return (today + timedelta(days=to_monday)).isoformat()

    if "cette semaine" in value or "this week" in value:
        return today.isoformat()

    match = _FRENCH_DATE_RE.match(re.sub(r"^le\s+", "", value))
    if match:
        day = int(match.group(1))
        month = FRENCH_MONTH_TO_NUM.get(match.group(2))
        if month and 1 <= day <= 31:
            year = int(match.group(3)) if match.group(3) else today.year
            return f"{year}-{month:02d}-{day:02d}"

    return value


def generate_slots(config: Dict[str, Any]) -> List[str]:
    """All "HH:MM-HH:MM" slots of a working day, minus those overlapping a break."""
    start = time_to_minutes(config.get("start_time") or "09:00")
    end = time_to_minutes(config.get("end_time") or "18:00")
    duration = int(config.get("slot_duration_minutes") or 30)
    breaks = [(time_to_minutes(b["start"]), time_to_minutes(b["end"])) for b in config.get("breaks") or []]

    slots = []
    t = start
    while t + duration <= end:
        if not any(t < b_end and t + duration > b_start for b_start, b_end in breaks):
            slots.append(f"{minutes_to_time(t)}-{minutes_to_time(t + duration)}")
        t += duration
    return slots


def today_info(now: datetime) -> str:
    label = DAY_LABELS[day_code(now.date())]
    return f"[INFO: Aujourd'hui nous sommes le {label} {now.date().isoformat()}.]"


def _day_bounds(d: date) -> Tuple[str, str]:
    tz = business_timezone()
    return (datetime.combine(d, time(0, 0), tz).isoformat(),
            datetime.combine(d, time(23, 59, 59), tz).isoformat())


def booked_start_times(db, user_id: str, d: date) -> set:
    start, end = _day_bounds(d)
    tz = business_timezone()
    booked = set()
    for appt in db.list_active_appointments(user_id, start, end):
        raw = appt.get("start_at")
        if not raw:
            continue
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        # Rows without an offset were stored as business-local wall time
        dt = dt.replace(tzinfo=tz) if dt.tzinfo is None else dt.astimezone(tz)
        booked.add(dt.strftime("%H:%M"))
    return booked


async def check_availability(db, config: Dict[str, Any], raw_date: str, now: Optional[datetime] = None) -> str:
    now = now or business_now()
    today = now.date()
    info = today_info(now)

    date_str = resolve_date(raw_date or "", now)
    logger.info(f"check_availability: '{raw_date}' resolved to {date_str}")
    try:
        target = date.fromisoformat(date_str)
    except ValueError:
        return f"{info} Date invalide. Veuillez fournir une date valide."

    working_days = config.get("working_days") or []
    code = day_code(target)
    if code not in working_days:
        days = ", ".join(DAY_LABELS.get(d, d) for d in working_days)
        return (f"{info} Le {DAY_LABELS[code]} {date_str} n'est pas un jour de travail. "
                f"Les jours disponibles sont : {days}.")

    min_delay_hours = config.get("min_delay_hours") or 0
    min_date = (now + timedelta(hours=min_delay_hours)).date()
    if target < min_date:
        return (f"{info} Les rendez-vous doivent etre pris au minimum {min_delay_hours}h a l'avance. "
                f"La prochaine date possible est le {min_date.isoformat()}.")

    horizon = config.get("max_horizon_days") or 30
    max_date = (now + timedelta(days=horizon)).date()
    if target > max_date:
        return (f"{info} Les rendez-vous peuvent etre planifies jusqu'a {horizon} jours a l'avance maximum "
                f"(jusqu'au {max_date.isoformat()}).")

    slots = generate_slots(config)
    if not slots:
        return f"{info} Aucun creneau configure pour cette date. Verifiez la configuration des horaires."

    if target == today:
        threshold = now.hour * 60 + now.minute + min_delay_hours * 60
        slots = [s for s in slots if time_to_minutes(s.split("-")[0]) >= threshold]

    booked = booked_start_times(db, config["user_id"], target)
    if booked:
        slots = [s for s in slots if s.split("-")[0] not in booked]

    busy = await get_busy_slots(db, config["user_id"], date_str)
    if busy:
        ranges = [(time_to_minutes(b_start), time_to_minutes(b_end)) for b_start, b_end in busy]
        kept = []
        for slot in slots:
            s_start, s_end = (time_to_minutes(part) for part in slot.split("-"))
            if not any(s_start < b_end and s_end > b_start for b_start, b_end in ranges):
                kept.append(slot)
        slots = kept

    if not slots:
        return f"{info} Aucun creneau disponible le {date_str}. Proposez au client de choisir une autre date."

    proposed = ", ".join(s.split("-")[0] for s in slots[:MAX_PROPOSED_SLOTS])
    more = ""
    if len(slots) > MAX_PROPOSED_SLOTS:
        more = f" ({len(slots) - MAX_PROPOSED_SLOTS} autres creneaux disponibles si le client en souhaite d'autres)"
    duration = config.get("slot_duration_minutes") or 30
    return f"{info} Creneaux disponibles le {date_str} : {proposed}. Chaque creneau dure {duration} minutes.{more}"


def parse_slot(raw_date: str, slot_time: str, duration: int,
               now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Naive business-local start and end of a slot. Raises ValueError on a bad date or time."""
    start = datetime.combine(date.fromisoformat(resolve_date(raw_date, now)), time.fromisoformat(slot_time.strip()))
    return start, start + timedelta(minutes=duration)


def record_appointment(db, config: Dict[str, Any], contact_id: Optional[str], title: str, description: str,
                       start_local: datetime, end_local: datetime,
                       event: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    tz = business_timezone()
    event = event or {}
    return db.insert("appointments", {
        "user_id": config["user_id"],
        "agent_id": config.get("agent_id"),
        "contact_id": contact_id,
        "title": title,
        "description": description,
        "start_at": start_local.replace(tzinfo=tz).isoformat(),
        "end_at": end_local.replace(tzinfo=tz).isoformat(),
        "status": "scheduled",
        "location": event.get("meeting_link") or "",
        "external_calendar_id": event.get("provider"),
        "external_event_id": event.get("event_id"),
    })


async def book_appointment(db, config: Dict[str, Any], params: Dict[str, Any], now: Optional[datetime] = None) -> str:
    client_name = (params.get("client_name") or "").strip()
    client_phone = params.get("client_phone") or ""
    client_email = params.get("client_email") or None
    raw_date = params.get("date") or ""
    slot_time = (params.get("time") or "").strip()
    motif = (params.get("motif") or "").strip()
    resume = params.get("resume")

    if not client_name or not client_phone or not raw_date or not slot_time:
        return "Informations manquantes. Il faut au minimum : nom du client, telephone, date et heure."
    if not motif:
        return "Le motif du rendez-vous est obligatoire. Veuillez demander au client la raison de son rendez-vous."

    user_id = config["user_id"]
    duration = int(config.get("slot_duration_minutes") or 30)
    try:
        start_local, end_local = parse_slot(raw_date, slot_time, duration, now)
    except ValueError:
        return "Date ou heure invalide. Utilisez le format AAAA-MM-JJ et HH:MM."
    date_str = start_local.date().isoformat()
    slot_time = start_local.strftime("%H:%M")
    logger.info(f"book_appointment: {client_name} {client_phone} {date_str} {slot_time} motif={motif}")

    if slot_time in booked_start_times(db, user_id, start_local.date()):
        return f"Ce creneau ({slot_time}) est deja reserve le {date_str}. Veuillez proposer un autre creneau."

    phone = re.sub(r"\s", "", client_phone)
    contact_id = find_or_create_contact(db, user_id, client_name, phone, client_email)

    description = f"Motif: {motif}\nClient: {client_name}, Tel: {client_phone}"
    if client_email:
        description += f", Email: {client_email}"
    if resume:
        description += f"\n\nResume de l'echange:\n{resume}"

    event = await create_appointment_event(db, user_id, motif, start_local.isoformat(), end_local.isoformat(),
                                           description)
    meeting_link = event.get("meeting_link")

    try:
        record_appointment(db, config, contact_id, motif, description, start_local, end_local, event)
    except Exception as e:
        logger.error(f"Appointment insert failed for {user_id}: {e}")
        return "Erreur lors de la creation du rendez-vous. Veuillez reessayer."

    link_text = f"\nLien de reunion en ligne: {meeting_link}" if meeting_link else ""

    if config.get("sms_notification_enabled") and phone:
        content = (f"Bonjour {client_name}, votre rendez-vous est confirme pour le {date_str} a {slot_time}. "
                   f"Duree: {duration} min. Motif: {motif}.{link_text} A bientot !")
        try:
            await send_and_log_sms(db, user_id, phone, content, contact_id=contact_id)
        except Exception as e:
            logger.warning(f"Confirmation SMS to {phone} failed: {e}")

    if config.get("email_notification_enabled") and client_email:
        try:
            await send_appointment_confirmation(db, user_id, client_email, client_name, date_str, slot_time,
                                                duration, motif, meeting_link)
        except Exception as e:
            logger.warning(f"Confirmation email to {client_email} failed: {e}")

    answer = (f"Rendez-vous confirme pour {client_name} le {date_str} a {slot_time} ({duration} minutes). "
              f"Motif: {motif}.")
    if meeting_link:
        answer += f" Un lien de reunion en ligne a ete genere: {meeting_link}"
    if config.get("sms_notification_enabled"):
        answer += " Un SMS de confirmation a ete envoye."
    if config.get("email_notification_enabled") and client_email:
        answer += " Un email de confirmation a ete envoye."
    return answer


async def transfer_call(db, call_sid: Optional[str], phone_number: Optional[str],
                        client: Optional[TelephonyClient] = None, agent_id: Optional[str] = None) -> str:
    """Redirect a live call to a human advisor and record the outcome on the conversation.

    With an ``agent_id``, a missing or unsubstituted call_sid falls back to the
    agent's latest call.
    """
    if agent_id:
        if not phone_number:
            return "Informations manquantes pour le transfert. Il faut le numero de telephone."
        if not call_sid or "{{" in call_sid or not call_sid.startswith("CA"):
            call_sid = db.latest_agent_call_sid(agent_id)
            if not call_sid:
                return "Impossible de determiner l'identifiant de l'appel pour le transfert."
    elif not call_sid or not phone_number:
        return "Informations manquantes pour le transfert. Il faut le call_sid et le numero de telephone."

    client = client or TelephonyClient()
    logger.info(f"Transferring call {call_sid} to {phone_number}")
    try:
        await client.redirect_call(call_sid, dial_twiml(phone_number))
    except TelephonyNotConfigured:
        return "Erreur: les identifiants Twilio ne sont pas configures. Le transfert n'est pas possible."
    except VendorAPIError as e:
        db.update_conversations_where("twilio_call_sid", call_sid,
                                      {"transferred_to": phone_number, "transfer_status": "failed"})
        return f"Erreur lors du transfert: {e.status_code}. Veuillez reessayer."
    except Exception as e:
        logger.error(f"Transfer of {call_sid} failed: {e}")
        db.update_conversations_where("twilio_call_sid", call_sid,
                                      {"transferred_to": phone_number, "transfer_status": "failed"})
        return "Erreur technique lors du transfert. Veuillez reessayer."

    db.update_conversations_where("twilio_call_sid", call_sid,
                                  {"transferred_to": phone_number, "transfer_status": "success"})
    return (f"Le transfert vers {phone_number} est en cours. "
            "L'appelant va etre mis en relation avec un conseiller.")


async def handle_action(db, config: Dict[str, Any], body: Dict[str, Any], now: Optional[datetime] = None) -> str:
    action = body.get("action")
    if action == "resolve_date":
        resolved = resolve_date(body.get("date") or "", now)
        return f"{today_info(now or business_now())} Date resolue : {resolved}."
    if action == "check_availability":
        return await check_availability(db, config, body.get("date") or "", now)
    if action == "book_appointment":
        return await book_appointment(db, config, body, now)
    if action == "transfer_call":
        return await transfer_call(db, body.get("call_sid"), body.get("phone_number"))
    return f"Action inconnue: {action}"
