"""Caller lookup and registration shared by the voice agent tool webhooks."""
import logging
import re
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

NAME_MATCH_LIMIT = 3

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def strip_spaces(phone: Optional[str]) -> str:
    return re.sub(r"\s", "", phone or "")


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value or ""))


def full_name(contact: Dict[str, Any]) -> str:
    return f"{contact.get('first_name') or ''} {contact.get('last_name') or ''}".strip()


def search_contacts(db, user_id: str, query: str) -> List[Dict[str, Any]]:
    """Exact phone first, then email, then a partial first or last name."""
    q = query.strip()
    by_phone = db.find_contact_by_phone(user_id, strip_spaces(q))
    if by_phone:
        return [by_phone]

    if "@" in q:
        by_email = db.select_one("contacts", [("eq", "user_id", user_id), ("ilike", "email", q)])
        if by_email:
            return [by_email]

    matches: List[Dict[str, Any]] = []
    for column in ("first_name", "last_name"):
        for row in db.select("contacts", [("eq", "user_id", user_id), ("ilike", column, f"%{q}%")],
                             limit=NAME_MATCH_LIMIT):
            if all(row["id"] != m["id"] for m in matches):
                matches.append(row)
    return matches[:NAME_MATCH_LIMIT]


def describe_contact(contact: Dict[str, Any], title: str = "Client trouve") -> str:
    lines = [
        f"{title}:",
        f"- Nom: {full_name(contact)}",
        f"- Telephone: {contact.get('phone') or 'N/A'}",
        f"- Email: {contact.get('email') or 'N/A'}",
    ]
    if contact.get("company"):
        lines.append(f"- Entreprise: {contact['company']}")
    return "\n".join(lines)


def describe_matches(matches: List[Dict[str, Any]], noun: str = "clients") -> str:
    listing = "\n".join(
        f"- {full_name(c)} (Tel: {c.get('phone') or 'N/A'}, Email: {c.get('email') or 'N/A'})" for c in matches
    )
    return f"Plusieurs {noun} trouves:\n{listing}\nDemande au client de preciser lequel."


def find_or_create_contact(db, user_id: str, client_name: str, phone: str, email: Optional[str]) -> Optional[str]:
    existing = db.find_contact_by_phone(user_id, phone)
    if existing:
        return existing["id"]
    parts = client_name.strip().split()
    contact = db.insert("contacts", {
        "user_id": user_id,
        "first_name": parts[0] if parts else client_name,
        "last_name": " ".join(parts[1:]),
        "phone": phone,
        "email": email or None,
        "source": "campaign",
    })
    return contact.get("id")


def register_contact(db, user_id: str, params: Dict[str, Any], with_company: bool = False) -> str:
    first_name = (params.get("first_name") or "").strip()
    last_name = (params.get("last_name") or "").strip()
    phone = strip_spaces(params.get("phone"))
    email = (params.get("email") or "").strip() or None

    if not first_name or not last_name or not phone:
        return "Informations manquantes. Il faut au minimum: prenom, nom et numero de telephone."

    existing = db.find_contact_by_phone(user_id, phone)
    if existing:
        return (f"Ce client existe deja: {full_name(existing)} "
                f"(Tel: {existing.get('phone')}, Email: {existing.get('email') or 'N/A'}).")

    row = {
        "user_id": user_id,
        "first_name": first_name,
        "last_name": last_name,
        "phone": phone,
        "email": email,
        "source": "campaign",
    }
    if with_company:
        row["company"] = (params.get("company") or "").strip() or None
    db.insert("contacts", row)
    logger.info(f"Contact {first_name} {last_name} registered for user {user_id}")
    return f"Client {first_name} {last_name} enregistre avec succes."
