import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .email_client import EmailNotConfigured, send_via_resend
from .voice_client import VendorAPIError

logger = logging.getLogger(__name__)

SIGNUP_TABLE = "signup_verification_codes"
RESET_TABLE = "password_reset_codes"
CODE_TTL = timedelta(minutes=10)


def generate_code() -> str:
    return str(secrets.randbelow(900000) + 100000)


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def issue_code(db, table: str, email: str, extra: Optional[Dict[str, Any]] = None,
               now: Optional[datetime] = None) -> str:
    """Invalidate the email's unused codes and store a fresh one valid for 10 minutes."""
    now = now or datetime.now(timezone.utc)
    code = generate_code()
    db.invalidate_codes(table, email)
    row = dict(extra or {}, email=email, code=code, expires_at=(now + CODE_TTL).isoformat())
    db.store_code(table, row)
    logger.info(f"Issued {table} code for {email}")
    return code


def consume_code(db, table: str, email: str, code: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Return the matching unexpired row and mark it used, or None."""
    now = now or datetime.now(timezone.utc)
    row = db.find_valid_code(table, email, code, now.isoformat())
    if not row:
        logger.info(f"Rejected {table} code for {email}")
        return None
    db.mark_code_used(table, row["id"])
    return row


def _code_html(greeting: str, intro: str, code: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 480px; margin: 0 auto; padding: 2rem;">'
        '<h2 style="color: #F97316;">HallCall</h2>'
        f"<p>{greeting},</p><p>{intro}</p>"
        '<div style="background: #FFF7ED; border: 2px solid #F97316; border-radius: 8px; padding: 1.5rem; '
        'text-align: center; margin: 1.5rem 0;">'
        f'<span style="font-size: 2rem; font-weight: bold; letter-spacing: 0.5rem; color: #EA580C;">{code}</span>'
        "</div>"
        '<p style="color: #6b7280; font-size: 0.875rem;">Ce code expire dans 10 minutes.</p>'
        '<p style="color: #9ca3af; font-size: 0.75rem;">Si vous n\'avez pas demande ce code, ignorez cet email.</p>'
        "</div>"
    )


async def _deliver(email: str, subject: str, html: str) -> None:
    # Codes stay valid even when delivery fails; the user can ask for a new one
    try:
        await send_via_resend(email, subject, html)
    except EmailNotConfigured:
        logger.warning(f"RESEND_API_KEY not configured, code for {email} not emailed")
    except VendorAPIError as e:
        logger.error(f"Code email to {email} failed: {e.status_code} - {e.details}")


async def send_signup_code(email: str, code: str, full_name: str = "") -> None:
    greeting = f"Bonjour {full_name}" if full_name else "Bonjour"
    await _deliver(email, f"Votre code de verification HallCall: {code}",
                   _code_html(greeting, "Votre code de verification est :", code))


async def send_reset_code(email: str, code: str) -> None:
    await _deliver(email, f"Reinitialisation de votre mot de passe HallCall: {code}",
                   _code_html("Bonjour", "Votre code de reinitialisation de mot de passe est :", code))
