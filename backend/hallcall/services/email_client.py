import base64
import logging
import os
import re
from email.message import EmailMessage
from html import escape
from typing import Any, Dict, List, Optional

import httpx

from .oauth import get_access_token
from .voice_client import VendorAPIError

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GRAPH_SEND_URL = "https://graph.microsoft.com/v1.0/me/sendMail"
DEFAULT_SENDER = "HallCall <noreply@hallcall.fr>"
DEFAULT_HEADER_COLOR = "#0f172a"

_TEMPLATE_VAR_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class EmailNotConfigured(Exception):
    pass


def encode_gmail_raw(to: str, subject: str, html: str) -> str:
    """RFC 2822 message, base64url without padding as the Gmail API expects."""
    message = EmailMessage()
    # Header values must stay on one line
    message["To"] = " ".join(to.splitlines()).strip()
    message["Subject"] = " ".join(subject.splitlines()).strip()
    message.set_content(html, subtype="html")
    return base64.urlsafe_b64encode(message.as_bytes()).decode().rstrip("=")


async def _post(url: str, headers: Dict[str, str], payload: Dict[str, Any], label: str) -> httpx.Response:
    async with httpx.AsyncClient() as client:
        response = await client.post(url, headers=headers, json=payload, timeout=15.0)
    if response.status_code >= 400:
        logger.error(f"{label}: {response.status_code} - {response.text}")
        raise VendorAPIError(response.status_code, f"{label}: {response.status_code}", response.text)
    return response


async def send_via_resend(to: str, subject: str, html: str) -> Dict[str, Any]:
    api_key = os.getenv("RESEND_API_KEY")
    if not api_key:
        raise EmailNotConfigured("RESEND_API_KEY not configured")
    response = await _post(RESEND_URL, {"Authorization": f"Bearer {api_key}"}, {
        "from": os.getenv("EMAIL_FROM") or DEFAULT_SENDER,
        "to": [to],
        "subject": subject,
        "html": html,
    }, "Resend API error")
    return response.json()


async def send_via_gmail(token: str, to: str, subject: str, html: str) -> None:
    await _post(GMAIL_SEND_URL, {"Authorization": f"Bearer {token}"},
                {"raw": encode_gmail_raw(to, subject, html)}, "Gmail API error")


async def send_via_microsoft(token: str, to: str, subject: str, html: str) -> None:
    await _post(GRAPH_SEND_URL, {"Authorization": f"Bearer {token}"}, {
        "message": {
            "subject": subject,
            "body": {"contentType": "HTML", "content": html},
            "toRecipients": [{"emailAddress": {"address": to}}],
        },
    }, "Microsoft Graph error")


def _find(integrations: List[Dict[str, Any]], provider: str) -> Optional[Dict[str, Any]]:
    return next((i for i in integrations if i.get("provider") == provider), None)


async def send_user_email(db, user_id: str, to: str, subject: str, html: str) -> str:
    """Send from the user's connected mailbox: Gmail, then Outlook, then Resend.

    Returns the channel used.
    """
    integrations = db.list_active_integrations(user_id)
    google = _find(integrations, "google")
    microsoft = _find(integrations, "microsoft")
    if google:
        await send_via_gmail(await get_access_token(db, google), to, subject, html)
        channel = "gmail"
    elif microsoft:
        await send_via_microsoft(await get_access_token(db, microsoft), to, subject, html)
        channel = "microsoft"
    else:
        await send_via_resend(to, subject, html)
        channel = "resend"
    logger.info(f"Email '{subject}' sent to {to} via {channel}")
    return channel


def appointment_email_html(client_name: str, date: str, time: str, duration_minutes: int,
                           motif: str, meeting_link: Optional[str] = None) -> str:
    client_name, motif = escape(client_name or ""), escape(motif or "")
    meeting_link = escape(meeting_link) if meeting_link else None
    cell = "padding: 10px; border-bottom: 1px solid #e2e8f0;"
    rows = [("Date", escape(date)), ("Heure", escape(time)), ("Duree", f"{duration_minutes} minutes"), ("Motif", motif)]
    table = "".join(
        f'<tr><td style="{cell} color: #64748b; width: 140px;">{label}</td>'
        f'<td style="{cell} font-weight: 600;">{value}</td></tr>'
        for label, value in rows
    )
    button = ""
    if meeting_link:
        table += (
            f'<tr><td style="{cell} color: #64748b;">Reunion en ligne</td>'
            f'<td style="{cell} font-weight: 600;"><a href="{meeting_link}" style="color: #3b82f6;">'
            "Rejoindre la reunion</a></td></tr>"
        )
        button = (
            '<div style="text-align: center; margin: 20px 0;">'
            f'<a href="{meeting_link}" style="display: inline-block; background: #3b82f6; color: white; '
            'padding: 12px 28px; border-radius: 8px; text-decoration: none; font-weight: 600;">'
            "Rejoindre la reunion en ligne</a></div>"
        )
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
        '<body style="font-family: \'Segoe UI\', Tahoma, sans-serif; max-width: 600px; margin: 0 auto; '
        'padding: 20px; color: #1e293b;">'
        '<div style="background: #0f172a; color: white; padding: 24px; border-radius: 12px 12px 0 0; '
        'text-align: center;"><h1 style="margin: 0; font-size: 22px;">Confirmation de rendez-vous</h1></div>'
        '<div style="border: 1px solid #e2e8f0; border-top: none; padding: 24px; border-radius: 0 0 12px 12px;">'
        f"<p>Bonjour <strong>{client_name}</strong>,</p>"
        "<p>Votre rendez-vous a bien ete confirme. Voici les details :</p>"
        f'<table style="width: 100%; border-collapse: collapse; margin: 20px 0;">{table}</table>'
        f"{button}"
        '<p style="color: #64748b; font-size: 14px;">Si vous souhaitez modifier ou annuler votre rendez-vous, '
        "veuillez nous contacter.</p>"
        '<p style="color: #94a3b8; font-size: 12px; text-align: center;">Ce message a ete envoye '
        "automatiquement par HallCall.</p></div></body></html>"
    )


async def send_appointment_confirmation(db, user_id: str, to: str, client_name: str, date: str, time: str,
                                        duration_minutes: int, motif: str,
                                        meeting_link: Optional[str] = None) -> str:
    subject = f"Confirmation de votre rendez-vous - {date} a {time}"
    html = appointment_email_html(client_name, date, time, duration_minutes or 20,
                                  motif or "Rendez-vous", meeting_link)
    return await send_user_email(db, user_id, to, subject, html)


def render_template(text: str, variables: Dict[str, Any], html: bool = False) -> str:
    """Fill ``{{name}}`` placeholders. Unknown names are left untouched."""
    def fill(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        value = str(variables[name] or "")
        return escape(value) if html else value

    return _TEMPLATE_VAR_RE.sub(fill, text or "")


def text_to_html(text: str) -> str:
    return escape(text or "").replace("\n", "<br>")


def email_layout(title: str, body_html: str, header_color: Optional[str] = None) -> str:
    color = escape(header_color or DEFAULT_HEADER_COLOR)
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
        '<body style="font-family: \'Segoe UI\', Tahoma, sans-serif; max-width: 600px; margin: 0 auto; '
        'padding: 20px; color: #1e293b;">'
        f'<div style="background: {color}; color: white; padding: 24px; border-radius: 12px 12px 0 0; '
        f'text-align: center;"><h1 style="margin: 0; font-size: 22px;">{escape(title)}</h1></div>'
        '<div style="border: 1px solid #e2e8f0; border-top: none; padding: 24px; border-radius: 0 0 12px 12px;">'
        f"{body_html}"
        '<p style="color: #94a3b8; font-size: 12px; text-align: center;">Ce message a ete envoye '
        "automatiquement par HallCall.</p></div></body></html>"
    )
