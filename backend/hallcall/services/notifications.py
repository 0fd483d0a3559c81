"""SMS and email sent on the caller's behalf, optionally through a notification template."""
import logging
from typing import Any, Dict, Optional

from .email_client import email_layout, render_template, send_user_email, text_to_html
from .telephony import send_and_log_sms

logger = logging.getLogger(__name__)


def load_template(db, user_id: str, template_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not template_id:
        return None
    template = db.get_owned("notification_templates", user_id, template_id)
    if not template:
        logger.warning(f"Notification template {template_id} not found for user {user_id}")
    return template


async def send_templated_sms(db, user_id: str, phone: str, content: str, variables: Dict[str, Any],
                             template_id: Optional[str] = None, contact_id: Optional[str] = None) -> str:
    """Send ``content``, or the rendered template when one is configured. Returns the text sent."""
    template = load_template(db, user_id, template_id)
    if template and template.get("content"):
        content = render_template(template["content"], variables)
    await send_and_log_sms(db, user_id, phone, content, contact_id=contact_id, template_id=template_id)
    return content


async def send_templated_email(db, user_id: str, to: str, subject: str, body_html: str,
                               variables: Dict[str, Any], template_id: Optional[str] = None,
                               footer_html: str = "") -> str:
    template = load_template(db, user_id, template_id)
    header_color = None
    if template and template.get("content"):
        subject = render_template(template.get("subject") or subject, variables)
        body_html = text_to_html(render_template(template["content"], variables))
        header_color = template.get("header_color")
    return await send_user_email(db, user_id, to, subject, email_layout(subject, body_html + footer_html, header_color))
