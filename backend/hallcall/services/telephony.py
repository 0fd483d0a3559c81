import os
import re
import logging
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

from fastapi.concurrency import run_in_threadpool
from twilio.rest import Client as TwilioRestClient
from twilio.base.exceptions import TwilioException, TwilioRestException

from .voice_client import VendorAPIError

logger = logging.getLogger(__name__)

_PHONE_NOISE_RE = re.compile(r"[\s\-\.()]")


def normalize_phone(raw: Optional[str]) -> str:
    """Strip separators and turn a French national number (0X XX XX XX XX) into +33 form."""
    cleaned = _PHONE_NOISE_RE.sub("", raw or "")
    if len(cleaned) == 10 and cleaned.startswith("0"):
        return "+33" + cleaned[1:]
    return cleaned


def normalize_outbound(raw: Optional[str]) -> str:
    number = normalize_phone(raw)
    if number and not number.startswith("+"):
        number = "+" + number
    return number


def phone_candidates(raw: Optional[str]) -> List[str]:
    """Raw and normalized spellings of a number, used to match stored rows."""
    values = [raw or "", normalize_phone(raw), normalize_outbound(raw)]
    return [v for v in dict.fromkeys(values) if v]


def say_twiml(message: str, hangup: bool = True) -> str:
    tail = "<Hangup/>" if hangup else ""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<Response><Say language="fr-FR">{escape(message)}</Say>{tail}</Response>'
    )


def dial_twiml(phone_number: str) -> str:
    return f"<Response><Dial>{escape(phone_number)}</Dial></Response>"


class TelephonyNotConfigured(Exception):
    pass


class TelephonyClient:
    """Wrapper over the Twilio REST SDK for SMS and live call redirects."""

    def __init__(self) -> None:
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = os.getenv("TWILIO_AUTH_TOKEN")
        self.phone_number = os.getenv("TWILIO_PHONE_NUMBER")
        self.sms_number = os.getenv("TWILIO_SMS_PHONE_NUMBER") or self.phone_number
        self.configured = bool(self.account_sid and self.auth_token)
        self.client = TwilioRestClient(self.account_sid, self.auth_token) if self.configured else None

        if not self.configured:
            logger.warning("Twilio credentials not configured")

    def _send_sms(self, to: str, body: str) -> Dict[str, Any]:
        message = self.client.messages.create(body=body, from_=self.sms_number, to=to)
        logger.info(f"SMS sent to {to}, SID: {message.sid}")
        return {"sid": message.sid, "status": message.status}

    async def send_sms(self, to: str, body: str) -> Dict[str, Any]:
        if not self.configured or not self.sms_number:
            raise TelephonyNotConfigured("Twilio credentials not configured")
        try:
            return await run_in_threadpool(self._send_sms, to, body)
        except TwilioRestException as e:
            logger.error(f"Twilio API error sending SMS to {to}: {e.msg}")
            raise VendorAPIError(e.status or 400, "Twilio SMS error", e.msg)

    def _redirect_call(self, call_sid: str, twiml: str) -> str:
        call = self.client.calls(call_sid).update(twiml=twiml)
        return call.sid

    async def redirect_call(self, call_sid: str, twiml: str) -> str:
        if not self.configured:
            raise TelephonyNotConfigured("Twilio credentials not configured")
        try:
            return await run_in_threadpool(self._redirect_call, call_sid, twiml)
        except TwilioRestException as e:
            logger.error(f"Twilio error redirecting call {call_sid}: {e.status} - {e.msg}")
            raise VendorAPIError(e.status or 400, f"Twilio call update error: {e.status}", e.msg)


async def send_and_log_sms(db, user_id: Optional[str], to: str, content: str,
                           contact_id: Optional[str] = None, template_id: Optional[str] = None,
                           client: Optional[TelephonyClient] = None) -> Dict[str, Any]:
    """Send an SMS and record the attempt in sms_history (sent or failed)."""
    client = client or TelephonyClient()
    try:
        result = await client.send_sms(to, content)
    except (VendorAPIError, TwilioException) as e:
        if user_id:
            detail = e.details if isinstance(e, VendorAPIError) else str(e)
            db.log_sms({
                "user_id": user_id,
                "contact_id": contact_id,
                "template_id": template_id,
                "phone_to": to,
                "content": content,
                "status": "failed",
                "error_message": str(detail or "Twilio error"),
            })
        raise
    if user_id:
        db.log_sms({
            "user_id": user_id,
            "contact_id": contact_id,
            "template_id": template_id,
            "phone_to": to,
            "content": content,
            "status": "sent",
            "error_message": None,
        })
    return result
