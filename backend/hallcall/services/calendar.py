import logging
import os
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import httpx

from .oauth import get_access_token
from .voice_client import VendorAPIError

logger = logging.getLogger(__name__)

GOOGLE_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"


def business_timezone_name() -> str:
    return os.getenv("BUSINESS_TIMEZONE") or "Europe/Paris"


def business_timezone() -> ZoneInfo:
    return ZoneInfo(business_timezone_name())


def parse_provider_datetime(value: str) -> datetime:
    """Parse a provider timestamp. Graph omits the offset; those values are UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def local_hhmm(value: str) -> str:
    return parse_provider_datetime(value).astimezone(business_timezone()).strftime("%H:%M")


async def _get(url: str, token: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
    async with httpx.AsyncClient() as client:
        return await client.get(url, headers={"Authorization": f"Bearer {token}"}, params=params, timeout=15.0)


async def _post(url: str, token: str, payload: Dict[str, Any], params: Optional[Dict[str, Any]] = None) -> httpx.Response:
    async with httpx.AsyncClient() as client:
        return await client.post(url, headers={"Authorization": f"Bearer {token}"}, json=payload,
                                 params=params, timeout=15.0)


async def fetch_events(provider: str, token: str, start_iso: str, end_iso: str) -> List[Dict[str, Any]]:
    """Raw provider events between two instants (Google `items` or Graph `value`)."""
    if provider == "google":
        response = await _get(GOOGLE_EVENTS_URL, token, {
            "timeMin": start_iso, "timeMax": end_iso, "singleEvents": "true", "orderBy": "startTime",
        })
        key = "items"
    else:
        response = await _get(f"{GRAPH_BASE_URL}/me/calendarView", token, {
            "startDateTime": start_iso, "endDateTime": end_iso, "$orderby": "start/dateTime",
        })
        key = "value"
    if response.status_code >= 400:
        label = "Google Calendar error" if provider == "google" else "Microsoft Calendar error"
        raise VendorAPIError(response.status_code, f"{label}: {response.status_code}", response.text)
    return response.json().get(key) or []


def to_event(provider: str, item: Dict[str, Any]) -> Dict[str, Any]:
    start = item.get("start") or {}
    end = item.get("end") or {}
    if provider == "google":
        return {
            "id": item.get("id"),
            "title": item.get("summary") or "",
            "description": item.get("description") or "",
            "start_at": start.get("dateTime") or start.get("date") or "",
            "end_at": end.get("dateTime") or end.get("date") or "",
            "location": item.get("location") or "",
        }
    return {
        "id": item.get("id"),
        "title": item.get("subject") or "",
        "description": (item.get("body") or {}).get("content") or "",
        "start_at": start.get("dateTime") or "",
        "end_at": end.get("dateTime") or "",
        "location": (item.get("location") or {}).get("displayName") or "",
    }


async def list_upcoming_events(db, integration: Dict[str, Any], days: int = 30) -> List[Dict[str, Any]]:
    token = await get_access_token(db, integration)
    now = datetime.now(timezone.utc)
    provider = integration["provider"]
    items = await fetch_events(provider, token, now.isoformat(), (now + timedelta(days=days)).isoformat())
    return [to_event(provider, item) for item in items]


async def create_external_event(provider: str, token: str, event: Dict[str, Any],
                                with_meeting: bool = False) -> Dict[str, Any]:
    """Create an event and return {event_id, meeting_link}."""
    tz_name = business_timezone_name()
    if provider == "google":
        payload: Dict[str, Any] = {
            "summary": event.get("title") or "",
            "description": event.get("description") or "",
            "location": event.get("location") or "",
            "start": {"dateTime": event["start_at"], "timeZone": tz_name},
            "end": {"dateTime": event["end_at"], "timeZone": tz_name},
        }
        params = None
        if with_meeting:
            payload["conferenceData"] = {
                "createRequest": {
                    "requestId": str(uuid.uuid4()),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                },
            }
            params = {"conferenceDataVersion": 1}
        response = await _post(GOOGLE_EVENTS_URL, token, payload, params=params)
        if response.status_code >= 400:
            raise VendorAPIError(response.status_code, f"Google Calendar create error: {response.status_code}", response.text)
        data = response.json()
        link = None
        for entry in (data.get("conferenceData") or {}).get("entryPoints") or []:
            if entry.get("entryPointType") == "video":
                link = entry.get("uri")
                break
        return {"event_id": data.get("id"), "meeting_link": link or data.get("hangoutLink")}

    payload = {
        "subject": event.get("title") or "",
        "body": {"contentType": "HTML", "content": event.get("description") or ""},
        "start": {"dateTime": event["start_at"], "timeZone": tz_name},
        "end": {"dateTime": event["end_at"], "timeZone": tz_name},
        "location": {"displayName": event.get("location") or ""},
    }
    if with_meeting:
        payload["isOnlineMeeting"] = True
        payload["onlineMeetingProvider"] = "teamsForBusiness"
    response = await _post(f"{GRAPH_BASE_URL}/me/events", token, payload)
    if response.status_code >= 400:
        raise VendorAPIError(response.status_code, f"Microsoft Calendar create error: {response.status_code}", response.text)
    data = response.json()
    return {"event_id": data.get("id"), "meeting_link": (data.get("onlineMeeting") or {}).get("joinUrl")}


def local_day_window(date_str: str) -> Tuple[str, str]:
    """Local midnight to next local midnight of a business day, as offset-aware ISO strings."""
    tz = business_timezone()
    day = date.fromisoformat(date_str)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.isoformat(), end.isoformat()


async def get_busy_slots(db, user_id: str, date_str: str) -> List[Tuple[str, str]]:
    """Busy (start, end) HH:MM ranges in business time for one day.

    Returns an empty list when no calendar is connected or the provider fails.
    """
    integration = db.get_calendar_integration(user_id)
    if not integration:
        return []
    provider = integration["provider"]
    try:
        token = await get_access_token(db, integration)
        items = await fetch_events(provider, token, *local_day_window(date_str))
    except Exception as e:
        logger.warning(f"Calendar lookup failed for {user_id} ({provider}): {e}")
        return []

    busy: List[Tuple[str, str]] = []
    for item in items:
        start = (item.get("start") or {}).get("dateTime")
        end = (item.get("end") or {}).get("dateTime")
        if start and end:
            busy.append((local_hhmm(start), local_hhmm(end)))
    logger.info(f"Calendar busy slots for {date_str}: {busy}")
    return busy


async def create_appointment_event(db, user_id: str, title: str, start_at: str, end_at: str,
                                   description: str) -> Dict[str, Optional[str]]:
    """Create an event with a meeting link on the connected calendar, if any."""
    empty = {"event_id": None, "meeting_link": None, "provider": None}
    integration = db.get_calendar_integration(user_id)
    if not integration:
        return empty
    provider = integration["provider"]
    try:
        token = await get_access_token(db, integration)
        created = await create_external_event(provider, token, {
            "title": title, "description": description, "start_at": start_at, "end_at": end_at,
        }, with_meeting=True)
    except Exception as e:
        logger.warning(f"Calendar event creation failed for {user_id} ({provider}): {e}")
        return empty
    logger.info(f"{provider} event created: {created['event_id']}, link: {created['meeting_link'] or 'none'}")
    return dict(created, provider=provider)
