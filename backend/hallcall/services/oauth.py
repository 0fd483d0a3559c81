import base64
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from .voice_client import VendorAPIError

logger = logging.getLogger(__name__)

PROVIDERS: Dict[str, Dict[str, Any]] = {
    "google": {
        "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "scopes": " ".join([
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
            "https://www.googleapis.com/auth/gmail.send",
        ]),
        "client_id_env": "GOOGLE_CLIENT_ID",
        "client_secret_env": "GOOGLE_CLIENT_SECRET",
        "extra_params": {"access_type": "offline", "prompt": "consent"},
    },
    "microsoft": {
        "authorize_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "scopes": "Calendars.ReadWrite Mail.Send offline_access",
        "client_id_env": "MICROSOFT_CLIENT_ID",
        "client_secret_env": "MICROSOFT_CLIENT_SECRET",
        "extra_params": {"response_mode": "query", "prompt": "consent"},
    },
}


class OAuthNotConfigured(Exception):
    pass


def encode_state(user_id: str) -> str:
    return base64.b64encode(json.dumps({"userId": user_id}).encode()).decode()


def decode_state(state: str) -> str:
    """Return the user id carried in an OAuth state value, or raise ValueError."""
    try:
        decoded = json.loads(base64.b64decode(state.encode(), validate=True).decode())
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid OAuth state: {e}")
    user_id = decoded.get("userId") if isinstance(decoded, dict) else None
    if not user_id:
        raise ValueError("OAuth state has no userId")
    return user_id


def redirect_uri(provider: str) -> str:
    base = (os.getenv("PUBLIC_API_URL") or "http://localhost:8000").rstrip("/")
    return f"{base}/api/integrations/{provider}/callback"


def app_url() -> str:
    return (os.getenv("APP_URL") or "http://localhost:3005").rstrip("/")


def expires_at(expires_in: Optional[int]) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=int(expires_in or 3600))).isoformat()


def _credentials(provider: str) -> Dict[str, str]:
    conf = PROVIDERS[provider]
    client_id = os.getenv(conf["client_id_env"])
    if not client_id:
        raise OAuthNotConfigured(f"{conf['client_id_env']} not configured")
    return {"client_id": client_id, "client_secret": os.getenv(conf["client_secret_env"]) or ""}


def build_auth_url(provider: str, user_id: str) -> str:
    conf = PROVIDERS[provider]
    params = {
        "client_id": _credentials(provider)["client_id"],
        "redirect_uri": redirect_uri(provider),
        "response_type": "code",
        "scope": conf["scopes"],
        "state": encode_state(user_id),
    }
    params.update(conf["extra_params"])
    return f"{conf['authorize_url']}?{urlencode(params)}"


async def _token_request(provider: str, form: Dict[str, str]) -> Dict[str, Any]:
    payload = dict(_credentials(provider), **form)
    async with httpx.AsyncClient() as client:
        response = await client.post(PROVIDERS[provider]["token_url"], data=payload, timeout=15.0)
    if response.status_code >= 400:
        logger.error(f"{provider} token endpoint error: {response.status_code} - {response.text}")
        raise VendorAPIError(response.status_code, f"{provider} token error: {response.status_code}", response.text)
    return response.json()


async def exchange_code(provider: str, code: str) -> Dict[str, Any]:
    return await _token_request(provider, {
        "code": code,
        "redirect_uri": redirect_uri(provider),
        "grant_type": "authorization_code",
    })


async def refresh_access_token(db, integration: Dict[str, Any]) -> str:
    """Refresh an integration's access token and persist the new one."""
    provider = integration["provider"]
    refresh_token = integration.get("refresh_token")
    logger.info(f"Refreshing {provider} token for user {integration.get('user_id')}")
    tokens = await _token_request(provider, {"refresh_token": refresh_token or "", "grant_type": "refresh_token"})
    values = {
        "access_token": tokens["access_token"],
        "token_expires_at": expires_at(tokens.get("expires_in")),
    }
    # Microsoft rotates refresh tokens, Google usually omits them
    values["refresh_token"] = tokens.get("refresh_token") or refresh_token
    db.update_integration(integration["user_id"], provider, values)
    return tokens["access_token"]


def _is_expired(integration: Dict[str, Any]) -> bool:
    raw = integration.get("token_expires_at")
    if not raw:
        return False
    expiry = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry < datetime.now(timezone.utc)


async def get_access_token(db, integration: Dict[str, Any]) -> str:
    if _is_expired(integration):
        return await refresh_access_token(db, integration)
    return integration.get("access_token") or ""
