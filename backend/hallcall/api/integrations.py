from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from typing import Optional
import logging
from urllib.parse import urlencode

from ..db import get_db
from ..schemas.pydantic_schemas import SmtpConfig
from ..services.oauth import PROVIDERS, app_url, build_auth_url, decode_state, exchange_code, expires_at
from ..services.voice_client import VendorAPIError
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()

TOKEN_FIELDS = ("access_token", "refresh_token")


def _require_provider(provider: str) -> None:
    if provider not in PROVIDERS:
        raise HTTPException(status_code=404, detail="Fournisseur inconnu")


def _back_to_app(**params) -> RedirectResponse:
    return RedirectResponse(url=f"{app_url()}/integrations?{urlencode(params)}", status_code=302)


@router.get("")
async def list_integrations(user=Depends(get_current_user)):
    rows = get_db().list_owned("integrations", user["id"])
    return {"integrations": [{k: v for k, v in row.items() if k not in TOKEN_FIELDS} for row in rows]}


@router.get("/{provider}/auth-url")
async def get_auth_url(provider: str, user=Depends(get_current_user)):
    _require_provider(provider)
    return {"url": build_auth_url(provider, user["id"])}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
):
    _require_provider(provider)
    if error:
        logger.warning(f"{provider} OAuth returned error: {error}")
        return _back_to_app(error=error)
    if not code or not state:
        return _back_to_app(error="missing_params")
    try:
        user_id = decode_state(state)
    except ValueError as e:
        logger.warning(f"{provider} OAuth state rejected: {e}")
        return _back_to_app(error="invalid_state")

    try:
        tokens = await exchange_code(provider, code)
    except VendorAPIError as e:
        logger.error(f"{provider} token exchange failed: {e.status_code}")
        return _back_to_app(error="token_exchange")

    try:
        get_db().upsert_integration(user_id, provider, {
            "access_token": tokens.get("access_token"),
            "refresh_token": tokens.get("refresh_token"),
            "token_expires_at": expires_at(tokens.get("expires_in")),
            "is_active": True,
        })
    except Exception as e:
        logger.error(f"Could not store {provider} integration for {user_id}: {e}")
        return _back_to_app(error="db_error")

    logger.info(f"{provider} connected for user {user_id}")
    return _back_to_app(connected=provider)


@router.post("/smtp")
async def save_smtp(body: SmtpConfig, user=Depends(get_current_user)):
    if not body.host or not body.username or not body.from_email or not (0 < body.port < 65536):
        raise HTTPException(status_code=400, detail="Configuration SMTP incomplete")
    get_db().upsert_integration(user["id"], "smtp", {
        "config": {
            "host": body.host,
            "port": body.port,
            "username": body.username,
            "password": body.password,
            "fromEmail": body.from_email,
            "fromName": body.from_name or "",
            "encryption": body.encryption,
        },
        "is_active": True,
    })
    return {"success": True, "message": "Configuration SMTP sauvegardee"}
