from typing import Any, Dict, Optional

from fastapi import Header, HTTPException

from ..db import get_db


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    """Resolve the caller from `Authorization: Bearer <token>` through the store's auth API."""
    user = get_db().get_user(bearer_token(authorization))
    if not user:
        raise HTTPException(status_code=401, detail="Non autorise")
    return user
