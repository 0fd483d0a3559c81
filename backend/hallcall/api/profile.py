from fastapi import APIRouter, Depends
from ..db import get_db
from .deps import get_current_user


router = APIRouter()


@router.get("")
async def get_profile(user=Depends(get_current_user)):
    profile = get_db().get_profile(user["id"], user.get("email"))
    return {
        "profile": profile,
        "minutes_remaining": max(0, (profile.get("minutes_limit") or 0) - (profile.get("minutes_used") or 0)),
    }
