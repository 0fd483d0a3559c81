from fastapi import APIRouter, HTTPException
from ..db import get_db
from ..schemas.pydantic_schemas import (
    SignupCodeRequest,
    SignupVerifyRequest,
    PasswordCodeRequest,
    PasswordResetRequest,
)
from ..services import otp
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/signup/send-code")
async def send_signup_code(body: SignupCodeRequest):
    if not body.email or not body.password:
        raise HTTPException(status_code=400, detail="Email et mot de passe requis")
    db = get_db()
    if db.find_user_by_email(body.email):
        raise HTTPException(status_code=400, detail="Un compte avec cet email existe deja")

    code = otp.issue_code(db, otp.SIGNUP_TABLE, body.email, {
        "full_name": body.full_name or "",
        "hashed_password": otp.hash_password(body.password),
    })
    await otp.send_signup_code(body.email, code, body.full_name or "")
    return {"success": True, "message": "Code envoye"}


@router.post("/signup/verify")
async def verify_signup_code(body: SignupVerifyRequest):
    db = get_db()
    row = otp.consume_code(db, otp.SIGNUP_TABLE, body.email, body.code)
    if not row:
        raise HTTPException(status_code=400, detail="Code invalide ou expire")
    if row.get("hashed_password") and row["hashed_password"] != otp.hash_password(body.password):
        raise HTTPException(status_code=400, detail="Mot de passe different de celui de l'inscription")
    if db.find_user_by_email(body.email):
        raise HTTPException(status_code=400, detail="Un compte avec cet email existe deja")

    user = db.create_user(body.email, body.password, row.get("full_name") or "")
    db.get_profile(user["id"], body.email)
    logger.info(f"Account created for {body.email}")
    return {"success": True, "user": user}


@router.post("/password/send-code")
async def send_password_code(body: PasswordCodeRequest):
    db = get_db()
    if db.find_user_by_email(body.email):
        code = otp.issue_code(db, otp.RESET_TABLE, body.email)
        await otp.send_reset_code(body.email, code)
    else:
        logger.info(f"Password reset requested for unknown account {body.email}")
    return {"success": True, "message": "Si ce compte existe, un code a ete envoye"}


@router.post("/password/reset")
async def reset_password(body: PasswordResetRequest):
    if len(body.new_password) < 6:
        raise HTTPException(status_code=400, detail="Le mot de passe doit contenir au moins 6 caracteres")
    db = get_db()
    row = otp.consume_code(db, otp.RESET_TABLE, body.email, body.code)
    if not row:
        raise HTTPException(status_code=400, detail="Code invalide ou expire")
    user = db.find_user_by_email(body.email)
    if not user:
        raise HTTPException(status_code=400, detail="Code invalide ou expire")
    db.update_user_password(user["id"], body.new_password)
    logger.info(f"Password reset for {body.email}")
    return {"success": True, "message": "Mot de passe mis a jour"}
