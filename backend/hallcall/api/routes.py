from fastapi import APIRouter
from .auth import router as auth_router
from .profile import router as profile_router
from .agents import router as agents_router, tts_router
from .conversations import router as conversations_router
from .telephony import calls_router, voice_router, phone_numbers_router
from .campaigns import router as campaigns_router, contacts_router
from .widgets import router as widgets_router
from .integrations import router as integrations_router
from .calendar import router as calendar_router
from .messaging import sms_router, email_router, templates_router
from .orders import router as orders_router
from .tickets import router as tickets_router
from .leads import router as leads_router
from .webhooks import router as webhooks_router

api_router = APIRouter()
api_router.include_router(auth_router, prefix="/auth", tags=["auth"])
api_router.include_router(profile_router, prefix="/profile", tags=["profile"])
api_router.include_router(agents_router, prefix="/agents", tags=["agents"])
api_router.include_router(tts_router, prefix="/tts", tags=["agents"])
api_router.include_router(conversations_router, prefix="/conversations", tags=["conversations"])
api_router.include_router(calls_router, prefix="/calls", tags=["telephony"])
api_router.include_router(voice_router, prefix="/telephony", tags=["telephony"])
api_router.include_router(phone_numbers_router, prefix="/phone-numbers", tags=["telephony"])
api_router.include_router(campaigns_router, prefix="/campaigns", tags=["campaigns"])
api_router.include_router(contacts_router, prefix="/contacts", tags=["campaigns"])
api_router.include_router(widgets_router, prefix="/widgets", tags=["widgets"])
api_router.include_router(integrations_router, prefix="/integrations", tags=["integrations"])
api_router.include_router(calendar_router, prefix="/calendar", tags=["calendar"])
api_router.include_router(sms_router, prefix="/sms", tags=["messaging"])
api_router.include_router(email_router, prefix="/email", tags=["messaging"])
api_router.include_router(templates_router, prefix="/notification-templates", tags=["messaging"])
api_router.include_router(orders_router, prefix="/orders", tags=["orders"])
api_router.include_router(tickets_router, prefix="/tickets", tags=["support"])
api_router.include_router(leads_router, prefix="/leads", tags=["commercial"])
api_router.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
