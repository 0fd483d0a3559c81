from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from .api.routes import api_router
from .services.campaign import CampaignError
from .services.email_client import EmailNotConfigured
from .services.oauth import OAuthNotConfigured
from .services.telephony import TelephonyNotConfigured
from .services.voice_client import VendorAPIError, VoiceNotConfigured
from dotenv import load_dotenv
import os
import logging

# Load environment variables from .env (if present)
# Try to load from the project root first, then current directory
import pathlib
project_root = pathlib.Path(__file__).parent.parent.parent
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
    ]
)

logger = logging.getLogger(__name__)

app = FastAPI(title="HallCall API")

cors_origins = [o.strip() for o in (os.getenv("CORS_ORIGINS") or "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, message, details=None, headers=None) -> JSONResponse:
    content = {"error": message}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if isinstance(detail, dict):
        if "error" in detail:
            return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)
        return error_response(exc.status_code, "Erreur", detail, exc.headers)
    return error_response(exc.status_code, detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"Champ invalide: {field}" if field else "Requete invalide"
    return error_response(400, message, [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors])


@app.exception_handler(VendorAPIError)
async def vendor_error_handler(request: Request, exc: VendorAPIError):
    logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(VoiceNotConfigured)
async def voice_not_configured_handler(request: Request, exc: VoiceNotConfigured):
    return error_response(500, "ELEVENLABS_API_KEY not configured")


@app.exception_handler(TelephonyNotConfigured)
async def telephony_not_configured_handler(request: Request, exc: TelephonyNotConfigured):
    return error_response(500, "Twilio credentials not configured")


@app.exception_handler(OAuthNotConfigured)
async def oauth_not_configured_handler(request: Request, exc: OAuthNotConfigured):
    return error_response(500, str(exc))


@app.exception_handler(EmailNotConfigured)
async def email_not_configured_handler(request: Request, exc: EmailNotConfigured):
    return error_response(500, str(exc))


@app.exception_handler(CampaignError)
async def campaign_error_handler(request: Request, exc: CampaignError):
    return error_response(exc.status_code, exc.message)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return error_response(500, str(exc))


app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    return {"status": "ok"}
