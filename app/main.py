"""
Asha Intake Backend - FastAPI Application

Drives a scripted patient intake phone call:
- POST /initiate-call places an outbound call via Twilio
- POST /voice is Twilio's turn webhook; every turn calls the model
- Collected fields are upserted to PostgreSQL when the model reports completion

Python 3.9 compatible.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from engine.store import ConversationStore, run_reaper
from engine.turn import TurnController

from .database import PatientRepository
from .models import (
    HealthResponse,
    InitiateCallError,
    InitiateCallRequest,
    InitiateCallResponse,
)
from .openai_service import CompletionService
from .twilio_service import (
    GENERIC_APOLOGY,
    TwilioService,
    get_twilio_service,
    hangup_twiml,
    render_turn,
)

APP_VERSION = "1.0.0"

# Load environment variables from the project .env
# Try multiple paths to ensure we find .env
env_paths = [
    Path(__file__).parent.parent / ".env",  # project root
    Path.cwd() / ".env",  # current working directory
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    load_dotenv()  # fallback to default behavior

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG", "false").lower() == "true" else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Service instances (Python 3.9 compatible type hints)
completion_service: Optional[CompletionService] = None
twilio_service: Optional[TwilioService] = None
patient_repository: Optional[PatientRepository] = None
conversation_store: Optional[ConversationStore] = None
turn_controller: Optional[TurnController] = None
_reaper_task: Optional["asyncio.Task[None]"] = None


def _mask_key(key: Optional[str]) -> str:
    """Mask API key showing only last 4 chars."""
    if not key:
        return "(not set)"
    if len(key) <= 4:
        return "****"
    return f"****{key[-4:]}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - initialize services."""
    global completion_service, twilio_service, patient_repository
    global conversation_store, turn_controller, _reaper_task

    logger.info("=" * 60)
    logger.info("Initializing Asha Intake Backend")
    logger.info("=" * 60)

    openrouter_key = os.getenv("OPENROUTER_API_KEY")
    logger.info(f"OPENROUTER_API_KEY present: {bool(openrouter_key)} ({_mask_key(openrouter_key)})")

    # FAIL FAST if OPENROUTER_API_KEY is missing
    if not openrouter_key:
        error_msg = (
            "OPENROUTER_API_KEY is required. "
            "Set it in .env or as an environment variable."
        )
        logger.error(error_msg)
        raise RuntimeError(error_msg)

    completion_service = CompletionService()
    logger.info("Completion service initialized successfully")

    # Initialize Twilio service (does NOT crash if not configured)
    twilio_service = get_twilio_service()
    if twilio_service.is_configured:
        logger.info("Twilio service initialized successfully")
    else:
        logger.warning("Twilio service NOT fully configured - calls will fail gracefully")

    # Initialize repository (does NOT crash if not configured)
    patient_repository = PatientRepository()

    ttl_seconds = float(os.getenv("CONVERSATION_TTL_SECONDS", "1800"))
    reap_interval = float(os.getenv("CONVERSATION_REAP_INTERVAL_SECONDS", "60"))
    conversation_store = ConversationStore(ttl_seconds=ttl_seconds)
    turn_controller = TurnController(
        store=conversation_store,
        completion_service=completion_service,
        patient_repository=patient_repository,
    )
    _reaper_task = asyncio.create_task(run_reaper(conversation_store, reap_interval))

    logger.info("=" * 60)

    yield

    # Shutdown
    if _reaper_task is not None:
        _reaper_task.cancel()
        try:
            await _reaper_task
        except asyncio.CancelledError:
            pass
    if patient_repository is not None:
        await patient_repository.close()
    logger.info("Shutting down Asha Intake Backend")


app = FastAPI(
    title="Asha Intake Backend",
    description="Scripted patient intake over the phone, driven by a language model",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=APP_VERSION,
        activeConversations=len(conversation_store) if conversation_store is not None else 0,
    )


# ============================================================
# Call initiation
# ============================================================

@app.post(
    "/initiate-call",
    response_model=InitiateCallResponse,
    responses={400: {"model": InitiateCallError}, 500: {"model": InitiateCallError}},
)
async def initiate_call(request: Optional[InitiateCallRequest] = None):
    """
    Place an outbound intake call.

    The call's turn webhook is callbackBaseUrl + "/voice".

    Errors:
        400: body, phoneNumber or callbackBaseUrl missing
        500: Twilio not configured or Twilio API failure
    """
    if request is None or not request.phoneNumber or not request.callbackBaseUrl:
        return JSONResponse(
            status_code=400,
            content=InitiateCallError(
                message="Both phoneNumber and callbackBaseUrl are required."
            ).model_dump(exclude_none=True),
        )

    logger.info(f"Request received. Attempting to call: {request.phoneNumber}")

    if twilio_service is None or not twilio_service.is_configured:
        logger.error("Twilio service not configured")
        return JSONResponse(
            status_code=500,
            content=InitiateCallError(
                message="Failed to initiate call.",
                error="Twilio credentials are missing",
            ).model_dump(),
        )

    try:
        call_sid = await twilio_service.start_call(request.phoneNumber, request.callbackBaseUrl)
    except Exception as e:
        logger.error(f"Error initiating call: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=InitiateCallError(message="Failed to initiate call.", error=str(e)).model_dump(),
        )

    return InitiateCallResponse(message="Call has been successfully initiated!", callSid=call_sid)


# ============================================================
# Twilio turn webhook
# ============================================================

async def _read_webhook_fields(request: Request) -> Dict[str, str]:
    """Read webhook fields from a form (Twilio) or JSON body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            logger.warning("Webhook body is not valid JSON")
            body = {}
        if not isinstance(body, dict):
            body = {}
    else:
        body = dict(await request.form())

    return {key: str(value) for key, value in body.items() if value is not None}


def _twiml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


@app.post("/voice")
async def voice(request: Request) -> Response:
    """
    Twilio turn webhook - called when the call connects and after every
    gathered utterance.

    Fields: CallSid (required), SpeechResult (empty on the first turn), To.
    """
    fields = await _read_webhook_fields(request)
    call_sid = fields.get("CallSid", "").strip()
    speech = fields.get("SpeechResult", "")
    to_number = fields.get("To", "")

    logger.info(f"/voice received: callSid={call_sid or '(missing)'} speech='{speech[:50]}'")

    if not call_sid:
        logger.warning("voice: CallSid missing from webhook, hanging up")
        return _twiml(hangup_twiml(GENERIC_APOLOGY))

    if turn_controller is None:
        logger.error("voice: turn controller not initialized")
        return _twiml(hangup_twiml(GENERIC_APOLOGY))

    result = await turn_controller.handle_turn(call_sid, speech, to_number)

    if result.persist is not None and not result.persist.ok:
        logger.warning(
            f"Call {call_sid} completed but patient data was not saved: {result.persist.error}"
        )

    return _twiml(render_turn(result))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
