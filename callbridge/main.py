"""
Twilio Voice <-> Next-AGI chat bridge - FastAPI Application

Twilio posts call events here; the chat API is never called on the webhook
path. Recognized speech is answered with a short "please wait" script while a
background task fetches the real answer and pushes it onto the live call.

Python 3.9 compatible.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Form
from fastapi.responses import PlainTextResponse, Response

from . import twiml
from .chat_client import ChatAPIClient
from .config import ConfigurationError, Settings, load_settings, mask_key
from .conversation_store import ConversationStore
from .dispatcher import UtteranceDispatcher
from .models import HealthResponse, UtteranceTask
from .orchestrator import UtteranceOrchestrator
from .twilio_service import get_twilio_service, reset_twilio_service

VERSION = "1.0.0"
TWIML_MEDIA_TYPE = "application/xml"

# Load environment variables from the project .env, falling back to CWD
env_paths = [
    Path(__file__).parent.parent / ".env",
    Path.cwd() / ".env",
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    load_dotenv()

settings: Settings = load_settings()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Component instances, created in lifespan (Python 3.9 compatible type hints)
conversation_store: Optional[ConversationStore] = None
orchestrator: Optional[UtteranceOrchestrator] = None
dispatcher: Optional[UtteranceDispatcher] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - validate config and start the dispatcher."""
    global conversation_store, orchestrator, dispatcher

    logger.info("=" * 60)
    logger.info("Initializing Twilio Voice <-> Next-AGI bridge")
    logger.info("=" * 60)

    logger.info(f"TWILIO_ACCOUNT_SID present: {bool(settings.twilio_account_sid)} ({mask_key(settings.twilio_account_sid)})")
    logger.info(f"TWILIO_PHONE_NUMBER: {settings.twilio_phone_number or '(not set)'}")
    logger.info(f"NEXT_AGI_API_BASE_URL: {settings.api_base_url}")
    logger.info(f"DEFAULT_ASSISTANT_NAME: {settings.default_assistant_name}")
    for slot, key in settings.api_keys.items():
        logger.info(f"API key [{slot}]: {mask_key(key)}")

    # FAIL FAST if Twilio credentials are missing
    try:
        settings.validate()
    except ConfigurationError as e:
        logger.error(str(e))
        raise

    if not settings.get_api_key(settings.default_assistant_name):
        logger.warning(
            f"No API key resolves for assistant '{settings.default_assistant_name}' - "
            "every utterance will get the error script"
        )

    conversation_store = ConversationStore()
    orchestrator = UtteranceOrchestrator(
        settings=settings,
        store=conversation_store,
        chat_client=ChatAPIClient(settings.api_base_url, timeout=settings.chat_timeout_seconds),
        twilio_service=get_twilio_service(settings),
    )
    dispatcher = UtteranceDispatcher(orchestrator.process)
    await dispatcher.start()

    logger.info(
        f"Configure your Twilio number's VOICE webhook to: "
        f"http://<your-public-url>:{settings.port}{twiml.VOICE_PATH} (Method: HTTP POST)"
    )
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("Shutting down Twilio Voice <-> Next-AGI bridge")
    if dispatcher:
        await dispatcher.stop()
    if conversation_store is not None:
        conversation_store.clear()
    reset_twilio_service()
    dispatcher = None
    orchestrator = None
    conversation_store = None


app = FastAPI(
    title="Twilio Voice <-> Next-AGI Chatbot",
    description="Answers phone calls with a streaming chat assistant",
    version=VERSION,
    lifespan=lifespan,
)


def _twiml_response(content: str) -> Response:
    return Response(content=content, media_type=TWIML_MEDIA_TYPE)


@app.get("/", response_class=PlainTextResponse)
async def root():
    """Liveness text for a browser or load balancer."""
    return "Twilio Voice <-> Next-AGI Chatbot is running!"


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        conversations=len(conversation_store) if conversation_store is not None else 0,
        pendingTasks=dispatcher.pending if dispatcher is not None else 0,
    )


@app.post(twiml.VOICE_PATH)
async def twilio_voice(
    From: str = Form(""),
    CallSid: Optional[str] = Form(None),
):
    """
    Twilio voice webhook - called when the call connects.

    Greets the caller and opens a speech Gather. If nothing is said, Twilio
    falls through to the redirect and the greeting repeats.
    """
    logger.info(f"Incoming call from {From} (CallSid: {CallSid or 'unknown'})")
    return _twiml_response(twiml.greeting(settings.default_assistant_name))


@app.post(twiml.GATHER_PATH)
async def twilio_gather(
    From: str = Form(""),
    SpeechResult: Optional[str] = Form(None),
    Confidence: Optional[str] = Form(None),
    CallSid: Optional[str] = Form(None),
):
    """
    Twilio gather webhook - receives recognized speech.

    Never waits on the chat API:
    - speech + CallSid: reply with the processing script, queue a task
    - no speech: ask the caller to repeat
    - no CallSid: the call can't be updated later, so apologize and hang up

    Repeated identical events are not deduplicated; each queues a fresh task.
    """
    logger.info(f"Gather from {From} (CallSid: {CallSid}): \"{SpeechResult}\" (Confidence: {Confidence})")

    speech = SpeechResult.strip() if SpeechResult else ""

    if speech and CallSid:
        if dispatcher is None or not dispatcher.running:
            logger.error(f"[{CallSid}] Dispatcher not running, cannot process speech")
            return _twiml_response(twiml.apology_and_restart())

        dispatcher.submit(
            UtteranceTask(
                call_sid=CallSid,
                caller=From,
                speech_result=speech,
                confidence=Confidence,
            )
        )
        return _twiml_response(twiml.processing(settings.processing_pause_seconds))

    if not speech:
        logger.info(f"[{CallSid}] No speech detected for gather from {From}.")
        return _twiml_response(twiml.repeat_prompt())

    logger.error(
        f"[Unknown CallSid] Missing CallSid in /gather request from {From}. "
        f"SpeechResult={SpeechResult!r}, Confidence={Confidence!r}"
    )
    return _twiml_response(twiml.apology_and_hangup())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
