"""
FastAPI Application Module

HTTP surface over a single on-device chat session. The session owns the model
handle, the conversation log and the streaming generation; this module only
routes requests to it and reports what it did.

Key Features:
- One active ChatSession, replaced as a unit when the model changes
- Background model setup with progress exposed through the session snapshot
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support
"""

import time
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel, ConfigDict
from structlog import get_logger

from ..config import get_settings
from ..domain.models import Message, ModelInfo, SessionSnapshot
from ..engines.ollama import OllamaEngine
from ..log_config import configure_logging
from ..repositories.json_file import JsonFileRepository
from ..services.catalog import ModelCatalog, SortOrder
from ..services.session import ChatSession

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
PROCESSING_TIME = Counter("processing_time_seconds", "Total request processing time", registry=CUSTOM_REGISTRY)
MESSAGES_SENT = Counter("messages_sent_total", "Messages submitted to the session", registry=CUSTOM_REGISTRY)

logger = get_logger()

SessionFactory = Callable[[Optional[str]], ChatSession]


class MessageCreate(BaseModel):
    """Text the user submits to the active session"""
    content: str


class ModelSelection(BaseModel):
    """Names the model a session or setup call should use"""
    model_config = ConfigDict(protected_namespaces=())

    model_id: str


class ContextHistoryUpdate(BaseModel):
    enabled: bool


class SessionRegistry:
    """Holds the active session and swaps it as a unit."""

    def __init__(self, factory: SessionFactory) -> None:
        self._factory = factory
        self.current: Optional[ChatSession] = None

    async def open(self, model_id: Optional[str]) -> ChatSession:
        await self.close()
        session = self._factory(model_id)
        try:
            await session.start()
        except Exception:
            await session.close()
            raise
        self.current = session
        return session

    async def close(self) -> None:
        session, self.current = self.current, None
        if session is not None:
            await session.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Opens the engine, store, catalog and default session; closes them on exit"""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    engine = OllamaEngine(
        base_url=settings.engine_base_url,
        timeout=settings.engine_timeout,
        keep_alive=settings.engine_keep_alive,
    )
    repository = JsonFileRepository(settings.storage_root)

    def build_session(model_id: Optional[str]) -> ChatSession:
        return ChatSession(engine, engine, repository, model_id=model_id, settings=settings)

    app.state.registry = SessionRegistry(build_session)
    app.state.catalog = ModelCatalog(repository, catalog_url=settings.catalog_url)
    await app.state.catalog.load()
    await app.state.registry.open(settings.default_model_id)
    logger.info("application_startup_complete", default_model_id=settings.default_model_id)

    yield

    await app.state.registry.close()
    await engine.aclose()
    logger.info("application_shutdown_complete")


def get_registry(request: Request) -> SessionRegistry:
    """Returns the holder of the active session"""
    return request.app.state.registry


def get_session(registry: SessionRegistry = Depends(get_registry)) -> ChatSession:
    """Returns the active chat session"""
    if registry.current is None:
        raise HTTPException(status_code=503, detail="No active session")
    return registry.current


def get_catalog(request: Request) -> ModelCatalog:
    """Returns the model catalog"""
    return request.app.state.catalog


app = FastAPI(
    title="On-Device Chat API",
    description="Session orchestration for chatting with a locally-resident language model",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Logs and counts requests"""
    REQUESTS.inc()
    started = time.perf_counter()
    logger.info("request_started", method=request.method, path=request.url.path)
    try:
        response = await call_next(request)
    except Exception as e:
        ERRORS.inc()
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise
    finally:
        PROCESSING_TIME.inc(time.perf_counter() - started)
    if response.status_code >= 500:
        ERRORS.inc()
    return response


@app.get("/models", response_model=List[ModelInfo])
async def list_models(
    order: Optional[SortOrder] = None,
    catalog: ModelCatalog = Depends(get_catalog),
) -> List[ModelInfo]:
    """Lists catalog models sorted by size"""
    if order is not None:
        catalog.sort_order = order
    return catalog.models


@app.delete("/models/{model_id:path}", response_model=SessionSnapshot)
async def delete_model(model_id: str, session: ChatSession = Depends(get_session)) -> SessionSnapshot:
    """Deletes a downloaded model, unloading it first when it is the active one"""
    await session.remove_model_by_id(model_id)
    logger.info("model_deleted", model_id=model_id)
    return session.snapshot()


@app.post("/session", response_model=SessionSnapshot)
async def open_session(
    selection: ModelSelection,
    registry: SessionRegistry = Depends(get_registry),
) -> SessionSnapshot:
    """Tears down the current session and starts one for the given model"""
    try:
        session = await registry.open(selection.model_id)
    except Exception as e:
        logger.error("open_session_error", model_id=selection.model_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to open session")
    return session.snapshot()


@app.get("/session", response_model=SessionSnapshot)
async def get_session_state(session: ChatSession = Depends(get_session)) -> SessionSnapshot:
    return session.snapshot()


@app.put("/session/context-history", response_model=SessionSnapshot)
async def update_context_history(
    update: ContextHistoryUpdate,
    session: ChatSession = Depends(get_session),
) -> SessionSnapshot:
    session.set_context_history(update.enabled)
    return session.snapshot()


@app.post("/session/model", response_model=SessionSnapshot, status_code=202)
async def setup_model(
    selection: ModelSelection,
    background_tasks: BackgroundTasks,
    session: ChatSession = Depends(get_session),
) -> SessionSnapshot:
    """Starts downloading and preparing a model; progress shows up in GET /session"""
    if session.models.setup_in_progress:
        raise HTTPException(status_code=409, detail="Model setup already in progress")
    background_tasks.add_task(session.setup_model, selection.model_id)
    logger.info("model_setup_scheduled", model_id=selection.model_id)
    return session.snapshot()


@app.delete("/session/model", response_model=SessionSnapshot)
async def remove_model(session: ChatSession = Depends(get_session)) -> SessionSnapshot:
    await session.remove_model()
    return session.snapshot()


@app.get("/session/messages", response_model=List[Message])
async def get_messages(session: ChatSession = Depends(get_session)) -> List[Message]:
    """Gets the conversation, newest first"""
    return session.messages


@app.post("/session/messages", response_model=Message)
async def create_message(
    message: MessageCreate,
    session: ChatSession = Depends(get_session),
) -> Message:
    """
    Submits a user message and waits for the streamed reply.
    A failed generation still returns the assistant message carrying the error text.
    """
    previous_reply_id = session.generation.last_reply_id
    await session.send(message.content)
    reply_id = session.generation.last_reply_id
    if reply_id is None or reply_id == previous_reply_id:
        raise HTTPException(status_code=409, detail="Message rejected: empty input, busy, or no model ready")

    MESSAGES_SENT.inc()
    reply = session.conversation.get(reply_id)
    if reply is None:
        raise HTTPException(status_code=409, detail="Conversation was cleared before the reply finished")
    logger.info(
        "message_processed",
        model_id=session.model_id,
        user_message_length=len(message.content),
        ai_response_length=len(reply.text),
    )
    return reply


@app.delete("/session/messages", status_code=204)
async def clear_messages(session: ChatSession = Depends(get_session)) -> Response:
    await session.clear_conversation()
    return Response(status_code=204)


@app.get("/metrics")
async def metrics():
    """Exposes the request and message counters in Prometheus text format"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
