import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Annotated, Optional, Type, TypeVar

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from chatcast import storage
from chatcast.aggregator import get_session_details, has_session_data, list_session_details
from chatcast.config import settings
from chatcast.exceptions import InvalidTransitionError, SessionValidationError, StoreError
from chatcast.logging_utils import setup_logging, RequestLoggingMiddleware, log_event_data
from chatcast.metrics import get_metrics, get_metrics_content_type
from chatcast.reconciler import ReconcileResult, ReconcileScheduler, SessionReconciler
from chatcast.recorder import RecorderState, RecordingStateMachine
from chatcast.storage import SessionLocal, init_db, check_db_health, get_db
from chatcast.utils import from_unix_seconds, verify_hmac_signature
from chatcast.schemas import (
    ChatEventRequest,
    DatabaseStatusResponse,
    ErrorResponse,
    EventResponse,
    HealthResponse,
    MessageResponse,
    ReconcileResponse,
    RecorderStateResponse,
    SessionDetailResponse,
    SessionResponse,
    SessionTargetRequest,
    StatusUpdateRequest,
    StatusUpdateResponse,
    TitleRequest,
    TransitionResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

STORE_UNAVAILABLE = "storage unavailable, retry"

ModelT = TypeVar("ModelT", bound=BaseModel)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the recorder, start periodic reconciliation
    - Shutdown: stop the reconciliation timer, letting a running sweep finish
    """
    init_db()
    app.state.recorder = RecordingStateMachine(SessionLocal)
    app.state.reconciler = SessionReconciler(
        SessionLocal,
        idle_timeout=timedelta(seconds=settings.IDLE_TIMEOUT_SECONDS),
        empty_timeout=timedelta(seconds=settings.EMPTY_SESSION_TIMEOUT_SECONDS),
    )
    scheduler = ReconcileScheduler(app.state.reconciler, settings.RECONCILE_INTERVAL_SECONDS)
    if settings.RECONCILE_ENABLED:
        scheduler.start()
    yield
    await scheduler.stop()


app = FastAPI(
    title="Chatcast API",
    description="Records chat conversations into named sessions",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error(f"Store failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": STORE_UNAVAILABLE},
    )


# =============================================================================
# Dependencies
# =============================================================================

def get_recorder(request: Request) -> RecordingStateMachine:
    return request.app.state.recorder


def get_reconciler(request: Request) -> SessionReconciler:
    return request.app.state.reconciler


async def require_signature(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
) -> bytes:
    """
    Check the X-Signature header (hex HMAC-SHA256 of the raw body with
    WEBHOOK_SECRET) and return the raw body.
    """
    raw_body = await request.body()

    if not x_signature:
        logger.error("Missing X-Signature header")
        log_event_data(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    if not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Invalid HMAC signature")
        log_event_data(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    return raw_body


def parse_body(request: Request, raw_body: bytes, model: Type[ModelT]) -> ModelT:
    """Validate a signed body; an empty body means all defaults."""
    try:
        data = json.loads(raw_body) if raw_body.strip() else {}
        return model.model_validate(data)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        log_event_data(request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        log_event_data(request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )


def state_response(state: RecorderState) -> RecorderStateResponse:
    return RecorderStateResponse(phase=state.phase.value, session_id=state.session_id)


def transition_response(recorder: RecordingStateMachine, session) -> TransitionResponse:
    return TransitionResponse(
        result="applied" if session is not None else "noop",
        state=state_response(recorder.snapshot()),
        session=SessionResponse.model_validate(session) if session is not None else None,
    )


def reconcile_response(result: ReconcileResult) -> ReconcileResponse:
    message = f"Checked {result.checked} sessions, updated {result.updated} to completed status"
    if result.repaired:
        message += f", repaired {result.repaired}"
    return ReconcileResponse(
        message=message,
        checked=result.checked,
        updated=result.updated,
        repaired=result.repaired,
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and both tables exist
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Inbound Events
# =============================================================================

@app.post(
    "/webhook",
    response_model=EventResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Storage unavailable"},
    }
)
async def webhook(
    request: Request,
    raw_body: bytes = Depends(require_signature),
    recorder: RecordingStateMachine = Depends(get_recorder),
) -> EventResponse:
    """
    Receive a chat event from the bot gateway.

    The event is stored only while a recording is active. While paused the
    result is dropped_paused; while a title is awaited the text becomes the
    session title.
    """
    event = parse_body(request, raw_body, ChatEventRequest)

    result = recorder.record_event(
        chat_id=event.chat_id,
        username=event.username,
        text=event.text,
        event_date=from_unix_seconds(event.date),
    )

    log_event_data(request, chat_id=event.chat_id, session_id=result.session_id, result=result.outcome.value)
    return EventResponse(
        result=result.outcome.value,
        session_id=result.session_id,
        message_id=result.message_id,
    )


# =============================================================================
# Recorder Routes
# =============================================================================

@app.get("/recording", response_model=RecorderStateResponse)
async def recording_state(recorder: RecordingStateMachine = Depends(get_recorder)) -> RecorderStateResponse:
    return state_response(recorder.snapshot())


@app.post("/recording/start", response_model=TransitionResponse)
async def recording_start(
    request: Request,
    raw_body: bytes = Depends(require_signature),
    recorder: RecordingStateMachine = Depends(get_recorder),
) -> TransitionResponse:
    """Reserve a new session; the next title (or next event text) names it."""
    session_id = recorder.start_session()
    log_event_data(request, session_id=session_id, result="awaiting_title")
    return TransitionResponse(result="applied", state=state_response(recorder.snapshot()))


@app.post(
    "/recording/title",
    response_model=TransitionResponse,
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def recording_title(
    request: Request,
    raw_body: bytes = Depends(require_signature),
    recorder: RecordingStateMachine = Depends(get_recorder),
) -> TransitionResponse:
    body = parse_body(request, raw_body, TitleRequest)
    try:
        session = recorder.supply_title(body.title, session_id=body.session_id)
    except SessionValidationError as e:
        log_event_data(request, session_id=body.session_id, result="validation_error")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except StoreError as e:
        logger.error(f"Failed to start recording session: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to start recording session, please start again"
        )

    log_event_data(request, session_id=session.session_id, result="active")
    return transition_response(recorder, session)


def _run_transition(request: Request, raw_body: bytes, recorder: RecordingStateMachine, name: str) -> TransitionResponse:
    body = parse_body(request, raw_body, SessionTargetRequest)
    action = getattr(recorder, name)
    try:
        session = action(session_id=body.session_id)
    except InvalidTransitionError as e:
        log_event_data(request, session_id=e.session_id, result="conflict")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StoreError as e:
        logger.error(f"Recorder {name} could not be persisted: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Recording {name} applied but the stored session status may be stale, retry"
        )

    response = transition_response(recorder, session)
    log_event_data(request, session_id=session.session_id if session else body.session_id, result=response.result)
    return response


@app.post("/recording/pause", response_model=TransitionResponse)
async def recording_pause(
    request: Request,
    raw_body: bytes = Depends(require_signature),
    recorder: RecordingStateMachine = Depends(get_recorder),
) -> TransitionResponse:
    return _run_transition(request, raw_body, recorder, "pause")


@app.post("/recording/resume", response_model=TransitionResponse)
async def recording_resume(
    request: Request,
    raw_body: bytes = Depends(require_signature),
    recorder: RecordingStateMachine = Depends(get_recorder),
) -> TransitionResponse:
    return _run_transition(request, raw_body, recorder, "resume")


@app.post("/recording/stop", response_model=TransitionResponse)
async def recording_stop(
    request: Request,
    raw_body: bytes = Depends(require_signature),
    recorder: RecordingStateMachine = Depends(get_recorder),
) -> TransitionResponse:
    return _run_transition(request, raw_body, recorder, "stop")


# =============================================================================
# Session Routes
# =============================================================================

@app.get("/sessions-list", response_model=list[SessionResponse])
async def sessions_list(db: Session = Depends(get_db)) -> list[SessionResponse]:
    """All sessions in the registry, most recently created first."""
    return [SessionResponse.model_validate(s) for s in storage.list_sessions(db)]


@app.get("/sessions", response_model=list[str])
async def sessions(db: Session = Depends(get_db)) -> list[str]:
    """Session ids that have recorded messages."""
    return storage.get_unique_session_ids(db)


@app.get("/sessions-details", response_model=list[SessionDetailResponse])
async def sessions_details(db: Session = Depends(get_db)) -> list[SessionDetailResponse]:
    details = list_session_details(db)
    logger.info(f"GET /sessions-details: returned {len(details)} sessions")
    return [SessionDetailResponse.model_validate(d) for d in details]


@app.get(
    "/session/{session_id}",
    response_model=SessionDetailResponse,
    responses={404: {"model": ErrorResponse}},
)
async def session_detail(session_id: str, db: Session = Depends(get_db)) -> SessionDetailResponse:
    detail = get_session_details(db, session_id)
    if not has_session_data(detail):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return SessionDetailResponse.model_validate(detail)


@app.put(
    "/session/{session_id}/status",
    response_model=StatusUpdateResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"description": "Invalid status"},
    },
)
async def update_session_status(
    session_id: str,
    request: Request,
    raw_body: bytes = Depends(require_signature),
    recorder: RecordingStateMachine = Depends(get_recorder),
    db: Session = Depends(get_db),
) -> StatusUpdateResponse:
    """Manually set a session's status; completed sessions cannot be reopened."""
    body = parse_body(request, raw_body, StatusUpdateRequest)

    if storage.get_session(db, session_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    try:
        session = recorder.set_status(session_id, body.status.value)
    except InvalidTransitionError as e:
        log_event_data(request, session_id=session_id, result="conflict")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    log_event_data(request, session_id=session_id, result=session.status)
    return StatusUpdateResponse(
        message=f"Session {session_id} status updated to {session.status}",
        session_id=session_id,
        status=session.status,
    )


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/messages", response_model=list[MessageResponse])
async def list_messages(
    session_id: Annotated[Optional[str], Query(description="Only messages of this session")] = None,
    chat_id: Annotated[str, Query(description="Only messages of this chat, or 'all'")] = "all",
    db: Session = Depends(get_db),
) -> list[MessageResponse]:
    """Messages in chronological order; session_id takes precedence over chat_id."""
    if session_id:
        messages = storage.get_messages_by_session(db, session_id)
    else:
        messages = storage.get_messages(db, chat_id)
    logger.info(f"GET /messages: session_id={session_id}, chat_id={chat_id}, returned {len(messages)}")
    return [MessageResponse.model_validate(m) for m in messages]


@app.get("/chat_ids", response_model=list[str])
async def chat_ids(db: Session = Depends(get_db)) -> list[str]:
    return storage.get_unique_chat_ids(db)


# =============================================================================
# Reconciliation Routes
# =============================================================================

@app.post("/check-sessions", response_model=ReconcileResponse)
async def check_sessions(
    raw_body: bytes = Depends(require_signature),
    reconciler: SessionReconciler = Depends(get_reconciler),
) -> ReconcileResponse:
    """Complete active sessions that have gone quiet."""
    result = await run_in_threadpool(reconciler.reconcile_once)
    return reconcile_response(result)


@app.post("/api/fix-all-sessions", response_model=ReconcileResponse)
async def fix_all_sessions(
    raw_body: bytes = Depends(require_signature),
    reconciler: SessionReconciler = Depends(get_reconciler),
) -> ReconcileResponse:
    """Repair unset statuses and message-only sessions, then run the status check."""
    result = await run_in_threadpool(reconciler.fix_all)
    return reconcile_response(result)


# =============================================================================
# Status & Metrics Routes
# =============================================================================

@app.get("/db-status", response_model=DatabaseStatusResponse)
async def db_status(
    recorder: RecordingStateMachine = Depends(get_recorder),
    db: Session = Depends(get_db),
) -> DatabaseStatusResponse:
    counts = storage.count_records(db)
    return DatabaseStatusResponse(
        messages=counts["messages"],
        sessions=counts["sessions"],
        recorder=state_response(recorder.snapshot()),
    )


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
