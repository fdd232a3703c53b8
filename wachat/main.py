import json
import logging
from contextlib import asynccontextmanager

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    HTTPException,
    Request,
    Response,
    WebSocket,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from wachat.config import settings
from wachat.conversations import list_conversation_messages, list_conversation_views, mark_conversation_read
from wachat.ingest import ingest_outgoing, ingest_payload
from wachat.logging_utils import setup_logging, RequestLoggingMiddleware, log_ingest_data
from wachat.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from wachat.models import utcnow
from wachat.realtime import publish_events, stream_events
from wachat.schemas import (
    ContactRequest,
    ContactResponse,
    ConversationViewResponse,
    ErrorResponse,
    HealthResponse,
    MarkReadResponse,
    MessageResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatsResponse,
    WebhookResponse,
)
from wachat.storage import (
    StoreUnavailable,
    check_db_health,
    get_db,
    get_stats,
    init_db,
    list_contacts,
    upsert_contact,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables; an unreachable store aborts startup
    """
    init_db()
    yield


app = FastAPI(
    title="wachat",
    description="Webhook message ingestion with idempotent storage and realtime fan-out",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness check: always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness check: returns 200 only if the DB is reachable and the
    messages/contacts tables exist, 503 otherwise.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Ingestion Routes
# =============================================================================

@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={500: {"model": ErrorResponse, "description": "Store unavailable"}},
)
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> WebhookResponse:
    """
    Ingest one webhook payload of any supported shape.

    - Payloads we cannot parse are acknowledged with 200 so the sender
      does not retry them forever
    - Duplicate messages and status updates for unknown messages are
      skipped, not errors
    - 500 only when the store failed for at least one intent
    - Realtime events are published after the response is sent
    """
    raw_body = await request.body()
    logger.debug(f"Webhook request body size: {len(raw_body)} bytes")

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.warning(f"Webhook body is not valid JSON: {e}")
        record_webhook_outcome("invalid_json")
        log_ingest_data(request, source="webhook")
        return WebhookResponse(status="ok")

    try:
        report = ingest_payload(db, payload, "webhook")
    except StoreUnavailable as e:
        logger.error(f"Webhook ingestion failed: {e}")
        record_webhook_outcome("store_unavailable")
        log_ingest_data(request, source="webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Store unavailable"
        )

    log_ingest_data(
        request,
        source="webhook",
        shape=report.shape,
        intents=report.intents,
        applied=report.applied,
        failed=report.failed,
    )

    if report.failed:
        # applied siblings still reach subscribers before the error response
        publish_events(report.events)
        record_webhook_outcome("store_unavailable")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Store unavailable"
        )

    record_webhook_outcome("ok" if report.shape else "malformed")
    background_tasks.add_task(publish_events, report.events)

    return WebhookResponse(
        status="ok",
        shape=report.shape,
        intents=report.intents,
        applied=report.applied,
        skipped=report.skipped,
        failed=report.failed,
    )


@app.post(
    "/api/send",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={500: {"model": ErrorResponse, "description": "Store unavailable"}},
)
async def send_message(
    request: Request,
    body: SendMessageRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> SendMessageResponse:
    """
    Store one message typed in the UI.

    Returns 201 with the stored message, or 200 when a message with the
    same external_id is already stored.
    """
    try:
        report = ingest_outgoing(
            db,
            conversation_id=body.conversation_id,
            body=body.body,
            direction=body.direction,
            external_id=body.external_id,
        )
    except StoreUnavailable as e:
        logger.error(f"Send failed: {e}")
        log_ingest_data(request, source="send", intents=1, failed=1)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send message"
        )

    outcome = report.outcomes[0]
    log_ingest_data(request, source="send", intents=1, applied=report.applied)

    if outcome.record is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Message id conflicts with a concurrent write"
        )

    if not outcome.applied:
        response.status_code = status.HTTP_200_OK

    background_tasks.add_task(publish_events, report.events)
    return SendMessageResponse(
        success=True,
        applied=outcome.applied,
        message=MessageResponse.model_validate(outcome.record),
    )


# =============================================================================
# Read Routes
# =============================================================================

@app.get("/api/chats", response_model=list[ConversationViewResponse])
def list_chats(db: Session = Depends(get_db)) -> list[ConversationViewResponse]:
    """All conversations, most recently active first."""
    try:
        views = list_conversation_views(db)
    except StoreUnavailable:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch chats")
    return [ConversationViewResponse.model_validate(view, from_attributes=True) for view in views]


@app.get("/api/chats/{conversation_id}", response_model=list[MessageResponse])
def get_chat_messages(conversation_id: str, db: Session = Depends(get_db)) -> list[MessageResponse]:
    """Messages of one conversation, oldest first."""
    try:
        messages = list_conversation_messages(db, conversation_id)
    except StoreUnavailable:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch messages")
    return [MessageResponse.model_validate(message) for message in messages]


@app.post("/api/chats/{conversation_id}/read", response_model=MarkReadResponse)
def mark_chat_read(
    conversation_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> MarkReadResponse:
    """Mark every incoming message of the conversation as read."""
    try:
        count, event = mark_conversation_read(db, conversation_id)
    except StoreUnavailable:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to mark messages as read"
        )
    background_tasks.add_task(publish_events, [event])
    return MarkReadResponse(success=True, updated=count)


@app.get("/api/contacts", response_model=list[ContactResponse])
def get_contacts(db: Session = Depends(get_db)) -> list[ContactResponse]:
    """Contacts, most recently seen first."""
    try:
        contacts = list_contacts(db)
    except StoreUnavailable:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch contacts")
    return [ContactResponse.model_validate(contact) for contact in contacts]


@app.post("/api/contacts", response_model=ContactResponse)
def save_contact(body: ContactRequest, db: Session = Depends(get_db)) -> ContactResponse:
    """Create or update a contact profile."""
    try:
        contact = upsert_contact(db, body.conversation_id, {
            "display_name": body.display_name,
            "phone": body.phone,
            "avatar_ref": body.avatar_ref,
            "last_seen_at": utcnow(),
        })
    except StoreUnavailable:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create/update contact"
        )
    return ContactResponse.model_validate(contact)


# =============================================================================
# Stats / Metrics Routes
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
def get_statistics(db: Session = Depends(get_db)) -> StatsResponse:
    """Message and contact totals with per-direction and per-state counts."""
    try:
        stats = get_stats(db)
    except StoreUnavailable:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to compute stats")
    return StatsResponse(**stats)


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Realtime
# =============================================================================

@app.websocket("/ws")
async def realtime(websocket: WebSocket) -> None:
    """Push message-created / message-status-changed events to the client."""
    await stream_events(websocket)
