import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from chatpanel.config import Settings, get_settings
from chatpanel.errors import AuthorizationError, GatewayError, InvalidSendRequest, PersistenceError
from chatpanel.gateway import GraphApiClient, MessagingGateway
from chatpanel.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from chatpanel.metrics import get_metrics, get_metrics_content_type, record_webhook_event
from chatpanel.notifier import ConnectionManager
from chatpanel.outbound import SendCoordinator, TemplateSend, TextSend
from chatpanel.pipeline import WebhookPipeline
from chatpanel.repositories import ChatRepository, MessageRepository
from chatpanel.schemas import (
    ChatResponse,
    ChatsListResponse,
    ErrorResponse,
    GatewayErrorResponse,
    HealthResponse,
    MarkReadResponse,
    MessageResponse,
    MessagesListResponse,
    PinRequest,
    PinResponse,
    SendRequest,
    SendResponse,
    TemplateRefreshResponse,
    TemplateResponse,
    TemplatesListResponse,
    WebhookResponse,
)
from chatpanel.storage import Database
from chatpanel.templates import TemplateCache, run_periodic_refresh
from chatpanel.utils import verify_api_key, verify_hub_signature


# Setup structured JSON logging
setup_logging(get_settings().LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: open the database handle, create tables, open the gateway
      client and start the template refresher
    - Shutdown: stop the refresher, close the gateway client, release the pool
    """
    settings = get_settings()
    database = Database(settings.DATABASE_URL)
    await database.create_all()
    gateway = GraphApiClient(settings)

    app.state.database = database
    app.state.gateway = gateway
    app.state.notifier = ConnectionManager()

    refresher = None
    if settings.TEMPLATE_REFRESH_SECONDS > 0 and settings.ACCESS_TOKEN and settings.WABA_ID:
        refresher = asyncio.create_task(
            run_periodic_refresh(TemplateCache(database, gateway), settings.TEMPLATE_REFRESH_SECONDS)
        )
    try:
        yield
    finally:
        if refresher is not None:
            refresher.cancel()
            with suppress(asyncio.CancelledError):
                await refresher
        await gateway.close()
        await database.dispose()


app = FastAPI(
    title="Chat Panel API",
    description="WhatsApp Cloud API webhook ingestion and live chat panel backend",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_database(request: Request) -> Database:
    return request.app.state.database


def get_gateway(request: Request) -> MessagingGateway:
    return request.app.state.gateway


def get_notifier(request: Request) -> ConnectionManager:
    return request.app.state.notifier


def get_template_cache(
    database: Database = Depends(get_database),
    gateway: MessagingGateway = Depends(get_gateway),
) -> TemplateCache:
    return TemplateCache(database, gateway)


def get_pipeline(
    database: Database = Depends(get_database),
    notifier: ConnectionManager = Depends(get_notifier),
) -> WebhookPipeline:
    return WebhookPipeline(database, notifier)


def get_coordinator(
    database: Database = Depends(get_database),
    gateway: MessagingGateway = Depends(get_gateway),
    templates: TemplateCache = Depends(get_template_cache),
    notifier: ConnectionManager = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> SendCoordinator:
    return SendCoordinator(
        database,
        gateway,
        templates,
        notifier,
        default_language=settings.DEFAULT_TEMPLATE_LANGUAGE,
    )


def require_api_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject panel calls without the configured API key, before any state is touched."""
    if not verify_api_key(x_api_key, settings.PANEL_API_KEY):
        raise AuthorizationError("invalid or missing API key")


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    logger.warning(f"Authorization failed: {exc}")
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": str(exc)})


@app.exception_handler(InvalidSendRequest)
async def invalid_send_handler(request: Request, exc: InvalidSendRequest) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": str(exc), "code": exc.code, "retryable": exc.retryable},
    )


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    if exc.wa_message_id is not None:
        # Sent through the gateway but not recorded locally
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc), "wa_message_id": exc.wa_message_id, "sent": True},
        )
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, database: Database = Depends(get_database)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, 503 otherwise.
    """
    if not await database.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def webhook_verify(
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
    settings: Settings = Depends(get_settings),
) -> str:
    """
    Gateway subscription handshake: echo hub.challenge when the verify
    token matches, 403 otherwise.
    """
    if hub_mode == "subscribe" and settings.VERIFY_TOKEN and hub_verify_token == settings.VERIFY_TOKEN:
        logger.info("Webhook verification successful")
        return hub_challenge or ""

    logger.warning(f"Webhook verification failed: mode={hub_mode}")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification failed")


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid signature"}},
)
async def webhook(
    request: Request,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    settings: Settings = Depends(get_settings),
    pipeline: WebhookPipeline = Depends(get_pipeline),
) -> WebhookResponse:
    """
    Ingest one gateway delivery.

    - Verifies X-Hub-Signature-256 when APP_SECRET is configured (401 on mismatch)
    - Once authenticated, always acknowledges with 200 so the gateway does
      not redeliver; processing failures are logged, not returned
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    if settings.APP_SECRET and not verify_hub_signature(raw_body, x_hub_signature_256, settings.APP_SECRET):
        record_webhook_event("invalid_signature")
        log_webhook_data(request, result="invalid_signature")
        raise AuthorizationError("invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.error(f"Webhook body is not valid JSON: {e}")
        log_webhook_data(request, result="invalid_json")
        return WebhookResponse(status="ok")

    try:
        report = await pipeline.process(payload)
    except PersistenceError as e:
        logger.error(f"Webhook delivery not fully processed: {e}")
        log_webhook_data(request, result="error")
        return WebhookResponse(status="ok")

    log_webhook_data(request, result="ok", **report.as_log_data())
    return WebhookResponse(status="ok")


# =============================================================================
# Chat Routes
# =============================================================================

@app.get("/chats", response_model=ChatsListResponse, dependencies=[Depends(require_api_key)])
async def list_chats(database: Database = Depends(get_database)) -> ChatsListResponse:
    """
    List chats, pinned first, then most recent first.
    has_unread is true when the chat has at least one unread inbound message.
    """
    async with database.session() as session:
        chats = await ChatRepository(session).list_chats()

    logger.info(f"GET /chats: returned {len(chats)} chats")
    return ChatsListResponse(
        data=[ChatResponse.model_validate(chat) for chat in chats],
        total=len(chats),
    )


@app.get("/chats/{phone}/messages", response_model=MessagesListResponse, dependencies=[Depends(require_api_key)])
async def list_chat_messages(phone: str, database: Database = Depends(get_database)) -> MessagesListResponse:
    """
    Messages of one chat ordered by timestamp ASC, id ASC (deterministic).
    """
    async with database.session() as session:
        messages = await MessageRepository(session).list_by_chat(phone)

    logger.info(f"GET /chats/{phone}/messages: returned {len(messages)} messages")
    return MessagesListResponse(
        phone=phone,
        data=[MessageResponse.model_validate(m) for m in messages],
        total=len(messages),
    )


@app.post("/chats/{phone}/read", response_model=MarkReadResponse, dependencies=[Depends(require_api_key)])
async def mark_chat_read(
    phone: str,
    database: Database = Depends(get_database),
    notifier: ConnectionManager = Depends(get_notifier),
) -> MarkReadResponse:
    """Mark every inbound message of the chat as read; repeat calls report 0."""
    async with database.session() as session:
        updated = await ChatRepository(session).mark_read(phone)

    if updated:
        await notifier.chat_updated(phone)
    return MarkReadResponse(phone=phone, updated=updated)


@app.post(
    "/chats/{phone}/pin",
    response_model=PinResponse,
    responses={404: {"model": ErrorResponse}},
    dependencies=[Depends(require_api_key)],
)
async def pin_chat(
    phone: str,
    body: PinRequest,
    database: Database = Depends(get_database),
    notifier: ConnectionManager = Depends(get_notifier),
) -> PinResponse:
    async with database.session() as session:
        found = await ChatRepository(session).set_pinned(phone, body.pinned)

    if not found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="chat not found")

    await notifier.chat_updated(phone)
    return PinResponse(phone=phone, pinned=body.pinned)


# =============================================================================
# Outbound Routes
# =============================================================================

@app.post(
    "/send",
    response_model=SendResponse,
    responses={
        422: {"model": ErrorResponse, "description": "Invalid payload"},
        502: {"model": GatewayErrorResponse, "description": "Gateway rejected the send"},
    },
    dependencies=[Depends(require_api_key)],
)
async def send_message(
    body: SendRequest,
    coordinator: SendCoordinator = Depends(get_coordinator),
) -> SendResponse:
    """
    Send a text or template message.

    The message is recorded only after the gateway accepted it; a gateway
    failure returns 502 with the gateway's code and whether a retry may help.
    """
    logger.info(f"POST /send: to={body.to}, type={body.type}")

    if body.type == "template":
        if body.template is None:
            raise InvalidSendRequest("Template messages require a template name")
        request = TemplateSend(
            name=body.template.name,
            language=body.template.language,
            components=body.template.components,
        )
    else:
        request = TextSend(body=body.text or "")

    result = await coordinator.send(body.to, request)
    return SendResponse(
        message_id=result.message_id,
        wa_message_id=result.wa_message_id,
        timestamp=result.timestamp,
        template_language=result.template_language,
    )


# =============================================================================
# Template Routes
# =============================================================================

@app.get("/templates", response_model=TemplatesListResponse, dependencies=[Depends(require_api_key)])
async def list_templates(templates: TemplateCache = Depends(get_template_cache)) -> TemplatesListResponse:
    entries = await templates.list_templates()
    return TemplatesListResponse(
        data=[TemplateResponse.model_validate(t) for t in entries],
        total=len(entries),
    )


@app.post("/templates/refresh", response_model=TemplateRefreshResponse, dependencies=[Depends(require_api_key)])
async def refresh_templates(templates: TemplateCache = Depends(get_template_cache)) -> TemplateRefreshResponse:
    count = await templates.refresh()
    return TemplateRefreshResponse(count=count)


# =============================================================================
# Media Route
# =============================================================================

@app.get("/media/{media_ref}", dependencies=[Depends(require_api_key)])
async def media_proxy(media_ref: str, gateway: MessagingGateway = Depends(get_gateway)) -> StreamingResponse:
    """
    Stream a media object through the API.
    Only the reference is stored locally; bytes are never persisted.
    """
    stream = await gateway.stream_media(media_ref)
    headers = {"Cache-Control": "private, max-age=300"}
    if stream.content_length:
        headers["Content-Length"] = stream.content_length
    return StreamingResponse(stream.chunks, media_type=stream.mime_type, headers=headers)


# =============================================================================
# Live Updates
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, key: str | None = Query(None)) -> None:
    """
    Push channel for the panel. Sends {"type": "chat_updated", "phone": ...}
    whenever a chat changes; clients refetch the chat list.
    """
    if not verify_api_key(key, get_settings().PANEL_API_KEY):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    manager: ConnectionManager = websocket.app.state.notifier
    await manager.connect(websocket)
    try:
        while True:
            # Clients only listen; incoming frames are keep-alives
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
