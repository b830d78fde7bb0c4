import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from twilio.twiml.messaging_response import MessagingResponse

from spenly_whatsapp.config import Settings, get_settings
from spenly_whatsapp.link_tokens import issue_link_token
from spenly_whatsapp.logging_utils import setup_logging, RequestLoggingMiddleware, bind_message_sid, log_webhook_data
from spenly_whatsapp.messenger import TwilioMessenger, build_messenger
from spenly_whatsapp.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_link_event,
    record_webhook_outcome,
)
from spenly_whatsapp.router import ConversationRouter, IntentKind
from spenly_whatsapp.schemas import (
    ConfirmResponse,
    ErrorResponse,
    HealthResponse,
    InboundWebhookForm,
    LinkStatusResponse,
    LinkTokenRequest,
    LinkTokenResponse,
    MessageResponse,
    TransactionResponse,
    TransactionsListResponse,
)
from spenly_whatsapp.storage import (
    check_db_health,
    create_db_engine,
    create_session_factory,
    get_db,
    init_db,
)
from spenly_whatsapp.transactions import DEFAULT_LIST_LIMIT, confirm_transaction, list_pending_transactions
from spenly_whatsapp.user_mappings import delete_mappings_for_owner, get_mapping_by_owner
from spenly_whatsapp.utils import isoformat_utc, verify_webhook_signature

logger = logging.getLogger(__name__)

OWNER_HEADER = "X-Apple-User-ID"
SIGNATURE_HEADER = "X-Twilio-Signature"


# =============================================================================
# Dependencies
# =============================================================================

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_messenger(request: Request) -> Optional[TwilioMessenger]:
    return request.app.state.messenger


def require_owner_id(
    apple_user_id: Annotated[Optional[str], Query()] = None,
    header_user_id: Annotated[Optional[str], Header(alias=OWNER_HEADER)] = None,
) -> str:
    """Owner identity from the query string, falling back to the header."""
    owner_id = apple_user_id or header_user_id
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="apple_user_id is required"
        )
    return owner_id


def empty_twiml() -> Response:
    """Acknowledgement Twilio expects for every webhook call."""
    return Response(content=str(MessagingResponse()), media_type="text/xml")


def send_reply(messenger: Optional[TwilioMessenger], to_phone: str, text: str) -> bool:
    if messenger is None:
        logger.warning("Outbound messaging not configured; reply not sent")
        return False
    try:
        messenger.send_text(to_phone, text)
        return True
    except Exception as e:
        logger.error(f"Error sending reply: {e}")
        return False


# =============================================================================
# Application
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The database engine and the outbound messenger are created in the lifespan
    and shared through app.state; routes receive them via dependencies.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        engine = create_db_engine(settings.DATABASE_URL, settings.DB_CONNECT_TIMEOUT_SECONDS)
        init_db(engine)
        app.state.engine = engine
        app.state.session_factory = create_session_factory(engine)
        app.state.messenger = build_messenger(settings)
        if not settings.TWILIO_WEBHOOK_VERIFY_TOKEN:
            if settings.ALLOW_UNSIGNED_WEBHOOKS:
                logger.warning("Webhook signature verification disabled (ALLOW_UNSIGNED_WEBHOOKS)")
            else:
                logger.error("TWILIO_WEBHOOK_VERIFY_TOKEN not set; webhook requests will be rejected")
        yield
        # Shutdown
        engine.dispose()

    app = FastAPI(
        title="Spenly WhatsApp API",
        description="WhatsApp front-end for logging Spenly expenses",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestLoggingMiddleware)

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(
        request: Request,
        response: Response,
        settings: Settings = Depends(get_app_settings),
    ) -> HealthResponse:
        """
        Readiness probe - returns 200 only if:
        1. The webhook can authenticate requests (secret set, or unsigned mode opted into)
        2. DB is reachable and schema is applied

        Otherwise returns 503 (Service Unavailable).
        """
        if not settings.webhook_auth_ready:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="TWILIO_WEBHOOK_VERIFY_TOKEN not configured"
            )

        if not check_db_health(request.app.state.engine):
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Database not reachable or schema not applied"
            )

        return HealthResponse(status="ready")

    # =========================================================================
    # Link Token Routes
    # =========================================================================

    @app.post(
        "/api/whatsapp/link-token",
        response_model=LinkTokenResponse,
        responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    def create_link_token(
        payload: LinkTokenRequest,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
    ) -> LinkTokenResponse:
        """
        Issue a single-use token the user sends to the bot as link_<token>.
        Tokens expire after LINK_TOKEN_TTL_MINUTES (10 by default).
        """
        if not payload.apple_user_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="apple_user_id is required"
            )

        try:
            link_token = issue_link_token(
                db,
                payload.apple_user_id,
                ttl_minutes=settings.LINK_TOKEN_TTL_MINUTES,
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to create link token: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to create token: {e}"
            )

        record_link_event("issued")
        return LinkTokenResponse(
            token=link_token.token,
            expires_at=isoformat_utc(link_token.expires_at),
        )

    @app.get("/api/whatsapp/status", response_model=LinkStatusResponse)
    def link_status(
        owner_id: str = Depends(require_owner_id),
        db: Session = Depends(get_db),
    ) -> LinkStatusResponse:
        """Whether the app account has a linked WhatsApp number."""
        try:
            mapping = get_mapping_by_owner(db, owner_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to read link status: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to read link status: {e}"
            )

        if mapping is None:
            return LinkStatusResponse(linked=False)
        return LinkStatusResponse(
            linked=True,
            whatsapp_number=mapping.whatsapp_number,
            linked_at=isoformat_utc(mapping.updated_at),
        )

    @app.delete("/api/whatsapp/status", response_model=MessageResponse)
    def unlink(
        owner_id: str = Depends(require_owner_id),
        db: Session = Depends(get_db),
    ) -> MessageResponse:
        """Unlink every WhatsApp number bound to the app account."""
        try:
            removed = delete_mappings_for_owner(db, owner_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to unlink account: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to unlink account: {e}"
            )

        logger.info(f"Unlinked account, {removed} mapping(s) removed")
        return MessageResponse(message="Account unlinked successfully")

    # =========================================================================
    # Transaction Routes
    # =========================================================================

    @app.get("/api/whatsapp/transactions", response_model=TransactionsListResponse)
    def list_transactions(
        owner_id: str = Depends(require_owner_id),
        limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of transactions to return")] = DEFAULT_LIST_LIMIT,
        db: Session = Depends(get_db),
    ) -> TransactionsListResponse:
        """
        Pending transactions created over WhatsApp, newest first.
        """
        try:
            rows = list_pending_transactions(db, owner_id, limit=limit)
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch transactions: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to fetch transactions: {e}"
            )

        transactions = [TransactionResponse.from_orm_row(row) for row in rows]
        logger.info(f"GET /transactions: returned {len(transactions)} pending transactions")
        return TransactionsListResponse(transactions=transactions, count=len(transactions))

    @app.post(
        "/api/whatsapp/transactions/{transaction_id}/confirm",
        response_model=ConfirmResponse,
        responses={404: {"model": ErrorResponse}},
    )
    def confirm(
        transaction_id: int,
        owner_id: str = Depends(require_owner_id),
        db: Session = Depends(get_db),
    ) -> ConfirmResponse:
        """
        Mark a pending transaction as synced into the app.
        """
        try:
            confirmed = confirm_transaction(db, transaction_id, owner_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to confirm transaction: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to confirm transaction: {e}"
            )

        if not confirmed:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Transaction not found or already synced"
            )
        return ConfirmResponse(status="success")

    # =========================================================================
    # Webhook Route
    # =========================================================================

    @app.post(
        "/api/whatsapp/webhook",
        responses={
            200: {"content": {"text/xml": {}}, "description": "Empty TwiML acknowledgement"},
            400: {"model": ErrorResponse, "description": "Missing From"},
            401: {"model": ErrorResponse, "description": "Invalid signature"},
        },
    )
    async def webhook(
        request: Request,
        x_twilio_signature: Annotated[Optional[str], Header(alias=SIGNATURE_HEADER)] = None,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
        messenger: Optional[TwilioMessenger] = Depends(get_messenger),
    ) -> Response:
        """
        Handle an inbound WhatsApp message from Twilio.

        - Verifies X-Twilio-Signature (HMAC-SHA256 over URL + sorted form params)
        - Routes the message (media, help, link, transaction)
        - Sends the reply through the outbound messenger
        - Always acknowledges with an empty TwiML response once authenticated
        """
        form = await request.form()
        params = list(form.multi_items())

        if not settings.webhook_auth_ready:
            record_webhook_outcome("none", "unsigned_rejected")
            log_webhook_data(request, result="unsigned_rejected")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="webhook signing secret not configured"
            )

        url = settings.WEBHOOK_PUBLIC_URL or str(request.url)
        if not verify_webhook_signature(url, params, x_twilio_signature, settings.TWILIO_WEBHOOK_VERIFY_TOKEN):
            logger.error("Invalid webhook signature")
            record_webhook_outcome("none", "invalid_signature")
            log_webhook_data(request, result="invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid signature"
            )

        message = InboundWebhookForm.model_validate(dict(form))
        if not message.from_phone:
            record_webhook_outcome("none", "validation_error")
            log_webhook_data(request, message_sid=message.message_sid, result="validation_error")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing From field"
            )
        bind_message_sid(message.message_sid)

        # store and provider calls are blocking
        router = ConversationRouter(db, default_category=settings.DEFAULT_CATEGORY)
        reply = await run_in_threadpool(router.handle, message)
        if reply.intent is IntentKind.LINK:
            record_link_event(reply.result)

        await run_in_threadpool(send_reply, messenger, message.from_phone, reply.text)

        record_webhook_outcome(reply.intent.value, reply.result)
        log_webhook_data(
            request,
            message_sid=message.message_sid,
            intent=reply.intent.value,
            result=reply.result,
            from_phone=message.from_phone,
        )
        return empty_twiml()

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )


app = create_app()
