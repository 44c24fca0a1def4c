"""
FastAPI application for the drop notifier.

This application provides:
1. The Telegram webhook (/webhooks/telegram)
2. Drop publication, which fans out to subscribers (/drops/{drop_id}/publish)
3. Store deep links for sharing (/stores/{slug}/subscribe-link)

Run with:
    uvicorn api.main:create_app --factory --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from fanout.dispatcher import FanoutDispatcher, FanoutOutcome
from shared.channels import NotificationChannels, TelegramChannel
from shared.config import Settings
from shared.data_store import DataStore
from shared.errors import NotFoundError, ParseError, PersistenceError
from shared.templates import deep_link_url
from subscriptions.commands import parse_webhook
from subscriptions.service import HandleOutcome, SubscriptionService, WebhookAck

logger = logging.getLogger("drop_api")

LOG_FORMAT = "%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s"


def build_channels(settings: Settings) -> NotificationChannels:
    """Channels for every supported platform, configured from settings."""
    telegram = TelegramChannel(
        bot_token=settings.telegram_bot_token,
        api_base=settings.telegram_api_base,
        timeout_seconds=settings.http_timeout_seconds,
    )
    if not telegram.is_configured:
        logger.warning("Telegram bot token not configured; sends will fail")
    return NotificationChannels(telegram)


def create_app(
    settings: Optional[Settings] = None,
    data_store: Optional[DataStore] = None,
    channels: Optional[NotificationChannels] = None,
) -> FastAPI:
    """
    Build the application and wire its collaborators.

    Everything the routes need lives on `app.state`; nothing is shared
    between app instances.
    """
    settings = settings or Settings()
    data_store = data_store or DataStore(data_dir=settings.data_dir)
    channels = channels or build_channels(settings)

    logging.basicConfig(
        level=settings.log_level,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting drop notifier API")
        yield
        await channels.aclose()
        logger.info("Shutting down")

    app = FastAPI(
        title="Drop Notifier",
        description="""
    Subscribe chat users to stores and broadcast product drops to them.

    ## Endpoints

    - `/webhooks/telegram` - Telegram bot webhook (subscribe / unsubscribe / help)
    - `/drops/{drop_id}/publish` - Publish a drop to every subscriber of its store
    - `/stores/{slug}/subscribe-link` - Deep link that subscribes whoever opens it
    """,
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.data_store = data_store
    app.state.channels = channels
    app.state.subscription_service = SubscriptionService(
        stores=data_store,
        ledger=data_store,
        channels=channels,
    )
    app.state.dispatcher = FanoutDispatcher(
        stores=data_store,
        ledger=data_store,
        drops=data_store,
        channels=channels,
        max_concurrency=settings.fanout_max_concurrency,
        timeout_seconds=settings.fanout_timeout_seconds,
        prune_invalid_recipients=settings.prune_invalid_recipients,
    )

    app.include_router(router)
    return app


# =============================================================================
# Dependencies
# =============================================================================

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_data_store(request: Request) -> DataStore:
    return request.app.state.data_store


def get_subscription_service(request: Request) -> SubscriptionService:
    return request.app.state.subscription_service


def get_dispatcher(request: Request) -> FanoutDispatcher:
    return request.app.state.dispatcher


# =============================================================================
# Routes
# =============================================================================

router = APIRouter()


@router.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "drop-notifier"}


@router.post("/webhooks/telegram", response_model=WebhookAck, tags=["Webhooks"])
async def telegram_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
    service: SubscriptionService = Depends(get_subscription_service),
    secret_token: Optional[str] = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
) -> WebhookAck:
    """
    Receive a Telegram update.

    The update is parsed here and acknowledged right away; the ledger change
    and the reply to the sender run as a background task once the response
    is on its way. Internal failures never change the response.
    """
    if settings.webhook_secret and not hmac.compare_digest(secret_token or "", settings.webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    body = await request.body()
    try:
        parsed = parse_webhook(body)
    except ParseError as e:
        logger.info(f"Ignoring unparseable update: {e}")
        return WebhookAck(ok=False, outcome=HandleOutcome.IGNORED)

    background_tasks.add_task(service.handle_update, parsed)
    return WebhookAck(ok=True, intent=parsed.intent.kind)


@router.post("/drops/{drop_id}/publish", response_model=FanoutOutcome, tags=["Drops"])
async def publish_drop(
    drop_id: str,
    dispatcher: FanoutDispatcher = Depends(get_dispatcher),
):
    """
    Publish a drop: notify every subscriber of its store, then mark it published.

    Individual delivery failures are reported in the body, not as an error
    status. If the drop, its store or the subscriber list cannot be read,
    nothing is sent and the response is 503.
    """
    try:
        outcome = await dispatcher.publish_drop(drop_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if not outcome.ok:
        return JSONResponse(status_code=503, content=outcome.model_dump(mode="json"))
    return outcome


@router.get("/stores/{slug}/subscribe-link", tags=["Stores"])
def subscribe_link(
    slug: str,
    settings: Settings = Depends(get_settings),
    data_store: DataStore = Depends(get_data_store),
):
    """Deep link that subscribes whoever opens it to this store."""
    try:
        store = data_store.find_store_by_slug(slug)
    except PersistenceError as e:
        logger.error(f"Store lookup failed for {slug}: {e}")
        raise HTTPException(status_code=503, detail="Store directory unavailable")
    if not store:
        raise HTTPException(status_code=404, detail=f"Store not found: {slug}")
    try:
        url = deep_link_url(settings.telegram_bot_username, store.slug)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"store": store.slug, "platform": "telegram", "url": url}
