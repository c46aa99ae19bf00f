from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .blocking import to_thread
from .config import allowed_origins, reload_settings, settings
from .content import Devotional, fetch_devotional
from .delivery import PushSender, build_sender
from .dispatcher import BroadcastSummary, Dispatcher
from .errors import AlreadyExists, DeliveryError, DevotionalPushError, InvalidSubscription
from .logging_setup import RequestLogMiddleware, init_logging, log_context, push_service
from .metrics import LAT, REQS, router as metrics_router
from .payload import NotificationPayload, build_payload
from .scheduler import run_periodic, state as broadcast_state
from .store import RegisterResult, RemoveResult, SubscriptionRegistry
from .subscription import SubscriptionRecord, parse_subscription

logger = logging.getLogger(__name__)


class Health(BaseModel):
    status: str
    time: str


def get_registry(request: Request) -> SubscriptionRegistry:
    return request.app.state.registry


def get_sender(request: Request) -> PushSender:
    return request.app.state.sender


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def _fetch_devotional_sync() -> Devotional:
    return fetch_devotional(
        settings.DEVOTIONAL_SOURCE_URL,
        timeout=settings.CONTENT_TIMEOUT_SECONDS,
        default_title=settings.DEVOTIONAL_DEFAULT_TITLE,
    )


async def broadcast_daily(dispatcher: Dispatcher) -> BroadcastSummary:
    devotional = await to_thread(_fetch_devotional_sync)
    payload = build_payload(
        devotional,
        icon=settings.NOTIFICATION_ICON,
        url=settings.NOTIFICATION_URL,
        max_chars=settings.NOTIFICATION_BODY_MAX_CHARS,
    )
    summary = await dispatcher.broadcast(payload)
    broadcast_state.last_sent = summary.sent
    broadcast_state.last_failed = summary.failed
    return summary


async def _send_welcome(sender: PushSender, record: SubscriptionRecord) -> None:
    payload = NotificationPayload(
        title=settings.WELCOME_TITLE,
        body=settings.WELCOME_BODY,
        icon=settings.NOTIFICATION_ICON,
        url=settings.NOTIFICATION_URL,
    )
    try:
        await to_thread(sender.send, record, payload.serialize())
    except DeliveryError as exc:
        logger.warning(
            "welcome notification failed for %s: %s", record.endpoint[:60], exc.reason
        )
    except Exception:  # noqa: BLE001
        logger.exception("unexpected error sending welcome to %s", record.endpoint[:60])


@asynccontextmanager
async def lifespan(app: FastAPI):
    reload_settings()
    registry = SubscriptionRegistry(settings.SUBSCRIBERS_DB_PATH)
    registry.init()
    sender = build_sender(settings)
    dispatcher = Dispatcher(registry, sender, settings.BROADCAST_CONCURRENCY)
    app.state.registry = registry
    app.state.sender = sender
    app.state.dispatcher = dispatcher
    logger.info("active subscriptions: %d", registry.count())

    tasks: list[asyncio.Task[None]] = []
    if settings.BROADCAST_ENABLED:
        async def _scheduled() -> None:
            await broadcast_daily(dispatcher)

        tasks.append(
            asyncio.create_task(
                run_periodic(
                    _scheduled,
                    settings.BROADCAST_INTERVAL_SECONDS,
                    settings.BROADCAST_JITTER_SECONDS,
                    settings.BROADCAST_BACKOFF_MAX_SECONDS,
                )
            )
        )
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await task
        registry.dispose()


init_logging(settings.LOG_LEVEL)

app = FastAPI(title="Palabra del Día push", version=__version__, lifespan=lifespan)
app.add_middleware(RequestLogMiddleware)
app.include_router(metrics_router())
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins() or ["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.middleware("http")
async def _metrics(request: Request, call_next):
    start = time.time()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        REQS.labels(request.method, request.url.path, str(status_code)).inc()
        LAT.labels(request.method, request.url.path).observe(time.time() - start)


@app.exception_handler(DevotionalPushError)
async def _domain_error(request: Request, exc: DevotionalPushError):
    return JSONResponse(
        {"success": False, "error": exc.code, "detail": exc.detail},
        status_code=exc.status_code,
    )


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        {"success": False, "error": "InternalError", "detail": "internal server error"},
        status_code=500,
    )


@app.get("/")
def status():
    return {
        "status": "online",
        "service": "Palabra del Día Backend",
        "version": __version__,
        "allowedOrigins": allowed_origins(),
    }


@app.get("/health", response_model=Health)
def health():
    return Health(status="ok", time=datetime.utcnow().isoformat())


@app.post("/api/subscribe", status_code=201)
async def subscribe(
    request: Request,
    registry: SubscriptionRegistry = Depends(get_registry),
    sender: PushSender = Depends(get_sender),
):
    try:
        raw = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidSubscription("body must be JSON") from exc

    record = parse_subscription(raw)
    log_context(request, push_service=push_service(record.endpoint))
    result = await to_thread(registry.register, record)
    log_context(request, registration=result.value)
    if result is RegisterResult.ALREADY_EXISTS:
        raise AlreadyExists("subscription already registered")

    if settings.SEND_WELCOME_NOTIFICATION:
        await _send_welcome(sender, record)
    return {"success": True, "message": "subscription saved"}


@app.post("/api/unsubscribe")
async def unsubscribe(
    request: Request,
    registry: SubscriptionRegistry = Depends(get_registry),
):
    try:
        raw = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidSubscription("body must be JSON") from exc
    if isinstance(raw, dict) and isinstance(raw.get("subscription"), dict):
        raw = raw["subscription"]
    endpoint = raw.get("endpoint") if isinstance(raw, dict) else None
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise InvalidSubscription("endpoint is required")

    result = await to_thread(registry.remove, endpoint.strip())
    log_context(request, push_service=push_service(endpoint), removal=result.value)
    return {"success": True, "removed": result is RemoveResult.REMOVED}


@app.get("/devotional", response_model=Devotional)
async def devotional():
    return await to_thread(_fetch_devotional_sync)


@app.get("/send-daily", response_model=BroadcastSummary)
async def send_daily(request: Request, dispatcher: Dispatcher = Depends(get_dispatcher)):
    summary = await broadcast_daily(dispatcher)
    log_context(
        request,
        sent=summary.sent,
        failed=summary.failed,
        pruned=sum(1 for d in summary.details if d.pruned),
    )
    return summary


@app.get("/broadcast/status")
def broadcast_status(registry: SubscriptionRegistry = Depends(get_registry)):
    return {
        "enabled": settings.BROADCAST_ENABLED,
        "running": broadcast_state.running,
        "last_started": broadcast_state.last_started,
        "last_finished": broadcast_state.last_finished,
        "last_error": broadcast_state.last_error,
        "last_sent": broadcast_state.last_sent,
        "last_failed": broadcast_state.last_failed,
        "total_runs": broadcast_state.total_runs,
        "total_errors": broadcast_state.total_errors,
        "interval": settings.BROADCAST_INTERVAL_SECONDS,
        "jitter": settings.BROADCAST_JITTER_SECONDS,
        "backoff_max": settings.BROADCAST_BACKOFF_MAX_SECONDS,
        "subscriptions": registry.count(),
    }
