"""
Kitchen Orders - HTTP API
FastAPI backend for order submission, the manager dashboard and live updates
"""

import hmac
import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from errors import AuthError, ConfigError, OrderingError, UpstreamError, ValidationError
from notifier import EventNotifier, EventType, event_stream
from orders import OrderRepository
from routing import ResolvedRoute, Route, allowed_methods, resolve_route
from storage import DocumentStore, create_engine, create_session_factory, init_db

# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ]
)
logger = structlog.get_logger()

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    settings = get_settings()
    app.state.engine = None
    app.state.store = None
    app.state.notifier = None

    if settings.database_url:
        engine = create_engine(settings.database_url)
        await init_db(engine)
        sessions = create_session_factory(engine)
        app.state.engine = engine
        app.state.store = DocumentStore(
            sessions,
            settings.store_key,
            settings.document_ttl_seconds,
            completed_cap=settings.completed_orders_cap,
        )
        app.state.notifier = EventNotifier(
            sessions,
            settings.store_key,
            max_events=settings.events_max,
            ttl_seconds=settings.events_ttl_seconds,
        )
    else:
        logger.warning("database_not_configured")

    logger.info("application_startup", version=VERSION)
    yield
    if app.state.engine is not None:
        await app.state.engine.dispose()
    logger.info("application_shutdown")


app = FastAPI(
    title="Kitchen Orders API",
    description="Order submission, kitchen dashboard and order tracking",
    version=VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Cache-Control", get_settings().manager_header],
    max_age=600,
)


# Security middleware
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# Dependencies

def get_store(request: Request) -> DocumentStore:
    store = request.app.state.store
    if store is None:
        raise ConfigError("Order storage is not configured")
    return store


def get_notifier(request: Request) -> EventNotifier:
    notifier = request.app.state.notifier
    if notifier is None:
        raise ConfigError("Order storage is not configured")
    return notifier


def require_manager(request: Request, settings: Settings):
    """Compare the manager header against the configured shared secret"""
    if not settings.manager_secret:
        raise ConfigError("Manager access is not configured")
    supplied = request.headers.get(settings.manager_header)
    if supplied is None or not hmac.compare_digest(supplied.encode(), settings.manager_secret.encode()):
        logger.warning(
            "manager_auth_failed",
            ip=request.client.host if request.client else None,
            path=request.url.path,
        )
        raise AuthError("Unauthorized")


class RequestContext:
    """What a route handler needs, resolved lazily so config errors surface per request"""

    def __init__(self, request: Request, settings: Settings, resolved: ResolvedRoute):
        self.request = request
        self.settings = settings
        self.resolved = resolved

    @property
    def repo(self) -> OrderRepository:
        return OrderRepository.from_settings(get_store(self.request), self.settings)

    @property
    def notifier(self) -> EventNotifier:
        return get_notifier(self.request)

    def authorize(self):
        require_manager(self.request, self.settings)

    def order_id(self) -> str:
        if not self.resolved.order_id:
            raise ValidationError("Order id is required")
        return self.resolved.order_id

    async def json(self) -> Any:
        body = await self.request.body()
        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError:
            raise ValidationError("Request body must be valid JSON")


def query_int(request: Request, name: str, default: int, low: int, high: int) -> int:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")
    if not low <= value <= high:
        raise ValidationError(f"{name} must be between {low} and {high}")
    return value


# Order route handlers

async def list_active_orders(ctx: RequestContext):
    orders = await ctx.repo.list_active()
    return JSONResponse([o.to_json() for o in orders])


async def create_or_clear_orders(ctx: RequestContext):
    body = await ctx.json()

    # An empty list is the dashboard's "clear all" action
    if isinstance(body, list):
        ctx.authorize()
        if body:
            raise ValidationError("Send an empty list to clear orders")
        count = await ctx.repo.clear_active()
        await ctx.notifier.append(EventType.ORDERS_CLEARED, {"count": count})
        return JSONResponse({"success": True, "message": "All orders cleared", "clearedCount": count})

    if not isinstance(body, dict):
        raise ValidationError("Order must be a JSON object")
    order = await ctx.repo.create(body)
    await ctx.notifier.append(EventType.NEW_ORDER, {"order": order.to_json()})
    return JSONResponse(
        {"success": True, "message": "Order created", "order": order.to_json()},
        status_code=status.HTTP_201_CREATED,
    )


async def get_kitchen_status(ctx: RequestContext):
    return JSONResponse({"isOpen": await ctx.repo.kitchen_open()})


async def set_kitchen_status(ctx: RequestContext):
    ctx.authorize()
    body = await ctx.json()
    is_open = body.get("isOpen") if isinstance(body, dict) else None
    if not isinstance(is_open, bool):
        raise ValidationError("isOpen must be true or false")

    result = await ctx.repo.set_kitchen_open(is_open)
    if result.changed:
        await ctx.notifier.append(
            EventType.KITCHEN_STATUS_CHANGED,
            {"isOpen": result.is_open, "previousStatus": result.previous},
        )
    return JSONResponse({
        "success": True,
        "message": "Kitchen status updated",
        "isOpen": result.is_open,
        "changed": result.changed,
    })


async def list_recent_orders(ctx: RequestContext):
    limit = query_int(ctx.request, "limit", ctx.settings.recent_orders_limit, 1, 50)
    return JSONResponse(await ctx.repo.list_recent(limit))


async def update_order(ctx: RequestContext):
    ctx.authorize()
    order_id = ctx.order_id()
    body = await ctx.json()
    if not isinstance(body, dict):
        raise ValidationError("Status update must be a JSON object")

    change = await ctx.repo.update_status(order_id, body)
    order = change.order.to_json()
    await ctx.notifier.append(
        EventType.ORDER_STATUS_UPDATED,
        {
            "orderId": order_id,
            "previousStatus": change.previous_status.value,
            "newStatus": change.order.status.value,
            "order": order,
        },
    )
    return JSONResponse({"success": True, "message": "Order updated", "order": order})


async def delete_order(ctx: RequestContext):
    ctx.authorize()
    order_id = ctx.order_id()
    order = await ctx.repo.delete(order_id)
    await ctx.notifier.append(EventType.ORDER_DELETED, {"orderId": order_id, "order": order.to_json()})
    return JSONResponse({"success": True, "message": f"Order {order_id} deleted", "order": order.to_json()})


HANDLERS = {
    (Route.ORDERS, "GET"): list_active_orders,
    (Route.ORDERS, "POST"): create_or_clear_orders,
    (Route.KITCHEN_STATUS, "GET"): get_kitchen_status,
    (Route.KITCHEN_STATUS, "POST"): set_kitchen_status,
    (Route.COMPLETED_ORDERS, "GET"): list_recent_orders,
    (Route.UPDATE_ORDER, "PUT"): update_order,
    (Route.UPDATE_ORDER, "POST"): update_order,
    (Route.DELETE_ORDER, "DELETE"): delete_order,
}


# API Routes

@app.api_route("/api/orders", methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"])
@app.api_route("/orders", methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"], include_in_schema=False)
async def orders_endpoint(request: Request, settings: Settings = Depends(get_settings)):
    """Single order resource, disambiguated by query flag"""
    if request.method == "OPTIONS":
        return Response(status_code=status.HTTP_200_OK)

    resolved = resolve_route(request.query_params)
    methods = allowed_methods(resolved.route)
    if request.method not in methods:
        return JSONResponse(
            status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
            content={"error": "Method not allowed"},
            headers={"Allow": ", ".join(methods + ("OPTIONS",))},
        )

    handler = HANDLERS[(resolved.route, request.method)]
    return await handler(RequestContext(request, settings, resolved))


@app.get("/api/events")
@app.get("/events", include_in_schema=False)
async def events_endpoint(request: Request, settings: Settings = Depends(get_settings)):
    """
    Live order events.

    Default is a Server-Sent Events stream that closes before the host's
    request timeout; ``?poll=true`` drains once and returns JSON instead.
    """
    notifier = get_notifier(request)
    limit = query_int(request, "limit", 10, 1, settings.events_max)

    if request.query_params.get("poll", "").lower() in ("1", "true", "yes"):
        events = await notifier.drain(limit)
        return {"events": [e.to_json() for e in events]}

    logger.info("sse_client_connected", ip=request.client.host if request.client else None)
    return StreamingResponse(
        event_stream(
            notifier,
            is_disconnected=request.is_disconnected,
            poll_seconds=settings.stream_poll_seconds,
            heartbeat_seconds=settings.stream_heartbeat_seconds,
            max_seconds=settings.stream_max_seconds,
            batch_size=limit,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/health")
async def health_check(request: Request, settings: Settings = Depends(get_settings)):
    """Health check endpoint for monitoring"""
    store = get_store(request)
    try:
        await store.ping()
        orders = await OrderRepository.from_settings(store, settings).list_active()
    except UpstreamError as e:
        logger.error("health_check_failed", error=e.message)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "error": e.message},
        )

    return {
        "status": "healthy",
        "database": "connected",
        "active_orders": len(orders),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# Error handlers

@app.exception_handler(OrderingError)
async def ordering_error_handler(request: Request, exc: OrderingError):
    if exc.status_code >= 500:
        logger.error("request_failed", error=exc.message, path=request.url.path)
    else:
        logger.info("request_rejected", error=exc.message, status=exc.status_code, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error. Please try again later."}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", get_settings().port)),
        workers=1,
        reload=False,
        log_level="info"
    )
