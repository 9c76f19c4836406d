"""
FastAPI Application Entry Point

Order Engine - server-owned order lifecycle and payment reconciliation.
Every terminal (cashier, kitchen, manager) talks to the same store and
receives every committed change in real time.

Endpoints:
    - WS   /ws?token=...: Bidirectional event channel (see services/realtime/gateway.py)
    - POST /api/orders: Create an order
    - GET  /api/orders: List orders (filters) / snapshot
    - GET  /api/orders/{id}: One order
    - POST /api/orders/{id}/items: Add items
    - DELETE /api/orders/{id}/items/{item_id}: Remove an item
    - PATCH /api/orders/{id}: Update contact/kitchen details
    - POST /api/orders/{id}/payments: Apply a tender (Idempotency-Key header)
    - POST /api/orders/{id}/status: Change status
    - POST /api/orders/{id}/cancel: Cancel
    - DELETE /api/orders/{id}: Delete (admin)
    - GET  /api/menu: Menu items
    - GET  /api/reports/daily: Daily sales summary
    - GET  /api/users/online: Connected users
    - GET  /health: System health check
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from order_engine.core.config import get_settings, setup_logging
from order_engine.core.exceptions import (
    OrderEngineError,
    PermissionDenied,
    PersistenceError,
    ValidationError,
)
from order_engine.core.permissions import Action, Resource, require
from order_engine.database import dispose_engine, init_db
from order_engine.schemas import (
    AddItemsRequest,
    ChangeStatusRequest,
    CreateOrderRequest,
    PaymentRequest,
    UpdateOrderRequest,
    parse,
    resolve_items,
    violations_from_pydantic,
)
from order_engine.services.auth import Identity, get_identity_provider
from order_engine.services.menu import get_menu_catalog
from order_engine.services.orders import Channel, OrderStatus, get_order_store
from order_engine.services.orders.codec import order_to_wire
from order_engine.services.persistence import get_order_repository
from order_engine.services.realtime import get_broadcaster, get_session_tracker
from order_engine.services.realtime.gateway import get_event_gateway, run_bounded

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    # Initialize database
    if not settings.is_development:
        await init_db()
        logger.info("✅ Database initialized")

    broadcaster = get_broadcaster()
    await broadcaster.start()
    logger.info(f"✅ Broadcaster: {broadcaster.backend_name}")

    store = get_order_store()
    try:
        await store.hydrate()
    except PersistenceError as e:
        logger.warning(f"⚠️ Starting without persisted orders: {e.message}")
    logger.info(f"✅ Order Store: {len(store)} active orders")

    tracker = get_session_tracker()
    tracker.start()
    logger.info(f"✅ Session sweep every {settings.session_sweep_interval_seconds}s")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await tracker.stop()
    await broadcaster.stop()
    await get_order_repository().close()
    if not settings.is_development:
        await dispose_engine()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order lifecycle and payment reconciliation for local, delivery and "
        "takeaway orders, with real-time fan-out to every connected terminal."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

async def current_identity(authorization: Optional[str] = Header(None)) -> Identity:
    """Resolve `Authorization: Bearer <token>` to a verified identity."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise PermissionDenied("authentication token required")
    return await get_identity_provider().verify(authorization[7:].strip())


async def bounded(coro) -> Any:
    return await run_bounded(coro, settings.request_timeout_seconds)


def ok(data: Any = None, **extra) -> dict[str, Any]:
    return {"success": True, "data": data, **extra}


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name} - {settings.restaurant_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "websocket": "/ws",
        "health": "/health",
    }


@app.get("/health", tags=["Health"], summary="System Health Check")
async def health_check() -> dict[str, Any]:
    """Verify all system components are operational."""
    repository = get_order_repository()
    repository_status = "healthy" if await repository.health_check() else "unhealthy"

    broadcaster = get_broadcaster()
    tracker = get_session_tracker()

    return {
        "status": "operational" if repository_status == "healthy" else "degraded",
        "repository": f"{repository.provider_name}: {repository_status}",
        "broadcaster": broadcaster.backend_name,
        "connections": broadcaster.connection_count,
        "sessions": tracker.session_count,
        "orders": len(get_order_store()),
        "timestamp": datetime.now().isoformat(),
    }


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post("/api/orders", tags=["Orders"], status_code=201)
async def create_order(
    body: Optional[dict[str, Any]] = Body(None),
    identity: Identity = Depends(current_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    require(identity.role, Resource.ORDERS, Action.CREATE)
    request = parse(CreateOrderRequest, body or {})
    items = await resolve_items(request.items, get_menu_catalog())
    order = await bounded(get_order_store().create_order(
        channel=request.channel,
        items=items,
        customer_name=request.customer_name,
        customer_phone=request.customer_phone,
        delivery_address=request.delivery_address,
        table_number=request.table_number,
        notes=request.notes,
        estimated_time=request.estimated_time,
        manager_name=request.manager_name,
        actor=identity,
        request_id=idempotency_key,
    ))
    return ok(order_to_wire(order))


@app.get("/api/orders", tags=["Orders"])
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    channel: Optional[Channel] = Query(None),
    day: Optional[date] = Query(None, description="Business day, YYYY-MM-DD"),
    active: bool = Query(False, description="Only orders not completed or cancelled"),
    delayed: bool = Query(False, description="Only open orders older than ORDER_DELAY_MINUTES"),
    identity: Identity = Depends(current_identity),
) -> dict[str, Any]:
    """Without filters this is the same snapshot get_orders returns on the socket."""
    require(identity.role, Resource.ORDERS, Action.READ)
    store = get_order_store()
    if not any((status, channel, day, active, delayed)):
        orders = store.snapshot()
    else:
        orders = [
            order_to_wire(order)
            for order in store.list_orders(status, channel, day, active, delayed)
        ]
    return ok(orders, count=len(orders))


@app.get("/api/orders/{order_id}", tags=["Orders"])
async def get_order(order_id: str, identity: Identity = Depends(current_identity)) -> dict[str, Any]:
    require(identity.role, Resource.ORDERS, Action.READ)
    return ok(order_to_wire(get_order_store().get_order(order_id)))


@app.post("/api/orders/{order_id}/items", tags=["Orders"])
async def add_items(
    order_id: str,
    body: Optional[dict[str, Any]] = Body(None),
    identity: Identity = Depends(current_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    require(identity.role, Resource.ORDERS, Action.UPDATE)
    store = get_order_store()
    request = parse(AddItemsRequest, {**(body or {}), "orderId": order_id})
    start = len(store.get_order(order_id).items)
    items = await resolve_items(request.items, get_menu_catalog(), start_index=start)
    order = await bounded(store.add_items(order_id, items, identity, idempotency_key))
    return ok(order_to_wire(order))


@app.delete("/api/orders/{order_id}/items/{item_id}", tags=["Orders"])
async def remove_item(
    order_id: str,
    item_id: str,
    identity: Identity = Depends(current_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    require(identity.role, Resource.ORDERS, Action.UPDATE)
    order = await bounded(get_order_store().remove_item(order_id, item_id, identity, idempotency_key))
    return ok(order_to_wire(order))


@app.patch("/api/orders/{order_id}", tags=["Orders"])
async def update_order(
    order_id: str,
    body: Optional[dict[str, Any]] = Body(None),
    identity: Identity = Depends(current_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    require(identity.role, Resource.ORDERS, Action.UPDATE)
    request = parse(UpdateOrderRequest, {**(body or {}), "orderId": order_id})
    order = await bounded(
        get_order_store().update_details(order_id, request.changes(), identity, idempotency_key)
    )
    return ok(order_to_wire(order))


@app.post("/api/orders/{order_id}/payments", tags=["Payments"])
async def apply_payment(
    order_id: str,
    body: Optional[dict[str, Any]] = Body(None),
    identity: Identity = Depends(current_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    """
    Record a tender. Send the same Idempotency-Key when retrying so the
    amount is not counted twice.
    """
    require(identity.role, Resource.ORDERS, Action.UPDATE)
    request = parse(PaymentRequest, {**(body or {}), "orderId": order_id})
    outcome = await bounded(
        get_order_store().apply_tender(order_id, request.to_tender(), identity, idempotency_key)
    )
    return ok({"order": order_to_wire(outcome.order), **outcome.to_dict()})


@app.post("/api/orders/{order_id}/status", tags=["Orders"])
async def change_status(
    order_id: str,
    body: Optional[dict[str, Any]] = Body(None),
    identity: Identity = Depends(current_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    require(identity.role, Resource.ORDERS, Action.MODIFY_STATUS)
    request = parse(ChangeStatusRequest, {**(body or {}), "orderId": order_id})
    order = await bounded(
        get_order_store().change_status(order_id, request.status, identity, idempotency_key)
    )
    return ok(order_to_wire(order))


@app.post("/api/orders/{order_id}/cancel", tags=["Orders"])
async def cancel_order(
    order_id: str,
    identity: Identity = Depends(current_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    require(identity.role, Resource.ORDERS, Action.MODIFY_STATUS)
    order = await bounded(get_order_store().cancel_order(order_id, identity, idempotency_key))
    return ok(order_to_wire(order))


@app.delete("/api/orders/{order_id}", tags=["Orders"])
async def delete_order(
    order_id: str,
    identity: Identity = Depends(current_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    require(identity.role, Resource.ORDERS, Action.DELETE)
    await bounded(get_order_store().delete_order(order_id, identity, idempotency_key))
    return ok({"orderId": order_id})


# =============================================================================
# MENU, REPORTS & USERS
# =============================================================================

@app.get("/api/menu", tags=["Menu"])
async def get_menu(
    category: Optional[str] = Query(None),
    available: Optional[bool] = Query(None),
    identity: Identity = Depends(current_identity),
) -> dict[str, Any]:
    require(identity.role, Resource.MENU, Action.READ)
    items = await get_menu_catalog().list_items(category, available)
    return ok([item.to_dict() for item in items], count=len(items))


@app.get("/api/reports/daily", tags=["Reports"])
async def daily_report(
    day: Optional[date] = Query(None, description="Business day, YYYY-MM-DD (default today)"),
    identity: Identity = Depends(current_identity),
) -> dict[str, Any]:
    require(identity.role, Resource.REPORTS, Action.VIEW_DAILY)
    return ok(get_order_store().daily_stats(day).to_dict())


@app.get("/api/users/online", tags=["Users"])
async def online_users(identity: Identity = Depends(current_identity)) -> dict[str, Any]:
    users = get_session_tracker().online_users()
    return ok(users, count=len(users))


# =============================================================================
# WEBSOCKET EVENT CHANNEL
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    One terminal connection. Authenticate with ?token=..., then exchange
    {event, requestId, data} frames; every request gets an ack.
    """
    await websocket.accept()
    tracker = get_session_tracker()

    try:
        session = await tracker.connect(websocket, token or "")
    except PermissionDenied as e:
        await websocket.send_json({"event": "error", **e.to_dict()})
        await websocket.close(code=1008, reason=e.message)
        return

    gateway = get_event_gateway()
    try:
        while True:
            try:
                raw = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({
                    "event": "ack",
                    "requestId": None,
                    **ValidationError("frame is not valid JSON").to_dict(),
                })
                continue

            ack = await gateway.handle(session, raw)
            if ack is not None:
                await websocket.send_json(ack)
    except WebSocketDisconnect:
        pass
    finally:
        await tracker.disconnect(session.id)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderEngineError)
async def order_engine_exception_handler(request: Request, exc: OrderEngineError) -> JSONResponse:
    """Domain errors carry their own status code and field-level details."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationError.from_violations(violations_from_pydantic(exc))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "code": "internal_error",
            "message": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("order_engine.main:app", host=settings.api_host, port=settings.api_port)
