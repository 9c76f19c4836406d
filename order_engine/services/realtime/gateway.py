"""
Event Gateway

Routes inbound WebSocket frames to the order, menu and session services
and builds the acknowledgement for the sender.

Inbound frame:
    {"event": "apply_payment", "requestId": "r-17", "data": {...}}

Acknowledgement (every event except heartbeat):
    {"event": "ack", "requestId": "r-17", "success": true, "data": {...}}
    {"event": "ack", "requestId": "r-17", "success": false,
     "code": "validation_error", "message": "...", "errors": [...]}

Each request is bounded by REQUEST_TIMEOUT_SECONDS. A timed-out request
is reported as failed to the sender, but the operation is shielded and
still runs to completion server-side; the client should re-fetch with
get_orders (or retry with the same requestId) instead of assuming it failed.
"""

import asyncio
import logging
from functools import lru_cache
from typing import Any, Awaitable, Callable, Optional

from order_engine.core.config import Settings, get_settings
from order_engine.core.exceptions import (
    NotFound,
    OrderEngineError,
    RequestTimeout,
    ValidationError,
)
from order_engine.core.permissions import Action, Resource, parse_role, require
from order_engine.schemas import (
    AddItemsRequest,
    ChangeStatusRequest,
    CreateOrderRequest,
    InboundFrame,
    MenuPriceRequest,
    NotificationRequest,
    OrderRef,
    PaymentRequest,
    RemoveItemRequest,
    ToggleMenuItemRequest,
    UpdateOrderRequest,
    parse,
    resolve_items,
)
from order_engine.services.menu.base import BaseMenuCatalog
from order_engine.services.orders.codec import order_to_wire
from order_engine.services.orders.entities import utcnow
from order_engine.services.orders.store import OrderStore
from order_engine.services.realtime.broadcaster import ALL_USERS, role_room
from order_engine.services.realtime.sessions import Session, SessionTracker

logger = logging.getLogger(__name__)


Handler = Callable[[Session, Any, Optional[str]], Awaitable[Any]]

# Sentinel: the handler already replied (heartbeat) and no ack is sent.
NO_ACK = object()


def _log_orphan(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None and not isinstance(error, OrderEngineError):
        logger.error(f"Timed-out request failed later: {error}")


async def run_bounded(coro: Awaitable[Any], timeout: float) -> Any:
    """
    Await coro for at most timeout seconds.

    The operation is shielded: on timeout the caller gets RequestTimeout
    while the operation keeps running and commits as usual.
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        task.add_done_callback(_log_orphan)
        raise RequestTimeout(
            f"request did not finish within {timeout:g}s; it may still complete, re-fetch the order to check"
        )


class EventGateway:
    """
    Dispatches inbound events for one process.

    Args:
        store: Order source of truth
        tracker: Session table (heartbeats, online users)
        catalog: Menu lookups for item references and menu events
        settings: Defaults to the process settings
    """

    def __init__(
        self,
        store: OrderStore,
        tracker: SessionTracker,
        catalog: BaseMenuCatalog,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.tracker = tracker
        self.catalog = catalog
        self.settings = settings or get_settings()

        self.handlers: dict[str, Handler] = {
            # Orders
            "create_order": self._on_create_order,
            "add_items": self._on_add_items,
            "remove_item": self._on_remove_item,
            "update_order": self._on_update_order,
            "apply_payment": self._on_apply_payment,
            "change_status": self._on_change_status,
            "update_order_status": self._on_change_status,
            "cancel_order": self._on_cancel_order,
            "delete_order": self._on_delete_order,
            "get_orders": self._on_get_orders,

            # Menu
            "get_menu": self._on_get_menu,
            "toggle_menu_item": self._on_toggle_menu_item,
            "update_menu_price": self._on_update_menu_price,

            # System
            "heartbeat": self._on_heartbeat,
            "get_online_users": self._on_get_online_users,
            "send_notification": self._on_send_notification,
        }

        logger.info(f"EventGateway initialized ({len(self.handlers)} events)")

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def handle(self, session: Session, raw: Any) -> Optional[dict]:
        """
        Process one inbound frame and return the ack to send back (None for heartbeat).

        Never raises for client mistakes; every failure becomes a failed ack.
        """
        request_id = raw.get("requestId") if isinstance(raw, dict) else None
        try:
            frame = parse(InboundFrame, raw)
        except ValidationError as e:
            return self._failure(request_id, e)

        self.tracker.touch(session.id)
        handler = self.handlers.get(frame.event)
        if handler is None:
            logger.warning(f"Unknown event '{frame.event}' from {session.name}")
            return self._failure(
                frame.request_id,
                ValidationError(f"unknown event '{frame.event}'"),
            )

        logger.debug(f"Event {frame.event} from {session.name} (request {frame.request_id})")
        try:
            result = await run_bounded(
                handler(session, frame.data, frame.request_id),
                self.settings.request_timeout_seconds,
            )
        except OrderEngineError as e:
            logger.info(f"Rejected {frame.event} from {session.name}: {e.message}")
            return self._failure(frame.request_id, e)
        except Exception as e:
            logger.error(f"Error handling {frame.event}: {e}", exc_info=True)
            return {
                "event": "ack",
                "requestId": frame.request_id,
                "success": False,
                "code": "internal_error",
                "message": f"could not process {frame.event}",
            }

        if result is NO_ACK:
            return None
        return {"event": "ack", "requestId": frame.request_id, "success": True, "data": result}

    @staticmethod
    def _failure(request_id: Optional[str], error: OrderEngineError) -> dict:
        payload = error.to_dict()
        return {"event": "ack", "requestId": request_id, **payload}

    # =========================================================================
    # ORDER HANDLERS
    # =========================================================================

    async def _on_create_order(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.ORDERS, Action.CREATE)
        request = parse(CreateOrderRequest, data)
        items = await resolve_items(request.items, self.catalog)
        order = await self.store.create_order(
            channel=request.channel,
            items=items,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            delivery_address=request.delivery_address,
            table_number=request.table_number,
            notes=request.notes,
            estimated_time=request.estimated_time,
            manager_name=request.manager_name,
            actor=session.identity,
            request_id=request_id,
        )
        return order_to_wire(order)

    async def _on_add_items(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.ORDERS, Action.UPDATE)
        request = parse(AddItemsRequest, data)
        start = len(self.store.get_order(request.order_id).items)
        items = await resolve_items(request.items, self.catalog, start_index=start)
        order = await self.store.add_items(request.order_id, items, session.identity, request_id)
        return order_to_wire(order)

    async def _on_remove_item(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.ORDERS, Action.UPDATE)
        request = parse(RemoveItemRequest, data)
        order = await self.store.remove_item(request.order_id, request.item_id, session.identity, request_id)
        return order_to_wire(order)

    async def _on_update_order(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.ORDERS, Action.UPDATE)
        request = parse(UpdateOrderRequest, data)
        order = await self.store.update_details(request.order_id, request.changes(), session.identity, request_id)
        return order_to_wire(order)

    async def _on_apply_payment(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.ORDERS, Action.UPDATE)
        request = parse(PaymentRequest, data)
        outcome = await self.store.apply_tender(
            request.order_id, request.to_tender(), session.identity, request_id
        )
        return {"order": order_to_wire(outcome.order), **outcome.to_dict()}

    async def _on_change_status(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.ORDERS, Action.MODIFY_STATUS)
        request = parse(ChangeStatusRequest, data)
        order = await self.store.change_status(request.order_id, request.status, session.identity, request_id)
        return order_to_wire(order)

    async def _on_cancel_order(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.ORDERS, Action.MODIFY_STATUS)
        request = parse(OrderRef, data)
        order = await self.store.cancel_order(request.order_id, session.identity, request_id)
        return order_to_wire(order)

    async def _on_delete_order(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.ORDERS, Action.DELETE)
        request = parse(OrderRef, data)
        await self.store.delete_order(request.order_id, session.identity, request_id)
        return {"orderId": request.order_id}

    async def _on_get_orders(self, session: Session, data: Any, request_id: Optional[str]) -> list:
        require(session.role, Resource.ORDERS, Action.READ)
        return self.store.snapshot()

    # =========================================================================
    # MENU HANDLERS
    # =========================================================================

    async def _on_get_menu(self, session: Session, data: Any, request_id: Optional[str]) -> list:
        require(session.role, Resource.MENU, Action.READ)
        return [item.to_dict() for item in await self.catalog.list_items()]

    async def _on_toggle_menu_item(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.MENU, Action.TOGGLE_AVAILABILITY)
        request = parse(ToggleMenuItemRequest, data)
        item = await self.catalog.set_availability(request.item_id, request.available)
        if item is None:
            raise NotFound(f"menu item {request.item_id} not found")

        await self._announce_menu_change(session, item.id, available=item.available)
        return item.to_dict()

    async def _on_update_menu_price(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.MENU, Action.MODIFY_PRICES)
        request = parse(MenuPriceRequest, data)
        item = await self.catalog.set_price(request.item_id, request.to_price())
        if item is None:
            raise NotFound(f"menu item {request.item_id} not found")

        await self._announce_menu_change(session, item.id, price=float(item.price))
        return item.to_dict()

    async def _announce_menu_change(self, session: Session, item_id: str, **change) -> None:
        await self.tracker.broadcaster.publish_to_roles(
            "menu_item_updated",
            {
                "itemId": item_id,
                **change,
                "updatedBy": session.name,
                "timestamp": utcnow().isoformat(),
            },
        )

    # =========================================================================
    # SYSTEM HANDLERS
    # =========================================================================

    async def _on_heartbeat(self, session: Session, data: Any, request_id: Optional[str]) -> Any:
        await self.tracker.heartbeat(session.id)
        return NO_ACK

    async def _on_get_online_users(self, session: Session, data: Any, request_id: Optional[str]) -> list:
        return self.tracker.online_users()

    async def _on_send_notification(self, session: Session, data: Any, request_id: Optional[str]) -> dict:
        require(session.role, Resource.NOTIFICATIONS, Action.SEND)
        request = parse(NotificationRequest, data)
        room = role_room(parse_role(request.target_role)) if request.target_role else ALL_USERS
        notification = {
            "type": request.type,
            "message": request.message,
            "from": session.name,
            "timestamp": utcnow().isoformat(),
        }
        await self.tracker.broadcaster.publish("notification", notification, room=room)
        return {"room": room}


@lru_cache()
def get_event_gateway() -> EventGateway:
    from order_engine.services.menu import get_menu_catalog
    from order_engine.services.orders import get_order_store
    from order_engine.services.realtime import get_session_tracker

    return EventGateway(get_order_store(), get_session_tracker(), get_menu_catalog())


def reset_event_gateway() -> None:
    get_event_gateway.cache_clear()
