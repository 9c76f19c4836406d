"""
Pydantic Schemas for Request Validation

Inbound payloads for the REST surface and the WebSocket event channel.
Field names are camelCase on the wire (aliases) and snake_case in Python.

These models only check types. Business rules (positive quantities,
channel-required fields, ...) are enforced by the order services so both
surfaces report the same field-level messages.
"""

from decimal import Decimal
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from order_engine.core.exceptions import FieldViolation, ValidationError
from order_engine.services.menu.base import BaseMenuCatalog
from order_engine.services.orders.entities import OrderItem, Tender, ZERO, to_money
from order_engine.services.orders.field_map import WIRE_TO_ORDER_FIELD


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _text(value: Any) -> Any:
    # Table numbers and phones arrive as numbers from some terminals.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


# =============================================================================
# ITEMS
# =============================================================================

class OrderItemIn(WireModel):
    """
    Either a full item tuple or a menu reference:

        {"name": "Choripapa", "price": 13, "quantity": 1, "category": "salchipapas"}
        {"menuItemId": "choripapa", "quantity": 1}
    """
    menu_item_id: Optional[str] = Field(None, alias="menuItemId", examples=["choripapa"])
    name: Optional[str] = Field(None, examples=["Choripapa"])
    price: Optional[Any] = Field(None, examples=[13.0])
    quantity: Optional[Any] = Field(None, examples=[1])
    category: Optional[str] = Field(None, examples=["salchipapas"])


def _quantity(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


async def resolve_items(
    items: list[OrderItemIn],
    catalog: BaseMenuCatalog,
    start_index: int = 0,
) -> list[OrderItem]:
    """
    Turn inbound items into OrderItems, looking up menu references.

    Only conversion problems are reported here (unknown menu item, missing
    or non-numeric price/quantity); range checks happen in the order services.

    Raises:
        ValidationError: With one violation per offending field
    """
    resolved = []
    violations = []
    for index, item in enumerate(items, start=start_index):
        prefix = f"items[{index}]"
        quantity = _quantity(item.quantity)
        if quantity is None:
            violations.append(FieldViolation(f"{prefix}.quantity", f"{prefix}: quantity is required"))
            continue

        if item.menu_item_id:
            menu_item = await catalog.lookup(item.menu_item_id)
            if menu_item is None:
                violations.append(
                    FieldViolation(f"{prefix}.menuItemId", f"{prefix}: unknown menu item '{item.menu_item_id}'")
                )
                continue
            if not menu_item.available:
                violations.append(
                    FieldViolation(f"{prefix}.menuItemId", f"{prefix}: '{menu_item.name}' is not available")
                )
                continue
            resolved.append(OrderItem(
                name=menu_item.name,
                price=menu_item.price,
                quantity=quantity,
                category=menu_item.category,
            ))
            continue

        if item.price is None:
            violations.append(FieldViolation(f"{prefix}.price", f"{prefix}: price is required"))
            continue
        try:
            price = to_money(item.price)
        except ValueError:
            violations.append(FieldViolation(f"{prefix}.price", f"{prefix}: price must be a number"))
            continue
        resolved.append(OrderItem(
            name=item.name or "",
            price=price,
            quantity=quantity,
            category=item.category or "general",
        ))

    if violations:
        raise ValidationError.from_violations(violations)
    return resolved


# =============================================================================
# ORDER REQUESTS
# =============================================================================

class OrderRef(WireModel):
    order_id: str = Field(..., alias="orderId", min_length=1)


class CreateOrderRequest(WireModel):
    channel: str = Field(..., examples=["local", "delivery", "takeaway"])
    items: list[OrderItemIn] = Field(default_factory=list)
    customer_name: Optional[str] = Field(None, alias="customerName")
    customer_phone: Optional[str] = Field(None, alias="customerPhone")
    delivery_address: Optional[str] = Field(None, alias="deliveryAddress")
    table_number: Optional[str] = Field(None, alias="tableNumber")
    notes: Optional[str] = None
    estimated_time: Optional[int] = Field(None, alias="estimatedTime")
    manager_name: Optional[str] = Field(None, alias="managerName")

    @field_validator("customer_phone", "table_number", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Any:
        return _text(v)


class AddItemsRequest(OrderRef):
    items: list[OrderItemIn] = Field(default_factory=list)


class RemoveItemRequest(OrderRef):
    item_id: str = Field(..., alias="itemId", min_length=1)


class UpdateOrderRequest(OrderRef):
    """Only the fields present in the payload are changed."""
    customer_name: Optional[str] = Field(None, alias="customerName")
    customer_phone: Optional[str] = Field(None, alias="customerPhone")
    delivery_address: Optional[str] = Field(None, alias="deliveryAddress")
    table_number: Optional[str] = Field(None, alias="tableNumber")
    notes: Optional[str] = None
    estimated_time: Optional[int] = Field(None, alias="estimatedTime")
    manager_name: Optional[str] = Field(None, alias="managerName")

    @field_validator("customer_phone", "table_number", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Any:
        return _text(v)

    def changes(self) -> dict[str, Any]:
        """Domain attribute -> new value, for the fields the client sent."""
        sent = self.model_dump(by_alias=True, exclude_unset=True, exclude={"order_id"})
        return {WIRE_TO_ORDER_FIELD[wire]: value for wire, value in sent.items()}


class PaymentRequest(OrderRef):
    """
    A tender split by instrument. Amounts add to what is already on the order.
    Accepts the short names or the accumulator names.
    """
    cash: Optional[Any] = Field(None, validation_alias=AliasChoices("cash", "cashReceived"))
    yape: Optional[Any] = Field(None, validation_alias=AliasChoices("yape", "yapeAmount"))
    card: Optional[Any] = Field(None, validation_alias=AliasChoices("card", "cardAmount"))

    def to_tender(self) -> Tender:
        violations = []
        amounts = {}
        for field in ("cash", "yape", "card"):
            value = getattr(self, field)
            if value is None:
                amounts[field] = ZERO
                continue
            try:
                amounts[field] = to_money(value)
            except ValueError:
                violations.append(FieldViolation(field, f"{field} must be a number"))
        if violations:
            raise ValidationError.from_violations(violations)
        return Tender(**amounts)


class ChangeStatusRequest(OrderRef):
    status: str = Field(..., validation_alias=AliasChoices("status", "newStatus"))


# =============================================================================
# MENU / NOTIFICATIONS
# =============================================================================

class ToggleMenuItemRequest(WireModel):
    item_id: str = Field(..., alias="itemId", min_length=1)
    available: bool


class MenuPriceRequest(WireModel):
    item_id: str = Field(..., alias="itemId", min_length=1)
    price: Any = Field(..., examples=[13.5])

    def to_price(self) -> Decimal:
        try:
            price = to_money(self.price)
        except ValueError:
            raise ValidationError.from_violations([FieldViolation("price", "price must be a number")])
        if price < 0:
            raise ValidationError.from_violations([FieldViolation("price", "price must be zero or greater")])
        return price


class NotificationRequest(WireModel):
    message: str = Field(..., min_length=1, max_length=500)
    type: str = Field(default="info", examples=["info", "warning", "success", "error"])
    target_role: Optional[str] = Field(None, alias="targetRole")


# =============================================================================
# EVENT FRAME
# =============================================================================

class InboundFrame(WireModel):
    """{"event": "apply_payment", "requestId": "r-1", "data": {...}}"""
    event: str = Field(..., min_length=1)
    request_id: Optional[str] = Field(None, alias="requestId")
    data: Any = None

    @field_validator("request_id", mode="before")
    @classmethod
    def coerce_request_id(cls, v: Any) -> Any:
        return _text(v)


def violations_from_pydantic(error: PydanticValidationError) -> list[FieldViolation]:
    violations = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ()) if part != "body")
        violations.append(FieldViolation(location or "body", f"{location or 'body'}: {detail.get('msg')}"))
    return violations


def parse(model: type[BaseModel], data: Any) -> Any:
    """
    Validate a payload against model, reporting problems as our ValidationError.
    """
    try:
        return model.model_validate(data if data is not None else {})
    except PydanticValidationError as e:
        raise ValidationError.from_violations(violations_from_pydantic(e))
