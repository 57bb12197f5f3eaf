"""Ingestion boundary between raw store records and the reconciliation core.

Records reach the store from many peripheral flows and in several legacy
shapes: ``cost`` next to ``costPrice``, ``price`` instead of ``unitPrice``,
timestamps as numbers, numeric strings or ISO dates, and payment methods in
more than one spelling. The ``deserialize_*`` helpers fold all of those into
one canonical frozen dataclass per entity so that the components never have to
ask which shape they are looking at. Values that cannot be interpreted are
kept as ``None`` (or a non-finite ``Decimal``) so validation can still see that
they were broken.

The ``serialize_*`` helpers produce the canonical camelCase shape the engine
writes back for the entities it owns (shifts and stock movements).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Tuple

from .constants import (
    PAYMENT_METHOD_ALIASES,
    PaymentMethod,
    ShiftStatus,
    ShiftType,
    StockChangeType,
    TransactionStatus,
)


@dataclass(frozen=True)
class ProductRecord:
    """Catalog entry as seen by the engine."""

    product_id: str
    name: Optional[str]
    price: Optional[Decimal]
    cost_price: Optional[Decimal]
    legacy_cost: Optional[Decimal]
    stock: int
    min_stock: Optional[int] = None
    category: Optional[str] = None
    branch_id: Optional[str] = None


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    name: Optional[str]
    role: Optional[str] = None


@dataclass(frozen=True)
class LineItem:
    """One line of a sale transaction."""

    product_id: Optional[str]
    name: Optional[str]
    quantity: Optional[Decimal]
    unit_price: Optional[Decimal]
    unit_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class SaleTransaction:
    """Normalized sale transaction.

    ``timestamp`` is ``None`` when the stored value is missing or unusable,
    ``items`` is ``None`` when the stored value is not a list, and
    ``payment_method`` is ``None`` when the spelling is unknown (the raw text
    survives in ``raw_payment_method``).
    """

    transaction_id: Optional[str]
    timestamp: Optional[int]
    cashier_id: Optional[str]
    cashier_name: Optional[str]
    items: Optional[Tuple[LineItem, ...]]
    total: Optional[Decimal]
    payment_method: Optional[PaymentMethod]
    status: TransactionStatus = TransactionStatus.COMPLETED
    shift_id: Optional[str] = None
    legacy_cashier: Optional[str] = None
    raw_payment_method: Optional[str] = None


@dataclass(frozen=True)
class Shift:
    """Cash-drawer session of one cashier."""

    shift_id: str
    cashier_id: str
    cashier_name: str
    shift_type: Optional[ShiftType]
    start_time: Optional[int]
    end_time: Optional[int]
    starting_cash: Decimal
    ending_cash: Optional[Decimal]
    expected_cash: Optional[Decimal]
    difference: Optional[Decimal]
    status: ShiftStatus
    notes: Optional[str] = None
    cash_sales: Optional[Decimal] = None
    total_sales: Optional[Decimal] = None
    transaction_count: Optional[int] = None


@dataclass(frozen=True)
class StockMovement:
    """Append-only record of one stock change."""

    movement_id: str
    product_id: str
    product_name: str
    change_type: StockChangeType
    quantity_before: int
    quantity_after: int
    quantity_changed: int
    reason: str
    actor_name: str
    timestamp: Optional[int]


@dataclass(frozen=True)
class OperationalCost:
    cost_id: Optional[str]
    category: str
    amount: Optional[Decimal]
    timestamp: Optional[int]
    description: str


@dataclass(frozen=True)
class PurchaseItem:
    product_id: Optional[str]
    product_name: Optional[str]
    quantity: Decimal
    cost_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.cost_price


@dataclass(frozen=True)
class Purchase:
    """Supplier purchase; ``total_cost`` includes shipping and other costs."""

    purchase_id: Optional[str]
    supplier: str
    timestamp: Optional[int]
    items: Tuple[PurchaseItem, ...] = field(default_factory=tuple)
    shipping_cost: Decimal = Decimal("0")
    other_costs: Decimal = Decimal("0")
    recorded_total: Optional[Decimal] = None

    @property
    def total_cost(self) -> Decimal:
        if not self.items and self.recorded_total is not None:
            return self.recorded_total
        return sum((item.subtotal for item in self.items), Decimal("0")) + self.shipping_cost + self.other_costs


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------


def coerce_number(value: Any, *, allow_text: bool = False) -> Optional[Decimal]:
    """Interpret ``value`` as a number.

    JSON numbers become :class:`~decimal.Decimal`; ``NaN`` and infinities are
    preserved so callers can reject them explicitly. Text is only accepted
    when ``allow_text`` is set. Booleans are never numbers.
    """

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if math.isnan(value):
            return Decimal("NaN")
        if math.isinf(value):
            return Decimal("Infinity") if value > 0 else Decimal("-Infinity")
        return Decimal(str(value))
    if allow_text and isinstance(value, str) and value.strip():
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return None
    return None


def is_finite_number(value: Optional[Decimal]) -> bool:
    return value is not None and value.is_finite()


def coerce_int(value: Any, default: int = 0) -> int:
    """Interpret ``value`` as an integral quantity, falling back to ``default``."""

    number = coerce_number(value, allow_text=True)
    if number is None or not number.is_finite():
        return default
    return int(number)


def coerce_text(value: Any) -> Optional[str]:
    """Return stripped text, or ``None`` for missing and blank values."""

    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def coerce_epoch_millis(value: Any, *, tz: tzinfo = timezone.utc, allow_iso: bool = True) -> Optional[int]:
    """Interpret ``value`` as an epoch-millisecond timestamp.

    Accepted inputs are positive numbers, positive numeric strings, aware or
    naive ``datetime`` objects and, unless ``allow_iso`` is false, ISO 8601
    strings. Naive values are read in ``tz``. Everything else, including zero
    and negative values, yields ``None``.
    """

    if isinstance(value, datetime):
        moment = value if value.tzinfo is not None else value.replace(tzinfo=tz)
        return int(moment.timestamp() * 1000)
    number = coerce_number(value, allow_text=True)
    if number is not None:
        if number.is_finite() and number > 0:
            return int(number)
        return None
    if allow_iso and isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return coerce_epoch_millis(parsed, tz=tz)
    return None


def to_datetime(epoch_millis: int, tz: tzinfo) -> datetime:
    """Convert epoch milliseconds into an aware datetime in ``tz``."""

    return datetime.fromtimestamp(epoch_millis / 1000, tz=tz)


def normalize_payment_method(value: Any) -> Optional[PaymentMethod]:
    text = coerce_text(value)
    if text is None:
        return None
    return PAYMENT_METHOD_ALIASES.get(text.lower())


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _enum_or_default(enum_type, value: Any, default):
    text = coerce_text(value)
    if text is None:
        return default
    try:
        return enum_type(text.lower())
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Deserialization (store -> engine)
# ---------------------------------------------------------------------------


def deserialize_product(raw: Mapping[str, Any]) -> ProductRecord:
    """Normalize a catalog record; missing stock counts as zero."""

    min_stock = raw.get("minStock")
    return ProductRecord(
        product_id=coerce_text(raw.get("id")) or "",
        name=coerce_text(raw.get("name")),
        price=coerce_number(raw.get("price")),
        cost_price=coerce_number(raw.get("costPrice")),
        legacy_cost=coerce_number(raw.get("cost")),
        stock=coerce_int(raw.get("stock")),
        min_stock=None if min_stock is None else coerce_int(min_stock),
        category=coerce_text(raw.get("category")),
        branch_id=coerce_text(raw.get("branchId")),
    )


def deserialize_user(raw: Mapping[str, Any]) -> UserRecord:
    return UserRecord(
        user_id=coerce_text(raw.get("id")) or "",
        name=coerce_text(raw.get("name")),
        role=coerce_text(raw.get("role")),
    )


def deserialize_line_item(raw: Any) -> LineItem:
    """Normalize a sale line; ``price`` and ``id`` are legacy aliases."""

    if not isinstance(raw, Mapping):
        return LineItem(product_id=None, name=None, quantity=None, unit_price=None)
    return LineItem(
        product_id=coerce_text(_first(raw, "productId", "id")),
        name=coerce_text(raw.get("name")),
        quantity=coerce_number(raw.get("quantity")),
        unit_price=coerce_number(_first(raw, "unitPrice", "price")),
        unit_cost=coerce_number(_first(raw, "unitCost", "costPrice", "cost")),
    )


def deserialize_sale(raw: Mapping[str, Any], *, tz: tzinfo = timezone.utc) -> SaleTransaction:
    """Normalize a sale transaction record.

    The timestamp is read from ``timestamp`` only (a number or numeric
    string); a missing or unusable value leaves it ``None`` so validation
    excludes the sale. Amount fields must be JSON numbers.
    """

    raw_items = raw.get("items")
    items = tuple(deserialize_line_item(item) for item in raw_items) if isinstance(raw_items, list) else None
    timestamp = coerce_epoch_millis(raw.get("timestamp"), tz=tz, allow_iso=False)
    raw_payment = coerce_text(raw.get("paymentMethod"))
    return SaleTransaction(
        transaction_id=coerce_text(raw.get("id")),
        timestamp=timestamp,
        cashier_id=coerce_text(raw.get("cashierId")),
        cashier_name=coerce_text(raw.get("cashierName")),
        items=items,
        total=coerce_number(_first(raw, "total", "totalAmount")),
        payment_method=normalize_payment_method(raw_payment),
        status=_enum_or_default(TransactionStatus, raw.get("status"), TransactionStatus.COMPLETED),
        shift_id=coerce_text(raw.get("shiftId")),
        legacy_cashier=coerce_text(raw.get("cashier")),
        raw_payment_method=raw_payment,
    )


def deserialize_shift(raw: Mapping[str, Any], *, tz: tzinfo = timezone.utc) -> Shift:
    """Normalize a shift record; ISO and epoch start/end times are accepted."""

    def _money(key: str) -> Optional[Decimal]:
        value = coerce_number(raw.get(key), allow_text=True)
        return value if is_finite_number(value) else None

    shift_type_text = coerce_text(raw.get("shiftType"))
    try:
        shift_type = ShiftType(shift_type_text) if shift_type_text else None
    except ValueError:
        shift_type = None
    count = raw.get("transactionCount")
    return Shift(
        shift_id=coerce_text(raw.get("id")) or "",
        cashier_id=coerce_text(raw.get("cashierId")) or "",
        cashier_name=coerce_text(raw.get("cashierName")) or "",
        shift_type=shift_type,
        start_time=coerce_epoch_millis(raw.get("startTime"), tz=tz),
        end_time=coerce_epoch_millis(raw.get("endTime"), tz=tz),
        starting_cash=_money("startingCash") or Decimal("0"),
        ending_cash=_money("endingCash"),
        expected_cash=_money("expectedCash"),
        difference=_money("difference"),
        status=_enum_or_default(ShiftStatus, raw.get("status"), ShiftStatus.ACTIVE),
        notes=coerce_text(raw.get("notes")),
        cash_sales=_money("cashSales"),
        total_sales=_money("totalSales"),
        transaction_count=None if count is None else coerce_int(count),
    )


def deserialize_movement(raw: Mapping[str, Any], *, tz: tzinfo = timezone.utc) -> StockMovement:
    before = coerce_int(raw.get("quantityBefore"))
    after = coerce_int(raw.get("quantityAfter"))
    return StockMovement(
        movement_id=coerce_text(raw.get("id")) or "",
        product_id=coerce_text(raw.get("productId")) or "",
        product_name=coerce_text(raw.get("productName")) or "",
        change_type=_enum_or_default(StockChangeType, raw.get("changeType"), StockChangeType.ADJUSTMENT),
        quantity_before=before,
        quantity_after=after,
        quantity_changed=coerce_int(raw.get("quantityChanged"), default=after - before),
        reason=coerce_text(raw.get("reason")) or "",
        actor_name=coerce_text(_first(raw, "actorName", "userName")) or "",
        timestamp=coerce_epoch_millis(raw.get("timestamp"), tz=tz),
    )


def deserialize_operational_cost(raw: Mapping[str, Any], *, tz: tzinfo = timezone.utc) -> OperationalCost:
    """Normalize an operational cost; the ``date`` wins over ``timestamp``."""

    return OperationalCost(
        cost_id=coerce_text(raw.get("id")),
        category=coerce_text(raw.get("category")) or "",
        amount=coerce_number(raw.get("amount"), allow_text=True),
        timestamp=coerce_epoch_millis(_first(raw, "date", "timestamp"), tz=tz),
        description=coerce_text(raw.get("description")) or "",
    )


def deserialize_purchase_item(raw: Any) -> PurchaseItem:
    if not isinstance(raw, Mapping):
        return PurchaseItem(product_id=None, product_name=None, quantity=Decimal("0"), cost_price=Decimal("0"))
    quantity = coerce_number(raw.get("quantity"), allow_text=True)
    cost_price = coerce_number(_first(raw, "costPrice", "unitCost", "unitPrice"), allow_text=True)
    return PurchaseItem(
        product_id=coerce_text(raw.get("productId")),
        product_name=coerce_text(_first(raw, "productName", "name")),
        quantity=quantity if is_finite_number(quantity) else Decimal("0"),
        cost_price=cost_price if is_finite_number(cost_price) else Decimal("0"),
    )


def deserialize_purchase(raw: Mapping[str, Any], *, tz: tzinfo = timezone.utc) -> Purchase:
    """Normalize a supplier purchase.

    Single-product purchases written by older flows (``productId`` and
    ``quantity`` on the purchase itself) become a one-item purchase.
    """

    raw_items = raw.get("items")
    if isinstance(raw_items, list):
        items = tuple(deserialize_purchase_item(item) for item in raw_items)
    elif raw.get("productId") is not None:
        items = (deserialize_purchase_item(raw),)
    else:
        items = ()

    def _amount(*keys: str) -> Optional[Decimal]:
        value = coerce_number(_first(raw, *keys), allow_text=True)
        return value if is_finite_number(value) else None

    return Purchase(
        purchase_id=coerce_text(raw.get("id")),
        supplier=coerce_text(raw.get("supplier")) or "",
        timestamp=coerce_epoch_millis(_first(raw, "purchaseDate", "date", "timestamp"), tz=tz),
        items=items,
        shipping_cost=_amount("shippingCost") or Decimal("0"),
        other_costs=_amount("otherCosts") or Decimal("0"),
        recorded_total=_amount("totalCost", "totalAmount", "totalPrice"),
    )


# ---------------------------------------------------------------------------
# Serialization (engine -> store)
# ---------------------------------------------------------------------------


def serialize_shift(shift: Shift) -> dict[str, Any]:
    return {
        "id": shift.shift_id,
        "cashierId": shift.cashier_id,
        "cashierName": shift.cashier_name,
        "shiftType": shift.shift_type.value if shift.shift_type else None,
        "startTime": shift.start_time,
        "endTime": shift.end_time,
        "startingCash": shift.starting_cash,
        "endingCash": shift.ending_cash,
        "expectedCash": shift.expected_cash,
        "difference": shift.difference,
        "status": shift.status.value,
        "notes": shift.notes,
        "cashSales": shift.cash_sales,
        "totalSales": shift.total_sales,
        "transactionCount": shift.transaction_count,
    }


def serialize_movement(movement: StockMovement) -> dict[str, Any]:
    return {
        "id": movement.movement_id,
        "productId": movement.product_id,
        "productName": movement.product_name,
        "changeType": movement.change_type.value,
        "quantityBefore": movement.quantity_before,
        "quantityAfter": movement.quantity_after,
        "quantityChanged": movement.quantity_changed,
        "reason": movement.reason,
        "actorName": movement.actor_name,
        "timestamp": movement.timestamp,
    }
