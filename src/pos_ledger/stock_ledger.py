"""Append-only stock movement ledger.

Every change to a product's stock goes through :func:`record_movement` (or
:func:`record_sale_movements` for a whole sale), which appends a
:class:`~pos_ledger.records.StockMovement` and updates the stored stock in a
single versioned write. Replaying a product's movements from zero therefore
reproduces its current stock; :func:`verify_stock_conservation` checks that.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from . import log
from .constants import Collection, StockChangeType
from .core_logic import (
    MissingReferenceError,
    NegativeStockError,
    RuntimeContext,
    StockChangeCommand,
    generate_record_id,
    load_movements,
    load_products,
    require_nonnegative_quantity,
    resolve_timestamp,
    run_with_retry,
    to_millis,
)
from .records import (
    ProductRecord,
    SaleTransaction,
    StockMovement,
    coerce_text,
    deserialize_product,
    is_finite_number,
    serialize_movement,
)


MOVEMENT_ID_PREFIX = "MOV"


@dataclass(frozen=True)
class StockAudit:
    """Result of replaying one product's movements against its stored stock."""

    product_id: str
    product_name: str
    recorded_stock: int
    replayed_stock: int
    movement_count: int
    chain_breaks: Tuple[str, ...] = ()

    @property
    def is_consistent(self) -> bool:
        return self.recorded_stock == self.replayed_stock and not self.chain_breaks


def _product_index(raw_products: Sequence[Dict[str, Any]], product_id: str) -> int:
    for index, raw in enumerate(raw_products):
        if coerce_text(raw.get("id")) == product_id:
            return index
    log.error("Stock change rejected: product '%s' not found", product_id)
    raise MissingReferenceError(f"Product '{product_id}' not found")


def _build_movement(
    product: ProductRecord,
    new_quantity: int,
    *,
    change_type: StockChangeType,
    reason: str,
    actor_name: str,
    timestamp: int,
    movement_id: str,
) -> StockMovement:
    return StockMovement(
        movement_id=movement_id,
        product_id=product.product_id,
        product_name=product.name or product.product_id,
        change_type=change_type,
        quantity_before=product.stock,
        quantity_after=new_quantity,
        quantity_changed=new_quantity - product.stock,
        reason=reason,
        actor_name=actor_name,
        timestamp=timestamp,
    )


def _commit(context: RuntimeContext, apply) -> List[StockMovement]:
    """Read products and movements, apply a change and write both back.

    ``apply`` receives a mutable copy of the raw product records and returns
    the movements to append. The write is rejected with
    :class:`~pos_ledger.core_logic.ConcurrencyConflict` when either collection
    changed in between, in which case the whole attempt is retried.
    """

    def _attempt() -> List[StockMovement]:
        products = context.store.read_versioned(Collection.PRODUCTS)
        movements = context.store.read_versioned(Collection.STOCK_MOVEMENTS)
        working = [dict(raw) for raw in products.records]
        new_movements = apply(working)
        context.store.write_many(
            {
                Collection.PRODUCTS: working,
                Collection.STOCK_MOVEMENTS: movements.records + [serialize_movement(m) for m in new_movements],
            },
            expected_versions={
                Collection.PRODUCTS: products.version,
                Collection.STOCK_MOVEMENTS: movements.version,
            },
        )
        return new_movements

    return run_with_retry(_attempt, attempts=context.settings.write_retries)


def record_movement(context: RuntimeContext, command: StockChangeCommand) -> StockMovement:
    """Set a product's stock to ``command.new_quantity`` and log the change.

    The product's current stock becomes ``quantityBefore``; the delta is
    stored as ``quantityChanged``. The movement and the product update are
    written together.

    Args:
        context (RuntimeContext): Active runtime context.
        command (StockChangeCommand): Requested stock change.

    Returns:
        StockMovement: The appended movement.

    Raises:
        MissingReferenceError: If the product does not exist.
        NegativeStockError: If the new quantity is below zero.
        ValueError: If the new quantity is not a whole number.
        ConcurrencyConflict: If every retry lost a concurrent write.
    """

    require_nonnegative_quantity(command.new_quantity)
    when = resolve_timestamp(context, command.timestamp)
    movement_id = generate_record_id(prefix=MOVEMENT_ID_PREFIX, when=when)

    def _apply(working: List[Dict[str, Any]]) -> List[StockMovement]:
        index = _product_index(working, command.product_id)
        product = deserialize_product(working[index])
        movement = _build_movement(
            product,
            command.new_quantity,
            change_type=command.change_type,
            reason=command.reason,
            actor_name=command.actor_name,
            timestamp=to_millis(when),
            movement_id=movement_id,
        )
        working[index]["stock"] = command.new_quantity
        return [movement]

    (movement,) = _commit(context, _apply)
    log.info(
        "Recorded %s movement %s for product %s: %s -> %s",
        movement.change_type.value,
        movement.movement_id,
        movement.product_id,
        movement.quantity_before,
        movement.quantity_after,
    )
    return movement


def record_sale_movements(
    context: RuntimeContext,
    transaction: SaleTransaction,
    actor_name: str,
) -> List[StockMovement]:
    """Deduct the quantities of a sale from stock, one movement per line.

    Lines for the same product chain onto each other. If any line would take
    stock below zero nothing is written.

    Raises:
        ValueError: If a line has no product id or a non-integral quantity.
        MissingReferenceError: If a line references an unknown product.
        NegativeStockError: If the sale oversells a product.
    """

    lines = []
    for item in transaction.items or ():
        if not item.product_id or not is_finite_number(item.quantity) or item.quantity <= 0:
            raise ValueError(f"Transaction '{transaction.transaction_id}' has an invalid line item")
        if item.quantity != item.quantity.to_integral_value():
            raise ValueError(f"Quantity for product '{item.product_id}' must be a whole number")
        lines.append((item.product_id, int(item.quantity)))

    when = resolve_timestamp(context, None)
    timestamp = transaction.timestamp if transaction.timestamp is not None else to_millis(when)
    movement_ids = [generate_record_id(prefix=MOVEMENT_ID_PREFIX, when=when) for _ in lines]
    reason = f"Penjualan {transaction.transaction_id}"

    def _apply(working: List[Dict[str, Any]]) -> List[StockMovement]:
        movements = []
        for (product_id, quantity), movement_id in zip(lines, movement_ids):
            index = _product_index(working, product_id)
            product = deserialize_product(working[index])
            new_quantity = product.stock - quantity
            if new_quantity < 0:
                log.error(
                    "Sale %s rejected: product %s has %s in stock, %s requested",
                    transaction.transaction_id,
                    product_id,
                    product.stock,
                    quantity,
                )
                raise NegativeStockError(
                    f"Insufficient stock for product '{product_id}': {product.stock} available, {quantity} requested"
                )
            movements.append(
                _build_movement(
                    product,
                    new_quantity,
                    change_type=StockChangeType.SALE,
                    reason=reason,
                    actor_name=actor_name,
                    timestamp=timestamp,
                    movement_id=movement_id,
                )
            )
            working[index]["stock"] = new_quantity
        return movements

    movements = _commit(context, _apply) if lines else []
    log.info("Recorded %d sale movements for transaction %s", len(movements), transaction.transaction_id)
    return movements


def _chronological(movements: Iterable[StockMovement]) -> List[StockMovement]:
    # Movements without a usable timestamp sort first; ties keep storage order.
    return sorted(movements, key=lambda m: m.timestamp if m.timestamp is not None else 0)


def history_for(context: RuntimeContext, product_id: str) -> List[StockMovement]:
    """Return the movements of ``product_id`` in ascending timestamp order."""

    return _chronological(m for m in load_movements(context) if m.product_id == product_id)


def replay_stock(movements: Iterable[StockMovement]) -> int:
    """Fold ``quantityChanged`` over ``movements`` starting from zero."""

    return sum(movement.quantity_changed for movement in movements)


def _audit(product: ProductRecord, movements: Sequence[StockMovement]) -> StockAudit:
    breaks = []
    previous_after = 0
    for movement in movements:
        if movement.quantity_before != previous_after:
            breaks.append(movement.movement_id)
        elif movement.quantity_changed != movement.quantity_after - movement.quantity_before:
            breaks.append(movement.movement_id)
        previous_after = movement.quantity_after
    return StockAudit(
        product_id=product.product_id,
        product_name=product.name or product.product_id,
        recorded_stock=product.stock,
        replayed_stock=replay_stock(movements),
        movement_count=len(movements),
        chain_breaks=tuple(breaks),
    )


def verify_stock_conservation(context: RuntimeContext, product_id: str) -> StockAudit:
    """Replay one product's history and compare it with the stored stock.

    Raises:
        MissingReferenceError: If the product does not exist.
    """

    product = next((p for p in load_products(context) if p.product_id == product_id), None)
    if product is None:
        raise MissingReferenceError(f"Product '{product_id}' not found")
    audit = _audit(product, history_for(context, product_id))
    if not audit.is_consistent:
        log.warning(
            "Stock ledger mismatch for product %s: stored %s, replayed %s",
            product_id,
            audit.recorded_stock,
            audit.replayed_stock,
        )
    return audit


def audit_stock_ledger(context: RuntimeContext) -> List[StockAudit]:
    """Return an audit for every product whose ledger does not add up."""

    by_product: Dict[str, List[StockMovement]] = {}
    for movement in _chronological(load_movements(context)):
        by_product.setdefault(movement.product_id, []).append(movement)

    inconsistent = []
    for product in load_products(context):
        audit = _audit(product, by_product.get(product.product_id, []))
        if not audit.is_consistent:
            inconsistent.append(audit)
    if inconsistent:
        log.warning("Stock ledger audit found %d inconsistent products", len(inconsistent))
    return inconsistent


def _in_branch(product: ProductRecord, branch_id: Optional[str]) -> bool:
    return branch_id is None or product.branch_id == branch_id


def low_stock(
    context: RuntimeContext,
    threshold: Optional[int] = None,
    branch_id: Optional[str] = None,
) -> List[ProductRecord]:
    """Return products that still have stock but are running low.

    An explicit ``threshold`` applies to every product: fewer than
    ``threshold`` units is low. Without one, a product with its own
    ``minStock`` is low at or below that minimum, and every other product is
    measured against the configured ``LowStockThreshold``. Products with no
    stock at all are reported by :func:`out_of_stock` instead.
    """

    def _is_low(product: ProductRecord) -> bool:
        if product.stock <= 0:
            return False
        if threshold is not None:
            return product.stock < threshold
        if product.min_stock is not None:
            return product.stock <= product.min_stock
        return product.stock < context.settings.low_stock_threshold

    return [product for product in load_products(context) if _in_branch(product, branch_id) and _is_low(product)]


def out_of_stock(context: RuntimeContext, branch_id: Optional[str] = None) -> List[ProductRecord]:
    return [product for product in load_products(context) if _in_branch(product, branch_id) and product.stock <= 0]
