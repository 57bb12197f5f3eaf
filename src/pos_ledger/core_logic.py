"""Runtime orchestration shared by the reconciliation components.

This module owns the :class:`RuntimeContext` handed to every operation, the
domain error taxonomy, the command objects that describe mutating intents,
and the helpers that keep writes safe when several sessions share one store.
Collections are re-read on every call; nothing here caches store content, so
results always reflect the latest committed state.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from decimal import Decimal
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

from . import data_manager, log, records
from .constants import EXPECTED_SCHEMA_VERSION, Collection, StockChangeType


T = TypeVar("T")
Clock = Callable[[], datetime]


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, shift, or cashier is unknown."""


class NegativeStockError(BusinessRuleViolation):
    """Raised when a movement would drive a product's stock below zero."""


class ShiftAlreadyActiveError(BusinessRuleViolation):
    """Raised when a cashier opens a shift while another one is active."""


class ShiftAlreadyClosedError(BusinessRuleViolation):
    """Raised when closing a shift that has already been closed."""


class DuplicateActiveShiftError(BusinessRuleViolation):
    """Raised when stored shifts show two active shifts for one cashier."""


ConcurrencyConflict = data_manager.ConcurrencyConflict


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the event store and the injected clock."""

    settings: data_manager.ConfigSettings
    store: data_manager.EventStore
    clock: Clock = field(default=_utc_now, compare=False)

    @property
    def tz(self) -> tzinfo:
        return data_manager.resolve_timezone(self.settings.timezone_name)

    def now(self) -> datetime:
        """Return the current moment in the configured timezone."""

        return self.clock().astimezone(self.tz)

    def now_millis(self) -> int:
        return int(self.clock().timestamp() * 1000)


@dataclass(frozen=True)
class OpenShiftCommand:
    """User intent for opening a cash-drawer shift."""

    cashier_id: str
    cashier_name: str
    starting_cash: Decimal
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class CloseShiftCommand:
    """User intent for closing a shift with the counted drawer cash."""

    shift_id: str
    actual_cash: Decimal
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class StockChangeCommand:
    """User intent for setting a product's stock to a new quantity."""

    product_id: str
    new_quantity: int
    reason: str
    actor_name: str
    change_type: StockChangeType = StockChangeType.ADJUSTMENT
    timestamp: Optional[datetime] = None


def load_runtime_context(config_path: Optional[Path] = None, *, clock: Optional[Clock] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook-backed event store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        clock (Callable[[], datetime] | None): Time source; defaults to the
            system UTC clock.

    Returns:
        RuntimeContext: Fully populated context ready for the components.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(
        settings=settings,
        store=data_manager.WorkbookEventStore(workbook),
        clock=clock or _utc_now,
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory store changes to the configured workbook.

    Raises:
        ConcurrencyConflict: If another session saved one of the modified
            collections since this context loaded it.
    """
    data_manager.save_store(context.store, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context reading the workbook as it is on disk.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        store=data_manager.WorkbookEventStore(workbook),
        clock=context.clock,
    )


def run_with_retry(func: Callable[[], T], *, attempts: int = 3, backoff_base: float = 0.05) -> T:
    """Execute a read-modify-write operation, retrying on version conflicts.

    ``func`` must re-read everything it depends on each time it is called so
    a retry works on the latest committed state.

    Raises:
        ConcurrencyConflict: When every attempt lost the race.
    """
    for attempt in range(attempts):
        try:
            return func()
        except ConcurrencyConflict:
            if attempt >= attempts - 1:
                log.error("Giving up after %d conflicting attempts", attempts)
                raise
            log.info("Retrying after concurrent modification (attempt %d of %d)", attempt + 2, attempts)
            if backoff_base:
                time.sleep(backoff_base * (2 ** attempt))
    raise ConcurrencyConflict("No attempts were made")


def resolve_timestamp(context: RuntimeContext, candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when supplied, otherwise the context clock's now."""

    return candidate if candidate is not None else context.clock()


def to_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def generate_record_id(*, prefix: str, when: datetime) -> str:
    """Generate a sortable identifier such as ``MOV20251030180000000000-1a2b3c``.

    The timestamp part keeps identifiers chronological; the random suffix
    keeps records created within the same clock tick distinct.
    """
    return f"{prefix}{when.astimezone(UTC).strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def require_nonnegative_quantity(quantity: int) -> None:
    """Validate that a stock quantity is a whole number of at least zero.

    Raises:
        ValueError: If ``quantity`` is not an integer.
        NegativeStockError: If ``quantity`` is below zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r is not a whole number", quantity)
        raise ValueError("Quantity must be a whole number")
    if quantity < 0:
        log.error("Quantity validation failed: %s", quantity)
        raise NegativeStockError(f"Stock cannot go below zero (requested {quantity})")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is finite and nonnegative.

    Raises:
        ValueError: If ``amount`` is negative or not a finite number.
    """
    if not isinstance(amount, Decimal) or not amount.is_finite() or amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


# ---------------------------------------------------------------------------
# Collection loaders
# ---------------------------------------------------------------------------


def load_products(context: RuntimeContext) -> List[records.ProductRecord]:
    return [records.deserialize_product(raw) for raw in context.store.read(Collection.PRODUCTS)]


def load_users(context: RuntimeContext) -> List[records.UserRecord]:
    return [records.deserialize_user(raw) for raw in context.store.read(Collection.USERS)]


def load_sales(context: RuntimeContext) -> List[records.SaleTransaction]:
    return [records.deserialize_sale(raw, tz=context.tz) for raw in context.store.read(Collection.SALE_TRANSACTIONS)]


def load_shifts(context: RuntimeContext) -> List[records.Shift]:
    return [records.deserialize_shift(raw, tz=context.tz) for raw in context.store.read(Collection.SHIFTS)]


def load_movements(context: RuntimeContext) -> List[records.StockMovement]:
    return [records.deserialize_movement(raw, tz=context.tz) for raw in context.store.read(Collection.STOCK_MOVEMENTS)]


def load_operational_costs(context: RuntimeContext) -> List[records.OperationalCost]:
    return [
        records.deserialize_operational_cost(raw, tz=context.tz)
        for raw in context.store.read(Collection.OPERATIONAL_COSTS)
    ]


def load_purchases(context: RuntimeContext) -> List[records.Purchase]:
    return [records.deserialize_purchase(raw, tz=context.tz) for raw in context.store.read(Collection.PURCHASES)]
