"""Validation and fallback resolution for sale transactions.

Reporting has to survive incomplete data without hiding it. Two tiers of
problems are handled differently:

* Structural invalidity (no id, corrupt timestamp, empty or malformed items,
  unusable total) excludes a transaction from every financial aggregate.
* Referential incompleteness (product missing from the catalog, no cost
  price, unknown cashier) is resolved through an ordered chain of fallbacks;
  the transaction stays visible and the fallback is reported as a warning or
  an ``is_estimated`` flag.

Each fallback chain is a tuple of tier functions tried in order; the first
tier that returns a value wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

from . import log
from .constants import (
    CASHIER_ID_LABEL,
    CASHIER_INCOMPLETE_WARNING,
    CASHIER_NOT_FOUND_WARNING,
    ESTIMATED_COST_RATIO,
    NAME_FROM_TRANSACTION_WARNING,
    NAME_UNAVAILABLE_WARNING,
    PRODUCT_ID_LABEL,
    UNKNOWN_CASHIER_LABEL,
    UNKNOWN_PRODUCT_LABEL,
)
from .records import (
    LineItem,
    ProductRecord,
    SaleTransaction,
    UserRecord,
    coerce_epoch_millis,
    deserialize_line_item,
    deserialize_sale,
    is_finite_number,
)


ProductCatalog = Union[Mapping[str, ProductRecord], Iterable[ProductRecord]]
UserDirectory = Union[Mapping[str, UserRecord], Iterable[UserRecord]]


class Resolution(NamedTuple):
    """Resolved display value and the warning attached to a fallback tier."""

    value: str
    warning: Optional[str] = None


class CostResolution(NamedTuple):
    cost: Decimal
    is_estimated: bool


@dataclass(frozen=True)
class COGSLine:
    product_id: Optional[str]
    product_name: str
    quantity: Decimal
    unit_cost: Decimal
    cost: Decimal
    is_estimated: bool


@dataclass(frozen=True)
class COGSBreakdown:
    """Cost of goods sold for one transaction."""

    cogs: Decimal
    has_estimation: bool
    lines: Tuple[COGSLine, ...]


@dataclass(frozen=True)
class ValidatedLine:
    item: LineItem
    display_name: str
    unit_cost: Decimal
    is_estimated: bool
    warning: Optional[str] = None


@dataclass(frozen=True)
class ValidatedTransactionView:
    """A sale transaction annotated with resolved names, costs and validity."""

    transaction: SaleTransaction
    cashier_name: str
    lines: Tuple[ValidatedLine, ...]
    is_valid: bool
    warnings: Tuple[str, ...]

    @property
    def has_estimation(self) -> bool:
        return any(line.is_estimated for line in self.lines)


def index_products(products: ProductCatalog) -> Mapping[str, ProductRecord]:
    """Return ``products`` keyed by product id."""

    if isinstance(products, Mapping):
        return products
    return {product.product_id: product for product in products}


def index_users(users: UserDirectory) -> Mapping[str, UserRecord]:
    if isinstance(users, Mapping):
        return users
    return {user.user_id: user for user in users}


# ---------------------------------------------------------------------------
# Product name chain
# ---------------------------------------------------------------------------

NameTier = Callable[[LineItem, Optional[ProductRecord]], Optional[Resolution]]


def _name_from_catalog(item: LineItem, product: Optional[ProductRecord]) -> Optional[Resolution]:
    if product is not None and product.name:
        return Resolution(product.name)
    return None


def _name_from_line(item: LineItem, product: Optional[ProductRecord]) -> Optional[Resolution]:
    if item.name and item.name.lower() != "undefined":
        return Resolution(item.name, NAME_FROM_TRANSACTION_WARNING)
    return None


def _name_from_product_id(item: LineItem, product: Optional[ProductRecord]) -> Optional[Resolution]:
    if item.product_id:
        log.warning("Product name not found for product '%s', using id label", item.product_id)
        return Resolution(PRODUCT_ID_LABEL.format(product_id=item.product_id), NAME_UNAVAILABLE_WARNING)
    return None


def _unknown_product(item: LineItem, product: Optional[ProductRecord]) -> Optional[Resolution]:
    log.warning("Product name and id not found, using generic label")
    return Resolution(UNKNOWN_PRODUCT_LABEL, NAME_UNAVAILABLE_WARNING)


PRODUCT_NAME_TIERS: Tuple[NameTier, ...] = (
    _name_from_catalog,
    _name_from_line,
    _name_from_product_id,
    _unknown_product,
)


def resolve_product_name(item: LineItem, products: ProductCatalog) -> Resolution:
    """Resolve the display name of a line item.

    Priority: catalog name, the name recorded on the line (unless it is the
    literal ``"undefined"``), ``"Produk #<productId>"``, and finally a generic
    unknown-product label. Every tier after the first attaches a warning.

    Args:
        item (LineItem): Line item to name.
        products (Mapping | Iterable[ProductRecord]): Current catalog.

    Returns:
        Resolution: Display name and optional warning.
    """

    product = index_products(products).get(item.product_id or "")
    for tier in PRODUCT_NAME_TIERS:
        resolved = tier(item, product)
        if resolved is not None:
            return resolved
    raise AssertionError("the last product name tier always resolves")


# ---------------------------------------------------------------------------
# Unit cost chain
# ---------------------------------------------------------------------------

CostTier = Callable[[LineItem, Optional[ProductRecord]], Optional[CostResolution]]


def _usable_cost(value: Optional[Decimal]) -> bool:
    return is_finite_number(value) and value > 0


def _cost_from_cost_price(item: LineItem, product: Optional[ProductRecord]) -> Optional[CostResolution]:
    if product is not None and _usable_cost(product.cost_price):
        return CostResolution(product.cost_price, False)
    return None


def _cost_from_legacy_cost(item: LineItem, product: Optional[ProductRecord]) -> Optional[CostResolution]:
    if product is not None and _usable_cost(product.legacy_cost):
        log.debug("Using legacy cost for product '%s'", item.product_id)
        return CostResolution(product.legacy_cost, False)
    return None


def _cost_from_price_estimate(item: LineItem, product: Optional[ProductRecord]) -> Optional[CostResolution]:
    if _usable_cost(item.unit_price):
        estimated = item.unit_price * ESTIMATED_COST_RATIO
        log.warning("Cost price not found for product '%s', estimating %s", item.product_id, estimated)
        return CostResolution(estimated, True)
    return None


def _zero_cost(item: LineItem, product: Optional[ProductRecord]) -> Optional[CostResolution]:
    log.warning("Cannot determine cost price for product '%s', using 0", item.product_id)
    return CostResolution(Decimal("0"), True)


UNIT_COST_TIERS: Tuple[CostTier, ...] = (
    _cost_from_cost_price,
    _cost_from_legacy_cost,
    _cost_from_price_estimate,
    _zero_cost,
)


def resolve_unit_cost(item: LineItem, products: ProductCatalog) -> CostResolution:
    """Resolve the unit cost of a line item.

    Priority: catalog ``costPrice``, legacy catalog ``cost`` (both only when
    finite and greater than zero), 60% of the line's unit sale price, zero.
    ``is_estimated`` is true exactly when neither catalog field was usable.

    Args:
        item (LineItem): Line item to cost.
        products (Mapping | Iterable[ProductRecord]): Current catalog.

    Returns:
        CostResolution: Unit cost and whether it was estimated.
    """

    product = index_products(products).get(item.product_id or "")
    for tier in UNIT_COST_TIERS:
        resolved = tier(item, product)
        if resolved is not None:
            return resolved
    raise AssertionError("the last unit cost tier always resolves")


# ---------------------------------------------------------------------------
# Cashier name chain
# ---------------------------------------------------------------------------

CashierTier = Callable[[SaleTransaction, Mapping[str, UserRecord]], Optional[Resolution]]


def _cashier_from_user(tx: SaleTransaction, users: Mapping[str, UserRecord]) -> Optional[Resolution]:
    user = users.get(tx.cashier_id) if tx.cashier_id else None
    if user is not None and user.name:
        return Resolution(user.name)
    return None


def _cashier_from_transaction(tx: SaleTransaction, users: Mapping[str, UserRecord]) -> Optional[Resolution]:
    return Resolution(tx.cashier_name) if tx.cashier_name else None


def _cashier_from_legacy_field(tx: SaleTransaction, users: Mapping[str, UserRecord]) -> Optional[Resolution]:
    return Resolution(tx.legacy_cashier) if tx.legacy_cashier else None


def _cashier_from_id(tx: SaleTransaction, users: Mapping[str, UserRecord]) -> Optional[Resolution]:
    if tx.cashier_id:
        return Resolution(CASHIER_ID_LABEL.format(cashier_id=tx.cashier_id), CASHIER_NOT_FOUND_WARNING)
    return None


def _unknown_cashier(tx: SaleTransaction, users: Mapping[str, UserRecord]) -> Optional[Resolution]:
    return Resolution(UNKNOWN_CASHIER_LABEL, CASHIER_INCOMPLETE_WARNING)


CASHIER_NAME_TIERS: Tuple[CashierTier, ...] = (
    _cashier_from_user,
    _cashier_from_transaction,
    _cashier_from_legacy_field,
    _cashier_from_id,
    _unknown_cashier,
)


def resolve_cashier_name(transaction: SaleTransaction, users: UserDirectory) -> Resolution:
    """Resolve the cashier shown for a transaction.

    Priority: linked user record, the transaction's ``cashierName``, the
    legacy ``cashier`` field, ``"Kasir #<id>"``, an unknown-cashier label.
    """

    directory = index_users(users)
    for tier in CASHIER_NAME_TIERS:
        resolved = tier(transaction, directory)
        if resolved is not None:
            return resolved
    raise AssertionError("the last cashier tier always resolves")


# ---------------------------------------------------------------------------
# Structural validation
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> Optional[int]:
    """Return ``value`` as epoch milliseconds, or ``None`` when unusable.

    Only numbers and numeric strings greater than zero are accepted.
    """

    return coerce_epoch_millis(value, allow_iso=False)


def validate_timestamp(value: Any, *, clock: Optional[Callable[[], datetime]] = None) -> int:
    """Return a usable timestamp, substituting the current time when invalid.

    The substituted value is indistinguishable from a real one, so callers
    that classify records must use :func:`parse_timestamp` instead.
    """

    parsed = parse_timestamp(value)
    if parsed is not None:
        return parsed
    moment = clock() if clock is not None else datetime.now().astimezone()
    log.warning("Invalid timestamp %r replaced with current time", value)
    return int(moment.timestamp() * 1000)


def validate_transaction_item(item: Union[LineItem, Mapping[str, Any]]) -> bool:
    """Check that a line has a product id, a positive quantity and a price.

    Quantity must be finite and greater than zero; the unit price must be
    finite and at least zero.
    """

    if isinstance(item, Mapping):
        item = deserialize_line_item(item)
    if not item.product_id:
        log.error("Invalid transaction item: product id is missing")
        return False
    if not is_finite_number(item.quantity) or item.quantity <= 0:
        log.error("Invalid transaction item: quantity is invalid for product '%s'", item.product_id)
        return False
    if not is_finite_number(item.unit_price) or item.unit_price < 0:
        log.error("Invalid transaction item: price is invalid for product '%s'", item.product_id)
        return False
    return True


def validate_transaction(transaction: Union[SaleTransaction, Mapping[str, Any]]) -> bool:
    """Check the structural validity of a sale transaction.

    Requires a non-empty id, a real timestamp (not one that would have been
    substituted), a non-empty item list whose items all validate, and a
    finite total of at least zero.
    """

    tx = deserialize_sale(transaction) if isinstance(transaction, Mapping) else transaction
    if not tx.transaction_id:
        log.error("Invalid transaction: id is missing")
        return False
    if tx.timestamp is None:
        log.error("Invalid transaction: timestamp is invalid for transaction '%s'", tx.transaction_id)
        return False
    if not tx.items:
        log.error("Invalid transaction: items are missing or empty for transaction '%s'", tx.transaction_id)
        return False
    if not all(validate_transaction_item(item) for item in tx.items):
        log.error("Invalid transaction: one or more items are invalid for transaction '%s'", tx.transaction_id)
        return False
    if not is_finite_number(tx.total) or tx.total < 0:
        log.error("Invalid transaction: total is invalid for transaction '%s'", tx.transaction_id)
        return False
    return True


def is_reportable(transaction: SaleTransaction) -> bool:
    """Return whether ``transaction`` may enter financial aggregates."""

    has_timestamp = transaction.timestamp is not None
    has_items = bool(transaction.items)
    has_total = is_finite_number(transaction.total) and transaction.total > 0
    return has_timestamp and has_items and has_total and validate_transaction(transaction)


def select_reportable_transactions(
    transactions: Iterable[SaleTransaction],
    products: Optional[ProductCatalog] = None,
    users: Optional[UserDirectory] = None,
) -> List[SaleTransaction]:
    """Keep only the transactions eligible for financial reports.

    A transaction qualifies when it has a valid timestamp, a non-empty item
    list, a total greater than zero and passes :func:`validate_transaction`.
    Everything else is excluded outright. Catalog and user data never exclude
    a transaction; when supplied they are only used to log how many selected
    transactions reference unknown products or cashiers.
    """

    selected = []
    excluded = 0
    for transaction in transactions:
        if is_reportable(transaction):
            selected.append(transaction)
        else:
            excluded += 1
    if excluded:
        log.warning("Excluded %d structurally invalid transactions from reporting", excluded)

    if products is not None:
        catalog = index_products(products)
        unknown = sum(
            1 for tx in selected if any(item.product_id not in catalog for item in tx.items or ())
        )
        if unknown:
            log.info("%d reportable transactions reference products missing from the catalog", unknown)
    if users is not None:
        directory = index_users(users)
        unknown = sum(1 for tx in selected if tx.cashier_id not in directory)
        if unknown:
            log.info("%d reportable transactions reference unknown cashiers", unknown)
    return selected


def compute_cogs(transaction: SaleTransaction, products: ProductCatalog) -> COGSBreakdown:
    """Sum resolved unit cost times quantity over the transaction's lines.

    Args:
        transaction (SaleTransaction): Transaction to cost.
        products (Mapping | Iterable[ProductRecord]): Current catalog.

    Returns:
        COGSBreakdown: Total COGS, whether any line used an estimate, and the
            per-line detail.
    """

    catalog = index_products(products)
    lines: List[COGSLine] = []
    for item in transaction.items or ():
        unit_cost, is_estimated = resolve_unit_cost(item, catalog)
        quantity = item.quantity if is_finite_number(item.quantity) else Decimal("0")
        lines.append(
            COGSLine(
                product_id=item.product_id,
                product_name=resolve_product_name(item, catalog).value,
                quantity=quantity,
                unit_cost=unit_cost,
                cost=unit_cost * quantity,
                is_estimated=is_estimated,
            )
        )
    return COGSBreakdown(
        cogs=sum((line.cost for line in lines), Decimal("0")),
        has_estimation=any(line.is_estimated for line in lines),
        lines=tuple(lines),
    )


def build_transaction_view(
    transaction: SaleTransaction,
    products: ProductCatalog,
    users: UserDirectory,
) -> ValidatedTransactionView:
    """Annotate a transaction with resolved names, costs and its validity."""

    catalog = index_products(products)
    cashier = resolve_cashier_name(transaction, users)
    warnings: List[str] = [cashier.warning] if cashier.warning else []
    lines = []
    for item in transaction.items or ():
        name = resolve_product_name(item, catalog)
        unit_cost, is_estimated = resolve_unit_cost(item, catalog)
        if name.warning:
            warnings.append(f"{name.value}: {name.warning}")
        lines.append(
            ValidatedLine(
                item=item,
                display_name=name.value,
                unit_cost=unit_cost,
                is_estimated=is_estimated,
                warning=name.warning,
            )
        )
    return ValidatedTransactionView(
        transaction=transaction,
        cashier_name=cashier.value,
        lines=tuple(lines),
        is_valid=is_reportable(transaction),
        warnings=tuple(warnings),
    )


def build_transaction_views(
    transactions: Sequence[SaleTransaction],
    products: ProductCatalog,
    users: UserDirectory,
) -> List[ValidatedTransactionView]:
    catalog = index_products(products)
    directory = index_users(users)
    return [build_transaction_view(tx, catalog, directory) for tx in transactions]
