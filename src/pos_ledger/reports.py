"""Profit reports and data-quality aggregates over reportable sales."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from . import log
from .constants import UNCATEGORIZED, TransactionStatus
from .core_logic import (
    RuntimeContext,
    load_operational_costs,
    load_products,
    load_sales,
    load_users,
    to_millis,
)
from .records import SaleTransaction, is_finite_number
from .validation import (
    build_transaction_views,
    compute_cogs,
    index_products,
    index_users,
    resolve_product_name,
    select_reportable_transactions,
)


ZERO = Decimal("0")


@dataclass(frozen=True)
class ProfitAndLoss:
    """Income statement of a period."""

    start: datetime
    end: datetime
    revenue: Decimal
    cogs: Decimal
    operational_costs: Decimal
    transaction_count: int
    estimated_transactions: int
    cost_breakdown: Mapping[str, Decimal] = field(default_factory=dict)
    category_revenue: Mapping[str, Decimal] = field(default_factory=dict)
    category_profit: Mapping[str, Decimal] = field(default_factory=dict)

    @property
    def gross_profit(self) -> Decimal:
        return self.revenue - self.cogs

    @property
    def net_profit(self) -> Decimal:
        return self.gross_profit - self.operational_costs

    @property
    def margin_percent(self) -> Decimal:
        return _percent(self.net_profit, self.revenue)


@dataclass(frozen=True)
class ProductProfit:
    product_id: Optional[str]
    product_name: str
    quantity: Decimal
    revenue: Decimal
    cost: Decimal
    has_estimation: bool

    @property
    def profit(self) -> Decimal:
        return self.revenue - self.cost

    @property
    def margin_percent(self) -> Decimal:
        return _percent(self.profit, self.revenue)


@dataclass(frozen=True)
class DataQualitySummary:
    """How much of the sales history needed fallbacks or was excluded."""

    total_transactions: int
    reportable_transactions: int
    estimated_cost_transactions: int
    name_fallback_lines: int
    cashier_fallback_transactions: int

    @property
    def excluded_transactions(self) -> int:
        return self.total_transactions - self.reportable_transactions


def _percent(part: Decimal, whole: Decimal) -> Decimal:
    return part / whole * 100 if whole > 0 else ZERO


def _sales_in_period(context: RuntimeContext, start: datetime, end: datetime) -> List[SaleTransaction]:
    start_ms, end_ms = to_millis(start), to_millis(end)
    return [
        tx
        for tx in select_reportable_transactions(load_sales(context))
        if tx.status != TransactionStatus.CANCELLED and start_ms <= tx.timestamp < end_ms
    ]


def profit_and_loss(context: RuntimeContext, start: datetime, end: datetime) -> ProfitAndLoss:
    """Build the profit and loss statement of ``[start, end)``.

    Revenue is the sum of unit price times quantity over every line of the
    reportable, non-cancelled sales in the period; COGS uses the resolved
    unit costs, so lines without a catalog cost contribute an estimate and
    the transaction is counted in ``estimated_transactions``.

    Args:
        context (RuntimeContext): Active runtime context.
        start (datetime): Inclusive period start.
        end (datetime): Exclusive period end.

    Returns:
        ProfitAndLoss: Revenue, costs, profit and category breakdowns.
    """

    catalog = index_products(load_products(context))
    revenue = ZERO
    cogs = ZERO
    estimated = 0
    category_revenue: Dict[str, Decimal] = {}
    category_profit: Dict[str, Decimal] = {}
    sales = _sales_in_period(context, start, end)
    for tx in sales:
        breakdown = compute_cogs(tx, catalog)
        cogs += breakdown.cogs
        if breakdown.has_estimation:
            estimated += 1
        for item, line in zip(tx.items, breakdown.lines):
            line_revenue = item.unit_price * item.quantity
            revenue += line_revenue
            product = catalog.get(item.product_id or "")
            category = (product.category if product else None) or UNCATEGORIZED
            category_revenue[category] = category_revenue.get(category, ZERO) + line_revenue
            category_profit[category] = category_profit.get(category, ZERO) + line_revenue - line.cost

    start_ms, end_ms = to_millis(start), to_millis(end)
    cost_breakdown: Dict[str, Decimal] = {}
    for cost in load_operational_costs(context):
        if cost.timestamp is None or not is_finite_number(cost.amount) or cost.amount <= 0:
            continue
        if start_ms <= cost.timestamp < end_ms:
            category = cost.category or UNCATEGORIZED
            cost_breakdown[category] = cost_breakdown.get(category, ZERO) + cost.amount

    if estimated:
        log.warning("%d of %d transactions use estimated cost of goods sold", estimated, len(sales))
    return ProfitAndLoss(
        start=start,
        end=end,
        revenue=revenue,
        cogs=cogs,
        operational_costs=sum(cost_breakdown.values(), ZERO),
        transaction_count=len(sales),
        estimated_transactions=estimated,
        cost_breakdown=cost_breakdown,
        category_revenue=category_revenue,
        category_profit=category_profit,
    )


def product_profit(context: RuntimeContext, start: datetime, end: datetime) -> List[ProductProfit]:
    """Return per-product profit over ``[start, end)``, most profitable first."""

    catalog = index_products(load_products(context))
    totals: Dict[str, Dict[str, object]] = {}
    for tx in _sales_in_period(context, start, end):
        breakdown = compute_cogs(tx, catalog)
        for item, line in zip(tx.items, breakdown.lines):
            key = item.product_id or resolve_product_name(item, catalog).value
            entry = totals.setdefault(
                key,
                {
                    "product_id": item.product_id,
                    "product_name": line.product_name,
                    "quantity": ZERO,
                    "revenue": ZERO,
                    "cost": ZERO,
                    "has_estimation": False,
                },
            )
            entry["quantity"] += item.quantity
            entry["revenue"] += item.unit_price * item.quantity
            entry["cost"] += line.cost
            entry["has_estimation"] = entry["has_estimation"] or line.is_estimated

    results = [ProductProfit(**entry) for entry in totals.values()]
    results.sort(key=lambda result: result.profit, reverse=True)
    return results


def data_quality_summary(context: RuntimeContext) -> DataQualitySummary:
    """Count excluded transactions and the fallbacks used by the rest."""

    sales = load_sales(context)
    products = index_products(load_products(context))
    users = index_users(load_users(context))
    views = build_transaction_views(sales, products, users)
    reportable = [view for view in views if view.is_valid]
    summary = DataQualitySummary(
        total_transactions=len(views),
        reportable_transactions=len(reportable),
        estimated_cost_transactions=sum(1 for view in reportable if view.has_estimation),
        name_fallback_lines=sum(1 for view in views for line in view.lines if line.warning),
        cashier_fallback_transactions=sum(
            1 for view in views if view.cashier_name != _linked_cashier_name(view.transaction, users)
        ),
    )
    log.info(
        "Data quality: %d of %d transactions reportable",
        summary.reportable_transactions,
        summary.total_transactions,
    )
    return summary


def _linked_cashier_name(transaction: SaleTransaction, users) -> Optional[str]:
    user = users.get(transaction.cashier_id) if transaction.cashier_id else None
    return user.name if user is not None else None
