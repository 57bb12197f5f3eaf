"""Chronological cashflow reconstruction with a running balance.

Income comes from reportable sales and from the starting floats of shifts
that are still open; expenses come from operational costs and supplier
purchases. Sales and expenses dated before the window make up the opening
balance, together with the float of every shift still open, since that cash
sits in a drawer no settlement has accounted for yet.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Tuple

from . import log
from .constants import (
    PURCHASE_CATEGORY,
    SALES_CATEGORY,
    SHIFT_FLOAT_CATEGORY,
    UNCATEGORIZED,
    CashflowType,
    ShiftStatus,
    TransactionStatus,
)
from .core_logic import (
    RuntimeContext,
    load_operational_costs,
    load_purchases,
    load_sales,
    load_shifts,
    to_millis,
)
from .records import is_finite_number, to_datetime
from .validation import select_reportable_transactions


PERIODS = ("today", "week", "month")


@dataclass(frozen=True)
class CashflowEntry:
    timestamp: int
    date: datetime
    type: CashflowType
    category: str
    description: str
    amount: Decimal
    running_balance: Decimal
    source_id: Optional[str]


@dataclass(frozen=True)
class DailyCashflow:
    """Totals of one local calendar day and the balance it closed at."""

    day: date
    income: Decimal
    expense: Decimal
    closing_balance: Decimal

    @property
    def net(self) -> Decimal:
        return self.income - self.expense


@dataclass(frozen=True)
class CashflowReport:
    """Cashflow over the half-open window ``[start, end)``."""

    start: datetime
    end: datetime
    opening_balance: Decimal
    closing_balance: Decimal
    total_income: Decimal
    total_expense: Decimal
    entries: Tuple[CashflowEntry, ...]
    daily: Tuple[DailyCashflow, ...]
    skipped_records: int = 0

    @property
    def net_cashflow(self) -> Decimal:
        return self.total_income - self.total_expense


class _CashEvent(NamedTuple):
    timestamp: int
    type: CashflowType
    category: str
    description: str
    amount: Decimal
    source_id: Optional[str]
    # Open-shift floats: always part of the opening balance.
    carried: bool = False


def _gather_events(context: RuntimeContext) -> Tuple[List[_CashEvent], int]:
    """Collect every cash event in source order and count unusable records."""

    events: List[_CashEvent] = []
    skipped = 0

    sales = load_sales(context)
    reportable = select_reportable_transactions(sales)
    skipped += len(sales) - len(reportable)
    for tx in reportable:
        if tx.status == TransactionStatus.CANCELLED:
            continue
        events.append(
            _CashEvent(
                tx.timestamp,
                CashflowType.INCOME,
                SALES_CATEGORY,
                f"Transaksi #{tx.transaction_id[:8]}",
                tx.total,
                tx.transaction_id,
            )
        )

    for shift in load_shifts(context):
        if shift.status != ShiftStatus.ACTIVE or shift.starting_cash <= 0:
            continue
        if shift.start_time is None:
            skipped += 1
            continue
        shift_type = shift.shift_type.value if shift.shift_type else ""
        events.append(
            _CashEvent(
                shift.start_time,
                CashflowType.INCOME,
                SHIFT_FLOAT_CATEGORY,
                f"Saldo awal shift {shift_type} - {shift.cashier_name}",
                shift.starting_cash,
                shift.shift_id,
                carried=True,
            )
        )

    for cost in load_operational_costs(context):
        if cost.timestamp is None or not is_finite_number(cost.amount) or cost.amount <= 0:
            skipped += 1
            continue
        category = cost.category or UNCATEGORIZED
        events.append(
            _CashEvent(
                cost.timestamp,
                CashflowType.EXPENSE,
                category,
                cost.description or category,
                cost.amount,
                cost.cost_id,
            )
        )

    for purchase in load_purchases(context):
        if purchase.timestamp is None:
            skipped += 1
            continue
        if purchase.total_cost <= 0:
            continue
        events.append(
            _CashEvent(
                purchase.timestamp,
                CashflowType.EXPENSE,
                PURCHASE_CATEGORY,
                f"Pembelian dari {purchase.supplier}",
                purchase.total_cost,
                purchase.purchase_id,
            )
        )

    if skipped:
        log.warning("Skipped %d records with unusable dates or amounts in cashflow", skipped)
    return events, skipped


def _signed(event: _CashEvent) -> Decimal:
    return event.amount if event.type == CashflowType.INCOME else -event.amount


def reconstruct_cashflow(context: RuntimeContext, start: datetime, end: datetime) -> CashflowReport:
    """Rebuild the cashflow of ``[start, end)`` with a running balance.

    The opening balance is the signed sum of the sales and expenses dated
    strictly before ``start`` plus the starting cash of every shift still
    open. An open shift whose start falls inside the window also appears as
    an entry, as the cash placed in the drawer. Events inside the window are
    sorted by timestamp; ties keep source order (sales, shift floats,
    operational costs, purchases).
    Each entry carries the balance after it, and each local calendar day the
    balance it closed at.

    Args:
        context (RuntimeContext): Active runtime context.
        start (datetime): Inclusive window start (aware).
        end (datetime): Exclusive window end (aware).

    Returns:
        CashflowReport: Opening and closing balance, entries and daily totals.

    Raises:
        ValueError: If ``end`` is before ``start``.
    """

    start_ms, end_ms = to_millis(start), to_millis(end)
    if end_ms < start_ms:
        raise ValueError("Cashflow window end must not precede its start")

    events, skipped = _gather_events(context)
    prior = sum((_signed(e) for e in events if not e.carried and e.timestamp < start_ms), Decimal("0"))
    opening = prior + sum((e.amount for e in events if e.carried), Decimal("0"))
    window = sorted((e for e in events if start_ms <= e.timestamp < end_ms), key=lambda e: e.timestamp)

    tz = context.tz
    running = opening
    entries: List[CashflowEntry] = []
    days: Dict[date, List[Decimal]] = {}
    for event in window:
        running += _signed(event)
        moment = to_datetime(event.timestamp, tz)
        entries.append(
            CashflowEntry(
                timestamp=event.timestamp,
                date=moment,
                type=event.type,
                category=event.category,
                description=event.description,
                amount=event.amount,
                running_balance=running,
                source_id=event.source_id,
            )
        )
        bucket = days.setdefault(moment.date(), [Decimal("0"), Decimal("0"), running])
        bucket[0 if event.type == CashflowType.INCOME else 1] += event.amount
        bucket[2] = running

    total_income = sum((e.amount for e in entries if e.type == CashflowType.INCOME), Decimal("0"))
    total_expense = sum((e.amount for e in entries if e.type == CashflowType.EXPENSE), Decimal("0"))
    log.info("Reconstructed cashflow with %d entries from %s to %s", len(entries), start, end)
    return CashflowReport(
        start=start,
        end=end,
        opening_balance=opening,
        closing_balance=running,
        total_income=total_income,
        total_expense=total_expense,
        entries=tuple(entries),
        daily=tuple(
            DailyCashflow(day=day, income=income, expense=expense, closing_balance=closing)
            for day, (income, expense, closing) in sorted(days.items())
        ),
        skipped_records=skipped,
    )


def resolve_period(name: str, now: datetime, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Return the local ``[start, end)`` window of ``today``, ``week`` or ``month``.

    Weeks start on Monday.

    Raises:
        ValueError: If ``name`` is not a known period.
    """

    local = now.astimezone(tz)
    midnight = datetime(local.year, local.month, local.day, tzinfo=tz)
    if name == "today":
        return midnight, midnight + timedelta(days=1)
    if name == "week":
        start = midnight - timedelta(days=local.weekday())
        return start, start + timedelta(days=7)
    if name == "month":
        start = midnight.replace(day=1)
        if start.month == 12:
            return start, start.replace(year=start.year + 1, month=1)
        return start, start.replace(month=start.month + 1)
    raise ValueError(f"Unknown period '{name}'; expected one of {', '.join(PERIODS)}")
