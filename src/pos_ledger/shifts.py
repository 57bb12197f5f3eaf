"""Cash-drawer shift lifecycle and reconciliation.

A shift opens with a counted starting float and closes with the counted
drawer cash. At close the expected cash is the float plus the cash sales the
cashier made during the shift; the difference between counted and expected
cash is the drawer variance. The shift report aggregates the shift history
of a window per cashier.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from . import log
from .constants import SHIFT_TIME_RANGES, Collection, PaymentMethod, ShiftStatus, ShiftType, TransactionStatus
from .core_logic import (
    BusinessRuleViolation,
    CloseShiftCommand,
    DuplicateActiveShiftError,
    MissingReferenceError,
    OpenShiftCommand,
    RuntimeContext,
    ShiftAlreadyActiveError,
    ShiftAlreadyClosedError,
    generate_record_id,
    load_sales,
    load_shifts,
    require_nonnegative_money,
    resolve_timestamp,
    run_with_retry,
    to_millis,
)
from .records import (
    SaleTransaction,
    Shift,
    coerce_text,
    deserialize_sale,
    deserialize_shift,
    is_finite_number,
    serialize_shift,
    to_datetime,
)
from .validation import select_reportable_transactions


SHIFT_ID_PREFIX = "SHIFT"
UNKNOWN_PAYMENT_METHOD = "Unknown"


@dataclass(frozen=True)
class ShiftSalesSummary:
    """Sales made by a cashier during one shift."""

    total_sales: Decimal
    cash_sales: Decimal
    transaction_count: int
    by_payment_method: Mapping[str, Decimal]


def determine_shift_type(moment: datetime) -> ShiftType:
    """Classify a local time: pagi 06-14, siang 14-22, malam otherwise."""

    if 6 <= moment.hour < 14:
        return ShiftType.PAGI
    if 14 <= moment.hour < 22:
        return ShiftType.SIANG
    return ShiftType.MALAM


def shift_time_range(shift_type: ShiftType) -> str:
    return SHIFT_TIME_RANGES[ShiftType(shift_type)]


def active_shift_index(shifts: Iterable[Shift]) -> Dict[str, str]:
    """Map each cashier id to the id of their active shift.

    Raises:
        DuplicateActiveShiftError: If stored data holds two active shifts for
            the same cashier.
    """

    index: Dict[str, str] = {}
    for shift in shifts:
        if shift.status != ShiftStatus.ACTIVE:
            continue
        if shift.cashier_id in index:
            log.error(
                "Cashier %s has more than one active shift: %s and %s",
                shift.cashier_id,
                index[shift.cashier_id],
                shift.shift_id,
            )
            raise DuplicateActiveShiftError(f"Cashier '{shift.cashier_id}' has more than one active shift")
        index[shift.cashier_id] = shift.shift_id
    return index


def list_active_shifts(context: RuntimeContext) -> List[Shift]:
    return [shift for shift in load_shifts(context) if shift.status == ShiftStatus.ACTIVE]


def get_active_shift(context: RuntimeContext, cashier_id: str) -> Optional[Shift]:
    """Return the active shift of ``cashier_id``, or ``None``."""

    shifts = load_shifts(context)
    shift_id = active_shift_index(shifts).get(cashier_id)
    return next((shift for shift in shifts if shift.shift_id == shift_id), None)


def _belongs_to_shift(shift: Shift, transaction: SaleTransaction, until: Optional[int]) -> bool:
    if transaction.cashier_id != shift.cashier_id or transaction.status == TransactionStatus.CANCELLED:
        return False
    if transaction.shift_id and transaction.shift_id != shift.shift_id:
        return False
    if transaction.timestamp is None or shift.start_time is None:
        return False
    if transaction.timestamp < shift.start_time:
        return False
    return until is None or transaction.timestamp <= until


def _amount(transaction: SaleTransaction) -> Decimal:
    return transaction.total if is_finite_number(transaction.total) else Decimal("0")


def summarize_shift_sales(
    shift: Shift,
    transactions: Iterable[SaleTransaction],
    until: Optional[int] = None,
) -> ShiftSalesSummary:
    """Aggregate the sales belonging to ``shift``.

    A sale belongs to a shift when it was made by the shift's cashier between
    the shift start and ``until`` (both inclusive), is not cancelled and,
    when it records a shift id, records this one. ``until`` defaults to the
    shift's end time; an open shift without ``until`` is unbounded.

    Args:
        shift (Shift): Shift to summarise.
        transactions (Iterable[SaleTransaction]): Candidate sales.
        until (int | None): Inclusive upper bound in epoch milliseconds.

    Returns:
        ShiftSalesSummary: Totals overall, in cash and per payment method.
    """

    bound = until if until is not None else shift.end_time
    total = Decimal("0")
    cash = Decimal("0")
    count = 0
    by_method: Dict[str, Decimal] = {}
    for transaction in transactions:
        if not _belongs_to_shift(shift, transaction, bound):
            continue
        amount = _amount(transaction)
        total += amount
        count += 1
        if transaction.payment_method is not None:
            method = transaction.payment_method.value
        else:
            method = transaction.raw_payment_method or UNKNOWN_PAYMENT_METHOD
        by_method[method] = by_method.get(method, Decimal("0")) + amount
        if transaction.payment_method == PaymentMethod.CASH:
            cash += amount
    return ShiftSalesSummary(total_sales=total, cash_sales=cash, transaction_count=count, by_payment_method=by_method)


def cash_sales_for_shift(
    shift: Shift,
    transactions: Iterable[SaleTransaction],
    until: Optional[int] = None,
) -> Decimal:
    """Sum the cash sales belonging to ``shift`` up to ``until``."""

    return summarize_shift_sales(shift, transactions, until).cash_sales


def reconcile_shift(shift: Shift, actual_cash: Decimal, cash_sales: Decimal, closed_at: int) -> Shift:
    """Close ``shift`` arithmetically.

    ``expected_cash`` is the starting float plus the cash sales and
    ``difference`` is ``actual_cash - expected_cash``: positive for a surplus,
    negative for a shortage.
    """

    expected = shift.starting_cash + cash_sales
    return replace(
        shift,
        status=ShiftStatus.CLOSED,
        end_time=closed_at,
        ending_cash=actual_cash,
        expected_cash=expected,
        difference=actual_cash - expected,
        cash_sales=cash_sales,
    )


def open_shift(context: RuntimeContext, command: OpenShiftCommand) -> Shift:
    """Open a new shift for a cashier.

    The shift type follows the local hour of the opening time.

    Args:
        context (RuntimeContext): Active runtime context.
        command (OpenShiftCommand): Cashier and starting float.

    Returns:
        Shift: The stored active shift.

    Raises:
        ValueError: If the cashier id is blank or the float is negative.
        ShiftAlreadyActiveError: If the cashier already has an active shift.
        DuplicateActiveShiftError: If stored shifts are already inconsistent.
    """

    cashier_id = coerce_text(command.cashier_id)
    if cashier_id is None:
        raise ValueError("Cashier id is required")
    require_nonnegative_money(command.starting_cash)
    when = resolve_timestamp(context, command.timestamp)
    shift = Shift(
        shift_id=generate_record_id(prefix=SHIFT_ID_PREFIX, when=when),
        cashier_id=cashier_id,
        cashier_name=command.cashier_name,
        shift_type=determine_shift_type(when.astimezone(context.tz)),
        start_time=to_millis(when),
        end_time=None,
        starting_cash=command.starting_cash,
        ending_cash=None,
        expected_cash=None,
        difference=None,
        status=ShiftStatus.ACTIVE,
        notes=command.notes,
    )

    def _attempt() -> Shift:
        stored = context.store.read_versioned(Collection.SHIFTS)
        existing = [deserialize_shift(raw, tz=context.tz) for raw in stored.records]
        active = active_shift_index(existing)
        if cashier_id in active:
            log.error("Cashier %s already has active shift %s", cashier_id, active[cashier_id])
            raise ShiftAlreadyActiveError(f"Cashier '{cashier_id}' already has an active shift ({active[cashier_id]})")
        context.store.write_many(
            {Collection.SHIFTS: stored.records + [serialize_shift(shift)]},
            expected_versions={Collection.SHIFTS: stored.version},
        )
        return shift

    opened = run_with_retry(_attempt, attempts=context.settings.write_retries)
    log.info("Opened %s shift %s for cashier %s", opened.shift_type.value, opened.shift_id, cashier_id)
    return opened


def close_shift(context: RuntimeContext, command: CloseShiftCommand) -> Shift:
    """Close a shift with the counted drawer cash.

    The cash sales are collected from the sale transactions read in the same
    attempt; the write is rejected if either the shifts or the sales changed
    meanwhile, so the expected cash always matches committed data.

    Args:
        context (RuntimeContext): Active runtime context.
        command (CloseShiftCommand): Shift id and counted cash.

    Returns:
        Shift: The stored closed shift.

    Raises:
        ValueError: If the counted cash is negative.
        MissingReferenceError: If the shift does not exist.
        ShiftAlreadyClosedError: If the shift is already closed.
        BusinessRuleViolation: If the closing time precedes the opening time.
    """

    require_nonnegative_money(command.actual_cash)
    closed_at = to_millis(resolve_timestamp(context, command.timestamp))

    def _attempt() -> Shift:
        stored = context.store.read_versioned(Collection.SHIFTS)
        sales = context.store.read_versioned(Collection.SALE_TRANSACTIONS)
        index = next(
            (i for i, raw in enumerate(stored.records) if coerce_text(raw.get("id")) == command.shift_id),
            None,
        )
        if index is None:
            log.error("Cannot close shift %s: not found", command.shift_id)
            raise MissingReferenceError(f"Shift '{command.shift_id}' not found")
        shift = deserialize_shift(stored.records[index], tz=context.tz)
        if shift.status == ShiftStatus.CLOSED:
            log.error("Cannot close shift %s: already closed", command.shift_id)
            raise ShiftAlreadyClosedError(f"Shift '{command.shift_id}' is already closed")
        if shift.start_time is not None and closed_at < shift.start_time:
            raise BusinessRuleViolation(f"Shift '{command.shift_id}' cannot close before it started")

        transactions = [deserialize_sale(raw, tz=context.tz) for raw in sales.records]
        summary = summarize_shift_sales(shift, transactions, closed_at)
        closed = replace(
            reconcile_shift(shift, command.actual_cash, summary.cash_sales, closed_at),
            total_sales=summary.total_sales,
            transaction_count=summary.transaction_count,
            notes=command.notes or shift.notes,
        )
        updated = list(stored.records)
        updated[index] = {**stored.records[index], **serialize_shift(closed)}
        context.store.write_many(
            {Collection.SHIFTS: updated},
            expected_versions={
                Collection.SHIFTS: stored.version,
                Collection.SALE_TRANSACTIONS: sales.version,
            },
        )
        return closed

    closed = run_with_retry(_attempt, attempts=context.settings.write_retries)
    if closed.difference:
        log.warning("Shift %s closed with a cash difference of %s", closed.shift_id, closed.difference)
    log.info("Closed shift %s: expected %s, counted %s", closed.shift_id, closed.expected_cash, closed.ending_cash)
    return closed


@dataclass(frozen=True)
class CashierShiftStats:
    """Shift totals of one cashier over a reporting window."""

    cashier_id: str
    cashier_name: str
    shift_count: int
    active_count: int
    total_sales: Decimal
    cash_sales: Decimal
    transaction_count: int
    total_difference: Decimal
    shift_breakdown: Mapping[ShiftType, int]

    @property
    def average_transaction_value(self) -> Decimal:
        if not self.transaction_count:
            return Decimal("0")
        return self.total_sales / self.transaction_count


@dataclass(frozen=True)
class ShiftReport:
    """Shifts started in ``[start, end)`` with per-cashier totals."""

    start: datetime
    end: datetime
    shifts: Tuple[Shift, ...]
    cashiers: Tuple[CashierShiftStats, ...]

    @property
    def total_sales(self) -> Decimal:
        return sum((stats.total_sales for stats in self.cashiers), Decimal("0"))

    @property
    def total_transactions(self) -> int:
        return sum(stats.transaction_count for stats in self.cashiers)

    @property
    def shift_breakdown(self) -> Dict[ShiftType, int]:
        totals = {shift_type: 0 for shift_type in ShiftType}
        for stats in self.cashiers:
            for shift_type, count in stats.shift_breakdown.items():
                totals[shift_type] += count
        return totals


def _shift_type_of(shift: Shift, context: RuntimeContext) -> ShiftType:
    if shift.shift_type is not None:
        return shift.shift_type
    return determine_shift_type(to_datetime(shift.start_time, context.tz))


def shifts_in_range(
    context: RuntimeContext,
    start: datetime,
    end: datetime,
    *,
    cashier_id: Optional[str] = None,
    shift_type: Optional[ShiftType] = None,
) -> List[Shift]:
    """Return the shifts started in ``[start, end)``, oldest first.

    Shifts without a usable start time cannot be placed in a window and are
    left out.
    """

    start_ms, end_ms = to_millis(start), to_millis(end)
    if end_ms < start_ms:
        raise ValueError("Shift report window end must not precede its start")
    selected = [
        shift
        for shift in load_shifts(context)
        if shift.start_time is not None
        and start_ms <= shift.start_time < end_ms
        and (cashier_id is None or shift.cashier_id == cashier_id)
        and (shift_type is None or _shift_type_of(shift, context) == shift_type)
    ]
    return sorted(selected, key=lambda shift: shift.start_time)


def shift_report(
    context: RuntimeContext,
    start: datetime,
    end: datetime,
    *,
    cashier_id: Optional[str] = None,
    shift_type: Optional[ShiftType] = None,
) -> ShiftReport:
    """Aggregate the shifts started in ``[start, end)`` per cashier.

    Sales are matched to shifts with the same rules as at closing and only
    reportable sales count. Closed shifts are bounded by their end time;
    active shifts take every sale up to now. ``total_difference`` sums the
    drawer variance of the closed shifts.

    Args:
        context (RuntimeContext): Active runtime context.
        start (datetime): Inclusive window start (aware).
        end (datetime): Exclusive window end (aware).
        cashier_id (str | None): Restrict the report to one cashier.
        shift_type (ShiftType | None): Restrict the report to one shift type.

    Returns:
        ShiftReport: Selected shifts and per-cashier statistics in order of
        each cashier's first shift.
    """

    selected = shifts_in_range(context, start, end, cashier_id=cashier_id, shift_type=shift_type)
    sales = select_reportable_transactions(load_sales(context))
    now_ms = context.now_millis()

    grouped: Dict[str, List[Shift]] = {}
    for shift in selected:
        grouped.setdefault(shift.cashier_id, []).append(shift)

    cashiers: List[CashierShiftStats] = []
    for cashier, cashier_shifts in grouped.items():
        total = cash = difference = Decimal("0")
        count = 0
        breakdown = {kind: 0 for kind in ShiftType}
        for shift in cashier_shifts:
            until = now_ms if shift.status == ShiftStatus.ACTIVE else shift.end_time
            summary = summarize_shift_sales(shift, sales, until)
            total += summary.total_sales
            cash += summary.cash_sales
            count += summary.transaction_count
            breakdown[_shift_type_of(shift, context)] += 1
            if shift.status == ShiftStatus.CLOSED and is_finite_number(shift.difference):
                difference += shift.difference
        cashiers.append(
            CashierShiftStats(
                cashier_id=cashier,
                cashier_name=cashier_shifts[-1].cashier_name,
                shift_count=len(cashier_shifts),
                active_count=sum(1 for shift in cashier_shifts if shift.status == ShiftStatus.ACTIVE),
                total_sales=total,
                cash_sales=cash,
                transaction_count=count,
                total_difference=difference,
                shift_breakdown=breakdown,
            )
        )

    log.info("Built shift report for %d shifts of %d cashiers", len(selected), len(cashiers))
    return ShiftReport(start=start, end=end, shifts=tuple(selected), cashiers=tuple(cashiers))
