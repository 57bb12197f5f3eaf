"""Enumerations and fixed business values shared across the ledger engine.

Centralises domain constants so that the store layer, the ingestion
boundary, and the reconciliation components rely on a single source of truth
for collection keys, status values, and fallback labels.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Mapping


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Share of the recorded sale price used when no catalog cost is known.
ESTIMATED_COST_RATIO = Decimal("0.6")

DEFAULT_LOW_STOCK_THRESHOLD = 10
DEFAULT_WRITE_RETRIES = 3

VERSIONS_SHEET = "_Versions"

UNKNOWN_PRODUCT_LABEL = "Produk Tidak Diketahui"
UNKNOWN_CASHIER_LABEL = "Kasir Tidak Diketahui"
PRODUCT_ID_LABEL = "Produk #{product_id}"
CASHIER_ID_LABEL = "Kasir #{cashier_id}"

NAME_FROM_TRANSACTION_WARNING = "Produk tidak ditemukan di database, menggunakan nama dari transaksi"
NAME_UNAVAILABLE_WARNING = "Nama produk tidak tersedia"
CASHIER_NOT_FOUND_WARNING = "Nama kasir tidak ditemukan"
CASHIER_INCOMPLETE_WARNING = "Data kasir tidak lengkap"

SALES_CATEGORY = "Penjualan"
SHIFT_FLOAT_CATEGORY = "Saldo Awal Shift"
PURCHASE_CATEGORY = "Pembelian"
UNCATEGORIZED = "Uncategorized"


class Collection(str, Enum):
    """Enumerate the collection keys managed by the event store."""

    SALE_TRANSACTIONS = "sale-transactions"
    SHIFTS = "shifts"
    STOCK_MOVEMENTS = "stock-movements"
    OPERATIONAL_COSTS = "operational-costs"
    PURCHASES = "purchases"
    PRODUCTS = "products"
    USERS = "users"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "Cash"
    QRIS = "QRIS"
    E_WALLET = "E-Wallet"
    BANK_TRANSFER = "Transfer Bank"


# Spellings found in older records, matched case-insensitively.
PAYMENT_METHOD_ALIASES: Mapping[str, PaymentMethod] = {
    "cash": PaymentMethod.CASH,
    "tunai": PaymentMethod.CASH,
    "qris": PaymentMethod.QRIS,
    "e-wallet": PaymentMethod.E_WALLET,
    "ewallet": PaymentMethod.E_WALLET,
    "transfer bank": PaymentMethod.BANK_TRANSFER,
    "transfer": PaymentMethod.BANK_TRANSFER,
}


class TransactionStatus(str, Enum):
    """Enumerate the lifecycle states of a sale transaction."""

    COMPLETED = "completed"
    PENDING = "pending"
    CANCELLED = "cancelled"


class ShiftType(str, Enum):
    """Enumerate the working periods a shift can belong to."""

    PAGI = "pagi"
    SIANG = "siang"
    MALAM = "malam"


SHIFT_TIME_RANGES: Mapping[ShiftType, str] = {
    ShiftType.PAGI: "06:00 - 14:00",
    ShiftType.SIANG: "14:00 - 22:00",
    ShiftType.MALAM: "22:00 - 06:00",
}


class ShiftStatus(str, Enum):
    """Enumerate the cash-drawer shift states."""

    ACTIVE = "active"
    CLOSED = "closed"


class StockChangeType(str, Enum):
    """Enumerate the reasons a stock movement can be recorded for."""

    RESTOCK = "restock"
    SALE = "sale"
    ADJUSTMENT = "adjustment"


class CashflowType(str, Enum):
    """Enumerate the directions of a cashflow entry."""

    INCOME = "income"
    EXPENSE = "expense"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ESTIMATED_COST_RATIO",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_WRITE_RETRIES",
    "VERSIONS_SHEET",
    "Collection",
    "PaymentMethod",
    "PAYMENT_METHOD_ALIASES",
    "TransactionStatus",
    "ShiftType",
    "SHIFT_TIME_RANGES",
    "ShiftStatus",
    "StockChangeType",
    "CashflowType",
]
