"""Shared pytest fixtures and utilities for POS ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import openpyxl
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from pos_ledger.setup_store import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
# A Wednesday morning, inside the "pagi" shift.
FIXED_NOW = datetime(2025, 1, 15, 9, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n"
    "Timezone = UTC\n\n"
    "[Inventory]\n"
    "LowStockThreshold = {low_stock_threshold}\n\n"
    "[Concurrency]\n"
    "WriteRetries = 3\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


def millis(day: int = 15, hour: int = 9, minute: int = 0) -> int:
    """Epoch milliseconds of a UTC moment in January 2025."""

    return int(datetime(2025, 1, day, hour, minute, tzinfo=UTC).timestamp() * 1000)


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return create_master_workbook(base_dir / filename, overwrite=True)

    return _create_workbook


@pytest.fixture
def ledger_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        low_stock_threshold: int = 10,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                low_stock_threshold=low_stock_threshold,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a disk-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file, clock=lambda: FIXED_NOW)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory context fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for component tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        timezone_name="UTC",
        low_stock_threshold=10,
        write_retries=3,
    )


@pytest.fixture
def store() -> data_manager.WorkbookEventStore:
    """Return an event store backed by an unsaved in-memory workbook."""

    return data_manager.WorkbookEventStore(openpyxl.Workbook())


@pytest.fixture
def clock() -> Dict[str, datetime]:
    """Mutable holder for the moment returned by the context clock."""

    return {"now": FIXED_NOW}


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    store: data_manager.WorkbookEventStore,
    clock: Dict[str, datetime],
) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings, store and clock."""

    return core_logic.RuntimeContext(settings=settings, store=store, clock=lambda: clock["now"])


@pytest.fixture
def seed(store: data_manager.WorkbookEventStore) -> Callable[[str, List[Dict[str, Any]]], None]:
    """Write raw records into a collection, replacing its content."""

    def _seed(collection: str, records: List[Dict[str, Any]]) -> None:
        store.write(collection, records)

    return _seed


@pytest.fixture
def make_sale() -> Callable[..., Dict[str, Any]]:
    """Build a raw sale transaction record with sensible defaults."""

    def _make_sale(
        transaction_id: str = "T1",
        *,
        timestamp: Any = None,
        items: Optional[List[Dict[str, Any]]] = None,
        total: Any = None,
        payment_method: str = "Cash",
        cashier_id: str = "C1",
        cashier_name: Optional[str] = "Rani",
        **extra: Any,
    ) -> Dict[str, Any]:
        if items is None:
            items = [{"productId": "P1", "name": "Dimsum Ayam", "quantity": 2, "unitPrice": 10000}]
        if total is None:
            total = sum(item.get("unitPrice", 0) * item.get("quantity", 0) for item in items if isinstance(item, dict))
        record = {
            "id": transaction_id,
            "timestamp": millis() if timestamp is None else timestamp,
            "cashierId": cashier_id,
            "cashierName": cashier_name,
            "items": items,
            "total": total,
            "paymentMethod": payment_method,
            "status": "completed",
        }
        record.update(extra)
        return record

    return _make_sale


@pytest.fixture
def make_product() -> Callable[..., Dict[str, Any]]:
    """Build a raw catalog record."""

    def _make_product(product_id: str = "P1", **fields: Any) -> Dict[str, Any]:
        record = {"id": product_id, "name": f"Produk {product_id}", "price": 10000, "costPrice": 6000, "stock": 0}
        record.update(fields)
        return record

    return _make_product


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-ledger", description="POS ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
