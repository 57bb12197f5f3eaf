"""Utility for initializing the POS ledger workbook.

The module doubles as a script (``pos-ledger-setup``) and as a library used
by tests or other tooling. The workbook gets one sheet per collection plus
the version sheet used for optimistic concurrency. An optional JSON seed file
can provide the initial catalog and users; opening stock is recorded as a
restock movement so the stock ledger replays to the seeded quantities.
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import openpyxl

from . import data_manager, log
from .constants import VERSIONS_SHEET, Collection, StockChangeType
from .core_logic import generate_record_id, to_millis
from .records import StockMovement, coerce_int, coerce_text, serialize_movement


OPENING_STOCK_REASON = "Stok awal"
SETUP_ACTOR = "setup"


def create_master_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Create an empty ledger workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing ledger workbook: {destination}")

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    for collection in Collection:
        data_manager.ensure_sheet(workbook, collection.value, data_manager.COLLECTION_COLUMNS)
    data_manager.ensure_sheet(workbook, VERSIONS_SHEET, data_manager.VERSION_COLUMNS)

    data_manager.save_workbook(workbook, destination)
    log.info("Created ledger workbook at '%s'", destination)
    return destination


def seed_store(
    store: data_manager.EventStore,
    seed: Mapping[str, Any],
    *,
    when: Optional[datetime] = None,
) -> List[StockMovement]:
    """Load the initial products and users into an empty store.

    Each positive ``stock`` in the seed is also recorded as an opening
    restock movement, so replaying the ledger reproduces it.

    Returns:
        list[StockMovement]: The opening stock movements.

    Raises:
        ValueError: If the seed is malformed or the store already holds
            products.
    """

    products = seed.get("products", [])
    users = seed.get("users", [])
    if not isinstance(products, list) or not isinstance(users, list):
        raise ValueError("Seed 'products' and 'users' must be lists")
    if store.read(Collection.PRODUCTS):
        raise ValueError("Refusing to seed a store that already holds products")

    moment = when or datetime.now(UTC)
    stored_products: List[Dict[str, Any]] = []
    movements: List[StockMovement] = []
    for raw in products:
        if not isinstance(raw, Mapping):
            raise ValueError(f"Seed product is not an object: {raw!r}")
        product_id = coerce_text(raw.get("id"))
        if product_id is None:
            raise ValueError(f"Seed product without id: {raw!r}")
        opening = coerce_int(raw.get("stock"))
        if opening < 0:
            raise ValueError(f"Seed product '{product_id}' has negative stock")
        stored_products.append({**raw, "stock": opening})
        if opening:
            movements.append(
                StockMovement(
                    movement_id=generate_record_id(prefix="MOV", when=moment),
                    product_id=product_id,
                    product_name=coerce_text(raw.get("name")) or product_id,
                    change_type=StockChangeType.RESTOCK,
                    quantity_before=0,
                    quantity_after=opening,
                    quantity_changed=opening,
                    reason=OPENING_STOCK_REASON,
                    actor_name=SETUP_ACTOR,
                    timestamp=to_millis(moment),
                )
            )

    store.write_many(
        {
            Collection.PRODUCTS: stored_products,
            Collection.USERS: list(users),
            Collection.STOCK_MOVEMENTS: [serialize_movement(m) for m in movements],
        }
    )
    log.info("Seeded %d products and %d users", len(stored_products), len(users))
    return movements


def run_from_config(config_path: Path, *, overwrite: bool = False, seed_path: Optional[Path] = None) -> Path:
    """Create the workbook named in ``config.ini`` and optionally seed it."""

    config_path = config_path.expanduser().resolve()
    settings = data_manager.parse_settings(data_manager.read_config(config_path), base_path=config_path.parent)
    destination = create_master_workbook(settings.data_file, overwrite=overwrite)
    if seed_path is not None:
        seed = json.loads(Path(seed_path).read_text(encoding="utf-8"))
        store = data_manager.WorkbookEventStore(data_manager.open_workbook(destination))
        seed_store(store, seed)
        data_manager.save_store(store, destination)
    return destination


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the POS ledger workbook")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument("--seed", type=Path, default=None, help="JSON file with initial products and users.")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- POS Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force, seed_path=args.seed)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (json.JSONDecodeError, ValueError) as exc:
        print(f"\n[ERROR] Invalid configuration or seed data: {exc}")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
