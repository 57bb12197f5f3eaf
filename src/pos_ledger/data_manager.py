"""Data access layer for the ledger engine.

This module provides low-level helpers that read from and write to the
ledger workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Collection operations: the :class:`WorkbookEventStore` that exposes each
   worksheet as a named collection of JSON records with a version number
   used for optimistic concurrency.
"""


from __future__ import annotations

import configparser
import json
import threading
from dataclasses import dataclass
from datetime import timezone, tzinfo
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import DEFAULT_LOW_STOCK_THRESHOLD, DEFAULT_WRITE_RETRIES, VERSIONS_SHEET, Collection


CONFIG_FILE_NAME = "config.ini"
COLLECTION_COLUMNS: Sequence[str] = ("RecordID", "Payload")
VERSION_COLUMNS: Sequence[str] = ("Collection", "Version")

Record = Dict[str, Any]


class StoreReadError(ValueError):
    """Raised when a stored payload cannot be decoded into a record."""


class ConcurrencyConflict(RuntimeError):
    """Raised when a collection changed between a read and the matching write."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    timezone_name: str = "UTC"
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    write_retries: int = DEFAULT_WRITE_RETRIES


@dataclass(frozen=True)
class VersionedRecords:
    """Snapshot of a collection together with the version it was read at."""

    version: int
    records: List[Record]


class EventStore(Protocol):
    """Collaborator contract the reconciliation components depend on."""

    def read(self, collection: str) -> List[Record]:
        ...

    def read_versioned(self, collection: str) -> VersionedRecords:
        ...

    def write(self, collection: str, records: Sequence[Record], *, expected_version: Optional[int] = None) -> int:
        ...

    def write_many(
        self,
        changes: Mapping[str, Sequence[Record]],
        *,
        expected_versions: Optional[Mapping[str, int]] = None,
    ) -> Dict[str, int]:
        ...


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``. The first match that exists on disk wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``StoreName`` and
    ``SchemaVersion``. ``Timezone``, ``[Inventory] LowStockThreshold`` and
    ``[Concurrency] WriteRetries`` are optional. Relative data file paths are
    anchored to ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional numeric option is not a positive integer or
            the timezone is unknown.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    timezone_name = parser.get("System", "Timezone", fallback="UTC")
    resolve_timezone(timezone_name)
    low_stock_threshold = parser.getint("Inventory", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    write_retries = parser.getint("Concurrency", "WriteRetries", fallback=DEFAULT_WRITE_RETRIES)
    if low_stock_threshold <= 0 or write_retries <= 0:
        raise ValueError("LowStockThreshold and WriteRetries must be positive integers")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        timezone_name=timezone_name,
        low_stock_threshold=low_stock_threshold,
        write_retries=write_retries,
    )


def resolve_timezone(name: str) -> tzinfo:
    """Map a configured timezone name onto a ``tzinfo`` instance."""

    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ledger workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent folders on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def ensure_sheet(workbook: Workbook, sheet_name: str, columns: Sequence[str]) -> Worksheet:
    """Return ``sheet_name``, creating it with a bold header row when absent."""

    if sheet_name in workbook.sheetnames:
        return workbook[sheet_name]

    sheet = workbook.create_sheet(title=sheet_name)
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = sheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    return sheet


def locate_row(sheet: Worksheet, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the worksheet.

    Args:
        sheet (Worksheet): Worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the header row.
    """

    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx
    return None


def serialize_record(record: Mapping[str, Any]) -> list[object]:
    """Convert a record into the ``[RecordID, Payload]`` column ordering."""

    record_id = record.get("id")
    payload = json.dumps(record, ensure_ascii=False, default=_json_default)
    return [None if record_id is None else str(record_id), payload]


def deserialize_record(collection: str, raw_row: Sequence[object]) -> Record:
    """Decode the JSON payload column of a collection row.

    Raises:
        StoreReadError: If the payload is not a JSON object.
    """

    payload = raw_row[1] if len(raw_row) > 1 else None
    try:
        decoded = json.loads(str(payload))
    except json.JSONDecodeError as exc:
        raise StoreReadError(f"Corrupt payload in collection '{collection}' for record {raw_row[0]!r}") from exc
    if not isinstance(decoded, dict):
        raise StoreReadError(f"Payload in collection '{collection}' is not an object: {raw_row[0]!r}")
    return decoded


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class WorkbookEventStore:
    """Event store that keeps every collection on its own worksheet.

    Each row holds one record as a JSON payload, so peripheral flows may keep
    writing loosely shaped records while the ingestion boundary normalizes
    them. A ``_Versions`` sheet tracks a counter per collection; writes that
    pass an expected version fail with :class:`ConcurrencyConflict` when the
    collection moved on since it was read.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._lock = threading.RLock()
        self._baseline = self.versions()

    @property
    def baseline_versions(self) -> Dict[str, int]:
        """Versions as they were when the workbook was loaded or last saved."""

        return dict(self._baseline)

    def mark_persisted(self) -> None:
        """Record the current versions as the on-disk baseline."""

        with self._lock:
            self._baseline = self.versions()

    def versions(self) -> Dict[str, int]:
        """Return the version counter of every collection that has one."""

        if VERSIONS_SHEET not in self.workbook.sheetnames:
            return {}
        sheet = self.workbook[VERSIONS_SHEET]
        result: Dict[str, int] = {}
        for raw in sheet.iter_rows(min_row=2, values_only=True):
            if raw and raw[0] is not None:
                result[str(raw[0])] = int(raw[1] or 0)
        return result

    def version(self, collection: str) -> int:
        return self.versions().get(_key(collection), 0)

    def read(self, collection: str) -> List[Record]:
        """Return all records of ``collection``; never-written keys yield ``[]``."""

        return self.read_versioned(collection).records

    def read_versioned(self, collection: str) -> VersionedRecords:
        """Return the records of ``collection`` with the version they belong to."""

        key = _key(collection)
        with self._lock:
            version = self.version(key)
            if key not in self.workbook.sheetnames:
                return VersionedRecords(version=version, records=[])
            sheet = self.workbook[key]
            records = [
                deserialize_record(key, raw)
                for raw in sheet.iter_rows(min_row=2, values_only=True)
                if any(cell is not None for cell in raw)
            ]
            return VersionedRecords(version=version, records=records)

    def write(self, collection: str, records: Sequence[Record], *, expected_version: Optional[int] = None) -> int:
        """Replace ``collection`` with ``records`` and return its new version."""

        key = _key(collection)
        expected = None if expected_version is None else {key: expected_version}
        return self.write_many({key: records}, expected_versions=expected)[key]

    def write_many(
        self,
        changes: Mapping[str, Sequence[Record]],
        *,
        expected_versions: Optional[Mapping[str, int]] = None,
    ) -> Dict[str, int]:
        """Replace several collections at once.

        All expected versions are checked before the first sheet is touched,
        so either every collection is replaced or none is.

        Args:
            changes (Mapping[str, Sequence[Record]]): Full replacement content
                keyed by collection.
            expected_versions (Mapping[str, int] | None): Versions the caller
                read the collections at.

        Returns:
            dict[str, int]: New version of each written collection.

        Raises:
            ConcurrencyConflict: If any collection version differs from the
                expected one.
        """

        normalized = {_key(name): list(records) for name, records in changes.items()}
        with self._lock:
            current = self.versions()
            for name, expected in (expected_versions or {}).items():
                actual = current.get(_key(name), 0)
                if actual != expected:
                    log.warning(
                        "Version conflict on collection '%s': expected %s, found %s",
                        _key(name),
                        expected,
                        actual,
                    )
                    raise ConcurrencyConflict(
                        f"Collection '{_key(name)}' changed concurrently (expected version {expected}, found {actual})"
                    )

            new_versions: Dict[str, int] = {}
            for name, records in normalized.items():
                self._replace_rows(name, records)
                new_versions[name] = current.get(name, 0) + 1
                self._set_version(name, new_versions[name])
            log.debug("Replaced collections %s", ", ".join(sorted(new_versions)))
            return new_versions

    def _replace_rows(self, collection: str, records: Iterable[Record]) -> None:
        sheet = ensure_sheet(self.workbook, collection, COLLECTION_COLUMNS)
        if sheet.max_row > 1:
            sheet.delete_rows(2, sheet.max_row - 1)
        for record in records:
            sheet.append(serialize_record(record))

    def _set_version(self, collection: str, version: int) -> None:
        sheet = ensure_sheet(self.workbook, VERSIONS_SHEET, VERSION_COLUMNS)
        row_index = locate_row(sheet, "Collection", collection)
        if row_index is None:
            sheet.append([collection, version])
        else:
            sheet.cell(row=row_index, column=2, value=version)


def save_store(store: WorkbookEventStore, destination: Path) -> None:
    """Persist the store's workbook after checking for concurrent saves.

    Collections modified in memory must still carry, on disk, the version
    they had when the workbook was loaded. Otherwise another writer saved in
    between and writing now would silently drop its changes.

    Args:
        store (WorkbookEventStore): Store whose workbook should be saved.
        destination (Path): Workbook path.

    Raises:
        ConcurrencyConflict: If a modified collection changed on disk.
    """

    dest = Path(destination).expanduser().resolve()
    baseline = store.baseline_versions
    modified = {name for name, version in store.versions().items() if baseline.get(name, 0) != version}
    if modified and dest.exists():
        on_disk = WorkbookEventStore(open_workbook(dest)).versions()
        stale = sorted(name for name in modified if on_disk.get(name, 0) != baseline.get(name, 0))
        if stale:
            log.error("Refusing to save: collections changed on disk: %s", ", ".join(stale))
            raise ConcurrencyConflict(f"Collections changed on disk since load: {', '.join(stale)}")

    save_workbook(store.workbook, dest)
    store.mark_persisted()


def _key(collection: str) -> str:
    return collection.value if isinstance(collection, Collection) else str(collection)
