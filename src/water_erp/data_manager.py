"""Data access layer for the water delivery ERP.

This module owns everything that touches the master workbook on disk. Business
rules belong in :mod:`water_erp.core_logic` and :mod:`water_erp.inventory`.

The public API covers four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting and reloading the Excel file.
3. Schema migration: creating every table sheet up front and upgrading the
   header rows of older workbooks.
4. The keyed record store: per-user namespaced tables keyed by an
   auto-incrementing integer id.
"""


from __future__ import annotations

import configparser
import os
import threading
import weakref
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    ID_COLUMN,
    META_COLUMNS,
    META_SHEET,
    OWNER_COLUMN,
    SCHEMA_VERSION_KEY,
    SEQUENCES_COLUMNS,
    SEQUENCES_SHEET,
    TableName,
    table_columns,
)
from .exceptions import NoUserBoundError, StorageIOError


CONFIG_FILE_NAME = "config.ini"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_user_id: str
    autosave: bool = True
    strict_reconciliation: bool = False
    restore_stock_on_sale_change: bool = False
    log_file: Optional[Path] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the data layer.

    An explicit path is returned as-is without verification. Otherwise the
    search walks up from the current working directory toward the filesystem
    root and returns the first ``CONFIG_FILE_NAME`` it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of the
            upward search.

    Returns:
        Path: The explicit path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of individual entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` entries are required. The ``[Storage]``
    and ``[Inventory]`` switches are optional and fall back to autosave on,
    lenient reconciliation and no stock restoration for sale edits. The
    optional ``[Logging] LogFile`` redirects the package log file. Relative
    paths are anchored to ``base_path`` (or the current working directory)
    and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve relative
            ``DataFile`` and ``LogFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional switch is not a recognised boolean.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        default_user = parser.get("Defaults", "DefaultUser")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    autosave = parser.getboolean("Storage", "AutoSave", fallback=True)
    strict = parser.getboolean("Inventory", "StrictReconciliation", fallback=False)
    restore = parser.getboolean("Inventory", "RestoreStockOnSaleChange", fallback=False)
    log_file_raw = parser.get("Logging", "LogFile", fallback="").strip()

    if base_path is None:
        base_path = Path.cwd()
    data_file_path = _anchor(Path(data_file_raw), base_path)
    log_file_path = _anchor(Path(log_file_raw), base_path) if log_file_raw else None

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_user_id=default_user,
        autosave=autosave,
        strict_reconciliation=strict,
        restore_stock_on_sale_change=restore,
        log_file=log_file_path,
    )


def _anchor(path: Path, base_path: Path) -> Path:
    path = path.expanduser()
    if path.is_absolute():
        return path
    return (base_path / path).resolve()


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: Workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        StorageIOError: If the file exists but cannot be parsed as a workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
        log.error("Workbook '%s' could not be loaded: %s", data_file, exc)
        raise StorageIOError(f"Workbook is unreadable: {data_file}") from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook atomically at ``destination``.

    The workbook is first written to a sibling temporary file which then
    replaces the destination, so a failed save never leaves a truncated
    workbook behind. Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Target path of the serialized workbook.

    Raises:
        OSError: If the temporary file cannot be written or moved.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    temp_path = dest.with_name(dest.name + ".tmp")
    try:
        workbook.save(temp_path)
        os.replace(temp_path, dest)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _write_header(sheet: Worksheet, columns: List[str]) -> None:
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = sheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font


def _ensure_sheet(workbook: Workbook, title: str, columns: List[str], applied: List[str]) -> Worksheet:
    """Create ``title`` or append any header columns it is missing."""

    if title not in workbook.sheetnames:
        sheet = workbook.create_sheet(title=title)
        _write_header(sheet, columns)
        applied.append(f"created sheet '{title}'")
        return sheet

    sheet = workbook[title]
    existing = [cell.value for cell in sheet[1] if cell.value is not None]
    next_column = len(existing) + 1
    for column_name in columns:
        if column_name in existing:
            continue
        cell = sheet.cell(row=1, column=next_column, value=column_name)
        cell.font = Font(bold=True)
        next_column += 1
        applied.append(f"added column '{column_name}' to '{title}'")
    return sheet


def read_schema_version(workbook: Workbook) -> Optional[str]:
    """Return the schema version recorded in the ``_meta`` sheet, if any."""

    if META_SHEET not in workbook.sheetnames:
        return None
    for key, value in workbook[META_SHEET].iter_rows(min_row=2, max_col=2, values_only=True):
        if key == SCHEMA_VERSION_KEY:
            return None if value is None else str(value)
    return None


def migrate_workbook(workbook: Workbook, *, target_version: str = EXPECTED_SCHEMA_VERSION) -> List[str]:
    """Bring ``workbook`` up to ``target_version`` in one explicit step.

    Every table known to :class:`~water_erp.constants.TableName` is created
    up front together with the ``_sequences`` and ``_meta`` bookkeeping
    sheets. Existing sheets keep their rows; only missing header columns are
    appended, so records written by older versions remain readable. The
    target version is then recorded in ``_meta``.

    Args:
        workbook (Workbook): Workbook to upgrade in place.
        target_version (str): Schema version to record once the upgrade is
            complete.

    Returns:
        list[str]: Human readable descriptions of the changes applied. An
            empty list means the workbook was already current.
    """

    applied: List[str] = []
    for table in TableName:
        _ensure_sheet(workbook, table.value, table_columns(table), applied)
    _ensure_sheet(workbook, SEQUENCES_SHEET, list(SEQUENCES_COLUMNS), applied)
    meta = _ensure_sheet(workbook, META_SHEET, list(META_COLUMNS), applied)

    previous = read_schema_version(workbook)
    if previous != target_version:
        for row_index, (key,) in enumerate(meta.iter_rows(min_row=2, max_col=1, values_only=True), start=2):
            if key == SCHEMA_VERSION_KEY:
                meta.cell(row=row_index, column=2, value=target_version)
                break
        else:
            meta.append([SCHEMA_VERSION_KEY, target_version])
        applied.append(f"schema version {previous or 'unset'} -> {target_version}")

    if "Sheet" in workbook.sheetnames and workbook["Sheet"].max_row == 1 and workbook["Sheet"]["A1"].value is None:
        workbook.remove(workbook["Sheet"])

    if applied:
        log.info("Migrated workbook: %s", "; ".join(applied))
    else:
        log.debug("Workbook already at schema version '%s'", target_version)
    return applied


class _LockRegistry:
    """Re-entrant locks shared by every store handle over one workbook.

    ``workbook_lock`` serializes the store primitives; ``get`` hands out one
    lock per key so services can hold a record across a read-modify-write.
    Record locks are held weakly and disappear once no caller references
    them, so the registry only holds locks that are in use.
    """

    def __init__(self) -> None:
        self.workbook_lock = threading.RLock()
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def get(self, key: Tuple[str, str, int]) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


def _coerce_record_id(record_id: Any) -> int:
    if isinstance(record_id, bool) or not isinstance(record_id, int):
        raise TypeError(f"Record ids must be integers, got {record_id!r}")
    return record_id


class RecordStore:
    """Per-user keyed record store backed by the master workbook.

    Each :class:`~water_erp.constants.TableName` maps to one worksheet whose
    rows carry an ``OwnerID`` and an integer ``id`` ahead of the entity
    fields. Every operation is scoped to the bound user, so two users never
    see each other's rows, and ids are generated per (user, table) starting
    at 1. Generated ids are never reused, even after a delete.

    Each primitive is atomic with respect to other primitives on the same
    workbook. Sequences spanning several calls must take
    :meth:`record_lock` themselves.

    Args:
        workbook (Workbook): Migrated workbook holding every table sheet.
        user_id (str | None): User namespace to bind immediately.
        destination (Path | None): When given, every mutating primitive
            persists the workbook there before returning.
    """

    def __init__(
        self,
        workbook: Workbook,
        *,
        user_id: Optional[str] = None,
        destination: Optional[Path] = None,
        _locks: Optional[_LockRegistry] = None,
    ) -> None:
        self._workbook = workbook
        self._destination = destination
        self._locks = _locks if _locks is not None else _LockRegistry()
        self._user_id: Optional[str] = None
        if user_id is not None:
            self.bind_user(user_id)

    # ------------------------------------------------------------------
    # Namespace binding
    # ------------------------------------------------------------------

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def workbook(self) -> Workbook:
        return self._workbook

    def bind_user(self, user_id: str) -> None:
        """Scope every later operation on this handle to ``user_id``."""

        if user_id is None or not str(user_id).strip():
            raise ValueError("User id must be a non-empty string")
        self._user_id = str(user_id).strip()
        log.info("Bound record store to user '%s'", self._user_id)

    def unbind_user(self) -> None:
        """Clear the bound user; later operations raise ``NoUserBoundError``."""

        if self._user_id is not None:
            log.info("Unbound record store from user '%s'", self._user_id)
        self._user_id = None

    def for_user(self, user_id: str) -> "RecordStore":
        """Return a new handle bound to ``user_id`` over the same workbook."""

        return RecordStore(
            self._workbook,
            user_id=user_id,
            destination=self._destination,
            _locks=self._locks,
        )

    def record_lock(self, table: TableName, record_id: int) -> threading.RLock:
        """Return the lock guarding ``record_id`` of ``table`` for this user."""

        user = self._require_user()
        return self._locks.get((user, TableName(table).value, _coerce_record_id(record_id)))

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def add(self, table: TableName, record: Mapping[str, Any]) -> int:
        """Insert ``record`` and return the id generated for it.

        Args:
            table (TableName): Destination table.
            record (Mapping[str, Any]): Field values; must not carry an id.

        Returns:
            int: The newly assigned id, unique within the user's table.

        Raises:
            NoUserBoundError: If no user is bound.
            ValueError: If ``record`` already carries an id.
            KeyError: If ``record`` names a field the table does not have.
        """

        with self._locks.workbook_lock:
            user = self._require_user()
            if record.get(ID_COLUMN) is not None:
                raise ValueError("Records passed to add must not carry an id")
            sheet, header = self._table(table)
            self._check_fields(table, record, header)
            new_id = self._next_id(table, user, sheet, header)
            sheet.append(self._build_row(header, user, new_id, record))
            self._autosave(lambda: self._remove_row(sheet, header, user, new_id))
        log.debug("Added %s record %d for user '%s'", TableName(table).value, new_id, user)
        return new_id

    def get_all(self, table: TableName) -> List[Dict[str, Any]]:
        """Return every record of ``table`` owned by the bound user.

        The order of the returned list is not part of the contract.
        """

        with self._locks.workbook_lock:
            user = self._require_user()
            sheet, header = self._table(table)
            return [self._to_record(header, values) for _, values in self._owned_rows(sheet, header, user)]

    def get_by_id(self, table: TableName, record_id: int) -> Optional[Dict[str, Any]]:
        """Return the record with ``record_id`` or ``None`` when absent."""

        record_id = _coerce_record_id(record_id)
        with self._locks.workbook_lock:
            user = self._require_user()
            sheet, header = self._table(table)
            for _, values in self._owned_rows(sheet, header, user):
                if values[header.index(ID_COLUMN)] == record_id:
                    return self._to_record(header, values)
        return None

    def update(self, table: TableName, record: Mapping[str, Any]) -> None:
        """Replace the stored record sharing ``record['id']``.

        Replacement is total: fields absent from ``record`` are cleared. When
        the id does not exist yet the record is inserted under that id and
        the key generator moves past it.

        Raises:
            NoUserBoundError: If no user is bound.
            ValueError: If ``record`` carries no id.
            KeyError: If ``record`` names an unknown field.
        """

        if record.get(ID_COLUMN) is None:
            raise ValueError("Records passed to update must carry an id")
        record_id = _coerce_record_id(record[ID_COLUMN])

        with self._locks.workbook_lock:
            user = self._require_user()
            sheet, header = self._table(table)
            self._check_fields(table, record, header)
            row = self._build_row(header, user, record_id, record)
            row_index = self._locate(sheet, header, user, record_id)
            if row_index is None:
                log.warning(
                    "Update of missing %s record %d for user '%s'; inserting it",
                    TableName(table).value,
                    record_id,
                    user,
                )
                sheet.append(row)
                self._advance_sequence(table, user, record_id)
                self._autosave(lambda: self._remove_row(sheet, header, user, record_id))
            else:
                previous = self._snapshot_row(sheet, row_index, len(header))
                self._write_row(sheet, row_index, row)
                self._autosave(lambda: self._write_row(sheet, row_index, previous))
        log.debug("Updated %s record %d for user '%s'", TableName(table).value, record_id, user)

    def delete(self, table: TableName, record_id: int) -> None:
        """Remove ``record_id`` from ``table``; unknown ids are ignored."""

        record_id = _coerce_record_id(record_id)
        with self._locks.workbook_lock:
            user = self._require_user()
            sheet, header = self._table(table)
            row_index = self._locate(sheet, header, user, record_id)
            if row_index is None:
                log.debug("Delete of missing %s record %d ignored", TableName(table).value, record_id)
                return
            previous = self._snapshot_row(sheet, row_index, len(header))
            sheet.delete_rows(row_index)
            self._autosave(lambda: self._restore_row(sheet, row_index, previous))
        log.debug("Deleted %s record %d for user '%s'", TableName(table).value, record_id, user)

    def persist(self) -> None:
        """Save the workbook to the configured destination, if any."""

        if self._destination is None:
            return
        with self._locks.workbook_lock:
            try:
                save_workbook(self._workbook, self._destination)
            except OSError as exc:
                log.error("Failed to persist workbook '%s': %s", self._destination, exc)
                raise StorageIOError(f"Unable to write workbook: {self._destination}") from exc

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_user(self) -> str:
        if self._user_id is None:
            log.error("Record store used before a user was bound")
            raise NoUserBoundError("No user is bound to the record store")
        return self._user_id

    def _autosave(self, undo: Callable[[], None]) -> None:
        """Persist after a mutation, undoing it in memory if the save fails.

        The id sequence is left advanced, so a rolled back insert leaves a gap
        rather than a reused id.
        """

        if self._destination is None:
            return
        try:
            self.persist()
        except StorageIOError:
            undo()
            log.warning("Rolled back in-memory change after failed save to '%s'", self._destination)
            raise

    @staticmethod
    def _snapshot_row(sheet: Worksheet, row_index: int, width: int) -> List[Any]:
        return [sheet.cell(row=row_index, column=column_index).value for column_index in range(1, width + 1)]

    @staticmethod
    def _write_row(sheet: Worksheet, row_index: int, values: List[Any]) -> None:
        # ``sheet.cell(..., value=None)`` leaves the old value in place.
        for column_index, value in enumerate(values, start=1):
            sheet.cell(row=row_index, column=column_index).value = value

    def _restore_row(self, sheet: Worksheet, row_index: int, values: List[Any]) -> None:
        sheet.insert_rows(row_index)
        self._write_row(sheet, row_index, values)

    def _remove_row(self, sheet: Worksheet, header: List[Any], user: str, record_id: int) -> None:
        row_index = self._locate(sheet, header, user, record_id)
        if row_index is not None:
            sheet.delete_rows(row_index)

    def _table(self, table: TableName) -> Tuple[Worksheet, List[Any]]:
        name = TableName(table).value
        if name not in self._workbook.sheetnames:
            log.error("Workbook has no sheet for table '%s'", name)
            raise StorageIOError(f"Workbook is missing the '{name}' sheet; run the schema migration")
        sheet = self._workbook[name]
        header = [cell.value for cell in sheet[1]]
        return sheet, header

    @staticmethod
    def _check_fields(table: TableName, record: Mapping[str, Any], header: List[Any]) -> None:
        for field_name in record:
            if field_name == OWNER_COLUMN or field_name not in header:
                raise KeyError(f"Unknown {TableName(table).value} field: {field_name}")

    @staticmethod
    def _build_row(header: List[Any], user: str, record_id: int, record: Mapping[str, Any]) -> List[Any]:
        row: List[Any] = []
        for column in header:
            if column == OWNER_COLUMN:
                row.append(user)
            elif column == ID_COLUMN:
                row.append(record_id)
            else:
                row.append(record.get(column))
        return row

    @staticmethod
    def _to_record(header: List[Any], values: Tuple[Any, ...]) -> Dict[str, Any]:
        record: Dict[str, Any] = {}
        for column, value in zip(header, values):
            if column is None or column == OWNER_COLUMN:
                continue
            record[column] = value
        return record

    @staticmethod
    def _owned_rows(sheet: Worksheet, header: List[Any], user: str) -> Iterator[Tuple[int, Tuple[Any, ...]]]:
        owner_index = header.index(OWNER_COLUMN)
        for row_index, values in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            if not any(cell is not None for cell in values):
                continue
            if values[owner_index] is not None and str(values[owner_index]) == user:
                yield row_index, values

    def _locate(self, sheet: Worksheet, header: List[Any], user: str, record_id: int) -> Optional[int]:
        id_index = header.index(ID_COLUMN)
        for row_index, values in self._owned_rows(sheet, header, user):
            if values[id_index] == record_id:
                return row_index
        return None

    def _sequence_row(self, table: TableName, user: str) -> Tuple[Worksheet, Optional[int], int]:
        sheet = self._workbook[SEQUENCES_SHEET]
        name = TableName(table).value
        for row_index, (owner, table_name, last_id) in enumerate(
            sheet.iter_rows(min_row=2, max_col=3, values_only=True), start=2
        ):
            if owner is not None and str(owner) == user and table_name == name:
                return sheet, row_index, int(last_id or 0)
        return sheet, None, 0

    def _next_id(self, table: TableName, user: str, table_sheet: Worksheet, header: List[Any]) -> int:
        sheet, row_index, last_id = self._sequence_row(table, user)
        id_index = header.index(ID_COLUMN)
        # Rows written before the sequence sheet existed still claim their ids.
        for _, values in self._owned_rows(table_sheet, header, user):
            if isinstance(values[id_index], int) and values[id_index] > last_id:
                last_id = values[id_index]
        new_id = last_id + 1
        if row_index is None:
            sheet.append([user, TableName(table).value, new_id])
        else:
            sheet.cell(row=row_index, column=3, value=new_id)
        return new_id

    def _advance_sequence(self, table: TableName, user: str, record_id: int) -> None:
        sheet, row_index, last_id = self._sequence_row(table, user)
        if record_id <= last_id:
            return
        if row_index is None:
            sheet.append([user, TableName(table).value, record_id])
        else:
            sheet.cell(row=row_index, column=3, value=record_id)
