"""Data access layer for the retail back-office engine.

This module provides low-level helpers that read from and write to the master
workbook. Business rules belong in :mod:`retail_backoffice.core_logic`.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: converting transactions and payments to and from rows,
   and the :class:`WorkbookPersistence` adapters the entity stores write
   through to.
"""


from __future__ import annotations

import configparser
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import DEFAULT_PAGE_SIZE, PaymentMethod, PaymentStatus, SheetName, TransactionStatus
from .models import Installment, LineItem, Payment, Transaction


CONFIG_FILE_NAME = "config.ini"
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
LINE_ITEMS_SHEET = SheetName.LINE_ITEMS.value
PAYMENTS_SHEET = SheetName.PAYMENTS.value
INSTALLMENTS_SHEET = SheetName.INSTALLMENTS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    TRANSACTIONS_SHEET: [
        "TransactionID",
        "CustomerID",
        "CustomerName",
        "Status",
        "Note",
        "CreatedAt",
        "UpdatedAt",
    ],
    LINE_ITEMS_SHEET: [
        "ItemID",
        "TransactionID",
        "ProductID",
        "Quantity",
        "UnitPrice",
    ],
    PAYMENTS_SHEET: [
        "PaymentID",
        "TransactionID",
        "AmountDue",
        "Method",
        "Status",
        "CreatedAt",
        "UpdatedAt",
        "DueDate",
    ],
    INSTALLMENTS_SHEET: [
        "InstallmentID",
        "PaymentID",
        "Amount",
        "PaidAt",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    page_size: int = DEFAULT_PAGE_SIZE
    enabled_observers: Optional[Tuple[str, ...]] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory looking for a file named ``CONFIG_FILE_NAME``; the first
    match wins.

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
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` entries are mandatory. ``[Defaults] PageSize`` falls back
    to :data:`DEFAULT_PAGE_SIZE` and a missing ``[Observers] Enabled`` keeps
    every built-in observer. Relative ``DataFile`` paths are expanded against
    ``base_path`` when provided, or against the current working directory.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If ``PageSize`` is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    page_size = parser.getint("Defaults", "PageSize", fallback=DEFAULT_PAGE_SIZE)
    if page_size < 1:
        raise ValueError(f"PageSize must be a positive integer, got {page_size}")

    enabled_raw = parser.get("Observers", "Enabled", fallback=None)
    enabled: Optional[Tuple[str, ...]] = None
    if enabled_raw is not None:
        enabled = tuple(name.strip().lower() for name in enabled_raw.split(",") if name.strip())

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        page_size=page_size,
        enabled_observers=enabled,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Cell conversion
# ---------------------------------------------------------------------------


def _text(value: object) -> Optional[str]:
    return str(value) if value is not None else None


def _decimal(value: object, *, sheet: str, column: str) -> Decimal:
    if value is None or value == "":
        raise ValueError(f"Blank {column} cell in sheet '{sheet}'")
    return Decimal(str(value))


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_timestamp(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def serialize_transaction(record: Transaction) -> list[object]:
    """Convert a transaction header into the ``Transactions`` column order."""

    return [
        record.transaction_id,
        record.customer_id,
        record.customer_name,
        record.status.value,
        record.note,
        _timestamp(record.created_at),
        _timestamp(record.updated_at),
    ]


def serialize_line_item(record: LineItem) -> list[object]:
    """Convert a line item into the ``LineItems`` column order.

    Money is written as text so the workbook never rounds it through a float.
    """

    return [
        record.item_id,
        record.transaction_id,
        record.product_id,
        record.quantity,
        str(record.unit_price),
    ]


def serialize_payment(record: Payment) -> list[object]:
    return [
        record.payment_id,
        record.transaction_id,
        str(record.amount_due),
        record.method.value,
        record.status.value,
        _timestamp(record.created_at),
        _timestamp(record.updated_at),
        _timestamp(record.due_date),
    ]


def serialize_installment(record: Installment) -> list[object]:
    return [
        record.installment_id,
        record.payment_id,
        str(record.amount),
        _timestamp(record.paid_at),
    ]


def deserialize_line_item(raw_row: Sequence[object]) -> LineItem:
    item_id, transaction_id, product_id, quantity, unit_price = raw_row[:5]
    return LineItem(
        item_id=str(item_id),
        transaction_id=str(transaction_id),
        product_id=str(product_id),
        quantity=int(quantity),
        unit_price=_decimal(unit_price, sheet=LINE_ITEMS_SHEET, column="UnitPrice"),
    )


def deserialize_transaction(raw_row: Sequence[object], line_items: Iterable[LineItem] = ()) -> Transaction:
    """Rebuild a :class:`Transaction` from its header row and its line items.

    The total is never read from the sheet; it is derived from ``line_items``.
    """

    transaction_id, customer_id, customer_name, status, note, created_at, updated_at = raw_row[:7]
    return Transaction(
        transaction_id=str(transaction_id),
        customer_id=str(customer_id),
        customer_name=str(customer_name) if customer_name is not None else "",
        line_items=tuple(line_items),
        status=TransactionStatus(status),
        note=_text(note),
        created_at=_parse_timestamp(created_at),
        updated_at=_parse_timestamp(updated_at),
    )


def deserialize_installment(raw_row: Sequence[object]) -> Installment:
    installment_id, payment_id, amount, paid_at = raw_row[:4]
    return Installment(
        installment_id=str(installment_id),
        payment_id=str(payment_id),
        amount=_decimal(amount, sheet=INSTALLMENTS_SHEET, column="Amount"),
        paid_at=_parse_timestamp(paid_at),
    )


def deserialize_payment(raw_row: Sequence[object], installments: Iterable[Installment] = ()) -> Payment:
    """Rebuild a :class:`Payment` from its row and its installments."""

    payment_id, transaction_id, amount_due, method, status, created_at, updated_at, due_date = raw_row[:8]
    return Payment(
        payment_id=str(payment_id),
        transaction_id=str(transaction_id),
        amount_due=_decimal(amount_due, sheet=PAYMENTS_SHEET, column="AmountDue"),
        method=PaymentMethod(method),
        status=PaymentStatus(status),
        installments=tuple(installments),
        created_at=_parse_timestamp(created_at),
        updated_at=_parse_timestamp(updated_at),
        due_date=_parse_timestamp(due_date),
    )


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def _data_rows(sheet: Worksheet) -> Iterable[tuple]:
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def _column_index(sheet: Worksheet, column: str) -> int:
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if column not in header_map:
        raise KeyError(f"Unknown column: {column}")
    return header_map[column]


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find the first row whose ``key_column`` equals ``key_value``.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    key_col_index = _column_index(sheet, key_column)

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def rows_matching(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> List[tuple]:
    """Return the values of every row whose ``key_column`` equals ``key_value``."""

    sheet = workbook[sheet_name]
    key_col_index = _column_index(sheet, key_column)
    return [row for row in _data_rows(sheet) if row[key_col_index - 1] == key_value]


def delete_matching_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Delete every row whose ``key_column`` equals ``key_value``.

    Returns:
        int: Number of rows removed.
    """

    sheet = workbook[sheet_name]
    key_col_index = _column_index(sheet, key_column)
    doomed = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] == key_value
    ]
    # bottom-up so earlier indices stay valid
    for row_idx in reversed(doomed):
        sheet.delete_rows(row_idx)
    return len(doomed)


def upsert_row(workbook: Workbook, sheet_name: str, key_column: str, values: Sequence[object]) -> None:
    """Overwrite the row keyed by ``values``' key column, or append a new one."""

    sheet = workbook[sheet_name]
    key_value = values[_column_index(sheet, key_column) - 1]
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        sheet.append(list(values))
        return
    for column_index, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column_index, value=value)


def _group_by(rows: Iterable[tuple], position: int) -> Dict[str, List[tuple]]:
    grouped: Dict[str, List[tuple]] = defaultdict(list)
    for row in rows:
        grouped[str(row[position])].append(row)
    return grouped


def iter_transactions(workbook: Workbook) -> Iterable[Transaction]:
    """Stream every transaction stored in the workbook with its line items."""

    items_by_transaction = _group_by(_data_rows(workbook[LINE_ITEMS_SHEET]), 1)
    for raw in _data_rows(workbook[TRANSACTIONS_SHEET]):
        items = (deserialize_line_item(row) for row in items_by_transaction.get(str(raw[0]), ()))
        yield deserialize_transaction(raw, items)


def iter_payments(workbook: Workbook) -> Iterable[Payment]:
    """Stream every payment stored in the workbook with its installments."""

    installments_by_payment = _group_by(_data_rows(workbook[INSTALLMENTS_SHEET]), 1)
    for raw in _data_rows(workbook[PAYMENTS_SHEET]):
        installments = (deserialize_installment(row) for row in installments_by_payment.get(str(raw[0]), ()))
        yield deserialize_payment(raw, installments)


# ---------------------------------------------------------------------------
# Persistence adapters
# ---------------------------------------------------------------------------


class WorkbookPersistence:
    """Base adapter storing one entity type as a header row plus child rows.

    Subclasses name the two sheets and the conversion functions. ``save``
    replaces the entity's header row in place and rewrites its child rows, so
    saving the same entity twice leaves exactly one copy.
    """

    sheet_name: str
    key_column: str
    child_sheet_name: str
    child_key_column: str

    def __init__(self, workbook: Workbook, lock: Optional[threading.RLock] = None) -> None:
        self.workbook = workbook
        self.lock = lock if lock is not None else threading.RLock()

    def _serialize(self, entity) -> Tuple[list, List[list]]:
        raise NotImplementedError

    def _deserialize(self, header: tuple, children: List[tuple]):
        raise NotImplementedError

    def load(self, identifier: str):
        with self.lock:
            return self._load(identifier)

    def _load(self, identifier: str):
        rows = rows_matching(self.workbook, self.sheet_name, self.key_column, identifier)
        if not rows:
            return None
        children = rows_matching(self.workbook, self.child_sheet_name, self.child_key_column, identifier)
        return self._deserialize(rows[0], children)

    def save(self, entity) -> None:
        header, children = self._serialize(entity)
        with self.lock:
            self._write(header, children)
        log.debug("Saved %s row '%s' with %d child rows", self.sheet_name, header[0], len(children))

    def _write(self, header: list, children: List[list]) -> None:
        upsert_row(self.workbook, self.sheet_name, self.key_column, header)
        delete_matching_rows(self.workbook, self.child_sheet_name, self.child_key_column, header[0])
        child_sheet = self.workbook[self.child_sheet_name]
        for row in children:
            child_sheet.append(row)

    def delete(self, identifier: str) -> None:
        with self.lock:
            delete_matching_rows(self.workbook, self.child_sheet_name, self.child_key_column, identifier)
            removed = delete_matching_rows(self.workbook, self.sheet_name, self.key_column, identifier)
        log.debug("Deleted %d %s row(s) for '%s'", removed, self.sheet_name, identifier)


class TransactionWorkbookPersistence(WorkbookPersistence):
    sheet_name = TRANSACTIONS_SHEET
    key_column = "TransactionID"
    child_sheet_name = LINE_ITEMS_SHEET
    child_key_column = "TransactionID"

    def _serialize(self, entity: Transaction) -> Tuple[list, List[list]]:
        return serialize_transaction(entity), [serialize_line_item(item) for item in entity.line_items]

    def _deserialize(self, header: tuple, children: List[tuple]) -> Transaction:
        return deserialize_transaction(header, (deserialize_line_item(row) for row in children))


class PaymentWorkbookPersistence(WorkbookPersistence):
    sheet_name = PAYMENTS_SHEET
    key_column = "PaymentID"
    child_sheet_name = INSTALLMENTS_SHEET
    child_key_column = "PaymentID"

    def _serialize(self, entity: Payment) -> Tuple[list, List[list]]:
        return serialize_payment(entity), [serialize_installment(item) for item in entity.installments]

    def _deserialize(self, header: tuple, children: List[tuple]) -> Payment:
        return deserialize_payment(header, (deserialize_installment(row) for row in children))


__all__ = [
    "CONFIG_FILE_NAME",
    "SHEET_COLUMNS",
    "ConfigSettings",
    "find_config_file",
    "read_config",
    "parse_settings",
    "open_workbook",
    "save_workbook",
    "refresh_workbook",
    "serialize_transaction",
    "serialize_line_item",
    "serialize_payment",
    "serialize_installment",
    "deserialize_transaction",
    "deserialize_line_item",
    "deserialize_payment",
    "deserialize_installment",
    "locate_row",
    "rows_matching",
    "delete_matching_rows",
    "upsert_row",
    "iter_transactions",
    "iter_payments",
    "WorkbookPersistence",
    "TransactionWorkbookPersistence",
    "PaymentWorkbookPersistence",
]
