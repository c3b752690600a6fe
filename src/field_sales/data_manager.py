"""Data access layer for the field sales back office.

This module owns every conversation with the backing store. Business rules
belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Record definitions: one frozen dataclass per backend table, plus the
   conversions between those dataclasses and worksheet cells or JSON rows.
3. Workbook lifecycle: opening, locating rows in, and persisting the Excel
   file used by the local backend.
4. Gateways: the table-shaped ``insert``/``update``/``delete``/``select``
   contract (:class:`DataGateway`) and its in-memory, workbook and REST
   implementations.
"""


from __future__ import annotations

import configparser
import dataclasses
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import openpyxl
import requests
from openpyxl.workbook import Workbook

from . import log
from .constants import BackendKind, DEFAULT_DISCOUNT_LIMIT, InventoryFailurePolicy, TableName


CONFIG_FILE_NAME = "config.ini"
API_KEY_ENV_VAR = "FIELD_SALES_API_KEY"
ID_COLUMN = "id"


class PersistenceError(RuntimeError):
    """Raised when the backing store rejects or fails a read or a write."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Optional[Path]
    schema_version: str
    backend: BackendKind = BackendKind.WORKBOOK
    rest_url: Optional[str] = None
    rest_api_key: Optional[str] = None
    default_discount_limit: Decimal = DEFAULT_DISCOUNT_LIMIT
    zero_subtotal_requires_approval: bool = False
    inventory_failure_policy: InventoryFailurePolicy = InventoryFailurePolicy.WARN


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SalesOrderRow:
    """In-memory view of a row from ``sales_orders``."""

    id: str
    order_number: str
    customer_id: str
    customer_name: str
    agency_id: str
    subtotal: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    total: Decimal
    total_invoiced: Decimal
    status: str
    requires_approval: bool
    approved_by: Optional[str]
    approved_at: Optional[str]
    latitude: Optional[Decimal]
    longitude: Optional[Decimal]
    location_status: str
    discount_rule_id: Optional[str]
    notes: Optional[str]
    created_by: str
    created_at: str


@dataclass(frozen=True)
class SalesOrderItemRow:
    """In-memory view of a row from ``sales_order_items``."""

    id: str
    sales_order_id: str
    product_id: str
    product_name: str
    color: str
    size: str
    quantity: int
    unit_price: Decimal
    total: Decimal
    quantity_invoiced: int


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a row from ``invoices``."""

    id: str
    invoice_number: str
    sales_order_id: Optional[str]
    customer_id: str
    customer_name: str
    agency_id: str
    subtotal: Decimal
    discount_amount: Decimal
    total: Decimal
    signature: str
    latitude: Optional[Decimal]
    longitude: Optional[Decimal]
    location_status: str
    created_by: str
    created_at: str


@dataclass(frozen=True)
class InvoiceItemRow:
    """In-memory view of a row from ``invoice_items``."""

    id: str
    invoice_id: str
    sales_order_item_id: Optional[str]
    product_id: str
    product_name: str
    color: str
    size: str
    quantity: int
    unit_price: Decimal
    total: Decimal


@dataclass(frozen=True)
class ReturnRow:
    """In-memory view of a row from ``returns``."""

    id: str
    return_number: str
    invoice_id: Optional[str]
    customer_id: str
    customer_name: str
    agency_id: str
    subtotal: Decimal
    total: Decimal
    reason: str
    status: str
    latitude: Optional[Decimal]
    longitude: Optional[Decimal]
    location_status: str
    created_by: str
    created_at: str
    processed_by: Optional[str]
    processed_at: Optional[str]


@dataclass(frozen=True)
class ReturnItemRow:
    """In-memory view of a row from ``return_items``."""

    id: str
    return_id: str
    invoice_item_id: Optional[str]
    product_id: str
    product_name: str
    color: str
    size: str
    quantity_returned: int
    original_quantity: int
    unit_price: Decimal
    total: Decimal
    reason: Optional[str]


@dataclass(frozen=True)
class DeliveryRow:
    """In-memory view of a row from ``deliveries``."""

    id: str
    invoice_id: str
    delivery_agent_id: str
    agency_id: str
    status: str
    scheduled_date: Optional[str]
    delivered_at: Optional[str]
    latitude: Optional[Decimal]
    longitude: Optional[Decimal]
    location_status: Optional[str]
    signature: Optional[str]
    notes: Optional[str]
    received_by_name: Optional[str]
    received_by_phone: Optional[str]
    created_by: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class InventoryTransactionRow:
    """In-memory view of a row from ``inventory_transactions``."""

    id: str
    product_id: str
    product_name: str
    color: str
    size: str
    transaction_type: str
    quantity: int
    reference_id: str
    reference_name: str
    user_id: str
    agency_id: str
    notes: Optional[str]
    created_at: str


@dataclass(frozen=True)
class AgencyDiscountLimitRow:
    """In-memory view of a row from ``agency_discount_limits``."""

    id: str
    agency_id: str
    max_discount_percentage: Decimal
    is_active: bool
    assigned_by: str
    assigned_at: str
    notes: Optional[str]


@dataclass(frozen=True)
class DiscountRuleRow:
    """In-memory view of a row from ``discount_rules``."""

    id: str
    name: str
    discount_type: str
    value: Decimal
    applicable_to: str
    target_ids: Tuple[str, ...]
    is_active: bool
    valid_from: str
    valid_to: str
    max_usage_count: Optional[int]
    current_usage_count: int
    description: Optional[str]
    created_by: str
    created_at: str


@dataclass(frozen=True)
class PromotionalRuleRow:
    """In-memory view of a row from ``promotional_rules``."""

    id: str
    name: str
    promotion_type: str
    buy_quantity: int
    get_quantity: int
    discount_percentage: Optional[Decimal]
    applicable_to: str
    buy_product_ids: Tuple[str, ...]
    get_product_ids: Tuple[str, ...]
    customer_ids: Tuple[str, ...]
    agent_ids: Tuple[str, ...]
    is_active: bool
    valid_from: str
    valid_to: str
    max_usage_count: Optional[int]
    current_usage_count: int
    description: Optional[str]
    created_by: str
    created_at: str


@dataclass(frozen=True)
class DisputeRow:
    """In-memory view of a row from ``disputes``."""

    id: str
    dispute_type: str
    target_id: str
    target_name: str
    reason: str
    description: str
    assigned_to: str
    assigned_by: str
    status: str
    priority: str
    sales_order_id: Optional[str]
    created_at: str
    updated_at: str


RECORD_TYPES: Mapping[TableName, type] = {
    TableName.SALES_ORDERS: SalesOrderRow,
    TableName.SALES_ORDER_ITEMS: SalesOrderItemRow,
    TableName.INVOICES: InvoiceRow,
    TableName.INVOICE_ITEMS: InvoiceItemRow,
    TableName.RETURNS: ReturnRow,
    TableName.RETURN_ITEMS: ReturnItemRow,
    TableName.DELIVERIES: DeliveryRow,
    TableName.INVENTORY_TRANSACTIONS: InventoryTransactionRow,
    TableName.AGENCY_DISCOUNT_LIMITS: AgencyDiscountLimitRow,
    TableName.DISCOUNT_RULES: DiscountRuleRow,
    TableName.PROMOTIONAL_RULES: PromotionalRuleRow,
    TableName.DISPUTES: DisputeRow,
}


@dataclass(frozen=True)
class ColumnSpec:
    """Storage description of a single record field."""

    name: str
    kind: str
    optional: bool


# Annotation text (as stored on dataclass fields under postponed evaluation)
# mapped to a storage kind and nullability.
_KIND_BY_ANNOTATION: Mapping[str, Tuple[str, bool]] = {
    "str": ("text", False),
    "Optional[str]": ("text", True),
    "Decimal": ("decimal", False),
    "Optional[Decimal]": ("decimal", True),
    "int": ("integer", False),
    "Optional[int]": ("integer", True),
    "bool": ("boolean", False),
    "Tuple[str, ...]": ("id_list", False),
}

_EMPTY_VALUES: Mapping[str, Any] = {
    "text": "",
    "decimal": Decimal("0.00"),
    "integer": 0,
    "boolean": False,
    "id_list": (),
}


def _build_columns(record_type: type) -> Tuple[ColumnSpec, ...]:
    columns = []
    for field in dataclasses.fields(record_type):
        annotation = field.type if isinstance(field.type, str) else getattr(field.type, "__name__", str(field.type))
        try:
            kind, optional = _KIND_BY_ANNOTATION[annotation]
        except KeyError as exc:
            raise TypeError(f"Unsupported column annotation {annotation!r} on {record_type.__name__}.{field.name}") from exc
        columns.append(ColumnSpec(name=field.name, kind=kind, optional=optional))
    return tuple(columns)


TABLE_COLUMNS: Mapping[TableName, Tuple[ColumnSpec, ...]] = {
    table: _build_columns(record_type) for table, record_type in RECORD_TYPES.items()
}


def table_columns(table: TableName) -> List[str]:
    """Return the ordered column names of ``table``."""

    return [column.name for column in TABLE_COLUMNS[TableName(table)]]


def _column_map(table: TableName) -> Dict[str, ColumnSpec]:
    return {column.name: column for column in TABLE_COLUMNS[TableName(table)]}


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return value != 0
    text = str(value).strip().lower()
    return text not in ("", "0", "false", "no", "none", "off")


def decode_value(column: ColumnSpec, raw: object) -> Any:
    """Convert a raw cell or JSON value into the Python type of ``column``.

    Args:
        column (ColumnSpec): Target column description.
        raw (object): Value as produced by openpyxl or a JSON decoder.

    Returns:
        Any: ``str``, :class:`~decimal.Decimal`, ``int``, ``bool`` or a tuple
            of identifiers. Blank values become ``None`` for nullable columns
            and a neutral empty value otherwise.

    Raises:
        PersistenceError: If a numeric column holds a non-numeric value.
    """

    if raw is None or (raw == "" and (column.kind != "text" or column.optional)):
        return None if column.optional else _EMPTY_VALUES[column.kind]

    if column.kind == "text":
        return str(raw)
    if column.kind == "boolean":
        return _as_bool(raw)
    if column.kind == "id_list":
        if isinstance(raw, (list, tuple)):
            return tuple(str(item) for item in raw)
        return tuple(part.strip() for part in str(raw).split(",") if part.strip())

    try:
        number = Decimal(str(raw))
    except InvalidOperation as exc:
        raise PersistenceError(f"Column '{column.name}' holds a non-numeric value: {raw!r}") from exc
    if column.kind == "integer":
        return int(number)
    return number


def _encode_cell(column: ColumnSpec, value: Any) -> object:
    if value is None:
        return None
    if column.kind == "id_list":
        return ",".join(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _encode_json(column: ColumnSpec, value: Any) -> object:
    if value is None:
        return None
    if column.kind == "id_list":
        return list(value)
    if column.kind == "decimal":
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


def record_table(record: Any) -> TableName:
    """Return the table a record instance belongs to."""

    for table, record_type in RECORD_TYPES.items():
        if type(record) is record_type:
            return table
    raise TypeError(f"Unsupported record type: {type(record).__name__}")


def serialize_record(record: Any) -> List[object]:
    """Convert a record into worksheet cell values in column order.

    Args:
        record (Any): One of the ``*Row`` dataclasses.

    Returns:
        list[object]: Cell values; :class:`~decimal.Decimal` instances are
            preserved so Excel keeps numeric precision, identifier lists are
            joined with commas.
    """

    columns = TABLE_COLUMNS[record_table(record)]
    return [_encode_cell(column, getattr(record, column.name)) for column in columns]


def record_to_json(record: Any) -> Dict[str, object]:
    """Convert a record into a JSON-ready mapping for the REST backend."""

    columns = TABLE_COLUMNS[record_table(record)]
    return {column.name: _encode_json(column, getattr(record, column.name)) for column in columns}


def deserialize_record(table: TableName, raw: Mapping[str, object]) -> Any:
    """Build a record of ``table`` from a column-name keyed mapping.

    Columns missing from ``raw`` are treated as blank, which lets older
    sheets or narrower REST projections load without errors.
    """

    table = TableName(table)
    values = {column.name: decode_value(column, raw.get(column.name)) for column in TABLE_COLUMNS[table]}
    return RECORD_TYPES[table](**values)


def validate_field_values(table: TableName, field_values: Mapping[str, Any]) -> None:
    """Reject updates that reference unknown columns or the primary key."""

    columns = _column_map(table)
    for name in field_values:
        if name not in columns:
            raise KeyError(f"Unknown {TableName(table).value} field: {name}")
        if name == ID_COLUMN:
            raise KeyError(f"The '{ID_COLUMN}' column of {TableName(table).value} cannot be updated")


def _filter_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def apply_query(
    records: Iterable[Any],
    *,
    table: TableName,
    filters: Optional[Mapping[str, Any]] = None,
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Any]:
    """Filter, order and truncate records the way the hosted store would.

    Filters are simple equalities. Ordering is stable and places ``None``
    values first when ascending.
    """

    columns = _column_map(table)
    for name in list(filters or {}) + ([order_by] if order_by else []):
        if name not in columns:
            raise KeyError(f"Unknown column: {name}")

    selected = [
        record
        for record in records
        if all(getattr(record, name) == _filter_value(value) for name, value in (filters or {}).items())
    ]
    if order_by:
        selected.sort(
            key=lambda record: (getattr(record, order_by) is not None, getattr(record, order_by) or 0),
            reverse=descending,
        )
    if limit is not None:
        selected = selected[: max(limit, 0)]
    return selected


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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

    ``[System] SchemaVersion`` is always required. ``DataFile`` is required for
    the workbook backend and resolved against ``base_path`` (or the current
    working directory) when relative. ``[Rest] Url`` is required for the REST
    backend; its API key may come from the ``FIELD_SALES_API_KEY`` environment
    variable instead of the file. ``[Policy]`` entries are optional.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for relative ``DataFile``
            entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a backend, policy or numeric entry cannot be parsed.
    """

    try:
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    backend_raw = parser.get("System", "Backend", fallback=BackendKind.WORKBOOK.value)
    try:
        backend = BackendKind(backend_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported backend: {backend_raw}") from exc

    data_file_path: Optional[Path] = None
    data_file_raw = parser.get("System", "DataFile", fallback=None)
    if data_file_raw:
        data_file_path = Path(data_file_raw)
        if not data_file_path.is_absolute():
            if base_path is None:
                base_path = Path.cwd()
            data_file_path = (base_path / data_file_path).resolve()
    elif backend is BackendKind.WORKBOOK:
        raise KeyError("Missing required configuration entry: System.DataFile")

    rest_url = parser.get("Rest", "Url", fallback=None)
    rest_api_key = os.environ.get(API_KEY_ENV_VAR) or parser.get("Rest", "ApiKey", fallback=None)
    if backend is BackendKind.REST and not rest_url:
        raise KeyError("Missing required configuration entry: Rest.Url")

    limit_raw = parser.get("Policy", "DefaultDiscountLimit", fallback=str(DEFAULT_DISCOUNT_LIMIT))
    try:
        default_limit = Decimal(limit_raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid DefaultDiscountLimit: {limit_raw}") from exc

    policy_raw = parser.get("Policy", "InventoryFailurePolicy", fallback=InventoryFailurePolicy.WARN.value)
    try:
        inventory_policy = InventoryFailurePolicy(policy_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported InventoryFailurePolicy: {policy_raw}") from exc

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        backend=backend,
        rest_url=rest_url,
        rest_api_key=rest_api_key,
        default_discount_limit=default_limit,
        zero_subtotal_requires_approval=parser.getboolean(
            "Policy", "ZeroSubtotalRequiresApproval", fallback=False
        ),
        inventory_failure_policy=inventory_policy,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the Excel workbook used by the local backend.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    sheet = workbook[sheet_name]
    return {cell.value: index + 1 for index, cell in enumerate(sheet[1]) if cell.value is not None}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def iter_records(workbook: Workbook, table: TableName) -> Iterable[Any]:
    """Stream typed records from the worksheet backing ``table``.

    Header and fully empty rows are skipped. Cells are matched to columns by
    header title, so column order in the sheet does not matter.
    """

    table = TableName(table)
    sheet = workbook[table.value]
    headers = [cell.value for cell in sheet[1]]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_record(table, dict(zip(headers, raw)))


def append_record(workbook: Workbook, record: Any) -> None:
    """Append ``record`` to its worksheet following the sheet's header order."""

    table = record_table(record)
    sheet = workbook[table.value]
    header_map = _header_map(workbook, table.value)
    cells = dict(zip(table_columns(table), serialize_record(record)))
    missing = [name for name in cells if name not in header_map]
    if missing:
        raise PersistenceError(f"Sheet '{table.value}' lacks columns: {', '.join(missing)}")
    row: List[object] = [None] * max(header_map.values())
    for name, value in cells.items():
        row[header_map[name] - 1] = value
    sheet.append(row)


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------


class DataGateway(Protocol):
    """Table-shaped read/write contract every storage backend fulfils."""

    def insert(self, table: TableName, records: Sequence[Any]) -> List[Any]:
        ...

    def update(self, table: TableName, record_id: str, field_values: Mapping[str, Any]) -> Any:
        ...

    def delete(self, table: TableName, record_id: str) -> None:
        ...

    def select(
        self,
        table: TableName,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Any]:
        ...


def _check_records(table: TableName, records: Sequence[Any]) -> None:
    expected = RECORD_TYPES[table]
    seen: set[str] = set()
    for record in records:
        if type(record) is not expected:
            raise TypeError(f"{table.value} expects {expected.__name__}, got {type(record).__name__}")
        if record.id in seen:
            raise PersistenceError(f"Duplicate {table.value} id in batch: {record.id}")
        seen.add(record.id)


class InMemoryGateway:
    """Dictionary-backed gateway used by tests and throwaway sessions."""

    def __init__(self) -> None:
        self._tables: Dict[TableName, Dict[str, Any]] = {table: {} for table in TableName}

    def insert(self, table: TableName, records: Sequence[Any]) -> List[Any]:
        table = TableName(table)
        rows = list(records)
        _check_records(table, rows)
        bucket = self._tables[table]
        for record in rows:
            if record.id in bucket:
                raise PersistenceError(f"Duplicate {table.value} id: {record.id}")
        for record in rows:
            bucket[record.id] = record
        return rows

    def update(self, table: TableName, record_id: str, field_values: Mapping[str, Any]) -> Any:
        table = TableName(table)
        validate_field_values(table, field_values)
        bucket = self._tables[table]
        if record_id not in bucket:
            raise PersistenceError(f"{table.value} row not found: {record_id}")
        updated = dataclasses.replace(bucket[record_id], **dict(field_values))
        bucket[record_id] = updated
        return updated

    def delete(self, table: TableName, record_id: str) -> None:
        table = TableName(table)
        if self._tables[table].pop(record_id, None) is None:
            raise PersistenceError(f"{table.value} row not found: {record_id}")

    def select(
        self,
        table: TableName,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Any]:
        table = TableName(table)
        return apply_query(
            self._tables[table].values(),
            table=table,
            filters=filters,
            order_by=order_by,
            descending=descending,
            limit=limit,
        )


class WorkbookGateway:
    """Gateway storing each table on its own worksheet of an openpyxl workbook.

    Changes stay in memory until :meth:`save` writes the workbook to disk.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    def _require_sheet(self, table: TableName) -> None:
        if table.value not in self.workbook.sheetnames:
            raise PersistenceError(f"Workbook is missing the '{table.value}' sheet")

    def insert(self, table: TableName, records: Sequence[Any]) -> List[Any]:
        table = TableName(table)
        self._require_sheet(table)
        rows = list(records)
        _check_records(table, rows)
        for record in rows:
            if locate_row(self.workbook, table.value, ID_COLUMN, record.id) is not None:
                raise PersistenceError(f"Duplicate {table.value} id: {record.id}")
        for record in rows:
            append_record(self.workbook, record)
        return rows

    def update(self, table: TableName, record_id: str, field_values: Mapping[str, Any]) -> Any:
        table = TableName(table)
        self._require_sheet(table)
        validate_field_values(table, field_values)
        row_index = locate_row(self.workbook, table.value, ID_COLUMN, record_id)
        if row_index is None:
            raise PersistenceError(f"{table.value} row not found: {record_id}")

        sheet = self.workbook[table.value]
        header_map = _header_map(self.workbook, table.value)
        columns = _column_map(table)
        for name, value in field_values.items():
            if name not in header_map:
                raise PersistenceError(f"Sheet '{table.value}' lacks column: {name}")
            sheet.cell(row=row_index, column=header_map[name], value=_encode_cell(columns[name], value))

        headers = [cell.value for cell in sheet[1]]
        raw = [cell.value for cell in sheet[row_index]]
        return deserialize_record(table, dict(zip(headers, raw)))

    def delete(self, table: TableName, record_id: str) -> None:
        table = TableName(table)
        self._require_sheet(table)
        row_index = locate_row(self.workbook, table.value, ID_COLUMN, record_id)
        if row_index is None:
            raise PersistenceError(f"{table.value} row not found: {record_id}")
        self.workbook[table.value].delete_rows(row_index)

    def select(
        self,
        table: TableName,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Any]:
        table = TableName(table)
        self._require_sheet(table)
        return apply_query(
            iter_records(self.workbook, table),
            table=table,
            filters=filters,
            order_by=order_by,
            descending=descending,
            limit=limit,
        )

    def save(self, destination: Path) -> None:
        save_workbook(self.workbook, destination)


def _rest_literal(value: Any) -> str:
    value = _filter_value(value)
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


class RestGateway:
    """Gateway for a hosted Postgres exposed through a PostgREST-style API.

    Every call is an independent HTTP request; there is no transaction
    spanning several tables.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 20,
        path_prefix: str = "/rest/v1",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.path_prefix = path_prefix

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _send(
        self,
        method: str,
        table: TableName,
        *,
        params: Optional[Mapping[str, str]] = None,
        payload: Any = None,
        prefer: Optional[str] = None,
    ) -> List[Mapping[str, Any]]:
        url = f"{self.base_url}{self.path_prefix}/{table.value}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=self._headers(prefer),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            log.error("%s %s failed: %s", method, table.value, exc)
            raise PersistenceError(f"{method} {table.value} failed: {exc}") from exc

        if response.status_code >= 400:
            detail = response.text.strip() if response.text else str(response.status_code)
            log.error("%s %s rejected (%s): %s", method, table.value, response.status_code, detail)
            raise PersistenceError(f"{method} {table.value} rejected ({response.status_code}): {detail}")

        if not response.content:
            return []
        try:
            body = response.json()
        except ValueError as exc:
            raise PersistenceError(f"{method} {table.value} returned invalid JSON") from exc
        return body if isinstance(body, list) else [body]

    def insert(self, table: TableName, records: Sequence[Any]) -> List[Any]:
        table = TableName(table)
        rows = list(records)
        _check_records(table, rows)
        body = self._send(
            "POST",
            table,
            payload=[record_to_json(record) for record in rows],
            prefer="return=representation",
        )
        return [deserialize_record(table, item) for item in body]

    def update(self, table: TableName, record_id: str, field_values: Mapping[str, Any]) -> Any:
        table = TableName(table)
        validate_field_values(table, field_values)
        columns = _column_map(table)
        payload = {name: _encode_json(columns[name], value) for name, value in field_values.items()}
        body = self._send(
            "PATCH",
            table,
            params={ID_COLUMN: f"eq.{record_id}"},
            payload=payload,
            prefer="return=representation",
        )
        if not body:
            raise PersistenceError(f"{table.value} row not found: {record_id}")
        return deserialize_record(table, body[0])

    def delete(self, table: TableName, record_id: str) -> None:
        table = TableName(table)
        body = self._send(
            "DELETE",
            table,
            params={ID_COLUMN: f"eq.{record_id}"},
            prefer="return=representation",
        )
        if not body:
            raise PersistenceError(f"{table.value} row not found: {record_id}")

    def select(
        self,
        table: TableName,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Any]:
        table = TableName(table)
        columns = _column_map(table)
        params: Dict[str, str] = {"select": "*"}
        for name, value in (filters or {}).items():
            if name not in columns:
                raise KeyError(f"Unknown column: {name}")
            params[name] = _rest_literal(value)
        if order_by:
            if order_by not in columns:
                raise KeyError(f"Unknown column: {order_by}")
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        body = self._send("GET", table, params=params)
        return [deserialize_record(table, item) for item in body]


def build_gateway(settings: ConfigSettings) -> DataGateway:
    """Instantiate the gateway selected by ``settings.backend``.

    Raises:
        FileNotFoundError: If the workbook backend's data file is missing.
        KeyError: If the REST backend has no API key configured.
    """

    if settings.backend is BackendKind.REST:
        if not settings.rest_api_key:
            raise KeyError(f"Missing REST API key (set [Rest] ApiKey or {API_KEY_ENV_VAR})")
        return RestGateway(settings.rest_url or "", settings.rest_api_key)
    if settings.data_file is None:
        raise KeyError("Missing required configuration entry: System.DataFile")
    return WorkbookGateway(open_workbook(settings.data_file))
