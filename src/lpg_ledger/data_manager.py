"""Data access layer for the LPG ledger.

This module provides the low-level helpers that read from and write to the
record store. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``, including the
   seller profile printed on invoices.
2. Record serialization: converting domain dataclasses into flat records for
   the four collections and back again.
3. The persistence gateway: :class:`WorkbookGateway` keeps each collection on
   its own worksheet of an ``openpyxl`` workbook and exposes the generic
   select/get/insert/update/delete contract described by :class:`Gateway`.
"""


from __future__ import annotations

import configparser
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    Brand,
    Collection,
    CylinderSize,
    GatewayErrorCode,
    InventoryCategory,
    InvoiceType,
    PaymentMethod,
)
from .models import (
    BorrowedCylinder,
    Customer,
    Expense,
    InventoryItem,
    PriceOverride,
    RefillItem,
    Sale,
    SaleItem,
    category_label,
    parse_expense_category,
)


CONFIG_FILE_NAME = "config.ini"

# Columns managed by the record store itself; callers never write them.
SERVER_MANAGED_FIELDS = ("id", "created_at")

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    Collection.CUSTOMERS.value: [
        "id",
        "created_at",
        "name",
        "branch",
        "price",
        "tank_brand",
        "tank_size",
        "price_list",
        "borrowed_tanks",
        "address",
        "tax_id",
        "notes",
    ],
    Collection.SALES.value: [
        "id",
        "created_at",
        "customer_id",
        "date",
        "payment_method",
        "invoice_type",
        "invoice_number",
        "tank_brand",
        "tank_size",
        "quantity",
        "unit_price",
        "cost_price",
        "total_amount",
        "items",
        "gas_return_kg",
        "gas_return_price",
    ],
    Collection.EXPENSES.value: [
        "id",
        "created_at",
        "date",
        "type",
        "description",
        "payee",
        "amount",
        "payment_method",
        "refill_details",
        "gas_return_kg",
        "gas_return_amount",
        "refill_tank_brand",
        "refill_tank_size",
        "refill_quantity",
    ],
    Collection.INVENTORY.value: [
        "id",
        "created_at",
        "category",
        "name",
        "tank_brand",
        "tank_size",
        "cost_price",
        "total",
        "full",
        "on_loan",
        "low_stock_threshold",
        "notes",
    ],
}

REQUIRED_COLUMNS: Mapping[str, Sequence[str]] = {
    Collection.CUSTOMERS.value: ("name", "price"),
    Collection.SALES.value: ("customer_id", "date", "payment_method", "invoice_type", "total_amount"),
    Collection.EXPENSES.value: ("date", "type", "amount", "payment_method"),
    Collection.INVENTORY.value: ("category", "total", "full"),
}

# Nested lists are stored as JSON text in a single cell.
JSON_COLUMNS = frozenset({"price_list", "borrowed_tanks", "items", "refill_details"})

INVENTORY_UNIQUE_CONSTRAINT = "inventory_tank_unique"


@dataclass(frozen=True)
class CompanyProfile:
    """Seller details printed on receipts and tax invoices."""

    name: str
    address: str
    tax_id: str
    phone: str
    logo: Optional[Path] = None


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    company: CompanyProfile
    custom_expense_types: tuple[str, ...] = ()


class GatewayError(Exception):
    """Structured error reported by the record store.

    ``code`` carries the machine readable SQLSTATE-style code, ``message`` the
    human readable description. ``details`` and ``hint`` are optional extras.
    """

    def __init__(self, code: str, message: str, *, details: Optional[str] = None, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.hint = hint

    def __repr__(self) -> str:
        return f"GatewayError(code={self.code!r}, message={self.message!r})"


class Gateway(Protocol):
    """Generic CRUD contract over the four named record collections."""

    def select(
        self,
        collection: str,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]: ...

    def get(self, collection: str, record_id: str) -> Optional[dict[str, Any]]: ...

    def insert(self, collection: str, record: Mapping[str, Any]) -> dict[str, Any]: ...

    def update(self, collection: str, record_id: str, changes: Mapping[str, Any]) -> dict[str, Any]: ...

    def delete(self, collection: str, record_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


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
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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
            absolute. User home references (``~``) are expanded.

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


def parse_company_profile(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> CompanyProfile:
    """Read the ``[Company]`` section into a :class:`CompanyProfile`.

    Missing options default to empty strings so that an unconfigured shop can
    still print cash receipts. A relative ``Logo`` path is anchored to
    ``base_path``.
    """

    logo_raw = parser.get("Company", "Logo", fallback="").strip()
    logo: Optional[Path] = None
    if logo_raw:
        logo = Path(logo_raw)
        if not logo.is_absolute():
            logo = ((base_path or Path.cwd()) / logo).resolve()

    return CompanyProfile(
        name=parser.get("Company", "Name", fallback=""),
        address=parser.get("Company", "Address", fallback=""),
        tax_id=parser.get("Company", "TaxID", fallback=""),
        phone=parser.get("Company", "Phone", fallback=""),
        logo=logo,
    )


def parse_custom_expense_types(parser: configparser.ConfigParser) -> tuple[str, ...]:
    """Return user-defined expense categories listed under ``[Expenses]``."""

    raw = parser.get("Expenses", "CustomTypes", fallback="")
    seen: list[str] = []
    for entry in raw.split(","):
        label = entry.strip()
        if label and label not in seen:
            seen.append(label)
    return tuple(seen)


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        company=parse_company_profile(parser, base_path=base_path),
        custom_expense_types=parse_custom_expense_types(parser),
    )


def _rewrite_config(config_path: Path, section: str, values: Mapping[str, str]) -> None:
    parser = read_config(config_path)
    if not parser.has_section(section):
        parser.add_section(section)
    parser[section].clear()
    for key, value in values.items():
        parser[section][key] = value
    with config_path.expanduser().resolve().open("w", encoding="utf-8") as handle:
        parser.write(handle)


def write_company_profile(config_path: Path, profile: CompanyProfile) -> None:
    """Persist ``profile`` as the ``[Company]`` section, replacing it whole."""

    values = {
        "Name": profile.name,
        "Address": profile.address,
        "TaxID": profile.tax_id,
        "Phone": profile.phone,
    }
    if profile.logo is not None:
        values["Logo"] = str(profile.logo)
    _rewrite_config(config_path, "Company", values)
    log.info("Saved company profile '%s' to '%s'", profile.name, config_path)


def write_custom_expense_types(config_path: Path, labels: Iterable[str]) -> None:
    """Persist the user-defined expense categories under ``[Expenses]``."""

    _rewrite_config(config_path, "Expenses", {"CustomTypes": ", ".join(labels)})


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

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


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _to_decimal(raw: Any) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal value: {raw!r}") from exc


def _to_int(raw: Any, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    return int(Decimal(str(raw)))


def _to_optional_int(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    return int(Decimal(str(raw)))


def _to_text(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text else None


def _to_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def _to_list(raw: Any) -> list[dict[str, Any]]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        raw = json.loads(raw)
    return list(raw)


def _enum_value(member: Any) -> Optional[str]:
    return member.value if member is not None else None


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment is not None else None


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_customer(customer: Customer) -> dict[str, Any]:
    """Convert a customer into a record payload without server fields."""

    return {
        "name": customer.name,
        "branch": customer.branch,
        "price": customer.price,
        "tank_brand": _enum_value(customer.cylinder_brand),
        "tank_size": _enum_value(customer.cylinder_size),
        "price_list": [
            {"brand": entry.brand.value, "size": entry.size.value, "price": entry.price}
            for entry in customer.price_list
        ],
        "borrowed_tanks": [
            {"brand": entry.brand.value, "size": entry.size.value, "quantity": entry.quantity}
            for entry in customer.borrowed
        ],
        "address": customer.address,
        "tax_id": customer.tax_id,
        "notes": customer.notes,
    }


def deserialize_customer(record: Mapping[str, Any]) -> Customer:
    """Convert a customer record into a :class:`Customer`."""

    return Customer(
        id=_to_text(record.get("id")),
        created_at=_to_datetime(record.get("created_at")),
        name=str(record.get("name") or ""),
        branch=str(record.get("branch") or ""),
        price=_to_decimal(record.get("price")) or Decimal("0"),
        cylinder_brand=Brand(record.get("tank_brand") or Brand.PTT.value),
        cylinder_size=CylinderSize(record.get("tank_size") or CylinderSize.S48.value),
        price_list=tuple(
            PriceOverride(
                brand=Brand(entry["brand"]),
                size=CylinderSize(entry["size"]),
                price=_to_decimal(entry.get("price")) or Decimal("0"),
            )
            for entry in _to_list(record.get("price_list"))
        ),
        borrowed=tuple(
            BorrowedCylinder(
                brand=Brand(entry["brand"]),
                size=CylinderSize(entry["size"]),
                quantity=_to_int(entry.get("quantity")),
            )
            for entry in _to_list(record.get("borrowed_tanks"))
        ),
        address=_to_text(record.get("address")),
        tax_id=_to_text(record.get("tax_id")),
        notes=_to_text(record.get("notes")),
    )


def serialize_sale(sale: Sale) -> dict[str, Any]:
    """Convert a sale into a record payload without server fields.

    Itemised sales are stored with their lines in ``items``; the legacy
    single-line columns are kept for sales that have no lines.
    """

    return {
        "customer_id": sale.customer_id,
        "date": _iso(sale.date),
        "payment_method": sale.payment_method.value,
        "invoice_type": sale.invoice_type.value,
        "invoice_number": sale.invoice_number,
        "tank_brand": _enum_value(sale.brand),
        "tank_size": _enum_value(sale.size),
        "quantity": sale.quantity,
        "unit_price": sale.unit_price,
        "cost_price": sale.cost_price,
        "total_amount": sale.total_amount,
        "items": [
            {
                "brand": item.brand.value,
                "size": item.size.value,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total_price": item.total_price,
                "cost_price": item.cost_price,
            }
            for item in sale.items
        ] or None,
        "gas_return_kg": sale.return_kg,
        "gas_return_price": sale.return_price,
    }


def deserialize_sale(record: Mapping[str, Any]) -> Sale:
    """Convert a sale record into a :class:`Sale`."""

    brand_raw = record.get("tank_brand")
    size_raw = record.get("tank_size")
    return Sale(
        id=_to_text(record.get("id")),
        created_at=_to_datetime(record.get("created_at")),
        customer_id=str(record.get("customer_id") or ""),
        date=_to_datetime(record.get("date")),
        payment_method=PaymentMethod(record.get("payment_method")),
        invoice_type=InvoiceType(record.get("invoice_type") or InvoiceType.CASH_RECEIPT.value),
        invoice_number=str(record.get("invoice_number") or ""),
        total_amount=_to_decimal(record.get("total_amount")) or Decimal("0"),
        items=tuple(
            SaleItem(
                brand=Brand(entry["brand"]),
                size=CylinderSize(entry["size"]),
                quantity=_to_int(entry.get("quantity")),
                unit_price=_to_decimal(entry.get("unit_price")) or Decimal("0"),
                total_price=_to_decimal(entry.get("total_price")) or Decimal("0"),
                cost_price=_to_decimal(entry.get("cost_price")),
            )
            for entry in _to_list(record.get("items"))
        ),
        brand=Brand(brand_raw) if brand_raw else None,
        size=CylinderSize(size_raw) if size_raw else None,
        quantity=_to_int(record.get("quantity")),
        unit_price=_to_decimal(record.get("unit_price")),
        cost_price=_to_decimal(record.get("cost_price")),
        return_kg=_to_decimal(record.get("gas_return_kg")),
        return_price=_to_decimal(record.get("gas_return_price")),
    )


def serialize_expense(expense: Expense) -> dict[str, Any]:
    """Convert an expense into a record payload without server fields."""

    return {
        "date": _iso(expense.date),
        "type": category_label(expense.category),
        "description": expense.description,
        "payee": expense.payee,
        "amount": expense.amount,
        "payment_method": expense.payment_method.value,
        "refill_details": [
            {
                "brand": item.brand.value,
                "size": item.size.value,
                "quantity": item.quantity,
                "unit_cost": item.unit_cost,
            }
            for item in expense.refill_items
        ] or None,
        "gas_return_kg": expense.return_kg,
        "gas_return_amount": expense.return_amount,
        "refill_tank_brand": _enum_value(expense.refill_brand),
        "refill_tank_size": _enum_value(expense.refill_size),
        "refill_quantity": expense.refill_quantity or None,
    }


def deserialize_expense(record: Mapping[str, Any]) -> Expense:
    """Convert an expense record into an :class:`Expense`."""

    brand_raw = record.get("refill_tank_brand")
    size_raw = record.get("refill_tank_size")
    return Expense(
        id=_to_text(record.get("id")),
        created_at=_to_datetime(record.get("created_at")),
        date=_to_datetime(record.get("date")),
        category=parse_expense_category(record.get("type")),
        description=str(record.get("description") or ""),
        payee=_to_text(record.get("payee")),
        amount=_to_decimal(record.get("amount")) or Decimal("0"),
        payment_method=PaymentMethod(record.get("payment_method") or PaymentMethod.CASH.value),
        refill_items=tuple(
            RefillItem(
                brand=Brand(entry["brand"]),
                size=CylinderSize(entry["size"]),
                quantity=_to_int(entry.get("quantity")),
                unit_cost=_to_decimal(entry.get("unit_cost")),
            )
            for entry in _to_list(record.get("refill_details"))
        ),
        return_kg=_to_decimal(record.get("gas_return_kg")),
        return_amount=_to_decimal(record.get("gas_return_amount")),
        refill_brand=Brand(brand_raw) if brand_raw else None,
        refill_size=CylinderSize(size_raw) if size_raw else None,
        refill_quantity=_to_int(record.get("refill_quantity")),
    )


def serialize_inventory_item(item: InventoryItem) -> dict[str, Any]:
    """Convert an inventory item into a record payload without server fields."""

    return {
        "category": item.category.value,
        "name": item.name,
        "tank_brand": _enum_value(item.brand),
        "tank_size": _enum_value(item.size),
        "cost_price": item.cost_price,
        "total": item.total,
        "full": item.full,
        "on_loan": item.on_loan,
        "low_stock_threshold": item.low_stock_threshold,
        "notes": item.notes,
    }


def deserialize_inventory_item(record: Mapping[str, Any]) -> InventoryItem:
    """Convert an inventory record into an :class:`InventoryItem`."""

    brand_raw = record.get("tank_brand")
    size_raw = record.get("tank_size")
    return InventoryItem(
        id=_to_text(record.get("id")),
        created_at=_to_datetime(record.get("created_at")),
        category=InventoryCategory(record.get("category") or InventoryCategory.GAS.value),
        name=_to_text(record.get("name")),
        brand=Brand(brand_raw) if brand_raw else None,
        size=CylinderSize(size_raw) if size_raw else None,
        cost_price=_to_decimal(record.get("cost_price")),
        total=_to_int(record.get("total")),
        full=_to_int(record.get("full")),
        on_loan=_to_int(record.get("on_loan")),
        low_stock_threshold=_to_optional_int(record.get("low_stock_threshold")),
        notes=_to_text(record.get("notes")),
    )


# ---------------------------------------------------------------------------
# Workbook-backed gateway
# ---------------------------------------------------------------------------


def _cell_value(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS:
        if value is None:
            return None
        return json.dumps(value, default=str, ensure_ascii=False)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        # Text keeps the exact decimal representation across save/load.
        return str(value)
    return value


def _record_value(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and isinstance(value, str):
        return json.loads(value)
    return value


class WorkbookGateway:
    """Record store kept in an ``openpyxl`` workbook.

    Each collection lives on a worksheet whose first row holds the column
    names. Every successful write is saved to ``data_file`` immediately so the
    workbook on disk always mirrors the last acknowledged operation. Errors are
    raised as :class:`GatewayError` instances carrying the same codes a
    relational store would report.
    """

    def __init__(self, workbook: Workbook, data_file: Path) -> None:
        self.workbook = workbook
        self.data_file = Path(data_file)
        self._lock = threading.RLock()

    @classmethod
    def open(cls, data_file: Path) -> "WorkbookGateway":
        """Open ``data_file`` and wrap it in a gateway."""

        return cls(open_workbook(data_file), Path(data_file).expanduser().resolve())

    # -- helpers ---------------------------------------------------------

    def _sheet(self, collection: str):
        if collection not in self.workbook.sheetnames:
            raise GatewayError(
                GatewayErrorCode.UNDEFINED_TABLE.value,
                f'relation "{collection}" does not exist',
            )
        return self.workbook[collection]

    def _header_map(self, collection: str) -> dict[str, int]:
        sheet = self._sheet(collection)
        return {
            cell.value: idx + 1
            for idx, cell in enumerate(sheet[1])
            if cell.value is not None
        }

    def _check_columns(self, collection: str, header_map: Mapping[str, int], columns: Iterable[str]) -> None:
        for column in columns:
            if column not in header_map:
                raise GatewayError(
                    GatewayErrorCode.UNDEFINED_COLUMN.value,
                    f'column "{column}" of relation "{collection}" does not exist',
                    hint="Run the schema repair procedure to add the missing column.",
                )

    def _check_required(self, collection: str, record: Mapping[str, Any]) -> None:
        for column in REQUIRED_COLUMNS.get(collection, ()):
            value = record.get(column)
            if value is None or value == "":
                raise GatewayError(
                    GatewayErrorCode.NOT_NULL_VIOLATION.value,
                    f'null value in column "{column}" of relation "{collection}" violates not-null constraint',
                )

    def _check_inventory_unique(self, record: Mapping[str, Any], *, exclude_id: Optional[str] = None) -> None:
        if record.get("category") != InventoryCategory.GAS.value:
            return
        brand = record.get("tank_brand")
        size = record.get("tank_size")
        if not brand or not size:
            return
        for existing in self._rows(Collection.INVENTORY.value):
            if existing.get("id") == exclude_id:
                continue
            if (
                existing.get("category") == InventoryCategory.GAS.value
                and existing.get("tank_brand") == brand
                and existing.get("tank_size") == size
            ):
                raise GatewayError(
                    GatewayErrorCode.UNIQUE_VIOLATION.value,
                    f'duplicate key value violates unique constraint "{INVENTORY_UNIQUE_CONSTRAINT}"',
                    details=f"Key ({INVENTORY_UNIQUE_CONSTRAINT}: tank_brand, tank_size)=({brand}, {size}) already exists.",
                )

    def _rows(self, collection: str) -> list[dict[str, Any]]:
        sheet = self._sheet(collection)
        headers = [cell.value for cell in sheet[1]]
        rows: list[dict[str, Any]] = []
        for raw in sheet.iter_rows(min_row=2, values_only=True):
            # skip fully empty rows
            if not any(cell is not None for cell in raw):
                continue
            rows.append(
                {
                    header: _record_value(header, value)
                    for header, value in zip(headers, raw)
                    if header is not None
                }
            )
        return rows

    def _locate_row(self, collection: str, record_id: str) -> Optional[int]:
        sheet = self._sheet(collection)
        header_map = self._header_map(collection)
        self._check_columns(collection, header_map, ("id",))
        id_column = header_map["id"]
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            if row[id_column - 1] == record_id:
                return row_idx
        return None

    def _read_row(self, collection: str, row_idx: int) -> dict[str, Any]:
        sheet = self._sheet(collection)
        headers = [cell.value for cell in sheet[1]]
        values = [cell.value for cell in sheet[row_idx]]
        return {
            header: _record_value(header, value)
            for header, value in zip(headers, values)
            if header is not None
        }

    def _persist(self, undo: Callable[[], None]) -> None:
        """Save the workbook, reverting the in-memory change if the save fails."""

        try:
            save_workbook(self.workbook, self.data_file)
        except PermissionError as exc:
            undo()
            log.error("Workbook save failed; reverted the pending change to %s", self.data_file)
            raise GatewayError(
                GatewayErrorCode.INSUFFICIENT_PRIVILEGE.value,
                f"permission denied for workbook {self.data_file}",
                details=str(exc),
            ) from exc

    def _missing(self, collection: str, record_id: str) -> GatewayError:
        return GatewayError(
            GatewayErrorCode.NO_DATA_FOUND.value,
            f'no row with id "{record_id}" in relation "{collection}"',
        )

    # -- public contract -------------------------------------------------

    def select(
        self,
        collection: str,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[dict[str, Any]]:
        """Return every record of ``collection``, optionally ordered."""

        with self._lock:
            rows = self._rows(collection)
            if order_by is not None:
                self._check_columns(collection, self._header_map(collection), (order_by,))
                present = [row for row in rows if row.get(order_by) is not None]
                absent = [row for row in rows if row.get(order_by) is None]
                present.sort(key=lambda row: str(row[order_by]), reverse=descending)
                rows = present + absent
        log.debug("Selected %d rows from '%s'", len(rows), collection)
        return rows

    def get(self, collection: str, record_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            row_idx = self._locate_row(collection, record_id)
            if row_idx is None:
                return None
            return self._read_row(collection, row_idx)

    def insert(self, collection: str, record: Mapping[str, Any]) -> dict[str, Any]:
        """Append ``record`` and return it with its assigned id and timestamp."""

        with self._lock:
            header_map = self._header_map(collection)
            self._check_columns(collection, header_map, record.keys())
            self._check_required(collection, record)
            if collection == Collection.INVENTORY.value:
                self._check_inventory_unique(record)

            stored = dict(record)
            stored["id"] = uuid.uuid4().hex
            stored["created_at"] = datetime.now(UTC).isoformat()
            self._check_columns(collection, header_map, SERVER_MANAGED_FIELDS)

            row: list[Any] = [None] * max(header_map.values())
            for column, value in stored.items():
                row[header_map[column] - 1] = _cell_value(column, value)
            sheet = self._sheet(collection)
            sheet.append(row)
            row_idx = sheet.max_row
            self._persist(lambda: sheet.delete_rows(row_idx))
            result = self._read_row(collection, row_idx)
        log.info("Inserted row '%s' into '%s'", result["id"], collection)
        return result

    def update(self, collection: str, record_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Overwrite the given columns of one record and return the result."""

        with self._lock:
            header_map = self._header_map(collection)
            self._check_columns(collection, header_map, changes.keys())
            row_idx = self._locate_row(collection, record_id)
            if row_idx is None:
                raise self._missing(collection, record_id)

            merged = {**self._read_row(collection, row_idx), **changes}
            self._check_required(collection, merged)
            if collection == Collection.INVENTORY.value:
                self._check_inventory_unique(merged, exclude_id=record_id)

            sheet = self._sheet(collection)
            previous: dict[int, Any] = {}
            for column, value in changes.items():
                if column in SERVER_MANAGED_FIELDS:
                    continue
                cell = sheet.cell(row=row_idx, column=header_map[column])
                previous[cell.column] = cell.value
                cell.value = _cell_value(column, value)

            def restore() -> None:
                for column_idx, value in previous.items():
                    sheet.cell(row=row_idx, column=column_idx).value = value

            self._persist(restore)
            result = self._read_row(collection, row_idx)
        log.info("Updated row '%s' in '%s' (%s)", record_id, collection, ", ".join(sorted(changes)))
        return result

    def delete(self, collection: str, record_id: str) -> None:
        with self._lock:
            row_idx = self._locate_row(collection, record_id)
            if row_idx is None:
                raise self._missing(collection, record_id)
            sheet = self._sheet(collection)
            removed = [cell.value for cell in sheet[row_idx]]
            sheet.delete_rows(row_idx)

            def reinsert() -> None:
                sheet.insert_rows(row_idx)
                for column_idx, value in enumerate(removed, start=1):
                    sheet.cell(row=row_idx, column=column_idx).value = value

            self._persist(reinsert)
        log.info("Deleted row '%s' from '%s'", record_id, collection)
