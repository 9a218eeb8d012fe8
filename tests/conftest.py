"""Shared pytest fixtures and utilities for LPG ledger tests."""

from __future__ import annotations

import argparse
import itertools
import sys
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from lpg_ledger import cli, constants, data_manager  # noqa: E402
from lpg_ledger.constants import (  # noqa: E402
    Brand,
    Collection,
    CylinderSize,
    ExpenseType,
    InventoryCategory,
    InvoiceType,
    PaymentMethod,
)
from lpg_ledger.data_manager import GatewayError  # noqa: E402
from lpg_ledger.models import (  # noqa: E402
    Customer,
    Expense,
    InventoryItem,
    RefillItem,
    Sale,
    SaleItem,
)
from lpg_ledger.setup_excel import create_master_workbook  # noqa: E402
from lpg_ledger.store import StateStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
REPORT_DATE = date(2024, 5, 15)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Company]\n"
    "Name = {company_name}\n"
    "Address = 1 Gas Road\n"
    "TaxID = 0105551234567\n"
    "Phone = 02-000-0000\n\n"
    "[Expenses]\n"
    "CustomTypes = {custom_types}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    company_name: str


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
    """Factory that creates an empty ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "ledger.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

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
        company_name: str = "Test Gas Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        custom_types: str = "Cylinder repair",
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                company_name=company_name,
                custom_types=custom_types,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            company_name=company_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


# ---------------------------------------------------------------------------
# Gateway and store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> Mock:
    """Return a ``Mock`` gateway backed by in-memory tables.

    The tables are exposed as ``gateway.tables`` so tests can seed rows
    without recording gateway calls.
    """

    tables: Dict[str, Dict[str, Dict[str, Any]]] = {collection.value: {} for collection in Collection}
    ids = itertools.count(1)

    def _missing(collection: str, record_id: str) -> GatewayError:
        return GatewayError(constants.GatewayErrorCode.NO_DATA_FOUND.value, f"no row {record_id} in {collection}")

    def select(collection, *, order_by=None, descending=False):
        return [dict(row) for row in tables[collection].values()]

    def get(collection, record_id):
        row = tables[collection].get(record_id)
        return dict(row) if row is not None else None

    def insert(collection, record):
        stored = dict(record)
        stored["id"] = f"{collection}-{next(ids)}"
        stored["created_at"] = "2024-05-01T08:00:00+00:00"
        tables[collection][stored["id"]] = stored
        return dict(stored)

    def update(collection, record_id, changes):
        if record_id not in tables[collection]:
            raise _missing(collection, record_id)
        tables[collection][record_id].update(changes)
        return dict(tables[collection][record_id])

    def delete(collection, record_id):
        if record_id not in tables[collection]:
            raise _missing(collection, record_id)
        del tables[collection][record_id]

    mock = Mock(name="gateway")
    mock.select.side_effect = select
    mock.get.side_effect = get
    mock.insert.side_effect = insert
    mock.update.side_effect = update
    mock.delete.side_effect = delete
    mock.tables = tables
    return mock


@pytest.fixture
def confirm() -> Mock:
    """Confirmation callback that accepts every prompt."""

    return Mock(name="confirm", return_value=True)


@pytest.fixture
def store(gateway: Mock, confirm: Mock) -> StateStore:
    """Empty state store over the in-memory gateway."""

    return StateStore(gateway, confirm=confirm, report_date=REPORT_DATE)


@pytest.fixture
def seed(gateway: Mock) -> Callable[..., Any]:
    """Place a record in a collection and return it with its id.

    Seeded rows bypass the gateway mock, so they do not show up in
    ``gateway.insert.call_args_list``.
    """

    serializers = {
        Collection.CUSTOMERS: (data_manager.serialize_customer, data_manager.deserialize_customer),
        Collection.SALES: (data_manager.serialize_sale, data_manager.deserialize_sale),
        Collection.EXPENSES: (data_manager.serialize_expense, data_manager.deserialize_expense),
        Collection.INVENTORY: (data_manager.serialize_inventory_item, data_manager.deserialize_inventory_item),
    }

    def _seed(collection: Collection, record: Any, *, target: StateStore | None = None) -> Any:
        serialize, deserialize = serializers[collection]
        row = serialize(record)
        row["id"] = record.id or f"seed-{uuid.uuid4().hex[:8]}"
        row["created_at"] = "2024-04-01T08:00:00+00:00"
        gateway.tables[collection.value][row["id"]] = row
        seeded = deserialize(row)
        if target is not None:
            getattr(target, collection.value).append(seeded)
        return seeded

    return _seed


@pytest.fixture
def ptt_48() -> InventoryItem:
    return InventoryItem(
        id="inv-ptt-48",
        category=InventoryCategory.GAS,
        brand=Brand.PTT,
        size=CylinderSize.S48,
        total=20,
        full=10,
        on_loan=2,
        cost_price=Decimal("350"),
        low_stock_threshold=3,
    )


@pytest.fixture
def wp_15() -> InventoryItem:
    return InventoryItem(
        id="inv-wp-15",
        category=InventoryCategory.GAS,
        brand=Brand.WP,
        size=CylinderSize.S15,
        total=10,
        full=5,
        cost_price=Decimal("300"),
    )


@pytest.fixture
def stocked_store(store: StateStore, seed, ptt_48: InventoryItem, wp_15: InventoryItem) -> StateStore:
    """State store holding PTT 48 kg and WP 15 kg stock rows."""

    seed(Collection.INVENTORY, ptt_48, target=store)
    seed(Collection.INVENTORY, wp_15, target=store)
    return store


@pytest.fixture
def customer_factory() -> Callable[..., Customer]:
    """Build customers with sensible defaults."""

    def _make(**overrides: Any) -> Customer:
        values: Dict[str, Any] = {
            "name": "Somchai Noodles",
            "branch": "Main",
            "price": Decimal("400"),
        }
        values.update(overrides)
        return Customer(**values)

    return _make


@pytest.fixture
def sale_factory() -> Callable[..., Sale]:
    """Build itemised sales; ``items`` defaults to two PTT 48 kg at 400."""

    def _make(**overrides: Any) -> Sale:
        items = overrides.pop("items", (SaleItem.build(Brand.PTT, CylinderSize.S48, 2, Decimal("400")),))
        values: Dict[str, Any] = {
            "customer_id": "cust-1",
            "date": datetime(2024, 5, 15, 10, 30),
            "payment_method": PaymentMethod.CASH,
            "invoice_type": InvoiceType.CASH_RECEIPT,
            "invoice_number": "INV-001",
            "total_amount": sum((item.total_price for item in items), Decimal("0")),
            "items": tuple(items),
        }
        values.update(overrides)
        return Sale(**values)

    return _make


@pytest.fixture
def expense_factory() -> Callable[..., Expense]:
    """Build refill expenses; ``refill_items`` defaults to three PTT 48 kg."""

    def _make(**overrides: Any) -> Expense:
        values: Dict[str, Any] = {
            "date": datetime(2024, 5, 15, 9, 0),
            "category": ExpenseType.REFILL,
            "description": "Depot refill",
            "amount": Decimal("1050"),
            "payment_method": PaymentMethod.CASH,
            "refill_items": (RefillItem(Brand.PTT, CylinderSize.S48, 3),),
        }
        values.update(overrides)
        return Expense(**values)

    return _make


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="lpg-cli", description="LPG CLI")


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
