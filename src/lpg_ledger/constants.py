"""Enumerations shared across the LPG ledger modules.

Centralises domain constants so that the persistence gateway, the state store,
the inventory and reporting engines, and any presentation layer rely on a
single source of truth for categorical values and record-store identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Value added tax applied on top of tax invoices.
VAT_RATE = Decimal("0.07")

# Label used in reports when a sale references a customer we cannot resolve.
WALK_IN_CUSTOMER_LABEL = "Walk-in customer"

TOP_CUSTOMER_LIMIT = 5


class Brand(str, Enum):
    """Enumerate the cylinder brands stocked by the shop."""

    PTT = "PTT"
    WP = "WP"
    OTHER = "Other"


class CylinderSize(str, Enum):
    """Enumerate the cylinder sizes stocked by the shop."""

    S48_TWO_VALVE = "48 kg (2 valves)"
    S48 = "48 kg"
    S15 = "15 kg"
    S7 = "7 kg"
    S4 = "4 kg"
    OTHER = "Other"


class InventoryCategory(str, Enum):
    """Enumerate the kinds of inventory rows."""

    GAS = "Gas Cylinder"
    ACCESSORY = "Accessory"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales and expenses."""

    CASH = "Cash"
    TRANSFER = "Transfer"
    CREDIT = "Credit"


class InvoiceType(str, Enum):
    """Enumerate the printable document types issued for a sale."""

    CASH_RECEIPT = "Cash Receipt"
    TAX_INVOICE = "Tax Invoice"


class ExpenseType(str, Enum):
    """Enumerate the built-in expense categories."""

    REFILL = "Gas Refill"
    TRANSPORT = "Transport"
    OVERHEAD = "Overhead"
    SALARY = "Salary"
    OTHER = "Other"


class Collection(str, Enum):
    """Enumerate the record collections managed by the persistence gateway."""

    CUSTOMERS = "customers"
    SALES = "sales"
    EXPENSES = "expenses"
    INVENTORY = "inventory"


class GatewayErrorCode(str, Enum):
    """Well-known record store error codes (SQLSTATE values)."""

    UNDEFINED_COLUMN = "42703"
    UNIQUE_VIOLATION = "23505"
    UNDEFINED_TABLE = "42P01"
    NOT_NULL_VIOLATION = "23502"
    INSUFFICIENT_PRIVILEGE = "42501"
    NO_DATA_FOUND = "P0002"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "VAT_RATE",
    "WALK_IN_CUSTOMER_LABEL",
    "TOP_CUSTOMER_LIMIT",
    "Brand",
    "CylinderSize",
    "InventoryCategory",
    "PaymentMethod",
    "InvoiceType",
    "ExpenseType",
    "Collection",
    "GatewayErrorCode",
]
