"""Tests for the domain record helpers."""

from __future__ import annotations

from decimal import Decimal

import pytest

from lpg_ledger.constants import Brand, CylinderSize, ExpenseType, InventoryCategory
from lpg_ledger.models import (
    CustomExpenseType,
    InventoryItem,
    PriceOverride,
    category_label,
    parse_expense_category,
)


def test_price_for_prefers_override(customer_factory):
    """Overrides apply to their own cylinder type; others use the base price."""

    customer = customer_factory(price_list=(PriceOverride(Brand.WP, CylinderSize.S15, Decimal("320")),))

    assert customer.price_for(Brand.WP, CylinderSize.S15) == Decimal("320")
    assert customer.price_for(Brand.PTT, CylinderSize.S48) == Decimal("400")


def test_display_name_includes_branch(customer_factory):
    assert customer_factory().display_name == "Somchai Noodles (Main)"
    assert customer_factory(branch="").display_name == "Somchai Noodles"


def test_tax_invoice_needs_address_and_tax_id(customer_factory):
    assert not customer_factory(address="1 Road").can_receive_tax_invoice()
    assert customer_factory(address="1 Road", tax_id="0105").can_receive_tax_invoice()


def test_return_deduction_needs_both_values(sale_factory):
    assert sale_factory(return_kg=Decimal("4")).return_deduction == Decimal("0")
    assert sale_factory(return_kg=Decimal("4"), return_price=Decimal("12.5")).return_deduction == Decimal("50.0")


def test_is_refill_only_for_refill_category(expense_factory):
    assert expense_factory().is_refill
    assert not expense_factory(category=ExpenseType.TRANSPORT).is_refill
    assert not expense_factory(category=CustomExpenseType("Gas Refill ")).is_refill


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Transport", ExpenseType.TRANSPORT),
        ("  Salary ", ExpenseType.SALARY),
        ("", ExpenseType.OTHER),
        (None, ExpenseType.OTHER),
        ("Permits", CustomExpenseType("Permits")),
    ],
)
def test_parse_expense_category(raw, expected):
    assert parse_expense_category(raw) == expected


def test_category_label_round_trip():
    assert category_label(ExpenseType.REFILL) == "Gas Refill"
    assert category_label(CustomExpenseType("Permits")) == "Permits"


def test_inventory_derived_counts():
    """Empty cylinders are whatever is neither full nor on loan."""

    item = InventoryItem(
        category=InventoryCategory.GAS,
        brand=Brand.PTT,
        size=CylinderSize.S15,
        total=12,
        full=4,
        on_loan=3,
        low_stock_threshold=4,
    )

    assert item.empty == 5
    assert item.is_low_stock
    assert item.label == "PTT 15 kg"


def test_accessory_label_and_no_threshold():
    item = InventoryItem(category=InventoryCategory.ACCESSORY, total=2, full=2, name="Hose")

    assert item.label == "Hose"
    assert not item.is_low_stock
