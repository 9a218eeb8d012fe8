"""Domain records for the LPG ledger.

Every record is an immutable dataclass. Mutations elsewhere in the package
produce new instances via :func:`dataclasses.replace`, which keeps the state
store's collections safe to share with reporting code.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from .constants import (
    Brand,
    CylinderSize,
    ExpenseType,
    InventoryCategory,
    InvoiceType,
    PaymentMethod,
)


@dataclass(frozen=True)
class CustomExpenseType:
    """User-defined expense category outside of :class:`ExpenseType`."""

    label: str


ExpenseCategory = Union[ExpenseType, CustomExpenseType]


def parse_expense_category(raw: Optional[str]) -> ExpenseCategory:
    """Map free text onto a built-in category or a custom one.

    Blank values fall back to ``ExpenseType.OTHER`` so that legacy rows
    without a category still aggregate under a predictable label.
    """

    text = (raw or "").strip()
    if not text:
        return ExpenseType.OTHER
    for member in ExpenseType:
        if member.value == text:
            return member
    return CustomExpenseType(text)


def category_label(category: ExpenseCategory) -> str:
    """Return the display label persisted for ``category``."""

    if isinstance(category, ExpenseType):
        return category.value
    return category.label


@dataclass(frozen=True)
class BorrowedCylinder:
    """Empty cylinders lent to a customer."""

    brand: Brand
    size: CylinderSize
    quantity: int


@dataclass(frozen=True)
class PriceOverride:
    """Customer specific selling price for one cylinder type."""

    brand: Brand
    size: CylinderSize
    price: Decimal


@dataclass(frozen=True)
class Customer:
    """A shop customer and the cylinders currently on loan to them."""

    name: str
    branch: str
    price: Decimal
    cylinder_brand: Brand = Brand.PTT
    cylinder_size: CylinderSize = CylinderSize.S48
    price_list: tuple[PriceOverride, ...] = ()
    borrowed: tuple[BorrowedCylinder, ...] = ()
    address: Optional[str] = None
    tax_id: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return f"{self.name} ({self.branch})" if self.branch else self.name

    def price_for(self, brand: Brand, size: CylinderSize) -> Decimal:
        """Return the override price for ``brand``/``size`` or the base price."""

        for override in self.price_list:
            if override.brand == brand and override.size == size:
                return override.price
        return self.price

    def borrowed_total(self) -> int:
        return sum(entry.quantity for entry in self.borrowed)

    def can_receive_tax_invoice(self) -> bool:
        """Tax invoices print the buyer's address and tax id."""

        return bool(self.address) and bool(self.tax_id)


@dataclass(frozen=True)
class SaleItem:
    """One priced line of a sale."""

    brand: Brand
    size: CylinderSize
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    cost_price: Optional[Decimal] = None

    @classmethod
    def build(
        cls,
        brand: Brand,
        size: CylinderSize,
        quantity: int,
        unit_price: Decimal,
        cost_price: Optional[Decimal] = None,
    ) -> "SaleItem":
        """Create a line whose total is ``quantity * unit_price``."""

        return cls(
            brand=brand,
            size=size,
            quantity=quantity,
            unit_price=unit_price,
            total_price=unit_price * quantity,
            cost_price=cost_price,
        )


@dataclass(frozen=True)
class Sale:
    """A cylinder sale.

    Older rows carry a single line in ``brand``/``size``/``quantity``/
    ``unit_price``/``cost_price``; newer rows list their lines in ``items``.
    ``total_amount`` is the grand total after any gas-return deduction and
    before VAT.
    """

    customer_id: str
    date: datetime
    payment_method: PaymentMethod
    invoice_type: InvoiceType
    invoice_number: str
    total_amount: Decimal
    items: tuple[SaleItem, ...] = ()
    brand: Optional[Brand] = None
    size: Optional[CylinderSize] = None
    quantity: int = 0
    unit_price: Optional[Decimal] = None
    cost_price: Optional[Decimal] = None
    return_kg: Optional[Decimal] = None
    return_price: Optional[Decimal] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def has_items(self) -> bool:
        return len(self.items) > 0

    @property
    def return_deduction(self) -> Decimal:
        """Credit granted for gas weight returned at the time of sale."""

        if not self.return_kg or not self.return_price:
            return Decimal("0")
        return self.return_kg * self.return_price

    @property
    def is_tax_invoice(self) -> bool:
        return self.invoice_type == InvoiceType.TAX_INVOICE


@dataclass(frozen=True)
class RefillItem:
    """Cylinders received full from the supplier."""

    brand: Brand
    size: CylinderSize
    quantity: int
    unit_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class Expense:
    """Money paid out by the shop.

    Refill expenses list the cylinders refilled in ``refill_items``. Rows
    written before line items existed use ``refill_brand``/``refill_size``/
    ``refill_quantity`` instead.
    """

    date: datetime
    category: ExpenseCategory
    description: str
    amount: Decimal
    payment_method: PaymentMethod
    payee: Optional[str] = None
    refill_items: tuple[RefillItem, ...] = ()
    return_kg: Optional[Decimal] = None
    return_amount: Optional[Decimal] = None
    refill_brand: Optional[Brand] = None
    refill_size: Optional[CylinderSize] = None
    refill_quantity: int = 0
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def category_label(self) -> str:
        return category_label(self.category)

    @property
    def is_refill(self) -> bool:
        return self.category == ExpenseType.REFILL


@dataclass(frozen=True)
class InventoryItem:
    """Stock counters for one gas cylinder type or accessory.

    ``empty`` is derived and never stored. Gas rows are keyed by
    ``brand``/``size``; accessories only carry a ``name``.
    """

    category: InventoryCategory
    total: int
    full: int
    on_loan: int = 0
    brand: Optional[Brand] = None
    size: Optional[CylinderSize] = None
    name: Optional[str] = None
    cost_price: Optional[Decimal] = None
    low_stock_threshold: Optional[int] = None
    notes: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_gas(self) -> bool:
        return self.category == InventoryCategory.GAS

    @property
    def empty(self) -> int:
        return self.total - self.full - self.on_loan

    @property
    def is_low_stock(self) -> bool:
        return self.low_stock_threshold is not None and self.full <= self.low_stock_threshold

    @property
    def label(self) -> str:
        if self.is_gas and self.brand is not None and self.size is not None:
            return f"{self.brand.value} {self.size.value}"
        return self.name or "-"

    def matches(self, brand: Optional[Brand], size: Optional[CylinderSize]) -> bool:
        return self.brand == brand and self.size == size


__all__ = [
    "BorrowedCylinder",
    "CustomExpenseType",
    "Customer",
    "Expense",
    "ExpenseCategory",
    "InventoryItem",
    "PriceOverride",
    "RefillItem",
    "Sale",
    "SaleItem",
    "category_label",
    "parse_expense_category",
]
