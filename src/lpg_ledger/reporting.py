"""Reporting and aggregation engine.

Summaries are derived from scratch from the state store's collections for
the calendar day and calendar month of a report date. Nothing is persisted;
callers recompute whenever sales, expenses, inventory, or the report date
change.

Gross profit is the margin on goods sold: line totals minus cost price times
quantity, less any gas-return credit. A line without a cost snapshot falls
back to the inventory item's *current* cost price, so historical profit moves
when costs are edited later.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import log
from .constants import (
    TOP_CUSTOMER_LIMIT,
    VAT_RATE,
    WALK_IN_CUSTOMER_LABEL,
    Brand,
    CylinderSize,
    PaymentMethod,
)
from .inventory import expense_refill_lines, standard_cost
from .models import Customer, Expense, InventoryItem, Sale, SaleItem


ZERO = Decimal("0")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class CustomerSales:
    """Income from one customer on the report day."""

    customer_id: str
    customer_name: str
    total_amount: Decimal


@dataclass(frozen=True)
class RefillStat:
    """Cylinders refilled for one brand and size, split by how they were paid."""

    brand: Brand
    size: CylinderSize
    cash_quantity: int = 0
    credit_quantity: int = 0

    @property
    def label(self) -> str:
        return f"{self.brand.value} {self.size.value}"

    @property
    def quantity(self) -> int:
        return self.cash_quantity + self.credit_quantity


@dataclass(frozen=True)
class UnitsSold:
    """Cylinders sold for one brand and size during the month."""

    brand: Brand
    size: CylinderSize
    cash_quantity: int = 0
    credit_quantity: int = 0
    tax_invoice_quantity: int = 0

    @property
    def label(self) -> str:
        return f"{self.brand.value} {self.size.value}"

    @property
    def quantity(self) -> int:
        return self.cash_quantity + self.credit_quantity


@dataclass(frozen=True)
class CustomerStat:
    """Monthly totals for one customer."""

    customer_id: str
    name: str
    branch: str
    tanks: int
    total: Decimal
    profit: Decimal


@dataclass(frozen=True)
class ExpenseBreakdown:
    """Monthly totals for one expense category."""

    label: str
    count: int
    cash_amount: Decimal
    credit_amount: Decimal
    total_amount: Decimal
    gas_quantity: int


@dataclass(frozen=True)
class DailySummary:
    report_date: date
    income: Decimal
    gross_profit: Decimal
    cash_income: Decimal
    transfer_income: Decimal
    credit_income: Decimal
    expense: Decimal
    sales_by_customer: Tuple[CustomerSales, ...]
    refill_stats: Tuple[RefillStat, ...]

    @property
    def net_profit(self) -> Decimal:
        return self.gross_profit - self.expense


@dataclass(frozen=True)
class MonthlySummary:
    year: int
    month: int
    income: Decimal
    gross_profit: Decimal
    expense: Decimal
    customer_stats: Tuple[CustomerStat, ...]
    top_customers: Tuple[CustomerStat, ...]
    return_kg: Decimal
    return_value: Decimal
    refill_stats: Tuple[RefillStat, ...]
    units_sold: Tuple[UnitsSold, ...]
    expense_breakdown: Tuple[ExpenseBreakdown, ...]

    @property
    def net_profit(self) -> Decimal:
        return self.gross_profit - self.expense


@dataclass(frozen=True)
class InvoiceTotals:
    """Figures printed on a receipt or tax invoice."""

    subtotal: Decimal
    return_deduction: Decimal
    net_total: Decimal
    vat: Decimal
    grand_total: Decimal


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


def _local_date(moment: datetime) -> date:
    if moment.tzinfo is not None:
        moment = moment.astimezone()
    return moment.date()


def is_same_day(moment: Optional[datetime], report_date: date) -> bool:
    """Return ``True`` when ``moment`` falls on the calendar day ``report_date``."""

    if moment is None:
        return False
    return _local_date(moment) == report_date


def is_same_month(moment: Optional[datetime], report_date: date) -> bool:
    """Return ``True`` when ``moment`` falls in the month of ``report_date``."""

    if moment is None:
        return False
    day = _local_date(moment)
    return day.year == report_date.year and day.month == report_date.month


# ---------------------------------------------------------------------------
# Per-sale arithmetic
# ---------------------------------------------------------------------------


def sale_lines(sale: Sale) -> Tuple[SaleItem, ...]:
    """Return the itemised lines of ``sale``.

    A sale without items is treated as one synthetic line built from its
    legacy brand/size/quantity/unit price fields. Without a unit price the
    line total is the stored total with the return credit added back.
    """

    if sale.has_items:
        return sale.items
    if sale.unit_price is not None:
        line_total = sale.unit_price * sale.quantity
    else:
        line_total = sale.total_amount + sale.return_deduction
    return (
        SaleItem(
            brand=sale.brand or Brand.OTHER,
            size=sale.size or CylinderSize.OTHER,
            quantity=sale.quantity,
            unit_price=sale.unit_price if sale.unit_price is not None else ZERO,
            total_price=line_total,
            cost_price=sale.cost_price,
        ),
    )


def sale_quantity(sale: Sale) -> int:
    return sum(line.quantity for line in sale_lines(sale))


def line_cost(line: SaleItem, inventory: Sequence[InventoryItem]) -> Decimal:
    """Return the unit cost of ``line``: its snapshot, else the current cost."""

    if line.cost_price:
        return line.cost_price
    return standard_cost(inventory, line.brand, line.size)


def sale_gross_profit(sale: Sale, inventory: Sequence[InventoryItem]) -> Decimal:
    """Margin earned on ``sale`` after deducting any gas-return credit."""

    margin = sum(
        (line.total_price - line_cost(line, inventory) * line.quantity for line in sale_lines(sale)),
        ZERO,
    )
    return margin - sale.return_deduction


def compute_sale_total(
    items: Iterable[SaleItem],
    return_kg: Optional[Decimal] = None,
    return_price: Optional[Decimal] = None,
) -> Decimal:
    """Grand total of a sale: line totals less the gas-return deduction."""

    subtotal = sum((item.total_price for item in items), ZERO)
    if return_kg and return_price:
        subtotal -= return_kg * return_price
    return subtotal


def money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def invoice_totals(sale: Sale, *, vat_rate: Decimal = VAT_RATE) -> InvoiceTotals:
    """Compute the totals a receipt or tax invoice prints for ``sale``.

    VAT is added on top of the net total, and only for tax invoices.
    """

    subtotal = sum((line.total_price for line in sale_lines(sale)), ZERO)
    deduction = sale.return_deduction
    net_total = subtotal - deduction
    vat = money(net_total * vat_rate) if sale.is_tax_invoice else ZERO
    return InvoiceTotals(
        subtotal=subtotal,
        return_deduction=deduction,
        net_total=net_total,
        vat=vat,
        grand_total=net_total + vat,
    )


def vat_inclusive_breakdown(amount: Decimal, *, vat_rate: Decimal = VAT_RATE) -> Tuple[Decimal, Decimal]:
    """Split a VAT-inclusive ``amount`` into its pre-VAT and VAT parts."""

    pre_vat = money(amount / (Decimal("1") + vat_rate))
    return pre_vat, amount - pre_vat


# ---------------------------------------------------------------------------
# Aggregation helpers
# ---------------------------------------------------------------------------


def _customer_index(customers: Iterable[Customer]) -> Dict[str, Customer]:
    return {customer.id: customer for customer in customers if customer.id is not None}


def _income_by_method(sales: Iterable[Sale], method: PaymentMethod) -> Decimal:
    return sum((sale.total_amount for sale in sales if sale.payment_method == method), ZERO)


def _refill_stats(expenses: Iterable[Expense]) -> Tuple[RefillStat, ...]:
    stats: Dict[Tuple[Brand, CylinderSize], RefillStat] = {}
    for expense in expenses:
        on_credit = expense.payment_method == PaymentMethod.CREDIT
        for line in expense_refill_lines(expense):
            key = (line.brand, line.size)
            current = stats.get(key) or RefillStat(brand=line.brand, size=line.size)
            if on_credit:
                current = RefillStat(line.brand, line.size, current.cash_quantity, current.credit_quantity + line.quantity)
            else:
                current = RefillStat(line.brand, line.size, current.cash_quantity + line.quantity, current.credit_quantity)
            stats[key] = current
    return tuple(stats.values())


def _units_sold(sales: Iterable[Sale]) -> Tuple[UnitsSold, ...]:
    counters: Dict[Tuple[Brand, CylinderSize], List[int]] = {}
    for sale in sales:
        on_credit = sale.payment_method == PaymentMethod.CREDIT
        for line in sale_lines(sale):
            bucket = counters.setdefault((line.brand, line.size), [0, 0, 0])
            bucket[1 if on_credit else 0] += line.quantity
            if sale.is_tax_invoice:
                bucket[2] += line.quantity
    return tuple(
        UnitsSold(brand=brand, size=size, cash_quantity=cash, credit_quantity=credit, tax_invoice_quantity=taxed)
        for (brand, size), (cash, credit, taxed) in counters.items()
    )


def _expense_breakdown(expenses: Iterable[Expense]) -> Tuple[ExpenseBreakdown, ...]:
    rows: Dict[str, ExpenseBreakdown] = {}
    for expense in expenses:
        label = expense.category_label
        current = rows.get(label) or ExpenseBreakdown(label, 0, ZERO, ZERO, ZERO, 0)
        on_credit = expense.payment_method == PaymentMethod.CREDIT
        rows[label] = ExpenseBreakdown(
            label=label,
            count=current.count + 1,
            cash_amount=current.cash_amount + (ZERO if on_credit else expense.amount),
            credit_amount=current.credit_amount + (expense.amount if on_credit else ZERO),
            total_amount=current.total_amount + expense.amount,
            gas_quantity=current.gas_quantity + sum(line.quantity for line in expense_refill_lines(expense)),
        )
    return tuple(sorted(rows.values(), key=lambda row: row.total_amount, reverse=True))


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def daily_summary(
    sales: Sequence[Sale],
    expenses: Sequence[Expense],
    customers: Sequence[Customer],
    inventory: Sequence[InventoryItem],
    report_date: date,
) -> DailySummary:
    """Summarise sales and expenses dated on ``report_date``.

    Args:
        sales (Sequence[Sale]): Every sale known to the store.
        expenses (Sequence[Expense]): Every expense known to the store.
        customers (Sequence[Customer]): Used to label per-customer income.
        inventory (Sequence[InventoryItem]): Supplies fallback cost prices.
        report_date (date): Calendar day being reported.

    Returns:
        DailySummary: Income split by payment method, gross profit, expenses,
            income per customer (largest first) and refill counts.
    """

    day_sales = [sale for sale in sales if is_same_day(sale.date, report_date)]
    day_expenses = [expense for expense in expenses if is_same_day(expense.date, report_date)]
    by_id = _customer_index(customers)

    per_customer: Dict[str, CustomerSales] = {}
    for sale in day_sales:
        current = per_customer.get(sale.customer_id)
        if current is None:
            customer = by_id.get(sale.customer_id)
            name = customer.display_name if customer is not None else WALK_IN_CUSTOMER_LABEL
            current = CustomerSales(sale.customer_id, name, ZERO)
        per_customer[sale.customer_id] = CustomerSales(
            current.customer_id,
            current.customer_name,
            current.total_amount + sale.total_amount,
        )

    summary = DailySummary(
        report_date=report_date,
        income=sum((sale.total_amount for sale in day_sales), ZERO),
        gross_profit=sum((sale_gross_profit(sale, inventory) for sale in day_sales), ZERO),
        cash_income=_income_by_method(day_sales, PaymentMethod.CASH),
        transfer_income=_income_by_method(day_sales, PaymentMethod.TRANSFER),
        credit_income=_income_by_method(day_sales, PaymentMethod.CREDIT),
        expense=sum((expense.amount for expense in day_expenses), ZERO),
        sales_by_customer=tuple(sorted(per_customer.values(), key=lambda row: row.total_amount, reverse=True)),
        refill_stats=_refill_stats(day_expenses),
    )
    log.debug(
        "Daily summary for %s: %d sales, %d expenses, income=%s",
        report_date,
        len(day_sales),
        len(day_expenses),
        summary.income,
    )
    return summary


def monthly_summary(
    sales: Sequence[Sale],
    expenses: Sequence[Expense],
    customers: Sequence[Customer],
    inventory: Sequence[InventoryItem],
    report_date: date,
) -> MonthlySummary:
    """Summarise the calendar month that contains ``report_date``.

    Customer statistics are sorted by total purchases, largest first, and the
    first :data:`~lpg_ledger.constants.TOP_CUSTOMER_LIMIT` entries are exposed
    separately for charting. Returned gas weight and its value come from the
    month's refill expenses.
    """

    month_sales = [sale for sale in sales if is_same_month(sale.date, report_date)]
    month_expenses = [expense for expense in expenses if is_same_month(expense.date, report_date)]
    by_id = _customer_index(customers)

    stats: Dict[str, CustomerStat] = {}
    for sale in month_sales:
        current = stats.get(sale.customer_id)
        if current is None:
            customer = by_id.get(sale.customer_id)
            current = CustomerStat(
                customer_id=sale.customer_id,
                name=customer.name if customer is not None else WALK_IN_CUSTOMER_LABEL,
                branch=customer.branch if customer is not None else "-",
                tanks=0,
                total=ZERO,
                profit=ZERO,
            )
        stats[sale.customer_id] = CustomerStat(
            customer_id=current.customer_id,
            name=current.name,
            branch=current.branch,
            tanks=current.tanks + sale_quantity(sale),
            total=current.total + sale.total_amount,
            profit=current.profit + sale_gross_profit(sale, inventory),
        )
    customer_stats = tuple(sorted(stats.values(), key=lambda row: row.total, reverse=True))

    summary = MonthlySummary(
        year=report_date.year,
        month=report_date.month,
        income=sum((sale.total_amount for sale in month_sales), ZERO),
        gross_profit=sum((row.profit for row in customer_stats), ZERO),
        expense=sum((expense.amount for expense in month_expenses), ZERO),
        customer_stats=customer_stats,
        top_customers=customer_stats[:TOP_CUSTOMER_LIMIT],
        return_kg=sum((expense.return_kg or ZERO for expense in month_expenses), ZERO),
        return_value=sum((expense.return_amount or ZERO for expense in month_expenses), ZERO),
        refill_stats=_refill_stats(month_expenses),
        units_sold=_units_sold(month_sales),
        expense_breakdown=_expense_breakdown(month_expenses),
    )
    log.debug(
        "Monthly summary for %04d-%02d: %d sales, %d expenses, income=%s",
        summary.year,
        summary.month,
        len(month_sales),
        len(month_expenses),
        summary.income,
    )
    return summary


def customer_sales_history(sales: Iterable[Sale], customer_id: str) -> List[Sale]:
    """Return the sales of one customer, newest first."""

    history = [sale for sale in sales if sale.customer_id == customer_id]
    history.sort(key=lambda sale: sale.date, reverse=True)
    return history


__all__ = [
    "CustomerSales",
    "CustomerStat",
    "DailySummary",
    "ExpenseBreakdown",
    "InvoiceTotals",
    "MonthlySummary",
    "RefillStat",
    "UnitsSold",
    "compute_sale_total",
    "customer_sales_history",
    "daily_summary",
    "invoice_totals",
    "is_same_day",
    "is_same_month",
    "line_cost",
    "monthly_summary",
    "sale_gross_profit",
    "sale_lines",
    "sale_quantity",
    "vat_inclusive_breakdown",
]
