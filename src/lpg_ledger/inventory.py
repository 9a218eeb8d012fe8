"""Inventory adjustment engine.

Sales, refill expenses, and customer loan records all move cylinders between
the shop's counters. The helpers below translate those records into signed
deltas against the matching gas :class:`~lpg_ledger.models.InventoryItem` and
persist each change through the gateway.

Adjustments are independent writes. An :class:`AdjustmentJournal` records
every delta as an intent before the write and drops it once applied, so
a failure halfway through a multi-line sale leaves a resumable trail.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable, List, MutableSequence, Optional, Sequence

from . import data_manager, log
from .constants import Brand, Collection, CylinderSize
from .data_manager import Gateway, GatewayError
from .models import BorrowedCylinder, Expense, InventoryItem, Sale


FULL_COUNTER = "full"
LOAN_COUNTER = "on_loan"


@dataclass(frozen=True)
class StockLine:
    """A quantity of one cylinder type moved by a sale or refill."""

    brand: Brand
    size: CylinderSize
    quantity: int


@dataclass
class AdjustmentIntent:
    """One pending write against an inventory counter."""

    intent_id: int
    counter: str
    brand: Brand
    size: CylinderSize
    delta: int
    reason: str
    error: Optional[str] = None


class AdjustmentJournal:
    """In-memory log of inventory adjustment intents."""

    def __init__(self) -> None:
        self._entries: List[AdjustmentIntent] = []
        self._ids = itertools.count(1)

    def record(self, counter: str, brand: Brand, size: CylinderSize, delta: int, reason: str) -> AdjustmentIntent:
        intent = AdjustmentIntent(
            intent_id=next(self._ids),
            counter=counter,
            brand=brand,
            size=size,
            delta=delta,
            reason=reason,
        )
        self._entries.append(intent)
        return intent

    def mark_applied(self, intent: AdjustmentIntent) -> None:
        self._entries.remove(intent)

    def mark_failed(self, intent: AdjustmentIntent, error: Exception) -> None:
        intent.error = str(error)

    def discard(self, intent: AdjustmentIntent) -> None:
        if intent in self._entries:
            self._entries.remove(intent)

    def pending(self) -> List[AdjustmentIntent]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def find_gas_item(inventory: Iterable[InventoryItem], brand: Optional[Brand], size: Optional[CylinderSize]) -> Optional[InventoryItem]:
    """Return the gas inventory row keyed by ``brand``/``size``, if tracked."""

    for item in inventory:
        if item.is_gas and item.matches(brand, size):
            return item
    return None


def standard_cost(inventory: Iterable[InventoryItem], brand: Optional[Brand], size: Optional[CylinderSize]) -> Decimal:
    """Return the current cost price for a cylinder type, or zero."""

    item = find_gas_item(inventory, brand, size)
    if item is None or item.cost_price is None:
        return Decimal("0")
    return item.cost_price


def check_counts(item: InventoryItem) -> None:
    """Log counters that no longer add up.

    Full counts above the total or negative empty counts are reported but not
    rejected; stock corrections are made by editing the item.
    """

    if item.full > item.total:
        log.warning(
            "Inventory '%s' reports more full cylinders (%d) than total (%d)",
            item.label,
            item.full,
            item.total,
        )
    if item.empty < 0:
        log.warning(
            "Inventory '%s' has a negative empty count (%d = %d - %d - %d)",
            item.label,
            item.empty,
            item.total,
            item.full,
            item.on_loan,
        )


def low_stock_items(inventory: Iterable[InventoryItem]) -> List[InventoryItem]:
    """Return items whose full count sits at or below their alert threshold."""

    return [item for item in inventory if item.is_low_stock]


def sale_stock_lines(sale: Sale) -> List[StockLine]:
    """Return the cylinders a sale takes out of stock."""

    if sale.has_items:
        return [StockLine(item.brand, item.size, item.quantity) for item in sale.items]
    if sale.brand is None or sale.size is None or not sale.quantity:
        return []
    return [StockLine(sale.brand, sale.size, sale.quantity)]


def expense_refill_lines(expense: Expense) -> List[StockLine]:
    """Return the cylinders a refill expense puts back into stock."""

    if expense.refill_items:
        return [StockLine(item.brand, item.size, item.quantity) for item in expense.refill_items]
    if expense.refill_brand is None or expense.refill_size is None or not expense.refill_quantity:
        return []
    return [StockLine(expense.refill_brand, expense.refill_size, expense.refill_quantity)]


def snapshot_costs(sale: Sale, inventory: Sequence[InventoryItem]) -> Sale:
    """Fill in missing cost prices from the current inventory cost.

    Lines that already carry a cost price keep it; the snapshot freezes the
    margin at the moment of sale.
    """

    if sale.has_items:
        items = tuple(
            item if item.cost_price else replace(item, cost_price=standard_cost(inventory, item.brand, item.size))
            for item in sale.items
        )
        return replace(sale, items=items)
    if sale.cost_price:
        return sale
    return replace(sale, cost_price=standard_cost(inventory, sale.brand, sale.size))


def _replace_cached(inventory: MutableSequence[InventoryItem], updated: InventoryItem) -> None:
    for index, existing in enumerate(inventory):
        if existing.id == updated.id:
            inventory[index] = updated
            return


def _write_counter(
    gateway: Gateway,
    inventory: MutableSequence[InventoryItem],
    item: InventoryItem,
    counter: str,
    value: int,
) -> InventoryItem:
    record = gateway.update(Collection.INVENTORY.value, item.id, {counter: value})
    updated = data_manager.deserialize_inventory_item(record)
    _replace_cached(inventory, updated)
    check_counts(updated)
    return updated


def apply_stock_delta(
    gateway: Gateway,
    inventory: MutableSequence[InventoryItem],
    brand: Brand,
    size: CylinderSize,
    delta: int,
    *,
    journal: Optional[AdjustmentJournal] = None,
    reason: str = "",
) -> Optional[InventoryItem]:
    """Add ``delta`` to the full-cylinder count of a tracked gas item.

    A zero delta or an untracked ``brand``/``size`` is a no-op and issues no
    write. Sales pass negative deltas, refills positive ones.

    Args:
        gateway (Gateway): Record store receiving the update.
        inventory (MutableSequence[InventoryItem]): Cached inventory list; the
            matching entry is replaced with the stored result.
        brand (Brand): Cylinder brand.
        size (CylinderSize): Cylinder size.
        delta (int): Signed change applied to ``full``.
        journal (AdjustmentJournal | None): Optional intent log.
        reason (str): Free text recorded with the intent.

    Returns:
        InventoryItem | None: The updated item, or ``None`` when nothing was
            written.

    Raises:
        GatewayError: If the record store rejects the update. The intent stays
            pending in ``journal``.
    """

    if delta == 0:
        return None
    item = find_gas_item(inventory, brand, size)
    if item is None:
        log.debug("No inventory row for %s %s; stock delta %d ignored", brand.value, size.value, delta)
        return None

    intent = journal.record(FULL_COUNTER, brand, size, delta, reason) if journal is not None else None
    try:
        updated = _write_counter(gateway, inventory, item, FULL_COUNTER, item.full + delta)
    except GatewayError as exc:
        if intent is not None:
            journal.mark_failed(intent, exc)
        log.error("Stock adjustment %+d for '%s' failed: %s", delta, item.label, exc)
        raise
    if intent is not None:
        journal.mark_applied(intent)
    log.info("Adjusted full stock of '%s' by %+d (now %d)", updated.label, delta, updated.full)
    return updated


def _apply_loan_change(
    gateway: Gateway,
    inventory: MutableSequence[InventoryItem],
    brand: Brand,
    size: CylinderSize,
    delta: int,
    *,
    journal: Optional[AdjustmentJournal] = None,
    reason: str = "",
) -> Optional[InventoryItem]:
    if delta == 0:
        return None
    item = find_gas_item(inventory, brand, size)
    if item is None:
        log.debug("No inventory row for %s %s; loan delta %d ignored", brand.value, size.value, delta)
        return None

    new_loan = max(0, item.on_loan + delta)
    if new_loan == item.on_loan:
        return None

    intent = journal.record(LOAN_COUNTER, brand, size, delta, reason) if journal is not None else None
    try:
        updated = _write_counter(gateway, inventory, item, LOAN_COUNTER, new_loan)
    except GatewayError as exc:
        if intent is not None:
            journal.mark_failed(intent, exc)
        log.error("Loan adjustment %+d for '%s' failed: %s", delta, item.label, exc)
        raise
    if intent is not None:
        journal.mark_applied(intent)
    log.info("Adjusted on-loan count of '%s' by %+d (now %d)", updated.label, delta, updated.on_loan)
    return updated


def net_loan_deltas(
    old: Optional[Iterable[BorrowedCylinder]],
    new: Optional[Iterable[BorrowedCylinder]],
) -> dict[tuple[Brand, CylinderSize], int]:
    """Return ``sum(new) - sum(old)`` per cylinder type."""

    deltas: dict[tuple[Brand, CylinderSize], int] = {}
    for entry in old or ():
        key = (entry.brand, entry.size)
        deltas[key] = deltas.get(key, 0) - entry.quantity
    for entry in new or ():
        key = (entry.brand, entry.size)
        deltas[key] = deltas.get(key, 0) + entry.quantity
    return deltas


def apply_loan_delta(
    gateway: Gateway,
    inventory: MutableSequence[InventoryItem],
    old: Optional[Iterable[BorrowedCylinder]],
    new: Optional[Iterable[BorrowedCylinder]],
    *,
    journal: Optional[AdjustmentJournal] = None,
    reason: str = "",
) -> List[GatewayError]:
    """Sync the on-loan counters with a change in a customer's borrowed list.

    Every cylinder type whose net delta is non-zero has its ``on_loan``
    counter moved by that delta, never below zero. Each counter is written
    independently; failures are collected and returned so the remaining types
    still get their update.
    """

    failures: List[GatewayError] = []
    for (brand, size), delta in net_loan_deltas(old, new).items():
        try:
            _apply_loan_change(gateway, inventory, brand, size, delta, journal=journal, reason=reason)
        except GatewayError as exc:
            failures.append(exc)
    return failures


def apply_stock_lines(
    gateway: Gateway,
    inventory: MutableSequence[InventoryItem],
    lines: Iterable[StockLine],
    *,
    sign: int,
    journal: Optional[AdjustmentJournal] = None,
    reason: str = "",
) -> List[GatewayError]:
    """Apply ``sign * quantity`` for every line, collecting failures."""

    failures: List[GatewayError] = []
    for line in lines:
        try:
            apply_stock_delta(
                gateway,
                inventory,
                line.brand,
                line.size,
                sign * line.quantity,
                journal=journal,
                reason=reason,
            )
        except GatewayError as exc:
            failures.append(exc)
    return failures


def resume_pending(
    gateway: Gateway,
    inventory: MutableSequence[InventoryItem],
    journal: AdjustmentJournal,
) -> List[GatewayError]:
    """Retry every pending intent in the order it was recorded."""

    failures: List[GatewayError] = []
    for intent in journal.pending():
        item = find_gas_item(inventory, intent.brand, intent.size)
        if item is None:
            log.warning("Dropping adjustment #%d: '%s %s' is no longer tracked", intent.intent_id, intent.brand.value, intent.size.value)
            journal.discard(intent)
            continue
        if intent.counter == FULL_COUNTER:
            value = item.full + intent.delta
        else:
            value = max(0, item.on_loan + intent.delta)
        try:
            _write_counter(gateway, inventory, item, intent.counter, value)
        except GatewayError as exc:
            journal.mark_failed(intent, exc)
            failures.append(exc)
            continue
        journal.mark_applied(intent)
        log.info("Resumed adjustment #%d (%s %+d) for '%s'", intent.intent_id, intent.counter, intent.delta, item.label)
    return failures


__all__ = [
    "AdjustmentIntent",
    "AdjustmentJournal",
    "StockLine",
    "apply_loan_delta",
    "apply_stock_delta",
    "apply_stock_lines",
    "check_counts",
    "expense_refill_lines",
    "find_gas_item",
    "low_stock_items",
    "net_loan_deltas",
    "resume_pending",
    "sale_stock_lines",
    "snapshot_costs",
    "standard_cost",
]
