"""State store for the LPG ledger.

:class:`StateStore` owns the in-process copy of the four collections and
mediates every read and write between a front-end and the persistence
gateway. Each mutation follows the same sequence: validate, submit to the
gateway, update the local cache on success, then run the inventory
adjustments implied by the before/after snapshots of the record.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, MutableSequence, Optional, Tuple

from . import data_manager, inventory, log, reporting
from .constants import EXPECTED_SCHEMA_VERSION, Collection, ExpenseType
from .data_manager import CompanyProfile, ConfigSettings, Gateway, GatewayError
from .errors import (
    AdjustmentError,
    BusinessRuleViolation,
    MissingReferenceError,
    StoreError,
    translate_gateway_error,
)
from .inventory import AdjustmentIntent, AdjustmentJournal
from .models import (
    CustomExpenseType,
    Customer,
    Expense,
    ExpenseCategory,
    InventoryItem,
    Sale,
)


ConfirmCallback = Callable[[str], bool]

# (order_by, descending) per collection for the initial load.
LOAD_ORDER: Dict[Collection, Tuple[Optional[str], bool]] = {
    Collection.CUSTOMERS: ("created_at", True),
    Collection.SALES: ("date", True),
    Collection.EXPENSES: ("date", True),
    Collection.INVENTORY: (None, False),
}

DESERIALIZERS: Dict[Collection, Callable[[Any], Any]] = {
    Collection.CUSTOMERS: data_manager.deserialize_customer,
    Collection.SALES: data_manager.deserialize_sale,
    Collection.EXPENSES: data_manager.deserialize_expense,
    Collection.INVENTORY: data_manager.deserialize_inventory_item,
}


def decline_all(prompt: str) -> bool:
    """Confirmation callback used when none is supplied; refuses every delete."""

    log.warning("No confirmation callback configured; declined '%s'", prompt)
    return False


def ensure_schema_version(settings: ConfigSettings) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, settings.schema_version)
        )
    log.debug("Schema version '%s' validated", settings.schema_version)


class StateStore:
    """In-memory cache of customers, sales, expenses and inventory.

    Args:
        gateway (Gateway): Record store used for every read and write.
        confirm (Callable[[str], bool]): Asked before each delete; a falsy
            answer cancels the delete without contacting the gateway.
        settings (ConfigSettings | None): Parsed ``config.ini`` settings, used
            for the company profile and custom expense categories.
        config_path (Path | None): File that profile and category changes are
            written back to.
        report_date (date | None): Day scoping the summaries. Defaults to
            today.
    """

    def __init__(
        self,
        gateway: Gateway,
        *,
        confirm: ConfirmCallback = decline_all,
        settings: Optional[ConfigSettings] = None,
        config_path: Optional[Path] = None,
        report_date: Optional[date] = None,
    ) -> None:
        self.gateway = gateway
        self.confirm = confirm
        self.settings = settings
        self.config_path = config_path
        self.report_date = report_date or date.today()
        self.customers: List[Customer] = []
        self.sales: List[Sale] = []
        self.expenses: List[Expense] = []
        self.inventory: List[InventoryItem] = []
        self.loading = False
        self.journal = AdjustmentJournal()
        self.custom_expense_types: List[str] = list(settings.custom_expense_types) if settings else []
        self._versions: Dict[Collection, int] = {collection: 0 for collection in Collection}
        self._summaries: Dict[Tuple[str, date, Tuple[int, ...]], Any] = {}

    @classmethod
    def from_config(
        cls,
        config_path: Optional[Path] = None,
        *,
        confirm: ConfirmCallback = decline_all,
        report_date: Optional[date] = None,
    ) -> "StateStore":
        """Build a store over the workbook named in ``config.ini``.

        The collections are not read until :meth:`load` is called.

        Raises:
            FileNotFoundError: If the configuration file or workbook cannot be
                located.
            KeyError: When mandatory configuration options are missing.
            RuntimeError: If the configured schema version is unsupported.
        """

        located = data_manager.find_config_file(config_path)
        resolved = Path(located).expanduser().resolve()
        parser = data_manager.read_config(resolved)
        settings = data_manager.parse_settings(parser, base_path=resolved.parent)
        ensure_schema_version(settings)
        gateway = data_manager.WorkbookGateway.open(settings.data_file)
        log.info("Opened ledger workbook '%s'", settings.data_file)
        return cls(
            gateway,
            confirm=confirm,
            settings=settings,
            config_path=resolved,
            report_date=report_date,
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _collection(self, collection: Collection) -> MutableSequence[Any]:
        return {
            Collection.CUSTOMERS: self.customers,
            Collection.SALES: self.sales,
            Collection.EXPENSES: self.expenses,
            Collection.INVENTORY: self.inventory,
        }[collection]

    def _touch(self, *collections: Collection) -> None:
        for collection in collections:
            self._versions[collection] += 1

    def collection_version(self, collection: Collection) -> int:
        return self._versions[collection]

    def load(self) -> None:
        """Read all four collections concurrently and replace the cache.

        Every read runs to completion. Collections that loaded successfully
        are applied even when another one failed.

        Raises:
            StoreError: Naming every collection whose read failed.
        """

        self.loading = True
        failures: Dict[Collection, GatewayError] = {}
        try:
            with ThreadPoolExecutor(max_workers=len(LOAD_ORDER)) as pool:
                futures = {
                    collection: pool.submit(
                        self.gateway.select,
                        collection.value,
                        order_by=order_by,
                        descending=descending,
                    )
                    for collection, (order_by, descending) in LOAD_ORDER.items()
                }
                for collection, future in futures.items():
                    try:
                        records = future.result()
                    except GatewayError as exc:
                        failures[collection] = exc
                        log.error("Loading '%s' failed: %s", collection.value, exc)
                        continue
                    target = self._collection(collection)
                    target[:] = [DESERIALIZERS[collection](record) for record in records]
                    self._touch(collection)
        finally:
            self.loading = False

        if failures:
            detail = "; ".join(
                f"{collection.value}: {translate_gateway_error(error)}"
                for collection, error in failures.items()
            )
            raise StoreError(f"Failed to load data ({detail})")
        log.info(
            "Loaded %d customers, %d sales, %d expenses, %d inventory items",
            len(self.customers),
            len(self.sales),
            len(self.expenses),
            len(self.inventory),
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_customer(self, customer_id: Optional[str]) -> Optional[Customer]:
        for customer in self.customers:
            if customer.id == customer_id:
                return customer
        return None

    def _lookup(self, collection: Collection, record_id: Optional[str], label: str) -> Any:
        for record in self._collection(collection):
            if record.id == record_id:
                return record
        log.warning("%s lookup failed for id '%s'", label.capitalize(), record_id)
        raise MissingReferenceError(f"Unknown {label} id: {record_id}")

    def get_customer(self, customer_id: Optional[str]) -> Customer:
        """Return a cached customer.

        Raises:
            MissingReferenceError: If no customer has ``customer_id``.
        """

        return self._lookup(Collection.CUSTOMERS, customer_id, "customer")

    def get_sale(self, sale_id: Optional[str]) -> Sale:
        return self._lookup(Collection.SALES, sale_id, "sale")

    def get_expense(self, expense_id: Optional[str]) -> Expense:
        return self._lookup(Collection.EXPENSES, expense_id, "expense")

    def get_inventory_item(self, item_id: Optional[str]) -> InventoryItem:
        return self._lookup(Collection.INVENTORY, item_id, "inventory item")

    def customer_sales(self, customer_id: str) -> List[Sale]:
        return reporting.customer_sales_history(self.sales, customer_id)

    def low_stock(self) -> List[InventoryItem]:
        return inventory.low_stock_items(self.inventory)

    # ------------------------------------------------------------------
    # Gateway plumbing
    # ------------------------------------------------------------------

    def _submit(self, action: str, call: Callable[..., Any], *args: Any) -> Any:
        try:
            return call(*args)
        except GatewayError as exc:
            error = translate_gateway_error(exc, action=action)
            log.error("Failed %s: %s", action, error)
            raise error from exc

    def _replace_cached(self, collection: Collection, updated: Any) -> None:
        target = self._collection(collection)
        for index, existing in enumerate(target):
            if existing.id == updated.id:
                target[index] = updated
                break
        self._touch(collection)

    def _remove_cached(self, collection: Collection, record_id: str) -> None:
        target = self._collection(collection)
        target[:] = [record for record in target if record.id != record_id]
        self._touch(collection)

    def _settle(self, failures: List[GatewayError], what: str) -> None:
        """Report inventory adjustments that failed after the primary write."""

        self._touch(Collection.INVENTORY)
        if not failures:
            return
        log.error(
            "%s was saved but %d stock adjustment(s) failed; %d pending",
            what,
            len(failures),
            len(self.journal),
        )
        raise AdjustmentError(
            f"{what} was saved, but {len(failures)} stock adjustment(s) failed: "
            f"{translate_gateway_error(failures[0])}. Resume pending adjustments to fix the counts."
        )

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def create_customer(self, customer: Customer) -> Customer:
        record = self._submit(
            "adding customer",
            self.gateway.insert,
            Collection.CUSTOMERS.value,
            data_manager.serialize_customer(customer),
        )
        created = data_manager.deserialize_customer(record)
        self.customers.insert(0, created)
        self._touch(Collection.CUSTOMERS)
        log.info("Added customer '%s' (%s)", created.display_name, created.id)

        failures = inventory.apply_loan_delta(
            self.gateway,
            self.inventory,
            (),
            created.borrowed,
            journal=self.journal,
            reason=f"customer {created.id} created",
        )
        self._settle(failures, f"Customer '{created.name}'")
        return created

    def update_customer(self, customer: Customer) -> Customer:
        """Save an edited customer and sync the on-loan counters.

        The loan delta is the difference between the cached borrowed list and
        the edited one.
        """

        original = self.get_customer(customer.id)
        record = self._submit(
            "updating customer",
            self.gateway.update,
            Collection.CUSTOMERS.value,
            customer.id,
            data_manager.serialize_customer(customer),
        )
        updated = data_manager.deserialize_customer(record)
        self._replace_cached(Collection.CUSTOMERS, updated)
        log.info("Updated customer '%s' (%s)", updated.display_name, updated.id)

        failures = inventory.apply_loan_delta(
            self.gateway,
            self.inventory,
            original.borrowed,
            updated.borrowed,
            journal=self.journal,
            reason=f"customer {updated.id} updated",
        )
        self._settle(failures, f"Customer '{updated.name}'")
        return updated

    def delete_customer(self, customer_id: str) -> bool:
        """Delete a customer who has no sales.

        Returns:
            bool: ``False`` when the confirmation was declined.

        Raises:
            BusinessRuleViolation: If the customer has at least one sale. The
                gateway is not contacted.
        """

        customer = self.get_customer(customer_id)
        sale_count = sum(1 for sale in self.sales if sale.customer_id == customer_id)
        if sale_count:
            log.warning("Refused to delete customer '%s' with %d sales", customer.display_name, sale_count)
            raise BusinessRuleViolation(
                f"Customer '{customer.display_name}' has {sale_count} sale(s) and cannot be deleted"
            )
        if not self.confirm(f"Delete customer '{customer.display_name}'?"):
            return False

        self._submit("deleting customer", self.gateway.delete, Collection.CUSTOMERS.value, customer_id)
        self._remove_cached(Collection.CUSTOMERS, customer_id)
        log.info("Deleted customer '%s' (%s)", customer.display_name, customer_id)

        failures = inventory.apply_loan_delta(
            self.gateway,
            self.inventory,
            customer.borrowed,
            (),
            journal=self.journal,
            reason=f"customer {customer_id} deleted",
        )
        self._settle(failures, f"Deletion of customer '{customer.name}'")
        return True

    # ------------------------------------------------------------------
    # Sales
    # ------------------------------------------------------------------

    def create_sale(self, sale: Sale) -> Sale:
        """Record a sale and take its cylinders out of stock.

        Lines without a cost price receive a snapshot of the current
        inventory cost before the sale is submitted.

        Raises:
            BusinessRuleViolation: If a tax invoice is requested for a known
                customer without an address or tax id.
            StoreError: If the gateway rejects the sale.
            AdjustmentError: If the sale was saved but a stock write failed.
        """

        customer = self.find_customer(sale.customer_id)
        if sale.is_tax_invoice and customer is not None and not customer.can_receive_tax_invoice():
            log.warning("Tax invoice refused for customer '%s' without tax details", customer.display_name)
            raise BusinessRuleViolation(
                f"Customer '{customer.display_name}' needs an address and tax id for a tax invoice"
            )

        snapshot = inventory.snapshot_costs(sale, self.inventory)
        record = self._submit(
            "adding sale",
            self.gateway.insert,
            Collection.SALES.value,
            data_manager.serialize_sale(snapshot),
        )
        created = data_manager.deserialize_sale(record)
        self.sales.insert(0, created)
        self._touch(Collection.SALES)
        log.info("Recorded sale '%s' for %s (%s)", created.invoice_number, created.total_amount, created.id)

        failures = inventory.apply_stock_lines(
            self.gateway,
            self.inventory,
            inventory.sale_stock_lines(created),
            sign=-1,
            journal=self.journal,
            reason=f"sale {created.id} created",
        )
        self._settle(failures, f"Sale '{created.invoice_number}'")
        return created

    def update_sale(self, sale: Sale) -> Sale:
        """Save an edited sale.

        The original lines are added back to stock first, then the update is
        persisted, then the new lines are subtracted. If the update is
        rejected the original lines are subtracted again.
        """

        original = self.get_sale(sale.id)
        reason = f"sale {sale.id} updated"
        failures = inventory.apply_stock_lines(
            self.gateway,
            self.inventory,
            inventory.sale_stock_lines(original),
            sign=1,
            journal=self.journal,
            reason=reason,
        )
        try:
            record = self._submit(
                "updating sale",
                self.gateway.update,
                Collection.SALES.value,
                sale.id,
                data_manager.serialize_sale(sale),
            )
        except StoreError:
            inventory.apply_stock_lines(
                self.gateway,
                self.inventory,
                inventory.sale_stock_lines(original),
                sign=-1,
                journal=self.journal,
                reason=f"sale {sale.id} update rejected",
            )
            self._touch(Collection.INVENTORY)
            raise

        updated = data_manager.deserialize_sale(record)
        self._replace_cached(Collection.SALES, updated)
        log.info("Updated sale '%s' (%s)", updated.invoice_number, updated.id)

        failures += inventory.apply_stock_lines(
            self.gateway,
            self.inventory,
            inventory.sale_stock_lines(updated),
            sign=-1,
            journal=self.journal,
            reason=reason,
        )
        self._settle(failures, f"Sale '{updated.invoice_number}'")
        return updated

    def delete_sale(self, sale_id: str) -> bool:
        sale = self.get_sale(sale_id)
        if not self.confirm(f"Delete sale '{sale.invoice_number}'?"):
            return False

        self._submit("deleting sale", self.gateway.delete, Collection.SALES.value, sale_id)
        self._remove_cached(Collection.SALES, sale_id)
        log.info("Deleted sale '%s' (%s)", sale.invoice_number, sale_id)

        failures = inventory.apply_stock_lines(
            self.gateway,
            self.inventory,
            inventory.sale_stock_lines(sale),
            sign=1,
            journal=self.journal,
            reason=f"sale {sale_id} deleted",
        )
        self._settle(failures, f"Deletion of sale '{sale.invoice_number}'")
        return True

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------

    def create_expense(self, expense: Expense) -> Expense:
        record = self._submit(
            "adding expense",
            self.gateway.insert,
            Collection.EXPENSES.value,
            data_manager.serialize_expense(expense),
        )
        created = data_manager.deserialize_expense(record)
        self.expenses.insert(0, created)
        self._touch(Collection.EXPENSES)
        log.info("Recorded expense '%s' of %s (%s)", created.category_label, created.amount, created.id)

        failures = inventory.apply_stock_lines(
            self.gateway,
            self.inventory,
            inventory.expense_refill_lines(created),
            sign=1,
            journal=self.journal,
            reason=f"expense {created.id} created",
        )
        self._settle(failures, f"Expense '{created.description or created.category_label}'")
        return created

    def update_expense(self, expense: Expense) -> Expense:
        """Save an edited expense, moving refilled cylinders accordingly."""

        original = self.get_expense(expense.id)
        reason = f"expense {expense.id} updated"
        failures = inventory.apply_stock_lines(
            self.gateway,
            self.inventory,
            inventory.expense_refill_lines(original),
            sign=-1,
            journal=self.journal,
            reason=reason,
        )
        try:
            record = self._submit(
                "updating expense",
                self.gateway.update,
                Collection.EXPENSES.value,
                expense.id,
                data_manager.serialize_expense(expense),
            )
        except StoreError:
            inventory.apply_stock_lines(
                self.gateway,
                self.inventory,
                inventory.expense_refill_lines(original),
                sign=1,
                journal=self.journal,
                reason=f"expense {expense.id} update rejected",
            )
            self._touch(Collection.INVENTORY)
            raise

        updated = data_manager.deserialize_expense(record)
        self._replace_cached(Collection.EXPENSES, updated)
        log.info("Updated expense '%s' (%s)", updated.category_label, updated.id)

        failures += inventory.apply_stock_lines(
            self.gateway,
            self.inventory,
            inventory.expense_refill_lines(updated),
            sign=1,
            journal=self.journal,
            reason=reason,
        )
        self._settle(failures, f"Expense '{updated.description or updated.category_label}'")
        return updated

    def delete_expense(self, expense_id: str) -> bool:
        expense = self.get_expense(expense_id)
        label = expense.description or expense.category_label
        if not self.confirm(f"Delete expense '{label}'?"):
            return False

        self._submit("deleting expense", self.gateway.delete, Collection.EXPENSES.value, expense_id)
        self._remove_cached(Collection.EXPENSES, expense_id)
        log.info("Deleted expense '%s' (%s)", label, expense_id)

        failures = inventory.apply_stock_lines(
            self.gateway,
            self.inventory,
            inventory.expense_refill_lines(expense),
            sign=-1,
            journal=self.journal,
            reason=f"expense {expense_id} deleted",
        )
        self._settle(failures, f"Deletion of expense '{label}'")
        return True

    # ------------------------------------------------------------------
    # Inventory items
    # ------------------------------------------------------------------

    def create_inventory_item(self, item: InventoryItem) -> InventoryItem:
        """Start tracking a gas cylinder type or accessory.

        Raises:
            DuplicateKeyError: If a gas item with the same brand and size
                already exists.
        """

        record = self._submit(
            "adding inventory item",
            self.gateway.insert,
            Collection.INVENTORY.value,
            data_manager.serialize_inventory_item(item),
        )
        created = data_manager.deserialize_inventory_item(record)
        self.inventory.insert(0, created)
        self._touch(Collection.INVENTORY)
        inventory.check_counts(created)
        log.info("Added inventory item '%s' (%s)", created.label, created.id)
        return created

    def update_inventory_item(self, item: InventoryItem) -> InventoryItem:
        self.get_inventory_item(item.id)
        record = self._submit(
            "updating inventory item",
            self.gateway.update,
            Collection.INVENTORY.value,
            item.id,
            data_manager.serialize_inventory_item(item),
        )
        updated = data_manager.deserialize_inventory_item(record)
        self._replace_cached(Collection.INVENTORY, updated)
        inventory.check_counts(updated)
        log.info("Updated inventory item '%s' (%s)", updated.label, updated.id)
        return updated

    def delete_inventory_item(self, item_id: str) -> bool:
        item = self.get_inventory_item(item_id)
        if not self.confirm(f"Delete inventory item '{item.label}'?"):
            return False
        self._submit("deleting inventory item", self.gateway.delete, Collection.INVENTORY.value, item_id)
        self._remove_cached(Collection.INVENTORY, item_id)
        log.info("Deleted inventory item '%s' (%s)", item.label, item_id)
        return True

    # ------------------------------------------------------------------
    # Adjustment journal
    # ------------------------------------------------------------------

    def pending_adjustments(self) -> List[AdjustmentIntent]:
        return self.journal.pending()

    def resume_adjustments(self) -> int:
        """Retry every pending stock adjustment.

        Returns:
            int: Number of intents that were pending before the retry.

        Raises:
            AdjustmentError: If some adjustments still fail; they stay
                pending.
        """

        pending = len(self.journal)
        if not pending:
            return 0
        failures = inventory.resume_pending(self.gateway, self.inventory, self.journal)
        self._touch(Collection.INVENTORY)
        if failures:
            raise AdjustmentError(
                f"{len(failures)} of {pending} stock adjustment(s) failed again: "
                f"{translate_gateway_error(failures[0])}"
            )
        log.info("Resumed %d pending stock adjustment(s)", pending)
        return pending

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def _summary(self, kind: str, compute: Callable[..., Any]) -> Any:
        versions = tuple(self._versions[collection] for collection in Collection)
        key = (kind, self.report_date, versions)
        cached = self._summaries.get(key)
        if cached is not None:
            log.debug("Serving cached %s summary for %s", kind, self.report_date)
            return cached
        self._summaries = {k: v for k, v in self._summaries.items() if k[2] == versions}
        result = compute(self.sales, self.expenses, self.customers, self.inventory, self.report_date)
        self._summaries[key] = result
        return result

    def daily_summary(self) -> reporting.DailySummary:
        return self._summary("daily", reporting.daily_summary)

    def monthly_summary(self) -> reporting.MonthlySummary:
        return self._summary("monthly", reporting.monthly_summary)

    # ------------------------------------------------------------------
    # Settings kept in config.ini
    # ------------------------------------------------------------------

    def _require_config_path(self) -> Path:
        if self.config_path is None:
            raise RuntimeError("No configuration file is attached to this store")
        return self.config_path

    def read_company_profile(self) -> CompanyProfile:
        if self.settings is None:
            return CompanyProfile(name="", address="", tax_id="", phone="")
        return self.settings.company

    def write_company_profile(self, profile: CompanyProfile) -> None:
        data_manager.write_company_profile(self._require_config_path(), profile)
        if self.settings is not None:
            self.settings = replace(self.settings, company=profile)

    def expense_categories(self) -> List[ExpenseCategory]:
        """Return the built-in categories followed by the custom ones."""

        return [*ExpenseType, *(CustomExpenseType(label) for label in self.custom_expense_types)]

    def add_expense_type(self, label: str) -> CustomExpenseType:
        text = label.strip()
        if not text:
            raise BusinessRuleViolation("Expense type name cannot be empty")
        if text in {member.value for member in ExpenseType} or text in self.custom_expense_types:
            raise BusinessRuleViolation(f"Expense type '{text}' already exists")
        self.custom_expense_types.append(text)
        self._save_expense_types()
        log.info("Added custom expense type '%s'", text)
        return CustomExpenseType(text)

    def remove_expense_type(self, label: str) -> None:
        if label not in self.custom_expense_types:
            raise MissingReferenceError(f"Unknown expense type: {label}")
        self.custom_expense_types.remove(label)
        self._save_expense_types()
        log.info("Removed custom expense type '%s'", label)

    def _save_expense_types(self) -> None:
        if self.config_path is not None:
            data_manager.write_custom_expense_types(self.config_path, tuple(self.custom_expense_types))
        if self.settings is not None:
            self.settings = replace(self.settings, custom_expense_types=tuple(self.custom_expense_types))


__all__ = [
    "ConfirmCallback",
    "StateStore",
    "decline_all",
    "ensure_schema_version",
]
