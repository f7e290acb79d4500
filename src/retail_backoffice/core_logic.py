"""Business logic layer for the retail back-office engine.

This module hosts :class:`RetailService`, the facade that orchestrates the
transaction and payment lifecycles. Every mutation follows the same sequence:
load the current record under its per-identifier lock, run the pure state
machine, write the new record back to the store (which writes through to the
workbook when one is attached), release the lock, and only then fan the
change out to the observer dispatcher. Read-only calls never touch the state
machine or the dispatcher.

The module also keeps the runtime helpers used by the command line front-end
to load configuration and the backing workbook.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, List, Optional, Union

from openpyxl.workbook import Workbook

from . import data_manager, log, models, state_machine
from .constants import (
    DEFAULT_PAGE_SIZE,
    EXPECTED_SCHEMA_VERSION,
    EventCategory,
    PaymentMethod,
    PaymentStatus,
    TransactionAction,
    TransactionStatus,
)
from .errors import BusinessRuleViolation, DuplicatePaymentError, MissingReferenceError, NotDeletableError
from .models import LineItem, LineItemDraft, Payment, Transaction
from .observers import DomainEvent, Handler, ObserverDispatcher, build_default_dispatcher
from .selection import (
    PAYMENT_FIELDS,
    PAYMENT_SORTS,
    TRANSACTION_FIELDS,
    TRANSACTION_SORTS,
    Page,
    Selection,
    apply_selection,
)
from .store import EntityStore, Persistence


def _transaction_key(transaction: Transaction) -> str:
    return transaction.transaction_id


def _payment_key(payment: Payment) -> str:
    return payment.payment_id


def _coerce_draft(item: Union[LineItemDraft, dict]) -> LineItemDraft:
    if isinstance(item, LineItemDraft):
        return item
    return LineItemDraft(
        product_id=item["product_id"],
        quantity=item["quantity"],
        unit_price=models.to_decimal(item["unit_price"]),
    )


class RetailService:
    """Facade over the transaction and payment stores.

    The service owns its dispatcher, so two services never share observer
    registrations. When no dispatcher is supplied the built-in observers are
    registered in their standard order.
    """

    def __init__(
        self,
        *,
        transactions: Optional[EntityStore[Transaction]] = None,
        payments: Optional[EntityStore[Payment]] = None,
        dispatcher: Optional[ObserverDispatcher] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if transactions is None:
            transactions = EntityStore("transaction", _transaction_key)
        if payments is None:
            payments = EntityStore("payment", _payment_key)
        if dispatcher is None:
            dispatcher = build_default_dispatcher()
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.transactions = transactions
        self.payments = payments
        self.dispatcher = dispatcher
        self.page_size = page_size

    @classmethod
    def with_persistence(
        cls,
        *,
        transaction_persistence: Optional[Persistence[Transaction]] = None,
        payment_persistence: Optional[Persistence[Payment]] = None,
        dispatcher: Optional[ObserverDispatcher] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> "RetailService":
        """Build a service whose stores write through to the given collaborators."""

        return cls(
            transactions=EntityStore("transaction", _transaction_key, persistence=transaction_persistence),
            payments=EntityStore("payment", _payment_key, persistence=payment_persistence),
            dispatcher=dispatcher,
            page_size=page_size,
        )

    def _emit(self, *events: DomainEvent) -> None:
        for event in events:
            self.dispatcher.notify(event)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def create_transaction(
        self,
        customer_id: str,
        customer_name: str,
        line_items: Iterable[Union[LineItemDraft, dict]] = (),
        note: Optional[str] = None,
    ) -> Transaction:
        """Create an ``InProgress`` transaction with its initial line items.

        Args:
            customer_id (str): Identifier of the buying customer.
            customer_name (str): Display name copied onto the transaction.
            line_items (Iterable[LineItemDraft | dict]): Initial lines. Dicts
                must carry ``product_id``, ``quantity`` and ``unit_price``.
            note (str | None): Free-form remark.

        Returns:
            Transaction: The stored transaction with its derived total.

        Raises:
            InvalidAmountError: If a quantity is not a positive integer or a
                unit price is negative.
        """

        if not str(customer_name).strip():
            log.error("Transaction rejected: empty customer name")
            raise BusinessRuleViolation("Customer name must not be empty")
        transaction_id = models.generate_id("TRX")
        items = tuple(models.build_line_item(transaction_id, _coerce_draft(item)) for item in line_items)
        transaction = Transaction(
            transaction_id=transaction_id,
            customer_id=str(customer_id),
            customer_name=customer_name,
            line_items=items,
            note=note,
            created_at=models.utc_now(),
        )
        self.transactions.insert(transaction)
        log.info(
            "Created transaction '%s' for customer '%s' (%d items, total=%s)",
            transaction_id,
            customer_id,
            len(items),
            transaction.total_price,
        )
        self._emit(DomainEvent(EventCategory.CREATED, transaction))
        return transaction

    def get_transaction(self, transaction_id: str) -> Transaction:
        """Return the transaction stored under ``transaction_id``.

        Raises:
            MissingReferenceError: If no such transaction exists.
        """

        return self.transactions.require(transaction_id)

    def list_transactions(
        self,
        selection: Optional[Selection] = None,
        *,
        customer_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
    ) -> Page[Transaction]:
        """Query transactions: sort, then filter, then paginate.

        ``customer_id`` and ``status`` narrow the candidate set exactly before
        the selection runs.
        """

        candidates = self.transactions.all()
        if customer_id is not None:
            candidates = [trx for trx in candidates if trx.customer_id == customer_id]
        if status is not None:
            wanted = TransactionStatus(status)
            candidates = [trx for trx in candidates if trx.status is wanted]
        return apply_selection(
            candidates,
            selection or Selection(),
            sorts=TRANSACTION_SORTS,
            fields=TRANSACTION_FIELDS,
            default_limit=self.page_size,
        )

    def update_transaction(
        self,
        transaction_id: str,
        *,
        customer_name: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Transaction:
        """Change the customer name and/or note of an ``InProgress`` transaction."""

        with self.transactions.locked(transaction_id):
            current = self.transactions.require(transaction_id)
            state_machine.require_modifiable(current, operation="update")
            changes = {}
            if customer_name is not None:
                if not customer_name.strip():
                    raise BusinessRuleViolation("Customer name must not be empty")
                changes["customer_name"] = customer_name
            if note is not None:
                changes["note"] = note
            updated = current if not changes else self.transactions.put(
                replace(current, updated_at=models.utc_now(), **changes)
            )
        if updated is not current:
            log.info("Updated transaction '%s' (%s)", transaction_id, ", ".join(sorted(changes)))
            self._emit(DomainEvent(EventCategory.UPDATED, updated, previous=current))
        return updated

    def _transition(self, transaction_id: str, action: TransactionAction) -> tuple[Transaction, Transaction]:
        with self.transactions.locked(transaction_id):
            current = self.transactions.require(transaction_id)
            updated = state_machine.transition_transaction(current, action)
            self.transactions.put(updated)
        log.info(
            "Transaction '%s' moved from %s to %s",
            transaction_id,
            current.status.value,
            updated.status.value,
        )
        return current, updated

    def complete_transaction(self, transaction_id: str) -> Transaction:
        """Move an ``InProgress`` transaction to ``Completed``.

        Completing a transaction that is already completed raises
        :class:`InvalidStateError`; the call is not idempotent.
        """

        previous, updated = self._transition(transaction_id, TransactionAction.COMPLETE)
        self._emit(DomainEvent(EventCategory.COMPLETED, updated, previous=previous))
        return updated

    def cancel_transaction(self, transaction_id: str) -> Transaction:
        previous, updated = self._transition(transaction_id, TransactionAction.CANCEL)
        self._emit(DomainEvent(EventCategory.CANCELLED, updated, previous=previous))
        return updated

    def reopen_transaction(self, transaction_id: str) -> Transaction:
        """Administratively move a ``Completed`` or ``Cancelled`` transaction back to ``InProgress``."""

        previous, updated = self._transition(transaction_id, TransactionAction.REOPEN)
        self._emit(DomainEvent(EventCategory.UPDATED, updated, previous=previous))
        return updated

    def delete_transaction(self, transaction_id: str) -> None:
        """Remove an ``InProgress`` transaction.

        Observers receive a ``cancelled`` event carrying the removed record so
        stock taken by its lines is returned.

        Raises:
            MissingReferenceError: If the transaction does not exist.
            NotDeletableError: If the transaction is ``Completed`` or
                ``Cancelled``.
        """

        with self.transactions.locked(transaction_id):
            current = self.transactions.require(transaction_id)
            if not state_machine.can_delete_transaction(current):
                log.error(
                    "Cannot delete transaction '%s' in status %s",
                    transaction_id,
                    current.status.value,
                )
                raise NotDeletableError(
                    f"Cannot delete a transaction with status {current.status.value}",
                    state=current.status,
                )
            self.transactions.remove(transaction_id)
        log.info("Deleted transaction '%s'", transaction_id)
        self._emit(DomainEvent(EventCategory.CANCELLED, current, previous=current))

    # ------------------------------------------------------------------
    # Line items
    # ------------------------------------------------------------------

    def add_line_item(self, transaction_id: str, item: Union[LineItemDraft, dict]) -> LineItem:
        """Append a line to an ``InProgress`` transaction and recompute its total.

        Returns:
            LineItem: The stored line with its generated identifier.

        Raises:
            MissingReferenceError: If the transaction does not exist.
            InvalidStateError: If the transaction is no longer in progress.
            InvalidAmountError: If quantity or unit price is invalid.
        """

        draft = _coerce_draft(item)
        with self.transactions.locked(transaction_id):
            current = self.transactions.require(transaction_id)
            state_machine.require_modifiable(current, operation="add items to")
            line = models.build_line_item(transaction_id, draft)
            updated = self.transactions.put(state_machine.append_line_item(current, line))
        log.info(
            "Added item '%s' (%s x %s) to transaction '%s'",
            line.item_id,
            line.quantity,
            line.product_id,
            transaction_id,
        )
        self._emit(DomainEvent(EventCategory.ITEM_ADDED, updated, previous=current, item=line))
        return line

    def update_line_item(
        self,
        transaction_id: str,
        item_id: str,
        *,
        quantity: Optional[int] = None,
        unit_price: Optional[Decimal] = None,
    ) -> LineItem:
        """Change the quantity and/or unit price of one line."""

        if quantity is not None:
            models.require_positive_quantity(quantity)
        if unit_price is not None:
            unit_price = models.to_decimal(unit_price)
            models.require_nonnegative_money(unit_price)

        with self.transactions.locked(transaction_id):
            current = self.transactions.require(transaction_id)
            state_machine.require_modifiable(current, operation="update items of")
            before = _require_item(current, item_id)
            after = before.with_changes(quantity=quantity, unit_price=unit_price)
            updated = self.transactions.put(state_machine.replace_line_item(current, after))
        log.info("Updated item '%s' of transaction '%s'", item_id, transaction_id)
        self._emit(
            DomainEvent(EventCategory.ITEM_UPDATED, updated, previous=current, item=after, previous_item=before)
        )
        return after

    def remove_line_item(self, transaction_id: str, item_id: str) -> Transaction:
        """Drop one line and recompute the total.

        Fires ``item_removed`` followed by ``updated``.
        """

        with self.transactions.locked(transaction_id):
            current = self.transactions.require(transaction_id)
            state_machine.require_modifiable(current, operation="remove items from")
            removed = _require_item(current, item_id)
            updated = self.transactions.put(state_machine.drop_line_item(current, item_id))
        log.info(
            "Removed item '%s' from transaction '%s' (total %s -> %s)",
            item_id,
            transaction_id,
            current.total_price,
            updated.total_price,
        )
        self._emit(
            DomainEvent(EventCategory.ITEM_REMOVED, updated, previous=current, item=removed),
            DomainEvent(EventCategory.UPDATED, updated, previous=current),
        )
        return updated

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def create_payment(
        self,
        transaction_ref: str,
        amount_due: Union[Decimal, int, str],
        method: Union[PaymentMethod, str],
        due_date: Optional[datetime] = None,
    ) -> Payment:
        """Register the payment of a transaction.

        Cash payments are settled on creation and fire ``created`` followed by
        ``completed``; every other method starts ``Pending``.

        Raises:
            InvalidAmountError: If ``amount_due`` is not positive.
            MissingReferenceError: If the transaction does not exist.
            DuplicatePaymentError: If the transaction already has a payment
                that is not cancelled.
        """

        amount = models.to_decimal(amount_due)
        models.require_positive_money(amount, message="Payment amount must be positive")
        method = PaymentMethod(method)
        self.transactions.require(transaction_ref)

        with self.payments.locked(f"transaction:{transaction_ref}"):
            existing = self._active_payment_for(transaction_ref)
            if existing is not None:
                log.error(
                    "Transaction '%s' already has payment '%s'",
                    transaction_ref,
                    existing.payment_id,
                )
                raise DuplicatePaymentError(f"Transaction {transaction_ref} already has a payment")
            payment = Payment(
                payment_id=models.generate_id("PMT"),
                transaction_id=transaction_ref,
                amount_due=amount,
                method=method,
                status=state_machine.initial_payment_status(method),
                created_at=models.utc_now(),
                due_date=due_date,
            )
            self.payments.insert(payment)

        log.info(
            "Created payment '%s' for transaction '%s' (amount=%s, method=%s, status=%s)",
            payment.payment_id,
            transaction_ref,
            amount,
            method.value,
            payment.status.value,
        )
        events = [DomainEvent(EventCategory.CREATED, payment)]
        if payment.status is PaymentStatus.PAID:
            events.append(DomainEvent(EventCategory.COMPLETED, payment))
        self._emit(*events)
        return payment

    def _active_payment_for(self, transaction_ref: str) -> Optional[Payment]:
        return self.payments.find(
            lambda pmt: pmt.transaction_id == transaction_ref and pmt.status is not PaymentStatus.CANCELLED
        )

    def get_payment(self, payment_id: str) -> Payment:
        return self.payments.require(payment_id)

    def get_payment_by_transaction(self, transaction_ref: str) -> Payment:
        """Return the payment of ``transaction_ref``, preferring a non-cancelled one.

        Raises:
            MissingReferenceError: If the transaction has no payment.
        """

        payment = self._active_payment_for(transaction_ref)
        if payment is None:
            payment = self.payments.find(lambda pmt: pmt.transaction_id == transaction_ref)
        if payment is None:
            log.warning("No payment recorded for transaction '%s'", transaction_ref)
            raise MissingReferenceError(f"No payment for transaction id: {transaction_ref}")
        return payment

    def list_payments(
        self,
        selection: Optional[Selection] = None,
        *,
        status: Optional[PaymentStatus] = None,
        method: Optional[PaymentMethod] = None,
    ) -> Page[Payment]:
        """Query payments: sort, then filter, then paginate."""

        candidates = self.payments.all()
        if status is not None:
            wanted_status = PaymentStatus(status)
            candidates = [pmt for pmt in candidates if pmt.status is wanted_status]
        if method is not None:
            wanted_method = PaymentMethod(method)
            candidates = [pmt for pmt in candidates if pmt.method is wanted_method]
        return apply_selection(
            candidates,
            selection or Selection(),
            sorts=PAYMENT_SORTS,
            fields=PAYMENT_FIELDS,
            default_limit=self.page_size,
        )

    def update_payment_status(
        self,
        payment_id: str,
        new_status: Union[PaymentStatus, str],
        initial_installment: Optional[Union[Decimal, int, str]] = None,
    ) -> Payment:
        """Move a payment to ``new_status``.

        Moving to ``Installment`` may record a first installment; if that
        installment already covers the amount due the payment lands directly
        on ``Paid``.

        Events: ``updated`` for every status change, ``item_added`` for a
        recorded installment, ``completed`` when the payment becomes ``Paid``,
        and ``cancelled`` instead of ``updated`` when it is withdrawn.

        Raises:
            MissingReferenceError: If the payment does not exist.
            AlreadySettledError: If the payment is already ``Paid``.
            InvalidStateError: If the payment is ``Cancelled`` or the edge is
                not allowed.
            InvalidAmountError: If the initial installment is invalid.
        """

        target = PaymentStatus(new_status)
        amount = None if initial_installment is None else models.to_decimal(initial_installment)

        with self.payments.locked(payment_id):
            current = self.payments.require(payment_id)
            outcome = state_machine.change_payment_status(current, target, initial_installment=amount)
            updated = outcome.payment if isinstance(outcome, state_machine.InstallmentResult) else outcome
            self.payments.put(updated)

        log.info(
            "Payment '%s' moved from %s to %s",
            payment_id,
            current.status.value,
            updated.status.value,
        )
        if target is PaymentStatus.CANCELLED:
            self._emit(DomainEvent(EventCategory.CANCELLED, updated, previous=current))
            return updated

        events = [DomainEvent(EventCategory.UPDATED, updated, previous=current)]
        if isinstance(outcome, state_machine.InstallmentResult):
            events.append(DomainEvent(EventCategory.ITEM_ADDED, updated, previous=current, item=outcome.installment))
        if updated.status is PaymentStatus.PAID:
            events.append(DomainEvent(EventCategory.COMPLETED, updated, previous=current))
        self._emit(*events)
        return updated

    def add_installment(self, payment_id: str, amount: Union[Decimal, int, str]) -> Payment:
        """Record a partial payment; fires ``item_added`` and, once settled, ``completed``."""

        value = models.to_decimal(amount)
        with self.payments.locked(payment_id):
            current = self.payments.require(payment_id)
            result = state_machine.add_installment(current, value)
            self.payments.put(result.payment)

        log.info(
            "Recorded installment '%s' of %s on payment '%s' (outstanding=%s)",
            result.installment.installment_id,
            value,
            payment_id,
            result.payment.outstanding,
        )
        events = [DomainEvent(EventCategory.ITEM_ADDED, result.payment, previous=current, item=result.installment)]
        if result.settled:
            events.append(DomainEvent(EventCategory.COMPLETED, result.payment, previous=current))
        self._emit(*events)
        return result.payment

    def delete_payment(self, payment_id: str) -> None:
        """Remove a payment that is still being paid in installments.

        Raises:
            MissingReferenceError: If the payment does not exist.
            NotDeletableError: Unless the payment is in ``Installment`` status.
        """

        with self.payments.locked(payment_id):
            current = self.payments.require(payment_id)
            state_machine.require_deletable(current)
            self.payments.remove(payment_id)
        log.info("Deleted payment '%s'", payment_id)
        self._emit(DomainEvent(EventCategory.CANCELLED, current, previous=current))

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def register_observer(
        self,
        name: str,
        handler: Handler,
        categories: Optional[Iterable[Union[EventCategory, str]]] = None,
    ) -> None:
        self.dispatcher.register(name, handler, categories)

    def unregister_observer(self, name: str) -> None:
        self.dispatcher.unregister(name)

    def list_observer_names(self) -> List[str]:
        return self.dispatcher.names()


def _require_item(transaction: Transaction, item_id: str) -> LineItem:
    item = transaction.find_item(item_id)
    if item is None:
        log.warning("Item '%s' not found on transaction '%s'", item_id, transaction.transaction_id)
        raise MissingReferenceError(f"Unknown item id: {item_id}")
    return item


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the workbook, and the service bound to it."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    service: RetailService


def build_service(settings: data_manager.ConfigSettings, workbook: Workbook) -> RetailService:
    """Create a service writing through to ``workbook`` and preload its records.

    Args:
        settings (data_manager.ConfigSettings): Parsed configuration; its page
            size and enabled observers shape the service.
        workbook (Workbook): Open workbook holding the four data sheets.

    Returns:
        RetailService: Service whose stores already hold every persisted
            transaction and payment.
    """

    workbook_lock = threading.RLock()
    service = RetailService.with_persistence(
        transaction_persistence=data_manager.TransactionWorkbookPersistence(workbook, workbook_lock),
        payment_persistence=data_manager.PaymentWorkbookPersistence(workbook, workbook_lock),
        dispatcher=build_default_dispatcher(settings.enabled_observers),
        page_size=settings.page_size,
    )
    service.transactions.preload(data_manager.iter_transactions(workbook))
    service.payments.preload(data_manager.iter_payments(workbook))
    return service


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings, the workbook, and a bound service.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for the CLI.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing or an
            unknown observer is enabled.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, service=build_service(settings, workbook))


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, discarding unsaved modifications.

    A new service is built over the fresh workbook, so in-memory records and
    observer state of the previous context are dropped.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        service=build_service(context.settings, workbook),
    )


__all__ = [
    "RetailService",
    "RuntimeContext",
    "build_service",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
]
