"""Pure transition logic for transactions and payments.

Each transition receives the current record and returns a new one; inputs
are never modified, so the facade can hand both versions to the observer
dispatcher for diffing. Illegal transitions raise a domain error whose
message names the current status. Nothing here touches the store or the
dispatcher.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import FrozenSet, Optional, Tuple, Union

from . import log, models
from .constants import PaymentMethod, PaymentStatus, TransactionAction, TransactionStatus
from .errors import (
    AlreadySettledError,
    InvalidAmountError,
    InvalidStateError,
    NotDeletableError,
    state_label,
)
from .models import Installment, LineItem, Payment, Transaction


# ---------------------------------------------------------------------------
# Transaction capabilities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransactionCapabilities:
    """What a transaction in a given status is allowed to do."""

    can_modify: bool
    can_complete: bool
    can_cancel: bool
    can_add_items: bool
    can_update_items: bool
    can_delete_items: bool
    allowed_actions: Tuple[str, ...]


_IN_PROGRESS_CAPABILITIES = TransactionCapabilities(
    can_modify=True,
    can_complete=True,
    can_cancel=True,
    can_add_items=True,
    can_update_items=True,
    can_delete_items=True,
    allowed_actions=("complete", "cancel", "add_item", "update_item", "remove_item"),
)

_COMPLETED_CAPABILITIES = TransactionCapabilities(
    can_modify=False,
    can_complete=False,
    can_cancel=False,
    can_add_items=False,
    can_update_items=False,
    can_delete_items=False,
    allowed_actions=("print_receipt", "view_details"),
)

_CANCELLED_CAPABILITIES = TransactionCapabilities(
    can_modify=False,
    can_complete=False,
    can_cancel=False,
    can_add_items=False,
    can_update_items=False,
    can_delete_items=False,
    allowed_actions=("view_details",),
)


def capabilities_for(status: TransactionStatus) -> TransactionCapabilities:
    """Return the capability table for ``status``."""

    if status is TransactionStatus.IN_PROGRESS:
        return _IN_PROGRESS_CAPABILITIES
    if status is TransactionStatus.COMPLETED:
        return _COMPLETED_CAPABILITIES
    if status is TransactionStatus.CANCELLED:
        return _CANCELLED_CAPABILITIES
    raise ValueError(f"Unknown transaction status: {status!r}")


def next_transaction_status(status: TransactionStatus, action: TransactionAction) -> TransactionStatus:
    """Resolve the status reached from ``status`` by ``action``.

    Raises:
        InvalidStateError: If ``action`` is not allowed from ``status``.
    """

    if status is TransactionStatus.IN_PROGRESS:
        if action is TransactionAction.COMPLETE:
            return TransactionStatus.COMPLETED
        if action is TransactionAction.CANCEL:
            return TransactionStatus.CANCELLED
        if action is TransactionAction.REOPEN:
            raise InvalidStateError("Transaction is already in progress", state=status)
    elif status in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED):
        if action is TransactionAction.REOPEN:
            return TransactionStatus.IN_PROGRESS
        raise InvalidStateError(
            f"Transaction is {state_label(status)} and not modifiable",
            state=status,
        )
    raise InvalidStateError(
        f"Unsupported action {action!r} for status {state_label(status)}",
        state=status,
    )


def transition_transaction(
    transaction: Transaction,
    action: TransactionAction,
    *,
    timestamp: Optional[datetime] = None,
) -> Transaction:
    """Apply ``action`` to ``transaction`` and return the new version."""

    try:
        status = next_transaction_status(transaction.status, action)
    except InvalidStateError:
        log.error(
            "Rejected '%s' on transaction '%s' in status %s",
            action.value,
            transaction.transaction_id,
            state_label(transaction.status),
        )
        raise
    return replace(transaction, status=status, updated_at=timestamp or models.utc_now())


def require_modifiable(transaction: Transaction, *, operation: str = "modify") -> None:
    """Ensure the transaction still accepts changes to its details or items."""

    if not capabilities_for(transaction.status).can_modify:
        log.error(
            "Cannot %s transaction '%s' in status %s",
            operation,
            transaction.transaction_id,
            state_label(transaction.status),
        )
        raise InvalidStateError(
            f"Transaction is {state_label(transaction.status)} and not modifiable",
            state=transaction.status,
        )


def append_line_item(transaction: Transaction, item: LineItem, *, timestamp: Optional[datetime] = None) -> Transaction:
    """Return ``transaction`` with ``item`` appended and the total recomputed."""

    require_modifiable(transaction, operation="add items to")
    return transaction.with_items((*transaction.line_items, item), timestamp=timestamp)


def replace_line_item(transaction: Transaction, item: LineItem, *, timestamp: Optional[datetime] = None) -> Transaction:
    """Return ``transaction`` with the line sharing ``item.item_id`` swapped for ``item``."""

    require_modifiable(transaction, operation="update items of")
    items = tuple(item if existing.item_id == item.item_id else existing for existing in transaction.line_items)
    return transaction.with_items(items, timestamp=timestamp)


def drop_line_item(transaction: Transaction, item_id: str, *, timestamp: Optional[datetime] = None) -> Transaction:
    """Return ``transaction`` without the line identified by ``item_id``."""

    require_modifiable(transaction, operation="remove items from")
    items = tuple(existing for existing in transaction.line_items if existing.item_id != item_id)
    return transaction.with_items(items, timestamp=timestamp)


def can_delete_transaction(transaction: Transaction) -> bool:
    """Only transactions that could still be cancelled may be deleted."""

    return capabilities_for(transaction.status).can_cancel


# ---------------------------------------------------------------------------
# Payment transitions
# ---------------------------------------------------------------------------


DELETABLE_PAYMENT_STATUSES: FrozenSet[PaymentStatus] = frozenset({PaymentStatus.INSTALLMENT})


def initial_payment_status(method: PaymentMethod) -> PaymentStatus:
    """Cash settles on the spot; every other method starts out pending."""

    if method is PaymentMethod.CASH:
        return PaymentStatus.PAID
    return PaymentStatus.PENDING


def can_delete(payment: Payment) -> bool:
    """Return whether ``payment`` may be removed from the store."""

    return payment.status in DELETABLE_PAYMENT_STATUSES


def require_deletable(payment: Payment) -> None:
    if not can_delete(payment):
        log.error(
            "Cannot delete payment '%s' in status %s",
            payment.payment_id,
            state_label(payment.status),
        )
        raise NotDeletableError(
            f"Cannot delete a payment with status {state_label(payment.status)}",
            state=payment.status,
        )


def _require_mutable_payment(payment: Payment) -> None:
    if payment.status is PaymentStatus.PAID:
        log.error("Payment '%s' is already settled", payment.payment_id)
        raise AlreadySettledError("Payment is already settled", state=payment.status)
    if payment.status is PaymentStatus.CANCELLED:
        log.error("Payment '%s' is cancelled", payment.payment_id)
        raise InvalidStateError("Payment is Cancelled and not modifiable", state=payment.status)


@dataclass(frozen=True)
class InstallmentResult:
    """Outcome of :func:`add_installment`."""

    payment: Payment
    installment: Installment
    settled: bool


def add_installment(payment: Payment, amount: Decimal, *, timestamp: Optional[datetime] = None) -> InstallmentResult:
    """Record a partial payment and settle the payment when it is covered.

    The promotion to ``Paid`` happens in the same call as the installment
    that completes the amount due; there is no separate settle step.

    Raises:
        InvalidAmountError: If ``amount`` is not positive or exceeds the
            outstanding balance.
        AlreadySettledError: If the payment is already ``Paid``.
        InvalidStateError: If the payment is not in ``Installment`` status.
    """

    amount = models.to_decimal(amount)
    models.require_positive_money(amount, message="installment amount must be positive")
    _require_mutable_payment(payment)
    if payment.status is not PaymentStatus.INSTALLMENT:
        log.error(
            "Installment rejected for payment '%s' in status %s",
            payment.payment_id,
            state_label(payment.status),
        )
        raise InvalidStateError(
            f"Installments require status Installment, payment is {state_label(payment.status)}",
            state=payment.status,
        )
    if amount > payment.outstanding:
        log.error(
            "Installment of %s exceeds outstanding %s on payment '%s'",
            amount,
            payment.outstanding,
            payment.payment_id,
        )
        raise InvalidAmountError(
            f"installment amount {amount} exceeds outstanding balance {payment.outstanding}"
        )

    moment = timestamp or models.utc_now()
    installment = Installment(
        installment_id=models.generate_id("INST"),
        payment_id=payment.payment_id,
        amount=amount,
        paid_at=moment,
    )
    installments = (*payment.installments, installment)
    accrued = sum((entry.amount for entry in installments), models.ZERO)
    settled = accrued >= payment.amount_due
    status = PaymentStatus.PAID if settled else PaymentStatus.INSTALLMENT
    updated = replace(payment, installments=installments, status=status, updated_at=moment)
    return InstallmentResult(payment=updated, installment=installment, settled=settled)


def change_payment_status(
    payment: Payment,
    new_status: PaymentStatus,
    *,
    initial_installment: Optional[Decimal] = None,
    timestamp: Optional[datetime] = None,
) -> Union[InstallmentResult, Payment]:
    """Move ``payment`` to ``new_status``.

    Allowed edges are ``Pending -> Installment`` (optionally recording a first
    installment), ``Pending|Installment -> Paid`` and
    ``Pending|Installment -> Cancelled``. Re-entering ``Installment`` from
    ``Installment`` only records the optional installment.

    Returns:
        InstallmentResult when an installment was recorded, otherwise the new
        :class:`Payment`.
    """

    _require_mutable_payment(payment)
    moment = timestamp or models.utc_now()

    if new_status is PaymentStatus.INSTALLMENT:
        moved = replace(payment, status=PaymentStatus.INSTALLMENT, updated_at=moment)
        if initial_installment is None:
            return moved
        return add_installment(moved, initial_installment, timestamp=moment)

    if initial_installment is not None:
        raise InvalidAmountError("An initial installment is only accepted when moving to Installment")

    if new_status is PaymentStatus.PAID:
        return replace(payment, status=PaymentStatus.PAID, updated_at=moment)
    if new_status is PaymentStatus.CANCELLED:
        return replace(payment, status=PaymentStatus.CANCELLED, updated_at=moment)

    log.error(
        "Rejected status change of payment '%s' from %s to %s",
        payment.payment_id,
        state_label(payment.status),
        state_label(new_status),
    )
    raise InvalidStateError(
        f"Cannot move payment from {state_label(payment.status)} to {state_label(new_status)}",
        state=payment.status,
    )


__all__ = [
    "TransactionCapabilities",
    "capabilities_for",
    "next_transaction_status",
    "transition_transaction",
    "require_modifiable",
    "append_line_item",
    "replace_line_item",
    "drop_line_item",
    "can_delete_transaction",
    "DELETABLE_PAYMENT_STATUSES",
    "initial_payment_status",
    "can_delete",
    "require_deletable",
    "InstallmentResult",
    "add_installment",
    "change_payment_status",
]
