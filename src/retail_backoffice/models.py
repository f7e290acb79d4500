"""Immutable domain records for sales transactions and payments.

Records are frozen dataclasses. Derived values (line subtotals, transaction
totals, accrued installment sums) are computed on construction or on access,
so a record can never disagree with its own parts. Helpers that "change" a
record return a new instance built with :func:`dataclasses.replace`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Tuple

from . import log
from .constants import PaymentMethod, PaymentStatus, TransactionStatus
from .errors import InvalidAmountError

ZERO = Decimal("0")


def utc_now() -> datetime:
    """Return the current UTC time; patched by tests for deterministic clocks."""

    return datetime.now(UTC)


def generate_id(prefix: str) -> str:
    """Generate an identifier formed as ``{prefix}-{uuid4 hex}``."""

    return f"{prefix}-{uuid.uuid4().hex}"


def to_decimal(value: object) -> Decimal:
    """Coerce ints, strings, and Decimals into :class:`Decimal`.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.1")`` rather than
    the binary expansion. Text that is not a number, and infinities or NaN,
    raise :class:`InvalidAmountError`.
    """

    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            log.error("Monetary value is not a number: %r", value)
            raise InvalidAmountError(f"Amount {value!r} is not a number") from None
    if not amount.is_finite():
        log.error("Monetary value is not finite: %s", amount)
        raise InvalidAmountError(f"Amount {value!r} must be a finite number")
    return amount


def require_positive_quantity(quantity: int) -> None:
    """Validate that a line-item quantity is a strictly positive integer."""

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise InvalidAmountError("Quantity must be a positive integer")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is zero or positive."""

    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise InvalidAmountError("Amount must be zero or positive")


def require_positive_money(amount: Decimal, *, message: str = "Amount must be positive") -> None:
    """Validate that a monetary value is strictly positive."""

    if amount <= ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise InvalidAmountError(message)


@dataclass(frozen=True)
class LineItemDraft:
    """Caller intent for a new line item; the engine assigns the identifiers."""

    product_id: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class LineItem:
    """One product line of a transaction."""

    item_id: str
    transaction_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "subtotal", self.unit_price * self.quantity)

    def with_changes(self, *, quantity: Optional[int] = None, unit_price: Optional[Decimal] = None) -> "LineItem":
        """Return a copy with a new quantity and/or unit price (subtotal follows)."""

        return replace(
            self,
            quantity=self.quantity if quantity is None else quantity,
            unit_price=self.unit_price if unit_price is None else unit_price,
        )


def build_line_item(transaction_id: str, draft: LineItemDraft) -> LineItem:
    """Validate a :class:`LineItemDraft` and materialize it for ``transaction_id``."""

    require_positive_quantity(draft.quantity)
    unit_price = to_decimal(draft.unit_price)
    require_nonnegative_money(unit_price)
    return LineItem(
        item_id=generate_id("ITM"),
        transaction_id=transaction_id,
        product_id=str(draft.product_id),
        quantity=draft.quantity,
        unit_price=unit_price,
    )


@dataclass(frozen=True)
class Transaction:
    """A sales order and its line items.

    ``total_price`` is derived from ``line_items`` on construction and is not
    accepted as an argument; it always equals the sum of the subtotals.
    """

    transaction_id: str
    customer_id: str
    customer_name: str
    line_items: Tuple[LineItem, ...] = ()
    status: TransactionStatus = TransactionStatus.IN_PROGRESS
    note: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    total_price: Decimal = field(init=False)

    def __post_init__(self) -> None:
        items = tuple(self.line_items)
        object.__setattr__(self, "line_items", items)
        object.__setattr__(self, "total_price", sum((item.subtotal for item in items), ZERO))

    def find_item(self, item_id: str) -> Optional[LineItem]:
        for item in self.line_items:
            if item.item_id == item_id:
                return item
        return None

    def with_items(self, items: Iterable[LineItem], *, timestamp: Optional[datetime] = None) -> "Transaction":
        """Return a copy holding ``items``; the total is recomputed."""

        return replace(self, line_items=tuple(items), updated_at=timestamp or utc_now())


@dataclass(frozen=True)
class Installment:
    """One partial payment. Never modified once recorded."""

    installment_id: str
    payment_id: str
    amount: Decimal
    paid_at: datetime


@dataclass(frozen=True)
class Payment:
    """Settlement record owned by a transaction."""

    payment_id: str
    transaction_id: str
    amount_due: Decimal
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    installments: Tuple[Installment, ...] = ()
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    due_date: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "installments", tuple(self.installments))

    @property
    def total_paid(self) -> Decimal:
        """Sum of all recorded installments."""

        return sum((installment.amount for installment in self.installments), ZERO)

    @property
    def outstanding(self) -> Decimal:
        """Amount still owed; zero once the payment is settled."""

        if self.status is PaymentStatus.PAID:
            return ZERO
        remaining = self.amount_due - self.total_paid
        return remaining if remaining > ZERO else ZERO


__all__ = [
    "ZERO",
    "utc_now",
    "generate_id",
    "to_decimal",
    "require_positive_quantity",
    "require_nonnegative_money",
    "require_positive_money",
    "LineItemDraft",
    "LineItem",
    "build_line_item",
    "Transaction",
    "Installment",
    "Payment",
]
