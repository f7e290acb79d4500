"""Enumerations shared across the fulfillment and payment engine.

Statuses, payment methods and event categories are closed sets: the state
machine, the dispatcher and the workbook adapter all switch over these enums,
so a new variant means a new branch in each of them.
"""

from __future__ import annotations

from enum import Enum


# Workbook layout version the persistence adapter knows how to read.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_PAGE_SIZE = 10


class TransactionStatus(str, Enum):
    """Lifecycle status of a sales transaction."""

    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class TransactionAction(str, Enum):
    """Actions accepted by the transaction state machine."""

    COMPLETE = "complete"
    CANCEL = "cancel"
    REOPEN = "reopen"


class PaymentStatus(str, Enum):
    """Settlement status of a payment."""

    PENDING = "Pending"
    INSTALLMENT = "Installment"
    PAID = "Paid"
    CANCELLED = "Cancelled"


class PaymentMethod(str, Enum):
    """Supported payment mechanisms."""

    CASH = "Cash"
    CREDIT_CARD = "CreditCard"
    BANK_TRANSFER = "BankTransfer"
    E_WALLET = "EWallet"


class EventCategory(str, Enum):
    """Domain event categories an observer can subscribe to."""

    CREATED = "created"
    UPDATED = "updated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ITEM_ADDED = "item_added"
    ITEM_UPDATED = "item_updated"
    ITEM_REMOVED = "item_removed"


class EntityKind(str, Enum):
    """Entity families carried by domain events."""

    TRANSACTION = "transaction"
    PAYMENT = "payment"


class SheetName(str, Enum):
    """Worksheet names managed by the workbook persistence adapter."""

    TRANSACTIONS = "Transactions"
    LINE_ITEMS = "LineItems"
    PAYMENTS = "Payments"
    INSTALLMENTS = "Installments"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_PAGE_SIZE",
    "TransactionStatus",
    "TransactionAction",
    "PaymentStatus",
    "PaymentMethod",
    "EventCategory",
    "EntityKind",
    "SheetName",
]
