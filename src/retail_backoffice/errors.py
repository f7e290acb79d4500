"""Domain error taxonomy for the fulfillment and payment engine.

Every error a caller can receive from the service facade derives from
:class:`BusinessRuleViolation`. Persistence failures are not
wrapped; they reach the caller as whatever the collaborator raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced transaction, line item, or payment is unknown."""


class InvalidStateError(BusinessRuleViolation):
    """Raised when a transition is not allowed from the entity's current state."""

    def __init__(self, message: str, *, state: Optional[Union[Enum, str]] = None) -> None:
        super().__init__(message)
        self.state = state


class AlreadySettledError(InvalidStateError):
    """Raised when a ``Paid`` payment is asked to change."""


class NotDeletableError(InvalidStateError):
    """Raised when an entity is deleted from a state that does not allow it."""


class InvalidAmountError(BusinessRuleViolation, ValueError):
    """Raised for non-positive or over-limit amounts and quantities."""


class DuplicatePaymentError(BusinessRuleViolation):
    """Raised when a transaction already owns a payment."""


@dataclass(frozen=True)
class ObserverFailure:
    """Record of an observer that raised while handling an event.

    Failures are collected by the dispatcher and logged; they are never
    re-raised to the caller that triggered the domain mutation.
    """

    observer_name: str
    category: str
    entity_id: str
    error: BaseException


def state_label(state: Union[Enum, str, None]) -> str:
    """Render a status enum or raw string for error messages."""

    if isinstance(state, Enum):
        return str(state.value)
    return str(state)


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "InvalidStateError",
    "AlreadySettledError",
    "NotDeletableError",
    "InvalidAmountError",
    "DuplicatePaymentError",
    "ObserverFailure",
    "state_label",
]
