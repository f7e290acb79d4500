"""Observer dispatcher and the built-in side-effect handlers.

The dispatcher decouples committed domain mutations from their side effects
(stock movements, customer messages, audit logging, revenue analytics). It is
an explicitly constructed object owned by the service facade, so each service
instance, and each test, gets its own registrations.

Handlers run synchronously, in registration order, after the mutation has been
written to the store. A failing handler is logged and recorded, and the
remaining handlers still run; the caller never sees the failure.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from . import log
from .constants import EntityKind, EventCategory, TransactionStatus
from .errors import ObserverFailure
from .models import ZERO, Installment, LineItem, Payment, Transaction


Entity = Union[Transaction, Payment]
Item = Union[LineItem, Installment]

ALL_CATEGORIES: FrozenSet[EventCategory] = frozenset(EventCategory)


@dataclass(frozen=True)
class DomainEvent:
    """A committed state change, as seen by observers.

    ``entity`` is the version now held by the store; ``previous`` is the version
    it replaced (``None`` for creations). Item-level events also carry the
    affected line item or installment and, for updates, its prior version.
    """

    category: EventCategory
    entity: Entity
    previous: Optional[Entity] = None
    item: Optional[Item] = None
    previous_item: Optional[Item] = None

    @property
    def kind(self) -> EntityKind:
        if isinstance(self.entity, Payment):
            return EntityKind.PAYMENT
        return EntityKind.TRANSACTION

    @property
    def entity_id(self) -> str:
        if isinstance(self.entity, Payment):
            return self.entity.payment_id
        return self.entity.transaction_id


Handler = Callable[[DomainEvent], Any]


@dataclass(frozen=True)
class Registration:
    """A named handler and the categories it reacts to."""

    name: str
    handler: Handler
    categories: FrozenSet[EventCategory] = ALL_CATEGORIES

    def accepts(self, category: EventCategory) -> bool:
        return category in self.categories


class ObserverDispatcher:
    """Fan-out hub invoking registered handlers for each domain event."""

    def __init__(self, failure_limit: int = 200) -> None:
        self._lock = threading.Lock()
        self._registrations: List[Registration] = []
        self.failures: Deque[ObserverFailure] = deque(maxlen=failure_limit)

    def register(
        self,
        name: str,
        handler: Handler,
        categories: Optional[Iterable[Union[EventCategory, str]]] = None,
    ) -> None:
        """Register ``handler`` under ``name``.

        Re-registering an existing name swaps the handler in place and keeps its
        position in the notification order.
        """

        if not callable(handler):
            raise TypeError(f"Observer '{name}' is not callable")
        accepted = ALL_CATEGORIES if categories is None else frozenset(EventCategory(c) for c in categories)
        registration = Registration(name=name, handler=handler, categories=accepted)
        with self._lock:
            for index, existing in enumerate(self._registrations):
                if existing.name == name:
                    self._registrations[index] = registration
                    log.info("Replaced observer '%s'", name)
                    return
            self._registrations.append(registration)
        log.info("Registered observer '%s' for %d categories", name, len(accepted))

    def unregister(self, name: str) -> None:
        """Remove the observer named ``name``; unknown names are ignored."""

        with self._lock:
            remaining = [entry for entry in self._registrations if entry.name != name]
            removed = len(remaining) != len(self._registrations)
            self._registrations = remaining
        if removed:
            log.info("Unregistered observer '%s'", name)
        else:
            log.debug("Observer '%s' was not registered", name)

    def names(self) -> List[str]:
        with self._lock:
            return [entry.name for entry in self._registrations]

    def __len__(self) -> int:
        with self._lock:
            return len(self._registrations)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return any(entry.name == name for entry in self._registrations)

    def notify(self, event: DomainEvent) -> int:
        """Deliver ``event`` to every subscribed handler.

        The registration list is copied before iteration, so concurrent
        register/unregister calls affect the next event, not this one.

        Returns:
            int: Number of handlers invoked (including ones that failed).
        """

        with self._lock:
            snapshot = tuple(self._registrations)

        invoked = 0
        for registration in snapshot:
            if not registration.accepts(event.category):
                continue
            invoked += 1
            try:
                registration.handler(event)
            except Exception as exc:
                failure = ObserverFailure(
                    observer_name=registration.name,
                    category=event.category.value,
                    entity_id=event.entity_id,
                    error=exc,
                )
                with self._lock:
                    self.failures.append(failure)
                log.exception(
                    "Observer '%s' failed on %s event for %s '%s'",
                    registration.name,
                    event.category.value,
                    event.kind.value,
                    event.entity_id,
                )
        return invoked


# ---------------------------------------------------------------------------
# Built-in observers
# ---------------------------------------------------------------------------


class LoggingObserver:
    """Writes one structured audit line per event."""

    name = "logging"

    def __call__(self, event: DomainEvent) -> None:
        entity = event.entity
        if isinstance(entity, Payment):
            log.info(
                "event=%s kind=payment id=%s transaction=%s status=%s due=%s paid=%s",
                event.category.value,
                entity.payment_id,
                entity.transaction_id,
                entity.status.value,
                entity.amount_due,
                entity.total_paid,
            )
            return

        previous_total = event.previous.total_price if isinstance(event.previous, Transaction) else None
        item_id = event.item.item_id if isinstance(event.item, LineItem) else None
        log.info(
            "event=%s kind=transaction id=%s customer=%s status=%s total=%s previous_total=%s item=%s",
            event.category.value,
            entity.transaction_id,
            entity.customer_name,
            entity.status.value,
            entity.total_price,
            previous_total,
            item_id,
        )


class NotificationObserver:
    """Produces customer-facing messages and keeps the most recent ones."""

    name = "notification"

    def __init__(self, *, outbox_size: int = 200) -> None:
        self.outbox: Deque[str] = deque(maxlen=outbox_size)

    def __call__(self, event: DomainEvent) -> None:
        message = self._compose(event)
        if message is None:
            return
        self.outbox.append(message)
        log.info("Notification: %s", message)

    @staticmethod
    def _compose(event: DomainEvent) -> Optional[str]:
        entity = event.entity
        category = event.category
        if isinstance(entity, Payment):
            if category is EventCategory.CREATED:
                return f"Payment {entity.payment_id} of {entity.amount_due} registered via {entity.method.value}"
            if category is EventCategory.ITEM_ADDED and isinstance(event.item, Installment):
                return (
                    f"Installment of {event.item.amount} received for payment {entity.payment_id}; "
                    f"outstanding {entity.outstanding}"
                )
            if category is EventCategory.COMPLETED:
                return f"Payment {entity.payment_id} is fully settled. Thank you!"
            if category is EventCategory.CANCELLED:
                return f"Payment {entity.payment_id} has been withdrawn"
            if category is EventCategory.UPDATED:
                return f"Payment {entity.payment_id} is now {entity.status.value}"
            return None

        if category is EventCategory.CREATED:
            return f"Order {entity.transaction_id} created for {entity.customer_name}"
        if category is EventCategory.UPDATED:
            return f"Order {entity.transaction_id} has been updated"
        if category is EventCategory.COMPLETED:
            return f"Receipt for order {entity.transaction_id} sent. Thank you for your purchase! Total: {entity.total_price}"
        if category is EventCategory.CANCELLED:
            return f"Order {entity.transaction_id} has been cancelled"
        if category is EventCategory.ITEM_ADDED:
            return f"Item added to order {entity.transaction_id}"
        if category is EventCategory.ITEM_UPDATED:
            return f"Cart of order {entity.transaction_id} updated"
        if category is EventCategory.ITEM_REMOVED:
            return f"Item removed from order {entity.transaction_id}"
        return None


class InventoryObserver:
    """Tracks net stock movements per product caused by sales.

    Negative values mean stock left the shelf. Payments carry no stock, so
    payment events are ignored.
    """

    name = "inventory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.movements: Dict[str, int] = defaultdict(int)

    def _adjust(self, product_id: str, delta: int) -> None:
        if delta == 0:
            return
        with self._lock:
            self.movements[product_id] += delta
        verb = "Reduced" if delta < 0 else "Returned"
        log.info("%s stock of product '%s' by %d", verb, product_id, abs(delta))

    def __call__(self, event: DomainEvent) -> None:
        entity = event.entity
        if not isinstance(entity, Transaction):
            return
        category = event.category
        if category is EventCategory.CREATED:
            for item in entity.line_items:
                self._adjust(item.product_id, -item.quantity)
        elif category is EventCategory.ITEM_ADDED and isinstance(event.item, LineItem):
            self._adjust(event.item.product_id, -event.item.quantity)
        elif category is EventCategory.ITEM_UPDATED and isinstance(event.item, LineItem):
            before = event.previous_item.quantity if isinstance(event.previous_item, LineItem) else 0
            self._adjust(event.item.product_id, before - event.item.quantity)
        elif category is EventCategory.ITEM_REMOVED and isinstance(event.item, LineItem):
            self._adjust(event.item.product_id, event.item.quantity)
        elif category is EventCategory.CANCELLED:
            for item in entity.line_items:
                self._adjust(item.product_id, item.quantity)
        elif category is EventCategory.UPDATED and self._reopened_after_cancel(event):
            for item in entity.line_items:
                self._adjust(item.product_id, -item.quantity)
        elif category is EventCategory.COMPLETED:
            log.info("Finalized stock reduction for transaction '%s'", entity.transaction_id)

    @staticmethod
    def _reopened_after_cancel(event: DomainEvent) -> bool:
        previous = event.previous
        return (
            isinstance(previous, Transaction)
            and previous.status is TransactionStatus.CANCELLED
            and event.entity.status is TransactionStatus.IN_PROGRESS
        )

    def stock_movement(self, product_id: str) -> int:
        with self._lock:
            return self.movements.get(product_id, 0)


@dataclass
class AnalyticsTotals:
    """Running figures kept by :class:`AnalyticsObserver`."""

    realized_revenue: Decimal = ZERO
    lost_revenue: Decimal = ZERO
    collected_payments: Decimal = ZERO
    event_counts: Dict[str, int] = field(default_factory=dict)


class AnalyticsObserver:
    """Aggregates revenue and loss figures from domain events."""

    name = "analytics"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._totals = AnalyticsTotals()

    def __call__(self, event: DomainEvent) -> None:
        entity = event.entity
        category = event.category
        with self._lock:
            key = f"{event.kind.value}.{category.value}"
            self._totals.event_counts[key] = self._totals.event_counts.get(key, 0) + 1

            if isinstance(entity, Transaction):
                if category is EventCategory.COMPLETED:
                    self._totals.realized_revenue += entity.total_price
                elif category is EventCategory.CANCELLED and entity.status is TransactionStatus.CANCELLED:
                    self._totals.lost_revenue += entity.total_price
                elif category is EventCategory.ITEM_REMOVED and isinstance(event.item, LineItem):
                    self._totals.lost_revenue += event.item.subtotal
                elif category is EventCategory.UPDATED:
                    self._take_back_reopened(event)
                return

            if category is EventCategory.ITEM_ADDED and isinstance(event.item, Installment):
                self._totals.collected_payments += event.item.amount
            elif category is EventCategory.COMPLETED:
                # Whatever installments did not cover was settled in one go.
                remainder = entity.amount_due - entity.total_paid
                if remainder > ZERO:
                    self._totals.collected_payments += remainder

    def _take_back_reopened(self, event: DomainEvent) -> None:
        previous = event.previous
        if not isinstance(previous, Transaction) or event.entity.status is not TransactionStatus.IN_PROGRESS:
            return
        if previous.status is TransactionStatus.COMPLETED:
            self._totals.realized_revenue -= previous.total_price
        elif previous.status is TransactionStatus.CANCELLED:
            self._totals.lost_revenue -= previous.total_price

    def snapshot(self) -> AnalyticsTotals:
        """Return a copy of the current figures."""

        with self._lock:
            return AnalyticsTotals(
                realized_revenue=self._totals.realized_revenue,
                lost_revenue=self._totals.lost_revenue,
                collected_payments=self._totals.collected_payments,
                event_counts=dict(self._totals.event_counts),
            )


BUILTIN_OBSERVERS: Tuple[str, ...] = ("logging", "notification", "inventory", "analytics")

_BUILTIN_FACTORIES: Dict[str, Callable[[], Handler]] = {
    "logging": LoggingObserver,
    "notification": NotificationObserver,
    "inventory": InventoryObserver,
    "analytics": AnalyticsObserver,
}


def build_default_dispatcher(enabled: Optional[Iterable[str]] = None) -> ObserverDispatcher:
    """Create a dispatcher with the built-in observers registered.

    Built-ins are registered in the fixed order logging, notification,
    inventory, analytics. ``enabled`` restricts the set; unknown names raise
    ``KeyError``.
    """

    wanted = BUILTIN_OBSERVERS if enabled is None else tuple(name.strip().lower() for name in enabled if name.strip())
    for name in wanted:
        if name not in _BUILTIN_FACTORIES:
            raise KeyError(f"Unknown built-in observer: {name}")

    dispatcher = ObserverDispatcher()
    for name in BUILTIN_OBSERVERS:
        if name in wanted:
            dispatcher.register(name, _BUILTIN_FACTORIES[name]())
    return dispatcher


__all__ = [
    "ALL_CATEGORIES",
    "DomainEvent",
    "Registration",
    "ObserverDispatcher",
    "LoggingObserver",
    "NotificationObserver",
    "InventoryObserver",
    "AnalyticsTotals",
    "AnalyticsObserver",
    "BUILTIN_OBSERVERS",
    "build_default_dispatcher",
]
