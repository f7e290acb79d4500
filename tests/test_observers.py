"""Unit tests for the observer dispatcher and the built-in observers."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from conftest import RecordingObserver
from retail_backoffice import core_logic, observers
from retail_backoffice.constants import EventCategory, PaymentMethod, PaymentStatus, TransactionStatus
from retail_backoffice.models import Installment, LineItem, LineItemDraft, Payment, Transaction
from retail_backoffice.observers import (
    AnalyticsObserver,
    DomainEvent,
    InventoryObserver,
    LoggingObserver,
    NotificationObserver,
    ObserverDispatcher,
)

MOMENT = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _line(item_id: str, product_id: str, quantity: int, price: str) -> LineItem:
    return LineItem(
        item_id=item_id,
        transaction_id="TRX-1",
        product_id=product_id,
        quantity=quantity,
        unit_price=Decimal(price),
    )


@pytest.fixture
def transaction() -> Transaction:
    return Transaction(
        transaction_id="TRX-1",
        customer_id="C-1",
        customer_name="Ayu",
        line_items=(_line("ITM-1", "P-1", 2, "100"), _line("ITM-2", "P-2", 1, "250")),
        created_at=MOMENT,
    )


@pytest.fixture
def payment() -> Payment:
    return Payment(
        payment_id="PMT-1",
        transaction_id="TRX-1",
        amount_due=Decimal("3000"),
        method=PaymentMethod.E_WALLET,
        status=PaymentStatus.INSTALLMENT,
        created_at=MOMENT,
    )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


def test_notify_calls_every_observer_once_in_registration_order(transaction):
    """Each registered observer sees each event exactly once, in order."""

    calls = []
    hub = ObserverDispatcher()
    for name in ("first", "second", "third"):
        hub.register(name, RecordingObserver(name, calls))

    invoked = hub.notify(DomainEvent(EventCategory.CREATED, transaction))

    assert invoked == 3
    assert calls == ["first", "second", "third"]


def test_failing_observer_does_not_stop_the_others(transaction, caplog):
    """A raising handler is logged and recorded; later handlers still run."""

    calls = []
    hub = ObserverDispatcher()

    def broken(event):
        raise RuntimeError("mail server down")

    hub.register("before", RecordingObserver("before", calls))
    hub.register("broken", broken)
    hub.register("after", RecordingObserver("after", calls))

    with caplog.at_level(logging.ERROR, logger="retail_backoffice"):
        invoked = hub.notify(DomainEvent(EventCategory.COMPLETED, transaction))

    assert invoked == 3
    assert calls == ["before", "after"]
    assert len(hub.failures) == 1
    failure = hub.failures[0]
    assert failure.observer_name == "broken"
    assert failure.category == "completed"
    assert failure.entity_id == "TRX-1"
    assert isinstance(failure.error, RuntimeError)
    assert "broken" in caplog.text


def test_failure_record_is_bounded(transaction):
    hub = ObserverDispatcher(failure_limit=3)

    def broken(event):
        raise RuntimeError(event.entity_id)

    hub.register("broken", broken)
    for index in range(10):
        hub.notify(DomainEvent(EventCategory.UPDATED, replace(transaction, transaction_id=f"TRX-{index}")))

    assert len(hub.failures) == 3
    assert [failure.entity_id for failure in hub.failures] == ["TRX-7", "TRX-8", "TRX-9"]


def test_register_duplicate_name_replaces_in_place(transaction):
    calls = []
    hub = ObserverDispatcher()
    hub.register("a", RecordingObserver("a-old", calls))
    hub.register("b", RecordingObserver("b", calls))
    hub.register("a", RecordingObserver("a-new", calls))

    hub.notify(DomainEvent(EventCategory.UPDATED, transaction))

    assert hub.names() == ["a", "b"]
    assert calls == ["a-new", "b"]


def test_register_rejects_non_callable():
    with pytest.raises(TypeError):
        ObserverDispatcher().register("bad", object())


def test_categories_limit_delivery(transaction):
    hub = ObserverDispatcher()
    recorder = RecordingObserver()
    hub.register("only-completed", recorder, categories=["completed"])

    assert hub.notify(DomainEvent(EventCategory.CREATED, transaction)) == 0
    assert hub.notify(DomainEvent(EventCategory.COMPLETED, transaction)) == 1
    assert recorder.categories == ["completed"]


def test_unregister_removes_by_name_and_ignores_unknown(transaction):
    hub = ObserverDispatcher()
    recorder = RecordingObserver()
    hub.register("rec", recorder)

    hub.unregister("missing")
    assert "rec" in hub
    hub.unregister("rec")

    assert "rec" not in hub
    assert len(hub) == 0
    assert hub.notify(DomainEvent(EventCategory.CREATED, transaction)) == 0


def test_unregister_during_notification_affects_next_event_only(transaction):
    """The registration list is snapshotted before delivery."""

    hub = ObserverDispatcher()
    late = RecordingObserver("late")

    def remover(event):
        hub.unregister("late")

    hub.register("remover", remover)
    hub.register("late", late)

    hub.notify(DomainEvent(EventCategory.CREATED, transaction))
    hub.notify(DomainEvent(EventCategory.UPDATED, transaction))

    assert late.categories == ["created"]


def test_concurrent_registration_and_notification(transaction):
    hub = ObserverDispatcher()
    hub.register("base", RecordingObserver("base"))
    errors = []

    def churn(index):
        try:
            for round_ in range(50):
                name = f"obs-{index}-{round_}"
                hub.register(name, lambda event: None)
                hub.notify(DomainEvent(EventCategory.UPDATED, transaction))
                hub.unregister(name)
        except Exception as exc:  # pragma: no cover - failure path
            errors.append(exc)

    threads = [threading.Thread(target=churn, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert hub.names() == ["base"]


def test_build_default_dispatcher_order_and_restriction():
    assert observers.build_default_dispatcher().names() == ["logging", "notification", "inventory", "analytics"]
    assert observers.build_default_dispatcher(["analytics", "logging"]).names() == ["logging", "analytics"]
    with pytest.raises(KeyError):
        observers.build_default_dispatcher(["sms"])


# ---------------------------------------------------------------------------
# Built-in observers
# ---------------------------------------------------------------------------


def test_inventory_observer_tracks_stock_movements(transaction):
    inventory = InventoryObserver()

    inventory(DomainEvent(EventCategory.CREATED, transaction))
    added = _line("ITM-3", "P-3", 4, "10")
    inventory(DomainEvent(EventCategory.ITEM_ADDED, transaction, item=added))
    before = transaction.line_items[0]
    after = replace(before, quantity=5)
    inventory(DomainEvent(EventCategory.ITEM_UPDATED, transaction, item=after, previous_item=before))
    inventory(DomainEvent(EventCategory.ITEM_REMOVED, transaction, item=transaction.line_items[1]))

    assert inventory.stock_movement("P-1") == -5
    assert inventory.stock_movement("P-2") == 0
    assert inventory.stock_movement("P-3") == -4


def test_inventory_observer_returns_stock_on_cancel_and_retakes_on_reopen(transaction):
    inventory = InventoryObserver()
    cancelled = replace(transaction, status=TransactionStatus.CANCELLED)
    reopened = replace(transaction, status=TransactionStatus.IN_PROGRESS)

    inventory(DomainEvent(EventCategory.CREATED, transaction))
    inventory(DomainEvent(EventCategory.CANCELLED, cancelled, previous=transaction))
    assert inventory.stock_movement("P-1") == 0

    inventory(DomainEvent(EventCategory.UPDATED, reopened, previous=cancelled))
    assert inventory.stock_movement("P-1") == -2


def test_inventory_observer_ignores_payments(payment):
    inventory = InventoryObserver()
    inventory(DomainEvent(EventCategory.CREATED, payment))

    assert dict(inventory.movements) == {}


def test_notification_observer_composes_messages(transaction, payment):
    notifier = NotificationObserver()
    installment = Installment("INST-1", "PMT-1", Decimal("1000"), MOMENT)
    paid = replace(payment, installments=(installment,))

    notifier(DomainEvent(EventCategory.COMPLETED, transaction))
    notifier(DomainEvent(EventCategory.ITEM_ADDED, paid, item=installment))
    notifier(DomainEvent(EventCategory.COMPLETED, paid))

    assert "Receipt for order TRX-1" in notifier.outbox[0]
    assert "Installment of 1000" in notifier.outbox[1]
    assert "outstanding 2000" in notifier.outbox[1]
    assert "fully settled" in notifier.outbox[2]


def test_notification_outbox_is_bounded(transaction):
    notifier = NotificationObserver(outbox_size=2)
    for _ in range(5):
        notifier(DomainEvent(EventCategory.UPDATED, transaction))

    assert len(notifier.outbox) == 2


def test_logging_observer_writes_one_line_per_event(transaction, payment, caplog):
    with caplog.at_level(logging.INFO, logger="retail_backoffice"):
        LoggingObserver()(DomainEvent(EventCategory.CREATED, transaction))
        LoggingObserver()(DomainEvent(EventCategory.UPDATED, payment))

    lines = [record.getMessage() for record in caplog.records if record.getMessage().startswith("event=")]
    assert len(lines) == 2
    assert "kind=transaction id=TRX-1" in lines[0]
    assert "kind=payment id=PMT-1" in lines[1]


def test_analytics_observer_aggregates_revenue(transaction, payment):
    analytics = AnalyticsObserver()
    completed = replace(transaction, status=TransactionStatus.COMPLETED)
    cancelled = replace(transaction, status=TransactionStatus.CANCELLED)
    installment = Installment("INST-1", "PMT-1", Decimal("1000"), MOMENT)
    partly_paid = replace(payment, installments=(installment,))
    settled = replace(partly_paid, status=PaymentStatus.PAID)

    analytics(DomainEvent(EventCategory.COMPLETED, completed))
    analytics(DomainEvent(EventCategory.CANCELLED, cancelled))
    analytics(DomainEvent(EventCategory.ITEM_REMOVED, transaction, item=transaction.line_items[1]))
    analytics(DomainEvent(EventCategory.ITEM_ADDED, partly_paid, item=installment))
    analytics(DomainEvent(EventCategory.COMPLETED, settled))

    totals = analytics.snapshot()
    assert totals.realized_revenue == Decimal("450")
    assert totals.lost_revenue == Decimal("700")
    assert totals.collected_payments == Decimal("3000")
    assert totals.event_counts["transaction.completed"] == 1
    assert totals.event_counts["payment.completed"] == 1


def _analytics_service():
    analytics = AnalyticsObserver()
    hub = ObserverDispatcher()
    hub.register(analytics.name, analytics)
    return core_logic.RetailService(dispatcher=hub), analytics


def test_analytics_takes_back_revenue_when_a_completed_sale_is_reopened():
    service, analytics = _analytics_service()
    sale = service.create_transaction("C-1", "Ayu", [LineItemDraft("P-1", 1, Decimal("100"))])

    service.complete_transaction(sale.transaction_id)
    service.reopen_transaction(sale.transaction_id)
    assert analytics.snapshot().realized_revenue == Decimal("0")

    service.complete_transaction(sale.transaction_id)
    assert analytics.snapshot().realized_revenue == Decimal("100")


def test_analytics_counts_a_sale_cancelled_twice_as_lost_once():
    service, analytics = _analytics_service()
    sale = service.create_transaction("C-1", "Ayu", [LineItemDraft("P-1", 2, Decimal("50"))])

    service.cancel_transaction(sale.transaction_id)
    service.reopen_transaction(sale.transaction_id)
    service.cancel_transaction(sale.transaction_id)

    totals = analytics.snapshot()
    assert totals.lost_revenue == Decimal("100")
    assert totals.realized_revenue == Decimal("0")


def test_domain_event_exposes_kind_and_entity_id(transaction, payment):
    assert DomainEvent(EventCategory.CREATED, transaction).entity_id == "TRX-1"
    assert DomainEvent(EventCategory.CREATED, transaction).kind.value == "transaction"
    assert DomainEvent(EventCategory.CREATED, payment).entity_id == "PMT-1"
    assert DomainEvent(EventCategory.CREATED, payment).kind.value == "payment"
