import pytest
from structlog.testing import capture_logs

from solpay.errors import IllegalTransition, InvalidOrder
from solpay.models import OrderStatus
from solpay.services.orders import OrderService

from .conftest import ADDRESS, ITEMS


@pytest.fixture
def orders(store, settings, clock):
    return OrderService(store, settings.checkout, clock=clock)


def test_transitions_are_applied_and_logged(orders, store):
    order = orders.create_order("cust-1", ITEMS, ADDRESS)

    with capture_logs() as logs:
        orders.link_payment(order.id, "pay-1")
        paid, changed = orders.mark_paid(order.id, "pay-1", "sig-1")

    assert changed
    assert paid.status == OrderStatus.PAID
    changes = [e for e in logs if e["event"] == "order_status_changed"]
    assert [(e["order_event"], e["new_status"]) for e in changes] == [
        ("link_payment", "payment_pending"),
        ("payment_confirmed", "paid"),
    ]
    assert store.get_order(order.id).history[-1].note == "payment pay-1 confirmed by sig-1"


def test_redelivered_confirmation_changes_nothing(orders, store):
    order = orders.create_order("cust-1", ITEMS, ADDRESS)
    orders.link_payment(order.id, "pay-1")
    orders.mark_paid(order.id, "pay-1", "sig-1")
    history_before = len(store.get_order(order.id).history)

    again, changed = orders.mark_paid(order.id, "pay-1", "sig-1")

    assert not changed
    assert again.status == OrderStatus.PAID
    assert len(store.get_order(order.id).history) == history_before


def test_paid_order_cannot_be_cancelled(orders):
    order = orders.create_order("cust-1", ITEMS, ADDRESS)
    orders.link_payment(order.id, "pay-1")
    orders.mark_paid(order.id, "pay-1", "sig-1")

    with pytest.raises(IllegalTransition):
        orders.cancel(order.id)


def test_closed_payment_fails_order_without_retries(store, settings, clock):
    settings.checkout.retry_rejected_payments = False
    orders = OrderService(store, settings.checkout, clock=clock)
    order = orders.create_order("cust-1", ITEMS, ADDRESS)
    orders.link_payment(order.id, "pay-1")

    closed = orders.payment_closed(order.id, "pay-1", "expired")

    assert closed.status == OrderStatus.FAILED
    assert closed.history[-1].note == "payment pay-1 expired"


def test_empty_order_rejected(orders):
    with pytest.raises(InvalidOrder):
        orders.create_order("cust-1", [], ADDRESS)
