import pytest

from solpay.errors import IllegalTransition
from solpay.models import OrderStatus, PaymentStatus
from solpay.services.state_machine import (
    ORDER_TERMINAL,
    ORDER_TRANSITIONS,
    PAYMENT_TERMINAL,
    OrderEvent,
    PaymentEvent,
    order_transition,
    payment_transition,
)


@pytest.mark.parametrize("event", list(PaymentEvent))
def test_pending_payment_accepts_every_event(event):
    transition = payment_transition(PaymentStatus.PENDING, event)

    assert transition.source == PaymentStatus.PENDING
    assert transition.target in PAYMENT_TERMINAL


@pytest.mark.parametrize("state", sorted(PAYMENT_TERMINAL, key=lambda s: s.value))
@pytest.mark.parametrize("event", list(PaymentEvent))
def test_terminal_payment_states_have_no_exits(state, event):
    with pytest.raises(IllegalTransition):
        payment_transition(state, event)


def test_happy_path_order_lifecycle():
    state = OrderStatus.PENDING
    for event, expected in [
        (OrderEvent.LINK_PAYMENT, OrderStatus.PAYMENT_PENDING),
        (OrderEvent.PAYMENT_CONFIRMED, OrderStatus.PAID),
        (OrderEvent.REQUEST_FULFILLMENT, OrderStatus.FULFILLMENT_REQUESTED),
        (OrderEvent.SHIPPED, OrderStatus.FULFILLED),
    ]:
        transition = order_transition(state, event)
        assert transition.target == expected
        assert not transition.noop
        state = transition.target


def test_redelivered_confirmation_is_a_noop():
    for state in (OrderStatus.PAID, OrderStatus.FULFILLMENT_REQUESTED, OrderStatus.FULFILLED):
        transition = order_transition(state, OrderEvent.PAYMENT_CONFIRMED)
        assert transition.noop
        assert transition.target == state


def test_relinking_a_payment_is_recorded():
    transition = order_transition(OrderStatus.PAYMENT_PENDING, OrderEvent.LINK_PAYMENT)

    assert transition.target == OrderStatus.PAYMENT_PENDING
    assert not transition.noop


@pytest.mark.parametrize(
    "state,event",
    [
        (OrderStatus.PENDING, OrderEvent.PAYMENT_CONFIRMED),
        (OrderStatus.PAID, OrderEvent.CANCEL),
        (OrderStatus.PAID, OrderEvent.SHIPPED),
        (OrderStatus.CANCELLED, OrderEvent.PAYMENT_CONFIRMED),
        (OrderStatus.FAILED, OrderEvent.LINK_PAYMENT),
    ],
)
def test_illegal_order_transitions(state, event):
    with pytest.raises(IllegalTransition) as exc_info:
        order_transition(state, event)
    assert exc_info.value.details == {"state": state.value, "event": event.value}


def test_order_table_is_complete_and_terminal_states_stay_put():
    for state in OrderStatus:
        assert set(ORDER_TRANSITIONS[state]) == set(OrderEvent)
    for state in ORDER_TERMINAL:
        targets = {t for t in ORDER_TRANSITIONS[state].values() if t is not None}
        assert targets <= {state}
