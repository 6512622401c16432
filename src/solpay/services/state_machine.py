"""
Transition tables for payment requests and orders.

Each table maps every (state, event) pair to a target state, or None when the
event is illegal in that state. The tables are checked for completeness at
import time, so adding a state or event without deciding its transitions
fails immediately.
"""

import enum
from dataclasses import dataclass
from typing import Generic, TypeVar

from solpay.errors import IllegalTransition
from solpay.models import OrderStatus, PaymentStatus

S = TypeVar("S", bound=enum.Enum)
E = TypeVar("E", bound=enum.Enum)


class PaymentEvent(str, enum.Enum):
    CONFIRM = "confirm"
    EXPIRE = "expire"
    CANCEL = "cancel"
    FAIL = "fail"


class OrderEvent(str, enum.Enum):
    LINK_PAYMENT = "link_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    REQUEST_FULFILLMENT = "request_fulfillment"
    SHIPPED = "shipped"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Transition(Generic[S]):
    source: S
    target: S
    noop: bool = False


P = PaymentStatus
PE = PaymentEvent

PAYMENT_TRANSITIONS: dict[PaymentStatus, dict[PaymentEvent, PaymentStatus | None]] = {
    P.PENDING: {
        PE.CONFIRM: P.CONFIRMED,
        PE.EXPIRE: P.EXPIRED,
        PE.CANCEL: P.CANCELLED,
        PE.FAIL: P.FAILED,
    },
    P.CONFIRMED: {PE.CONFIRM: None, PE.EXPIRE: None, PE.CANCEL: None, PE.FAIL: None},
    P.EXPIRED: {PE.CONFIRM: None, PE.EXPIRE: None, PE.CANCEL: None, PE.FAIL: None},
    P.CANCELLED: {PE.CONFIRM: None, PE.EXPIRE: None, PE.CANCEL: None, PE.FAIL: None},
    P.FAILED: {PE.CONFIRM: None, PE.EXPIRE: None, PE.CANCEL: None, PE.FAIL: None},
}

O = OrderStatus
OE = OrderEvent

ORDER_TRANSITIONS: dict[OrderStatus, dict[OrderEvent, OrderStatus | None]] = {
    O.PENDING: {
        OE.LINK_PAYMENT: O.PAYMENT_PENDING,
        OE.PAYMENT_CONFIRMED: None,
        OE.PAYMENT_FAILED: None,
        OE.REQUEST_FULFILLMENT: None,
        OE.SHIPPED: None,
        OE.CANCEL: O.CANCELLED,
    },
    O.PAYMENT_PENDING: {
        # A fresh payment request replacing a failed or expired one
        OE.LINK_PAYMENT: O.PAYMENT_PENDING,
        OE.PAYMENT_CONFIRMED: O.PAID,
        OE.PAYMENT_FAILED: O.FAILED,
        OE.REQUEST_FULFILLMENT: None,
        OE.SHIPPED: None,
        OE.CANCEL: O.CANCELLED,
    },
    O.PAID: {
        OE.LINK_PAYMENT: None,
        OE.PAYMENT_CONFIRMED: O.PAID,
        OE.PAYMENT_FAILED: None,
        OE.REQUEST_FULFILLMENT: O.FULFILLMENT_REQUESTED,
        OE.SHIPPED: None,
        OE.CANCEL: None,
    },
    O.FULFILLMENT_REQUESTED: {
        OE.LINK_PAYMENT: None,
        OE.PAYMENT_CONFIRMED: O.FULFILLMENT_REQUESTED,
        OE.PAYMENT_FAILED: None,
        OE.REQUEST_FULFILLMENT: O.FULFILLMENT_REQUESTED,
        OE.SHIPPED: O.FULFILLED,
        OE.CANCEL: None,
    },
    O.FULFILLED: {
        OE.LINK_PAYMENT: None,
        OE.PAYMENT_CONFIRMED: O.FULFILLED,
        OE.PAYMENT_FAILED: None,
        OE.REQUEST_FULFILLMENT: O.FULFILLED,
        OE.SHIPPED: O.FULFILLED,
        OE.CANCEL: None,
    },
    O.CANCELLED: {event: None for event in OrderEvent},
    O.FAILED: {event: None for event in OrderEvent},
}

# Self-loops that record history rather than being idempotent re-deliveries
_RECORDED_SELF_LOOPS = {(O.PAYMENT_PENDING, OE.LINK_PAYMENT)}

PAYMENT_TERMINAL = frozenset(
    {P.CONFIRMED, P.EXPIRED, P.CANCELLED, P.FAILED}
)
ORDER_TERMINAL = frozenset({O.FULFILLED, O.CANCELLED, O.FAILED})


def _check_exhaustive(
    name: str,
    table: dict,
    states: type[enum.Enum],
    events: type[enum.Enum],
    terminal: frozenset,
) -> None:
    missing_states = set(states) - set(table)
    if missing_states:
        raise RuntimeError(f"{name}: no row for {sorted(s.value for s in missing_states)}")
    for state, row in table.items():
        missing_events = set(events) - set(row)
        if missing_events:
            raise RuntimeError(
                f"{name}: {state.value} has no entry for "
                f"{sorted(e.value for e in missing_events)}"
            )
        if state in terminal:
            exits = [e.value for e, target in row.items() if target not in (None, state)]
            if exits:
                raise RuntimeError(f"{name}: terminal {state.value} has exits {exits}")


_check_exhaustive(
    "payment", PAYMENT_TRANSITIONS, PaymentStatus, PaymentEvent, PAYMENT_TERMINAL
)
_check_exhaustive("order", ORDER_TRANSITIONS, OrderStatus, OrderEvent, ORDER_TERMINAL)


def payment_transition(
    state: PaymentStatus, event: PaymentEvent
) -> Transition[PaymentStatus]:
    target = PAYMENT_TRANSITIONS[state][event]
    if target is None:
        raise IllegalTransition(
            f"payment cannot {event.value} from {state.value}",
            state=state.value,
            event=event.value,
        )
    return Transition(state, target)


def order_transition(state: OrderStatus, event: OrderEvent) -> Transition[OrderStatus]:
    """
    Resolve an order event.

    Re-delivered events that leave the order where it already is come back as
    ``noop=True`` instead of raising, which keeps verdict application
    idempotent.
    """
    target = ORDER_TRANSITIONS[state][event]
    if target is None:
        raise IllegalTransition(
            f"order cannot {event.value} from {state.value}",
            state=state.value,
            event=event.value,
        )
    noop = target == state and (state, event) not in _RECORDED_SELF_LOOPS
    return Transition(state, target, noop=noop)


def check_payment_move(source: PaymentStatus, target: PaymentStatus) -> None:
    """Raise IllegalTransition unless some event takes ``source`` to ``target``."""
    if target not in PAYMENT_TRANSITIONS[source].values():
        raise IllegalTransition(
            f"payment cannot move from {source.value} to {target.value}",
            state=source.value,
            target=target.value,
        )


def check_order_move(source: OrderStatus, target: OrderStatus) -> None:
    if target not in ORDER_TRANSITIONS[source].values():
        raise IllegalTransition(
            f"order cannot move from {source.value} to {target.value}",
            state=source.value,
            target=target.value,
        )


# Taken by the store when it records a provider order for a claimed, paid order
FULFILLMENT_MOVE = order_transition(OrderStatus.PAID, OrderEvent.REQUEST_FULFILLMENT)
