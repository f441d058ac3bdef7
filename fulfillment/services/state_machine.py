"""
Order lifecycle rules.

Order status and payment status are separate axes. Payment status changes
drive the order status (processing -> payment_processing, completed ->
confirmed, failed -> payment_failed), and both moves are validated before
either field is touched, so a rejected change leaves the order as it was.
"""
from datetime import datetime
from typing import Optional
import logging

from ..core.exceptions import CannotCancelError, InvalidTransitionError
from ..models.enums import OrderStatus, PaymentStatus
from ..models.schemas import Order, utcnow

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    OrderStatus.pending: frozenset({OrderStatus.payment_processing, OrderStatus.cancelled}),
    OrderStatus.payment_processing: frozenset({
        OrderStatus.confirmed,
        OrderStatus.payment_failed,
        OrderStatus.cancelled,
    }),
    OrderStatus.confirmed: frozenset({OrderStatus.processing, OrderStatus.cancelled}),
    OrderStatus.processing: frozenset({OrderStatus.shipped}),
    OrderStatus.shipped: frozenset({OrderStatus.delivered}),
    OrderStatus.payment_failed: frozenset(),
    OrderStatus.delivered: frozenset(),
    OrderStatus.cancelled: frozenset(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.pending: frozenset({PaymentStatus.processing, PaymentStatus.failed}),
    PaymentStatus.processing: frozenset({PaymentStatus.completed, PaymentStatus.failed}),
    PaymentStatus.failed: frozenset({PaymentStatus.processing}),
    PaymentStatus.completed: frozenset({PaymentStatus.refunded}),
    PaymentStatus.refunded: frozenset(),
}

# Order status implied by a payment status change
PAYMENT_DRIVES = {
    PaymentStatus.processing: OrderStatus.payment_processing,
    PaymentStatus.completed: OrderStatus.confirmed,
    PaymentStatus.failed: OrderStatus.payment_failed,
}

CANCELLABLE = frozenset({
    OrderStatus.pending,
    OrderStatus.payment_processing,
    OrderStatus.confirmed,
})

TERMINAL = frozenset(status for status, targets in ORDER_TRANSITIONS.items() if not targets)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return current == target or target in ORDER_TRANSITIONS[current]


def can_cancel(order: Order) -> bool:
    return order.status in CANCELLABLE


def _check_order(order: Order, target: OrderStatus) -> None:
    if not can_transition(order.status, target):
        raise InvalidTransitionError(order.status.value, target.value)


def _check_payment(order: Order, target: PaymentStatus) -> None:
    if order.payment_status != target and target not in PAYMENT_TRANSITIONS[order.payment_status]:
        raise InvalidTransitionError(
            order.payment_status.value,
            target.value,
            f"cannot move payment from {order.payment_status.value} to {target.value}",
        )


def transition(order: Order, target: OrderStatus, now: Optional[datetime] = None) -> Order:
    """Move the order to `target`. Moving to the current status is a no-op."""
    _check_order(order, target)
    if order.status != target:
        logger.debug(f"Order {order.id}: {order.status.value} -> {target.value}")
        order.status = target
        order.touch(now)
    return order


def update_payment_status(order: Order, target: PaymentStatus, now: Optional[datetime] = None) -> Order:
    _check_payment(order, target)
    implied = PAYMENT_DRIVES.get(target)
    if implied is not None:
        _check_order(order, implied)

    changed = False
    if order.payment_status != target:
        order.payment_status = target
        changed = True
    if implied is not None and order.status != implied:
        order.status = implied
        changed = True
    if changed:
        order.touch(now)
    return order


def cancel(order: Order, reason: str, now: Optional[datetime] = None) -> Order:
    if not can_cancel(order):
        raise CannotCancelError(order.status.value)
    order.status = OrderStatus.cancelled
    order.notes = f"Cancelled: {reason}"
    order.touch(now or utcnow())
    return order
