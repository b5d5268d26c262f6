"""Order and payment state machine.

Payment status is the axis every channel writes to; order status follows it
until the order is paid, and then moves on through shipping. Transition
tables here are the single definition of what is allowed; the repository
turns them into conditional updates so that the "is this allowed" check and
the write are one atomic statement.
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, Optional, Set

from payship.database.models.order import (
    AttemptStatus,
    OrderStatus,
    PaymentAttempt,
    PaymentStatus,
)

PAYMENT_STATUS_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    # A capture reported after a failure or cancel is still money taken.
    PaymentStatus.FAILED: {PaymentStatus.PAID, PaymentStatus.CANCELLED},
    PaymentStatus.CANCELLED: {PaymentStatus.PAID},
    PaymentStatus.PAID: set(),
}

ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.FAILED, OrderStatus.CANCELLED},
    OrderStatus.FAILED: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CANCELLED: {OrderStatus.CONFIRMED},
    OrderStatus.CONFIRMED: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
}

_ORDER_STATUS_FOR_PAYMENT: Dict[PaymentStatus, OrderStatus] = {
    PaymentStatus.PENDING: OrderStatus.PENDING,
    PaymentStatus.PAID: OrderStatus.CONFIRMED,
    PaymentStatus.FAILED: OrderStatus.FAILED,
    PaymentStatus.CANCELLED: OrderStatus.CANCELLED,
}

_TERMINAL_ATTEMPT_STATUSES: Dict[AttemptStatus, PaymentStatus] = {
    AttemptStatus.FAILED: PaymentStatus.FAILED,
    AttemptStatus.CANCELLED: PaymentStatus.CANCELLED,
}


def allowed_payment_sources(target: PaymentStatus) -> FrozenSet[PaymentStatus]:
    """
    Payment statuses from which ``target`` may be entered.

    This is the ``IN (...)`` list of the compare-and-swap update.
    """
    return frozenset(
        source for source, targets in PAYMENT_STATUS_TRANSITIONS.items() if target in targets
    )


def allowed_order_sources(target: OrderStatus) -> FrozenSet[OrderStatus]:
    """Order statuses from which ``target`` may be entered."""
    return frozenset(
        source for source, targets in ORDER_STATUS_TRANSITIONS.items() if target in targets
    )


def payment_transition_values(target: PaymentStatus, now: datetime) -> Dict[str, Any]:
    """
    Column values written when the payment status moves to ``target``.

    Confirmation and cancellation timestamps are written together so that at
    most one of them is ever set by a transition.

    Raises:
        ValueError: For a target no transition leads to
    """
    if target == PaymentStatus.PAID:
        return {
            "payment_status": PaymentStatus.PAID,
            "status": OrderStatus.CONFIRMED,
            "confirmed_at": now,
            "cancelled_at": None,
        }
    if target == PaymentStatus.FAILED:
        return {"payment_status": PaymentStatus.FAILED, "status": OrderStatus.FAILED}
    if target == PaymentStatus.CANCELLED:
        return {
            "payment_status": PaymentStatus.CANCELLED,
            "status": OrderStatus.CANCELLED,
            "cancelled_at": now,
            "confirmed_at": None,
        }
    raise ValueError(f"No transition leads to payment status {target.value}")


def project_payment_status(attempts: Iterable[PaymentAttempt]) -> PaymentStatus:
    """
    Derive the payment verdict from the attempt log.

    Any paid record wins. Otherwise the most recent failed or cancelled record
    decides, and an order with neither is still pending.

    Args:
        attempts: Attempt records in log order

    Returns:
        Projected payment status
    """
    verdict = PaymentStatus.PENDING
    for attempt in attempts:
        if attempt.status == AttemptStatus.PAID:
            return PaymentStatus.PAID
        if attempt.status in _TERMINAL_ATTEMPT_STATUSES:
            verdict = _TERMINAL_ATTEMPT_STATUSES[attempt.status]
    return verdict


def project_order_status(
    payment_status: PaymentStatus,
    current_status: Optional[OrderStatus] = None,
) -> OrderStatus:
    """
    Order status implied by a payment verdict.

    A paid order that has already shipped or been delivered keeps its
    fulfilment status.
    """
    if payment_status == PaymentStatus.PAID and current_status in (
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    ):
        return current_status
    return _ORDER_STATUS_FOR_PAYMENT[payment_status]

