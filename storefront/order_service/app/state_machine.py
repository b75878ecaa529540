"""Order lifecycle and payment state machine.

Pure decision logic: given a snapshot of an order, its latest payment attempt
and a requested event, ``decide`` returns either the ``Transition`` to apply or
a ``Rejected`` verdict. Nothing in this module performs I/O or raises for
input it can reject.

Order status and payment status are two independent axes. An order moves
``pending -> paid -> processing -> shipped -> delivered``; ``cancelled`` is
reachable before shipment and ``refunded`` from ``paid`` onwards. A payment
moves ``pending -> authorized -> captured -> succeeded``, may fail before
capture and may be refunded once it succeeded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class EventType(str, Enum):
    PAYMENT_AUTHORIZED = "payment_authorized"
    PAYMENT_CAPTURED = "payment_captured"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    CANCEL_REQUESTED = "cancel_requested"
    FULFILLMENT_STARTED = "fulfillment_started"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    REFUND_REQUESTED = "refund_requested"


class RejectionReason(str, Enum):
    INVALID_TRANSITION = "invalid_transition"
    TERMINAL_STATE = "terminal_state"
    PRECONDITION_FAILED = "precondition_failed"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED})
TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.REFUNDED})

# Order statuses from which each event may be applied.
_EVENT_SOURCES: Mapping[EventType, frozenset[OrderStatus]] = {
    EventType.PAYMENT_AUTHORIZED: frozenset({OrderStatus.PENDING}),
    EventType.PAYMENT_CAPTURED: frozenset({OrderStatus.PENDING}),
    EventType.PAYMENT_FAILED: frozenset({OrderStatus.PENDING}),
    EventType.PAYMENT_SUCCEEDED: frozenset({OrderStatus.PENDING}),
    EventType.CANCEL_REQUESTED: frozenset({OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.PROCESSING}),
    EventType.FULFILLMENT_STARTED: frozenset({OrderStatus.PAID}),
    EventType.SHIPPED: frozenset({OrderStatus.PROCESSING}),
    EventType.DELIVERED: frozenset({OrderStatus.SHIPPED}),
    EventType.REFUND_REQUESTED: frozenset(
        {OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED}
    ),
}

# Payment statuses from which a payment may move to the key status.
_PAYMENT_SOURCES: Mapping[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.AUTHORIZED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.CAPTURED: frozenset({PaymentStatus.PENDING, PaymentStatus.AUTHORIZED}),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.PENDING, PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING, PaymentStatus.AUTHORIZED}),
    PaymentStatus.REFUNDED: frozenset({PaymentStatus.SUCCEEDED}),
}

CANCELLATION_FAILURE_REASON = "order cancelled"


@dataclass(frozen=True)
class OrderState:
    """Snapshot of the order fields the state machine reads."""

    id: str
    status: str
    payment_status: str
    subtotal_cents: int
    shipping_cents: int
    tax_cents: int
    total_cents: int
    version: int = 1
    tracking_number: str | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None


@dataclass(frozen=True)
class PaymentState:
    id: str
    status: str
    amount_cents: int


@dataclass(frozen=True)
class LifecycleEvent:
    """A requested transition together with the data it may need."""

    type: str
    note: str | None = None
    tracking_number: str | None = None
    failure_reason: str | None = None
    transaction_id: str | None = None
    gateway_response: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class PaymentUpdate:
    payment_id: str
    from_status: PaymentStatus
    to_status: PaymentStatus
    processed_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    transaction_id: str | None = None
    gateway_response: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class Transition:
    """An accepted decision: the new order status, its field patch and history note."""

    event: EventType
    from_status: OrderStatus
    to_status: OrderStatus
    order_patch: Mapping[str, Any] = field(default_factory=dict)
    payment_update: PaymentUpdate | None = None
    note: str | None = None


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    message: str


Decision = Transition | Rejected


def is_terminal_order_status(status: str) -> bool:
    return status in {item.value for item in TERMINAL_ORDER_STATUSES}


def is_terminal_payment_status(status: str) -> bool:
    return status in {item.value for item in TERMINAL_PAYMENT_STATUSES}


def can_move_payment(current: str, target: PaymentStatus) -> bool:
    """Return True if a payment may move from ``current`` to ``target``."""

    sources = _PAYMENT_SOURCES.get(target, frozenset())
    return current in {item.value for item in sources}


def check_payment_attempt(order: OrderState, payment: PaymentState | None) -> Rejected | None:
    """Return a rejection when a new payment attempt may not be opened for ``order``."""

    status = _parse(OrderStatus, order.status)
    if status is None:
        return Rejected(RejectionReason.INVALID_TRANSITION, f"unknown order status {order.status!r}")
    if status in TERMINAL_ORDER_STATUSES:
        return Rejected(RejectionReason.TERMINAL_STATE, f"order is {status.value}")
    if status is not OrderStatus.PENDING:
        return Rejected(RejectionReason.INVALID_TRANSITION, f"order is already {status.value}")
    if payment is not None and payment.status != PaymentStatus.FAILED.value:
        return Rejected(
            RejectionReason.PRECONDITION_FAILED,
            f"payment {payment.id} is still {payment.status}",
        )
    return None


def decide(
    order: OrderState,
    payment: PaymentState | None,
    event: LifecycleEvent,
    *,
    now: datetime,
) -> Decision:
    """Decide the outcome of applying ``event`` to ``order`` and its latest ``payment``."""

    event_type = _parse(EventType, event.type)
    if event_type is None:
        return Rejected(RejectionReason.INVALID_TRANSITION, f"unknown event {event.type!r}")
    status = _parse(OrderStatus, order.status)
    if status is None:
        return Rejected(RejectionReason.INVALID_TRANSITION, f"unknown order status {order.status!r}")

    if status not in _EVENT_SOURCES[event_type]:
        if status in TERMINAL_ORDER_STATUSES:
            return Rejected(
                RejectionReason.TERMINAL_STATE,
                f"order is {status.value}; {event_type.value} is not permitted",
            )
        return Rejected(
            RejectionReason.INVALID_TRANSITION,
            f"{event_type.value} is not permitted while order is {status.value}",
        )

    return _HANDLERS[event_type](order, status, payment, event, _as_utc(now))


def _parse(enum_type, raw: str):
    try:
        return enum_type(raw)
    except ValueError:
        return None


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _precondition(message: str) -> Rejected:
    return Rejected(RejectionReason.PRECONDITION_FAILED, message)


def _payment_move(
    payment: PaymentState | None,
    target: PaymentStatus,
    event: LifecycleEvent,
    **fields: Any,
) -> PaymentUpdate | Rejected:
    if payment is None:
        return _precondition("order has no payment attempt")
    if not can_move_payment(payment.status, target):
        return _precondition(f"payment {payment.id} cannot move from {payment.status} to {target.value}")
    return PaymentUpdate(
        payment_id=payment.id,
        from_status=PaymentStatus(payment.status),
        to_status=target,
        transaction_id=event.transaction_id,
        gateway_response=event.gateway_response,
        **fields,
    )


def _with_payment(
    event_type: EventType,
    status: OrderStatus,
    to_status: OrderStatus,
    update: PaymentUpdate,
    note: str | None,
    **order_fields: Any,
) -> Transition:
    patch: dict[str, Any] = {"payment_status": update.to_status.value, **order_fields}
    if to_status is not status:
        patch["status"] = to_status.value
    return Transition(
        event=event_type,
        from_status=status,
        to_status=to_status,
        order_patch=patch,
        payment_update=update,
        note=note,
    )


def _payment_progress(target: PaymentStatus) -> Callable[..., Decision]:
    def handler(
        order: OrderState,
        status: OrderStatus,
        payment: PaymentState | None,
        event: LifecycleEvent,
        now: datetime,
    ) -> Decision:
        update = _payment_move(payment, target, event)
        if isinstance(update, Rejected):
            return update
        return _with_payment(
            EventType(f"payment_{target.value}"),
            status,
            status,
            update,
            event.note or f"payment {target.value}",
        )

    return handler


def _payment_failed(order, status, payment, event, now) -> Decision:
    reason = (event.failure_reason or "").strip()
    if not reason:
        return _precondition("a failure reason is required")
    update = _payment_move(payment, PaymentStatus.FAILED, event, failed_at=now, failure_reason=reason)
    if isinstance(update, Rejected):
        return update
    return _with_payment(EventType.PAYMENT_FAILED, status, status, update, event.note or f"payment failed: {reason}")


def _payment_succeeded(order, status, payment, event, now) -> Decision:
    if payment is not None and payment.amount_cents != order.total_cents:
        return _precondition(
            f"payment {payment.id} amount {payment.amount_cents} does not cover order total {order.total_cents}"
        )
    update = _payment_move(payment, PaymentStatus.SUCCEEDED, event, processed_at=now)
    if isinstance(update, Rejected):
        return update
    return _with_payment(EventType.PAYMENT_SUCCEEDED, status, OrderStatus.PAID, update, event.note)


def _cancel_requested(order, status, payment, event, now) -> Decision:
    # Captured funds can neither fail nor be refunded once the order is cancelled.
    if payment is not None and payment.status == PaymentStatus.CAPTURED.value:
        return _precondition(f"payment {payment.id} is captured; settle it with payment_succeeded before cancelling")
    patch = {"status": OrderStatus.CANCELLED.value, "cancelled_at": now}
    if payment is not None and can_move_payment(payment.status, PaymentStatus.FAILED):
        update = PaymentUpdate(
            payment_id=payment.id,
            from_status=PaymentStatus(payment.status),
            to_status=PaymentStatus.FAILED,
            failed_at=now,
            failure_reason=CANCELLATION_FAILURE_REASON,
        )
        return _with_payment(
            EventType.CANCEL_REQUESTED,
            status,
            OrderStatus.CANCELLED,
            update,
            event.note,
            cancelled_at=now,
        )
    return Transition(
        event=EventType.CANCEL_REQUESTED,
        from_status=status,
        to_status=OrderStatus.CANCELLED,
        order_patch=patch,
        note=event.note,
    )


def _fulfillment_started(order, status, payment, event, now) -> Decision:
    return Transition(
        event=EventType.FULFILLMENT_STARTED,
        from_status=status,
        to_status=OrderStatus.PROCESSING,
        order_patch={"status": OrderStatus.PROCESSING.value},
        note=event.note,
    )


def _shipped(order, status, payment, event, now) -> Decision:
    tracking_number = (event.tracking_number or "").strip()
    if not tracking_number:
        return _precondition("a tracking number is required to ship an order")
    return Transition(
        event=EventType.SHIPPED,
        from_status=status,
        to_status=OrderStatus.SHIPPED,
        order_patch={
            "status": OrderStatus.SHIPPED.value,
            "tracking_number": tracking_number,
            "shipped_at": now,
        },
        note=event.note or f"tracking {tracking_number}",
    )


def _delivered(order, status, payment, event, now) -> Decision:
    delivered_at = now
    if order.shipped_at is not None:
        delivered_at = max(now, _as_utc(order.shipped_at))
    return Transition(
        event=EventType.DELIVERED,
        from_status=status,
        to_status=OrderStatus.DELIVERED,
        order_patch={"status": OrderStatus.DELIVERED.value, "delivered_at": delivered_at},
        note=event.note,
    )


def _refund_requested(order, status, payment, event, now) -> Decision:
    if payment is None or payment.status != PaymentStatus.SUCCEEDED.value:
        current = payment.status if payment is not None else "missing"
        return _precondition(f"only a succeeded payment can be refunded (payment is {current})")
    update = _payment_move(payment, PaymentStatus.REFUNDED, event)
    if isinstance(update, Rejected):
        return update
    return _with_payment(EventType.REFUND_REQUESTED, status, OrderStatus.REFUNDED, update, event.note)


_HANDLERS: Mapping[EventType, Callable[..., Decision]] = {
    EventType.PAYMENT_AUTHORIZED: _payment_progress(PaymentStatus.AUTHORIZED),
    EventType.PAYMENT_CAPTURED: _payment_progress(PaymentStatus.CAPTURED),
    EventType.PAYMENT_FAILED: _payment_failed,
    EventType.PAYMENT_SUCCEEDED: _payment_succeeded,
    EventType.CANCEL_REQUESTED: _cancel_requested,
    EventType.FULFILLMENT_STARTED: _fulfillment_started,
    EventType.SHIPPED: _shipped,
    EventType.DELIVERED: _delivered,
    EventType.REFUND_REQUESTED: _refund_requested,
}
