"""Prometheus metrics for the order service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram

from .state_machine import EventType

# Lifecycle decisions ----------------------------------------------------------------------
ORDER_TRANSITIONS_TOTAL: Final = Counter(
    "order_transitions_total",
    "Order lifecycle events accepted by the state machine and committed.",
    labelnames=("event", "to_status"),
)

ORDER_TRANSITION_REJECTIONS_TOTAL: Final = Counter(
    "order_transition_rejections_total",
    "Order lifecycle events rejected by the state machine.",
    labelnames=("event", "reason"),
)

ORDER_TRANSITION_CONFLICTS_TOTAL: Final = Counter(
    "order_transition_conflicts_total",
    "Order writes that lost an optimistic version check.",
)

ORDER_TRANSITION_LATENCY_SECONDS: Final = Histogram(
    "order_transition_latency_seconds",
    "Time spent loading, deciding and persisting one lifecycle event.",
    labelnames=("event",),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

# Order intake -----------------------------------------------------------------------------
ORDERS_CREATED_TOTAL: Final = Counter(
    "orders_created_total",
    "Orders placed, labelled by payment method.",
    labelnames=("payment_method",),
)

PAYMENT_ATTEMPTS_TOTAL: Final = Counter(
    "order_payment_attempts_total",
    "Payment attempts opened against orders, including the initial one.",
    labelnames=("payment_method",),
)


def event_label(raw_event: str) -> str:
    """Return a bounded label value for an event name supplied by a caller."""

    try:
        return EventType(raw_event).value
    except ValueError:
        return "unknown"
