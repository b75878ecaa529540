"""Typed failures surfaced by the order stores and the order service."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .state_machine import Rejected


class OrderServiceError(Exception):
    """Base class for every failure the order service reports to callers."""

    retriable: bool = False


class NotFoundError(OrderServiceError):
    pass


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class PaymentNotFoundError(NotFoundError):
    def __init__(self, payment_id: str) -> None:
        super().__init__(f"Payment {payment_id} not found")
        self.payment_id = payment_id


class TransitionRejectedError(OrderServiceError):
    """The state machine refused the requested event; nothing was written."""

    def __init__(self, rejected: Rejected) -> None:
        super().__init__(rejected.message)
        self.rejected = rejected

    @property
    def reason(self) -> str:
        return self.rejected.reason.value


class PaymentAlreadyTerminalError(OrderServiceError):
    def __init__(self, payment_id: str, status: str) -> None:
        super().__init__(f"Payment {payment_id} is already {status}")
        self.payment_id = payment_id
        self.status = status


class ConflictError(OrderServiceError):
    """A concurrent writer changed the order first; retry with fresh state."""

    retriable = True


class DeadlineExceededError(OrderServiceError):
    """The caller's deadline passed before any write was attempted."""

    retriable = True


class StoreUnavailableError(OrderServiceError):
    pass


class InvariantViolationError(OrderServiceError):
    pass
