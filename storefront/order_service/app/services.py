"""Service layer orchestrating order lifecycle operations."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Protocol

from sqlalchemy.exc import DBAPIError, IntegrityError

from storefront.common import order_span

from .errors import (
    ConflictError,
    DeadlineExceededError,
    InvariantViolationError,
    StoreUnavailableError,
    TransitionRejectedError,
)
from .identifiers import DatabaseIdentifierGenerator, IdentifierGenerator
from .metrics import (
    ORDER_TRANSITION_CONFLICTS_TOTAL,
    ORDER_TRANSITION_LATENCY_SECONDS,
    ORDER_TRANSITION_REJECTIONS_TOTAL,
    ORDER_TRANSITIONS_TOTAL,
    ORDERS_CREATED_TOTAL,
    PAYMENT_ATTEMPTS_TOTAL,
    event_label,
)
from .models import Order, OrderStatusHistory, Payment
from .repository import OrderRepository, PaymentRepository
from .schemas import OrderCreate, PaymentAttemptCreate
from .state_machine import (
    LifecycleEvent,
    OrderState,
    PaymentState,
    Rejected,
    check_payment_attempt,
    decide,
)

_LOGGER = logging.getLogger(__name__)

_SENSITIVE_DETAIL_KEYS = frozenset({"cvv", "cvc", "security_code", "securityCode", "pin"})
_MASKED_DETAIL_KEYS = frozenset({"card_number", "cardNumber", "account_number", "accountNumber", "iban"})


class InventoryProvider(Protocol):
    async def reserve(self, *, product_id: int, quantity: int) -> None: ...


def _to_cents(amount: Decimal) -> int:
    return int((amount * Decimal("100")).to_integral_value(rounding=ROUND_HALF_UP))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def mask_payment_details(details: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Drop secrets and keep only the last four characters of account numbers."""

    if details is None:
        return None
    masked: dict[str, Any] = {}
    for key, value in details.items():
        if key in _SENSITIVE_DETAIL_KEYS:
            continue
        if key in _MASKED_DETAIL_KEYS and value is not None:
            digits = str(value).replace(" ", "")
            masked[key] = f"****{digits[-4:]}"
            continue
        masked[key] = value
    return masked


def snapshot_order(order: Order) -> OrderState:
    return OrderState(
        id=order.id,
        status=order.status,
        payment_status=order.payment_status,
        subtotal_cents=order.subtotal_cents,
        shipping_cents=order.shipping_cents,
        tax_cents=order.tax_cents,
        total_cents=order.total_cents,
        version=order.version,
        tracking_number=order.tracking_number,
        shipped_at=order.shipped_at,
        delivered_at=order.delivered_at,
        cancelled_at=order.cancelled_at,
    )


def snapshot_payment(payment: Payment | None) -> PaymentState | None:
    if payment is None:
        return None
    return PaymentState(id=payment.id, status=payment.status, amount_cents=payment.amount_cents)


def verify_invariants(order: Order, payment: Payment | None) -> None:
    """Raise if the persisted order violates a cross-field or cross-entity invariant."""

    if order.total_cents != order.subtotal_cents + order.shipping_cents + order.tax_cents:
        msg = f"Order {order.id} total does not equal subtotal + shipping + tax"
        raise InvariantViolationError(msg)
    if payment is not None and order.payment_status != payment.status:
        msg = f"Order {order.id} payment status {order.payment_status} disagrees with payment {payment.id} ({payment.status})"
        raise InvariantViolationError(msg)
    if order.cancelled_at is not None and (order.shipped_at is not None or order.delivered_at is not None):
        msg = f"Order {order.id} is both cancelled and shipped"
        raise InvariantViolationError(msg)
    if order.delivered_at is not None:
        if order.shipped_at is None or _as_utc(order.shipped_at) > _as_utc(order.delivered_at):
            msg = f"Order {order.id} delivered before it shipped"
            raise InvariantViolationError(msg)


class OrderService:
    """High-level operations on orders and their payment attempts."""

    def __init__(
        self,
        orders: OrderRepository,
        payments: PaymentRepository,
        identifiers: IdentifierGenerator | None = None,
        inventory: InventoryProvider | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.orders = orders
        self.payments = payments
        self.identifiers = identifiers or DatabaseIdentifierGenerator(orders.session)
        self.inventory = inventory
        self.clock = clock or _utcnow

    async def create_order(self, payload: OrderCreate) -> Order:
        now = self.clock()
        items_payload = []
        subtotal_cents = 0
        for item in payload.items:
            unit_price_cents = _to_cents(item.unit_price)
            subtotal_cents += unit_price_cents * item.quantity
            snapshot = dict(item.product_snapshot or {})
            snapshot.setdefault("name", item.product_name)
            snapshot.setdefault("unit_price", str(item.unit_price))
            items_payload.append(
                {
                    "product_id": item.product_id,
                    "product_name": item.product_name,
                    "quantity": item.quantity,
                    "unit_price_cents": unit_price_cents,
                    "product_snapshot": snapshot,
                }
            )

        try:
            order_id = await self.identifiers.next_order_id(now=now)
            with order_span("order.create", order_id, payment_method=payload.payment_method):
                if self.inventory:
                    for item in payload.items:
                        await self.inventory.reserve(product_id=item.product_id, quantity=item.quantity)

                order = await self.orders.create_order(
                    order_id=order_id,
                    user_id=payload.user_id,
                    subtotal_cents=subtotal_cents,
                    shipping_cents=_to_cents(payload.shipping_cost),
                    tax_cents=_to_cents(payload.tax_amount),
                    payment_method=payload.payment_method,
                    shipping_address=payload.shipping_address.model_dump(),
                    items=items_payload,
                    notes=payload.notes,
                    actor=payload.actor,
                )
                payment = await self._open_payment(
                    order,
                    payment_method=payload.payment_method,
                    payment_details=payload.payment_details,
                    now=now,
                )
                verify_invariants(order, payment)
                ORDERS_CREATED_TOTAL.labels(payment_method=order.payment_method).inc()
                _LOGGER.info("Order placed for user %s (total %s cents)", order.user_id, order.total_cents)
                return order
        except IntegrityError as exc:
            raise ConflictError("Order identifier already issued; retry the request") from exc
        except DBAPIError as exc:
            _LOGGER.error("Order store unavailable while creating order: %s", exc)
            raise StoreUnavailableError("Order store unavailable") from exc

    async def commit(self) -> None:
        """Make every write of the current unit of work durable."""

        try:
            await self.orders.session.commit()
        except DBAPIError as exc:
            _LOGGER.error("Order store unavailable while committing: %s", exc)
            raise StoreUnavailableError("Order store unavailable") from exc

    async def get_order(self, order_id: str) -> Order:
        try:
            return await self.orders.get_order(order_id)
        except DBAPIError as exc:
            _LOGGER.error("Order store unavailable loading order %s: %s", order_id, exc)
            raise StoreUnavailableError("Order store unavailable") from exc

    async def list_orders(
        self,
        *,
        user_id: int | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        try:
            return await self.orders.list_orders(user_id=user_id, status=status, limit=limit, offset=offset)
        except DBAPIError as exc:
            _LOGGER.error("Order store unavailable listing orders: %s", exc)
            raise StoreUnavailableError("Order store unavailable") from exc

    async def get_history(self, order_id: str) -> list[OrderStatusHistory]:
        try:
            await self.orders.get_order(order_id)
            return await self.orders.list_status_history(order_id)
        except DBAPIError as exc:
            _LOGGER.error("Order store unavailable loading history of %s: %s", order_id, exc)
            raise StoreUnavailableError("Order store unavailable") from exc

    async def list_payments(self, order_id: str) -> list[Payment]:
        try:
            await self.orders.get_order(order_id)
            return await self.payments.list_payments(order_id)
        except DBAPIError as exc:
            _LOGGER.error("Order store unavailable loading payments of %s: %s", order_id, exc)
            raise StoreUnavailableError("Order store unavailable") from exc

    async def apply_event(
        self,
        order_id: str,
        event: LifecycleEvent,
        *,
        actor: int | None = None,
        expected_version: int | None = None,
        deadline: datetime | None = None,
    ) -> Order:
        """Load, decide and persist one lifecycle event for ``order_id``.

        Either every write of the transition (order patch, payment update,
        history entry) lands in the caller's transaction or none does. A
        stale ``expected_version`` or a concurrent writer yields
        ``ConflictError``; a rejected decision raises
        ``TransitionRejectedError`` before anything is written. The
        ``deadline`` is honoured only up to the first write.
        """

        label = event_label(event.type)
        with ORDER_TRANSITION_LATENCY_SECONDS.labels(event=label).time(), order_span(
            "order.apply_event",
            order_id,
            event=event.type,
            expected_version=expected_version,
        ) as span:
            try:
                order = await self._apply(order_id, event, label, actor, expected_version, deadline)
            except TransitionRejectedError as exc:
                span.set_attribute("order.rejection_reason", exc.reason)
                raise
            except ConflictError:
                ORDER_TRANSITION_CONFLICTS_TOTAL.inc()
                _LOGGER.warning("Lost version race applying %s", event.type)
                raise
            except DBAPIError as exc:
                _LOGGER.error("Order store unavailable applying %s: %s", event.type, exc)
                raise StoreUnavailableError("Order store unavailable") from exc
            span.set_attribute("order.status", order.status)
            span.set_attribute("order.version", order.version)
            return order

    async def _apply(
        self,
        order_id: str,
        event: LifecycleEvent,
        label: str,
        actor: int | None,
        expected_version: int | None,
        deadline: datetime | None,
    ) -> Order:
        order = await self.orders.get_order(order_id)
        if expected_version is not None and order.version != expected_version:
            msg = f"Order {order_id} is at version {order.version}, not {expected_version}"
            raise ConflictError(msg)
        payment = await self.payments.get_latest_payment(order_id)

        now = self.clock()
        decision = decide(snapshot_order(order), snapshot_payment(payment), event, now=now)
        if isinstance(decision, Rejected):
            ORDER_TRANSITION_REJECTIONS_TOTAL.labels(event=label, reason=decision.reason.value).inc()
            _LOGGER.info("Rejected %s (%s): %s", event.type, decision.reason.value, decision.message)
            raise TransitionRejectedError(decision)

        if deadline is not None and self.clock() >= deadline:
            msg = f"Deadline passed before applying {event.type} to order {order_id}"
            raise DeadlineExceededError(msg)

        # First write: the version check guards every other row touched below.
        updated = await self.orders.update_order_fields(
            order_id,
            expected_version=order.version,
            patch=decision.order_patch,
        )
        if decision.payment_update is not None:
            change = decision.payment_update
            payment = await self.payments.update_payment_status(
                change.payment_id,
                status=change.to_status.value,
                processed_at=change.processed_at,
                failed_at=change.failed_at,
                failure_reason=change.failure_reason,
                transaction_id=change.transaction_id,
                gateway_response=change.gateway_response,
            )
        await self.orders.append_status_history(
            order_id,
            from_status=decision.from_status.value,
            to_status=decision.to_status.value,
            note=decision.note,
            actor=actor,
        )
        verify_invariants(updated, payment)

        ORDER_TRANSITIONS_TOTAL.labels(event=label, to_status=decision.to_status.value).inc()
        _LOGGER.info(
            "Applied %s: %s -> %s (version %s)",
            event.type,
            decision.from_status.value,
            decision.to_status.value,
            updated.version,
        )
        return updated

    async def start_payment_attempt(self, order_id: str, payload: PaymentAttemptCreate) -> Payment:
        """Open a new pending payment attempt after the previous one failed."""

        with order_span("order.start_payment_attempt", order_id):
            try:
                order = await self.orders.get_order(order_id)
                latest = await self.payments.get_latest_payment(order_id)
                rejected = check_payment_attempt(snapshot_order(order), snapshot_payment(latest))
                if rejected is not None:
                    raise TransitionRejectedError(rejected)

                method = (payload.payment_method or order.payment_method).strip().lower()
                payment = await self._open_payment(
                    order,
                    payment_method=method,
                    payment_details=payload.payment_details,
                    now=self.clock(),
                )
                updated = await self.orders.update_order_fields(
                    order_id,
                    expected_version=order.version,
                    patch={"payment_status": payment.status, "payment_method": method},
                )
                verify_invariants(updated, payment)
            except IntegrityError as exc:
                raise ConflictError("Payment identifier already issued; retry the request") from exc
            except DBAPIError as exc:
                _LOGGER.error("Order store unavailable opening payment attempt: %s", exc)
                raise StoreUnavailableError("Order store unavailable") from exc
            _LOGGER.info("Opened payment attempt %s", payment.id)
            return payment

    async def _open_payment(
        self,
        order: Order,
        *,
        payment_method: str,
        payment_details: Mapping[str, Any] | None,
        now: datetime,
    ) -> Payment:
        payment_id = await self.identifiers.next_payment_id(now=now)
        payment = await self.payments.create_payment(
            payment_id=payment_id,
            order_id=order.id,
            amount_cents=order.total_cents,
            payment_method=payment_method,
            payment_details=mask_payment_details(payment_details),
        )
        PAYMENT_ATTEMPTS_TOTAL.labels(payment_method=payment_method).inc()
        return payment

