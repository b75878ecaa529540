"""Data access helpers for orders and payment attempts."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .errors import ConflictError, OrderNotFoundError, PaymentAlreadyTerminalError, PaymentNotFoundError
from .models import Order, OrderItem, OrderStatusHistory, Payment
from .state_machine import OrderStatus, PaymentStatus, is_terminal_payment_status

# Columns a transition may patch; identity, totals and items are immutable.
_MUTABLE_ORDER_FIELDS = frozenset(
    {
        "status",
        "payment_status",
        "payment_method",
        "tracking_number",
        "notes",
        "cancelled_at",
        "shipped_at",
        "delivered_at",
    }
)


class OrderRepository:
    """Persistence helpers for orders, their items and status history."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_order(
        self,
        *,
        order_id: str,
        user_id: int,
        subtotal_cents: int,
        shipping_cents: int,
        tax_cents: int,
        payment_method: str,
        shipping_address: dict[str, Any],
        items: list[dict[str, Any]],
        notes: str | None = None,
        actor: int | None = None,
    ) -> Order:
        order = Order(
            id=order_id,
            user_id=user_id,
            status=OrderStatus.PENDING.value,
            subtotal_cents=subtotal_cents,
            shipping_cents=shipping_cents,
            tax_cents=tax_cents,
            total_cents=subtotal_cents + shipping_cents + tax_cents,
            payment_method=payment_method,
            payment_status=PaymentStatus.PENDING.value,
            shipping_address=dict(shipping_address),
            notes=notes,
            version=1,
        )
        self.session.add(order)
        await self.session.flush()

        for entry in items:
            self.session.add(
                OrderItem(
                    order_id=order.id,
                    product_id=entry["product_id"],
                    product_name=entry["product_name"],
                    quantity=entry["quantity"],
                    unit_price_cents=entry["unit_price_cents"],
                    total_price_cents=entry["quantity"] * entry["unit_price_cents"],
                    product_snapshot=entry.get("product_snapshot"),
                )
            )
        await self.append_status_history(
            order.id,
            from_status=None,
            to_status=order.status,
            note="order placed",
            actor=actor,
        )
        await self.session.refresh(order, attribute_names=["items", "created_at", "updated_at"])
        return order

    async def get_order(self, order_id: str) -> Order:
        result = await self.session.execute(
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def list_orders(
        self,
        *,
        user_id: int | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> tuple[list[Order], int]:
        base: Select[tuple[Order]] = select(Order)
        count: Select[tuple[int]] = select(func.count(Order.id))

        filters = []
        if user_id is not None:
            filters.append(Order.user_id == user_id)
        if status is not None:
            filters.append(Order.status == status)

        if filters:
            base = base.where(and_(*filters))
            count = count.where(and_(*filters))

        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(
            base.options(selectinload(Order.items))
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().unique()), total

    async def append_status_history(
        self,
        order_id: str,
        *,
        from_status: str | None,
        to_status: str,
        note: str | None,
        actor: int | None,
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order_id,
            from_status=from_status,
            to_status=to_status,
            note=note,
            changed_by=actor,
        )
        self.session.add(entry)
        await self.session.flush()
        await self.session.refresh(entry)
        return entry

    async def list_status_history(self, order_id: str) -> list[OrderStatusHistory]:
        result = await self.session.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.id)
        )
        return list(result.scalars())

    async def update_order_fields(
        self,
        order_id: str,
        *,
        expected_version: int,
        patch: Mapping[str, Any],
    ) -> Order:
        """Apply ``patch`` only if the stored version still equals ``expected_version``."""

        unknown = set(patch) - _MUTABLE_ORDER_FIELDS
        if unknown:
            msg = f"order fields are not patchable: {sorted(unknown)}"
            raise ValueError(msg)

        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.version == expected_version)
            .values(**patch, version=Order.version + 1, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            exists = await self.session.scalar(select(func.count(Order.id)).where(Order.id == order_id))
            if not exists:
                raise OrderNotFoundError(order_id)
            msg = f"Order {order_id} changed concurrently (expected version {expected_version})"
            raise ConflictError(msg)
        return await self.get_order(order_id)


class PaymentRepository:
    """Persistence utilities for payment attempts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_payment(
        self,
        *,
        payment_id: str,
        order_id: str,
        amount_cents: int,
        payment_method: str,
        payment_details: dict[str, Any] | None = None,
    ) -> Payment:
        payment = Payment(
            id=payment_id,
            order_id=order_id,
            amount_cents=amount_cents,
            payment_method=payment_method,
            status=PaymentStatus.PENDING.value,
            payment_details=payment_details,
        )
        self.session.add(payment)
        await self.session.flush()
        await self.session.refresh(payment, attribute_names=["created_at", "updated_at"])
        return payment

    async def get_payment(self, payment_id: str) -> Payment:
        payment = await self.session.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        return payment

    async def get_latest_payment(self, order_id: str) -> Payment | None:
        # identifiers are date-sequenced, so the highest one is the newest attempt
        result = await self.session.execute(
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(Payment.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_payments(self, order_id: str) -> list[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.order_id == order_id).order_by(Payment.id)
        )
        return list(result.scalars())

    async def update_payment_status(
        self,
        payment_id: str,
        *,
        status: str,
        processed_at: datetime | None = None,
        failed_at: datetime | None = None,
        failure_reason: str | None = None,
        transaction_id: str | None = None,
        gateway_response: Mapping[str, Any] | None = None,
    ) -> Payment:
        payment = await self.get_payment(payment_id)
        refunding = payment.status == PaymentStatus.SUCCEEDED.value and status == PaymentStatus.REFUNDED.value
        if is_terminal_payment_status(payment.status) and not refunding:
            raise PaymentAlreadyTerminalError(payment.id, payment.status)
        if (processed_at is not None and payment.processed_at is not None) or (
            failed_at is not None and payment.failed_at is not None
        ):
            raise PaymentAlreadyTerminalError(payment.id, payment.status)

        payment.status = status
        if processed_at is not None:
            payment.processed_at = processed_at
        if failed_at is not None:
            payment.failed_at = failed_at
            payment.failure_reason = failure_reason
        if transaction_id is not None:
            payment.transaction_id = transaction_id
        if gateway_response is not None:
            payment.gateway_response = dict(gateway_response)
        await self.session.flush()
        await self.session.refresh(payment, attribute_names=["updated_at"])
        return payment
