import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common import create_engine, create_schema, dispose_engines, get_session_factory, lifespan_session
from storefront.order_service.app.errors import (
    ConflictError,
    DeadlineExceededError,
    OrderNotFoundError,
    PaymentAlreadyTerminalError,
    StoreUnavailableError,
    TransitionRejectedError,
)
from storefront.order_service.app.identifiers import DatabaseIdentifierGenerator
from storefront.order_service.app.models import Base, Order, OrderStatusHistory, Payment
from storefront.order_service.app.repository import OrderRepository, PaymentRepository
from storefront.order_service.app.schemas import OrderCreate, PaymentAttemptCreate
from storefront.order_service.app.services import OrderService, mask_payment_details
from storefront.order_service.app.state_machine import LifecycleEvent, RejectionReason

FIXED_NOW = datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)


@asynccontextmanager
async def _store(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"
    await create_schema(create_engine(database_url), Base.metadata)
    try:
        yield get_session_factory(database_url)
    finally:
        await dispose_engines()


def _service(session: AsyncSession, *, payments: PaymentRepository | None = None, **kwargs: Any) -> OrderService:
    kwargs.setdefault("clock", lambda: FIXED_NOW)
    return OrderService(OrderRepository(session), payments or PaymentRepository(session), **kwargs)


def _order_payload(**overrides: Any) -> OrderCreate:
    payload: dict[str, Any] = {
        "userId": 7,
        "items": [
            {"productId": 1, "productName": "Espresso Beans", "quantity": 2, "unitPrice": "10.00"},
            {"productId": 2, "productName": "Grinder", "quantity": 1, "unitPrice": "5.50", "productSnapshot": {"sku": "GR-1"}},
        ],
        "shippingCost": "5.00",
        "taxAmount": "1.25",
        "paymentMethod": "Card",
        "paymentDetails": {"cardNumber": "4242 4242 4242 4242", "cvv": "123", "brand": "visa"},
        "shippingAddress": {
            "recipientName": "Ada Lovelace",
            "phone": "555-0100",
            "addressLine1": "1 Analytical Way",
            "city": "London",
            "state": "LDN",
            "postalCode": "N1",
        },
    }
    payload.update(overrides)
    return OrderCreate.model_validate(payload)


async def _place_order(factory: async_sessionmaker[AsyncSession]) -> str:
    async with lifespan_session(factory) as session:
        order = await _service(session).create_order(_order_payload())
        return order.id


async def _apply(factory: async_sessionmaker[AsyncSession], order_id: str, event: str, **fields: Any):
    async with lifespan_session(factory) as session:
        return await _service(session).apply_event(order_id, LifecycleEvent(type=event, **fields), actor=42)


async def _history(factory: async_sessionmaker[AsyncSession], order_id: str) -> list[tuple[str | None, str]]:
    async with lifespan_session(factory) as session:
        entries = await OrderRepository(session).list_status_history(order_id)
        return [(entry.from_status, entry.to_status) for entry in entries]


async def _load(factory: async_sessionmaker[AsyncSession], order_id: str):
    async with lifespan_session(factory) as session:
        order = await OrderRepository(session).get_order(order_id)
        payment = await PaymentRepository(session).get_latest_payment(order_id)
        return order, payment


@pytest.mark.asyncio
async def test_create_order_snapshots_items_and_opens_payment(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)
        order, payment = await _load(factory, order_id)

        assert order_id == "ORD-2024010100001"
        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.payment_method == "card"
        assert order.subtotal_cents == 2550
        assert order.total_cents == order.subtotal_cents + order.shipping_cents + order.tax_cents == 3175
        assert order.version == 1
        assert order.shipping_address["recipient_name"] == "Ada Lovelace"
        assert [item.total_price_cents for item in order.items] == [2000, 550]
        assert order.items[1].product_snapshot == {"sku": "GR-1", "name": "Grinder", "unit_price": "5.50"}

        assert payment is not None
        assert payment.id == "PAY-2024010100001"
        assert payment.amount_cents == order.total_cents
        assert payment.status == "pending"
        assert payment.payment_details == {"cardNumber": "****4242", "brand": "visa"}

        assert await _history(factory, order_id) == [(None, "pending")]


@pytest.mark.asyncio
async def test_create_order_records_acting_user_on_initial_history(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        async with lifespan_session(factory) as session:
            order = await _service(session).create_order(_order_payload(actor=99))
            order_id = order.id

        async with lifespan_session(factory) as session:
            entries = await OrderRepository(session).list_status_history(order_id)
        assert [(entry.to_status, entry.changed_by) for entry in entries] == [("pending", 99)]


def test_payment_attempt_payload_carries_no_actor() -> None:
    payload = PaymentAttemptCreate.model_validate({"paymentMethod": "paypal", "actor": 5})

    assert "actor" not in PaymentAttemptCreate.model_fields
    assert payload.model_dump(exclude_none=True) == {"payment_method": "paypal"}


def test_orders_load_only_their_items() -> None:
    relationships = Order.__mapper__.relationships

    assert list(relationships.keys()) == ["items"]
    assert relationships["items"].lazy == "selectin"
    assert len(OrderStatusHistory.__mapper__.relationships) == 0
    assert len(Payment.__mapper__.relationships) == 0


@pytest.mark.asyncio
async def test_payment_succeeded_marks_order_paid(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)

        updated = await _apply(factory, order_id, "payment_succeeded", transaction_id="txn-1")

        assert updated.status == "paid"
        assert updated.payment_status == "succeeded"
        assert updated.version == 2
        _, payment = await _load(factory, order_id)
        assert payment.status == "succeeded"
        assert payment.transaction_id == "txn-1"
        assert payment.processed_at is not None
        assert payment.failed_at is None
        assert await _history(factory, order_id) == [(None, "pending"), ("pending", "paid")]


@pytest.mark.asyncio
async def test_shipping_without_tracking_number_changes_nothing(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)
        await _apply(factory, order_id, "payment_succeeded")
        await _apply(factory, order_id, "fulfillment_started")

        with pytest.raises(TransitionRejectedError) as excinfo:
            await _apply(factory, order_id, "shipped")

        assert excinfo.value.rejected.reason is RejectionReason.PRECONDITION_FAILED
        order, _ = await _load(factory, order_id)
        assert order.status == "processing"
        assert order.version == 3
        assert len(await _history(factory, order_id)) == 3


@pytest.mark.asyncio
async def test_full_lifecycle_keeps_history_chain_and_totals(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)
        steps = [
            ("payment_authorized", {}),
            ("payment_captured", {}),
            ("payment_succeeded", {}),
            ("fulfillment_started", {}),
            ("shipped", {"tracking_number": "1Z999"}),
            ("delivered", {}),
        ]
        for event, fields in steps:
            order = await _apply(factory, order_id, event, **fields)
            assert order.total_cents == order.subtotal_cents + order.shipping_cents + order.tax_cents

        assert order.status == "delivered"
        assert order.tracking_number == "1Z999"
        assert order.shipped_at is not None and order.delivered_at is not None
        assert order.shipped_at <= order.delivered_at
        assert order.cancelled_at is None

        history = await _history(factory, order_id)
        assert [to_status for _, to_status in history] == [
            "pending",
            "pending",
            "pending",
            "paid",
            "processing",
            "shipped",
            "delivered",
        ]
        for previous, current in zip(history, history[1:]):
            assert current[0] == previous[1]


@pytest.mark.asyncio
@pytest.mark.parametrize("final_event", ["shipped", "delivered"])
async def test_cancel_after_shipment_is_rejected_without_side_effects(tmp_path, final_event: str) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)
        await _apply(factory, order_id, "payment_succeeded")
        await _apply(factory, order_id, "fulfillment_started")
        await _apply(factory, order_id, "shipped", tracking_number="1Z999")
        if final_event == "delivered":
            await _apply(factory, order_id, "delivered")
        before, _ = await _load(factory, order_id)
        history_before = await _history(factory, order_id)

        with pytest.raises(TransitionRejectedError) as excinfo:
            await _apply(factory, order_id, "cancel_requested")

        assert excinfo.value.rejected.reason in {RejectionReason.TERMINAL_STATE, RejectionReason.INVALID_TRANSITION}
        after, _ = await _load(factory, order_id)
        assert (after.status, after.version) == (before.status, before.version)
        assert await _history(factory, order_id) == history_before


@pytest.mark.asyncio
async def test_cancel_fails_open_payment(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)

        order = await _apply(factory, order_id, "cancel_requested", note="customer changed mind")

        assert order.status == "cancelled"
        assert order.cancelled_at is not None
        assert order.payment_status == "failed"
        _, payment = await _load(factory, order_id)
        assert payment.status == "failed"
        assert payment.failure_reason == "order cancelled"


@pytest.mark.asyncio
async def test_cancel_with_captured_payment_is_rejected_until_settled(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)
        await _apply(factory, order_id, "payment_captured")
        history_before = await _history(factory, order_id)

        with pytest.raises(TransitionRejectedError) as excinfo:
            await _apply(factory, order_id, "cancel_requested")

        assert excinfo.value.rejected.reason is RejectionReason.PRECONDITION_FAILED
        order, payment = await _load(factory, order_id)
        assert (order.status, order.payment_status, order.cancelled_at) == ("pending", "captured", None)
        assert payment.status == "captured"
        assert await _history(factory, order_id) == history_before

        await _apply(factory, order_id, "payment_succeeded")
        refunded = await _apply(factory, order_id, "refund_requested")
        assert (refunded.status, refunded.payment_status) == ("refunded", "refunded")


@pytest.mark.asyncio
async def test_refund_moves_order_and_payment(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)
        await _apply(factory, order_id, "payment_succeeded")

        order = await _apply(factory, order_id, "refund_requested")

        assert order.status == "refunded"
        assert order.payment_status == "refunded"
        _, payment = await _load(factory, order_id)
        assert payment.status == "refunded"


@pytest.mark.asyncio
async def test_stale_expected_version_conflicts(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)
        await _apply(factory, order_id, "payment_authorized")

        with pytest.raises(ConflictError) as excinfo:
            async with lifespan_session(factory) as session:
                await _service(session).apply_event(
                    order_id,
                    LifecycleEvent(type="payment_succeeded"),
                    expected_version=1,
                )

        assert excinfo.value.retriable is True
        order, _ = await _load(factory, order_id)
        assert order.status == "pending"
        assert order.version == 2


class _InterleavingPayments(PaymentRepository):
    """Runs a competing writer after this session has read the order state."""

    def __init__(self, session: AsyncSession, competitor: Callable[[], Awaitable[None]]) -> None:
        super().__init__(session)
        self._competitor = competitor

    async def get_latest_payment(self, order_id: str):
        payment = await super().get_latest_payment(order_id)
        await self._competitor()
        return payment


@pytest.mark.asyncio
async def test_concurrent_transitions_from_same_base_state_commit_once(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)

        async def competitor() -> None:
            await _apply(factory, order_id, "payment_succeeded")

        with pytest.raises(ConflictError):
            async with lifespan_session(factory) as session:
                service = _service(session, payments=_InterleavingPayments(session, competitor))
                await service.apply_event(order_id, LifecycleEvent(type="cancel_requested"))

        order, payment = await _load(factory, order_id)
        assert order.status == "paid"
        assert payment.status == "succeeded"
        assert await _history(factory, order_id) == [(None, "pending"), ("pending", "paid")]


@pytest.mark.asyncio
async def test_compare_and_swap_rejects_second_writer(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)

        async with lifespan_session(factory) as session:
            updated = await OrderRepository(session).update_order_fields(
                order_id, expected_version=1, patch={"notes": "gift wrap"}
            )
            assert updated.version == 2

        with pytest.raises(ConflictError):
            async with lifespan_session(factory) as session:
                await OrderRepository(session).update_order_fields(
                    order_id, expected_version=1, patch={"notes": "no gift wrap"}
                )

        with pytest.raises(OrderNotFoundError):
            async with lifespan_session(factory) as session:
                await OrderRepository(session).update_order_fields(
                    "ORD-2024010199999", expected_version=1, patch={"notes": "x"}
                )

        with pytest.raises(ValueError):
            async with lifespan_session(factory) as session:
                await OrderRepository(session).update_order_fields(
                    order_id, expected_version=2, patch={"total_cents": 1}
                )


class _FailingPayments(PaymentRepository):
    async def update_payment_status(self, payment_id: str, **kwargs: Any):
        raise RuntimeError("payment store write failed")


@pytest.mark.asyncio
async def test_failure_after_first_write_rolls_back_everything(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)

        with pytest.raises(RuntimeError):
            async with lifespan_session(factory) as session:
                service = _service(session, payments=_FailingPayments(session))
                await service.apply_event(order_id, LifecycleEvent(type="payment_succeeded"))

        order, payment = await _load(factory, order_id)
        assert (order.status, order.payment_status, order.version) == ("pending", "pending", 1)
        assert payment.status == "pending"
        assert await _history(factory, order_id) == [(None, "pending")]


class _UnavailableOrders(OrderRepository):
    async def create_order(self, **kwargs: Any):
        raise OperationalError("INSERT INTO orders", {}, Exception("database is locked"))

    async def get_order(self, order_id: str):
        raise OperationalError("SELECT orders", {}, Exception("database is locked"))

    async def list_orders(self, **kwargs: Any):
        raise OperationalError("SELECT orders", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_store_outage_surfaces_as_store_unavailable(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)

        async with lifespan_session(factory) as session:
            service = OrderService(
                _UnavailableOrders(session),
                PaymentRepository(session),
                clock=lambda: FIXED_NOW,
            )
            calls: list[Callable[[], Awaitable[Any]]] = [
                lambda: service.create_order(_order_payload()),
                lambda: service.apply_event(order_id, LifecycleEvent(type="payment_succeeded")),
                lambda: service.start_payment_attempt(order_id, PaymentAttemptCreate()),
                lambda: service.get_order(order_id),
                lambda: service.list_orders(),
                lambda: service.get_history(order_id),
                lambda: service.list_payments(order_id),
            ]
            for call in calls:
                with pytest.raises(StoreUnavailableError) as excinfo:
                    await call()
                assert excinfo.value.retriable is False
                assert isinstance(excinfo.value.__cause__, OperationalError)

        order, payment = await _load(factory, order_id)
        assert (order.status, order.version) == ("pending", 1)
        assert payment.status == "pending"


@pytest.mark.asyncio
async def test_expired_deadline_aborts_before_writing(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)

        with pytest.raises(DeadlineExceededError):
            async with lifespan_session(factory) as session:
                await _service(session).apply_event(
                    order_id,
                    LifecycleEvent(type="payment_succeeded"),
                    deadline=FIXED_NOW - timedelta(seconds=1),
                )

        order, _ = await _load(factory, order_id)
        assert order.status == "pending"
        assert order.version == 1


@pytest.mark.asyncio
async def test_payment_retry_after_failure(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)

        with pytest.raises(TransitionRejectedError) as excinfo:
            async with lifespan_session(factory) as session:
                await _service(session).start_payment_attempt(order_id, PaymentAttemptCreate())
        assert excinfo.value.rejected.reason is RejectionReason.PRECONDITION_FAILED

        await _apply(factory, order_id, "payment_failed", failure_reason="card declined")
        order, failed = await _load(factory, order_id)
        assert order.payment_status == "failed"
        assert failed.failure_reason == "card declined"

        async with lifespan_session(factory) as session:
            retry = await _service(session).start_payment_attempt(
                order_id, PaymentAttemptCreate(paymentMethod="PayPal")
            )
        assert retry.id == "PAY-2024010100002"
        assert retry.payment_method == "paypal"

        order, latest = await _load(factory, order_id)
        assert latest.id == retry.id
        assert order.payment_status == "pending"
        assert order.payment_method == "paypal"

        paid = await _apply(factory, order_id, "payment_succeeded")
        assert paid.status == "paid"
        async with lifespan_session(factory) as session:
            attempts = await PaymentRepository(session).list_payments(order_id)
        assert [(p.id, p.status) for p in attempts] == [
            ("PAY-2024010100001", "failed"),
            ("PAY-2024010100002", "succeeded"),
        ]


@pytest.mark.asyncio
async def test_payment_store_rejects_updates_to_terminal_payments(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        order_id = await _place_order(factory)
        await _apply(factory, order_id, "payment_failed", failure_reason="expired card")
        _, payment = await _load(factory, order_id)

        with pytest.raises(PaymentAlreadyTerminalError):
            async with lifespan_session(factory) as session:
                await PaymentRepository(session).update_payment_status(payment.id, status="succeeded")


@pytest.mark.asyncio
async def test_identifiers_are_date_sequenced(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        await _place_order(factory)
        await _place_order(factory)

        async with lifespan_session(factory) as session:
            generator = DatabaseIdentifierGenerator(session)
            assert await generator.next_order_id(now=FIXED_NOW) == "ORD-2024010100003"
            assert await generator.next_payment_id(now=FIXED_NOW) == "PAY-2024010100003"
            next_day = await generator.next_order_id(now=FIXED_NOW + timedelta(days=1))
            assert next_day == "ORD-2024010200001"
            assert re.fullmatch(r"ORD-\d{8}\d{5}", next_day)


class _RecordingInventory:
    def __init__(self, *, fail: bool = False) -> None:
        self.reserved: list[tuple[int, int]] = []
        self.fail = fail

    async def reserve(self, *, product_id: int, quantity: int) -> None:
        if self.fail:
            raise RuntimeError("out of stock")
        self.reserved.append((product_id, quantity))


@pytest.mark.asyncio
async def test_inventory_is_reserved_at_order_creation(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        inventory = _RecordingInventory()
        async with lifespan_session(factory) as session:
            await _service(session, inventory=inventory).create_order(_order_payload())
        assert inventory.reserved == [(1, 2), (2, 1)]

        with pytest.raises(RuntimeError):
            async with lifespan_session(factory) as session:
                await _service(session, inventory=_RecordingInventory(fail=True)).create_order(_order_payload())

        async with lifespan_session(factory) as session:
            orders, total = await OrderRepository(session).list_orders(user_id=7, status=None, limit=10, offset=0)
        assert total == 1
        assert len(orders) == 1


def test_mask_payment_details() -> None:
    assert mask_payment_details(None) is None
    assert mask_payment_details({"card_number": "4000 0000 0000 0002", "cvc": "999", "holder": "A"}) == {
        "card_number": "****0002",
        "holder": "A",
    }


class _MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


@pytest.mark.asyncio
async def test_transition_metrics_are_recorded(tmp_path) -> None:
    async with _store(tmp_path) as factory:
        created = _MetricTracker("orders_created_total", {"payment_method": "card"})
        attempts = _MetricTracker("order_payment_attempts_total", {"payment_method": "card"})
        accepted = _MetricTracker("order_transitions_total", {"event": "payment_succeeded", "to_status": "paid"})
        rejected = _MetricTracker(
            "order_transition_rejections_total", {"event": "shipped", "reason": "invalid_transition"}
        )
        unknown = _MetricTracker(
            "order_transition_rejections_total", {"event": "unknown", "reason": "invalid_transition"}
        )
        conflicts = _MetricTracker("order_transition_conflicts_total")
        latency = _MetricTracker("order_transition_latency_seconds_count", {"event": "payment_succeeded"})

        order_id = await _place_order(factory)
        await _apply(factory, order_id, "payment_succeeded")
        for event in ("shipped", "lost_in_transit"):
            with pytest.raises(TransitionRejectedError):
                await _apply(factory, order_id, event)
        with pytest.raises(ConflictError):
            async with lifespan_session(factory) as session:
                await _service(session).apply_event(
                    order_id, LifecycleEvent(type="fulfillment_started"), expected_version=1
                )

        assert created.delta() == 1
        assert attempts.delta() == 1
        assert accepted.delta() == 1
        assert rejected.delta() == 1
        assert unknown.delta() == 1
        assert conflicts.delta() == 1
        assert latency.delta() == 1
