"""HTTP routes for orders, their lifecycle events and payment attempts."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status

from storefront.common import ServiceSettings

from ..dependencies import get_order_service, get_settings
from ..errors import (
    ConflictError,
    DeadlineExceededError,
    NotFoundError,
    OrderServiceError,
    PaymentAlreadyTerminalError,
    StoreUnavailableError,
    TransitionRejectedError,
)
from ..schemas import (
    LifecycleEventRequest,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    PaymentAttemptCreate,
    PaymentResponse,
    StatusHistoryResponse,
)
from ..services import OrderService
from ..state_machine import LifecycleEvent, RejectionReason

router = APIRouter(prefix="/orders", tags=["orders"])


def _format_amount(value: int) -> Decimal:
    return (Decimal(value) / Decimal("100")).quantize(Decimal("0.01"))


def _serialize_order(order) -> dict[str, object]:
    return {
        "id": order.id,
        "userId": order.user_id,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "paymentMethod": order.payment_method,
        "subtotal": _format_amount(order.subtotal_cents),
        "shippingCost": _format_amount(order.shipping_cents),
        "taxAmount": _format_amount(order.tax_cents),
        "totalAmount": _format_amount(order.total_cents),
        "shippingAddress": order.shipping_address,
        "trackingNumber": order.tracking_number,
        "notes": order.notes,
        "cancelledAt": order.cancelled_at,
        "shippedAt": order.shipped_at,
        "deliveredAt": order.delivered_at,
        "version": order.version,
        "items": [
            {
                "id": item.id,
                "productId": item.product_id,
                "productName": item.product_name,
                "quantity": item.quantity,
                "unitPrice": _format_amount(item.unit_price_cents),
                "totalPrice": _format_amount(item.total_price_cents),
                "productSnapshot": item.product_snapshot,
                "createdAt": item.created_at,
            }
            for item in order.items
        ],
        "createdAt": order.created_at,
        "updatedAt": order.updated_at,
    }


def _serialize_payment(payment) -> dict[str, object]:
    return {
        "id": payment.id,
        "orderId": payment.order_id,
        "amount": _format_amount(payment.amount_cents),
        "paymentMethod": payment.payment_method,
        "status": payment.status,
        "transactionId": payment.transaction_id,
        "paymentDetails": payment.payment_details,
        "gatewayResponse": payment.gateway_response,
        "processedAt": payment.processed_at,
        "failedAt": payment.failed_at,
        "failureReason": payment.failure_reason,
        "createdAt": payment.created_at,
        "updatedAt": payment.updated_at,
    }


def _serialize_history(entry) -> dict[str, object]:
    return {
        "id": entry.id,
        "fromStatus": entry.from_status,
        "toStatus": entry.to_status,
        "note": entry.note,
        "changedBy": entry.changed_by,
        "createdAt": entry.created_at,
    }


def _http_error(exc: OrderServiceError) -> HTTPException:
    detail: dict[str, object] = {"message": str(exc), "retriable": exc.retriable}
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, TransitionRejectedError):
        detail["reason"] = exc.reason
        if exc.rejected.reason is RejectionReason.PRECONDITION_FAILED:
            return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(exc, PaymentAlreadyTerminalError):
        detail["reason"] = "payment_terminal"
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(exc, ConflictError):
        detail["reason"] = "conflict"
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(exc, DeadlineExceededError):
        detail["reason"] = "deadline_exceeded"
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=detail)
    if isinstance(exc, StoreUnavailableError):
        detail["reason"] = "store_unavailable"
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
    detail["reason"] = "internal_error"
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


def _parse_if_match(raw: str | None) -> int | None:
    if raw is None:
        return None
    cleaned = raw.strip().removeprefix("W/").strip('"')
    try:
        return int(cleaned)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="If-Match must carry the order version",
        ) from exc


def _with_etag(response: Response, order) -> None:
    response.headers["ETag"] = f'"{order.version}"'


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    response: Response,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    try:
        order = await service.create_order(payload)
        await service.commit()
    except OrderServiceError as exc:
        raise _http_error(exc) from exc
    _with_etag(response, order)
    return OrderResponse.model_validate(_serialize_order(order))


@router.get("", response_model=OrderListResponse)
async def list_orders(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: int | None = Query(default=None, alias="userId"),
    status_filter: str | None = Query(default=None, alias="status"),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    try:
        orders, total = await service.list_orders(
            user_id=user_id,
            status=status_filter,
            limit=limit,
            offset=offset,
        )
    except OrderServiceError as exc:
        raise _http_error(exc) from exc
    items = [OrderResponse.model_validate(_serialize_order(order)) for order in orders]
    return OrderListResponse(items=items, total=total)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    response: Response,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    try:
        order = await service.get_order(order_id)
    except OrderServiceError as exc:
        raise _http_error(exc) from exc
    _with_etag(response, order)
    return OrderResponse.model_validate(_serialize_order(order))


@router.post("/{order_id}/events", response_model=OrderResponse)
async def apply_order_event(
    order_id: str,
    payload: LifecycleEventRequest,
    response: Response,
    if_match: str | None = Header(default=None, alias="If-Match"),
    service: OrderService = Depends(get_order_service),
    settings: ServiceSettings = Depends(get_settings),
) -> OrderResponse:
    deadline = None
    if settings.transition_timeout_seconds is not None:
        deadline = datetime.now(timezone.utc) + timedelta(seconds=settings.transition_timeout_seconds)
    event = LifecycleEvent(
        type=payload.event,
        note=payload.note,
        tracking_number=payload.tracking_number,
        failure_reason=payload.failure_reason,
        transaction_id=payload.transaction_id,
        gateway_response=payload.gateway_response,
    )
    try:
        order = await service.apply_event(
            order_id,
            event,
            actor=payload.actor,
            expected_version=_parse_if_match(if_match),
            deadline=deadline,
        )
        await service.commit()
    except OrderServiceError as exc:
        raise _http_error(exc) from exc
    _with_etag(response, order)
    return OrderResponse.model_validate(_serialize_order(order))


@router.get("/{order_id}/history", response_model=list[StatusHistoryResponse])
async def get_order_history(
    order_id: str,
    service: OrderService = Depends(get_order_service),
) -> list[StatusHistoryResponse]:
    try:
        entries = await service.get_history(order_id)
    except OrderServiceError as exc:
        raise _http_error(exc) from exc
    return [StatusHistoryResponse.model_validate(_serialize_history(entry)) for entry in entries]


@router.get("/{order_id}/payments", response_model=list[PaymentResponse])
async def list_order_payments(
    order_id: str,
    service: OrderService = Depends(get_order_service),
) -> list[PaymentResponse]:
    try:
        payments = await service.list_payments(order_id)
    except OrderServiceError as exc:
        raise _http_error(exc) from exc
    return [PaymentResponse.model_validate(_serialize_payment(payment)) for payment in payments]


@router.post("/{order_id}/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def start_payment_attempt(
    order_id: str,
    payload: PaymentAttemptCreate,
    service: OrderService = Depends(get_order_service),
) -> PaymentResponse:
    try:
        payment = await service.start_payment_attempt(order_id, payload)
        await service.commit()
    except OrderServiceError as exc:
        raise _http_error(exc) from exc
    return PaymentResponse.model_validate(_serialize_payment(payment))
