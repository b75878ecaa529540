"""Pydantic schemas for the order service."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator


class ShippingAddressPayload(BaseModel):
    recipient_name: str = Field(min_length=1, max_length=255, alias="recipientName")
    phone: str = Field(min_length=1, max_length=20)
    address_line_1: str = Field(min_length=1, max_length=255, alias="addressLine1")
    address_line_2: str | None = Field(default=None, max_length=255, alias="addressLine2")
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20, alias="postalCode")
    country: str = Field(default="USA", min_length=1, max_length=100)

    model_config = ConfigDict(populate_by_name=True)


class OrderItemPayload(BaseModel):
    product_id: PositiveInt = Field(alias="productId")
    product_name: str = Field(min_length=1, max_length=255, alias="productName")
    quantity: PositiveInt
    unit_price: Decimal = Field(ge=Decimal("0"), max_digits=10, decimal_places=2, alias="unitPrice")
    product_snapshot: dict[str, Any] | None = Field(default=None, alias="productSnapshot")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("product_name")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            msg = "value must be non-empty"
            raise ValueError(msg)
        return cleaned


class OrderCreate(BaseModel):
    user_id: PositiveInt = Field(alias="userId")
    items: list[OrderItemPayload] = Field(min_length=1)
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), max_digits=10, decimal_places=2, alias="shippingCost")
    tax_amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), max_digits=10, decimal_places=2, alias="taxAmount")
    payment_method: str = Field(min_length=1, max_length=20, alias="paymentMethod")
    payment_details: dict[str, Any] | None = Field(default=None, alias="paymentDetails")
    shipping_address: ShippingAddressPayload = Field(alias="shippingAddress")
    notes: str | None = None
    actor: PositiveInt | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("payment_method")
    @classmethod
    def _normalize_method(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if not cleaned:
            msg = "payment method must be non-empty"
            raise ValueError(msg)
        return cleaned


class LifecycleEventRequest(BaseModel):
    event: str = Field(min_length=1, max_length=64)
    actor: PositiveInt | None = None
    note: str | None = None
    tracking_number: str | None = Field(default=None, max_length=100, alias="trackingNumber")
    failure_reason: str | None = Field(default=None, alias="failureReason")
    transaction_id: str | None = Field(default=None, max_length=100, alias="transactionId")
    gateway_response: dict[str, Any] | None = Field(default=None, alias="gatewayResponse")

    model_config = ConfigDict(populate_by_name=True)


class PaymentAttemptCreate(BaseModel):
    payment_method: str | None = Field(default=None, min_length=1, max_length=20, alias="paymentMethod")
    payment_details: dict[str, Any] | None = Field(default=None, alias="paymentDetails")

    model_config = ConfigDict(populate_by_name=True)


class OrderItemResponse(BaseModel):
    id: PositiveInt
    product_id: PositiveInt = Field(alias="productId")
    product_name: str = Field(alias="productName")
    quantity: PositiveInt
    unit_price: Decimal = Field(alias="unitPrice")
    total_price: Decimal = Field(alias="totalPrice")
    product_snapshot: dict[str, Any] | None = Field(default=None, alias="productSnapshot")
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class OrderResponse(BaseModel):
    id: str
    user_id: PositiveInt = Field(alias="userId")
    status: str
    payment_status: str = Field(alias="paymentStatus")
    payment_method: str = Field(alias="paymentMethod")
    subtotal: Decimal
    shipping_cost: Decimal = Field(alias="shippingCost")
    tax_amount: Decimal = Field(alias="taxAmount")
    total_amount: Decimal = Field(alias="totalAmount")
    shipping_address: dict[str, Any] = Field(alias="shippingAddress")
    tracking_number: str | None = Field(default=None, alias="trackingNumber")
    notes: str | None = None
    cancelled_at: datetime | None = Field(default=None, alias="cancelledAt")
    shipped_at: datetime | None = Field(default=None, alias="shippedAt")
    delivered_at: datetime | None = Field(default=None, alias="deliveredAt")
    version: int
    items: list[OrderItemResponse]
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class OrderListResponse(BaseModel):
    items: list[OrderResponse]
    total: int


class StatusHistoryResponse(BaseModel):
    id: PositiveInt
    from_status: str | None = Field(default=None, alias="fromStatus")
    to_status: str = Field(alias="toStatus")
    note: str | None = None
    changed_by: int | None = Field(default=None, alias="changedBy")
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class PaymentResponse(BaseModel):
    id: str
    order_id: str = Field(alias="orderId")
    amount: Decimal
    payment_method: str = Field(alias="paymentMethod")
    status: str
    transaction_id: str | None = Field(default=None, alias="transactionId")
    payment_details: dict[str, Any] | None = Field(default=None, alias="paymentDetails")
    gateway_response: dict[str, Any] | None = Field(default=None, alias="gatewayResponse")
    processed_at: datetime | None = Field(default=None, alias="processedAt")
    failed_at: datetime | None = Field(default=None, alias="failedAt")
    failure_reason: str | None = Field(default=None, alias="failureReason")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)
