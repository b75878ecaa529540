"""Dependency helpers for the order service."""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common import ServiceSettings, lifespan_session

from .repository import OrderRepository, PaymentRepository
from .services import InventoryProvider, OrderService


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield one AsyncSession per request; it commits only if the handler succeeds."""

    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_settings(request: Request) -> ServiceSettings:
    return request.app.state.settings


def get_order_service(request: Request, session: AsyncSession = Depends(get_session)) -> OrderService:
    """Return an order service bound to the active session."""

    inventory: InventoryProvider | None = getattr(request.app.state, "inventory", None)
    return OrderService(OrderRepository(session), PaymentRepository(session), inventory=inventory)
