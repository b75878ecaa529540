"""Date-sequenced identifiers for orders and payments."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order, Payment

ORDER_PREFIX = "ORD"
PAYMENT_PREFIX = "PAY"
_SEQUENCE_DIGITS = 5

IDENTIFIER_PATTERN = re.compile(r"^(?P<prefix>[A-Z]{3})-(?P<date>\d{8})(?P<sequence>\d{5})$")


class IdentifierGenerator(Protocol):
    async def next_order_id(self, *, now: datetime | None = None) -> str: ...

    async def next_payment_id(self, *, now: datetime | None = None) -> str: ...


def format_identifier(prefix: str, day: datetime, sequence: int) -> str:
    if sequence < 1 or sequence >= 10**_SEQUENCE_DIGITS:
        msg = f"sequence {sequence} does not fit in {_SEQUENCE_DIGITS} digits"
        raise ValueError(msg)
    return f"{prefix}-{day:%Y%m%d}{sequence:0{_SEQUENCE_DIGITS}d}"


def parse_sequence(identifier: str) -> int:
    match = IDENTIFIER_PATTERN.match(identifier)
    if match is None:
        msg = f"malformed identifier {identifier!r}"
        raise ValueError(msg)
    return int(match.group("sequence"))


class DatabaseIdentifierGenerator:
    """Issue the next identifier of the day by reading the highest one already stored.

    Two writers racing for the same sequence collide on the primary key; the
    order service reports that as a retriable conflict.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def next_order_id(self, *, now: datetime | None = None) -> str:
        return await self._next(Order.id, ORDER_PREFIX, now)

    async def next_payment_id(self, *, now: datetime | None = None) -> str:
        return await self._next(Payment.id, PAYMENT_PREFIX, now)

    async def _next(self, column, prefix: str, now: datetime | None) -> str:
        day = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        day_prefix = f"{prefix}-{day:%Y%m%d}"
        result = await self.session.execute(select(func.max(column)).where(column.like(f"{day_prefix}%")))
        latest = result.scalar_one_or_none()
        sequence = parse_sequence(latest) + 1 if latest else 1
        return format_identifier(prefix, day, sequence)
