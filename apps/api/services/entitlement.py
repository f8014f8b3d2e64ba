"""Generation entitlement: check a live credit before, spend it after success."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.balance import effective_balance
from services.ledger import decrement_one, read_ledger


class Entitlement(str, enum.Enum):
    AUTHORIZED = "authorized"
    DENIED = "denied"


async def can_generate(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> bool:
    ledger = await read_ledger(user_id, db)
    current = now or datetime.now(timezone.utc)
    return effective_balance(ledger.balance, ledger.balance_expires_at, current) > 0


async def consume(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> Entitlement:
    """Spend one credit after a successful generation; never drives the balance negative."""
    if await decrement_one(user_id, db, now=now):
        return Entitlement.AUTHORIZED
    return Entitlement.DENIED
