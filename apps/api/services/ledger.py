"""Ledger store: the only writer of per-user credit balances.

Grants go through a versioned compare-and-swap loop; decrements are a single
conditional UPDATE. Nothing else in the service writes ``balance`` or
``balance_expires_at``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user_ledger import TIER_FREE, TIER_PREMIUM, UserLedger
from services.balance import GrantRequest, as_utc, effective_balance, merge_grant


logger = logging.getLogger(__name__)


class LedgerConflictError(RuntimeError):
    """Raised when a grant keeps losing the version race past the retry bound."""


@dataclass(frozen=True)
class BalanceSnapshot:
    user_id: str
    balance: int
    expires_at: Optional[datetime]
    tier: str
    generation_count: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "balance": self.balance,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "tier": self.tier,
            "generation_count": self.generation_count,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _select_ledger(user_id: str, db: AsyncSession) -> Optional[UserLedger]:
    result = await db.execute(
        select(UserLedger)
        .where(UserLedger.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def read_ledger(user_id: str, db: AsyncSession) -> UserLedger:
    """Return the user's ledger, creating the default one on first read."""
    ledger = await _select_ledger(user_id, db)
    if ledger is not None:
        return ledger

    db.add(
        UserLedger(
            user_id=user_id,
            balance=max(int(settings.SIGNUP_CREDITS), 0),
            balance_expires_at=None,
            tier=TIER_FREE,
            lifetime_generation_count=0,
            version=0,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent first read inserted the row.
        await db.rollback()

    ledger = await _select_ledger(user_id, db)
    if ledger is None:
        raise LookupError(f"Ledger for user {user_id} could not be created")
    return ledger


def snapshot(ledger: UserLedger, now: Optional[datetime] = None) -> BalanceSnapshot:
    current = now or _utcnow()
    live = effective_balance(ledger.balance, ledger.balance_expires_at, current)
    expires_at = as_utc(ledger.balance_expires_at)
    if expires_at is not None and expires_at < as_utc(current):
        expires_at = None
    return BalanceSnapshot(
        user_id=ledger.user_id,
        balance=live,
        expires_at=expires_at,
        tier=ledger.tier,
        generation_count=int(ledger.lifetime_generation_count or 0),
    )


async def get_effective_balance(
    user_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> BalanceSnapshot:
    ledger = await read_ledger(user_id, db)
    return snapshot(ledger, now)


async def apply_grant(
    user_id: str,
    grant: GrantRequest,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> BalanceSnapshot:
    """Merge ``grant`` into the user's balance and upgrade the tier.

    Each attempt reads the ledger, computes the merge, and writes it back only
    if the row version is unchanged; a concurrent grant or decrement bumps the
    version and forces a re-read.

    The returned snapshot is built from the values the winning UPDATE wrote.
    Nothing touches the database after the commit, so an exception from this
    function always means the grant was not applied.
    """
    current = as_utc(now or _utcnow())
    attempts = max(int(settings.LEDGER_GRANT_MAX_RETRIES), 1)

    for attempt in range(1, attempts + 1):
        ledger = await read_ledger(user_id, db)
        observed_version = int(ledger.version)
        generation_count = int(ledger.lifetime_generation_count or 0)
        new_balance, new_expires_at = merge_grant(
            ledger.balance,
            ledger.balance_expires_at,
            grant,
            current,
        )
        result = await db.execute(
            update(UserLedger)
            .where(
                UserLedger.user_id == user_id,
                UserLedger.version == observed_version,
            )
            .values(
                balance=new_balance,
                balance_expires_at=new_expires_at,
                tier=TIER_PREMIUM,
                version=observed_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await db.commit()
            logger.info(
                "Grant applied for user %s: +%s credits, balance=%s expires_at=%s",
                user_id,
                grant.amount,
                new_balance,
                new_expires_at.isoformat() if new_expires_at else "never",
            )
            return BalanceSnapshot(
                user_id=user_id,
                balance=new_balance,
                expires_at=new_expires_at,
                tier=TIER_PREMIUM,
                generation_count=generation_count,
            )

        await db.rollback()
        logger.info(
            "Ledger version conflict for user %s (attempt %s/%s); retrying grant",
            user_id,
            attempt,
            attempts,
        )

    raise LedgerConflictError(
        f"Grant for user {user_id} lost the version race {attempts} times"
    )


async def decrement_one(
    user_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> bool:
    """Spend one live credit; returns False without writing when none is usable."""
    current = as_utc(now or _utcnow())
    await read_ledger(user_id, db)

    result = await db.execute(
        update(UserLedger)
        .where(
            UserLedger.user_id == user_id,
            UserLedger.balance > 0,
            or_(
                UserLedger.balance_expires_at.is_(None),
                UserLedger.balance_expires_at >= current,
            ),
        )
        .values(
            balance=UserLedger.balance - 1,
            lifetime_generation_count=UserLedger.lifetime_generation_count + 1,
            version=UserLedger.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        return False

    await db.commit()
    return True
