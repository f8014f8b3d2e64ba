"""Single-use redemption codes: claim first, grant second, compensate on failure."""

from __future__ import annotations

import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.redemption_code import RedemptionCode
from services.balance import GrantRequest, as_utc
from services.ledger import LedgerConflictError, apply_grant


logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class RedeemError(str, enum.Enum):
    INVALID_CODE = "INVALID_CODE"
    CODE_NOT_FOUND = "CODE_NOT_FOUND"
    CODE_ALREADY_USED = "CODE_ALREADY_USED"
    CODE_EXPIRED = "CODE_EXPIRED"
    REDEEM_FAILED = "REDEEM_FAILED"


@dataclass(frozen=True)
class RedemptionResult:
    new_balance: int
    new_expires_at: Optional[datetime]
    amount_granted: int


def normalize_code(raw_code: Optional[str]) -> str:
    return str(raw_code or "").strip().upper()


async def _release_claim(code: str, user_id: str, db: AsyncSession) -> bool:
    """Undo this user's claim on ``code``; False when no matching claim was found."""
    result = await db.execute(
        update(RedemptionCode)
        .where(
            RedemptionCode.code == code,
            RedemptionCode.consumed.is_(True),
            RedemptionCode.consumed_by == user_id,
        )
        .values(consumed=False, consumed_by=None, consumed_at=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        return False
    await db.commit()
    return True


async def _compensate(code: str, user_id: str, amount: int, db: AsyncSession) -> None:
    try:
        released = await _release_claim(code, user_id, db)
    except Exception as release_exc:
        logger.critical(
            "Redemption compensation failed: code %s consumed by user %s without grant "
            "(+%s credits); manual reconciliation required: %s",
            code,
            user_id,
            amount,
            release_exc,
        )
        return
    if not released:
        logger.critical(
            "Redemption compensation found no claim on code %s for user %s "
            "(+%s credits not granted); manual reconciliation required",
            code,
            user_id,
            amount,
        )
        return
    logger.warning("Released claim on code %s for user %s after grant failure", code, user_id)


async def redeem(
    user_id: str,
    raw_code: Optional[str],
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Union[RedemptionResult, RedeemError]:
    current = as_utc(now or datetime.now(timezone.utc))
    code = normalize_code(raw_code)
    if not code:
        return RedeemError.INVALID_CODE

    result = await db.execute(
        select(RedemptionCode)
        .where(RedemptionCode.code == code)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return RedeemError.CODE_NOT_FOUND
    if row.consumed:
        return RedeemError.CODE_ALREADY_USED
    expires_at = as_utc(row.expires_at)
    if expires_at is not None and expires_at < current:
        return RedeemError.CODE_EXPIRED

    grant = GrantRequest(amount=int(row.grant_amount), validity_days=int(row.grant_validity_days or 0))

    claim = await db.execute(
        update(RedemptionCode)
        .where(RedemptionCode.code == code, RedemptionCode.consumed.is_(False))
        .values(consumed=True, consumed_by=user_id, consumed_at=current)
        .execution_options(synchronize_session=False)
    )
    if claim.rowcount != 1:
        await db.rollback()
        return RedeemError.CODE_ALREADY_USED
    await db.commit()

    try:
        granted = await apply_grant(user_id, grant, db, now=current)
    except (SQLAlchemyError, LedgerConflictError) as exc:
        logger.error("Grant failed after claiming code %s for user %s: %s", code, user_id, exc)
        await db.rollback()
        await _compensate(code, user_id, grant.amount, db)
        return RedeemError.REDEEM_FAILED
    except Exception:
        logger.exception("Unexpected error granting code %s to user %s", code, user_id)
        await db.rollback()
        await _compensate(code, user_id, grant.amount, db)
        raise

    logger.info(
        "Redemption completed for user %s: code=%s, +%s credits, total=%s",
        user_id,
        code,
        grant.amount,
        granted.balance,
    )
    return RedemptionResult(
        new_balance=granted.balance,
        new_expires_at=granted.expires_at,
        amount_granted=grant.amount,
    )


def generate_code(length: int = 12) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(max(int(length), 6)))


async def issue_redemption_codes(
    db: AsyncSession,
    *,
    count: int = 1,
    amount: Optional[int] = None,
    validity_days: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    codes: Optional[List[str]] = None,
) -> List[RedemptionCode]:
    """Create unconsumed codes; explicit ``codes`` are normalized, otherwise random ones are generated."""
    grant = GrantRequest(
        amount=int(amount if amount is not None else settings.REDEMPTION_DEFAULT_CREDITS),
        validity_days=int(
            validity_days if validity_days is not None else settings.REDEMPTION_DEFAULT_VALIDITY_DAYS
        ),
    )
    values = [normalize_code(code) for code in (codes or [])]
    if any(not value for value in values):
        raise ValueError("redemption codes must be non-empty")
    while len(values) < max(int(count), len(values)):
        candidate = generate_code()
        if candidate not in values:
            values.append(candidate)

    rows = [
        RedemptionCode(
            code=value,
            grant_amount=grant.amount,
            grant_validity_days=grant.validity_days,
            expires_at=expires_at,
            consumed=False,
        )
        for value in values
    ]
    db.add_all(rows)
    await db.commit()
    return rows
