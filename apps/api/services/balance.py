"""Pure credit balance arithmetic: expiry projection and grant merging.

Every grant channel (mock payment, Stripe, redemption codes) describes what
it adds as a ``GrantRequest``. ``validity_days == PERMANENT_VALIDITY_DAYS``
means the credits never expire; a ``None`` expiry on a balance means the
same thing and sorts after every concrete date when merging.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple


PERMANENT_VALIDITY_DAYS = 0


@dataclass(frozen=True)
class GrantRequest:
    amount: int
    validity_days: int = PERMANENT_VALIDITY_DAYS

    def __post_init__(self) -> None:
        if int(self.amount) <= 0:
            raise ValueError("grant amount must be a positive integer")
        if int(self.validity_days) < 0:
            raise ValueError("grant validity_days must be non-negative")

    @property
    def is_permanent(self) -> bool:
        return int(self.validity_days) == PERMANENT_VALIDITY_DAYS

    def expiry_from(self, now: datetime) -> Optional[datetime]:
        if self.is_permanent:
            return None
        return as_utc(now) + timedelta(days=int(self.validity_days))


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def effective_balance(balance: int, expires_at: Optional[datetime], now: datetime) -> int:
    """Usable balance at ``now``; an elapsed expiry projects to zero without touching storage."""
    expiry = as_utc(expires_at)
    if expiry is not None and expiry < as_utc(now):
        return 0
    return max(int(balance or 0), 0)


def _later_expiry(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if current is None or candidate is None:
        return None
    return max(current, candidate)


def merge_grant(
    current_balance: int,
    current_expires_at: Optional[datetime],
    grant: GrantRequest,
    now: datetime,
) -> Tuple[int, Optional[datetime]]:
    """Combine a live balance with a grant.

    A dead (expired or empty) balance is replaced outright, discarding its
    stale expiry. A live balance is added to and its expiry only ever moves
    later.
    """
    grant_expiry = grant.expiry_from(now)
    live = effective_balance(current_balance, current_expires_at, now)
    if live <= 0:
        return int(grant.amount), grant_expiry

    return live + int(grant.amount), _later_expiry(as_utc(current_expires_at), grant_expiry)
