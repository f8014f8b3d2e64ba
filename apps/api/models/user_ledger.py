"""UserLedger model holding one credit balance per user."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


TIER_FREE = "free"
TIER_PREMIUM = "premium"


class UserLedger(Base):
    """Mutable per-user credit balance guarded by a version counter."""

    __tablename__ = "user_ledgers"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_ledgers_balance_non_negative"),
    )

    user_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    balance_expires_at = Column(DateTime(timezone=True), nullable=True)
    tier = Column(String, nullable=False, default=TIER_FREE)
    lifetime_generation_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
