"""PaymentAttempt model tracking one checkout through pending/completed/failed."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class PaymentAttempt(Base):
    """Checkout attempt; the status transition gates the ledger grant."""

    __tablename__ = "payment_attempts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    external_session_id = Column(String, nullable=False, unique=True, index=True)
    provider = Column(String, nullable=False)
    plan_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=STATUS_PENDING, index=True)
    grant_amount = Column(Integer, nullable=False)
    grant_validity_days = Column(Integer, nullable=False, default=0)
    external_transaction_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
