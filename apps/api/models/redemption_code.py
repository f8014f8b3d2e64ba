"""RedemptionCode model for single-use credit codes."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class RedemptionCode(Base):
    """Single-use code exchangeable for a fixed grant."""

    __tablename__ = "redemption_codes"

    code = Column(String, primary_key=True)
    grant_amount = Column(Integer, nullable=False)
    grant_validity_days = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    consumed = Column(Boolean, nullable=False, default=False, index=True)
    consumed_by = Column(String, nullable=True, index=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
