"""Payment reconciliation: every channel funnels through one pending -> completed gate.

The Stripe webhook (notification path) and the post-checkout verification
(client path) race for the same conditional UPDATE on ``payment_attempts``.
Whichever call flips ``pending`` to ``completed`` (or inserts the completed
row when no pending one exists) applies the grant; every other caller
observes ``completed`` and does nothing. The mock channel goes through the
same gate.
"""

from __future__ import annotations

import enum
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.payment_attempt import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, PaymentAttempt
from services.balance import PERMANENT_VALIDITY_DAYS, GrantRequest, as_utc
from services.ledger import BalanceSnapshot, LedgerConflictError, apply_grant, get_effective_balance
from services.plan_catalog import get_plan
from services.stripe_gateway import PaymentGatewayError, StripeGateway, WebhookEvent


logger = logging.getLogger(__name__)

PROVIDER_STRIPE = "stripe"
PROVIDER_MOCK = "mock"

GRANT_EVENT_TYPES = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
FAILURE_EVENT_TYPES = {"checkout.session.expired", "checkout.session.async_payment_failed"}


class PaymentError(str, enum.Enum):
    INVALID_PLAN = "INVALID_PLAN"
    INVALID_METADATA = "INVALID_METADATA"
    PAYMENT_INCOMPLETE = "PAYMENT_INCOMPLETE"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    FORBIDDEN = "FORBIDDEN"
    VERIFICATION_UNAVAILABLE = "VERIFICATION_UNAVAILABLE"


class NotificationOutcome(str, enum.Enum):
    GRANTED = "granted"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    INVALID_METADATA = "invalid_metadata"
    FAILED_MARKED = "failed_marked"


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    url: Optional[str]


@dataclass(frozen=True)
class MockPaymentResult:
    payment_id: str
    credits_added: int
    snapshot: BalanceSnapshot


@dataclass(frozen=True)
class VerifyResult:
    success: bool
    snapshot: Optional[BalanceSnapshot] = None
    error: Optional[PaymentError] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.snapshot is not None:
            payload.update(self.snapshot.as_dict())
        if self.error is not None:
            payload["error"] = self.error.value
        return payload


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_int(value: Any) -> Optional[int]:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed


def grant_from_metadata(metadata: Mapping[str, Any]) -> Optional[Tuple[str, Optional[str], GrantRequest]]:
    """Extract ``(user_id, plan_id, grant)`` from checkout metadata, or None if unusable."""
    user_id = str(metadata.get("userId") or "").strip()
    plan_id = str(metadata.get("planId") or "").strip() or None
    credits = _parse_int(metadata.get("credits"))
    validity_days = _parse_int(metadata.get("validityDays", PERMANENT_VALIDITY_DAYS))
    if not user_id or credits is None or credits <= 0:
        return None
    if validity_days is None or validity_days < 0:
        return None
    return user_id, plan_id, GrantRequest(amount=credits, validity_days=validity_days)


async def get_payment_attempt(session_id: str, db: AsyncSession) -> Optional[PaymentAttempt]:
    result = await db.execute(
        select(PaymentAttempt)
        .where(PaymentAttempt.external_session_id == session_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _complete_pending(
    session_id: str,
    transaction_id: Optional[str],
    db: AsyncSession,
    now: datetime,
) -> Optional[PaymentAttempt]:
    """Flip pending -> completed; returns the attempt only if this call made the transition."""
    result = await db.execute(
        update(PaymentAttempt)
        .where(
            PaymentAttempt.external_session_id == session_id,
            PaymentAttempt.status == STATUS_PENDING,
        )
        .values(status=STATUS_COMPLETED, external_transaction_id=transaction_id, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        return None
    await db.commit()
    return await get_payment_attempt(session_id, db)


async def _insert_completed(
    *,
    session_id: str,
    user_id: str,
    plan_id: Optional[str],
    grant: GrantRequest,
    amount: int,
    transaction_id: Optional[str],
    db: AsyncSession,
    now: datetime,
) -> Optional[PaymentAttempt]:
    """Record a completed attempt when no pending one exists; None if another caller got there first."""
    attempt = PaymentAttempt(
        id=str(uuid.uuid4()),
        user_id=user_id,
        external_session_id=session_id,
        provider=PROVIDER_STRIPE,
        plan_id=plan_id,
        amount=int(amount or 0),
        status=STATUS_COMPLETED,
        grant_amount=grant.amount,
        grant_validity_days=grant.validity_days,
        external_transaction_id=transaction_id,
        completed_at=now,
    )
    db.add(attempt)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return None
    return attempt


async def _grant_for_attempt(attempt: PaymentAttempt, db: AsyncSession, now: datetime, source: str) -> None:
    # A rollback expires the attempt, so everything logged afterwards is read up front.
    session_id = attempt.external_session_id
    user_id = attempt.user_id
    grant = GrantRequest(amount=int(attempt.grant_amount), validity_days=int(attempt.grant_validity_days or 0))
    try:
        await apply_grant(user_id, grant, db, now=now)
    except (SQLAlchemyError, LedgerConflictError) as exc:
        logger.error(
            "Payment %s completed via %s but grant of %s credits (validity %s days) to user %s failed; "
            "requires reconciliation (transition pending->completed already committed): %s",
            session_id,
            source,
            grant.amount,
            grant.validity_days,
            user_id,
            exc,
        )
        await db.rollback()
        raise
    logger.info(
        "Payment completed for user %s via %s: session=%s +%s credits",
        user_id,
        source,
        session_id,
        grant.amount,
    )


async def _reconcile_paid_session(
    *,
    session_id: str,
    metadata: Mapping[str, Any],
    transaction_id: Optional[str],
    amount_total: Optional[int],
    db: AsyncSession,
    now: datetime,
    source: str,
) -> NotificationOutcome:
    attempt = await _complete_pending(session_id, transaction_id, db, now)

    if attempt is None:
        existing = await get_payment_attempt(session_id, db)
        if existing is not None:
            if existing.status == STATUS_COMPLETED:
                logger.info("Duplicate confirmation for session %s via %s; no grant", session_id, source)
                return NotificationOutcome.DUPLICATE
            logger.warning(
                "Paid confirmation for session %s in status %s via %s; not resurrecting",
                session_id,
                existing.status,
                source,
            )
            return NotificationOutcome.IGNORED

        parsed = grant_from_metadata(metadata)
        if parsed is None:
            logger.error("Invalid metadata for session %s via %s: %s", session_id, source, dict(metadata))
            return NotificationOutcome.INVALID_METADATA
        user_id, plan_id, grant = parsed
        plan = get_plan(plan_id)
        attempt = await _insert_completed(
            session_id=session_id,
            user_id=user_id,
            plan_id=plan_id,
            grant=grant,
            amount=amount_total if amount_total is not None else (plan.price if plan else 0),
            transaction_id=transaction_id,
            db=db,
            now=now,
        )
        if attempt is None:
            logger.info("Session %s recorded concurrently; %s is a no-op", session_id, source)
            return NotificationOutcome.DUPLICATE

    await _grant_for_attempt(attempt, db, now, source)
    return NotificationOutcome.GRANTED


async def on_payment_notification(
    session_id: str,
    metadata: Mapping[str, Any],
    transaction_id: Optional[str],
    db: AsyncSession,
    now: Optional[datetime] = None,
    amount_total: Optional[int] = None,
) -> NotificationOutcome:
    """Apply a verified "paid" notification at most once per session."""
    return await _reconcile_paid_session(
        session_id=session_id,
        metadata=metadata,
        transaction_id=transaction_id,
        amount_total=amount_total,
        db=db,
        now=as_utc(now or _utcnow()),
        source="webhook",
    )


async def mark_payment_failed(
    session_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> NotificationOutcome:
    result = await db.execute(
        update(PaymentAttempt)
        .where(
            PaymentAttempt.external_session_id == session_id,
            PaymentAttempt.status == STATUS_PENDING,
        )
        .values(status=STATUS_FAILED, completed_at=as_utc(now or _utcnow()))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        return NotificationOutcome.IGNORED
    await db.commit()
    logger.info("Payment session %s marked failed", session_id)
    return NotificationOutcome.FAILED_MARKED


async def handle_webhook_event(
    event: WebhookEvent,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> NotificationOutcome:
    session = event.session
    if event.type in GRANT_EVENT_TYPES and session is not None:
        if not session.is_paid:
            logger.info("Session %s reported %s but not paid yet (%s)", session.id, event.type, session.payment_status)
            return NotificationOutcome.IGNORED
        return await on_payment_notification(
            session.id,
            session.metadata,
            session.payment_intent,
            db,
            now=now,
            amount_total=session.amount_total,
        )
    if event.type in FAILURE_EVENT_TYPES and session is not None:
        return await mark_payment_failed(session.id, db, now=now)

    logger.info("Unhandled event type: %s", event.type)
    return NotificationOutcome.IGNORED


async def verify_session(
    session_id: str,
    user_id: str,
    db: AsyncSession,
    gateway: StripeGateway,
    now: Optional[datetime] = None,
) -> VerifyResult:
    """Client fallback when the webhook is late: confirm with Stripe and reconcile through the same gate."""
    current = as_utc(now or _utcnow())
    attempt = await get_payment_attempt(session_id, db)

    if attempt is not None and attempt.user_id != user_id:
        return VerifyResult(success=False, error=PaymentError.FORBIDDEN)
    if attempt is not None and attempt.status == STATUS_COMPLETED:
        return VerifyResult(success=True, snapshot=await get_effective_balance(user_id, db, current))

    try:
        session = await gateway.retrieve_checkout_session(session_id)
    except PaymentGatewayError:
        return VerifyResult(success=False, error=PaymentError.VERIFICATION_UNAVAILABLE)

    if not session.is_paid:
        return VerifyResult(success=False, error=PaymentError.PAYMENT_INCOMPLETE)
    if session.metadata.get("userId") != user_id:
        return VerifyResult(success=False, error=PaymentError.FORBIDDEN)
    if attempt is not None and attempt.status == STATUS_FAILED:
        return VerifyResult(success=False, error=PaymentError.PAYMENT_FAILED)

    outcome = await _reconcile_paid_session(
        session_id=session_id,
        metadata=session.metadata,
        transaction_id=session.payment_intent,
        amount_total=session.amount_total,
        db=db,
        now=current,
        source="verify_session",
    )
    if outcome == NotificationOutcome.INVALID_METADATA:
        return VerifyResult(success=False, error=PaymentError.INVALID_METADATA)
    if outcome == NotificationOutcome.IGNORED:
        return VerifyResult(success=False, error=PaymentError.PAYMENT_FAILED)

    return VerifyResult(success=True, snapshot=await get_effective_balance(user_id, db, current))


async def create_checkout(
    user_id: str,
    plan_id: Optional[str],
    db: AsyncSession,
    gateway: StripeGateway,
    *,
    origin: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> Union[CheckoutResult, PaymentError]:
    plan = get_plan(plan_id)
    if plan is None:
        return PaymentError.INVALID_PLAN

    session = await gateway.create_checkout_session(
        user_id=user_id,
        plan_id=plan.id,
        plan_name=plan.name,
        price=plan.price,
        credits=plan.amount,
        validity_days=plan.validity_days,
        origin=origin or settings.SITE_URL,
        customer_email=customer_email,
    )

    db.add(
        PaymentAttempt(
            id=str(uuid.uuid4()),
            user_id=user_id,
            external_session_id=session.id,
            provider=PROVIDER_STRIPE,
            plan_id=plan.id,
            amount=plan.price,
            status=STATUS_PENDING,
            grant_amount=plan.amount,
            grant_validity_days=plan.validity_days,
        )
    )
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        # The webhook/verify paths create the record from session metadata.
        await db.rollback()
        logger.warning("Failed to record pending payment for session %s (user %s): %s", session.id, user_id, exc)

    return CheckoutResult(session_id=session.id, url=session.url)


async def mock_payment(
    user_id: str,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> MockPaymentResult:
    """Direct payment without a processor; completes through the same gate as Stripe."""
    current = as_utc(now or _utcnow())
    grant = GrantRequest(amount=int(settings.MOCK_PAYMENT_CREDITS), validity_days=PERMANENT_VALIDITY_DAYS)
    session_id = f"mock_{uuid.uuid4().hex}"
    attempt = PaymentAttempt(
        id=str(uuid.uuid4()),
        user_id=user_id,
        external_session_id=session_id,
        provider=PROVIDER_MOCK,
        amount=int(settings.MOCK_PAYMENT_AMOUNT),
        status=STATUS_PENDING,
        grant_amount=grant.amount,
        grant_validity_days=grant.validity_days,
    )
    db.add(attempt)
    await db.commit()
    payment_id = attempt.id

    completed = await _complete_pending(session_id, f"mock_{secrets.token_hex(8)}", db, current)
    if completed is not None:
        await _grant_for_attempt(completed, db, current, PROVIDER_MOCK)

    return MockPaymentResult(
        payment_id=payment_id,
        credits_added=grant.amount,
        snapshot=await get_effective_balance(user_id, db, current),
    )


async def list_payments(user_id: str, db: AsyncSession, limit: int = 50) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(PaymentAttempt)
        .where(PaymentAttempt.user_id == user_id)
        .order_by(PaymentAttempt.created_at.desc())
        .limit(max(1, min(int(limit), 200)))
    )
    return [
        {
            "id": row.id,
            "provider": row.provider,
            "plan_id": row.plan_id,
            "amount": row.amount,
            "status": row.status,
            "credits_added": row.grant_amount,
            "credits_validity_days": row.grant_validity_days,
            "session_id": row.external_session_id,
            "transaction_id": row.external_transaction_id,
            "created_at": row.created_at.isoformat() if row.created_at else None,
            "completed_at": row.completed_at.isoformat() if row.completed_at else None,
        }
        for row in result.scalars().all()
    ]
