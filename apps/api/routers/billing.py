"""Billing and credits router: balance, mock payment, Stripe checkout/verify/webhook."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.ledger import get_effective_balance
from services.payments import (
    PaymentError,
    create_checkout,
    handle_webhook_event,
    list_payments,
    mock_payment,
    verify_session,
)
from services.stripe_gateway import (
    PaymentGatewayError,
    StripeGateway,
    WebhookSignatureError,
    get_payment_gateway,
)

router = APIRouter()
logger = logging.getLogger(__name__)

_VERIFY_STATUS = {
    PaymentError.FORBIDDEN: 403,
    PaymentError.INVALID_METADATA: 400,
    PaymentError.VERIFICATION_UNAVAILABLE: 502,
}


class CheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=64)


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": code, "message": message})


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    balance = await get_effective_balance(auth.user_id, db)
    return balance.as_dict()


@router.get("/payments")
async def payment_history(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"payments": await list_payments(auth.user_id, db)}


@router.post("/payment")
async def direct_payment(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if not settings.MOCK_PAYMENT_ENABLED:
        raise _error(503, "PAYMENT_DISABLED", "Direct payment is disabled.")

    result = await mock_payment(auth.user_id, db)
    return {
        "success": True,
        "payment_id": result.payment_id,
        "credits_added": result.credits_added,
        **result.snapshot.as_dict(),
    }


@router.post("/checkout")
async def checkout(
    body: CheckoutRequest,
    request: Request,
    _rate_limit: None = Depends(
        rate_limit("billing_checkout", limit=settings.RATE_LIMIT_CHECKOUT_PER_HOUR, window_seconds=3600)
    ),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    try:
        result = await create_checkout(
            auth.user_id,
            body.plan_id,
            db,
            gateway,
            origin=request.headers.get("origin") or settings.SITE_URL,
            customer_email=auth.email,
        )
    except ValueError as exc:
        raise _error(503, "CONFIG_ERROR", str(exc)) from exc
    except PaymentGatewayError as exc:
        raise _error(502, "CHECKOUT_FAILED", "Could not create a checkout session. Try again later.") from exc

    if isinstance(result, PaymentError):
        raise _error(400, result.value, "Unknown plan.")
    return {"url": result.url, "session_id": result.session_id}


@router.get("/verify-session")
async def verify_checkout_session(
    session_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    session_ref = (session_id or "").strip()
    if not session_ref:
        raise _error(400, "MISSING_SESSION_ID", "session_id is required.")

    try:
        result = await verify_session(session_ref, auth.user_id, db, gateway)
    except ValueError as exc:
        raise _error(503, "CONFIG_ERROR", str(exc)) from exc

    if result.error in _VERIFY_STATUS:
        raise _error(_VERIFY_STATUS[result.error], result.error.value, "Payment session could not be verified.")
    return result.as_dict()


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    if not stripe_signature:
        raise _error(400, "MISSING_SIGNATURE", "Missing Stripe-Signature header.")

    payload = await request.body()
    try:
        event = gateway.parse_webhook(payload, stripe_signature)
    except WebhookSignatureError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise _error(400, "INVALID_SIGNATURE", "Signature verification failed.") from exc
    except ValueError as exc:
        raise _error(503, "CONFIG_ERROR", str(exc)) from exc

    outcome = await handle_webhook_event(event, db)
    return {"received": True, "outcome": outcome.value}
