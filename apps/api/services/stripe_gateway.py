"""
Thin adapter over the Stripe SDK for checkout sessions and webhook verification.

Everything the reconciliation code needs from Stripe is normalised into
``CheckoutSessionInfo`` so that the payment service never touches SDK objects.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import stripe

from config import require_stripe_secret_key, require_stripe_webhook_secret, settings


logger = logging.getLogger(__name__)


class PaymentGatewayError(RuntimeError):
    """Stripe was unreachable or rejected the request."""


class WebhookSignatureError(ValueError):
    """The webhook payload failed signature verification."""


@dataclass(frozen=True)
class CheckoutSessionInfo:
    id: str
    payment_status: str = "unpaid"
    url: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    payment_intent: Optional[str] = None
    amount_total: Optional[int] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass(frozen=True)
class WebhookEvent:
    type: str
    session: Optional[CheckoutSessionInfo]


def _metadata_dict(metadata: Any) -> Dict[str, str]:
    if not metadata:
        return {}
    return {str(key): str(value) for key, value in dict(metadata).items()}


def session_from_payload(data: Mapping[str, Any]) -> CheckoutSessionInfo:
    payment_intent = data.get("payment_intent")
    if isinstance(payment_intent, Mapping):
        payment_intent = payment_intent.get("id")
    return CheckoutSessionInfo(
        id=str(data.get("id") or ""),
        payment_status=str(data.get("payment_status") or "unpaid"),
        url=data.get("url"),
        metadata=_metadata_dict(data.get("metadata")),
        payment_intent=str(payment_intent) if payment_intent else None,
        amount_total=data.get("amount_total"),
    )


def _session_from_stripe(session: Any) -> CheckoutSessionInfo:
    payment_intent = getattr(session, "payment_intent", None)
    if payment_intent is not None and not isinstance(payment_intent, str):
        payment_intent = getattr(payment_intent, "id", None)
    return CheckoutSessionInfo(
        id=str(session.id),
        payment_status=str(getattr(session, "payment_status", None) or "unpaid"),
        url=getattr(session, "url", None),
        metadata=_metadata_dict(getattr(session, "metadata", None)),
        payment_intent=payment_intent,
        amount_total=getattr(session, "amount_total", None),
    )


class StripeGateway:
    """Checkout Session creation/retrieval and webhook parsing via stripe-python."""

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        plan_id: str,
        plan_name: str,
        price: int,
        credits: int,
        validity_days: int,
        origin: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSessionInfo:
        api_key = require_stripe_secret_key()
        base_url = (origin or settings.SITE_URL).rstrip("/")
        payment_method_types: List[str] = list(settings.STRIPE_PAYMENT_METHOD_TYPES)
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": payment_method_types,
            "line_items": [
                {
                    "price_data": {
                        "currency": settings.STRIPE_CURRENCY,
                        "product_data": {
                            "name": f"Red Envelope Cover AI - {plan_name}",
                            "description": f"{credits} generations",
                        },
                        "unit_amount": int(price),
                    },
                    "quantity": 1,
                }
            ],
            "metadata": {
                "userId": user_id,
                "planId": plan_id,
                "credits": str(int(credits)),
                "validityDays": str(int(validity_days)),
            },
            "success_url": f"{base_url}/pricing/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base_url}/pricing?canceled=true",
        }
        if "wechat_pay" in payment_method_types:
            params["payment_method_options"] = {"wechat_pay": {"client": "web"}}
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, api_key=api_key, **params)
        except stripe.StripeError as exc:
            logger.error("Stripe checkout creation failed for user %s plan %s: %s", user_id, plan_id, exc)
            raise PaymentGatewayError(str(exc)) from exc
        return _session_from_stripe(session)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        api_key = require_stripe_secret_key()
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id, api_key=api_key)
        except stripe.StripeError as exc:
            logger.warning("Stripe session lookup failed for %s: %s", session_id, exc)
            raise PaymentGatewayError(str(exc)) from exc
        return _session_from_stripe(session)

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """Verify the Stripe-Signature header and decode the event.

        Raises ``ValueError`` only for a missing signing secret; anything wrong
        with the request itself is a ``WebhookSignatureError``.
        """
        secret = require_stripe_webhook_secret()
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(str(exc)) from exc
        except ValueError as exc:
            logger.warning("Malformed Stripe webhook payload: %s", exc)
            raise WebhookSignatureError("Malformed webhook payload") from exc

        # construct_event already proved the body is signed UTF-8 JSON; read the plain dict.
        event = json.loads(payload)
        if not isinstance(event, dict):
            raise WebhookSignatureError("Webhook payload is not an event object")

        event_type = str(event.get("type") or "")
        data = (event.get("data") or {}).get("object") or {}
        session = session_from_payload(data) if event_type.startswith("checkout.session.") else None
        return WebhookEvent(type=event_type, session=session)


_gateway = StripeGateway()


def get_payment_gateway() -> StripeGateway:
    """FastAPI dependency; tests override it with a fake gateway."""
    return _gateway
