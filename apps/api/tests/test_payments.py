import asyncio
import logging
from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import T0
from models.payment_attempt import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, PaymentAttempt
from services import payments as payments_service
from services.entitlement import Entitlement, can_generate, consume
from services.ledger import decrement_one, get_effective_balance, read_ledger
from services.payments import (
    CheckoutResult,
    NotificationOutcome,
    PaymentError,
    create_checkout,
    get_payment_attempt,
    handle_webhook_event,
    list_payments,
    mark_payment_failed,
    mock_payment,
    on_payment_notification,
    verify_session,
)
from services.redemption import RedemptionResult, issue_redemption_codes, redeem
from services.stripe_gateway import WebhookEvent


async def _spend_signup_credit(session_maker, user_id):
    async with session_maker() as session:
        await read_ledger(user_id, session)
        assert await decrement_one(user_id, session, now=T0)


async def _pending_checkout(session_maker, gateway, user_id, plan_id="trial"):
    async with session_maker() as session:
        result = await create_checkout(user_id, plan_id, session, gateway)
    assert isinstance(result, CheckoutResult)
    created = gateway.created[-1]
    paid = gateway.add_session(
        result.session_id,
        user_id=user_id,
        credits=created["credits"],
        validity_days=created["validity_days"],
        plan_id=plan_id,
        amount_total=created["price"],
    )
    return paid


async def _balance(session_maker, user_id, now=T0):
    async with session_maker() as session:
        return await get_effective_balance(user_id, session, now=now)


async def _attempt(session_maker, session_id):
    async with session_maker() as session:
        return await get_payment_attempt(session_id, session)


@pytest.mark.asyncio
async def test_checkout_records_pending_attempt(session_maker, gateway):
    async with session_maker() as session:
        result = await create_checkout("user-a", "premium", session, gateway, origin="https://app.test")

    assert isinstance(result, CheckoutResult)
    assert result.url.endswith(result.session_id)
    assert gateway.created[0]["credits"] == 40
    assert gateway.created[0]["validity_days"] == 90
    assert gateway.created[0]["origin"] == "https://app.test"

    attempt = await _attempt(session_maker, result.session_id)
    assert attempt.status == STATUS_PENDING
    assert attempt.user_id == "user-a"
    assert attempt.grant_amount == 40
    assert attempt.amount == 1990


@pytest.mark.asyncio
async def test_checkout_rejects_unknown_plan(session_maker, gateway):
    async with session_maker() as session:
        assert await create_checkout("user-a", "platinum", session, gateway) == PaymentError.INVALID_PLAN
    assert gateway.created == []


@pytest.mark.asyncio
async def test_checkout_continues_when_pending_record_fails(session_maker, gateway):
    async with session_maker() as session:
        session.add(
            PaymentAttempt(
                id="collision",
                user_id="someone-else",
                external_session_id="cs_test_1",
                provider="stripe",
                amount=0,
                status=STATUS_PENDING,
                grant_amount=1,
                grant_validity_days=0,
            )
        )
        await session.commit()

    async with session_maker() as session:
        result = await create_checkout("user-a", "trial", session, gateway)

    assert isinstance(result, CheckoutResult)
    assert result.session_id == "cs_test_1"


@pytest.mark.asyncio
async def test_webhook_then_verify_grants_once(session_maker, gateway):
    await _spend_signup_credit(session_maker, "user-a")
    paid = await _pending_checkout(session_maker, gateway, "user-a")

    async with session_maker() as session:
        outcome = await on_payment_notification(paid.id, paid.metadata, paid.payment_intent, session, now=T0)
    assert outcome == NotificationOutcome.GRANTED

    async with session_maker() as session:
        result = await verify_session(paid.id, "user-a", session, gateway, now=T0)
    assert result.success is True
    assert result.snapshot.balance == 10
    assert gateway.retrieve_calls == 0

    attempt = await _attempt(session_maker, paid.id)
    assert attempt.status == STATUS_COMPLETED
    assert attempt.external_transaction_id == paid.payment_intent
    assert (await _balance(session_maker, "user-a")).balance == 10


@pytest.mark.asyncio
async def test_verify_then_webhook_grants_once(session_maker, gateway):
    await _spend_signup_credit(session_maker, "user-a")
    paid = await _pending_checkout(session_maker, gateway, "user-a")

    async with session_maker() as session:
        result = await verify_session(paid.id, "user-a", session, gateway, now=T0)
    assert result.success is True
    assert result.snapshot.balance == 10
    assert result.snapshot.expires_at == T0 + timedelta(days=30)

    async with session_maker() as session:
        outcome = await on_payment_notification(paid.id, paid.metadata, paid.payment_intent, session, now=T0)
    assert outcome == NotificationOutcome.DUPLICATE
    assert (await _balance(session_maker, "user-a")).balance == 10


@pytest.mark.asyncio
async def test_interleaved_webhook_and_verify_grant_once(session_maker, gateway):
    await _spend_signup_credit(session_maker, "user-a")
    paid = await _pending_checkout(session_maker, gateway, "user-a")

    async def _notify():
        async with session_maker() as session:
            return await on_payment_notification(paid.id, paid.metadata, paid.payment_intent, session, now=T0)

    async def _verify():
        async with session_maker() as session:
            return await verify_session(paid.id, "user-a", session, gateway, now=T0)

    outcome, verified = await asyncio.gather(_notify(), _verify())

    assert verified.success is True
    assert outcome in (NotificationOutcome.GRANTED, NotificationOutcome.DUPLICATE)
    assert (await _balance(session_maker, "user-a")).balance == 10


@pytest.mark.asyncio
async def test_duplicate_notifications_without_pending_record_grant_once(session_maker, gateway):
    await _spend_signup_credit(session_maker, "user-b")
    paid = gateway.add_session("cs_orphan", user_id="user-b", credits=40, validity_days=90, amount_total=1990)

    async def _notify():
        async with session_maker() as session:
            return await on_payment_notification(
                paid.id, paid.metadata, paid.payment_intent, session, now=T0, amount_total=paid.amount_total
            )

    outcomes = await asyncio.gather(_notify(), _notify(), _notify())
    assert outcomes.count(NotificationOutcome.GRANTED) == 1
    assert outcomes.count(NotificationOutcome.DUPLICATE) == 2

    attempt = await _attempt(session_maker, "cs_orphan")
    assert attempt.status == STATUS_COMPLETED
    assert attempt.provider == "stripe"
    assert attempt.amount == 1990
    assert attempt.plan_id == "premium"
    assert (await _balance(session_maker, "user-b")).balance == 40


@pytest.mark.asyncio
async def test_notification_with_unusable_metadata_changes_nothing(session_maker):
    async with session_maker() as session:
        outcome = await on_payment_notification("cs_bad", {"userId": "user-a", "credits": "lots"}, None, session)
    assert outcome == NotificationOutcome.INVALID_METADATA
    assert await _attempt(session_maker, "cs_bad") is None


@pytest.mark.asyncio
async def test_failed_attempt_is_not_resurrected(session_maker, gateway):
    await _spend_signup_credit(session_maker, "user-a")
    paid = await _pending_checkout(session_maker, gateway, "user-a")

    async with session_maker() as session:
        assert await mark_payment_failed(paid.id, session, now=T0) == NotificationOutcome.FAILED_MARKED
        assert await mark_payment_failed(paid.id, session, now=T0) == NotificationOutcome.IGNORED

    async with session_maker() as session:
        outcome = await on_payment_notification(paid.id, paid.metadata, paid.payment_intent, session, now=T0)
    assert outcome == NotificationOutcome.IGNORED

    async with session_maker() as session:
        result = await verify_session(paid.id, "user-a", session, gateway, now=T0)
    assert result.success is False
    assert result.error == PaymentError.PAYMENT_FAILED

    assert (await _attempt(session_maker, paid.id)).status == STATUS_FAILED
    assert (await _balance(session_maker, "user-a")).balance == 0


@pytest.mark.asyncio
async def test_grant_failure_after_transition_is_flagged(session_maker, gateway, monkeypatch, caplog):
    await _spend_signup_credit(session_maker, "user-a")
    paid = await _pending_checkout(session_maker, gateway, "user-a")
    original_apply_grant = payments_service.apply_grant

    async def _failing_grant(*args, **kwargs):
        raise SQLAlchemyError("ledger unavailable")

    monkeypatch.setattr(payments_service, "apply_grant", _failing_grant)
    with caplog.at_level(logging.ERROR, logger="services.payments"):
        async with session_maker() as session:
            with pytest.raises(SQLAlchemyError, match="ledger unavailable"):
                await on_payment_notification(paid.id, paid.metadata, paid.payment_intent, session, now=T0)

    flagged = [record for record in caplog.records if "requires reconciliation" in record.getMessage()]
    assert len(flagged) == 1
    assert flagged[0].levelno == logging.ERROR
    assert paid.id in flagged[0].getMessage()
    assert "user-a" in flagged[0].getMessage()
    assert (await _attempt(session_maker, paid.id)).status == STATUS_COMPLETED

    monkeypatch.setattr(payments_service, "apply_grant", original_apply_grant)
    async with session_maker() as session:
        outcome = await on_payment_notification(paid.id, paid.metadata, paid.payment_intent, session, now=T0)
    assert outcome == NotificationOutcome.DUPLICATE
    assert (await _balance(session_maker, "user-a")).balance == 0


@pytest.mark.asyncio
async def test_webhook_events_route_by_type(session_maker, gateway):
    await _spend_signup_credit(session_maker, "user-a")
    paid = await _pending_checkout(session_maker, gateway, "user-a")
    unpaid = gateway.add_session(
        paid.id, user_id="user-a", credits=10, validity_days=30, plan_id="trial", payment_status="unpaid"
    )

    async with session_maker() as session:
        pending_event = WebhookEvent(type="checkout.session.completed", session=unpaid)
        assert await handle_webhook_event(pending_event, session, now=T0) == NotificationOutcome.IGNORED
        assert (await handle_webhook_event(WebhookEvent(type="invoice.paid", session=None), session)
                == NotificationOutcome.IGNORED)

        succeeded = WebhookEvent(type="checkout.session.async_payment_succeeded", session=paid)
        assert await handle_webhook_event(succeeded, session, now=T0) == NotificationOutcome.GRANTED

        expired = WebhookEvent(type="checkout.session.expired", session=paid)
        assert await handle_webhook_event(expired, session, now=T0) == NotificationOutcome.IGNORED

    assert (await _attempt(session_maker, paid.id)).status == STATUS_COMPLETED
    assert (await _balance(session_maker, "user-a")).balance == 10


@pytest.mark.asyncio
async def test_expired_checkout_marks_attempt_failed(session_maker, gateway):
    paid = await _pending_checkout(session_maker, gateway, "user-a")
    async with session_maker() as session:
        event = WebhookEvent(type="checkout.session.expired", session=paid)
        assert await handle_webhook_event(event, session, now=T0) == NotificationOutcome.FAILED_MARKED
    assert (await _attempt(session_maker, paid.id)).status == STATUS_FAILED


@pytest.mark.asyncio
async def test_verify_reports_processor_and_ownership_failures(session_maker, gateway):
    paid = await _pending_checkout(session_maker, gateway, "user-a")

    async with session_maker() as session:
        result = await verify_session(paid.id, "user-b", session, gateway, now=T0)
        assert result.error == PaymentError.FORBIDDEN

        gateway.unavailable = True
        result = await verify_session(paid.id, "user-a", session, gateway, now=T0)
        assert result.error == PaymentError.VERIFICATION_UNAVAILABLE
        gateway.unavailable = False

        gateway.add_session("cs_unpaid", user_id="user-a", credits=10, validity_days=30, payment_status="unpaid")
        result = await verify_session("cs_unpaid", "user-a", session, gateway, now=T0)
        assert result.error == PaymentError.PAYMENT_INCOMPLETE

        gateway.add_session("cs_other", user_id="user-b", credits=10, validity_days=30)
        result = await verify_session("cs_other", "user-a", session, gateway, now=T0)
        assert result.error == PaymentError.FORBIDDEN

    assert (await _attempt(session_maker, paid.id)).status == STATUS_PENDING
    assert await _attempt(session_maker, "cs_other") is None


@pytest.mark.asyncio
async def test_mock_payment_goes_through_completion_gate(session_maker):
    async with session_maker() as session:
        result = await mock_payment("user-m", session, now=T0)
        history = await list_payments("user-m", session)

    assert result.credits_added == 1
    assert result.snapshot.balance == 2
    assert result.snapshot.expires_at is None
    assert result.snapshot.tier == "premium"
    assert len(history) == 1
    assert history[0]["id"] == result.payment_id
    assert history[0]["provider"] == "mock"
    assert history[0]["status"] == STATUS_COMPLETED
    assert history[0]["transaction_id"].startswith("mock_")


@pytest.mark.asyncio
async def test_credit_lifecycle_across_channels(session_maker, gateway):
    day = lambda n: T0 + timedelta(days=n)  # noqa: E731

    async with session_maker() as session:
        start = await get_effective_balance("user-e2e", session, now=day(0))
        assert (start.balance, start.expires_at, start.tier) == (1, None, "free")

        assert await consume("user-e2e", session, now=day(0)) == Entitlement.AUTHORIZED
        assert (await get_effective_balance("user-e2e", session, now=day(0))).balance == 0
        assert await can_generate("user-e2e", session, now=day(0)) is False

        await issue_redemption_codes(session, amount=3, validity_days=7, codes=["LUCKY2026"])
        redeemed = await redeem("user-e2e", "lucky2026", session, now=day(0))
        assert isinstance(redeemed, RedemptionResult)
        after_redeem = await get_effective_balance("user-e2e", session, now=day(0))
        assert (after_redeem.balance, after_redeem.expires_at, after_redeem.tier) == (3, day(7), "premium")

    purchase = gateway.add_session("cs_e2e", user_id="user-e2e", credits=20, validity_days=90)
    event = WebhookEvent(type="checkout.session.completed", session=purchase)
    async with session_maker() as session:
        assert await handle_webhook_event(event, session, now=day(1)) == NotificationOutcome.GRANTED
        final = await get_effective_balance("user-e2e", session, now=day(1))

    assert final.balance == 23
    assert final.expires_at == day(1) + timedelta(days=90)


@pytest.mark.asyncio
async def test_mock_payment_grant_failure_is_flagged(session_maker, monkeypatch, caplog):
    async def _failing_grant(*args, **kwargs):
        raise SQLAlchemyError("ledger unavailable")

    monkeypatch.setattr(payments_service, "apply_grant", _failing_grant)
    with caplog.at_level(logging.ERROR, logger="services.payments"):
        async with session_maker() as session:
            with pytest.raises(SQLAlchemyError, match="ledger unavailable"):
                await mock_payment("user-m", session, now=T0)

    assert any("requires reconciliation" in record.getMessage() for record in caplog.records)
    async with session_maker() as session:
        history = await list_payments("user-m", session)
    assert [payment["status"] for payment in history] == [STATUS_COMPLETED]
