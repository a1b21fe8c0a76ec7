"""
Tests for the crediting dispatcher.

Covers the earned-premium anchor rule, billing credits for paid orgs,
swallowed billing failures and the paid-without-billing-identity gap.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from referral_engine.exceptions import OrganizationNotFoundError, PaymentProviderError
from referral_engine.models.api import AwardType, SubscriptionTier
from referral_engine.models.domain import RewardPolicy
from referral_engine.services.crediting import CreditingDispatcher, extend_earned_premium
from referral_engine.services.payment_provider import BalanceCredit


@pytest.fixture
def billing_provider() -> AsyncMock:
    provider = AsyncMock()
    provider.issue_credit = AsyncMock(return_value="cbtxn_test_1")
    return provider


@pytest.fixture
def dispatcher(
    db_session: AsyncMock, billing_provider: AsyncMock, policy: RewardPolicy
) -> CreditingDispatcher:
    return CreditingDispatcher(db_session, billing_provider, policy, currency="usd")


class TestExtendEarnedPremium:
    """Tests for the earned-premium anchor rule."""

    def test_no_grant_starts_now(self, now: datetime) -> None:
        assert extend_earned_premium(None, 3, now) == now + timedelta(days=3)

    def test_active_grant_stacks(self, now: datetime) -> None:
        current = now + timedelta(days=5)
        assert extend_earned_premium(current, 2, now) == now + timedelta(days=7)

    def test_lapsed_grant_restarts_from_now(self, now: datetime) -> None:
        current = now - timedelta(days=10)
        assert extend_earned_premium(current, 2, now) == now + timedelta(days=2)


class TestDispatchEarnedDays:
    """Free and grace-period organizations get earned premium extended."""

    async def test_free_org_extended(
        self,
        dispatcher: CreditingDispatcher,
        db_session: AsyncMock,
        billing_provider: AsyncMock,
        make_organization: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        org = make_organization(earned_premium_expires_at=now + timedelta(days=1))

        outcome = await dispatcher.dispatch(org, 3, uuid4(), 1, now)

        assert outcome.award_type == AwardType.EARNED_DAYS
        assert outcome.days == 3
        assert outcome.earned_premium_expires_at == now + timedelta(days=4)
        assert org.earned_premium_expires_at == now + timedelta(days=4)
        db_session.flush.assert_awaited_once()
        billing_provider.issue_credit.assert_not_awaited()

    async def test_cancelled_org_in_grace_period_extended(
        self,
        dispatcher: CreditingDispatcher,
        billing_provider: AsyncMock,
        make_organization: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        """Cancellation clears the payer; awards fall back to earned days."""
        org = make_organization(
            tier=SubscriptionTier.PREMIUM,
            subscription_expires_at=now + timedelta(days=10),
            payer_id=None,
        )

        outcome = await dispatcher.dispatch(org, 1, uuid4(), 1, now)

        assert outcome.award_type == AwardType.EARNED_DAYS
        billing_provider.issue_credit.assert_not_awaited()

    async def test_zero_days_is_noop(
        self,
        dispatcher: CreditingDispatcher,
        db_session: AsyncMock,
        make_organization: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        org = make_organization()
        outcome = await dispatcher.dispatch(org, 0, uuid4(), 2, now)

        assert outcome.applied is False
        assert org.earned_premium_expires_at is None
        db_session.flush.assert_not_awaited()

    async def test_negative_days_rejected(
        self,
        dispatcher: CreditingDispatcher,
        make_organization: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        with pytest.raises(ValueError):
            await dispatcher.dispatch(make_organization(), -1, uuid4(), 1, now)


class TestDispatchBillingCredit:
    """Paid organizations with a billable payer get a balance credit."""

    @pytest.fixture
    def paid_org(self, make_organization: Callable[..., MagicMock], now: datetime) -> MagicMock:
        return make_organization(
            tier=SubscriptionTier.PREMIUM,
            subscription_expires_at=now + timedelta(days=20),
            payer_id=uuid4(),
        )

    async def test_credit_issued(
        self,
        dispatcher: CreditingDispatcher,
        db_session: AsyncMock,
        billing_provider: AsyncMock,
        make_payer: Callable[..., MagicMock],
        paid_org: MagicMock,
        now: datetime,
    ) -> None:
        db_session.get = AsyncMock(return_value=make_payer("cus_acme"))
        submission_id = uuid4()

        outcome = await dispatcher.dispatch(paid_org, 3, submission_id, 2, now)

        assert outcome.award_type == AwardType.BILLING_CREDIT
        assert outcome.credit_amount_cents == 300
        assert outcome.credit_issued is True
        assert paid_org.earned_premium_expires_at is None

        credit: BalanceCredit = billing_provider.issue_credit.await_args.args[0]
        assert credit.customer_id == "cus_acme"
        assert credit.amount_cents == 300
        assert credit.currency == "usd"
        assert credit.idempotency_key == f"referral-{submission_id}-scan2"
        assert str(submission_id) in credit.memo

    async def test_billing_failure_swallowed(
        self,
        dispatcher: CreditingDispatcher,
        db_session: AsyncMock,
        billing_provider: AsyncMock,
        make_payer: Callable[..., MagicMock],
        paid_org: MagicMock,
        now: datetime,
    ) -> None:
        db_session.get = AsyncMock(return_value=make_payer())
        billing_provider.issue_credit.side_effect = PaymentProviderError("card_declined")

        outcome = await dispatcher.dispatch(paid_org, 2, uuid4(), 1, now)

        assert outcome.award_type == AwardType.BILLING_CREDIT
        assert outcome.credit_issued is False
        assert paid_org.earned_premium_expires_at is None

    async def test_payer_without_billing_identity_gets_nothing(
        self,
        dispatcher: CreditingDispatcher,
        db_session: AsyncMock,
        billing_provider: AsyncMock,
        make_payer: Callable[..., MagicMock],
        paid_org: MagicMock,
        now: datetime,
    ) -> None:
        db_session.get = AsyncMock(return_value=make_payer(billing_customer_id=None))

        outcome = await dispatcher.dispatch(paid_org, 2, uuid4(), 1, now)

        assert outcome.applied is False
        assert outcome.days == 2
        assert paid_org.earned_premium_expires_at is None
        billing_provider.issue_credit.assert_not_awaited()


class TestLockOrganization:
    """Tests for the organization row lock."""

    async def test_returns_locked_row(
        self,
        dispatcher: CreditingDispatcher,
        db_session: AsyncMock,
        result_factory: Callable[..., MagicMock],
        make_organization: Callable[..., MagicMock],
    ) -> None:
        org = make_organization()
        db_session.execute = AsyncMock(return_value=result_factory(scalar=org))

        assert await dispatcher.lock_organization(org.id) is org

        stmt = db_session.execute.await_args.args[0]
        assert stmt._for_update_arg is not None

    async def test_missing_org(self, dispatcher: CreditingDispatcher) -> None:
        with pytest.raises(OrganizationNotFoundError):
            await dispatcher.lock_organization(uuid4())
