"""
Tests for entitlement resolution.

Paid premium takes priority over earned premium; an over-quota paid org is
inactive rather than falling back to its earned grant.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from referral_engine.exceptions import OrganizationNotFoundError
from referral_engine.models.api import PremiumSource, SubscriptionTier
from referral_engine.models.domain import OrganizationState
from referral_engine.services.entitlement import (
    EntitlementService,
    earned_premium_status,
    is_earned_active,
    is_org_premium,
    is_paid_active,
    resolve_entitlement,
)


def make_state(
    now: datetime,
    tier: SubscriptionTier = SubscriptionTier.FREE,
    paid_days: int | None = None,
    earned_days: int | None = None,
    purchased_slots: int = 1,
) -> OrganizationState:
    """OrganizationState with windows expressed in days relative to now."""
    return OrganizationState(
        subscription_tier=tier,
        subscription_expires_at=now + timedelta(days=paid_days) if paid_days is not None else None,
        purchased_slots=purchased_slots,
        earned_premium_expires_at=(
            now + timedelta(days=earned_days) if earned_days is not None else None
        ),
    )


class TestResolveEntitlement:
    """Tests for resolve_entitlement priority rules."""

    def test_paid_within_quota(self, now: datetime) -> None:
        state = make_state(now, SubscriptionTier.PREMIUM, paid_days=10, purchased_slots=3)
        result = resolve_entitlement(state, active_resource_count=2, now=now)
        assert result.is_active is True
        assert result.source == PremiumSource.PAID

    def test_paid_over_quota_is_inactive(self, now: datetime) -> None:
        """Over quota does not fall back to an active earned grant."""
        state = make_state(
            now, SubscriptionTier.PREMIUM, paid_days=10, earned_days=5, purchased_slots=1
        )
        result = resolve_entitlement(state, active_resource_count=2, now=now)
        assert result.is_active is False
        assert result.source == PremiumSource.PAID

    def test_earned_when_paid_expired(self, now: datetime) -> None:
        state = make_state(now, SubscriptionTier.PREMIUM, paid_days=-1, earned_days=3)
        result = resolve_entitlement(state, active_resource_count=1, now=now)
        assert result.is_active is True
        assert result.source == PremiumSource.EARNED

    def test_earned_requires_single_active_slot(self, now: datetime) -> None:
        state = make_state(now, earned_days=3)
        result = resolve_entitlement(state, active_resource_count=2, now=now)
        assert result.is_active is False
        assert result.source == PremiumSource.NONE

    def test_free_tier_with_future_expiry_is_not_paid(self, now: datetime) -> None:
        state = make_state(now, SubscriptionTier.FREE, paid_days=30)
        assert is_paid_active(state, now) is False
        assert resolve_entitlement(state, 1, now).source == PremiumSource.NONE

    def test_expiry_boundary_is_exclusive(self, now: datetime) -> None:
        """A window ending exactly now is already closed."""
        state = make_state(now, SubscriptionTier.PREMIUM, paid_days=0, earned_days=0)
        assert is_paid_active(state, now) is False
        assert is_earned_active(state, 1, now) is False

    def test_no_grants(self, now: datetime) -> None:
        state = make_state(now)
        assert resolve_entitlement(state, 0, now).source == PremiumSource.NONE
        assert is_org_premium(state, 0, now) is False


class TestEarnedPremiumStatus:
    """Tests for earned_premium_status."""

    def test_days_remaining_rounds_up(self, now: datetime) -> None:
        status = earned_premium_status(now + timedelta(days=1, hours=12), now)
        assert status.is_active is True
        assert status.days_remaining == 2

    def test_exact_days(self, now: datetime) -> None:
        assert earned_premium_status(now + timedelta(days=3), now).days_remaining == 3

    def test_expired(self, now: datetime) -> None:
        expired = now - timedelta(hours=1)
        status = earned_premium_status(expired, now)
        assert status.is_active is False
        assert status.days_remaining == 0
        assert status.expires_at == expired

    def test_never_granted(self, now: datetime) -> None:
        status = earned_premium_status(None, now)
        assert status.is_active is False
        assert status.expires_at is None


class TestEntitlementService:
    """Tests for database-backed entitlement lookups."""

    async def test_get_subscription_status(
        self,
        db_session: AsyncMock,
        result_factory: Callable[..., MagicMock],
        make_organization: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        org = make_organization(earned_premium_expires_at=now + timedelta(days=2))
        db_session.get = AsyncMock(return_value=org)
        db_session.execute = AsyncMock(return_value=result_factory(scalar_one=1))

        status = await EntitlementService(db_session).get_subscription_status(org.id, now)

        assert status.is_active is True
        assert status.premium_source == PremiumSource.EARNED
        assert status.subscription_tier == SubscriptionTier.FREE
        assert status.used_slots == 1
        assert status.purchased_slots == 1

    async def test_unknown_organization_raises(self, db_session: AsyncMock) -> None:
        with pytest.raises(OrganizationNotFoundError):
            await EntitlementService(db_session).get_earned_premium_status(uuid4())

    async def test_has_premium_access_false_for_unknown_org(self, db_session: AsyncMock) -> None:
        assert await EntitlementService(db_session).has_premium_access(uuid4()) is False

    async def test_count_active_slots(
        self, db_session: AsyncMock, result_factory: Callable[..., MagicMock]
    ) -> None:
        db_session.execute = AsyncMock(return_value=result_factory(scalar_one=4))
        assert await EntitlementService(db_session).count_active_slots(uuid4()) == 4
