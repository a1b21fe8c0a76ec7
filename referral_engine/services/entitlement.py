"""
Entitlement Resolver - Which mechanism grants an organization premium access.

Single source of truth for premium checks. Paid premium always wins over
earned premium while the paid window is open, even when the organization is
over its purchased quota; in that case premium is inactive rather than
silently falling back to the earned grant.
"""

import math
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.db.models import AccountSlot, Organization
from referral_engine.exceptions import OrganizationNotFoundError
from referral_engine.models.api import PremiumSource, SlotStatus, SubscriptionTier
from referral_engine.models.domain import (
    EarnedPremiumStatus,
    EntitlementStatus,
    OrganizationState,
    SubscriptionStatus,
)

SECONDS_PER_DAY = 24 * 60 * 60


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def is_paid_active(org: OrganizationState, now: datetime) -> bool:
    """PREMIUM tier with an unexpired subscription window (quota not considered)."""
    return (
        org.subscription_tier == SubscriptionTier.PREMIUM
        and org.subscription_expires_at is not None
        and org.subscription_expires_at > now
    )


def is_earned_active(org: OrganizationState, active_resource_count: int, now: datetime) -> bool:
    """Unexpired earned grant on an organization with at most one active slot."""
    return (
        org.earned_premium_expires_at is not None
        and org.earned_premium_expires_at > now
        and active_resource_count <= 1
    )


def resolve_entitlement(
    org: OrganizationState,
    active_resource_count: int,
    now: datetime | None = None,
) -> EntitlementStatus:
    """Resolve {is_active, source} for an organization."""
    now = now or _utc_now()

    if is_paid_active(org, now):
        return EntitlementStatus(
            is_active=active_resource_count <= org.purchased_slots,
            source=PremiumSource.PAID,
        )

    if is_earned_active(org, active_resource_count, now):
        return EntitlementStatus(is_active=True, source=PremiumSource.EARNED)

    return EntitlementStatus(is_active=False, source=PremiumSource.NONE)


def is_org_premium(
    org: OrganizationState, active_resource_count: int, now: datetime | None = None
) -> bool:
    """Boolean shortcut for feature gating."""
    return resolve_entitlement(org, active_resource_count, now).is_active


def earned_premium_status(
    earned_premium_expires_at: datetime | None, now: datetime | None = None
) -> EarnedPremiumStatus:
    """Earned grant status with whole days remaining (rounded up)."""
    now = now or _utc_now()
    if earned_premium_expires_at is None or earned_premium_expires_at <= now:
        return EarnedPremiumStatus(
            is_active=False, expires_at=earned_premium_expires_at, days_remaining=0
        )

    remaining = (earned_premium_expires_at - now).total_seconds() / SECONDS_PER_DAY
    return EarnedPremiumStatus(
        is_active=True,
        expires_at=earned_premium_expires_at,
        days_remaining=math.ceil(remaining),
    )


def organization_state(org: Organization) -> OrganizationState:
    """Convert ORM organization to the resolver's input."""
    return OrganizationState(
        subscription_tier=SubscriptionTier(org.subscription_tier),
        subscription_expires_at=org.subscription_expires_at,
        purchased_slots=org.purchased_slots,
        earned_premium_expires_at=org.earned_premium_expires_at,
    )


class EntitlementService:
    """Database-backed entitlement lookups."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_subscription_status(
        self, organization_id: UUID, now: datetime | None = None
    ) -> SubscriptionStatus:
        """
        Entitlement plus subscription fields for one organization.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
        """
        org = await self._get_organization(organization_id)
        active_count = await self.count_active_slots(organization_id)
        state = organization_state(org)
        entitlement = resolve_entitlement(state, active_count, now)

        return SubscriptionStatus(
            is_active=entitlement.is_active,
            premium_source=entitlement.source,
            subscription_tier=state.subscription_tier,
            expires_at=state.subscription_expires_at,
            earned_premium_expires_at=state.earned_premium_expires_at,
            used_slots=active_count,
            purchased_slots=state.purchased_slots,
        )

    async def has_premium_access(self, organization_id: UUID) -> bool:
        """False for unknown organizations."""
        try:
            status = await self.get_subscription_status(organization_id)
        except OrganizationNotFoundError:
            return False
        return status.is_active

    async def get_earned_premium_status(
        self, organization_id: UUID, now: datetime | None = None
    ) -> EarnedPremiumStatus:
        """
        Earned premium status for one organization.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
        """
        org = await self._get_organization(organization_id)
        return earned_premium_status(org.earned_premium_expires_at, now)

    async def count_active_slots(self, organization_id: UUID) -> int:
        """Number of non-DISABLED account slots."""
        stmt = select(func.count(AccountSlot.id)).where(
            AccountSlot.organization_id == organization_id,
            AccountSlot.status != SlotStatus.DISABLED.value,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def _get_organization(self, organization_id: UUID) -> Organization:
        org = await self.session.get(Organization, organization_id)
        if org is None:
            raise OrganizationNotFoundError(organization_id)
        return org
