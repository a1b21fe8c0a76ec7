"""
Slot Reclaimer and Subscription Lifecycle.

When paid capacity shrinks, excess account slots are disabled in a fixed
priority order: least-established first (REGISTERED, then CONNECTING, then
CONNECTED), oldest first within a status. DISABLED slots are never counted
or touched again.

NO DICTIONARIES - Results use typed domain models.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from referral_engine.db.models import AccountSlot, Organization
from referral_engine.exceptions import OrganizationNotFoundError
from referral_engine.models.api import SlotStatus, SubscriptionTier
from referral_engine.models.domain import ReclaimResult
from referral_engine.observability.metrics import metrics
from referral_engine.services.payment_provider import SubscriptionEvent

logger = get_logger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})

DISABLE_PRIORITY: dict[str, int] = {
    SlotStatus.REGISTERED.value: 0,
    SlotStatus.CONNECTING.value: 1,
    SlotStatus.CONNECTED.value: 2,
}


def select_slots_to_disable(slots: list[AccountSlot], new_capacity: int) -> list[AccountSlot]:
    """Pick the active slots that exceed new_capacity, in disable order."""
    if new_capacity < 0:
        raise ValueError(f"new_capacity cannot be negative: {new_capacity}")

    active = [s for s in slots if s.status != SlotStatus.DISABLED.value]
    excess = len(active) - new_capacity
    if excess <= 0:
        return []

    ordered = sorted(active, key=lambda s: (DISABLE_PRIORITY[s.status], s.created_at))
    return ordered[:excess]


class SlotReclaimer:
    """Disables excess account slots after a capacity reduction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def reclaim_slots(self, organization_id: UUID, new_capacity: int) -> ReclaimResult:
        """
        Disable active slots beyond new_capacity.

        Runs inside the caller's transaction; the caller commits.
        """
        stmt = (
            select(AccountSlot)
            .where(
                AccountSlot.organization_id == organization_id,
                AccountSlot.status != SlotStatus.DISABLED.value,
            )
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        slots = list(result.scalars().all())

        to_disable = select_slots_to_disable(slots, new_capacity)
        if not to_disable:
            return ReclaimResult(status="unchanged", num_accounts_disabled=0)

        for slot in to_disable:
            slot.status = SlotStatus.DISABLED.value
        await self.session.flush()

        logger.info(
            "account_slots_disabled",
            organization_id=str(organization_id),
            new_capacity=new_capacity,
            num_accounts_disabled=len(to_disable),
            slot_ids=[str(s.id) for s in to_disable],
        )
        metrics.record_slots_disabled(len(to_disable))

        return ReclaimResult(
            status="disabled",
            num_accounts_disabled=len(to_disable),
            disabled_slot_ids=tuple(s.id for s in to_disable),
        )


class SubscriptionLifecycleService:
    """Paid subscription transitions driven by billing webhooks."""

    def __init__(self, session: AsyncSession, reclaimer: SlotReclaimer | None = None) -> None:
        self.session = session
        self.reclaimer = reclaimer or SlotReclaimer(session)

    async def convert_to_premium(
        self,
        organization_id: UUID,
        purchased_slots: int,
        billing_subscription_id: str | None,
        payer_id: UUID | None,
        expires_at: datetime | None,
    ) -> Organization:
        """Activation or upgrade. Overwrites any grace-period state."""
        org = await self._lock_organization_for_update(organization_id)
        org.subscription_tier = SubscriptionTier.PREMIUM.value
        org.purchased_slots = purchased_slots
        org.billing_subscription_id = billing_subscription_id
        org.payer_id = payer_id
        org.subscription_expires_at = expires_at
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "organization_converted_to_premium",
            organization_id=str(organization_id),
            purchased_slots=purchased_slots,
            billing_subscription_id=billing_subscription_id,
        )
        return org

    async def convert_to_free(self, organization_id: UUID, expires_at: datetime) -> Organization:
        """
        Cancellation.

        The tier stays PREMIUM until expires_at (grace period); payer and
        billing subscription are cleared so awards fall back to earned days.
        """
        org = await self._lock_organization_for_update(organization_id)
        org.subscription_tier = SubscriptionTier.PREMIUM.value
        org.subscription_expires_at = expires_at
        org.payer_id = None
        org.billing_subscription_id = None
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "organization_subscription_cancelled",
            organization_id=str(organization_id),
            grace_expires_at=expires_at.isoformat(),
        )
        return org

    async def apply_pending_downgrade(
        self,
        organization_id: UUID,
        new_purchased_slots: int,
        expires_at: datetime | None,
    ) -> ReclaimResult:
        """Lower capacity, then reclaim the excess slots in the same transaction."""
        if new_purchased_slots < 0:
            raise ValueError(f"new_purchased_slots cannot be negative: {new_purchased_slots}")

        org = await self._lock_organization_for_update(organization_id)
        org.purchased_slots = new_purchased_slots
        if expires_at is not None:
            org.subscription_expires_at = expires_at

        reclaim = await self.reclaimer.reclaim_slots(organization_id, new_purchased_slots)
        await self.session.commit()

        logger.info(
            "organization_downgrade_applied",
            organization_id=str(organization_id),
            new_purchased_slots=new_purchased_slots,
            num_accounts_disabled=reclaim.num_accounts_disabled,
        )
        return reclaim

    async def handle_subscription_event(self, event: SubscriptionEvent) -> str:
        """
        Apply a verified subscription webhook.

        Returns the action taken: activated, downgraded, cancelled or ignored.
        Only created events may attach a subscription; updated and deleted
        events must name the organization's current one, so a late update
        cannot revive a cancelled organization. Updates to a subscription
        that is no longer active or trialing are ignored.
        """
        org = await self._find_organization_for_event(event)
        if org is None:
            logger.warning(
                "subscription_event_ignored_unknown_organization",
                event_id=event.event_id,
                subscription_id=event.subscription_id,
            )
            return "ignored"

        is_current = (
            org.billing_subscription_id is not None
            and org.billing_subscription_id == event.subscription_id
        )

        if event.event_type == "customer.subscription.created":
            await self.convert_to_premium(
                org.id,
                purchased_slots=event.quantity or 1,
                billing_subscription_id=event.subscription_id,
                payer_id=_parse_uuid(event.metadata_payer_id) or org.payer_id,
                expires_at=event.current_period_end,
            )
            return "activated"

        if not is_current:
            logger.info(
                "subscription_event_ignored_stale_subscription",
                event_id=event.event_id,
                organization_id=str(org.id),
                subscription_id=event.subscription_id,
                current_subscription_id=org.billing_subscription_id,
            )
            return "ignored"

        if event.event_type == "customer.subscription.deleted":
            await self.convert_to_free(
                org.id, expires_at=event.current_period_end or datetime.now(UTC)
            )
            return "cancelled"

        if event.status not in ACTIVE_SUBSCRIPTION_STATUSES:
            logger.info(
                "subscription_event_ignored_inactive_status",
                event_id=event.event_id,
                organization_id=str(org.id),
                subscription_id=event.subscription_id,
                status=event.status,
            )
            return "ignored"

        quantity = event.quantity or org.purchased_slots
        if quantity < org.purchased_slots:
            await self.apply_pending_downgrade(org.id, quantity, event.current_period_end)
            return "downgraded"

        await self.convert_to_premium(
            org.id,
            purchased_slots=quantity,
            billing_subscription_id=event.subscription_id,
            payer_id=_parse_uuid(event.metadata_payer_id) or org.payer_id,
            expires_at=event.current_period_end,
        )
        return "activated"

    async def _find_organization_for_event(
        self, event: SubscriptionEvent
    ) -> Organization | None:
        org_id = _parse_uuid(event.metadata_organization_id)
        if org_id is not None:
            org = await self.session.get(Organization, org_id)
            if org is not None:
                return org

        stmt = select(Organization).where(
            Organization.billing_subscription_id == event.subscription_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_organization_for_update(self, organization_id: UUID) -> Organization:
        stmt = select(Organization).where(Organization.id == organization_id).with_for_update()
        result = await self.session.execute(stmt)
        org = result.scalar_one_or_none()
        if org is None:
            raise OrganizationNotFoundError(organization_id)
        return org


def _parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None
