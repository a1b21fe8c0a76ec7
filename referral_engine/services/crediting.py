"""
Crediting Dispatcher - Deliver awarded days to an organization.

Paid premium orgs with a billable payer get a billing balance credit;
free and grace-period orgs get their earned premium grant extended.

Callers must hold the organization row lock (lock_organization) for the
whole "read monthly usage -> dispatch -> persist submission" sequence so
concurrent awards for one organization serialize.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from referral_engine.db.models import Organization, Payer
from referral_engine.exceptions import OrganizationNotFoundError, PaymentProviderError
from referral_engine.models.api import AwardType
from referral_engine.models.domain import CreditOutcome, RewardPolicy
from referral_engine.observability.metrics import metrics
from referral_engine.services.entitlement import is_paid_active, organization_state
from referral_engine.services.payment_provider import BalanceCredit, BillingProvider

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def extend_earned_premium(current: datetime | None, days: int, now: datetime) -> datetime:
    """
    New earned expiry after adding days.

    Stacks on an unexpired grant; restarts from now once the grant lapsed.
    """
    base = current if current is not None and current > now else now
    return base + timedelta(days=days)


class CreditingDispatcher:
    """Routes awarded days to a billing credit or an earned premium extension."""

    def __init__(
        self,
        session: AsyncSession,
        billing_provider: BillingProvider,
        policy: RewardPolicy,
        currency: str = "usd",
    ) -> None:
        self.session = session
        self.billing_provider = billing_provider
        self.policy = policy
        self.currency = currency

    async def lock_organization(self, organization_id: UUID) -> Organization:
        """
        Lock organization row for update (SELECT FOR UPDATE).

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
        """
        stmt = select(Organization).where(Organization.id == organization_id).with_for_update()
        result = await self.session.execute(stmt)
        org = result.scalar_one_or_none()
        if org is None:
            raise OrganizationNotFoundError(organization_id)
        return org

    async def dispatch(
        self,
        org: Organization,
        days: int,
        submission_id: UUID,
        scan_number: int = 1,
        now: datetime | None = None,
    ) -> CreditOutcome:
        """
        Deliver days to the organization.

        Billing failures are logged and swallowed; the reward is owed
        regardless of billing-provider availability.
        """
        if days < 0:
            raise ValueError(f"Cannot credit negative days: {days}")
        if days == 0:
            return CreditOutcome(days=0, award_type=None)

        now = now or _utc_now()

        if is_paid_active(organization_state(org), now) and org.payer_id is not None:
            return await self._credit_payer(org, days, submission_id, scan_number)

        new_expiry = extend_earned_premium(org.earned_premium_expires_at, days, now)
        org.earned_premium_expires_at = new_expiry
        await self.session.flush()

        logger.info(
            "earned_premium_extended",
            organization_id=str(org.id),
            submission_id=str(submission_id),
            days=days,
            earned_premium_expires_at=new_expiry.isoformat(),
        )
        metrics.record_days_awarded(AwardType.EARNED_DAYS.value, days)

        return CreditOutcome(
            days=days,
            award_type=AwardType.EARNED_DAYS,
            earned_premium_expires_at=new_expiry,
        )

    async def _credit_payer(
        self,
        org: Organization,
        days: int,
        submission_id: UUID,
        scan_number: int,
    ) -> CreditOutcome:
        payer = await self.session.get(Payer, org.payer_id)
        if payer is None or not payer.billing_customer_id:
            # Paid org whose payer has no billing identity: no credit, no extension.
            logger.warning(
                "referral_award_skipped_no_billing_identity",
                organization_id=str(org.id),
                payer_id=str(org.payer_id),
                submission_id=str(submission_id),
                days=days,
            )
            return CreditOutcome(days=days, award_type=None)

        amount_cents = days * self.policy.credit_per_day_cents
        credit = BalanceCredit(
            customer_id=payer.billing_customer_id,
            amount_cents=amount_cents,
            currency=self.currency,
            memo=f"Social referral: {days} day(s) credit for submission {submission_id}",
            idempotency_key=f"referral-{submission_id}-scan{scan_number}",
        )

        try:
            transaction_id = await self.billing_provider.issue_credit(credit)
        except PaymentProviderError as exc:
            logger.error(
                "referral_billing_credit_failed",
                organization_id=str(org.id),
                submission_id=str(submission_id),
                amount_cents=amount_cents,
                error=str(exc),
            )
            metrics.record_billing_credit(success=False, amount_cents=amount_cents)
            return CreditOutcome(
                days=days,
                award_type=AwardType.BILLING_CREDIT,
                credit_amount_cents=amount_cents,
                credit_issued=False,
            )

        logger.info(
            "referral_billing_credit_applied",
            organization_id=str(org.id),
            submission_id=str(submission_id),
            days=days,
            amount_cents=amount_cents,
            balance_transaction_id=transaction_id,
        )
        metrics.record_billing_credit(success=True, amount_cents=amount_cents)
        metrics.record_days_awarded(AwardType.BILLING_CREDIT.value, days)

        return CreditOutcome(
            days=days,
            award_type=AwardType.BILLING_CREDIT,
            credit_amount_cents=amount_cents,
            credit_issued=True,
        )
