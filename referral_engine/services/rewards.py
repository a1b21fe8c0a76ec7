"""
Reward Calculator - Engagement counters to earned premium days.

Per-post awards are computed as a delta against what the submission already
received, so repeated scans are idempotent and never take days back. The
monthly cap is applied on top of that delta.
"""

from datetime import UTC, datetime
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.db.models import SocialSubmission
from referral_engine.models.api import SubmissionStatus
from referral_engine.models.domain import RewardPolicy


def calculate_days_to_award(
    likes: int,
    comments: int,
    already_awarded: int,
    policy: RewardPolicy,
) -> int:
    """
    Days still owed for one keyword-verified post.

    1 base day, +1 at the likes threshold, +1 at the comments threshold,
    capped at max_days_per_post. Returns max(0, total - already_awarded).
    """
    total = 1
    if likes >= policy.likes_threshold:
        total += 1
    if comments >= policy.comments_threshold:
        total += 1
    total = min(total, policy.max_days_per_post)
    return max(total - already_awarded, 0)


def apply_monthly_cap(additional_days: int, monthly_used: int, policy: RewardPolicy) -> int:
    """Clamp an award so the org's monthly total never exceeds the cap."""
    remaining = policy.monthly_cap_days - monthly_used
    return max(min(additional_days, remaining), 0)


def start_of_month(now: datetime, timezone: str = "UTC") -> datetime:
    """First instant of the calendar month containing now, in the given timezone."""
    tz = UTC if timezone.upper() == "UTC" else ZoneInfo(timezone)
    local = now.astimezone(tz)
    return local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class RewardCalculator:
    """
    Computes capped awards for a submission.

    The monthly aggregate must be read inside the same transaction that
    persists the award, after the organization row has been locked
    (see CreditingDispatcher.lock_organization).
    """

    def __init__(self, session: AsyncSession, policy: RewardPolicy) -> None:
        self.session = session
        self.policy = policy

    def days_to_award(self, likes: int, comments: int, already_awarded: int) -> int:
        """Uncapped-by-month delta for one submission."""
        return calculate_days_to_award(likes, comments, already_awarded, self.policy)

    async def monthly_days_awarded(self, organization_id: UUID, now: datetime) -> int:
        """SUM(days_awarded) over the org's VERIFIED submissions this calendar month."""
        month_start = start_of_month(now, self.policy.timezone)
        stmt = select(func.coalesce(func.sum(SocialSubmission.days_awarded), 0)).where(
            SocialSubmission.organization_id == organization_id,
            SocialSubmission.status == SubmissionStatus.VERIFIED.value,
            SocialSubmission.verified_at >= month_start,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def capped_award(
        self,
        organization_id: UUID,
        likes: int,
        comments: int,
        already_awarded: int,
        now: datetime,
    ) -> int:
        """Per-post delta clamped by the remaining monthly allowance."""
        additional = self.days_to_award(likes, comments, already_awarded)
        if additional == 0:
            return 0
        monthly_used = await self.monthly_days_awarded(organization_id, now)
        return apply_monthly_cap(additional, monthly_used, self.policy)
