"""
Verification Service - One scan of one submission.

scan 1 (initial): keyword check, caption near-duplicate gate, award, transition
to VERIFIED or FAILED. Scans 2 and 3 (rescans): refresh engagement and award
the additional days still owed.

Each call runs inside the caller's transaction. Awards lock the organization
row before the monthly aggregate is read, so concurrent awards for one
organization cannot overshoot the cap or lose an earned-premium extension.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from referral_engine.db.models import SocialSubmission
from referral_engine.exceptions import ContentVerificationError, SubmissionNotFoundError
from referral_engine.models.api import Platform, SubmissionStatus
from referral_engine.models.domain import (
    ContentVerificationResult,
    CreditOutcome,
    RewardPolicy,
    ScanOutcome,
    VerificationResult,
)
from referral_engine.observability.metrics import metrics
from referral_engine.services import submission_state
from referral_engine.services.content_verification import ContentVerifier
from referral_engine.services.crediting import CreditingDispatcher
from referral_engine.services.payment_provider import BillingProvider
from referral_engine.services.rewards import RewardCalculator
from referral_engine.services.similarity import (
    CaptionScorer,
    caption_similarity,
    find_similar_caption,
)

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class VerificationService:
    """Runs initial verification and rescans against the content verifier."""

    def __init__(
        self,
        session: AsyncSession,
        verifier: ContentVerifier,
        dispatcher: CreditingDispatcher,
        calculator: RewardCalculator,
        policy: RewardPolicy,
        scorer: CaptionScorer = caption_similarity,
    ) -> None:
        self.session = session
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.calculator = calculator
        self.policy = policy
        self.scorer = scorer

    @classmethod
    def build(
        cls,
        session: AsyncSession,
        verifier: ContentVerifier,
        billing_provider: BillingProvider,
        policy: RewardPolicy,
        currency: str = "usd",
    ) -> "VerificationService":
        """Wire the calculator and dispatcher onto one session."""
        return cls(
            session=session,
            verifier=verifier,
            dispatcher=CreditingDispatcher(session, billing_provider, policy, currency),
            calculator=RewardCalculator(session, policy),
            policy=policy,
        )

    async def verify_initial(
        self,
        submission_id: UUID,
        now: datetime | None = None,
        rescan_interval: timedelta = submission_state.RESCAN_INTERVAL,
    ) -> VerificationResult:
        """
        Scan 1.

        rescan_interval is the delay before scan 2, reported as next_scan_at.

        Raises:
            SubmissionNotFoundError: Submission doesn't exist
        """
        now = now or _utc_now()
        submission = await self._get_submission(submission_id)

        if submission.status != SubmissionStatus.VERIFYING.value:
            # Already decided by an earlier attempt of this step
            return VerificationResult(
                success=submission.status == SubmissionStatus.VERIFIED.value,
                contains_keyword=submission.contains_keyword,
                days_awarded=submission.days_awarded,
                message=submission.failure_reason or "Already verified",
            )

        platform = Platform(submission.platform)
        keyword = submission_state.required_keyword(platform, self.policy.keyword_token)

        try:
            result = await self.verifier.verify(platform, submission.post_url, keyword)
        except ContentVerificationError as exc:
            logger.error(
                "initial_verification_failed",
                submission_id=str(submission.id),
                organization_id=str(submission.organization_id),
                platform=platform.value,
                error=exc.message,
            )
            submission_state.mark_verification_error(submission, exc.message, now)
            await self.session.flush()
            metrics.record_submission(platform.value, "error")
            return VerificationResult(
                success=False, contains_keyword=False, days_awarded=0, message=exc.message
            )

        if not result.contains_keyword:
            submission_state.mark_keyword_missing(submission, result, keyword, now)
            await self.session.flush()
            logger.info(
                "submission_keyword_missing",
                submission_id=str(submission.id),
                keyword=keyword,
            )
            metrics.record_submission(platform.value, "keyword_missing")
            return VerificationResult(
                success=False,
                contains_keyword=False,
                days_awarded=0,
                message=submission.failure_reason or "",
            )

        score = await self._near_duplicate_score(submission, result, now)
        if score is not None:
            submission_state.mark_duplicate_caption(submission, result, now)
            await self.session.flush()
            logger.info(
                "submission_caption_duplicate",
                submission_id=str(submission.id),
                organization_id=str(submission.organization_id),
                similarity=round(score, 4),
            )
            metrics.record_submission(platform.value, "duplicate_caption")
            return VerificationResult(
                success=False,
                contains_keyword=True,
                days_awarded=0,
                message=submission_state.DUPLICATE_CAPTION_MESSAGE,
            )

        org = await self.dispatcher.lock_organization(submission.organization_id)
        days = await self.calculator.capped_award(
            submission.organization_id, result.likes, result.comments, 0, now
        )
        outcome = await self.dispatcher.dispatch(org, days, submission.id, 1, now)

        submission_state.mark_verified(submission, result, days, now, rescan_interval)
        _record_outcome(submission, outcome)
        await self.session.flush()

        logger.info(
            "submission_verified",
            submission_id=str(submission.id),
            organization_id=str(submission.organization_id),
            days_awarded=days,
            award_type=outcome.award_type.value if outcome.award_type else None,
        )
        metrics.record_submission(platform.value, "verified")

        return VerificationResult(
            success=True,
            contains_keyword=True,
            days_awarded=days,
            message=f"Verified! Earned {days} day(s) of premium access.",
        )

    async def rescan(
        self,
        submission_id: UUID,
        scan_number: int,
        now: datetime | None = None,
        rescan_interval: timedelta = submission_state.RESCAN_INTERVAL,
    ) -> ScanOutcome:
        """
        Scans 2 and 3.

        A verifier failure is logged and reported as a failed scan; it does
        not roll back prior progress.
        """
        now = now or _utc_now()
        submission = await self.session.get(SocialSubmission, submission_id)

        if submission is None or submission.status != SubmissionStatus.VERIFIED.value:
            return ScanOutcome(scan_number=scan_number, status="stopped", reason="not_verified")

        if submission.scan_count >= scan_number:
            logger.info(
                "rescan_already_completed",
                submission_id=str(submission_id),
                scan_number=scan_number,
                scan_count=submission.scan_count,
            )
            metrics.record_rescan("skipped")
            return ScanOutcome(scan_number=scan_number, status="skipped")

        platform = Platform(submission.platform)
        keyword = submission_state.required_keyword(platform, self.policy.keyword_token)

        try:
            result = await self.verifier.verify(platform, submission.post_url, keyword)
        except ContentVerificationError as exc:
            logger.warning(
                "rescan_verification_failed",
                submission_id=str(submission_id),
                scan_number=scan_number,
                error=exc.message,
            )
            submission_state.record_failed_rescan(submission, scan_number, now, rescan_interval)
            await self.session.flush()
            metrics.record_rescan("failed")
            return ScanOutcome(scan_number=scan_number, status="failed", reason=exc.message)

        org = await self.dispatcher.lock_organization(submission.organization_id)
        additional = await self.calculator.capped_award(
            submission.organization_id,
            result.likes,
            result.comments,
            submission.days_awarded,
            now,
        )
        outcome = await self.dispatcher.dispatch(org, additional, submission.id, scan_number, now)

        submission_state.record_rescan(
            submission, scan_number, result, additional, now, rescan_interval
        )
        _record_outcome(submission, outcome)
        await self.session.flush()

        logger.info(
            "rescan_completed",
            submission_id=str(submission_id),
            scan_number=scan_number,
            likes=result.likes,
            comments=result.comments,
            additional_days=additional,
            days_awarded=submission.days_awarded,
        )
        metrics.record_rescan("scanned")

        return ScanOutcome(scan_number=scan_number, status="scanned", days_awarded=additional)

    async def _near_duplicate_score(
        self,
        submission: SocialSubmission,
        result: ContentVerificationResult,
        now: datetime,
    ) -> float | None:
        if not result.post_text:
            return None

        since = now - timedelta(days=self.policy.caption_lookback_days)
        stmt = select(SocialSubmission.post_text).where(
            SocialSubmission.organization_id == submission.organization_id,
            SocialSubmission.platform == submission.platform,
            SocialSubmission.status == SubmissionStatus.VERIFIED.value,
            SocialSubmission.submitted_at >= since,
            SocialSubmission.id != submission.id,
        )
        rows = await self.session.execute(stmt)
        previous = list(rows.scalars().all())

        return find_similar_caption(
            result.post_text,
            previous,
            self.policy.caption_similarity_threshold,
            self.scorer,
        )

    async def _get_submission(self, submission_id: UUID) -> SocialSubmission:
        submission = await self.session.get(SocialSubmission, submission_id)
        if submission is None:
            raise SubmissionNotFoundError(submission_id)
        return submission


def _record_outcome(submission: SocialSubmission, outcome: CreditOutcome) -> None:
    if outcome.award_type is None:
        return
    submission.award_type = outcome.award_type
    submission.credit_amount_cents = submission.credit_amount_cents + outcome.credit_amount_cents
