"""
Social Referral Service - Accept submissions and read their progress.

Submission creation is the only place a rescan workflow run is started,
which keeps the one-run-per-submission rule with the caller.

NO DICTIONARIES - All returns are typed domain models.
"""

from datetime import UTC, datetime
from urllib.parse import urlsplit
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from referral_engine.db.models import Organization, SocialSubmission
from referral_engine.exceptions import (
    DataIntegrityError,
    OrganizationNotFoundError,
    ReferralIneligibleError,
    SubmissionConflictError,
    SubmissionNotFoundError,
)
from referral_engine.models.api import Platform, SubmissionStatus
from referral_engine.models.domain import SubmissionData, SubmissionReceipt
from referral_engine.services.entitlement import EntitlementService
from referral_engine.services.workflow import start_rescan_workflow

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


def normalize_url(url: str) -> str:
    """
    Canonical form used for global deduplication.

    host (lower-cased, no "www.") + path (no trailing slash); scheme, query
    and fragment are dropped.
    """
    parts = urlsplit(url.strip())
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if not host:
        raise ValueError(f"URL has no host: {url}")
    path = parts.path.rstrip("/")
    return f"{host}{path}"


def submission_data(submission: SocialSubmission) -> SubmissionData:
    """Convert ORM model to domain model."""
    return SubmissionData(
        submission_id=submission.id,
        organization_id=submission.organization_id,
        platform=Platform(submission.platform),
        post_url=submission.post_url,
        url_normalized=submission.url_normalized,
        status=submission.status,
        contains_keyword=submission.contains_keyword,
        post_text=submission.post_text,
        likes=submission.likes,
        comments=submission.comments,
        shares=submission.shares,
        days_awarded=submission.days_awarded,
        scan_count=submission.scan_count,
        submitted_at=submission.submitted_at,
        verified_at=submission.verified_at,
        last_scanned_at=submission.last_scanned_at,
        next_scan_at=submission.next_scan_at,
        rescan_workflow_id=submission.rescan_workflow_id,
        failure_reason=submission.failure_reason,
    )


class SocialReferralService:
    """Submission intake and status lookups for one organization at a time."""

    def __init__(self, session: AsyncSession, rescan_delay_seconds: int = 24 * 60 * 60) -> None:
        self.session = session
        self.rescan_delay_seconds = rescan_delay_seconds

    async def submit(
        self,
        organization_id: UUID,
        post_url: str,
        platform: Platform,
        now: datetime | None = None,
    ) -> SubmissionReceipt:
        """
        Create a VERIFYING submission and its rescan workflow run.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
            ReferralIneligibleError: Organization must have exactly one active slot
            SubmissionConflictError: Normalized URL already submitted by anyone
        """
        now = now or datetime.now(UTC)
        url_normalized = normalize_url(post_url)

        org = await self.session.get(Organization, organization_id)
        if org is None:
            raise OrganizationNotFoundError(organization_id)

        active_slots = await EntitlementService(self.session).count_active_slots(organization_id)
        if active_slots != 1:
            logger.info(
                "referral_submission_ineligible",
                organization_id=str(organization_id),
                active_slots=active_slots,
            )
            raise ReferralIneligibleError(
                organization_id,
                f"referral program requires exactly one active account (found {active_slots})",
            )

        existing = await self._find_by_normalized_url(url_normalized)
        if existing is not None:
            logger.info(
                "referral_submission_duplicate",
                organization_id=str(organization_id),
                url_normalized=url_normalized,
                existing_submission_id=str(existing.id),
                existing_status=existing.status,
            )
            raise SubmissionConflictError(
                url_normalized, same_organization=existing.organization_id == organization_id
            )

        submission = SocialSubmission(
            id=uuid4(),
            organization_id=organization_id,
            platform=Platform(platform).value,
            post_url=post_url.strip(),
            url_normalized=url_normalized,
            status=SubmissionStatus.VERIFYING.value,
            contains_keyword=False,
            likes=0,
            comments=0,
            shares=0,
            days_awarded=0,
            credit_amount_cents=0,
            scan_count=0,
            submitted_at=now,
        )
        self.session.add(submission)
        run = start_rescan_workflow(self.session, submission, self.rescan_delay_seconds, now)

        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            winner = await self._find_by_normalized_url(url_normalized)
            if winner is None:
                logger.error(
                    "referral_submission_integrity_error",
                    organization_id=str(organization_id),
                    error=str(exc.orig),
                )
                raise DataIntegrityError(f"Submission insert rejected: {exc.orig}") from exc

            # Lost a race on the unique url_normalized index
            logger.info(
                "referral_submission_duplicate_race",
                organization_id=str(organization_id),
                url_normalized=url_normalized,
            )
            raise SubmissionConflictError(
                url_normalized, same_organization=winner.organization_id == organization_id
            ) from exc

        logger.info(
            "referral_submission_created",
            organization_id=str(organization_id),
            submission_id=str(submission.id),
            platform=submission.platform,
            workflow_id=run.id,
        )

        return SubmissionReceipt(
            submission_id=submission.id,
            workflow_id=run.id,
            url_normalized=url_normalized,
        )

    async def get_status(self, organization_id: UUID, submission_id: UUID) -> SubmissionData:
        """
        Snapshot of one submission owned by the organization.

        Raises:
            SubmissionNotFoundError: Unknown id, or owned by another organization
        """
        submission = await self.session.get(SocialSubmission, submission_id)
        if submission is None or submission.organization_id != organization_id:
            raise SubmissionNotFoundError(submission_id)
        return submission_data(submission)

    async def list_submissions(
        self, organization_id: UUID, limit: int = 20, offset: int = 0
    ) -> list[SubmissionData]:
        """Newest first."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        stmt = (
            select(SocialSubmission)
            .where(SocialSubmission.organization_id == organization_id)
            .order_by(SocialSubmission.submitted_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [submission_data(s) for s in result.scalars().all()]

    async def _find_by_normalized_url(self, url_normalized: str) -> SocialSubmission | None:
        stmt = select(SocialSubmission).where(SocialSubmission.url_normalized == url_normalized)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
