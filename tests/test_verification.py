"""
Tests for VerificationService.

The content verifier, calculator and dispatcher are mocked; the
submission state machine runs for real on mock submissions.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from referral_engine.exceptions import ContentVerificationError, SubmissionNotFoundError
from referral_engine.models.api import AwardType, Platform, SubmissionStatus
from referral_engine.models.domain import ContentVerificationResult, CreditOutcome, RewardPolicy
from referral_engine.services.crediting import CreditingDispatcher
from referral_engine.services.rewards import RewardCalculator
from referral_engine.services.submission_state import DUPLICATE_CAPTION_MESSAGE
from referral_engine.services.verification import VerificationService

CAPTION = "Scheduling our whole launch week with @engagekit_io"


def observed(
    likes: int = 15,
    comments: int = 8,
    contains_keyword: bool = True,
    text: str = CAPTION,
) -> ContentVerificationResult:
    return ContentVerificationResult(
        contains_keyword=contains_keyword, post_text=text, likes=likes, comments=comments, shares=1
    )


def track_order(db_session: AsyncMock, dispatcher: MagicMock, calculator: MagicMock) -> list[str]:
    """Record lock, aggregate, dispatch, flush and commit calls in the order they happen."""
    order: list[str] = []

    def _track(name: str, mock: AsyncMock) -> None:
        inner = mock.side_effect
        result = mock.return_value

        async def _record(*args: Any, **kwargs: Any) -> Any:
            order.append(name)
            if inner is not None:
                return inner(*args, **kwargs)
            return result

        mock.side_effect = _record

    _track("lock", dispatcher.lock_organization)
    _track("aggregate", calculator.capped_award)
    _track("dispatch", dispatcher.dispatch)
    _track("flush", db_session.flush)
    _track("commit", db_session.commit)
    return order


@pytest.fixture
def verifier() -> AsyncMock:
    mock = AsyncMock()
    mock.verify = AsyncMock(return_value=observed())
    return mock


@pytest.fixture
def dispatcher(make_organization: Callable[..., MagicMock]) -> MagicMock:
    mock = MagicMock(spec=CreditingDispatcher)
    mock.lock_organization = AsyncMock(return_value=make_organization())
    mock.dispatch = AsyncMock(
        side_effect=lambda org, days, *args, **kwargs: CreditOutcome(
            days=days, award_type=AwardType.EARNED_DAYS if days else None
        )
    )
    return mock


@pytest.fixture
def calculator() -> MagicMock:
    mock = MagicMock(spec=RewardCalculator)
    mock.capped_award = AsyncMock(return_value=3)
    return mock


@pytest.fixture
def service(
    db_session: AsyncMock,
    verifier: AsyncMock,
    dispatcher: MagicMock,
    calculator: MagicMock,
    policy: RewardPolicy,
) -> VerificationService:
    return VerificationService(db_session, verifier, dispatcher, calculator, policy)


class TestVerifyInitial:
    """Tests for scan 1."""

    async def test_verified_and_awarded(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        verifier: AsyncMock,
        dispatcher: MagicMock,
        calculator: MagicMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission()
        db_session.get = AsyncMock(return_value=submission)

        result = await service.verify_initial(submission.id, now)

        assert result.success is True
        assert result.days_awarded == 3
        assert result.message == "Verified! Earned 3 day(s) of premium access."
        assert submission.status == SubmissionStatus.VERIFIED.value
        assert submission.scan_count == 1
        assert submission.days_awarded == 3
        assert submission.award_type == AwardType.EARNED_DAYS

        verifier.verify.assert_awaited_once_with(Platform.X, submission.post_url, "@engagekit_io")
        calculator.capped_award.assert_awaited_once_with(
            submission.organization_id, 15, 8, 0, now
        )
        dispatcher.lock_organization.assert_awaited_once_with(submission.organization_id)
        assert dispatcher.dispatch.await_args.args[1:4] == (3, submission.id, 1)

    async def test_linkedin_uses_hashtag(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        verifier: AsyncMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission(
            platform=Platform.LINKEDIN, post_url="https://www.linkedin.com/posts/acme-1"
        )
        db_session.get = AsyncMock(return_value=submission)

        await service.verify_initial(submission.id, now)

        assert verifier.verify.await_args.args[2] == "#engagekit_io"

    async def test_keyword_missing(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        verifier: AsyncMock,
        dispatcher: MagicMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission()
        db_session.get = AsyncMock(return_value=submission)
        verifier.verify.return_value = observed(contains_keyword=False, text="no tag")

        result = await service.verify_initial(submission.id, now)

        assert result.success is False
        assert result.contains_keyword is False
        assert "@engagekit_io" in result.message
        assert submission.status == SubmissionStatus.FAILED.value
        dispatcher.dispatch.assert_not_awaited()

    async def test_verifier_error_fails_submission(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        verifier: AsyncMock,
        dispatcher: MagicMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission()
        db_session.get = AsyncMock(return_value=submission)
        verifier.verify.side_effect = ContentVerificationError("scraper timed out")

        result = await service.verify_initial(submission.id, now)

        assert result.success is False
        assert result.message == "scraper timed out"
        assert submission.status == SubmissionStatus.FAILED.value
        assert submission.failure_reason == "scraper timed out"
        dispatcher.lock_organization.assert_not_awaited()

    async def test_near_duplicate_caption_rejected(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        dispatcher: MagicMock,
        result_factory: Callable[..., MagicMock],
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission()
        db_session.get = AsyncMock(return_value=submission)
        db_session.execute = AsyncMock(
            return_value=result_factory(scalars=[CAPTION.upper() + " "])
        )

        result = await service.verify_initial(submission.id, now)

        assert result.success is False
        assert result.contains_keyword is True
        assert result.message == DUPLICATE_CAPTION_MESSAGE
        assert submission.status == SubmissionStatus.FAILED.value
        assert submission.days_awarded == 0
        dispatcher.dispatch.assert_not_awaited()

    async def test_distinct_caption_passes(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        result_factory: Callable[..., MagicMock],
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission()
        db_session.get = AsyncMock(return_value=submission)
        db_session.execute = AsyncMock(
            return_value=result_factory(scalars=["Quarterly results are out, thanks @engagekit_io"])
        )

        result = await service.verify_initial(submission.id, now)

        assert result.success is True

    async def test_already_decided_is_not_rescanned(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        verifier: AsyncMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission(status=SubmissionStatus.VERIFIED, scan_count=1, days_awarded=2)
        db_session.get = AsyncMock(return_value=submission)

        result = await service.verify_initial(submission.id, now)

        assert result.success is True
        assert result.days_awarded == 2
        verifier.verify.assert_not_awaited()

    async def test_award_runs_under_organization_lock(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        dispatcher: MagicMock,
        calculator: MagicMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        """The monthly total is read after the lock and persisted before the caller commits."""
        submission = make_submission()
        db_session.get = AsyncMock(return_value=submission)
        order = track_order(db_session, dispatcher, calculator)

        await service.verify_initial(submission.id, now)

        assert order == ["lock", "aggregate", "dispatch", "flush"]

    async def test_rescan_interval_sets_next_scan(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission()
        db_session.get = AsyncMock(return_value=submission)

        await service.verify_initial(submission.id, now, rescan_interval=timedelta(hours=6))

        assert submission.next_scan_at == now + timedelta(hours=6)

    async def test_missing_submission(self, service: VerificationService, now: datetime) -> None:
        with pytest.raises(SubmissionNotFoundError):
            await service.verify_initial(uuid4(), now)


class TestRescan:
    """Tests for scans 2 and 3."""

    async def test_awards_additional_days(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        calculator: MagicMock,
        verifier: AsyncMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission(status=SubmissionStatus.VERIFIED, scan_count=1, days_awarded=1)
        db_session.get = AsyncMock(return_value=submission)
        verifier.verify.return_value = observed(likes=12, comments=0)
        calculator.capped_award.return_value = 1

        outcome = await service.rescan(submission.id, 2, now)

        assert outcome.status == "scanned"
        assert outcome.days_awarded == 1
        assert submission.scan_count == 2
        assert submission.days_awarded == 2
        assert submission.likes == 12
        calculator.capped_award.assert_awaited_once_with(
            submission.organization_id, 12, 0, 1, now
        )

    async def test_zero_delta_keeps_award_type(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        calculator: MagicMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission(status=SubmissionStatus.VERIFIED, scan_count=2, days_awarded=3)
        submission.award_type = AwardType.EARNED_DAYS
        db_session.get = AsyncMock(return_value=submission)
        calculator.capped_award.return_value = 0

        outcome = await service.rescan(submission.id, 3, now)

        assert outcome.status == "scanned"
        assert submission.days_awarded == 3
        assert submission.award_type == AwardType.EARNED_DAYS
        assert submission.next_scan_at is None

    async def test_already_scanned_is_skipped(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        verifier: AsyncMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission(status=SubmissionStatus.VERIFIED, scan_count=2)
        db_session.get = AsyncMock(return_value=submission)

        outcome = await service.rescan(submission.id, 2, now)

        assert outcome.status == "skipped"
        verifier.verify.assert_not_awaited()

    @pytest.mark.parametrize("status", [SubmissionStatus.REVOKED, SubmissionStatus.FAILED])
    async def test_stops_when_not_verified(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        verifier: AsyncMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
        status: SubmissionStatus,
    ) -> None:
        submission = make_submission(status=status, scan_count=1)
        db_session.get = AsyncMock(return_value=submission)

        outcome = await service.rescan(submission.id, 2, now)

        assert outcome.status == "stopped"
        assert outcome.reason == "not_verified"
        verifier.verify.assert_not_awaited()

    async def test_verifier_error_keeps_progress(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        verifier: AsyncMock,
        dispatcher: MagicMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission(status=SubmissionStatus.VERIFIED, scan_count=1, days_awarded=2)
        db_session.get = AsyncMock(return_value=submission)
        verifier.verify.side_effect = ContentVerificationError("rate limited")

        outcome = await service.rescan(submission.id, 2, now)

        assert outcome.status == "failed"
        assert outcome.reason == "rate limited"
        assert submission.scan_count == 1
        assert submission.days_awarded == 2
        dispatcher.dispatch.assert_not_awaited()
        assert submission.next_scan_at == now + timedelta(hours=24)

    async def test_verifier_error_moves_schedule_by_interval(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        verifier: AsyncMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        submission = make_submission(status=SubmissionStatus.VERIFIED, scan_count=1)
        submission.next_scan_at = now - timedelta(hours=1)
        db_session.get = AsyncMock(return_value=submission)
        verifier.verify.side_effect = ContentVerificationError("rate limited")

        await service.rescan(submission.id, 2, now, rescan_interval=timedelta(hours=3))

        assert submission.next_scan_at == now + timedelta(hours=3)
        db_session.flush.assert_awaited()

    async def test_award_runs_under_organization_lock(
        self,
        service: VerificationService,
        db_session: AsyncMock,
        dispatcher: MagicMock,
        calculator: MagicMock,
        make_submission: Callable[..., MagicMock],
        now: datetime,
    ) -> None:
        """Prior days feed the capped delta only once the organization row is locked."""
        submission = make_submission(status=SubmissionStatus.VERIFIED, scan_count=1, days_awarded=1)
        db_session.get = AsyncMock(return_value=submission)
        order = track_order(db_session, dispatcher, calculator)

        await service.rescan(submission.id, 2, now)

        assert order == ["lock", "aggregate", "dispatch", "flush"]
