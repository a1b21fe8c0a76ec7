"""
Submission State Machine - Status transitions for one social submission.

VERIFYING -> VERIFIED | FAILED, then VERIFIED | FAILED -> REVOKED.
Every mutation of a submission's status goes through this module; the
rescan workflow is the only caller that mutates a VERIFIED submission.
"""

from datetime import datetime, timedelta

from referral_engine.db.models import SocialSubmission
from referral_engine.exceptions import InvalidTransitionError
from referral_engine.models.api import Platform, SubmissionStatus
from referral_engine.models.domain import ContentVerificationResult

MAX_SCANS = 3
RESCAN_INTERVAL = timedelta(hours=24)

DUPLICATE_CAPTION_MESSAGE = (
    "This caption is too similar to a previous submission. Please write a unique post."
)

ALLOWED_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.VERIFYING: frozenset({SubmissionStatus.VERIFIED, SubmissionStatus.FAILED}),
    SubmissionStatus.VERIFIED: frozenset({SubmissionStatus.REVOKED}),
    SubmissionStatus.FAILED: frozenset({SubmissionStatus.REVOKED}),
    SubmissionStatus.REVOKED: frozenset(),
}


def required_keyword(platform: Platform | str, token: str) -> str:
    """Mention-style tag for X/Threads, hashtag-style for LinkedIn/Facebook."""
    platform = Platform(platform)
    if platform in (Platform.X, Platform.THREADS):
        return f"@{token}"
    return f"#{token}"


def missing_keyword_message(keyword: str) -> str:
    return f'Post does not contain required keyword: "{keyword}"'


def can_transition(current: SubmissionStatus | str, target: SubmissionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[SubmissionStatus(current)]


def _transition(submission: SocialSubmission, target: SubmissionStatus) -> None:
    if not can_transition(submission.status, target):
        raise InvalidTransitionError(submission.id, str(submission.status), target.value)
    submission.status = target.value


def _apply_snapshot(submission: SocialSubmission, result: ContentVerificationResult) -> None:
    submission.post_text = result.post_text
    submission.likes = result.likes
    submission.comments = result.comments
    submission.shares = result.shares


def is_rescan_eligible(submission: SocialSubmission) -> bool:
    """Only VERIFIED submissions with scans left are rescanned."""
    return (
        submission.status == SubmissionStatus.VERIFIED.value and submission.scan_count < MAX_SCANS
    )


def mark_verified(
    submission: SocialSubmission,
    result: ContentVerificationResult,
    days_awarded: int,
    now: datetime,
    rescan_interval: timedelta = RESCAN_INTERVAL,
) -> None:
    """Scan 1 succeeded: keyword present and caption unique."""
    _transition(submission, SubmissionStatus.VERIFIED)
    _apply_snapshot(submission, result)
    submission.contains_keyword = True
    submission.days_awarded = days_awarded
    submission.verified_at = now
    submission.scan_count = 1
    submission.last_scanned_at = now
    submission.next_scan_at = now + rescan_interval
    submission.failure_reason = None


def mark_keyword_missing(
    submission: SocialSubmission,
    result: ContentVerificationResult,
    keyword: str,
    now: datetime,
) -> None:
    """Scan 1 completed but the required keyword is absent."""
    _transition(submission, SubmissionStatus.FAILED)
    _apply_snapshot(submission, result)
    submission.contains_keyword = False
    submission.days_awarded = 0
    submission.verified_at = now
    submission.scan_count = 1
    submission.last_scanned_at = now
    submission.next_scan_at = None
    submission.failure_reason = missing_keyword_message(keyword)


def mark_duplicate_caption(
    submission: SocialSubmission,
    result: ContentVerificationResult,
    now: datetime,
) -> None:
    """Keyword present, but the caption near-duplicates a recent verified post."""
    _transition(submission, SubmissionStatus.FAILED)
    _apply_snapshot(submission, result)
    submission.contains_keyword = True
    submission.days_awarded = 0
    submission.verified_at = now
    submission.next_scan_at = None
    submission.failure_reason = DUPLICATE_CAPTION_MESSAGE


def mark_verification_error(submission: SocialSubmission, reason: str, now: datetime) -> None:
    """The verification call itself failed."""
    _transition(submission, SubmissionStatus.FAILED)
    submission.verified_at = now
    submission.next_scan_at = None
    submission.failure_reason = reason[:500]


def record_rescan(
    submission: SocialSubmission,
    scan_number: int,
    result: ContentVerificationResult,
    additional_days: int,
    now: datetime,
    rescan_interval: timedelta = RESCAN_INTERVAL,
) -> None:
    """
    Persist one completed rescan.

    days_awarded only grows; next_scan_at is cleared on the final scan.
    """
    if submission.status != SubmissionStatus.VERIFIED.value:
        raise InvalidTransitionError(
            submission.id, str(submission.status), f"rescan #{scan_number}"
        )
    if not 2 <= scan_number <= MAX_SCANS:
        raise ValueError(f"Rescan number must be 2..{MAX_SCANS}, got {scan_number}")
    if additional_days < 0:
        raise ValueError(f"additional_days cannot be negative: {additional_days}")

    _apply_snapshot(submission, result)
    submission.scan_count = scan_number
    submission.last_scanned_at = now
    submission.days_awarded = submission.days_awarded + additional_days
    submission.next_scan_at = _next_scan_at(scan_number, now, rescan_interval)


def record_failed_rescan(
    submission: SocialSubmission,
    scan_number: int,
    now: datetime,
    rescan_interval: timedelta = RESCAN_INTERVAL,
) -> None:
    """
    A rescan whose verifier call failed.

    Counts, snapshot and awards are untouched; only the schedule moves on.
    """
    if submission.status != SubmissionStatus.VERIFIED.value:
        raise InvalidTransitionError(
            submission.id, str(submission.status), f"rescan #{scan_number}"
        )
    submission.next_scan_at = _next_scan_at(scan_number, now, rescan_interval)


def _next_scan_at(scan_number: int, now: datetime, rescan_interval: timedelta) -> datetime | None:
    return None if scan_number >= MAX_SCANS else now + rescan_interval


def revoke(submission: SocialSubmission) -> None:
    """External revocation; stops any further rescans."""
    _transition(submission, SubmissionStatus.REVOKED)
    submission.next_scan_at = None
