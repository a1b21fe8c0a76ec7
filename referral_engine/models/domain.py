"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal
from uuid import UUID

from referral_engine.models.api import (
    AwardType,
    Platform,
    PremiumSource,
    SubscriptionTier,
)


@dataclass(frozen=True)
class RewardPolicy:
    """Immutable reward thresholds, caps and credit rate."""

    likes_threshold: int = 10
    comments_threshold: int = 5
    max_days_per_post: int = 3
    monthly_cap_days: int = 14
    credit_per_day_cents: int = 100
    caption_similarity_threshold: float = 0.95
    caption_lookback_days: int = 7
    keyword_token: str = "engagekit_io"
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        """Validate policy constraints."""
        if self.max_days_per_post <= 0:
            raise ValueError(f"max_days_per_post must be positive: {self.max_days_per_post}")
        if self.monthly_cap_days <= 0:
            raise ValueError(f"monthly_cap_days must be positive: {self.monthly_cap_days}")
        if self.credit_per_day_cents <= 0:
            raise ValueError(
                f"credit_per_day_cents must be positive: {self.credit_per_day_cents}"
            )
        if not self.keyword_token:
            raise ValueError("keyword_token cannot be empty")

    @classmethod
    def from_settings(cls) -> "RewardPolicy":
        """Build the policy from application settings."""
        from referral_engine.config import settings

        return cls(
            likes_threshold=settings.likes_threshold,
            comments_threshold=settings.comments_threshold,
            max_days_per_post=settings.max_days_per_post,
            monthly_cap_days=settings.monthly_cap_days,
            credit_per_day_cents=settings.credit_per_day_cents,
            caption_similarity_threshold=settings.caption_similarity_threshold,
            caption_lookback_days=settings.caption_lookback_days,
            keyword_token=settings.referral_keyword_token,
            timezone=settings.reward_timezone,
        )


@dataclass(frozen=True)
class OrganizationState:
    """Immutable view of the organization fields that decide entitlement."""

    subscription_tier: SubscriptionTier
    subscription_expires_at: datetime | None
    purchased_slots: int
    earned_premium_expires_at: datetime | None


@dataclass(frozen=True)
class EntitlementStatus:
    """Result of entitlement resolution."""

    is_active: bool
    source: PremiumSource


@dataclass(frozen=True)
class SubscriptionStatus:
    """Entitlement plus the subscription fields shown to the organization."""

    is_active: bool
    premium_source: PremiumSource
    subscription_tier: SubscriptionTier
    expires_at: datetime | None
    earned_premium_expires_at: datetime | None
    used_slots: int
    purchased_slots: int


@dataclass(frozen=True)
class EarnedPremiumStatus:
    """Earned premium grant status."""

    is_active: bool
    expires_at: datetime | None
    days_remaining: int


@dataclass(frozen=True)
class ContentVerificationResult:
    """What the content-verification service observed on a post."""

    contains_keyword: bool
    post_text: str | None
    likes: int
    comments: int
    shares: int

    def __post_init__(self) -> None:
        """Validate engagement counters."""
        for name in ("likes", "comments", "shares"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative: {getattr(self, name)}")


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of the initial verification scan."""

    success: bool
    contains_keyword: bool
    days_awarded: int
    message: str


@dataclass(frozen=True)
class CreditOutcome:
    """What the crediting dispatcher did for one award."""

    days: int
    award_type: AwardType | None
    credit_amount_cents: int = 0
    earned_premium_expires_at: datetime | None = None
    credit_issued: bool = False

    @property
    def applied(self) -> bool:
        """True when days were delivered as a credit attempt or an extension."""
        return self.award_type is not None


@dataclass(frozen=True)
class ReclaimResult:
    """Result of slot reclamation."""

    status: Literal["disabled", "unchanged"]
    num_accounts_disabled: int
    disabled_slot_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class ScanOutcome:
    """Result of one rescan step."""

    scan_number: int
    status: Literal["scanned", "skipped", "failed", "stopped"]
    days_awarded: int = 0
    reason: str | None = None


@dataclass(frozen=True)
class WorkflowOutcome:
    """Final result of a rescan workflow run."""

    status: Literal["success", "stopped"]
    completed_scans: int
    reason: str | None = None
    current_status: str | None = None


@dataclass(frozen=True)
class SubmissionData:
    """Immutable submission snapshot."""

    submission_id: UUID
    organization_id: UUID
    platform: Platform
    post_url: str
    url_normalized: str
    status: str
    contains_keyword: bool
    post_text: str | None
    likes: int
    comments: int
    shares: int
    days_awarded: int
    scan_count: int
    submitted_at: datetime
    verified_at: datetime | None
    last_scanned_at: datetime | None
    next_scan_at: datetime | None
    rescan_workflow_id: str | None
    failure_reason: str | None


@dataclass(frozen=True)
class SubmissionReceipt:
    """Result of accepting a submission: the record and its workflow handle."""

    submission_id: UUID
    workflow_id: str
    url_normalized: str
