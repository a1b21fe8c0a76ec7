"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class SubscriptionTier(str, Enum):
    """Organization subscription tier."""

    FREE = "FREE"
    PREMIUM = "PREMIUM"


class Platform(str, Enum):
    """Social platforms accepted by the referral program."""

    X = "X"
    LINKEDIN = "LINKEDIN"
    THREADS = "THREADS"
    FACEBOOK = "FACEBOOK"


class SubmissionStatus(str, Enum):
    """Social submission lifecycle status."""

    VERIFYING = "VERIFYING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"
    REVOKED = "REVOKED"


class SlotStatus(str, Enum):
    """Account slot status. Anything but DISABLED consumes a paid slot."""

    DISABLED = "DISABLED"
    REGISTERED = "REGISTERED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


class AwardType(str, Enum):
    """How awarded days were delivered to the organization."""

    BILLING_CREDIT = "BILLING_CREDIT"
    EARNED_DAYS = "EARNED_DAYS"


class PremiumSource(str, Enum):
    """Which mechanism currently grants premium access."""

    PAID = "paid"
    EARNED = "earned"
    NONE = "none"


class WorkflowRunStatus(str, Enum):
    """Durable workflow run status."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


# ============================================================================
# Submission Models
# ============================================================================


class SubmitPostRequest(BaseModel):
    """POST /v1/referrals/submissions request body."""

    post_url: str = Field(..., min_length=1, max_length=2048)
    platform: Platform

    @field_validator("platform", mode="before")
    @classmethod
    def normalize_platform(cls, v: object) -> object:
        """Accept lower-case platform names ("x", "linkedin", ...)."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("post_url")
    @classmethod
    def validate_post_url(cls, v: str) -> str:
        """Only absolute http(s) URLs can be verified."""
        v = v.strip()
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("post_url must be an http(s) URL")
        return v


class SubmitPostResponse(BaseModel):
    """POST /v1/referrals/submissions response."""

    id: UUID
    status: Literal["verifying"] = "verifying"
    days_awarded: int = 0


class SubmissionResponse(BaseModel):
    """Snapshot of one submission."""

    id: UUID
    platform: Platform
    post_url: str
    status: SubmissionStatus
    submitted_at: datetime
    verified_at: datetime | None = None
    contains_keyword: bool = False
    post_text: str | None = None
    likes: int = 0
    comments: int = 0
    shares: int = 0
    days_awarded: int = 0
    scan_count: int = 0
    next_scan_at: datetime | None = None
    failure_reason: str | None = None


class SubmissionListResponse(BaseModel):
    """GET /v1/referrals/submissions response."""

    submissions: list[SubmissionResponse]
    limit: int
    offset: int


# ============================================================================
# Entitlement Models
# ============================================================================


class EarnedPremiumResponse(BaseModel):
    """GET /v1/referrals/earned-premium response."""

    is_active: bool
    expires_at: datetime | None = None
    days_remaining: int = 0


class EntitlementResponse(BaseModel):
    """GET /v1/referrals/entitlement response."""

    is_active: bool
    premium_source: PremiumSource
    subscription_tier: SubscriptionTier
    expires_at: datetime | None = None
    earned_premium_expires_at: datetime | None = None
    used_slots: int
    purchased_slots: int


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
