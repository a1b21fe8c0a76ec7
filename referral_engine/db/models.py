"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from referral_engine.models.api import AwardType


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Payer(Base):
    """
    ORM model for payers table.

    The billing-responsible user of an organization. A payer without a
    billing customer id cannot receive billing credits.
    """

    __tablename__ = "payers"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Stripe customer id (cus_...)
    billing_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Payer(id={self.id}, billing_customer_id={self.billing_customer_id})>"


class Organization(Base):
    """
    ORM model for organizations table.

    Holds both entitlement sources: the paid subscription window and the
    earned premium grant.
    """

    __tablename__ = "organizations"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Paid subscription
    subscription_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="FREE")
    subscription_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    purchased_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payer_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("payers.id", ondelete="SET NULL"), nullable=True
    )
    billing_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Earned premium (social referral)
    earned_premium_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("purchased_slots >= 0", name="ck_purchased_slots_non_negative"),
        CheckConstraint(
            "subscription_tier IN ('FREE', 'PREMIUM')", name="ck_subscription_tier_valid"
        ),
        Index(
            "idx_organizations_billing_subscription_id",
            "billing_subscription_id",
            postgresql_where=(billing_subscription_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Organization(id={self.id}, tier={self.subscription_tier}, "
            f"slots={self.purchased_slots})>"
        )


class AccountSlot(Base):
    """
    ORM model for account_slots table.

    A connected social account; every non-DISABLED slot consumes paid capacity.
    """

    __tablename__ = "account_slots"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="REGISTERED")
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('DISABLED', 'REGISTERED', 'CONNECTING', 'CONNECTED')",
            name="ck_account_slot_status_valid",
        ),
        Index("idx_account_slots_org_status", "organization_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<AccountSlot(id={self.id}, status={self.status})>"


class SocialSubmission(Base):
    """
    ORM model for social_submissions table.

    One referral post. Mutable progress (scan count, engagement, awarded days)
    lives here so the rescan workflow can resume from it.
    """

    __tablename__ = "social_submissions"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    organization_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    post_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    url_normalized: Mapped[str] = mapped_column(String(2048), nullable=False, unique=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="VERIFYING")

    # Latest scan snapshot
    contains_keyword: Mapped[bool] = mapped_column(nullable=False, default=False)
    post_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    likes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shares: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Rewards
    days_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    award_type: Mapped[AwardType | None] = mapped_column(
        SQLEnum(
            AwardType,
            name="award_type",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=True,
    )
    credit_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Scan schedule
    scan_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_scanned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_scan_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rescan_workflow_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Audit timestamps
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("days_awarded >= 0", name="ck_days_awarded_non_negative"),
        CheckConstraint("scan_count BETWEEN 0 AND 3", name="ck_scan_count_range"),
        CheckConstraint("likes >= 0 AND comments >= 0 AND shares >= 0", name="ck_engagement"),
        CheckConstraint(
            "status IN ('VERIFYING', 'VERIFIED', 'FAILED', 'REVOKED')",
            name="ck_submission_status_valid",
        ),
        CheckConstraint(
            "platform IN ('X', 'LINKEDIN', 'THREADS', 'FACEBOOK')",
            name="ck_submission_platform_valid",
        ),
        Index("idx_social_submissions_org_submitted", "organization_id", "submitted_at"),
        Index(
            "idx_social_submissions_monthly_cap",
            "organization_id",
            "verified_at",
            postgresql_where=(status == "VERIFIED"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<SocialSubmission(id={self.id}, status={self.status}, "
            f"scan_count={self.scan_count}, days_awarded={self.days_awarded})>"
        )


class WorkflowRun(Base):
    """
    ORM model for workflow_runs table.

    Durable task record for the rescan workflow. The scheduler resumes a run
    from step_index once next_wake_at has passed.
    """

    __tablename__ = "workflow_runs"

    # Workflow handle, e.g. "rescan-<submission_id>-<epoch_ms>"
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    workflow_name: Mapped[str] = mapped_column(String(100), nullable=False)
    submission_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("social_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    next_wake_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    completed_scans: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("step_index BETWEEN 1 AND 4", name="ck_workflow_step_index_range"),
        CheckConstraint("delay_seconds >= 0", name="ck_workflow_delay_non_negative"),
        CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'STOPPED', 'FAILED')",
            name="ck_workflow_status_valid",
        ),
        Index(
            "idx_workflow_runs_due",
            "next_wake_at",
            postgresql_where=(status == "PENDING"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<WorkflowRun(id={self.id}, step={self.step_index}, status={self.status}, "
            f"next_wake_at={self.next_wake_at})>"
        )
