"""initial referral schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create referral schema."""

    # ========================================================================
    # Create payers table
    # ========================================================================
    op.create_table(
        'payers',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('billing_customer_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_index('idx_payers_billing_customer_id', 'payers', ['billing_customer_id'], postgresql_where=sa.text('billing_customer_id IS NOT NULL'))

    # ========================================================================
    # Create organizations table
    # ========================================================================
    op.create_table(
        'organizations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('subscription_tier', sa.String(20), nullable=False, server_default='FREE'),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('purchased_slots', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('payer_id', UUID(as_uuid=True), nullable=True),
        sa.Column('billing_subscription_id', sa.String(255), nullable=True),
        sa.Column('earned_premium_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('purchased_slots >= 0', name='ck_purchased_slots_non_negative'),
        sa.CheckConstraint("subscription_tier IN ('FREE', 'PREMIUM')", name='ck_subscription_tier_valid'),
        sa.ForeignKeyConstraint(['payer_id'], ['payers.id'], name='fk_organizations_payer', ondelete='SET NULL'),
    )

    op.create_index('idx_organizations_billing_subscription_id', 'organizations', ['billing_subscription_id'], postgresql_where=sa.text('billing_subscription_id IS NOT NULL'))

    # ========================================================================
    # Create account_slots table
    # ========================================================================
    op.create_table(
        'account_slots',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='REGISTERED'),
        sa.Column('label', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("status IN ('DISABLED', 'REGISTERED', 'CONNECTING', 'CONNECTED')", name='ck_account_slot_status_valid'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], name='fk_account_slots_organization', ondelete='CASCADE'),
    )

    op.create_index('ix_account_slots_organization_id', 'account_slots', ['organization_id'])
    op.create_index('idx_account_slots_org_status', 'account_slots', ['organization_id', 'status'])

    # ========================================================================
    # Create social_submissions table
    # ========================================================================
    op.create_table(
        'social_submissions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('platform', sa.String(20), nullable=False),
        sa.Column('post_url', sa.String(2048), nullable=False),
        sa.Column('url_normalized', sa.String(2048), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='VERIFYING'),
        sa.Column('contains_keyword', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('post_text', sa.Text(), nullable=True),
        sa.Column('likes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('comments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('shares', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('days_awarded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('award_type', sa.String(20), nullable=True),
        sa.Column('credit_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failure_reason', sa.String(500), nullable=True),
        sa.Column('scan_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_scanned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_scan_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rescan_workflow_id', sa.String(255), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('days_awarded >= 0', name='ck_days_awarded_non_negative'),
        sa.CheckConstraint('scan_count BETWEEN 0 AND 3', name='ck_scan_count_range'),
        sa.CheckConstraint('likes >= 0 AND comments >= 0 AND shares >= 0', name='ck_engagement'),
        sa.CheckConstraint("status IN ('VERIFYING', 'VERIFIED', 'FAILED', 'REVOKED')", name='ck_submission_status_valid'),
        sa.CheckConstraint("platform IN ('X', 'LINKEDIN', 'THREADS', 'FACEBOOK')", name='ck_submission_platform_valid'),
        sa.CheckConstraint("award_type IN ('BILLING_CREDIT', 'EARNED_DAYS')", name='award_type'),
        sa.UniqueConstraint('url_normalized', name='uq_social_submissions_url_normalized'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], name='fk_social_submissions_organization', ondelete='CASCADE'),
    )

    op.create_index('idx_social_submissions_org_submitted', 'social_submissions', ['organization_id', 'submitted_at'])
    # Monthly cap aggregate only reads VERIFIED rows
    op.create_index('idx_social_submissions_monthly_cap', 'social_submissions', ['organization_id', 'verified_at'], postgresql_where=sa.text("status = 'VERIFIED'"))

    # ========================================================================
    # Create workflow_runs table
    # ========================================================================
    op.create_table(
        'workflow_runs',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('workflow_name', sa.String(100), nullable=False),
        sa.Column('submission_id', UUID(as_uuid=True), nullable=False),
        sa.Column('step_index', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('delay_seconds', sa.Integer(), nullable=False),
        sa.Column('next_wake_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('result_reason', sa.String(100), nullable=True),
        sa.Column('completed_scans', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint('step_index BETWEEN 1 AND 4', name='ck_workflow_step_index_range'),
        sa.CheckConstraint('delay_seconds >= 0', name='ck_workflow_delay_non_negative'),
        sa.CheckConstraint("status IN ('PENDING', 'COMPLETED', 'STOPPED', 'FAILED')", name='ck_workflow_status_valid'),
        sa.ForeignKeyConstraint(['submission_id'], ['social_submissions.id'], name='fk_workflow_runs_submission', ondelete='CASCADE'),
    )

    op.create_index('ix_workflow_runs_submission_id', 'workflow_runs', ['submission_id'])
    # Scheduler poll: due PENDING runs ordered by wake time
    op.create_index('idx_workflow_runs_due', 'workflow_runs', ['next_wake_at'], postgresql_where=sa.text("status = 'PENDING'"))


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('workflow_runs')
    op.drop_table('social_submissions')
    op.drop_table('account_slots')
    op.drop_table('organizations')
    op.drop_table('payers')
