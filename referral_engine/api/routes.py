"""
API Routes - FastAPI endpoints for the social referral program.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from referral_engine.api.dependencies import (
    get_billing_provider,
    get_organization_id,
    get_workflow_scheduler,
    require_api_key,
)
from referral_engine.config import settings
from referral_engine.db.session import get_read_db, get_write_db
from referral_engine.exceptions import (
    DataIntegrityError,
    OrganizationNotFoundError,
    ReferralIneligibleError,
    SubmissionConflictError,
    SubmissionNotFoundError,
    UnsupportedWebhookEventError,
    WebhookVerificationError,
)
from referral_engine.models.api import (
    EarnedPremiumResponse,
    EntitlementResponse,
    HealthResponse,
    SubmissionListResponse,
    SubmissionResponse,
    SubmissionStatus,
    SubmitPostRequest,
    SubmitPostResponse,
)
from referral_engine.models.domain import SubmissionData
from referral_engine.services.entitlement import EntitlementService
from referral_engine.services.referral import SocialReferralService
from referral_engine.services.slots import SubscriptionLifecycleService
from referral_engine.services.stripe_provider import StripeProvider
from referral_engine.services.workflow import WorkflowScheduler

logger = get_logger(__name__)

router = APIRouter()


def _submission_response(data: SubmissionData) -> SubmissionResponse:
    return SubmissionResponse(
        id=data.submission_id,
        platform=data.platform,
        post_url=data.post_url,
        status=SubmissionStatus(data.status),
        submitted_at=data.submitted_at,
        verified_at=data.verified_at,
        contains_keyword=data.contains_keyword,
        post_text=data.post_text,
        likes=data.likes,
        comments=data.comments,
        shares=data.shares,
        days_awarded=data.days_awarded,
        scan_count=data.scan_count,
        next_scan_at=data.next_scan_at,
        failure_reason=data.failure_reason,
    )


@router.post(
    "/v1/referrals/submissions",
    response_model=SubmitPostResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def submit_post(
    request: SubmitPostRequest,
    background_tasks: BackgroundTasks,
    organization_id: UUID = Depends(get_organization_id),
    db: AsyncSession = Depends(get_write_db),
    scheduler: WorkflowScheduler = Depends(get_workflow_scheduler),
) -> SubmitPostResponse:
    """
    Submit a social post for referral verification.

    Creates the submission in VERIFYING and its durable workflow run, then
    kicks the initial verification in the background. If the process dies
    before it runs, the scheduler picks the run up on its next tick.
    """
    service = SocialReferralService(db, rescan_delay_seconds=settings.rescan_delay_seconds)

    try:
        receipt = await service.submit(organization_id, request.post_url, request.platform)
    except SubmissionConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This post has already been submitted",
        ) from exc
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc
    except ReferralIneligibleError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Not eligible for the referral program: {exc.reason}",
        ) from exc
    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    background_tasks.add_task(scheduler.run_step, receipt.workflow_id)

    return SubmitPostResponse(id=receipt.submission_id)


@router.get(
    "/v1/referrals/submissions/{submission_id}",
    response_model=SubmissionResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_submission(
    submission_id: UUID,
    organization_id: UUID = Depends(get_organization_id),
    db: AsyncSession = Depends(get_read_db),
) -> SubmissionResponse:
    """Current snapshot of one submission. Read replica is fine here."""
    service = SocialReferralService(db)
    try:
        data = await service.get_status(organization_id, submission_id)
    except SubmissionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Submission not found",
        ) from exc
    return _submission_response(data)


@router.get(
    "/v1/referrals/submissions",
    response_model=SubmissionListResponse,
    dependencies=[Depends(require_api_key)],
)
async def list_submissions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    organization_id: UUID = Depends(get_organization_id),
    db: AsyncSession = Depends(get_read_db),
) -> SubmissionListResponse:
    """Organization's submissions, newest first."""
    service = SocialReferralService(db)
    items = await service.list_submissions(organization_id, limit=limit, offset=offset)
    return SubmissionListResponse(
        submissions=[_submission_response(item) for item in items],
        limit=limit,
        offset=offset,
    )


@router.get(
    "/v1/referrals/earned-premium",
    response_model=EarnedPremiumResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_earned_premium(
    organization_id: UUID = Depends(get_organization_id),
    db: AsyncSession = Depends(get_read_db),
) -> EarnedPremiumResponse:
    """Earned premium grant status with whole days remaining."""
    try:
        earned = await EntitlementService(db).get_earned_premium_status(organization_id)
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc
    return EarnedPremiumResponse(
        is_active=earned.is_active,
        expires_at=earned.expires_at,
        days_remaining=earned.days_remaining,
    )


@router.get(
    "/v1/referrals/entitlement",
    response_model=EntitlementResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_entitlement(
    organization_id: UUID = Depends(get_organization_id),
    db: AsyncSession = Depends(get_read_db),
) -> EntitlementResponse:
    """Which mechanism currently grants premium, plus slot usage."""
    try:
        sub = await EntitlementService(db).get_subscription_status(organization_id)
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc
    return EntitlementResponse(
        is_active=sub.is_active,
        premium_source=sub.premium_source,
        subscription_tier=sub.subscription_tier,
        expires_at=sub.expires_at,
        earned_premium_expires_at=sub.earned_premium_expires_at,
        used_slots=sub.used_slots,
        purchased_slots=sub.purchased_slots,
    )


@router.post("/v1/referrals/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    stripe_provider: StripeProvider = Depends(get_billing_provider),
) -> dict[str, str]:
    """
    Handle Stripe subscription webhooks.

    Drives activation, downgrade (with slot reclamation) and cancellation.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        event = await stripe_provider.verify_webhook(payload, signature)
    except UnsupportedWebhookEventError as exc:
        # Acknowledged so Stripe does not retry events this service never handles
        logger.info(
            "stripe_webhook_ignored_event_type",
            event_id=exc.event_id,
            event_type=exc.event_type,
        )
        return {"status": "ignored", "event_id": exc.event_id}
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    logger.info(
        "stripe_webhook_received",
        event_id=event.event_id,
        event_type=event.event_type,
        subscription_id=event.subscription_id,
    )

    try:
        action = await SubscriptionLifecycleService(db).handle_subscription_event(event)
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc

    return {"status": action, "event_id": event.event_id}


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
