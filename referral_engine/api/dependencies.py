"""
FastAPI Dependencies - Authentication, organization context and collaborators.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets
from uuid import UUID

from fastapi import Header, HTTPException, Request, status
from structlog import get_logger

from referral_engine.config import settings
from referral_engine.models.domain import RewardPolicy
from referral_engine.services.content_verification import ApifyContentVerifier
from referral_engine.services.stripe_provider import StripeProvider
from referral_engine.services.workflow import WorkflowScheduler

logger = get_logger(__name__)

_content_verifier: ApifyContentVerifier | None = None


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    Check the shared API key when API_KEY is configured.

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    if not settings.api_key:
        return

    if not x_api_key or not secrets.compare_digest(x_api_key, settings.api_key):
        logger.warning("api_key_rejected", has_api_key=bool(x_api_key))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


async def get_organization_id(
    x_organization_id: str = Header(..., description="Organization the request acts for"),
) -> UUID:
    """
    Organization context from the X-Organization-ID header.

    Raises:
        HTTPException 400 if the header is not a UUID
    """
    try:
        return UUID(x_organization_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Organization-ID must be a UUID",
        ) from exc


def get_reward_policy() -> RewardPolicy:
    """Reward policy built from settings."""
    return RewardPolicy.from_settings()


def get_billing_provider() -> StripeProvider:
    """
    Stripe provider built from settings.

    Raises:
        HTTPException 503 if Stripe is not configured
    """
    if not settings.stripe_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


def get_content_verifier() -> ApifyContentVerifier:
    """Shared Apify verifier (one HTTP connection pool per process)."""
    global _content_verifier
    if _content_verifier is None:
        _content_verifier = ApifyContentVerifier.from_settings()
    return _content_verifier


async def close_content_verifier() -> None:
    global _content_verifier
    if _content_verifier is not None:
        await _content_verifier.close()
        _content_verifier = None


def get_workflow_scheduler(request: Request) -> WorkflowScheduler:
    """Scheduler created in the application lifespan."""
    scheduler: WorkflowScheduler | None = getattr(request.app.state, "workflow_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Workflow scheduler not available",
        )
    return scheduler
