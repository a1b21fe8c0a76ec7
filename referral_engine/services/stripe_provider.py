"""
Stripe Billing Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

from datetime import UTC, datetime

import stripe
from structlog import get_logger

from referral_engine.exceptions import (
    PaymentProviderError,
    UnsupportedWebhookEventError,
    WebhookVerificationError,
)
from referral_engine.services.payment_provider import BalanceCredit, SubscriptionEvent

logger = get_logger(__name__)

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)


class StripeProvider:
    """
    Stripe billing provider implementation.

    Implements the BillingProvider protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    async def issue_credit(self, credit: BalanceCredit) -> str:
        """
        Create a customer balance transaction crediting the customer.

        Stripe records credits as negative balance amounts.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info(
                "creating_stripe_balance_credit",
                customer_id=credit.customer_id,
                amount_cents=credit.amount_cents,
                idempotency_key=credit.idempotency_key,
            )

            transaction = stripe.Customer.create_balance_transaction(
                credit.customer_id,
                amount=-credit.amount_cents,
                currency=credit.currency.lower(),
                description=credit.memo,
                idempotency_key=credit.idempotency_key,
            )

            logger.info(
                "stripe_balance_credit_created",
                customer_id=credit.customer_id,
                balance_transaction_id=transaction.id,
                ending_balance=transaction.ending_balance,
            )

            transaction_id: str = transaction.id
            return transaction_id

        except stripe.StripeError as exc:
            logger.error(
                "stripe_balance_credit_failed",
                customer_id=credit.customer_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe balance credit failed: {exc}") from exc

    async def verify_webhook(self, payload: bytes, signature: str) -> SubscriptionEvent:
        """
        Verify and parse a Stripe subscription webhook event.

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
            UnsupportedWebhookEventError: If an authentic event is not a
                subscription event
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)

        if event.type not in SUBSCRIPTION_EVENT_TYPES:
            raise UnsupportedWebhookEventError(event.id, event.type)

        subscription = event.data.object
        metadata = subscription.get("metadata") or {}
        period_end = subscription.get("current_period_end")

        return SubscriptionEvent(
            event_id=event.id,
            event_type=event.type,
            subscription_id=subscription.get("id"),
            status=subscription.get("status", ""),
            quantity=subscription.get("quantity"),
            current_period_end=(
                datetime.fromtimestamp(period_end, tz=UTC) if period_end else None
            ),
            metadata_organization_id=metadata.get("organization_id"),
            metadata_payer_id=metadata.get("payer_id"),
        )
