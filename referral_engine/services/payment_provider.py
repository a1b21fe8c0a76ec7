"""
Billing Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class BalanceCredit:
    """
    Provider-agnostic customer balance credit.

    Reduces the customer's next invoice by amount_cents.
    """

    customer_id: str
    amount_cents: int
    currency: str
    memo: str
    idempotency_key: str

    def __post_init__(self) -> None:
        """Validate credit constraints."""
        if self.amount_cents <= 0:
            raise ValueError(f"Credit amount must be positive: {self.amount_cents}")
        if not self.customer_id:
            raise ValueError("customer_id cannot be empty")


@dataclass(frozen=True)
class SubscriptionEvent:
    """
    Provider-agnostic subscription webhook event.

    Drives the subscription lifecycle (activation, downgrade, cancellation).
    """

    event_id: str
    event_type: str
    subscription_id: str
    status: str
    quantity: int | None
    current_period_end: datetime | None
    metadata_organization_id: str | None
    metadata_payer_id: str | None


class BillingProvider(Protocol):
    """
    Billing provider protocol.

    Any billing provider must implement this interface so the crediting
    dispatcher stays provider-agnostic.
    """

    async def issue_credit(self, credit: BalanceCredit) -> str:
        """
        Apply a balance credit to the customer.

        Returns:
            Provider-specific balance transaction ID

        Raises:
            PaymentProviderError: If the credit cannot be issued
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> SubscriptionEvent:
        """
        Verify and parse a subscription webhook event.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
