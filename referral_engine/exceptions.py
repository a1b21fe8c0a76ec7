"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class ReferralError(Exception):
    """Base exception for all referral errors."""

    pass


class SubmissionConflictError(ReferralError):
    """Raised when a normalized post URL has already been submitted."""

    def __init__(self, url_normalized: str, same_organization: bool = False) -> None:
        self.url_normalized = url_normalized
        self.same_organization = same_organization
        owner = "this organization" if same_organization else "another organization"
        super().__init__(f"Post already submitted by {owner}: {url_normalized}")


class SubmissionNotFoundError(ReferralError):
    """Raised when a submission doesn't exist (or belongs to another org)."""

    def __init__(self, submission_id: UUID) -> None:
        self.submission_id = submission_id
        super().__init__(f"Submission not found: {submission_id}")


class OrganizationNotFoundError(ReferralError):
    """Raised when an organization doesn't exist."""

    def __init__(self, organization_id: UUID) -> None:
        self.organization_id = organization_id
        super().__init__(f"Organization not found: {organization_id}")


class ReferralIneligibleError(ReferralError):
    """Raised when an organization may not take part in the referral program."""

    def __init__(self, organization_id: UUID, reason: str) -> None:
        self.organization_id = organization_id
        self.reason = reason
        super().__init__(f"Organization {organization_id} not eligible: {reason}")


class InvalidTransitionError(ReferralError):
    """Raised when a submission status change is not allowed."""

    def __init__(self, submission_id: UUID, current: str, target: str) -> None:
        self.submission_id = submission_id
        self.current = current
        self.target = target
        super().__init__(f"Submission {submission_id} cannot move from {current} to {target}")


class ContentVerificationError(ReferralError):
    """Raised when the content-verification service cannot inspect a post."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Content verification failed: {message}")


class PaymentProviderError(ReferralError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(ReferralError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class UnsupportedWebhookEventError(ReferralError):
    """Raised when an authentic webhook carries an event type this service does not handle."""

    def __init__(self, event_id: str, event_type: str) -> None:
        self.event_id = event_id
        self.event_type = event_type
        super().__init__(f"Unsupported webhook event type: {event_type}")


class WorkflowError(ReferralError):
    """Raised when a durable workflow run cannot be started or advanced."""

    def __init__(self, workflow_id: str, message: str) -> None:
        self.workflow_id = workflow_id
        self.message = message
        super().__init__(f"Workflow {workflow_id} error: {message}")


class DataIntegrityError(ReferralError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


