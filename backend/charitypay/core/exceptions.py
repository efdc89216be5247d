"""
Domain exceptions.

Services raise these; the API layer maps them to HTTP responses.
"""
from typing import Optional


class CharityPayError(Exception):
    """Base class for all domain errors."""


class ValidationError(CharityPayError):
    """Input failed a business rule."""


class InvalidAmountError(ValidationError):
    """Donation amount is missing, non-positive or below the minimum."""


class NotFoundError(CharityPayError):
    """A referenced record does not exist."""


class OrganizationNotPayableError(CharityPayError):
    """The organization's connected account cannot receive payments."""

    def __init__(self, organization_id: str, status: Optional[str] = None):
        self.organization_id = organization_id
        self.status = status
        super().__init__(
            f"Organization {organization_id} cannot receive payments"
            + (f" (account status: {status})" if status else "")
        )


class WebhookSignatureError(ValidationError):
    """Webhook payload signature is missing or invalid."""


class ProcessorError(CharityPayError):
    """
    A payment processor call failed.

    ``retryable`` marks transient failures (soft declines, network and
    processor-side errors). ``connection_error`` is set when the request may
    have reached the processor, so a retry must reuse the idempotency key.
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        decline_code: Optional[str] = None,
        retryable: bool = False,
        connection_error: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.decline_code = decline_code
        self.retryable = retryable
        self.connection_error = connection_error

    def __str__(self) -> str:
        base = super().__str__()
        if self.decline_code:
            return f"{base} ({self.code}/{self.decline_code})"
        if self.code:
            return f"{base} ({self.code})"
        return base
