"""Error taxonomy for the ingestion pipeline.

Rejected orders (unsupported currency, nothing to credit, duplicate) are
not errors; see ``loyalty.ledger.CreditResult``.
"""

from __future__ import annotations


class LoyaltyError(Exception):
    """Base class for loyalty pipeline errors."""


class WebhookAuthenticationError(LoyaltyError):
    """Signature header missing or not matching the payload."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Webhook authentication failed: {reason}")


class WebhookConfigurationError(LoyaltyError):
    """Verification cannot run because the shared secret is not configured."""


class InvalidOrderError(LoyaltyError, ValueError):
    """Order payload is malformed and can never be credited."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class TransientStorageError(LoyaltyError):
    """Storage failure that may succeed on a later attempt."""

    def __init__(self, message: str, attempts: int = 1) -> None:
        self.attempts = attempts
        super().__init__(message)
