"""
Error taxonomy for the billing webhook pipeline.

Every error maps to an API Gateway response via to_response(). Whether a
failure is recorded on the idempotency ledger is decided by the pipeline,
not by the error itself.
"""

import json
from typing import Optional


class WebhookError(Exception):
    """Base class for webhook processing errors."""

    kind = "unexpected"

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        body = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details

        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(body),
        }


class AuthenticationError(WebhookError):
    """Missing or invalid Stripe signature. Rejected before any side effect."""

    kind = "authentication"

    def __init__(self, message: str = "Invalid signature", code: str = "invalid_signature"):
        super().__init__(code=code, message=message, status_code=400)


class MalformedEventError(WebhookError):
    """Authenticated body that is not a usable event envelope."""

    kind = "malformed"

    def __init__(self, message: str = "Invalid webhook payload"):
        super().__init__(code="invalid_webhook_payload", message=message, status_code=400)


class ValidationError(WebhookError):
    """Required event data (e.g. metadata.userId) is absent or inconsistent.

    Retrying will not help until the upstream data is fixed.
    """

    kind = "validation"

    def __init__(self, message: str):
        super().__init__(code="invalid_event_data", message=message, status_code=500)


class TransientProcessingError(WebhookError):
    """Outbound lookup or transaction failure expected to clear on retry."""

    kind = "transient"

    def __init__(self, message: str):
        super().__init__(code="temporary_error", message=message, status_code=500)


class StaleEventError(WebhookError):
    """Event is older than state already applied for the user.

    Not a failure: the pipeline acknowledges it without writing.
    """

    kind = "stale"

    def __init__(self, message: str):
        super().__init__(code="stale_event", message=message, status_code=200)
