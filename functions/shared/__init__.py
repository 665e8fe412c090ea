# Shared utilities package
from .constants import TIER_QUERY_LIMITS
from .errors import WebhookError
from .response_utils import error_response, received_response

__all__ = [
    "TIER_QUERY_LIMITS",
    "error_response",
    "received_response",
    "WebhookError",
]
