"""QuickBooks integration - OAuth credentials, entity sync, invoice state and webhooks"""

from .errors import (
    IntegrationNotFoundError,
    QuickBooksAPIError,
    QuickBooksError,
    ReconnectRequiredError,
)

__all__ = [
    "IntegrationNotFoundError",
    "QuickBooksAPIError",
    "QuickBooksError",
    "ReconnectRequiredError",
]
