"""QuickBooks integration errors"""

from typing import Optional


class QuickBooksError(Exception):
    """Base class for QuickBooks integration failures"""

    pass


class IntegrationNotFoundError(QuickBooksError):
    """The account has never connected QuickBooks (or has disconnected)"""

    retryable = False

    def __init__(self, message: str = "No QuickBooks integration found"):
        super().__init__(message)


class ReconnectRequiredError(QuickBooksError):
    """Stored credentials can no longer be refreshed; the user must redo OAuth"""

    retryable = False

    def __init__(self, message: str = "QuickBooks connection expired. Please reconnect QuickBooks."):
        super().__init__(message)


class QuickBooksAPIError(QuickBooksError):
    """Non-2xx response from the QuickBooks API"""

    def __init__(self, status_code: int, message: str, body: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.body = body
        super().__init__(f"QuickBooks API error: {status_code} - {message}")

    @property
    def retryable(self) -> bool:
        return self.status_code in (408, 429) or self.status_code >= 500
