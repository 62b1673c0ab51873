"""Exception types shared by the checkout services."""
from typing import Optional


class CheckoutError(Exception):
    """Base error for payment outcome resolution."""


class PlatformApiError(CheckoutError):
    """The platform API answered with an error or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
