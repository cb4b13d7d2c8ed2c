"""
Receipt verification errors and the App Store status taxonomy.

Every failure of a verification call is raised as a ReceiptError subclass,
so callers can handle the whole family with a single except clause.
"""
from enum import IntEnum
from typing import Optional


class AppStoreStatus(IntEnum):
    """Status codes returned in the verifyReceipt response body."""
    OK = 0
    INVALID_JSON = 21000
    MALFORMED_RECEIPT_DATA = 21002
    RECEIPT_AUTHENTICATION = 21003
    SHARED_SECRET_MISMATCH = 21004
    RECEIPT_SERVER_UNAVAILABLE = 21005
    # iOS 6 style transaction receipts only
    SUBSCRIPTION_EXPIRED = 21006
    SANDBOX_RECEIPT_ON_PRODUCTION = 21007
    PRODUCTION_RECEIPT_ON_SANDBOX = 21008
    UNAUTHORIZED_RECEIPT = 21010


RETRYABLE_STATUS_MIN = 21100
RETRYABLE_STATUS_MAX = 21199

DEFAULT_STATUS_ERROR = "Internal data access error"
UNKNOWN_STATUS_ERROR = "unknown response status"

RECEIPT_ERRORS = {
    AppStoreStatus.INVALID_JSON: "The App Store could not read the JSON object you provided.",
    AppStoreStatus.MALFORMED_RECEIPT_DATA: "The data in the receipt-data property was malformed or missing.",
    AppStoreStatus.RECEIPT_AUTHENTICATION: "The receipt could not be authenticated.",
    AppStoreStatus.SHARED_SECRET_MISMATCH: (
        "The shared secret you provided does not match the shared secret on file for your account."
    ),
    AppStoreStatus.RECEIPT_SERVER_UNAVAILABLE: "The receipt server is not currently available.",
    AppStoreStatus.SUBSCRIPTION_EXPIRED: "This receipt is valid but the subscription has expired.",
    AppStoreStatus.SANDBOX_RECEIPT_ON_PRODUCTION: (
        "This receipt is from the test environment, but it was sent to the production environment "
        "for verification. Send it to the test environment instead."
    ),
    AppStoreStatus.PRODUCTION_RECEIPT_ON_SANDBOX: (
        "This receipt is from the production environment, but it was sent to the test environment "
        "for verification. Send it to the production environment instead."
    ),
    AppStoreStatus.UNAUTHORIZED_RECEIPT: (
        "This receipt could not be authorized. Treat this the same as if a purchase was never made."
    ),
}


def is_retryable_status(status: int) -> bool:
    """Check whether a status code falls in Apple's transient-failure range."""
    return RETRYABLE_STATUS_MIN <= status <= RETRYABLE_STATUS_MAX


def status_message(status: int) -> str:
    """
    Get the human-readable cause for a non-zero status code.

    Args:
        status: Status code from the response body

    Returns:
        Message from the known-status table, the generic internal error
        message for the retryable range, or the unknown-status message
    """
    message = RECEIPT_ERRORS.get(status)
    if message is not None:
        return message

    if is_retryable_status(status):
        return DEFAULT_STATUS_ERROR

    return UNKNOWN_STATUS_ERROR


# ========== Exceptions ==========

class ReceiptError(Exception):
    """Base class for receipt verification failures."""


class ReceiptTransportError(ReceiptError):
    """The HTTP round trip to Apple failed or returned a non-200 status."""

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


class ReceiptDecodeError(ReceiptError):
    """The response (or one of its sections) could not be decoded."""


class VerifyReceiptError(ReceiptError):
    """Apple answered with a non-zero verification status."""

    def __init__(self, status: int, message: Optional[str] = None):
        self.status = status
        self.message = message if message is not None else status_message(status)
        super().__init__(self.message)

    def __eq__(self, other):
        if not isinstance(other, VerifyReceiptError):
            return NotImplemented
        return (self.status, self.message) == (other.status, other.message)

    def __hash__(self):
        return hash((self.status, self.message))

    def __repr__(self):
        return f"VerifyReceiptError(status={self.status}, message={self.message!r})"


def check_status_error(response) -> Optional[VerifyReceiptError]:
    """
    Convert the status of a ReceiptResponse into an error.

    Args:
        response: Any object with an integer ``status`` attribute

    Returns:
        None for status 0, otherwise a VerifyReceiptError
    """
    if response.status == AppStoreStatus.OK:
        return None

    return VerifyReceiptError(response.status)
