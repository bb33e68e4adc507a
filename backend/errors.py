"""
Error taxonomy for the payments service.

Every failure that can reach a client is a PaymentServiceError carrying a
stable machine code. The API layer renders it as ``{error, message, details?}``
using the public message table below, so raw provider payloads never leak.
"""

from typing import Any, Dict, Optional


DEFAULT_MESSAGE = "Something went wrong. Please try again."

PUBLIC_MESSAGES: Dict[str, str] = {
    "UNAUTHORIZED": "Please sign in to continue.",
    "FORBIDDEN": "You are not allowed to perform this action.",
    "INVALID_TERMINAL": "You are not allowed to perform this action.",
    "INVALID_TOKEN": "You are not allowed to perform this action.",

    "INVALID_REQUEST": "Invalid request. Reload the page and try again.",
    "INVALID_NOTIFICATION": "Invalid request. Reload the page and try again.",
    "MISSING_ORDER_ID": "Invalid request. Reload the page and try again.",
    "COURSE_PRICE_INVALID": "This course cannot be purchased right now.",
    "COURSE_IS_FREE": "This course is free and does not need to be purchased.",

    "DATABASE_TIMEOUT": "The server is responding slowly. Please try again.",
    "DATABASE_ERROR": "A server error occurred. Please try again.",

    "PAYMENTS_NOT_CONFIGURED": "Payments are temporarily unavailable. Please try later.",
    "RECEIPT_NOT_CONFIGURED": "Payments are temporarily unavailable. Please try later.",
    "RECEIPT_EMAIL_REQUIRED": "An email address is required to issue a receipt.",
    "PAYMENT_PROVIDER_ERROR": "The payment service is unavailable right now. Please try later.",
    "TBANK_INIT_FAILED": "The payment service is unavailable right now. Please try later.",
    "TBANK_INIT_REJECTED": "The payment could not be started. Please try again.",
    "TBANK_GET_STATE_FAILED": "The payment service is unavailable right now. Please try later.",
    "TBANK_SIGNATURE_REJECTED": "The payment service is unavailable right now. Please try later.",

    "COURSE_NOT_FOUND": "Course not found.",
    "PURCHASE_NOT_FOUND": "Payment not found.",
}

# Keys of a provider response that may be shown outside production.
PROVIDER_DETAIL_KEYS = ("ErrorCode", "Message", "Details", "Status")


def get_public_message(code: Optional[str]) -> str:
    return PUBLIC_MESSAGES.get(code or "", DEFAULT_MESSAGE)


def whitelist_provider_details(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only the provider fields that are safe to forward."""
    if not isinstance(raw, dict):
        return {}
    return {key: raw[key] for key in PROVIDER_DETAIL_KEYS if raw.get(key) is not None}


class PaymentServiceError(Exception):
    """Base error with an HTTP status and a stable public code."""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code or self.default_code
        self.message = message or get_public_message(self.code)
        self.details = details
        super().__init__(f"{self.code}: {self.message}")


class NotConfigured(PaymentServiceError):
    status_code = 500
    default_code = "PAYMENTS_NOT_CONFIGURED"


class InvalidRequest(PaymentServiceError):
    status_code = 400
    default_code = "INVALID_REQUEST"


class CourseNotFound(PaymentServiceError):
    status_code = 404
    default_code = "COURSE_NOT_FOUND"


class PurchaseNotFound(PaymentServiceError):
    status_code = 404
    default_code = "PURCHASE_NOT_FOUND"


class Forbidden(PaymentServiceError):
    status_code = 403
    default_code = "FORBIDDEN"


class Unauthorized(PaymentServiceError):
    status_code = 401
    default_code = "UNAUTHORIZED"


class ProviderError(PaymentServiceError):
    """Transport failure, timeout, rejection or exhausted signature modes."""
    status_code = 502
    default_code = "PAYMENT_PROVIDER_ERROR"


class ReceiptNotConfigured(PaymentServiceError):
    status_code = 500
    default_code = "RECEIPT_NOT_CONFIGURED"


class ReceiptEmailRequired(PaymentServiceError):
    status_code = 400
    default_code = "RECEIPT_EMAIL_REQUIRED"


class StoreError(PaymentServiceError):
    status_code = 503
    default_code = "DATABASE_ERROR"


class DuplicateOrder(StoreError):
    status_code = 409
    default_code = "DUPLICATE_ORDER"
