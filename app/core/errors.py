"""
Application error taxonomy.

Services raise AppError subclasses; the handlers registered in app.main turn
them into the standard error envelope:

    {"success": false, "message": "...", "error": "<ERROR_CODE>", "details": {...}}
"""

from enum import Enum
from typing import Any, Optional

from fastapi import status


class ErrorCode(str, Enum):
    """Machine-readable error tags returned in the `error` field."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    DUPLICATE_CODE = "DUPLICATE_CODE"
    ORDER_ID_DUPLICATE = "ORDER_ID_DUPLICATE"

    # Coupons
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    COUPON_INVALID_DATE = "COUPON_INVALID_DATE"
    COUPON_EXPIRED = "COUPON_EXPIRED"
    COUPON_USAGE_LIMIT_REACHED = "COUPON_USAGE_LIMIT_REACHED"
    COUPON_MIN_AMOUNT_NOT_MET = "COUPON_MIN_AMOUNT_NOT_MET"
    COUPON_USER_LIMIT_REACHED = "COUPON_USER_LIMIT_REACHED"
    COUPON_CATEGORY_NOT_APPLICABLE = "COUPON_CATEGORY_NOT_APPLICABLE"
    COUPON_DURATION_NOT_APPLICABLE = "COUPON_DURATION_NOT_APPLICABLE"

    # Payments
    ORDER_ALREADY_PAID = "ORDER_ALREADY_PAID"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    PAYMENT_NOT_CAPTURED = "PAYMENT_NOT_CAPTURED"
    PAYMENT_GATEWAY_ERROR = "PAYMENT_GATEWAY_ERROR"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


class AppError(Exception):
    """Base class for errors that map to an API error response."""

    code: ErrorCode = ErrorCode.INTERNAL_SERVER_ERROR
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.code.value,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(AppError):
    code = ErrorCode.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(AppError):
    code = ErrorCode.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(AppError):
    """Uniqueness violations (DUPLICATE_CODE, ORDER_ID_DUPLICATE, DUPLICATE_PAYMENT)."""
    code = ErrorCode.DUPLICATE_CODE
    status_code = status.HTTP_409_CONFLICT


class CouponError(AppError):
    """A coupon was rejected; `code` carries the specific COUPON_* reason."""
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: ErrorCode, message: str, details: Optional[dict[str, Any]] = None):
        status_code = (
            status.HTTP_404_NOT_FOUND
            if code == ErrorCode.COUPON_NOT_FOUND
            else status.HTTP_400_BAD_REQUEST
        )
        super().__init__(message, code=code, status_code=status_code, details=details)


class PaymentError(AppError):
    """Payment-boundary rejections (ORDER_ALREADY_PAID, AMOUNT_MISMATCH, ...)."""
    status_code = status.HTTP_400_BAD_REQUEST


class SignatureMismatchError(PaymentError):
    code = ErrorCode.SIGNATURE_MISMATCH


class PaymentGatewayError(AppError):
    code = ErrorCode.PAYMENT_GATEWAY_ERROR
    status_code = status.HTTP_502_BAD_GATEWAY


class ConfigurationError(AppError):
    code = ErrorCode.CONFIGURATION_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
