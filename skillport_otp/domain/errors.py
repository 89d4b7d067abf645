from __future__ import annotations
from enum import Enum


class OtpErrorCode(str, Enum):
    INVALID_REQUEST = "InvalidRequest"
    NOT_FOUND = "NotFound"
    EXPIRED = "Expired"
    ATTEMPTS_EXHAUSTED = "AttemptsExhausted"
    INVALID_CODE = "InvalidCode"
    EMAIL_DELIVERY_FAILED = "EmailDeliveryFailed"
    INTERNAL_ERROR = "InternalError"


# HTTP status each failure is reported with
HTTP_STATUS = {
    OtpErrorCode.INVALID_REQUEST: 400,
    OtpErrorCode.NOT_FOUND: 400,
    OtpErrorCode.EXPIRED: 400,
    OtpErrorCode.ATTEMPTS_EXHAUSTED: 400,
    OtpErrorCode.INVALID_CODE: 400,
    OtpErrorCode.EMAIL_DELIVERY_FAILED: 500,
    OtpErrorCode.INTERNAL_ERROR: 500,
}


class StoreConflict(Exception):
    """Raised when an optimistic update keeps losing to concurrent writers."""
