"""
Error taxonomy for WebUntis access and timetable synchronization.

Every failure raised by the upstream client, the credential layer and the
timetable cache is an ``UntisServiceError`` carrying a stable ``code``.
Retryable errors may be absorbed by serving a stale cached timetable;
fatal ones always propagate to the caller.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class TimetableErrorCode(str, enum.Enum):
    """Stable error codes surfaced to API callers."""
    MISSING_CREDENTIAL = "MISSING_CREDENTIAL"
    DECRYPT_FAILED = "DECRYPT_FAILED"
    LOGIN_FAILED = "LOGIN_FAILED"
    BAD_CREDENTIALS = "BAD_CREDENTIALS"
    FETCH_FAILED = "FETCH_FAILED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"


class FallbackReason(str, enum.Enum):
    """Why a stale cached timetable was served instead of live data."""
    BAD_CREDENTIALS = "BAD_CREDENTIALS"
    UNTIS_UNAVAILABLE = "UNTIS_UNAVAILABLE"


class UntisServiceError(Exception):
    """Base exception for timetable synchronization errors."""

    code: TimetableErrorCode = TimetableErrorCode.FETCH_FAILED
    status_code: int = 502
    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/API responses."""
        return {
            "message": self.message,
            "code": self.code.value,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class MissingCredentialError(UntisServiceError):
    """User has no encrypted WebUntis secret on file."""
    code = TimetableErrorCode.MISSING_CREDENTIAL
    status_code = 400


class CredentialDecryptError(UntisServiceError):
    """Stored secret could not be decrypted."""
    code = TimetableErrorCode.DECRYPT_FAILED
    status_code = 500


class LoginFailedError(UntisServiceError):
    """WebUntis login failed for reasons other than bad credentials."""
    code = TimetableErrorCode.LOGIN_FAILED
    status_code = 502
    retryable = True


class BadCredentialsError(UntisServiceError):
    """WebUntis rejected the stored username/password."""
    code = TimetableErrorCode.BAD_CREDENTIALS
    status_code = 401
    retryable = True


class FetchFailedError(UntisServiceError):
    """A WebUntis data call failed after a successful login."""
    code = TimetableErrorCode.FETCH_FAILED
    status_code = 502
    retryable = True


class UserNotFoundError(UntisServiceError):
    code = TimetableErrorCode.USER_NOT_FOUND
    status_code = 404


class AccessDeniedError(UntisServiceError):
    code = TimetableErrorCode.ACCESS_DENIED
    status_code = 403


def fallback_reason_for(error: UntisServiceError) -> FallbackReason:
    """Map a retryable error to the reason reported with a stale response."""
    if error.code == TimetableErrorCode.BAD_CREDENTIALS:
        return FallbackReason.BAD_CREDENTIALS
    return FallbackReason.UNTIS_UNAVAILABLE
