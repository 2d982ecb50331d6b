"""
WebUntis integration: HTTP client, response parsing and error taxonomy.
"""

from .errors import (
    TimetableErrorCode,
    FallbackReason,
    UntisServiceError,
    MissingCredentialError,
    CredentialDecryptError,
    LoginFailedError,
    BadCredentialsError,
    FetchFailedError,
    UserNotFoundError,
    AccessDeniedError,
    fallback_reason_for
)

__all__ = [
    "TimetableErrorCode",
    "FallbackReason",
    "UntisServiceError",
    "MissingCredentialError",
    "CredentialDecryptError",
    "LoginFailedError",
    "BadCredentialsError",
    "FetchFailedError",
    "UserNotFoundError",
    "AccessDeniedError",
    "fallback_reason_for"
]
