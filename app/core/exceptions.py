import logging
from fastapi import HTTPException
from typing import Dict, Optional

logger = logging.getLogger(__name__)

INCORRECT_CODE = "Incorrect code"


class TwoFactorError(Exception):
    """Base class for every failure the 2FA subsystem reports to its caller"""
    kind = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)


class InvalidSecretEncoding(TwoFactorError):
    kind = "invalid_secret_encoding"


class CryptoBackendFailure(TwoFactorError):
    """HMAC, randomness or remote verifier unavailable. Safe to retry."""
    kind = "crypto_backend_failure"


class CodeMismatch(TwoFactorError):
    kind = "code_mismatch"


class ReplayedToken(TwoFactorError):
    kind = "replayed_token"


class RateLimited(TwoFactorError):
    kind = "rate_limited"

    def __init__(self, retry_after: float, message: str = ""):
        self.retry_after = max(0, int(round(retry_after)))
        super().__init__(message or f"Locked for another {self.retry_after} seconds")


class BackupCodeError(TwoFactorError):
    kind = "backup_code_error"


class BackupCodeInvalidFormat(BackupCodeError):
    kind = "backup_code_invalid_format"


class BackupCodeAlreadyUsed(BackupCodeError):
    kind = "backup_code_already_used"


class BackupCodeNotFound(BackupCodeError):
    kind = "backup_code_not_found"


class InvalidLabel(TwoFactorError, ValueError):
    kind = "invalid_label"


class SetupNotStarted(TwoFactorError):
    kind = "setup_not_started"


class NotEnrolled(TwoFactorError):
    kind = "not_enrolled"


class InvalidSessionTransition(TwoFactorError):
    kind = "invalid_session_transition"


# Custom HTTPException class to handle secure errors, so we don't expose internal details to the client
class SecureHTTPException(HTTPException):
    def __init__(self, status_code: int, detail: str, internal_detail: str = None,
                 headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        if internal_detail:
            logger.error(f"Internal error: {internal_detail}")


_STATUS_CODES = {
    CryptoBackendFailure: 503,
    SetupNotStarted: 400,
    NotEnrolled: 400,
    InvalidSessionTransition: 409,
}


def handle_twofa_error(e: TwoFactorError) -> HTTPException:
    """Collapse every failure except a lockout into one public message"""
    if isinstance(e, RateLimited):
        return SecureHTTPException(
            status_code=429,
            detail=f"Too many attempts. Try again in {e.retry_after} seconds.",
            headers={"Retry-After": str(e.retry_after)},
        )
    status_code = 401
    for error_type, code in _STATUS_CODES.items():
        if isinstance(e, error_type):
            status_code = code
            break
    return SecureHTTPException(
        status_code=status_code,
        detail=INCORRECT_CODE,
        internal_detail=f"2FA failure: {e.kind}" if status_code >= 500 else None,
    )
