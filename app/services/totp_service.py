import binascii
import logging
from dataclasses import dataclass
from typing import Final, Optional

import pyotp
from pyotp.utils import strings_equal

from app.core.config import (
    TOTP_PERIOD,
    TOTP_DIGITS,
    TOTP_TOLERANCE_WINDOWS,
    MAX_TOLERANCE_WINDOWS,
)
from app.core.exceptions import CryptoBackendFailure, InvalidSecretEncoding
from app.services.secret_store import decode_secret, normalize_secret

logger = logging.getLogger(__name__)

_STEP: Final[int] = TOTP_PERIOD
_DIGITS: Final[int] = TOTP_DIGITS


def time_window(t: float, period: int = _STEP) -> int:
    """Index of the period-second bucket containing Unix time t"""
    return int(t // period)


@dataclass(frozen=True)
class VerifyOutcome:
    """Result of a windowed check.

    `window_index` is the absolute time window the candidate matched and
    `drift` its offset from the window of the verification time. Both stay
    None for a match whose window is not known.
    """
    matched: bool
    window_index: Optional[int] = None
    drift: Optional[int] = None

    def __bool__(self) -> bool:
        return self.matched


NO_MATCH = VerifyOutcome(matched=False)


def _check_tolerance(tolerance_windows: int) -> int:
    if not 0 <= tolerance_windows <= MAX_TOLERANCE_WINDOWS:
        raise ValueError(
            f"tolerance_windows must be between 0 and {MAX_TOLERANCE_WINDOWS}, got {tolerance_windows}"
        )
    return tolerance_windows


class TotpEngine:
    """TOTP per RFC 6238 (HMAC-SHA1, 6 digits, 30 s) on top of pyotp,
    with an explicit window scan so callers learn which window matched."""

    def __init__(self, period: int = _STEP, tolerance_windows: int = TOTP_TOLERANCE_WINDOWS):
        if period <= 0:
            raise ValueError("period must be positive")
        self.period = period
        self.tolerance_windows = _check_tolerance(tolerance_windows)

    def _totp(self, secret: str) -> pyotp.TOTP:
        # validates the encoding up front
        decode_secret(secret)
        return pyotp.TOTP(normalize_secret(secret), digits=_DIGITS, interval=self.period)

    @staticmethod
    def _code_for(totp: pyotp.TOTP, window: int) -> str:
        try:
            return totp.generate_otp(window)
        except binascii.Error as e:
            raise InvalidSecretEncoding("Secret is not valid base-32") from e
        except ValueError as e:
            # raised when SHA-1 is disabled, e.g. by a FIPS-restricted OpenSSL
            logger.critical("HMAC-SHA1 is unavailable on this interpreter")
            raise CryptoBackendFailure("HMAC-SHA1 unavailable") from e

    def generate(self, secret: str, t: float) -> str:
        return self._code_for(self._totp(secret), time_window(t, self.period))

    def verify(self, secret: str, candidate_code: str, t: float,
               tolerance_windows: Optional[int] = None) -> VerifyOutcome:
        """Return the first window in [-tol, +tol] around t that produces the candidate"""
        tol = self.tolerance_windows if tolerance_windows is None else _check_tolerance(tolerance_windows)
        totp = self._totp(secret)

        code = (candidate_code or "").strip()
        if not (code.isdigit() and code.isascii() and len(code) == _DIGITS):
            return NO_MATCH

        current = time_window(t, self.period)
        for k in range(-tol, tol + 1):
            window = current + k
            if window < 0:
                continue
            if strings_equal(self._code_for(totp, window), code):
                return VerifyOutcome(matched=True, window_index=window, drift=k)
        return NO_MATCH
