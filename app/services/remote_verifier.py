import hashlib
import logging
import time
from secrets import token_urlsafe
from typing import Callable, Optional

import requests
from pydantic import ValidationError

from app.core.config import REMOTE_VERIFY_URL, REMOTE_VERIFY_TIMEOUT_SECONDS
from app.core.exceptions import CryptoBackendFailure
from app.core.security import encrypt_totp_seed
from app.schemas.twofa import RemoteVerifyRequest, RemoteVerifyResponse, CsrfTokenResponse

logger = logging.getLogger(__name__)


def device_fingerprint(*attributes: str) -> str:
    """SHA-256 over the client attributes that identify a device"""
    return hashlib.sha256("|".join(attributes).encode()).hexdigest()


class RemoteVerifier:
    """Client for a remote TOTP verification endpoint.

    Used when the local clock or crypto cannot be trusted. Every call is
    bounded by a timeout; anything short of a clear yes/no answer is
    reported as CryptoBackendFailure.
    """

    def __init__(self, url: str = REMOTE_VERIFY_URL, timeout: float = REMOTE_VERIFY_TIMEOUT_SECONDS,
                 csrf_url: Optional[str] = None,
                 csrf_token_provider: Optional[Callable[[], str]] = None,
                 session: Optional[requests.Session] = None):
        if not url:
            raise ValueError("Remote verification URL is not configured")
        self.url = url
        self.timeout = timeout
        self.csrf_url = csrf_url
        if csrf_token_provider is None and csrf_url:
            csrf_token_provider = self.fetch_csrf_token
        self.csrf_token_provider = csrf_token_provider
        # shared so the CSRF cookie travels with the verify call
        self.session = session or requests.Session()

    def fetch_csrf_token(self) -> str:
        """GET a fresh CSRF token from the remote side"""
        try:
            response = self.session.get(self.csrf_url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"CSRF token endpoint unreachable: {type(e).__name__}")
            raise CryptoBackendFailure("CSRF token unavailable") from e
        if response.status_code != 200:
            logger.warning(f"CSRF token endpoint answered HTTP {response.status_code}")
            raise CryptoBackendFailure(f"CSRF token endpoint returned {response.status_code}")
        try:
            return CsrfTokenResponse.model_validate(response.json()).token
        except (ValueError, ValidationError) as e:
            raise CryptoBackendFailure("CSRF token endpoint returned an unreadable body") from e

    def verify(self, secret: str, code: str, principal_id: str,
               timestamp: Optional[float] = None, fingerprint: str = "") -> bool:
        timestamp = time.time() if timestamp is None else timestamp
        payload = RemoteVerifyRequest(
            secret=encrypt_totp_seed(secret).decode(),
            code=code,
            username=principal_id,
            timestamp=int(timestamp * 1000),
            fingerprint=fingerprint,
        )
        headers = {"X-Request-ID": token_urlsafe(16)}
        if self.csrf_token_provider:
            headers["X-CSRF-Token"] = self.csrf_token_provider()

        try:
            response = self.session.post(
                self.url, json=payload.model_dump(), headers=headers, timeout=self.timeout
            )
        except requests.Timeout as e:
            logger.warning(f"Remote TOTP verification timed out for principal {principal_id}")
            raise CryptoBackendFailure("Remote verification timed out") from e
        except requests.RequestException as e:
            logger.warning(f"Remote TOTP verification unreachable: {type(e).__name__}")
            raise CryptoBackendFailure("Remote verification unavailable") from e

        if response.status_code in (400, 401, 403):
            return False
        if response.status_code != 200:
            logger.warning(f"Remote TOTP verification answered HTTP {response.status_code}")
            raise CryptoBackendFailure(f"Remote verification returned {response.status_code}")

        try:
            return RemoteVerifyResponse.model_validate(response.json()).valid
        except (ValueError, ValidationError) as e:
            logger.warning("Remote TOTP verification returned an unreadable body")
            raise CryptoBackendFailure("Remote verification returned an unreadable body") from e
