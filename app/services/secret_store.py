import binascii
import logging
import math
import re
from typing import Final

import pyotp

from app.core.config import SECRET_BYTES
from app.core.exceptions import CryptoBackendFailure, InvalidSecretEncoding

logger = logging.getLogger(__name__)

MIN_SECRET_BYTES: Final[int] = 20   # 160 bits, RFC 4226 recommendation
_BASE32_RE = re.compile(r"^[A-Z2-7]+=*$")


class SecretStore:
    """Issues new TOTP seeds. Seeds are immutable; rotating means issuing a new one."""

    def __init__(self, secret_bytes: int = SECRET_BYTES):
        if secret_bytes < MIN_SECRET_BYTES:
            raise ValueError(f"TOTP seeds need at least {MIN_SECRET_BYTES} bytes of entropy")
        self.secret_bytes = secret_bytes

    def generate(self) -> str:
        """Draw a fresh seed from the OS CSPRNG and return it as padded base-32"""
        length = math.ceil(self.secret_bytes * 8 / 5)
        try:
            secret = pyotp.random_base32(length=length)
        except (NotImplementedError, OSError) as e:
            logger.critical(f"Randomness source unavailable: {type(e).__name__}")
            raise CryptoBackendFailure("Randomness source unavailable") from e
        return normalize_secret(secret)


def normalize_secret(secret: str) -> str:
    """Upper-case, drop whitespace and restore "=" padding to a multiple of 8"""
    cleaned = re.sub(r"\s+", "", secret or "").upper().rstrip("=")
    return cleaned + "=" * (-len(cleaned) % 8)


def decode_secret(secret: str) -> bytes:
    """Decode a base-32 seed, with or without padding"""
    normalized = normalize_secret(secret)
    if not normalized or not _BASE32_RE.match(normalized):
        raise InvalidSecretEncoding("Secret is not valid base-32")
    try:
        key = pyotp.TOTP(normalized).byte_secret()
    except (binascii.Error, ValueError) as e:
        raise InvalidSecretEncoding("Secret is not valid base-32") from e
    if not key:
        raise InvalidSecretEncoding("Secret decodes to an empty key")
    return key
