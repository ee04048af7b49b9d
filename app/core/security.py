import hashlib
import hmac
import logging
from cryptography.fernet import Fernet, InvalidToken

from app.core.config import TOTP_ENCRYPTION_KEY, REPLAY_FINGERPRINT_KEY
from app.core.exceptions import CryptoBackendFailure

logger = logging.getLogger(__name__)

# TOTP-SEED ENCRYPTION KEY
# • The *TOTP seed* (the long-lived base-32 secret) is only ever held
#   encrypted: in the credential store, in pending setup sessions and in
#   requests to the remote verifier.
# • Encryption uses Fernet (AES-128-CBC + HMAC-SHA-256).
fernet = Fernet(TOTP_ENCRYPTION_KEY)


def compute_hmac(data: str, key: str) -> str:
    """Compute HMAC for data integrity"""
    return hmac.new(key.encode(), data.encode(), hashlib.sha256).hexdigest()


def secret_fingerprint(secret: str, key: str = REPLAY_FINGERPRINT_KEY) -> str:
    """Stable, non-reversible identifier of a TOTP seed"""
    normalized = secret.replace("=", "").replace(" ", "").upper()
    return compute_hmac(normalized, key)


def digest(*parts) -> str:
    """SHA-256 over the colon-joined parts, used as an opaque storage key"""
    return hashlib.sha256(":".join(str(p) for p in parts).encode()).hexdigest()


#Fernet helpers for encrypting the TOTP seed wherever it is held.
def encrypt_totp_seed(seed: str) -> bytes:
    """Encrypt TOTP seed for storage or transport"""
    return fernet.encrypt(seed.encode())


def decrypt_totp_seed(encrypted_seed: bytes) -> str:
    """Decrypt TOTP seed; a token we cannot read means our key material is broken"""
    try:
        return fernet.decrypt(encrypted_seed).decode()
    except InvalidToken:
        logger.error("Stored TOTP seed could not be decrypted with the configured key")
        raise CryptoBackendFailure("Stored TOTP seed could not be decrypted")
