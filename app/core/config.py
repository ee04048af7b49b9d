import os
import secrets
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Server settings
PROJECT_NAME: str = "TOTP Guard"
PORT: int = int(os.getenv("PORT", 3010))
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# TOTP parameters - (RFC 6238 defaults)
TOTP_ISSUER: str = os.getenv("TOTP_ISSUER", "TOTP-Guard")
TOTP_PERIOD: int = 30
TOTP_DIGITS: int = 6
TOTP_TOLERANCE_WINDOWS: int = int(os.getenv("TOTP_TOLERANCE_WINDOWS", 1))  # ±30 s drift
MAX_TOLERANCE_WINDOWS: int = 2
SECRET_BYTES: int = int(os.getenv("SECRET_BYTES", 20))  # 160-bit seed

# Backup codes
BACKUP_CODE_COUNT: int = int(os.getenv("BACKUP_CODE_COUNT", 10))

# Rate limiting - failed attempts per lockout window
TOTP_MAX_ATTEMPTS: int = int(os.getenv("TOTP_MAX_ATTEMPTS", 5))
TOTP_LOCKOUT_SECONDS: int = int(os.getenv("TOTP_LOCKOUT_SECONDS", 900))  # 15 minutes

# Replay protection - extra retention on top of the tolerated windows
REPLAY_SAFETY_MARGIN_SECONDS: int = int(os.getenv("REPLAY_SAFETY_MARGIN_SECONDS", 60))

# Setup / challenge sessions
SESSION_TTL_SECONDS: int = int(os.getenv("SESSION_TTL_SECONDS", 600))

# Shared state backend: "memory" for a single instance, "redis" for several
STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory").lower()
REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Remote verification fallback: "local" or "remote"
TOTP_VERIFY_MODE: str = os.getenv("TOTP_VERIFY_MODE", "local").lower()
REMOTE_VERIFY_URL: str = os.getenv("REMOTE_VERIFY_URL", "")
# Defaults to "csrf-token" next to REMOTE_VERIFY_URL
REMOTE_CSRF_TOKEN_URL: str = os.getenv("REMOTE_CSRF_TOKEN_URL", "")
REMOTE_VERIFY_TIMEOUT_SECONDS: float = float(os.getenv("REMOTE_VERIFY_TIMEOUT_SECONDS", 5))

# Validate required production settings
if ENVIRONMENT == "production":
    required_vars = ['TOTP_ENCRYPTION_KEY', 'REPLAY_FINGERPRINT_KEY']
    missing_vars = [var for var in required_vars if not os.getenv(var)]
    if missing_vars:
        raise ValueError(f"Missing required environment variables for production: {missing_vars}")
    if STORE_BACKEND not in ("memory", "redis"):
        raise ValueError(f"Unsupported STORE_BACKEND: {STORE_BACKEND}")

# For development, use a default key
TOTP_ENCRYPTION_KEY: str = os.getenv("TOTP_ENCRYPTION_KEY", "j10sWLvYgV7vHcnJ88aaCVqIFN8W063kQKy3_WqGKK4=")

# Keys the secret fingerprint used by the replay guard; must be shared by all instances
REPLAY_FINGERPRINT_KEY: str = os.getenv("REPLAY_FINGERPRINT_KEY", secrets.token_urlsafe(32))
