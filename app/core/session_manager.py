import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, List, Tuple

from app.core.config import SESSION_TTL_SECONDS
from app.core.exceptions import InvalidSessionTransition

logger = logging.getLogger(__name__)


class SessionMode(str, Enum):
    SETUP = "setup"
    VERIFY = "verify"


class SessionStep(str, Enum):
    AWAITING_SECRET = "awaiting_secret"
    AWAITING_CODE = "awaiting_code"
    AWAITING_BACKUP_CODE = "awaiting_backup_code"
    ENABLED = "enabled"
    FAILED = "failed"


# Setup:  Initiated (awaiting_secret) -> AwaitingConfirmation (awaiting_code) -> Enabled
# Verify: Challenged (awaiting_code) -> Succeeded (enabled) | UsingBackup (awaiting_backup_code)
#         | Locked (failed); UsingBackup -> Succeeded | Locked | back to Challenged
_TRANSITIONS: Dict[SessionMode, Dict[SessionStep, Tuple[SessionStep, ...]]] = {
    SessionMode.SETUP: {
        SessionStep.AWAITING_SECRET: (SessionStep.AWAITING_CODE,),
        SessionStep.AWAITING_CODE: (SessionStep.AWAITING_CODE, SessionStep.ENABLED),
        SessionStep.ENABLED: (),
    },
    SessionMode.VERIFY: {
        SessionStep.AWAITING_CODE: (
            SessionStep.AWAITING_CODE,
            SessionStep.AWAITING_BACKUP_CODE,
            SessionStep.ENABLED,
            SessionStep.FAILED,
        ),
        SessionStep.AWAITING_BACKUP_CODE: (
            SessionStep.AWAITING_BACKUP_CODE,
            SessionStep.AWAITING_CODE,
            SessionStep.ENABLED,
            SessionStep.FAILED,
        ),
        SessionStep.ENABLED: (),
        SessionStep.FAILED: (),
    },
}

_INITIAL_STEP = {
    SessionMode.SETUP: SessionStep.AWAITING_SECRET,
    SessionMode.VERIFY: SessionStep.AWAITING_CODE,
}

TERMINAL_STEPS = (SessionStep.ENABLED, SessionStep.FAILED)


@dataclass
class VerificationSession:
    principal_id: str
    mode: SessionMode
    step: SessionStep
    created_at: float
    expires_at: float
    # Setup only: Fernet token of the uncommitted seed and the pending backup codes
    pending_secret: Optional[bytes] = None
    pending_backup_codes: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def advance(self, step: SessionStep) -> None:
        allowed = _TRANSITIONS[self.mode].get(self.step, ())
        if step not in allowed:
            raise InvalidSessionTransition(
                f"Cannot move a {self.mode.value} session from {self.step.value} to {step.value}"
            )
        self.step = step


class VerificationSessionManager:
    """Ephemeral setup/challenge sessions, one per (principal, mode), expiring after a TTL"""

    def __init__(self, ttl_seconds: int = SESSION_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self.sessions: Dict[Tuple[str, SessionMode], VerificationSession] = {}
        self.lock = threading.Lock()

    def create(self, principal_id: str, mode: SessionMode, now: Optional[float] = None,
               **data) -> VerificationSession:
        """Start a fresh session, replacing any earlier one for the same principal and mode"""
        now = time.time() if now is None else now
        session = VerificationSession(
            principal_id=principal_id,
            mode=mode,
            step=_INITIAL_STEP[mode],
            created_at=now,
            expires_at=now + self.ttl_seconds,
            **data,
        )
        self.cleanup_expired(now)
        with self.lock:
            self.sessions[(principal_id, mode)] = session
        return session

    def get(self, principal_id: str, mode: SessionMode,
            now: Optional[float] = None) -> Optional[VerificationSession]:
        now = time.time() if now is None else now
        with self.lock:
            session = self.sessions.get((principal_id, mode))
            if session is None:
                return None
            if session.is_expired(now) or session.is_terminal:
                del self.sessions[(principal_id, mode)]
                return None
            return session

    def get_or_create(self, principal_id: str, mode: SessionMode,
                      now: Optional[float] = None) -> VerificationSession:
        return self.get(principal_id, mode, now) or self.create(principal_id, mode, now)

    def discard(self, principal_id: str, mode: SessionMode,
                session: Optional[VerificationSession] = None) -> bool:
        """Drop the stored session. When `session` is given, only if it is still the stored one."""
        with self.lock:
            key = (principal_id, mode)
            if session is not None and self.sessions.get(key) is not session:
                return False
            return self.sessions.pop(key, None) is not None

    def cleanup_expired(self, now: Optional[float] = None) -> int:
        """Drop abandoned sessions to prevent memory growth"""
        now = time.time() if now is None else now
        with self.lock:
            expired = [key for key, s in self.sessions.items() if s.is_expired(now) or s.is_terminal]
            for key in expired:
                del self.sessions[key]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired verification sessions")
        return len(expired)
