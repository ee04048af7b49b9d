"""Sequences 2FA enrollment and login challenges.

Setup:  begin_setup -> confirm_setup. The seed and backup codes are only
        committed to the credential store once a code from the
        authenticator app has been verified against them.
Verify: challenge / challenge_with_backup_code. Every attempt is checked
        against the rate limiter first, and all attempts for one principal
        are serialized so each one sees every earlier failure.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional
from urllib.parse import urljoin

import redis

from app.core.config import (
    TOTP_ISSUER,
    TOTP_VERIFY_MODE,
    STORE_BACKEND,
    REDIS_URL,
    REMOTE_VERIFY_URL,
    REMOTE_CSRF_TOKEN_URL,
)
from app.core.exceptions import (
    TwoFactorError,
    CryptoBackendFailure,
    InvalidSecretEncoding,
    CodeMismatch,
    ReplayedToken,
    RateLimited,
    BackupCodeInvalidFormat,
    BackupCodeAlreadyUsed,
    BackupCodeNotFound,
    SetupNotStarted,
    NotEnrolled,
)
from app.core.keyed_lock import KeyedLock
from app.core.memory_rate_limiter import MemoryRateLimiter
from app.core.rate_limiter import RedisRateLimiter
from app.core.replay_guard import ReplayGuard, RedisUsedTokenStore
from app.core.security import encrypt_totp_seed, decrypt_totp_seed, secret_fingerprint
from app.core.session_manager import (
    VerificationSessionManager,
    VerificationSession,
    SessionMode,
    SessionStep,
)
from app.services.backup_codes import BackupCodeManager, ConsumeOutcome
from app.services.credential_store import CredentialStore, InMemoryCredentialStore
from app.services.provisioning import build_provisioning_uri
from app.services.remote_verifier import RemoteVerifier
from app.services.secret_store import SecretStore
from app.services.totp_service import TotpEngine, VerifyOutcome, NO_MATCH, time_window

logger = logging.getLogger(__name__)

_BACKUP_ERRORS = {
    ConsumeOutcome.INVALID_FORMAT: BackupCodeInvalidFormat,
    ConsumeOutcome.ALREADY_USED: BackupCodeAlreadyUsed,
    ConsumeOutcome.NOT_FOUND: BackupCodeNotFound,
}


@dataclass
class SetupChallenge:
    provisioning_uri: str
    backup_codes: List[str]


@dataclass
class VerificationResult:
    principal_id: str
    step: SessionStep
    method: str
    remaining_backup_codes: Optional[int] = None


class TwoFactorOrchestrator:
    def __init__(
        self,
        credential_store: CredentialStore,
        secret_store: Optional[SecretStore] = None,
        engine: Optional[TotpEngine] = None,
        backup_codes: Optional[BackupCodeManager] = None,
        replay_guard: Optional[ReplayGuard] = None,
        rate_limiter=None,
        sessions: Optional[VerificationSessionManager] = None,
        remote_verifier: Optional[RemoteVerifier] = None,
        verify_mode: str = "local",
        issuer: str = TOTP_ISSUER,
        clock: Callable[[], float] = time.time,
    ):
        if verify_mode not in ("local", "remote"):
            raise ValueError(f"Unknown verify mode: {verify_mode}")
        if verify_mode == "remote" and remote_verifier is None:
            raise ValueError("Remote verify mode needs a remote verifier")
        self.credential_store = credential_store
        self.secret_store = secret_store or SecretStore()
        self.engine = engine or TotpEngine()
        self.backup_codes = backup_codes or BackupCodeManager()
        self.replay_guard = replay_guard or ReplayGuard(period=self.engine.period,
                                                        tolerance_windows=self.engine.tolerance_windows)
        self.rate_limiter = rate_limiter or MemoryRateLimiter()
        self.sessions = sessions or VerificationSessionManager()
        self.remote_verifier = remote_verifier
        self.verify_mode = verify_mode
        self.issuer = issuer
        self.clock = clock
        self._locks = KeyedLock()

    @staticmethod
    def _rate_key(principal_id: str) -> str:
        return f"totp:{principal_id}"

    def _log_outcome(self, action: str, principal_id: str, now: float, outcome: str,
                     level: int = logging.INFO) -> None:
        logger.log(level, f"2FA {action}: principal={principal_id} ts={int(now)} outcome={outcome}")

    # ---------------------------------------------------------------- setup

    def begin_setup(self, principal_id: str) -> SetupChallenge:
        with self._locks.hold(principal_id):
            now = self.clock()
            secret = self.secret_store.generate()
            uri = build_provisioning_uri(secret, self.issuer, principal_id)
            codes = self.backup_codes.generate_set()

            session = self.sessions.create(
                principal_id,
                SessionMode.SETUP,
                now,
                pending_secret=encrypt_totp_seed(secret),
                pending_backup_codes=codes,
            )
            # the URI is on its way to the caller, so we now wait for the first code
            session.advance(SessionStep.AWAITING_CODE)
            self._log_outcome("setup", principal_id, now, "initiated")
            return SetupChallenge(provisioning_uri=uri, backup_codes=list(codes))

    def confirm_setup(self, principal_id: str, code: str, fingerprint: str = "") -> VerificationResult:
        with self._locks.hold(principal_id):
            now = self.clock()
            session = self.sessions.get(principal_id, SessionMode.SETUP, now)
            if session is None or session.step != SessionStep.AWAITING_CODE:
                self._log_outcome("setup", principal_id, now, SetupNotStarted.kind)
                raise SetupNotStarted("No pending 2FA setup")

            secret = decrypt_totp_seed(session.pending_secret)
            outcome = self._check_code(secret, code, principal_id, now, fingerprint)
            if not outcome.matched:
                session.advance(SessionStep.AWAITING_CODE)
                self._log_outcome("setup", principal_id, now, CodeMismatch.kind)
                raise CodeMismatch()

            # the confirming code may not be replayed at the first login
            if not self._admit(secret, code, outcome, now):
                self._log_outcome("setup", principal_id, now, ReplayedToken.kind, logging.WARNING)
                raise ReplayedToken()

            self.credential_store.commit_secret(principal_id, secret, session.pending_backup_codes)
            session.advance(SessionStep.ENABLED)
            self.sessions.discard(principal_id, SessionMode.SETUP, session)
            self._log_outcome("setup", principal_id, now, "enabled")
            return VerificationResult(
                principal_id=principal_id,
                step=SessionStep.ENABLED,
                method="totp",
                remaining_backup_codes=len(session.pending_backup_codes),
            )

    # --------------------------------------------------------------- verify

    def challenge(self, principal_id: str, code: str, fingerprint: str = "") -> VerificationResult:
        with self._locks.hold(principal_id):
            now = self.clock()
            self._ensure_unlocked(principal_id, now)

            secret = self.credential_store.load_secret(principal_id)
            if secret is None:
                self._log_outcome("challenge", principal_id, now, NotEnrolled.kind)
                raise NotEnrolled("2FA is not enabled for this principal")

            session = self.sessions.get_or_create(principal_id, SessionMode.VERIFY, now)
            if session.step == SessionStep.AWAITING_BACKUP_CODE:
                session.advance(SessionStep.AWAITING_CODE)

            try:
                outcome = self._check_code(secret, code, principal_id, now, fingerprint)
            except InvalidSecretEncoding:
                self._log_outcome("challenge", principal_id, now, InvalidSecretEncoding.kind, logging.ERROR)
                raise
            except CryptoBackendFailure:
                self._log_outcome("challenge", principal_id, now, CryptoBackendFailure.kind, logging.ERROR)
                raise

            if not outcome.matched:
                self._fail(session, now, CodeMismatch())
            if not self._admit(secret, code, outcome, now):
                self._fail(session, now, ReplayedToken())
            return self._succeed(session, now, "totp")

    def challenge_with_backup_code(self, principal_id: str, code: str) -> VerificationResult:
        with self._locks.hold(principal_id):
            now = self.clock()
            self._ensure_unlocked(principal_id, now)

            if not self.credential_store.is_enrolled(principal_id):
                self._log_outcome("backup", principal_id, now, NotEnrolled.kind)
                raise NotEnrolled("2FA is not enabled for this principal")

            session = self.sessions.get_or_create(principal_id, SessionMode.VERIFY, now)
            session.advance(SessionStep.AWAITING_BACKUP_CODE)

            outcome = self.backup_codes.consume(principal_id, code, self.credential_store)
            if outcome != ConsumeOutcome.CONSUMED:
                self._fail(session, now, _BACKUP_ERRORS[outcome]())
            return self._succeed(session, now, "backup_code")

    def disable(self, principal_id: str, code: str, fingerprint: str = "") -> None:
        """Turn 2FA off; needs a fresh, valid TOTP code"""
        self.challenge(principal_id, code, fingerprint)
        with self._locks.hold(principal_id):
            self.credential_store.remove(principal_id)
            self.sessions.discard(principal_id, SessionMode.SETUP)
            self._log_outcome("disable", principal_id, self.clock(), "disabled")

    def unlock(self, principal_id: str) -> bool:
        """Administrative reset of a locked-out principal"""
        with self._locks.hold(principal_id):
            was_locked = self.rate_limiter.reset(self._rate_key(principal_id))
            self.sessions.discard(principal_id, SessionMode.VERIFY)
            self._log_outcome("unlock", principal_id, self.clock(), "reset" if was_locked else "noop")
            return was_locked

    # ------------------------------------------------------------- helpers

    def _check_code(self, secret: str, code: str, principal_id: str, now: float,
                    fingerprint: str = "") -> VerifyOutcome:
        if self.verify_mode == "remote":
            return self._remote_check(secret, code, principal_id, now, fingerprint)
        try:
            return self.engine.verify(secret, code, now)
        except CryptoBackendFailure:
            if self.remote_verifier is None:
                raise
            logger.warning("Local TOTP backend unavailable, falling back to remote verification")
            return self._remote_check(secret, code, principal_id, now, fingerprint)

    def _remote_check(self, secret: str, code: str, principal_id: str, now: float,
                      fingerprint: str) -> VerifyOutcome:
        if self.remote_verifier.verify(secret, code.strip(), principal_id, now, fingerprint):
            # the remote side does not report which window matched
            return VerifyOutcome(matched=True)
        return NO_MATCH

    def _admit(self, secret: str, code: str, outcome: VerifyOutcome, now: float) -> bool:
        seed_fp = secret_fingerprint(secret)
        if outcome.window_index is not None:
            return self.replay_guard.admit(seed_fp, code.strip(), outcome.window_index, now)
        current = time_window(now, self.engine.period)
        tol = self.engine.tolerance_windows
        return self.replay_guard.admit_span(seed_fp, code.strip(), range(current - tol, current + tol + 1), now)

    def _ensure_unlocked(self, principal_id: str, now: float) -> None:
        key = self._rate_key(principal_id)
        if not self.rate_limiter.is_locked(key, now):
            return
        session = self.sessions.get(principal_id, SessionMode.VERIFY, now)
        if session is not None:
            session.advance(SessionStep.FAILED)
            self.sessions.discard(principal_id, SessionMode.VERIFY)
        self._log_outcome("challenge", principal_id, now, RateLimited.kind, logging.WARNING)
        raise RateLimited(self.rate_limiter.retry_after(key, now))

    def _fail(self, session: VerificationSession, now: float, error: TwoFactorError) -> None:
        key = self._rate_key(session.principal_id)
        count = self.rate_limiter.record_failure(key, now)
        remaining = self.rate_limiter.get_remaining_attempts(key, now)["remaining"]
        level = logging.INFO
        if isinstance(error, ReplayedToken):
            # a valid code seen twice: someone else may have intercepted it
            level = logging.WARNING
        self._log_outcome("challenge", session.principal_id, now,
                          f"{error.kind} failures={count} remaining={remaining}", level)

        if self.rate_limiter.is_locked(key, now):
            session.advance(SessionStep.FAILED)
            self.sessions.discard(session.principal_id, SessionMode.VERIFY)
            self._log_outcome("challenge", session.principal_id, now, "locked", logging.WARNING)
        raise error

    def _succeed(self, session: VerificationSession, now: float, method: str) -> VerificationResult:
        self.rate_limiter.record_success(self._rate_key(session.principal_id))
        session.advance(SessionStep.ENABLED)
        self.sessions.discard(session.principal_id, SessionMode.VERIFY)
        self._log_outcome("challenge", session.principal_id, now, f"succeeded via {method}")
        remaining = None
        if method == "backup_code":
            remaining = self.credential_store.remaining_backup_codes(session.principal_id)
        return VerificationResult(
            principal_id=session.principal_id,
            step=SessionStep.ENABLED,
            method=method,
            remaining_backup_codes=remaining,
        )


def build_orchestrator() -> TwoFactorOrchestrator:
    """Wire an orchestrator from environment configuration"""
    if STORE_BACKEND == "redis":
        client = redis.from_url(REDIS_URL)
        rate_limiter = RedisRateLimiter(client)
        replay_guard = ReplayGuard(RedisUsedTokenStore(client))
    else:
        rate_limiter = MemoryRateLimiter()
        replay_guard = ReplayGuard()

    remote_verifier = None
    if REMOTE_VERIFY_URL:
        # CSRF token endpoint defaults to a sibling of the verify endpoint
        csrf_url = REMOTE_CSRF_TOKEN_URL or urljoin(REMOTE_VERIFY_URL, "csrf-token")
        remote_verifier = RemoteVerifier(REMOTE_VERIFY_URL, csrf_url=csrf_url)
    return TwoFactorOrchestrator(
        credential_store=InMemoryCredentialStore(),
        replay_guard=replay_guard,
        rate_limiter=rate_limiter,
        remote_verifier=remote_verifier,
        verify_mode=TOTP_VERIFY_MODE,
    )


# Global orchestrator instance
_orchestrator: Optional[TwoFactorOrchestrator] = None


def get_orchestrator() -> TwoFactorOrchestrator:
    """FastAPI dependency returning the process-wide orchestrator"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator
