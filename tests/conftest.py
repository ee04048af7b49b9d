"""
Test configuration and fixtures for the 2FA service tests.
"""
import pytest
from urllib.parse import urlparse, parse_qs
from fastapi.testclient import TestClient

from app.main import app
from app.core.memory_rate_limiter import MemoryRateLimiter
from app.core.replay_guard import ReplayGuard
from app.core.session_manager import VerificationSessionManager
from app.services.credential_store import InMemoryCredentialStore
from app.services.totp_service import TotpEngine
from app.services.twofa_orchestrator import TwoFactorOrchestrator, get_orchestrator

# RFC 6238 appendix B seed: ASCII "12345678901234567890" in base-32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"

# Start of time window 56666667
T0 = 1_700_000_010


class FakeClock:
    """Controllable stand-in for time.time"""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def secret_from_uri(uri: str) -> str:
    return parse_qs(urlparse(uri).query)["secret"][0]


def wrong_code(secret: str, t: float, engine: TotpEngine = None) -> str:
    """A six-digit code that matches none of the windows tolerated around t"""
    engine = engine or TotpEngine()
    valid = {engine.generate(secret, t + k * engine.period) for k in range(-2, 3)}
    for candidate in ("000000", "111111", "222222", "333333", "444444", "555555"):
        if candidate not in valid:
            return candidate
    raise AssertionError("unreachable")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    return TotpEngine()


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore()


@pytest.fixture
def rate_limiter():
    return MemoryRateLimiter(max_attempts=5, lockout_seconds=900)


@pytest.fixture
def orchestrator(credential_store, rate_limiter, clock, engine):
    return TwoFactorOrchestrator(
        credential_store=credential_store,
        engine=engine,
        replay_guard=ReplayGuard(),
        rate_limiter=rate_limiter,
        sessions=VerificationSessionManager(ttl_seconds=600),
        clock=clock,
    )


@pytest.fixture
def enrolled(orchestrator, credential_store):
    """Principal 'alice' enrolled with the RFC seed and a known set of backup codes"""
    codes = orchestrator.backup_codes.generate_set()
    credential_store.commit_secret("alice", RFC_SECRET, codes)
    return {"principal_id": "alice", "secret": RFC_SECRET, "backup_codes": codes}


@pytest.fixture
def client(orchestrator):
    """Create a test client whose routes use the isolated orchestrator."""
    original_overrides = app.dependency_overrides.copy()
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides = original_overrides
