"""
Tests for provisioning URIs, log redaction, verification sessions and HTTP error mapping.
"""
import logging
from urllib.parse import urlparse, parse_qs, unquote

import pytest

from app.core.exceptions import (
    InvalidLabel,
    CodeMismatch,
    ReplayedToken,
    RateLimited,
    CryptoBackendFailure,
    BackupCodeAlreadyUsed,
    NotEnrolled,
    InvalidSessionTransition,
    handle_twofa_error,
)
from app.core.log_sanitizer import SecretRedactionFilter, redact
from app.core.security import encrypt_totp_seed, decrypt_totp_seed, secret_fingerprint
from app.core.session_manager import SessionMode, SessionStep, VerificationSessionManager
from app.services.provisioning import build_provisioning_uri

from tests.conftest import RFC_SECRET, T0


class TestProvisioningUri:
    def test_format(self):
        uri = build_provisioning_uri("JBSWY3DPEHPK3PXP", "ACME", "alice@example.com")
        assert uri == (
            "otpauth://totp/ACME:alice%40example.com"
            "?secret=JBSWY3DPEHPK3PXP&issuer=ACME&algorithm=SHA1&digits=6&period=30"
        )

    def test_percent_encodes_label_parts(self):
        uri = build_provisioning_uri(RFC_SECRET, "Acme Corp", "jane doe/ops")
        parsed = urlparse(uri)
        assert parsed.path == "/Acme%20Corp:jane%20doe%2Fops"
        issuer, account = parsed.path.lstrip("/").split(":")
        assert unquote(account) == "jane doe/ops"
        assert parse_qs(parsed.query)["issuer"] == ["Acme Corp"]

    def test_padding_is_stripped(self):
        uri = build_provisioning_uri("MFRGGZDFMZTWQ2LK" + "MNXW6===", "ACME", "alice")
        assert parse_qs(urlparse(uri).query)["secret"] == ["MFRGGZDFMZTWQ2LKMNXW6"]

    @pytest.mark.parametrize("issuer, account", [
        ("", "alice"),
        ("ACME", ""),
        ("ACME", "   "),
        ("ACME", "al\x00ice"),
        ("AC\nME", "alice"),
        ("ACME:Prod", "alice"),
    ])
    def test_invalid_labels(self, issuer, account):
        with pytest.raises(InvalidLabel):
            build_provisioning_uri(RFC_SECRET, issuer, account)

    def test_empty_secret(self):
        with pytest.raises(InvalidLabel):
            build_provisioning_uri("===", "ACME", "alice")


class TestRedaction:
    @pytest.mark.parametrize("message, leaked", [
        ("secret=JBSWY3DPEHPK3PXP", "JBSWY3DPEHPK3PXP"),
        ('{"code": "287082"}', "287082"),
        ("backup_code=ABCD-EFGHX rejected", "ABCD-EFGHX"),
        ("seed GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ loaded", "GEZDGNBVGY3TQOJQ"),
        ("token=abc.def.ghi", "abc.def.ghi"),
    ])
    def test_sensitive_values_are_masked(self, message, leaked):
        cleaned = redact(message)
        assert leaked not in cleaned
        assert "***" in cleaned

    def test_ordinary_messages_untouched(self):
        message = "2FA challenge: principal=alice ts=1700000010 outcome=code_mismatch failures=2"
        assert redact(message) == message

    def test_filter_rewrites_records(self):
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "received otp=%s", ("123456",), None)
        assert SecretRedactionFilter().filter(record) is True
        assert record.getMessage() == "received otp=***"


class TestSecurityHelpers:
    def test_seed_encryption_round_trip(self):
        token = encrypt_totp_seed(RFC_SECRET)
        assert RFC_SECRET.encode() not in token
        assert decrypt_totp_seed(token) == RFC_SECRET

    def test_tampered_token(self):
        token = bytearray(encrypt_totp_seed(RFC_SECRET))
        token[-5] = ord("A") if token[-5] != ord("A") else ord("B")
        with pytest.raises(CryptoBackendFailure):
            decrypt_totp_seed(bytes(token))

    def test_fingerprint_ignores_padding_and_case(self):
        fp = secret_fingerprint(RFC_SECRET, key="k")
        assert fp == secret_fingerprint(RFC_SECRET.lower() + "====", key="k")
        assert fp != secret_fingerprint(RFC_SECRET, key="other")
        assert RFC_SECRET not in fp


class TestVerificationSessions:
    def test_setup_transitions(self):
        sessions = VerificationSessionManager(ttl_seconds=600)
        session = sessions.create("alice", SessionMode.SETUP, T0)
        assert session.step == SessionStep.AWAITING_SECRET
        with pytest.raises(InvalidSessionTransition):
            session.advance(SessionStep.ENABLED)
        session.advance(SessionStep.AWAITING_CODE)
        session.advance(SessionStep.ENABLED)
        assert session.is_terminal

    def test_terminal_steps_never_move(self):
        session = VerificationSessionManager().create("alice", SessionMode.VERIFY, T0)
        session.advance(SessionStep.FAILED)
        for step in SessionStep:
            with pytest.raises(InvalidSessionTransition):
                session.advance(step)

    def test_verify_cannot_be_used_for_setup_steps(self):
        session = VerificationSessionManager().create("alice", SessionMode.VERIFY, T0)
        with pytest.raises(InvalidSessionTransition):
            session.advance(SessionStep.AWAITING_SECRET)

    def test_expiry_and_cleanup(self):
        sessions = VerificationSessionManager(ttl_seconds=600)
        sessions.create("alice", SessionMode.VERIFY, T0)
        sessions.create("bob", SessionMode.VERIFY, T0 + 300)
        assert sessions.get("alice", SessionMode.VERIFY, T0 + 599) is not None
        assert sessions.cleanup_expired(T0 + 600) == 1
        assert sessions.get("alice", SessionMode.VERIFY, T0 + 600) is None
        assert sessions.get("bob", SessionMode.VERIFY, T0 + 600) is not None

    def test_discard_only_the_given_session(self):
        sessions = VerificationSessionManager()
        old = sessions.create("alice", SessionMode.SETUP, T0)
        new = sessions.create("alice", SessionMode.SETUP, T0 + 1)
        assert sessions.discard("alice", SessionMode.SETUP, old) is False
        assert sessions.get("alice", SessionMode.SETUP, T0 + 1) is new
        assert sessions.discard("alice", SessionMode.SETUP, new) is True
        assert sessions.discard("alice", SessionMode.SETUP) is False

    def test_create_sweeps_expired_sessions(self):
        sessions = VerificationSessionManager(ttl_seconds=600)
        sessions.create("alice", SessionMode.VERIFY, T0)
        sessions.create("bob", SessionMode.VERIFY, T0 + 600)
        assert list(sessions.sessions) == [("bob", SessionMode.VERIFY)]

    def test_modes_are_separate(self):
        sessions = VerificationSessionManager()
        setup = sessions.create("alice", SessionMode.SETUP, T0)
        verify = sessions.get_or_create("alice", SessionMode.VERIFY, T0)
        assert setup is not verify
        assert sessions.get_or_create("alice", SessionMode.VERIFY, T0) is verify


class TestErrorMapping:
    @pytest.mark.parametrize("error, status_code", [
        (CodeMismatch(), 401),
        (ReplayedToken(), 401),
        (BackupCodeAlreadyUsed(), 401),
        (NotEnrolled(), 400),
        (CryptoBackendFailure(), 503),
        (InvalidSessionTransition(), 409),
    ])
    def test_failures_collapse_to_one_message(self, error, status_code):
        exc = handle_twofa_error(error)
        assert exc.status_code == status_code
        assert exc.detail == "Incorrect code"

    def test_rate_limited_carries_retry_after(self):
        exc = handle_twofa_error(RateLimited(123.4))
        assert exc.status_code == 429
        assert exc.headers == {"Retry-After": "123"}
        assert "123 seconds" in exc.detail
