"""Unit tests for auth/tokens.py -- issuance, verification, expiry, leeway.

TokenService takes an injectable clock, so every expiry test pins "now" to a
fixed instant instead of sleeping. No stores are involved: the service is
stateless and revocation is checked elsewhere (auth/dependencies.py).
"""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.models import User
from auth.tokens import ALGORITHM, TokenService
from conftest import TEST_SECRET_KEY, make_settings
from core.config import Settings
from core.errors import SigningKeyError

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
USER = User(id=7, email="alex@example.com", role="admin")


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def tokens(clock: FrozenClock) -> TokenService:
    return TokenService(make_settings(), clock=clock)


# ---------------------------------------------------------------------------
# Issue
# ---------------------------------------------------------------------------


def test_default_session_expires_after_exactly_one_day(tokens):
    issued = tokens.issue(USER, "sid-1", remember_me=False)
    assert issued.claims.expires_at - issued.claims.issued_at == timedelta(days=1)
    assert issued.claims.issued_at == T0


def test_remember_me_expires_after_exactly_seven_days(tokens):
    issued = tokens.issue(USER, "sid-1", remember_me=True)
    assert issued.claims.expires_at - issued.claims.issued_at == timedelta(days=7)


def test_token_claims_round_trip(tokens):
    issued = tokens.issue(USER, "sid-42")
    claims = tokens.verify(issued.token)
    assert claims == issued.claims
    assert claims.subject_id == 7
    assert claims.session_id == "sid-42"
    assert claims.role == "admin"


# ---------------------------------------------------------------------------
# Expiry and leeway
# ---------------------------------------------------------------------------


def test_token_accepted_one_second_inside_leeway(tokens, clock):
    issued = tokens.issue(USER, "sid-1")
    clock.now = issued.claims.expires_at + timedelta(seconds=59)
    assert tokens.verify(issued.token) is not None


def test_token_accepted_at_exact_leeway_boundary(tokens, clock):
    issued = tokens.issue(USER, "sid-1")
    clock.now = issued.claims.expires_at + timedelta(seconds=60)
    assert tokens.verify(issued.token) is not None


def test_token_rejected_one_second_outside_leeway(tokens, clock):
    issued = tokens.issue(USER, "sid-1")
    clock.now = issued.claims.expires_at + timedelta(seconds=61)
    assert tokens.verify(issued.token) is None


def test_token_valid_until_exp(tokens, clock):
    issued = tokens.issue(USER, "sid-1", remember_me=True)
    clock.now = issued.claims.expires_at - timedelta(seconds=1)
    assert tokens.verify(issued.token) is not None


# ---------------------------------------------------------------------------
# Rejection
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("garbage", [None, "", "not-a-jwt", "a.b.c", 12345])
def test_garbage_is_invalid_not_an_exception(tokens, garbage):
    assert tokens.verify(garbage) is None


def test_token_signed_with_another_key_is_invalid(tokens):
    payload = {"sub": "7", "email": "alex@example.com", "role": "admin", "sid": "x", "typ": "session"}
    payload["iat"] = int(T0.timestamp())
    payload["exp"] = int((T0 + timedelta(days=1)).timestamp())
    forged = jwt.encode(payload, "attacker-controlled-key-0123456789abcdef", algorithm=ALGORITHM)
    assert tokens.verify(forged) is None


def test_tampered_payload_is_invalid(tokens):
    issued = tokens.issue(USER, "sid-1")
    header, _payload, signature = issued.token.split(".")
    other = tokens.issue(User(id=8, email="sam@example.com", role="admin"), "sid-2").token.split(".")[1]
    assert tokens.verify(f"{header}.{other}.{signature}") is None


def test_wrong_token_type_is_invalid(tokens):
    payload = {"sub": "7", "email": "alex@example.com", "role": "user", "sid": "x", "typ": "refresh"}
    payload["iat"] = int(T0.timestamp())
    payload["exp"] = int((T0 + timedelta(days=1)).timestamp())
    assert tokens.verify(jwt.encode(payload, TEST_SECRET_KEY, algorithm=ALGORITHM)) is None


def test_missing_claim_is_invalid(tokens):
    payload = {"sub": "7", "email": "alex@example.com", "role": "user", "typ": "session"}
    payload["iat"] = int(T0.timestamp())
    payload["exp"] = int((T0 + timedelta(days=1)).timestamp())
    assert tokens.verify(jwt.encode(payload, TEST_SECRET_KEY, algorithm=ALGORITHM)) is None


# ---------------------------------------------------------------------------
# Signing key
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("key", ["", "too-short"])
def test_unusable_signing_key_is_fatal(key):
    # model_construct skips the Settings validator so the service's own guard is exercised
    settings = Settings.model_construct(secret_key=key)
    with pytest.raises(SigningKeyError):
        TokenService(settings)


def test_settings_reject_short_key():
    with pytest.raises(ValueError):
        Settings(debug=True, secret_key="short")


def test_settings_require_key_outside_debug():
    with pytest.raises(ValueError):
        Settings(debug=False, secret_key="")


def test_debug_settings_generate_a_key():
    assert len(Settings(debug=True, secret_key="").secret_key) >= 32
