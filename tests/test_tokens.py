"""Unit tests for the HS256 token signer."""

import base64
import json

import pytest

from happyjourney.service.errors import SigningKeyError
from happyjourney.service.tokens import (
    ACCESS_TOKEN_TTL_SECONDS,
    PURPOSE_EMAIL_VERIFICATION,
    PURPOSE_PASSWORD_RESET,
    IdentityClaim,
    TokenSigner,
)

SECRET = "x" * 48


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _claim():
    return IdentityClaim(subject_id="user-1", email="a@example.com", roles=["participant"])


def _segment(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


def test_issue_and_verify_returns_claim():
    signer = TokenSigner(SECRET, FakeClock())
    claim = signer.verify(signer.issue(_claim()))
    assert claim is not None
    assert claim.subject_id == "user-1"
    assert claim.email == "a@example.com"
    assert claim.roles == ["participant"]
    assert claim.expires_at - claim.issued_at == ACCESS_TOKEN_TTL_SECONDS


def test_expired_token_is_rejected():
    clock = FakeClock()
    signer = TokenSigner(SECRET, clock)
    token = signer.issue(_claim(), ttl_seconds=60)
    clock.now += 60
    assert signer.verify(token) is None


def test_bad_signature_is_rejected():
    signer = TokenSigner(SECRET, FakeClock())
    other = TokenSigner("y" * 48, FakeClock())
    assert signer.verify(other.issue(_claim())) is None


def test_tampered_payload_is_rejected():
    signer = TokenSigner(SECRET, FakeClock())
    header, _, sig = signer.issue(_claim()).split(".")
    forged = _segment({"sub": "admin", "exp": 9_999_999_999, "purpose": "access"})
    assert signer.verify(f"{header}.{forged}.{sig}") is None


def test_non_hs256_header_is_rejected():
    signer = TokenSigner(SECRET, FakeClock())
    _, payload, sig = signer.issue(_claim()).split(".")
    none_header = _segment({"alg": "none", "typ": "JWT"})
    assert signer.verify(f"{none_header}.{payload}.{sig}") is None


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.###"])
def test_malformed_tokens_are_rejected(token):
    assert TokenSigner(SECRET, FakeClock()).verify(token) is None


@pytest.mark.parametrize("sig", ["\u00e9", "abc\u00ff", "\u00e9" * 43])
def test_non_ascii_signature_is_rejected(sig):
    signer = TokenSigner(SECRET, FakeClock())
    header, payload, _ = signer.issue(_claim()).split(".")
    assert signer.verify(f"{header}.{payload}.{sig}") is None


def test_purpose_must_match():
    signer = TokenSigner(SECRET, FakeClock())
    reset = signer.issue(_claim(), 900, PURPOSE_PASSWORD_RESET)
    assert signer.verify(reset) is None
    assert signer.verify(reset, purpose=PURPOSE_PASSWORD_RESET).subject_id == "user-1"


def test_pending_token_carries_step():
    signer = TokenSigner(SECRET, FakeClock())
    token = signer.issue(_claim(), 3600, PURPOSE_EMAIL_VERIFICATION)
    payload = json.loads(base64.urlsafe_b64decode(token.split(".")[1] + "=="))
    assert payload["step"] == "email_verification"
    assert payload["exp"] - payload["iat"] == 3600


@pytest.mark.parametrize("secret", [None, "", "   ", "short-secret"])
def test_unusable_secret_fails_closed(secret):
    signer = TokenSigner(secret, FakeClock())
    assert signer.configured is False
    with pytest.raises(SigningKeyError):
        signer.issue(_claim())
    with pytest.raises(SigningKeyError):
        signer.verify("a.b.c")
