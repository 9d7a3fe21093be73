"""Unit tests for HS256 access token signing and verification."""

import base64
import json
import time
from datetime import timedelta

import pytest

from taskboard.service.tokens import AccessTokenSigner
from taskboard.storage.models import User

SECRET = "signer-secret-for-unit-tests-0123456789abcdef"


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def signer():
    return AccessTokenSigner(
        SECRET,
        issuer="taskboard",
        audience="taskboard-clients",
        ttl=timedelta(minutes=15),
        leeway=timedelta(seconds=30),
    )


@pytest.fixture
def user():
    return User(id="user-1", email="alice@x.com", full_name="Alice")


class TestSignAndVerify:
    def test_round_trip_carries_identity_claims(self, signer, user):
        claims = signer.verify(signer.sign(user))
        assert claims is not None
        assert claims.sub == "user-1"
        assert claims.email == "alice@x.com"
        assert claims.role == "backend_developer"
        assert claims.exp - claims.iat == 15 * 60

    def test_each_token_has_unique_jti(self, signer, user):
        first = signer.verify(signer.sign(user))
        second = signer.verify(signer.sign(user))
        assert first.jti != second.jti

    def test_expired_token_rejected(self, signer, user):
        issued = time.time() - 16 * 60 - 31
        token = signer.sign(user, now=issued)
        assert signer.verify(token) is None

    def test_leeway_allows_small_clock_skew(self, signer, user):
        issued = time.time() - 15 * 60 - 10
        token = signer.sign(user, now=issued)
        assert signer.verify(token) is not None

    def test_tampered_payload_rejected(self, signer, user):
        header, _, sig = signer.sign(user).split(".")
        forged = _segment(
            {
                "iss": "taskboard",
                "aud": "taskboard-clients",
                "sub": "someone-else",
                "role": "tech_lead",
                "token_type": "access",
                "exp": int(time.time()) + 600,
            }
        )
        assert signer.verify(f"{header}.{forged}.{sig}") is None

    def test_other_secret_rejected(self, signer, user):
        other = AccessTokenSigner(
            "a-completely-different-secret-0123456789",
            issuer="taskboard",
            audience="taskboard-clients",
            ttl=timedelta(minutes=15),
        )
        assert signer.verify(other.sign(user)) is None

    def test_alg_none_rejected(self, signer, user):
        _, payload, _ = signer.sign(user).split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        assert signer.verify(f"{header}.{payload}.") is None

    def test_wrong_audience_or_issuer_rejected(self, signer, user):
        for kwargs in (
            {"issuer": "taskboard", "audience": "elsewhere"},
            {"issuer": "elsewhere", "audience": "taskboard-clients"},
        ):
            foreign = AccessTokenSigner(SECRET, ttl=timedelta(minutes=15), **kwargs)
            assert signer.verify(foreign.sign(user)) is None

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
    def test_malformed_tokens_rejected(self, signer, token):
        assert signer.verify(token) is None


class TestExtractBearer:
    def test_extracts_token(self):
        assert AccessTokenSigner.extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
        assert AccessTokenSigner.extract_bearer("bearer abc") == "abc"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer   "])
    def test_rejects_other_schemes(self, header):
        assert AccessTokenSigner.extract_bearer(header) is None
