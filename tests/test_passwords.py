"""Unit tests for argon2id credential hashing."""

import pytest

from taskboard.service.passwords import CredentialVerifier


@pytest.fixture
def verifier():
    return CredentialVerifier(time_cost=1, memory_cost=1024, parallelism=1)


class TestCredentialVerifier:
    def test_hash_is_salted_argon2id(self, verifier):
        first = verifier.hash("Secret123")
        second = verifier.hash("Secret123")
        assert first.startswith("$argon2id$")
        assert first != second
        assert "Secret123" not in first

    def test_verify_accepts_matching_password(self, verifier):
        stored = verifier.hash("Secret123")
        assert verifier.verify("Secret123", stored) is True

    def test_verify_rejects_wrong_password(self, verifier):
        stored = verifier.hash("Secret123")
        assert verifier.verify("secret123", stored) is False

    def test_verify_never_raises_on_garbage_hash(self, verifier):
        assert verifier.verify("Secret123", "not-a-hash") is False
        assert verifier.verify("Secret123", "") is False
        assert verifier.verify("Secret123", "$2b$10$abcdefghijklmnopqrstuv") is False

    def test_verify_dummy_is_always_false(self, verifier):
        assert verifier.verify_dummy("Secret123") is False
        assert verifier.verify_dummy("") is False

    def test_needs_rehash_when_parameters_change(self, verifier):
        stored = verifier.hash("Secret123")
        assert verifier.needs_rehash(stored) is False
        stronger = CredentialVerifier(time_cost=2, memory_cost=1024, parallelism=1)
        assert stronger.needs_rehash(stored) is True
