"""Tests for opaque refresh token issue, rotation and reuse detection."""

import threading
from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from taskboard.service.refresh_tokens import (
    ConsumeStatus,
    RefreshTokenStore,
    hash_token,
)
from taskboard.storage.memory import MemoryStore
from taskboard.storage.models import utcnow


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def owner(store):
    return store.create_user("owner@x.com", "Owner", "hash")


@pytest.fixture
def tokens(store):
    return RefreshTokenStore(store, timedelta(days=30))


def _expire(store: MemoryStore, raw_token: str) -> None:
    store.refresh_tokens[hash_token(raw_token)].expires_at = utcnow() - timedelta(seconds=1)


class TestIssue:
    def test_raw_token_is_never_persisted(self, store, tokens, owner):
        raw = tokens.issue(owner.id)
        [record] = tokens.list_for_owner(owner.id)
        assert record.token_hash == hash_token(raw)
        assert len(record.token_hash) == 64
        assert raw not in record.token_hash
        assert record.is_revoked is False

    def test_token_has_256_bits_of_entropy(self, tokens, owner):
        raw = tokens.issue(owner.id)
        # 32 bytes url-safe base64 without padding
        assert len(raw) == 43

    def test_expiry_follows_configured_ttl(self, store, owner):
        short = RefreshTokenStore(store, timedelta(hours=2))
        short.issue(owner.id)
        [record] = short.list_for_owner(owner.id)
        lifetime = record.expires_at - record.created_at
        assert abs(lifetime - timedelta(hours=2)) < timedelta(seconds=5)

    def test_provenance_is_clipped(self, tokens, owner):
        tokens.issue(owner.id, device_info="x" * 400, ip="1" * 60)
        [record] = tokens.list_for_owner(owner.id)
        assert len(record.device_info) == 255
        assert len(record.origin_ip) == 45

    def test_non_positive_ttl_rejected(self, store):
        with pytest.raises(ValueError):
            RefreshTokenStore(store, timedelta(0))


class TestConsume:
    def test_first_presentation_rotates(self, tokens, owner):
        raw = tokens.issue(owner.id)
        outcome = tokens.consume(raw)
        assert outcome.status is ConsumeStatus.VALID
        assert outcome.owner_id == owner.id
        [record] = tokens.list_for_owner(owner.id)
        assert record.is_revoked is True

    def test_unknown_token_is_invalid(self, tokens):
        assert tokens.consume("never-issued").status is ConsumeStatus.INVALID
        assert tokens.consume("").status is ConsumeStatus.INVALID

    def test_second_presentation_revokes_family(self, tokens, owner):
        stolen = tokens.issue(owner.id)
        other_device = tokens.issue(owner.id)
        assert tokens.consume(stolen).ok
        rotated = tokens.issue(owner.id)

        outcome = tokens.consume(stolen)
        assert outcome.status is ConsumeStatus.REUSED
        assert outcome.owner_id == owner.id
        assert outcome.revoked_count == 2
        assert all(r.is_revoked for r in tokens.list_for_owner(owner.id))
        assert tokens.consume(rotated).status is ConsumeStatus.REUSED
        assert tokens.consume(other_device).status is ConsumeStatus.REUSED

    def test_reuse_is_logged_as_warning_with_owner(self, tokens, owner):
        raw = tokens.issue(owner.id)
        tokens.issue(owner.id)
        tokens.consume(raw)
        with capture_logs() as logs:
            tokens.consume(raw)
        [entry] = [e for e in logs if e["event"] == "refresh_token_reuse_detected"]
        assert entry["log_level"] == "warning"
        assert entry["owner_id"] == owner.id
        assert entry["revoked_count"] == 1

    def test_reuse_does_not_touch_other_owners(self, store, tokens, owner):
        bystander = store.create_user("bystander@x.com", "Bystander", "hash")
        kept = tokens.issue(bystander.id)
        raw = tokens.issue(owner.id)
        tokens.consume(raw)
        tokens.consume(raw)
        assert tokens.consume(kept).ok

    def test_expired_token_is_revoked_and_reported(self, store, tokens, owner):
        raw = tokens.issue(owner.id)
        sibling = tokens.issue(owner.id)
        _expire(store, raw)

        outcome = tokens.consume(raw)
        assert outcome.status is ConsumeStatus.EXPIRED
        assert store.get_refresh_token(hash_token(raw)).is_revoked is True

        # Retrying is still expired and leaves the family alone
        assert tokens.consume(raw).status is ConsumeStatus.EXPIRED
        assert tokens.consume(sibling).ok

    def test_concurrent_presentations_yield_one_winner(self, tokens, owner):
        raw = tokens.issue(owner.id)
        workers = 16
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def present():
            barrier.wait()
            outcome = tokens.consume(raw)
            with lock:
                results.append(outcome.status)

        threads = [threading.Thread(target=present) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(ConsumeStatus.VALID) == 1
        assert results.count(ConsumeStatus.REUSED) == workers - 1


class TestRevoke:
    def test_revoke_one_is_conditional(self, tokens, owner):
        raw = tokens.issue(owner.id)
        assert tokens.revoke_one(raw) is True
        assert tokens.revoke_one(raw) is False
        assert tokens.revoke_one("unknown") is False

    def test_revoke_all_counts_only_live_records(self, tokens, owner):
        first = tokens.issue(owner.id)
        tokens.issue(owner.id)
        tokens.issue(owner.id)
        tokens.revoke_one(first)
        assert tokens.revoke_all(owner.id) == 2
        assert tokens.revoke_all(owner.id) == 0
