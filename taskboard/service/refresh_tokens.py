from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Protocol

from taskboard.logging import get_logger
from taskboard.storage.models import RefreshTokenRecord, utcnow

logger = get_logger(__name__)

_TOKEN_BYTES = 32
_MAX_DEVICE_INFO = 255
_MAX_ORIGIN_IP = 45


class RefreshTokenBackend(Protocol):
    def create_refresh_token(
        self,
        owner_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def claim_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_user_refresh_tokens(self, owner_id: str) -> int: ...

    def list_refresh_tokens(self, owner_id: str) -> List[RefreshTokenRecord]: ...


class ConsumeStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    REUSED = "reused"
    INVALID = "invalid"


@dataclass(frozen=True)
class ConsumeOutcome:
    status: ConsumeStatus
    owner_id: Optional[str] = None
    revoked_count: int = 0

    @property
    def ok(self) -> bool:
        return self.status is ConsumeStatus.VALID


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value[:limit] or None


class RefreshTokenStore:
    """Opaque, single-use refresh tokens persisted only as SHA-256 digests.

    Every presentation of a raw token revokes its record. Presenting a token
    whose record is already revoked (but not yet expired) is treated as theft
    and revokes every live token of the same owner.
    """

    def __init__(self, backend: RefreshTokenBackend, ttl: timedelta) -> None:
        if ttl <= timedelta(0):
            raise ValueError("refresh token ttl must be positive")
        self.backend = backend
        self.ttl = ttl

    def issue(
        self,
        owner_id: str,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> str:
        raw_token = secrets.token_urlsafe(_TOKEN_BYTES)
        record = self.backend.create_refresh_token(
            owner_id,
            hash_token(raw_token),
            utcnow() + self.ttl,
            device_info=_clip(device_info, _MAX_DEVICE_INFO),
            origin_ip=_clip(ip, _MAX_ORIGIN_IP),
        )
        logger.debug("refresh_token_issued", owner_id=owner_id, record_id=record.id)
        return raw_token

    def consume(self, raw_token: str) -> ConsumeOutcome:
        if not raw_token:
            return ConsumeOutcome(ConsumeStatus.INVALID)
        token_hash = hash_token(raw_token)
        now = utcnow()

        claimed = self.backend.claim_refresh_token(token_hash)
        if claimed is not None:
            if claimed.is_expired(now):
                logger.info("refresh_token_expired", owner_id=claimed.owner_id)
                return ConsumeOutcome(ConsumeStatus.EXPIRED, claimed.owner_id)
            return ConsumeOutcome(ConsumeStatus.VALID, claimed.owner_id)

        record = self.backend.get_refresh_token(token_hash)
        if record is None:
            logger.info("refresh_token_unknown")
            return ConsumeOutcome(ConsumeStatus.INVALID)
        if record.is_expired(now):
            # Retrying a dead token is not evidence of theft
            logger.info("refresh_token_expired", owner_id=record.owner_id)
            return ConsumeOutcome(ConsumeStatus.EXPIRED, record.owner_id)

        revoked = self.backend.revoke_user_refresh_tokens(record.owner_id)
        logger.warning(
            "refresh_token_reuse_detected",
            owner_id=record.owner_id,
            record_id=record.id,
            revoked_count=revoked,
        )
        return ConsumeOutcome(ConsumeStatus.REUSED, record.owner_id, revoked)

    def revoke_one(self, raw_token: str) -> bool:
        if not raw_token:
            return False
        return self.backend.claim_refresh_token(hash_token(raw_token)) is not None

    def revoke_all(self, owner_id: str) -> int:
        return self.backend.revoke_user_refresh_tokens(owner_id)

    def list_for_owner(self, owner_id: str) -> List[RefreshTokenRecord]:
        return self.backend.list_refresh_tokens(owner_id)
