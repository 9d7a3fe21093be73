from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from taskboard.logging import get_logger
from taskboard.storage.errors import (
    REFRESH_TOKEN_HASH_UNIQUE,
    REFRESH_TOKEN_OWNER_FK,
    USER_EMAIL_UNIQUE,
    ConstraintViolation,
)
from taskboard.storage.models import (
    DEFAULT_AVATAR_URL,
    RefreshTokenRecord,
    User,
    UserRole,
    UserWithPassword,
    utcnow,
)


class MemoryStore:
    """In-process backing store used for tests and single-node development.

    Every public method takes the store-wide lock, so each call is atomic with
    respect to every other call. Records handed out are copies; mutating them
    never changes stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserWithPassword] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._refresh_token_seq: int = 1
        # RLock so helpers can re-enter while a public call holds it
        self._data_lock = threading.RLock()

    def _next_refresh_token_id(self) -> int:
        with self._data_lock:
            next_id = self._refresh_token_seq
            self._refresh_token_seq += 1
            return next_id

    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        role: str = UserRole.BACKEND_DEVELOPER.value,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
        team_id: Optional[int] = None,
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            if any(u.email == normalized_email for u in self.users.values()):
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email"},
                    constraint=USER_EMAIL_UNIQUE,
                )
            user = UserWithPassword(
                id=str(uuid.uuid4()),
                email=normalized_email,
                full_name=full_name,
                role=role,
                avatar_url=avatar_url or DEFAULT_AVATAR_URL,
                is_active=is_active,
                team_id=team_id,
                password_hash=password_hash,
            )
            self.users[user.id] = user
            return user.without_password()

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.without_password() if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        user = self.get_user_with_password(email)
        return user.without_password() if user else None

    def get_user_with_password(self, email: str) -> Optional[UserWithPassword]:
        normalized_email = email.strip().lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email == normalized_email), None
            )
            return replace(user) if user else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return user.without_password()

    def save_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            return True

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for token_hash, record in list(self.refresh_tokens.items()):
                if record.owner_id == user_id:
                    self.refresh_tokens.pop(token_hash, None)
            return True

    # refresh tokens
    def create_refresh_token(
        self,
        owner_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist",
                    {"owner_id": owner_id},
                    constraint=REFRESH_TOKEN_OWNER_FK,
                )
            if token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists",
                    constraint=REFRESH_TOKEN_HASH_UNIQUE,
                )
            record = RefreshTokenRecord(
                id=self._next_refresh_token_id(),
                owner_id=owner_id,
                token_hash=token_hash,
                expires_at=expires_at,
                created_at=utcnow(),
                device_info=device_info,
                origin_ip=origin_ip,
            )
            self.refresh_tokens[token_hash] = record
            return replace(record)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def claim_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        """Flip a non-revoked record to revoked and return it.

        Returns ``None`` when the hash is unknown or the record was already
        revoked; exactly one caller can ever receive a given record.
        """
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record is None or record.is_revoked:
                return None
            record.is_revoked = True
            return replace(record)

    def revoke_user_refresh_tokens(self, owner_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.owner_id == owner_id and not record.is_revoked:
                    record.is_revoked = True
                    revoked += 1
            return revoked

    def list_refresh_tokens(self, owner_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [
                replace(r) for r in self.refresh_tokens.values() if r.owner_id == owner_id
            ]
        return sorted(records, key=lambda r: r.id)
