from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from taskboard.logging import get_logger
from taskboard.service.errors import AuthenticationError, ConflictError
from taskboard.service.passwords import CredentialVerifier
from taskboard.service.refresh_tokens import ConsumeStatus, RefreshTokenStore
from taskboard.service.tokens import AccessTokenSigner
from taskboard.storage.errors import ConstraintViolation
from taskboard.storage.models import User, UserRole, UserWithPassword

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"
INVALID_REFRESH_TOKEN = "invalid refresh token"

ReuseHook = Callable[[str, int], None]


class UserDirectory(Protocol):
    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        role: str = ...,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_with_password(self, email: str) -> Optional[UserWithPassword]: ...

    def save_password(self, user_id: str, password_hash: str) -> bool: ...


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    user: User


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class SessionManager:
    """Login, rotation and revocation of refresh-token backed sessions.

    Storage round-trips and password hashing are blocking, so each one runs
    in a worker thread; the event loop keeps serving other requests.
    """

    def __init__(
        self,
        users: UserDirectory,
        refresh_tokens: RefreshTokenStore,
        signer: AccessTokenSigner,
        verifier: CredentialVerifier,
        *,
        on_reuse: Optional[ReuseHook] = None,
    ) -> None:
        self.users = users
        self.refresh_tokens = refresh_tokens
        self.signer = signer
        self.verifier = verifier
        self.on_reuse = on_reuse
        self.logger = logger

    async def _issue(
        self, user: User, device_info: Optional[str], ip: Optional[str]
    ) -> AuthResult:
        raw_refresh = await asyncio.to_thread(
            self.refresh_tokens.issue, user.id, device_info, ip
        )
        return AuthResult(
            access_token=self.signer.sign(user),
            refresh_token=raw_refresh,
            user=user,
        )

    async def register(
        self,
        email: str,
        password: str,
        full_name: str,
        *,
        role: str = UserRole.BACKEND_DEVELOPER.value,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthResult:
        normalized = normalize_email(email)
        existing = await asyncio.to_thread(self.users.get_user_by_email, normalized)
        if existing:
            raise ConflictError("email already registered", detail={"field": "email"})
        password_hash = await asyncio.to_thread(self.verifier.hash, password)
        try:
            user = await asyncio.to_thread(
                self.users.create_user,
                normalized,
                full_name.strip(),
                password_hash,
                role=role,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration of the same email
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return await self._issue(user, device_info, ip)

    async def login(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthResult:
        record = await asyncio.to_thread(
            self.users.get_user_with_password, normalize_email(email)
        )
        if record is None:
            await asyncio.to_thread(self.verifier.verify_dummy, password)
            self.logger.info("login_unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)
        valid = await asyncio.to_thread(
            self.verifier.verify, password, record.password_hash
        )
        if not valid:
            self.logger.info("login_bad_password", user_id=record.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not record.is_active:
            self.logger.info("login_inactive_account", user_id=record.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if self.verifier.needs_rehash(record.password_hash):
            await self._upgrade_hash(record.id, password)
        result = await self._issue(record.without_password(), device_info, ip)
        self.logger.info("login_succeeded", user_id=record.id)
        return result

    async def _upgrade_hash(self, user_id: str, password: str) -> None:
        # Stored hash uses older parameters; the plain password is at hand only now
        new_hash = await asyncio.to_thread(self.verifier.hash, password)
        await asyncio.to_thread(self.users.save_password, user_id, new_hash)
        self.logger.info("password_rehashed", user_id=user_id)

    async def refresh(
        self,
        raw_refresh_token: str,
        *,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthResult:
        outcome = await asyncio.to_thread(self.refresh_tokens.consume, raw_refresh_token)
        if outcome.status is ConsumeStatus.REUSED:
            if self.on_reuse and outcome.owner_id:
                self.on_reuse(outcome.owner_id, outcome.revoked_count)
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        if outcome.status is not ConsumeStatus.VALID or not outcome.owner_id:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)

        user = await asyncio.to_thread(self.users.get_user, outcome.owner_id)
        if user is None:
            self.logger.warning("refresh_user_missing", user_id=outcome.owner_id)
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        if not user.is_active:
            self.logger.info("refresh_user_inactive", user_id=user.id)
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        return await self._issue(user, device_info, ip)

    async def logout(self, raw_refresh_token: str) -> bool:
        revoked = await asyncio.to_thread(self.refresh_tokens.revoke_one, raw_refresh_token)
        self.logger.info("logout", revoked=revoked)
        return revoked

    async def logout_all(self, owner_id: str) -> int:
        revoked = await asyncio.to_thread(self.refresh_tokens.revoke_all, owner_id)
        self.logger.info("logout_all", user_id=owner_id, revoked_count=revoked)
        return revoked

    async def validate_by_id(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        user = await asyncio.to_thread(self.users.get_user, user_id)
        if user is None or not user.is_active:
            return None
        return user

    async def authenticate(self, access_token: str) -> Optional[User]:
        claims = self.signer.verify(access_token)
        if claims is None:
            return None
        return await self.validate_by_id(claims.sub)
