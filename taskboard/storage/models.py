from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

DEFAULT_AVATAR_URL = "https://api.dicebear.com/9.x/initials/svg?seed=default"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    BACKEND_DEVELOPER = "backend_developer"
    FRONTEND_DEVELOPER = "frontend_developer"
    FULLSTACK_DEVELOPER = "fullstack_developer"
    QA = "qa"
    DEVOPS = "devops"
    DESIGNER = "designer"
    PRODUCT_MANAGER = "product_manager"
    TECH_LEAD = "tech_lead"


@dataclass
class User:
    id: str
    email: str
    full_name: str
    role: str = UserRole.BACKEND_DEVELOPER.value
    avatar_url: str = DEFAULT_AVATAR_URL
    is_active: bool = True
    team_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserWithPassword(User):
    """User row including the password hash; only returned for credential checks."""

    password_hash: str = ""

    def without_password(self) -> User:
        return User(
            id=self.id,
            email=self.email,
            full_name=self.full_name,
            role=self.role,
            avatar_url=self.avatar_url,
            is_active=self.is_active,
            team_id=self.team_id,
            created_at=self.created_at,
        )


@dataclass
class RefreshTokenRecord:
    id: int
    owner_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    device_info: Optional[str] = None
    origin_ip: Optional[str] = None
    is_revoked: bool = False

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)
