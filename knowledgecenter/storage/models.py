from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    """Identity record. ``id`` is internal, ``public_id`` is what clients see."""

    id: int
    public_id: str
    login_id: str
    email: str
    name: Dict[str, str] = field(default_factory=dict)
    password_hash: str = ""
    is_visible: bool = True
    is_deleted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_info(self) -> Dict[str, object]:
        return {
            "id": self.public_id,
            "login_id": self.login_id,
            "name": dict(self.name),
            "email": self.email,
        }


@dataclass
class RefreshTokenRecord:
    """Stored side of a refresh token; only the SHA-256 of the secret is kept."""

    id: int
    user_id: int
    token_hash: str
    expires_at: datetime
    is_revoked: bool = False
    replaced_by_token_id: Optional[int] = None
    parent_token_id: Optional[int] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: int,
        token_hash: str,
        ttl: timedelta,
        *,
        parent_token_id: Optional[int] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "RefreshTokenRecord":
        """Build an unsaved record; the store assigns ``id`` on insert."""
        issued = now or utcnow()
        return cls(
            id=0,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=issued + ttl,
            parent_token_id=parent_token_id,
            client_ip=client_ip,
            user_agent=user_agent,
            created_at=issued,
            updated_at=issued,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class Group:
    id: int
    public_id: str
    name: Dict[str, str] = field(default_factory=dict)
    description: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PermissionRule:
    id: int
    method: str
    path_pattern: str
    required_roles: List[str] = field(default_factory=list)
