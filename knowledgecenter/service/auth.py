from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Protocol

from knowledgecenter.config import Settings
from knowledgecenter.logging import get_logger
from knowledgecenter.service.credentials import CredentialVault
from knowledgecenter.service.errors import (
    EmailExists,
    InvalidCredentials,
    InvalidEmail,
    InvalidName,
    InvalidPassword,
    LoginIDExists,
    NotFoundError,
    PublicGroupNotFound,
)
from knowledgecenter.service.tokens import IssuedTokens, TokenAuthority
from knowledgecenter.storage.common import PUBLIC_GROUP_ID
from knowledgecenter.storage.errors import ConstraintViolation
from knowledgecenter.storage.models import (
    Group,
    PermissionRule,
    RefreshTokenRecord,
    User,
)

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^.+@.+\..+$")
EMAIL_MIN_LENGTH = 3
EMAIL_MAX_LENGTH = 254
PASSWORD_MIN_BYTES = 8


class IdentityStore(Protocol):
    def verify_connection(self) -> bool: ...

    def create_user(
        self, login_id: str, email: str, name: dict[str, str], password_hash: str
    ) -> User: ...

    def get_user_by_login_id(self, login_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_public_id(self, public_id: str) -> Optional[User]: ...

    def create_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_token(self, token_id: int) -> None: ...

    def revoke_all_user_tokens(self, user_id: int) -> int: ...

    def mark_token_replaced(self, old_token_id: int, new_token_id: int) -> None: ...

    def get_group_by_public_id(self, public_id: str) -> Optional[Group]: ...

    def add_user_to_group(
        self, user_id: int, group_id: int, assigned_by: Optional[int] = None
    ) -> None: ...

    def get_effective_roles(self, user_id: int) -> List[str]: ...

    def list_permission_rules(self) -> List[PermissionRule]: ...


@dataclass
class SessionGrant:
    """Result of a successful register or login."""

    user: User
    roles: List[str]
    tokens: IssuedTokens

    def user_info(self) -> dict[str, Any]:
        return self.user.to_info()


@dataclass
class RegisterRequestData:
    email: str
    password: str
    name: Any
    login_id: Optional[str] = None


def validate_email(email: str) -> None:
    if not (EMAIL_MIN_LENGTH <= len(email) <= EMAIL_MAX_LENGTH):
        raise InvalidEmail()
    if not EMAIL_PATTERN.match(email):
        raise InvalidEmail()


def validate_name(name: Any) -> dict[str, str]:
    """Require a locale-keyed mapping with at least one entry."""
    if not isinstance(name, Mapping) or len(name) < 1:
        raise InvalidName()
    return {str(locale): str(value) for locale, value in name.items()}


def validate_password(password: str) -> None:
    if len((password or "").encode("utf-8")) < PASSWORD_MIN_BYTES:
        raise InvalidPassword()


class AuthService:
    """Register, login, refresh, logout and profile lookups for the HTTP layer."""

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        *,
        vault: Optional[CredentialVault] = None,
        tokens: Optional[TokenAuthority] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.vault = vault or CredentialVault(workers=settings.password_hash_workers)
        self.tokens = tokens or TokenAuthority(store, self.vault, settings)
        self.logger = logger

    async def register(
        self,
        req: RegisterRequestData,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionGrant:
        validate_email(req.email)
        name = validate_name(req.name)
        validate_password(req.password)

        if self.store.get_user_by_email(req.email):
            raise EmailExists()
        login_id = req.login_id or req.email
        if self.store.get_user_by_login_id(login_id):
            raise LoginIDExists()

        password_hash = await self.vault.hash_password_async(req.password)
        try:
            user = self.store.create_user(login_id, req.email, name, password_hash)
        except ConstraintViolation as exc:
            # Lost a race against a concurrent registration
            if exc.field == "login_id":
                raise LoginIDExists() from exc
            if exc.field == "email":
                raise EmailExists() from exc
            raise

        public_group = self.store.get_group_by_public_id(PUBLIC_GROUP_ID)
        if public_group is None:
            self.logger.error("public_group_missing", user_id=user.id)
            raise PublicGroupNotFound()
        self.store.add_user_to_group(user.id, public_group.id)

        grant = self._grant(user, client_ip=client_ip, user_agent=user_agent)
        self.logger.info(
            "user_registered", user_id=user.id, login_id=user.login_id, roles=grant.roles
        )
        return grant

    async def login(
        self,
        login_id: str,
        password: str,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionGrant:
        user = self.store.get_user_by_login_id(login_id)
        if user is None:
            user = self.store.get_user_by_email(login_id)
        if user is None:
            raise InvalidCredentials()
        if not user.password_hash:
            raise InvalidCredentials()
        if not await self.vault.verify_password_async(password, user.password_hash):
            self.logger.info("login_failed", user_id=user.id)
            raise InvalidCredentials()

        grant = self._grant(user, client_ip=client_ip, user_agent=user_agent)
        self.logger.info("login_succeeded", user_id=user.id)
        return grant

    async def refresh(
        self,
        secret: str,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedTokens:
        _, tokens = self.tokens.rotate(
            secret, client_ip=client_ip, user_agent=user_agent
        )
        return tokens

    async def logout(self, secret: Optional[str]) -> None:
        if not secret:
            return
        if self.tokens.revoke(secret):
            self.logger.info("refresh_token_revoked")

    async def logout_all(self, user_public_id: str) -> int:
        user = self._resolve_user(user_public_id)
        revoked = self.tokens.revoke_all(user.id)
        self.logger.info("user_tokens_revoked", user_id=user.id, revoked=revoked)
        return revoked

    async def get_me(self, user_public_id: str) -> tuple[User, List[str]]:
        user = self._resolve_user(user_public_id)
        return user, self.store.get_effective_roles(user.id)

    def _resolve_user(self, user_public_id: str) -> User:
        user = self.store.get_user_by_public_id(user_public_id)
        if user is None:
            # Bearer token outlived its user
            raise NotFoundError("User not found", detail={"reason": "user_not_found"})
        return user

    def _grant(
        self,
        user: User,
        *,
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> SessionGrant:
        effective = self.store.get_effective_roles(user.id)
        tokens = self.tokens.issue_tokens(
            user, effective, client_ip=client_ip, user_agent=user_agent
        )
        return SessionGrant(user=user, roles=effective, tokens=tokens)

    def shutdown(self) -> None:
        self.vault.shutdown(wait=False)
