from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, List, Optional

from knowledgecenter.config import Settings
from knowledgecenter.logging import get_logger
from knowledgecenter.service.credentials import CredentialVault
from knowledgecenter.service.errors import InvalidToken, TokenExpired, TokenRevoked
from knowledgecenter.storage.models import RefreshTokenRecord, User

if TYPE_CHECKING:
    from knowledgecenter.service.auth import IdentityStore

logger = get_logger(__name__)

TOKEN_TYPE = "Bearer"
# Fixed token contract; not configurable
TOKEN_ISSUER = "knowledgecenter-api"
ACCESS_TOKEN_TTL = timedelta(minutes=15)


@dataclass
class AccessClaims:
    """Claims carried by an access token; absent claims stay at zero values."""

    user_id: str = ""
    login_id: str = ""
    email: str = ""
    roles: List[str] = field(default_factory=list)
    jti: str = ""
    issued_at: int = 0
    expires_at: int = 0
    issuer: str = ""

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessClaims":
        roles = payload.get("roles")
        return cls(
            user_id=str(payload.get("user_id") or ""),
            login_id=str(payload.get("login_id") or ""),
            email=str(payload.get("email") or ""),
            roles=[str(r) for r in roles] if isinstance(roles, list) else [],
            jti=str(payload.get("jti") or ""),
            issued_at=_as_int(payload.get("iat")),
            expires_at=_as_int(payload.get("exp")),
            issuer=str(payload.get("iss") or ""),
        )


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass
class IssuedTokens:
    access_token: str
    expires_in: int
    refresh_secret: str
    refresh_record: RefreshTokenRecord
    token_type: str = TOKEN_TYPE

    def as_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


class TokenAuthority:
    """Signs access tokens and runs the refresh-token rotation protocol."""

    def __init__(
        self, store: "IdentityStore", vault: CredentialVault, settings: Settings
    ) -> None:
        self.store = store
        self.vault = vault
        self.issuer = TOKEN_ISSUER
        self._secret = settings.jwt_secret.encode("utf-8")
        self.access_ttl = ACCESS_TOKEN_TTL
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # JWT compact serialization
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Pin the algorithm before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.warning(
                    "jwt_invalid_algorithm",
                    alg=header.get("alg") if isinstance(header, dict) else None,
                )
                return None
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        try:
            supplied_sig = sig_b64.encode("utf-8")
        except UnicodeEncodeError:
            return None
        # compare_digest rejects non-ASCII str, so both sides are bytes
        if not hmac.compare_digest(expected_sig, supplied_sig):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        # Stricter than zero-value claim parsing: a token without exp never validates.
        exp = payload.get("exp")
        if exp is None:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        return payload

    # access tokens
    def issue_access_token(self, user: User, roles: List[str]) -> str:
        now = self._now()
        issued_at = int(now.timestamp())
        payload = {
            "user_id": user.public_id,
            "login_id": user.login_id,
            "email": user.email,
            "roles": list(roles),
            "jti": self.vault.generate_jti(),
            "iat": issued_at,
            "exp": issued_at + int(self.access_ttl.total_seconds()),
            "iss": self.issuer,
        }
        return self._encode_jwt(payload)

    def validate_access_token(self, token: str) -> AccessClaims:
        """Return the token's claims or raise ``InvalidToken``.

        Malformed, forged, wrong-algorithm and expired tokens all fail the same way.
        """
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidToken()
        return AccessClaims.from_payload(payload)

    # refresh tokens
    def issue_refresh_token(
        self,
        user: User,
        *,
        parent_token_id: Optional[int] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[str, RefreshTokenRecord]:
        """Persist a new refresh record and return ``(secret, stored_record)``."""
        secret = self.vault.generate_refresh_secret()
        record = RefreshTokenRecord.new(
            user.id,
            self.vault.hash_token(secret),
            self.refresh_ttl,
            parent_token_id=parent_token_id,
            client_ip=client_ip or None,
            user_agent=user_agent or None,
            now=self._now(),
        )
        stored = self.store.create_token(record)
        return secret, stored

    def issue_tokens(
        self,
        user: User,
        roles: List[str],
        *,
        parent_token_id: Optional[int] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedTokens:
        access_token = self.issue_access_token(user, roles)
        secret, record = self.issue_refresh_token(
            user,
            parent_token_id=parent_token_id,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        return IssuedTokens(
            access_token=access_token,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_secret=secret,
            refresh_record=record,
        )

    def rotate(
        self,
        secret: str,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[User, IssuedTokens]:
        """Exchange a refresh secret for a new token pair.

        Raises:
            InvalidToken: unknown secret, or its owner no longer exists
            TokenRevoked: the record was already revoked or replaced; every
                token of the owner is revoked before raising
            TokenExpired: the record is past its expiry
        """
        current = self.store.get_token_by_hash(self.vault.hash_token(secret))
        if current is None:
            raise InvalidToken()

        if current.is_revoked:
            self.logger.warning(
                "refresh_token_reuse_detected",
                user_id=current.user_id,
                token_id=current.id,
                replaced_by_token_id=current.replaced_by_token_id,
            )
            try:
                self.store.revoke_all_user_tokens(current.user_id)
            except Exception as exc:
                # The caller is rejected either way; losing the lineage revoke is logged only.
                self.logger.error(
                    "refresh_lineage_revoke_failed",
                    user_id=current.user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            raise TokenRevoked()

        if current.is_expired(self._now()):
            raise TokenExpired()

        user = self.store.get_user(current.user_id)
        if user is None:
            raise InvalidToken()
        roles = self.store.get_effective_roles(user.id)
        tokens = self.issue_tokens(
            user,
            roles,
            parent_token_id=current.id,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        # Successor exists before the predecessor is marked, so a crash here
        # leaves two valid records rather than a dangling chain.
        self.store.mark_token_replaced(current.id, tokens.refresh_record.id)
        self.logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            token_id=current.id,
            replaced_by_token_id=tokens.refresh_record.id,
        )
        return user, tokens

    def revoke(self, secret: str) -> bool:
        """Revoke the record behind ``secret``; unknown secrets are a no-op."""
        record = self.store.get_token_by_hash(self.vault.hash_token(secret))
        if record is None:
            return False
        self.store.revoke_token(record.id)
        return True

    def revoke_all(self, user_id: int) -> int:
        return self.store.revoke_all_user_tokens(user_id)
