"""Request-scoped authentication and authorization dependencies.

``authenticate`` and ``optional_authenticate`` resolve the bearer token into a
``Principal`` stored on ``request.state``. ``authorize`` consults the permission
table using the matched route template, so ``/users/{id}`` is checked as a
pattern rather than as the concrete path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from fastapi import Depends, Header, HTTPException, Request

from knowledgecenter.logging import get_logger
from knowledgecenter.service.errors import InvalidToken
from knowledgecenter.service.runtime import get_runtime
from knowledgecenter.service.tokens import AccessClaims

logger = get_logger(__name__)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class Principal:
    """Authenticated caller for the current request."""

    user_id: str
    roles: List[str] = field(default_factory=list)
    claims: Optional[AccessClaims] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, *roles: str) -> bool:
        return any(role in self.roles for role in roles)


def _split_bearer(authorization: str) -> Optional[str]:
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _principal_from_token(token: str) -> Principal:
    claims = get_runtime().tokens.validate_access_token(token)
    return Principal(user_id=claims.user_id, roles=list(claims.roles), claims=claims)


def current_principal(request: Request) -> Optional[Principal]:
    return getattr(request.state, "principal", None)


def is_authenticated(request: Request) -> bool:
    return current_principal(request) is not None


async def authenticate(
    request: Request, authorization: Optional[str] = Header(None)
) -> Principal:
    if not authorization:
        raise _http_error("unauthorized", "Authorization header required", status_code=401)
    token = _split_bearer(authorization)
    if token is None:
        raise _http_error(
            "unauthorized", "Invalid authorization header format", status_code=401
        )
    try:
        principal = _principal_from_token(token)
    except InvalidToken:
        raise _http_error("unauthorized", "Invalid or expired token", status_code=401)
    request.state.principal = principal
    return principal


async def optional_authenticate(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[Principal]:
    """Attach a principal when a valid bearer token is present; never rejects."""
    if not authorization:
        return None
    token = _split_bearer(authorization)
    if token is None:
        return None
    try:
        principal = _principal_from_token(token)
    except InvalidToken:
        return None
    request.state.principal = principal
    return principal


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or request.url.path


async def authorize(request: Request) -> None:
    """Enforce the permission table for the matched route.

    Runs after ``authenticate`` or ``optional_authenticate``; callers without a
    principal are treated as holding no roles.
    """
    principal = current_principal(request)
    roles = principal.roles if principal else []
    path = _route_template(request)
    decision = get_runtime().permissions.authorize(request.method, path, roles)
    if decision.allowed:
        return
    logger.warning(
        "authorization_denied",
        method=request.method,
        path=path,
        user_id=principal.user_id if principal else None,
        reason=decision.reason,
        required_roles=list(decision.required_roles),
    )
    raise _http_error(
        "forbidden",
        decision.message,
        status_code=403,
        details={"reason": decision.reason},
    )


def require_roles(*roles: str) -> Callable:
    """Dependency admitting callers that hold at least one of ``roles``."""

    async def dependency(principal: Principal = Depends(authenticate)) -> Principal:
        if not principal.roles:
            raise _http_error("forbidden", "Access denied", status_code=403)
        if not principal.has_any_role(*roles):
            raise _http_error("forbidden", "Insufficient permissions", status_code=403)
        return principal

    return dependency


def require_all_roles(*roles: str) -> Callable:
    """Dependency admitting callers that hold every one of ``roles``."""

    async def dependency(principal: Principal = Depends(authenticate)) -> Principal:
        if not principal.roles:
            raise _http_error("forbidden", "Access denied", status_code=403)
        if not all(principal.has_role(role) for role in roles):
            raise _http_error("forbidden", "Insufficient permissions", status_code=403)
        return principal

    return dependency


def _clean_ip(value: str) -> str:
    return peer_host(value.strip()).strip("[]")


def client_ip(request: Request) -> str:
    """Client address from proxy headers, falling back to the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = _clean_ip(forwarded.split(",")[0])
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        cleaned = _clean_ip(real_ip)
        if cleaned:
            return cleaned
    if request.client is None:
        return ""
    return peer_host(request.client.host)


def peer_host(address: str) -> str:
    """Strip a port from a transport address (``[v6]:port`` or ``v4:port``)."""
    address = address or ""
    if address.startswith("["):
        end = address.find("]")
        if end != -1:
            return address[1:end]
    # Only an IPv4 host:port has exactly one colon
    if address.count(":") == 1:
        return address.rsplit(":", 1)[0]
    return address


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")
