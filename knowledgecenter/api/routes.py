from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response

from knowledgecenter.api.deps import (
    Principal,
    _http_error,
    authenticate,
    authorize,
    client_ip,
    require_roles,
    user_agent,
)
from knowledgecenter.api.error_handling import service_error_response
from knowledgecenter.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    UserInfo,
)
from knowledgecenter.config import Settings
from knowledgecenter.logging import get_logger
from knowledgecenter.service.auth import RegisterRequestData, SessionGrant
from knowledgecenter.service.errors import InvalidToken, TokenExpired, TokenRevoked
from knowledgecenter.service.runtime import get_runtime
from knowledgecenter.service.tokens import IssuedTokens

logger = get_logger(__name__)

router = APIRouter()
# Bearer token required; the permission table is consulted for every route here.
protected_router = APIRouter(dependencies=[Depends(authenticate), Depends(authorize)])

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _set_refresh_cookie(response: Response, settings: Settings, secret: str) -> None:
    max_age = settings.refresh_token_ttl_days * 24 * 60 * 60
    response.set_cookie(
        settings.refresh_cookie_name,
        secret,
        max_age=max_age,
        expires=max_age,
        path=settings.refresh_cookie_path,
        secure=settings.secure_cookies,
        httponly=True,
        samesite="strict",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        "",
        max_age=-1,
        expires=_EPOCH,
        path=settings.refresh_cookie_path,
        secure=settings.secure_cookies,
        httponly=True,
        samesite="strict",
    )


def _token_response(tokens: IssuedTokens) -> TokenResponse:
    return TokenResponse(**tokens.as_response())


def _user_info(grant: SessionGrant) -> UserInfo:
    return UserInfo(**grant.user_info())


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account, join the public group and open a session.

    Raises:
        400: Malformed email, empty name mapping or short password
        409: Email or login ID already taken
    """
    runtime = get_runtime()
    grant = await runtime.auth.register(
        RegisterRequestData(
            email=body.email,
            password=body.password,
            name=body.name,
            login_id=body.login_id,
        ),
        client_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    _set_refresh_cookie(response, runtime.settings, grant.tokens.refresh_secret)
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=_user_info(grant),
            tokens=_token_response(grant.tokens),
            message="User registered successfully",
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with login ID (or email) and password.

    Raises:
        401: Unknown user or wrong password, indistinguishably
    """
    runtime = get_runtime()
    grant = await runtime.auth.login(
        body.login_id,
        body.password,
        client_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    _set_refresh_cookie(response, runtime.settings, grant.tokens.refresh_secret)
    return Envelope(
        status="ok",
        data=LoginResponse(user=_user_info(grant), tokens=_token_response(grant.tokens)),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(request: Request, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    secret = request.cookies.get(settings.refresh_cookie_name)
    if not secret:
        raise _http_error("unauthorized", "Refresh token not found", status_code=401)
    try:
        tokens = await runtime.auth.refresh(
            secret, client_ip=client_ip(request), user_agent=user_agent(request)
        )
    except (InvalidToken, TokenRevoked, TokenExpired) as exc:
        logger.warning(
            "refresh_rejected",
            reason=exc.reason,
            client_ip=client_ip(request),
            user_agent=user_agent(request),
        )
        error_response = service_error_response(exc)
        _clear_refresh_cookie(error_response, settings)
        return error_response
    _set_refresh_cookie(response, settings, tokens.refresh_secret)
    return Envelope(status="ok", data=_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    secret = request.cookies.get(runtime.settings.refresh_cookie_name)
    if secret:
        try:
            await runtime.auth.logout(secret)
        except Exception as exc:
            # Logout always succeeds for the client; the cookie is cleared below.
            logger.warning(
                "logout_revoke_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@protected_router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: Principal = Depends(authenticate)):
    runtime = get_runtime()
    await runtime.auth.logout_all(principal.user_id)
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Logged out from all devices successfully"),
    )


@protected_router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: Principal = Depends(authenticate)):
    runtime = get_runtime()
    user, roles = await runtime.auth.get_me(principal.user_id)
    return Envelope(
        status="ok",
        data=MeResponse(user=UserInfo(**user.to_info()), roles=roles),
    )


@protected_router.post(
    "/admin/refresh-permissions",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(require_roles("full_access"))],
)
async def refresh_permissions(principal: Principal = Depends(authenticate)):
    """Reload route permission rules from the store without a restart."""
    runtime = get_runtime()
    try:
        count = runtime.permissions.load_permissions(runtime.store)
    except Exception as exc:
        logger.error(
            "permissions_refresh_failed",
            user_id=principal.user_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise _http_error(
            "server_error", "Failed to refresh permissions", status_code=500
        )
    logger.info("permissions_refreshed", user_id=principal.user_id, rules=count)
    return Envelope(
        status="ok", data=MessageResponse(message="Permissions refreshed successfully")
    )
