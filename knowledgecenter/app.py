from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from knowledgecenter.api.deps import client_ip, current_principal, user_agent
from knowledgecenter.api.error_handling import register_exception_handlers
from knowledgecenter.api.routes import protected_router, router
from knowledgecenter.api.schemas import HealthResponse
from knowledgecenter.config import Settings
from knowledgecenter.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its resources on shutdown."""
    from knowledgecenter.service import runtime as runtime_module

    runtime_module.get_runtime()
    yield
    try:
        if runtime_module.runtime is not None:
            runtime_module.runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Knowledge Center API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; no wildcard while credentials are allowed.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    # Refresh cookie travels cross-origin from the admin frontend
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One structured log line per request, levelled by response status."""
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    principal = current_principal(request)
    fields: Dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": duration_ms,
        "user_id": principal.user_id if principal else None,
    }
    if response.status_code >= 500:
        logger.error(
            "http_request", client_ip=client_ip(request), user_agent=user_agent(request), **fields
        )
    elif response.status_code >= 400:
        logger.warning(
            "http_request", client_ip=client_ip(request), user_agent=user_agent(request), **fields
        )
    else:
        logger.info("http_request", **fields)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate X-Request-ID into log context and the response headers.

    The ID is taken from the client's X-Request-ID header when present,
    otherwise generated as a new UUID.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # API responses carry tokens and must not be cached by proxies
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.secure_cookies:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(protected_router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness plus a bounded identity-store probe."""
    from knowledgecenter.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = False
    try:
        store_ok = bool(
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))

    state = "healthy" if store_ok else "unhealthy"
    body = HealthResponse(
        status=state,
        store=state,
        permission_rules=len(runtime.permissions),
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    return JSONResponse(status_code=200 if store_ok else 503, content=body.model_dump())
