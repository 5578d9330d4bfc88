from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from knowledgecenter.config import get_settings, reset_settings_cache
from knowledgecenter.logging import get_logger
from knowledgecenter.service.auth import AuthService
from knowledgecenter.service.credentials import CredentialVault
from knowledgecenter.service.permissions import PermissionTable
from knowledgecenter.service.tokens import TokenAuthority
from knowledgecenter.storage.memory import MemoryStore
from knowledgecenter.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging.

    Example: postgresql://app:secret@db:5432/kc -> postgresql://app:***@db:5432/kc
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (
            parsed.scheme,
            netloc,
            parsed.path,
            parsed.params,
            parsed.query,
            parsed.fragment,
        )
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env,
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    self.settings.memory_store_path,
                    public_group_roles=self.settings.public_group_roles,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type=store_type,
                database_url=None
                if self.settings.use_memory_store
                else _mask_url_password(self.settings.database_url),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.vault = CredentialVault(workers=self.settings.password_hash_workers)
        self.tokens = TokenAuthority(self.store, self.vault, self.settings)
        self.auth = AuthService(
            self.store, self.settings, vault=self.vault, tokens=self.tokens
        )
        self.permissions = PermissionTable()
        try:
            self.permissions.load_permissions(self.store)
        except Exception as exc:
            # Serve with an empty table; /admin/refresh-permissions can retry later.
            logger.warning(
                "permissions_initial_load_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            permission_rules=len(self.permissions),
            password_hash_workers=self.settings.password_hash_workers,
            secure_cookies=self.settings.secure_cookies,
        )

    def close(self) -> None:
        self.vault.shutdown(wait=False)
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
