from __future__ import annotations

import asyncio
import base64
import concurrent.futures
import hashlib
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from knowledgecenter.logging import get_logger
from knowledgecenter.service.errors import RandomSourceError

logger = get_logger(__name__)

# Argon2id parameters for new hashes. Verification always uses the parameters
# encoded in the stored PHC string.
ARGON2_TIME_COST = 1
ARGON2_MEMORY_KIB = 64 * 1024
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32
ARGON2_SALT_LEN = 16

REFRESH_SECRET_BYTES = 32
JTI_BYTES = 16


class CredentialVault:
    """Password hashing plus random token material.

    Argon2id holds a CPU core and 64 MiB for tens of milliseconds, so the async
    entry points run it on a small dedicated pool instead of the event loop.
    """

    DEFAULT_WORKERS = 4
    MAX_WORKERS = 16

    def __init__(self, *, workers: int = DEFAULT_WORKERS) -> None:
        self._hasher = PasswordHasher(
            time_cost=ARGON2_TIME_COST,
            memory_cost=ARGON2_MEMORY_KIB,
            parallelism=ARGON2_PARALLELISM,
            hash_len=ARGON2_HASH_LEN,
            salt_len=ARGON2_SALT_LEN,
            type=Type.ID,
        )
        bounded = min(max(1, workers), self.MAX_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=bounded, thread_name_prefix="argon2"
        )
        self._executor_shutdown = False

    # passwords
    def hash_password(self, password: str) -> str:
        """Return a ``$argon2id$v=19$m=...,t=...,p=...$salt$digest`` string."""
        try:
            return self._hasher.hash(password)
        except (OSError, NotImplementedError) as exc:
            logger.error("password_salt_generation_failed", error=str(exc))
            raise RandomSourceError("random source unavailable") from exc

    def verify_password(self, password: str, encoded: str) -> bool:
        if not encoded:
            return False
        try:
            return self._hasher.verify(encoded, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unreadable", error_type=type(exc).__name__)
            return False

    async def hash_password_async(self, password: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.hash_password, password)

    async def verify_password_async(self, password: str, encoded: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, self.verify_password, password, encoded
        )

    # random material
    def _random_bytes(self, size: int) -> bytes:
        try:
            return secrets.token_bytes(size)
        except (OSError, NotImplementedError) as exc:
            logger.error("random_source_failed", requested_bytes=size, error=str(exc))
            raise RandomSourceError("random source unavailable") from exc

    def generate_refresh_secret(self) -> str:
        """256-bit opaque refresh secret, URL-safe base64."""
        return base64.urlsafe_b64encode(self._random_bytes(REFRESH_SECRET_BYTES)).decode(
            "ascii"
        )

    def generate_jti(self) -> str:
        return self._random_bytes(JTI_BYTES).hex()

    @staticmethod
    def hash_token(secret: str) -> str:
        """Storage-side digest used for refresh-token lookups."""
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()

    def shutdown(self, wait: bool = True) -> None:
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("credential_vault_executor_shutdown", wait=wait)
