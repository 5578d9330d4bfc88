from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from knowledgecenter.logging import get_logger
from knowledgecenter.storage.common import WILDCARD_METHOD, normalize_method
from knowledgecenter.storage.models import PermissionRule

if TYPE_CHECKING:
    from knowledgecenter.service.auth import IdentityStore

logger = get_logger(__name__)

SUPERUSER_ROLE = "full_access"

# method -> path pattern -> required roles
PermissionMap = Dict[str, Dict[str, Tuple[str, ...]]]


class ReadWriteLock:
    """Many concurrent readers or one writer; a waiting writer blocks new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def build_permission_map(rules: Iterable[PermissionRule]) -> PermissionMap:
    """Index rules by method then path pattern; later rows win on duplicates."""
    table: PermissionMap = {}
    for rule in rules:
        method = normalize_method(rule.method)
        table.setdefault(method, {})[rule.path_pattern] = tuple(rule.required_roles)
    return table


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str = "allowed"
    message: str = ""
    required_roles: Tuple[str, ...] = ()


class PermissionTable:
    """Route permission rules shared by every request.

    Reload builds the replacement map without holding the lock and swaps it in
    under the write lock, so readers see either the old or the new table whole.
    """

    def __init__(self, rules: Optional[Iterable[PermissionRule]] = None) -> None:
        self._lock = ReadWriteLock()
        self._permissions: PermissionMap = build_permission_map(rules or [])

    def load_permissions(self, store: "IdentityStore") -> int:
        """Replace the table with the store's current rules.

        Store errors propagate and leave the current table untouched.
        """
        rules = store.list_permission_rules()
        fresh = build_permission_map(rules)
        with self._lock.write():
            self._permissions = fresh
        logger.info(
            "permissions_loaded",
            rules=len(rules),
            methods=sorted(fresh.keys()),
        )
        return len(rules)

    def replace(self, rules: Iterable[PermissionRule]) -> None:
        fresh = build_permission_map(rules)
        with self._lock.write():
            self._permissions = fresh

    def get_required_roles(self, method: str, path: str) -> Tuple[List[str], bool]:
        """Return ``(roles, found)`` for an exact method, else the wildcard method."""
        with self._lock.read():
            table = self._permissions
        for key in (normalize_method(method), WILDCARD_METHOD):
            patterns = table.get(key)
            if patterns is not None and path in patterns:
                return list(patterns[path]), True
        return [], False

    def snapshot(self) -> PermissionMap:
        with self._lock.read():
            return {method: dict(patterns) for method, patterns in self._permissions.items()}

    def __len__(self) -> int:
        with self._lock.read():
            return sum(len(patterns) for patterns in self._permissions.values())

    def authorize(self, method: str, path: str, roles: Sequence[str]) -> AccessDecision:
        """Decide whether a caller holding ``roles`` may call ``method path``.

        Routes without a rule are open; ``full_access`` passes every rule.
        """
        if SUPERUSER_ROLE in roles:
            logger.debug("authorization_superuser_bypass", method=method, path=path)
            return AccessDecision(True, reason="superuser")

        required, found = self.get_required_roles(method, path)
        if not found:
            return AccessDecision(True, reason="no_rule")
        if not roles:
            return AccessDecision(
                False,
                reason="authentication_required",
                message="Access denied: authentication required",
                required_roles=tuple(required),
            )
        if not any(role in roles for role in required):
            return AccessDecision(
                False,
                reason="insufficient_permissions",
                message="Access denied: insufficient permissions",
                required_roles=tuple(required),
            )
        return AccessDecision(True, required_roles=tuple(required))
