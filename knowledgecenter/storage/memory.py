from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from knowledgecenter.logging import get_logger
from knowledgecenter.storage.common import (
    PUBLIC_GROUP_ID,
    generate_public_id,
    normalize_ip,
    normalize_method,
    normalize_roles,
)
from knowledgecenter.storage.errors import ConstraintViolation
from knowledgecenter.storage.models import (
    Group,
    PermissionRule,
    RefreshTokenRecord,
    User,
    utcnow,
)


class MemoryStore:
    """In-process identity store used for tests and local development.

    Records handed out are copies, so callers observe the same read-your-writes
    behaviour they would get from Postgres rows.
    """

    def __init__(
        self,
        state_path: str | None = None,
        *,
        public_group_roles: Iterable[str] = ("user",),
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.tokens: Dict[int, RefreshTokenRecord] = {}
        self.groups: Dict[int, Group] = {}
        self.roles: Set[str] = set()
        self.user_roles: Dict[int, Set[str]] = {}
        self.group_roles: Dict[int, Set[str]] = {}
        # group_id -> {user_id: assigned_by}
        self.group_users: Dict[int, Dict[int, Optional[int]]] = {}
        self.permission_rules: Dict[int, PermissionRule] = {}
        self._seq: Dict[str, int] = {"user": 0, "token": 0, "group": 0, "rule": 0}
        # RLock so seeding helpers can call each other under the same lock
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None

        if not self._load_state():
            self._seed_public_group(public_group_roles)
            self._persist_state()

    def _next_id(self, kind: str) -> int:
        self._seq[kind] += 1
        return self._seq[kind]

    def _seed_public_group(self, roles: Iterable[str]) -> None:
        group = self.create_group(
            PUBLIC_GROUP_ID,
            name={"en-US": "Public"},
            description={"en-US": "Every registered user"},
        )
        for role in normalize_roles(roles):
            self.assign_group_role(group.id, role)

    def verify_connection(self) -> bool:
        return True

    # users
    def create_user(
        self,
        login_id: str,
        email: str,
        name: Dict[str, str],
        password_hash: str,
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.is_deleted:
                    continue
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.login_id == login_id:
                    raise ConstraintViolation(
                        "login_id already exists", {"field": "login_id"}
                    )
            now = utcnow()
            user = User(
                id=self._next_id("user"),
                public_id=generate_public_id(),
                login_id=login_id,
                email=email,
                name=dict(name),
                password_hash=password_hash,
                is_visible=True,
                is_deleted=False,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user, name=dict(user.name))

    def _find_user(self, predicate) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if not user.is_deleted and predicate(user):
                    return replace(user, name=dict(user.name))
            return None

    def get_user_by_login_id(self, login_id: str) -> Optional[User]:
        return self._find_user(lambda u: u.login_id == login_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._find_user(lambda u: u.email == email)

    def get_user(self, user_id: int) -> Optional[User]:
        return self._find_user(lambda u: u.id == user_id)

    def get_user_by_public_id(self, public_id: str) -> Optional[User]:
        return self._find_user(lambda u: u.public_id == public_id)

    # refresh tokens
    def create_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "token user missing", {"user_id": record.user_id}
                )
            for existing in self.tokens.values():
                if (
                    existing.user_id == record.user_id
                    and existing.token_hash == record.token_hash
                ):
                    raise ConstraintViolation(
                        "token hash already exists", {"field": "token_hash"}
                    )
            now = utcnow()
            stored = replace(
                record,
                id=self._next_id("token"),
                client_ip=normalize_ip(record.client_ip),
                created_at=now,
                updated_at=now,
            )
            self.tokens[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            for record in self.tokens.values():
                if record.token_hash == token_hash:
                    return replace(record)
            return None

    def get_token(self, token_id: int) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.tokens.get(token_id)
            return replace(record) if record else None

    def revoke_token(self, token_id: int) -> None:
        with self._data_lock:
            record = self.tokens.get(token_id)
            if not record:
                return
            record.is_revoked = True
            record.updated_at = utcnow()
            self._persist_state()

    def revoke_all_user_tokens(self, user_id: int) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for record in self.tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    record.updated_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def mark_token_replaced(self, old_token_id: int, new_token_id: int) -> None:
        with self._data_lock:
            record = self.tokens.get(old_token_id)
            if not record:
                return
            record.replaced_by_token_id = new_token_id
            record.is_revoked = True
            record.updated_at = utcnow()
            self._persist_state()

    def list_user_tokens(self, user_id: int) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return [
                replace(record)
                for record in sorted(self.tokens.values(), key=lambda r: r.id)
                if record.user_id == user_id
            ]

    # groups and roles
    def create_group(
        self,
        public_id: str,
        *,
        name: Optional[Dict[str, str]] = None,
        description: Optional[Dict[str, str]] = None,
    ) -> Group:
        with self._data_lock:
            if any(g.public_id == public_id for g in self.groups.values()):
                raise ConstraintViolation(
                    "group already exists", {"field": "public_id"}
                )
            group = Group(
                id=self._next_id("group"),
                public_id=public_id,
                name=dict(name or {}),
                description=dict(description or {}),
            )
            self.groups[group.id] = group
            self.group_users.setdefault(group.id, {})
            self._persist_state()
            return replace(group)

    def get_group_by_public_id(self, public_id: str) -> Optional[Group]:
        with self._data_lock:
            for group in self.groups.values():
                if group.public_id == public_id:
                    return replace(group)
            return None

    def add_user_to_group(
        self, user_id: int, group_id: int, assigned_by: Optional[int] = None
    ) -> None:
        with self._data_lock:
            if group_id not in self.groups:
                raise ConstraintViolation("group missing", {"group_id": group_id})
            members = self.group_users.setdefault(group_id, {})
            if user_id in members:
                return
            members[user_id] = assigned_by
            self._persist_state()

    def get_user_groups(self, user_id: int) -> List[Group]:
        with self._data_lock:
            return [
                replace(self.groups[group_id])
                for group_id, members in sorted(self.group_users.items())
                if user_id in members and group_id in self.groups
            ]

    def create_role(self, name: str) -> str:
        with self._data_lock:
            role = name.strip()
            if role not in self.roles:
                self.roles.add(role)
                self._persist_state()
            return role

    def assign_user_role(self, user_id: int, role: str) -> None:
        with self._data_lock:
            role = self.create_role(role)
            self.user_roles.setdefault(user_id, set()).add(role)
            self._persist_state()

    def assign_group_role(self, group_id: int, role: str) -> None:
        with self._data_lock:
            role = self.create_role(role)
            self.group_roles.setdefault(group_id, set()).add(role)
            self._persist_state()

    def get_effective_roles(self, user_id: int) -> List[str]:
        with self._data_lock:
            roles: Set[str] = set(self.user_roles.get(user_id, set()))
            for group_id, members in self.group_users.items():
                if user_id in members:
                    roles.update(self.group_roles.get(group_id, set()))
            return normalize_roles(roles)

    # permission rules
    def add_permission_rule(
        self, method: str, path_pattern: str, required_roles: Iterable[str]
    ) -> PermissionRule:
        roles = normalize_roles(required_roles)
        if not roles:
            raise ConstraintViolation(
                "permission rule needs at least one role", {"field": "required_roles"}
            )
        with self._data_lock:
            rule = PermissionRule(
                id=self._next_id("rule"),
                method=normalize_method(method),
                path_pattern=path_pattern,
                required_roles=roles,
            )
            self.permission_rules[rule.id] = rule
            self._persist_state()
            return replace(rule, required_roles=list(rule.required_roles))

    def list_permission_rules(self) -> List[PermissionRule]:
        with self._data_lock:
            return [
                replace(rule, required_roles=list(rule.required_roles))
                for _, rule in sorted(self.permission_rules.items())
            ]

    # snapshot persistence
    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _serialize_record(self, record: Any) -> Dict[str, Any]:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = self._serialize_datetime(value)
        return data

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        with self._data_lock:
            state = {
                "seq": dict(self._seq),
                "users": [self._serialize_record(u) for u in self.users.values()],
                "tokens": [self._serialize_record(t) for t in self.tokens.values()],
                "groups": [self._serialize_record(g) for g in self.groups.values()],
                "roles": sorted(self.roles),
                "user_roles": {str(k): sorted(v) for k, v in self.user_roles.items()},
                "group_roles": {str(k): sorted(v) for k, v in self.group_roles.items()},
                "group_users": [
                    {"group_id": gid, "user_id": uid, "assigned_by": by}
                    for gid, members in self.group_users.items()
                    for uid, by in members.items()
                ],
                "permission_rules": [
                    self._serialize_record(r) for r in self.permission_rules.values()
                ],
            }
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(state))
            os.replace(tmp_path, self.state_path)

    def _load_state(self) -> bool:
        if not self.state_path or not self.state_path.exists():
            return False
        try:
            state = json.loads(self.state_path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.warning(
                "memory_store_snapshot_unreadable", path=str(self.state_path), error=str(exc)
            )
            return False

        def _dates(raw: Dict[str, Any], *keys: str) -> Dict[str, Any]:
            for key in keys:
                if raw.get(key):
                    raw[key] = self._deserialize_datetime(raw[key])
            return raw

        with self._data_lock:
            self._seq.update({k: int(v) for k, v in state.get("seq", {}).items()})
            for raw in state.get("users", []):
                user = User(**_dates(raw, "created_at", "updated_at"))
                self.users[user.id] = user
            for raw in state.get("tokens", []):
                record = RefreshTokenRecord(
                    **_dates(raw, "expires_at", "created_at", "updated_at")
                )
                self.tokens[record.id] = record
            for raw in state.get("groups", []):
                group = Group(**_dates(raw, "created_at", "updated_at"))
                self.groups[group.id] = group
                self.group_users.setdefault(group.id, {})
            self.roles = set(state.get("roles", []))
            self.user_roles = {int(k): set(v) for k, v in state.get("user_roles", {}).items()}
            self.group_roles = {
                int(k): set(v) for k, v in state.get("group_roles", {}).items()
            }
            for raw in state.get("group_users", []):
                self.group_users.setdefault(int(raw["group_id"]), {})[
                    int(raw["user_id"])
                ] = raw.get("assigned_by")
            for raw in state.get("permission_rules", []):
                rule = PermissionRule(**raw)
                self.permission_rules[rule.id] = rule
        self.logger.info(
            "memory_store_snapshot_loaded",
            path=str(self.state_path),
            users=len(self.users),
            tokens=len(self.tokens),
        )
        return True
