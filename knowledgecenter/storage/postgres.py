from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from knowledgecenter.logging import get_logger
from knowledgecenter.storage.common import (
    normalize_ip,
    normalize_method,
    normalize_roles,
    parse_locale_map,
    safe_row_value,
)
from knowledgecenter.storage.errors import ConstraintViolation
from knowledgecenter.storage.models import (
    Group,
    PermissionRule,
    RefreshTokenRecord,
    User,
    utcnow,
)

_REQUIRED_TABLES = (
    "users",
    "user_tokens",
    "groups",
    "group_users",
    "roles",
    "user_roles",
    "group_roles",
    "api_permissions",
)

_USER_COLUMNS = (
    "id, public_id, login_id, email, name, password_hash, is_visible, is_deleted,"
    " created_at, updated_at"
)
_TOKEN_COLUMNS = (
    "id, user_id, token_hash, expires_at, is_revoked, replaced_by_token_id,"
    " parent_token_id, client_ip, user_agent, created_at, updated_at"
)
_GROUP_COLUMNS = "id, public_id, name, description, created_at, updated_at"


def _unique_field(exc: errors.UniqueViolation) -> str:
    """Name the column behind a unique violation from its constraint name."""
    diag = getattr(exc, "diag", None)
    constraint = (getattr(diag, "constraint_name", None) or "").lower()
    if "login_id" in constraint:
        return "login_id"
    if "email" in constraint:
        return "email"
    return constraint or "unknown"


class PostgresStore:
    """Postgres-backed identity store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the identity tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            public_id=str(row["public_id"]),
            login_id=row["login_id"],
            email=row["email"],
            name=parse_locale_map(row.get("name")),
            password_hash=row.get("password_hash") or "",
            is_visible=bool(row.get("is_visible", True)),
            is_deleted=bool(row.get("is_deleted", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        client_ip = safe_row_value(row, "client_ip")
        return RefreshTokenRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            is_revoked=bool(row.get("is_revoked", False)),
            replaced_by_token_id=row.get("replaced_by_token_id"),
            parent_token_id=row.get("parent_token_id"),
            client_ip=str(client_ip) if client_ip is not None else None,
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _group_from_row(row: Dict[str, Any]) -> Group:
        return Group(
            id=int(row["id"]),
            public_id=str(row["public_id"]),
            name=parse_locale_map(row.get("name")),
            description=parse_locale_map(row.get("description")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        login_id: str,
        email: str,
        name: Dict[str, str],
        password_hash: str,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (login_id, email, name, password_hash, is_visible, is_deleted)
                    VALUES (%s, %s, %s, %s, true, false)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (login_id, email, json.dumps(name), password_hash),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE {where} = %s AND is_deleted = false",
                (value,),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_login_id(self, login_id: str) -> Optional[User]:
        return self._fetch_user("login_id", login_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_public_id(self, public_id: str) -> Optional[User]:
        return self._fetch_user("public_id::text", public_id)

    # refresh tokens
    def create_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO user_tokens
                        (user_id, token_hash, expires_at, is_revoked, parent_token_id, client_ip, user_agent)
                    VALUES (%s, %s, %s, false, %s, %s, %s)
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    (
                        record.user_id,
                        record.token_hash,
                        record.expires_at,
                        record.parent_token_id,
                        normalize_ip(record.client_ip),
                        record.user_agent,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "token hash already exists", {"field": _unique_field(exc)}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"user_id": record.user_id})
        return self._token_from_row(row)

    def get_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM user_tokens WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return self._token_from_row(row)

    def get_token(self, token_id: int) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM user_tokens WHERE id = %s", (token_id,)
            ).fetchone()
        if not row:
            return None
        return self._token_from_row(row)

    def revoke_token(self, token_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_tokens SET is_revoked = true, updated_at = now() WHERE id = %s",
                (token_id,),
            )

    def revoke_all_user_tokens(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_tokens SET is_revoked = true, updated_at = now()
                WHERE user_id = %s AND is_revoked = false
                """,
                (user_id,),
            )
            return cur.rowcount or 0

    def mark_token_replaced(self, old_token_id: int, new_token_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_tokens
                SET replaced_by_token_id = %s, is_revoked = true, updated_at = now()
                WHERE id = %s
                """,
                (new_token_id, old_token_id),
            )

    def list_user_tokens(self, user_id: int) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM user_tokens WHERE user_id = %s ORDER BY id",
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    # groups and roles
    def create_group(
        self,
        public_id: str,
        *,
        name: Optional[Dict[str, str]] = None,
        description: Optional[Dict[str, str]] = None,
    ) -> Group:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO groups (public_id, name, description)
                    VALUES (%s, %s, %s)
                    RETURNING {_GROUP_COLUMNS}
                    """,
                    (public_id, json.dumps(name or {}), json.dumps(description or {})),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("group already exists", {"field": "public_id"})
        return self._group_from_row(row)

    def get_group_by_public_id(self, public_id: str) -> Optional[Group]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_GROUP_COLUMNS} FROM groups WHERE public_id = %s",
                (public_id,),
            ).fetchone()
        if not row:
            return None
        return self._group_from_row(row)

    def add_user_to_group(
        self, user_id: int, group_id: int, assigned_by: Optional[int] = None
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO group_users (group_id, user_id, assigned_by, assigned_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (group_id, user_id) DO NOTHING
                    """,
                    (group_id, user_id, assigned_by),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("group missing", {"group_id": group_id})

    def get_user_groups(self, user_id: int) -> List[Group]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT g.id, g.public_id, g.name, g.description, g.created_at, g.updated_at
                FROM groups g
                INNER JOIN group_users gu ON g.id = gu.group_id
                WHERE gu.user_id = %s
                ORDER BY g.id
                """,
                (user_id,),
            ).fetchall()
        return [self._group_from_row(row) for row in rows]

    def create_role(self, name: str) -> str:
        role = name.strip()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO roles (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
                (role,),
            )
        return role

    def assign_user_role(self, user_id: int, role: str) -> None:
        role = self.create_role(role)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_roles (user_id, role_id)
                SELECT %s, r.id FROM roles r WHERE r.name = %s
                ON CONFLICT (user_id, role_id) DO NOTHING
                """,
                (user_id, role),
            )

    def assign_group_role(self, group_id: int, role: str) -> None:
        role = self.create_role(role)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO group_roles (group_id, role_id)
                SELECT %s, r.id FROM roles r WHERE r.name = %s
                ON CONFLICT (group_id, role_id) DO NOTHING
                """,
                (group_id, role),
            )

    def get_effective_roles(self, user_id: int) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT r.name
                FROM roles r
                WHERE r.id IN (
                    SELECT role_id FROM user_roles WHERE user_id = %s
                    UNION
                    SELECT gr.role_id
                    FROM group_roles gr
                    INNER JOIN group_users gu ON gr.group_id = gu.group_id
                    WHERE gu.user_id = %s
                )
                ORDER BY r.name
                """,
                (user_id, user_id),
            ).fetchall()
        return normalize_roles(row["name"] for row in rows)

    # permission rules
    def add_permission_rule(
        self, method: str, path_pattern: str, required_roles: Iterable[str]
    ) -> PermissionRule:
        roles = normalize_roles(required_roles)
        if not roles:
            raise ConstraintViolation(
                "permission rule needs at least one role", {"field": "required_roles"}
            )
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO api_permissions (method, path_pattern, required_roles)
                VALUES (%s, %s, %s)
                RETURNING id, method, path_pattern, required_roles
                """,
                (normalize_method(method), path_pattern, roles),
            ).fetchone()
        return PermissionRule(
            id=int(row["id"]),
            method=row["method"],
            path_pattern=row["path_pattern"],
            required_roles=list(row.get("required_roles") or []),
        )

    def list_permission_rules(self) -> List[PermissionRule]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, method, path_pattern, required_roles
                FROM api_permissions
                ORDER BY id
                """
            ).fetchall()
        return [
            PermissionRule(
                id=int(row["id"]),
                method=row["method"],
                path_pattern=row["path_pattern"],
                required_roles=list(row.get("required_roles") or []),
            )
            for row in rows
        ]
