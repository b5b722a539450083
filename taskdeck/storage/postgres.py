from __future__ import annotations

import json
from contextlib import contextmanager, nullcontext
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskdeck.logging import get_logger
from taskdeck.storage.errors import ConstraintViolation
from taskdeck.storage.models import Role, Session, User

_USER_COLUMNS = {
    "email",
    "password_hash",
    "first_name",
    "last_name",
    "role_id",
    "is_active",
    "is_email_verified",
    "profile_picture",
    "last_login",
    "login_attempts",
    "locked_until",
}
_ROLE_COLUMNS = {"name", "display_name", "description", "permissions", "is_active"}
_SESSION_COLUMNS = {
    "session_token",
    "refresh_token",
    "device_info",
    "ip_address",
    "user_agent",
    "is_active",
    "expires_at",
}

_USER_SELECT = """
    SELECT u.*,
           r.name AS role_name,
           r.display_name AS role_display_name,
           r.description AS role_description,
           r.permissions AS role_permissions,
           r.is_active AS role_is_active,
           r.created_at AS role_created_at,
           r.updated_at AS role_updated_at
    FROM users u
    JOIN roles r ON r.id = u.role_id
"""


class PostgresStore:
    """Postgres-backed credential store for users, roles and sessions."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        # connection of the transaction() block running in this context, if any
        self._tx_conn: ContextVar[Any] = ContextVar("taskdeck_pg_tx", default=None)
        self._verify_required_schema()

    def _connect(self):
        active = self._tx_conn.get()
        if active is not None:
            return nullcontext(active)
        return self.pool.connection()

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        """Run the store calls made inside the block on one connection and commit once."""
        if self._tx_conn.get() is not None:
            yield self
            return
        with self.pool.connection() as conn, conn.transaction():
            token = self._tx_conn.set(conn)
            try:
                yield self
            finally:
                self._tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Ensure the credential tables exist before serving requests."""

        required_tables = ["roles", "users", "user_sessions"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
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

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _permissions(raw: Any) -> List[str]:
        if raw is None:
            return []
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                return []
        return [str(p) for p in raw] if isinstance(raw, list) else []

    @staticmethod
    def _assignments(changes: dict[str, Any], allowed: set[str]) -> sql.Composed:
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"unknown columns: {sorted(unknown)}")
        return sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in changes
        )

    def _role_from_row(self, row: dict, prefix: str = "") -> Role:
        id_key = "role_id" if prefix else "id"
        return Role(
            id=int(row[id_key]),
            name=row[f"{prefix}name"],
            display_name=row[f"{prefix}display_name"],
            description=row.get(f"{prefix}description"),
            permissions=self._permissions(row.get(f"{prefix}permissions")),
            is_active=row.get(f"{prefix}is_active", True),
            created_at=row.get(f"{prefix}created_at") or datetime.now().astimezone(),
            updated_at=row.get(f"{prefix}updated_at"),
        )

    def _user_from_row(self, row: dict) -> User:
        role = self._role_from_row(row, prefix="role_") if row.get("role_name") else None
        return User(
            id=int(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role_id=int(row["role_id"]),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            profile_picture=row.get("profile_picture"),
            last_login=row.get("last_login"),
            login_attempts=int(row.get("login_attempts") or 0),
            locked_until=row.get("locked_until"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
            role=role,
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            session_token=row["session_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_active=row.get("is_active", True),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    # users
    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                _USER_SELECT + " WHERE u.email = %s", ((email or "").strip(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(_USER_SELECT + " WHERE u.id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def create_user(
        self,
        *,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        role_id: int,
        is_active: bool = True,
        is_email_verified: bool = False,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (email, password_hash, first_name, last_name, role_id, is_active, is_email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        email.strip().lower(),
                        password_hash,
                        first_name,
                        last_name,
                        role_id,
                        is_active,
                        is_email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role does not exist", {"field": "role_id"})
        return self.get_user(row["id"])

    def update_user(self, user_id: int, **changes: Any) -> Optional[User]:
        if changes:
            query = sql.SQL("UPDATE users SET {}, updated_at = now() WHERE id = %s").format(
                self._assignments(changes, _USER_COLUMNS)
            )
            try:
                with self._connect() as conn:
                    conn.execute(query, (*changes.values(), user_id))
            except errors.UniqueViolation:
                raise ConstraintViolation("email already exists", {"field": "email"})
            except errors.ForeignKeyViolation:
                raise ConstraintViolation("role does not exist", {"field": "role_id"})
        return self.get_user(user_id)

    def increment_login_attempts(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET login_attempts = login_attempts + 1, updated_at = now()
                WHERE id = %s
                RETURNING login_attempts
                """,
                (user_id,),
            ).fetchone()
        return int(row["login_attempts"]) if row else 0

    def list_users_by_role(self, role_id: int) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                _USER_SELECT + " WHERE u.role_id = %s ORDER BY u.id", (role_id,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def count_users_with_role(self, role_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM users WHERE role_id = %s", (role_id,)
            ).fetchone()
        return int(row["total"]) if row else 0

    # roles
    def get_role(self, role_id: int) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM roles WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM roles WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self, include_inactive: bool = False) -> List[Role]:
        with self._connect() as conn:
            if include_inactive:
                rows = conn.execute("SELECT * FROM roles ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM roles WHERE is_active = TRUE ORDER BY id"
                ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def create_role(
        self,
        *,
        name: str,
        display_name: str,
        description: Optional[str] = None,
        permissions: Optional[List[str]] = None,
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO roles (name, display_name, description, permissions)
                    VALUES (%s, %s, %s, %s::jsonb)
                    RETURNING *
                    """,
                    (name, display_name, description, json.dumps(list(permissions or []))),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row)

    def update_role(self, role_id: int, **changes: Any) -> Optional[Role]:
        if not changes:
            return self.get_role(role_id)
        if "permissions" in changes:
            changes["permissions"] = json.dumps(list(changes["permissions"] or []))
        query = sql.SQL(
            "UPDATE roles SET {}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(self._assignments(changes, _ROLE_COLUMNS))
        try:
            with self._connect() as conn:
                row = conn.execute(query, (*changes.values(), role_id)).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: int) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute("DELETE FROM roles WHERE id = %s", (role_id,))
                return result.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role is assigned to users", {"field": "role_id"})

    # sessions
    def create_session(
        self,
        *,
        user_id: int,
        session_token: str,
        refresh_token: str,
        expires_at: datetime,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_sessions (user_id, session_token, refresh_token, expires_at, device_info, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        session_token,
                        refresh_token,
                        expires_at,
                        device_info,
                        ip_address,
                        user_agent,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "session_token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return self._session_from_row(row)

    def get_active_session(self, session_id: int) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE id = %s AND is_active = TRUE AND expires_at > now()
                """,
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_active_session_by_refresh(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE refresh_token = %s AND is_active = TRUE AND expires_at > now()
                """,
                (refresh_token,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session(self, session_id: int, **changes: Any) -> Optional[Session]:
        if not changes:
            return None
        query = sql.SQL(
            "UPDATE user_sessions SET {}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(self._assignments(changes, _SESSION_COLUMNS))
        with self._connect() as conn:
            row = conn.execute(query, (*changes.values(), session_id)).fetchone()
        return self._session_from_row(row) if row else None

    def deactivate_user_sessions(
        self, user_id: int, *, except_session_id: Optional[int] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id is None:
                result = conn.execute(
                    """
                    UPDATE user_sessions SET is_active = FALSE, updated_at = now()
                    WHERE user_id = %s AND is_active = TRUE
                    """,
                    (user_id,),
                )
            else:
                result = conn.execute(
                    """
                    UPDATE user_sessions SET is_active = FALSE, updated_at = now()
                    WHERE user_id = %s AND is_active = TRUE AND id <> %s
                    """,
                    (user_id, except_session_id),
                )
            return result.rowcount
