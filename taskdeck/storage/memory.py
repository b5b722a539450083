from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from dataclasses import fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from taskdeck.logging import get_logger
from taskdeck.service.permissions import DEFAULT_ROLES
from taskdeck.storage.errors import ConstraintViolation
from taskdeck.storage.models import Role, Session, User, utcnow

_USER_FIELDS = {f.name for f in fields(User)} - {"id", "role", "created_at"}
_ROLE_FIELDS = {f.name for f in fields(Role)} - {"id", "created_at"}
_SESSION_FIELDS = {f.name for f in fields(Session)} - {"id", "user_id", "created_at"}


def _copy_role(role: Role) -> Role:
    return replace(role, permissions=list(role.permissions))


class MemoryStore:
    """In-process credential store for development and tests.

    Rows are kept in dicts keyed by integer id and guarded by one re-entrant
    lock. Reads hand out copies with the role row attached, so callers only
    change state through the update methods. When ``fs_root`` is given every
    mutation is written to ``fs_root/state/auth_store.json`` and reloaded on
    start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.roles: Dict[int, Role] = {}
        self.sessions: Dict[int, Session] = {}
        self._seq = {"users": 0, "roles": 0, "sessions": 0}
        # RLock so transaction() can wrap the public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._seed_roles()
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    def _next_id(self, table: str) -> int:
        self._seq[table] += 1
        return self._seq[table]

    def _seed_roles(self) -> None:
        for seed in DEFAULT_ROLES:
            role_id = self._next_id("roles")
            self.roles[role_id] = Role(
                id=role_id,
                name=seed["name"],
                display_name=seed["display_name"],
                description=seed["description"],
                permissions=list(seed["permissions"]),
            )

    def verify_connection(self) -> None:
        return None

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """Apply a group of mutations atomically; restore the snapshot on error."""
        with self._data_lock:
            snapshot = (
                copy.deepcopy(self.users),
                copy.deepcopy(self.roles),
                copy.deepcopy(self.sessions),
                dict(self._seq),
            )
            try:
                yield self
            except Exception:
                self.users, self.roles, self.sessions, self._seq = snapshot
                self._persist_state()
                raise

    # users
    def _with_role(self, user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        role = self.roles.get(user.role_id)
        return replace(user, role=_copy_role(role) if role else None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = (email or "").strip().lower()
        with self._data_lock:
            match = next(
                (u for u in self.users.values() if u.email.lower() == needle), None
            )
            return self._with_role(match)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self._with_role(self.users.get(int(user_id)))

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
        normalized = email.strip().lower()
        with self._data_lock:
            if any(u.email.lower() == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"field": "role_id"})
            user_id = self._next_id("users")
            user = User(
                id=user_id,
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role_id=role_id,
                is_active=is_active,
                is_email_verified=is_email_verified,
            )
            self.users[user_id] = user
            self._persist_state()
            return self._with_role(user)

    def update_user(self, user_id: int, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(int(user_id))
            if not user:
                return None
            if "role_id" in changes and changes["role_id"] not in self.roles:
                raise ConstraintViolation("role does not exist", {"field": "role_id"})
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return self._with_role(user)

    def increment_login_attempts(self, user_id: int) -> int:
        with self._data_lock:
            user = self.users.get(int(user_id))
            if not user:
                return 0
            user.login_attempts += 1
            user.updated_at = utcnow()
            self._persist_state()
            return user.login_attempts

    def list_users_by_role(self, role_id: int) -> List[User]:
        with self._data_lock:
            matches = [u for u in self.users.values() if u.role_id == role_id]
            return [self._with_role(u) for u in sorted(matches, key=lambda u: u.id)]

    def count_users_with_role(self, role_id: int) -> int:
        with self._data_lock:
            return sum(1 for u in self.users.values() if u.role_id == role_id)

    # roles
    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(int(role_id))
            return _copy_role(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return _copy_role(role) if role else None

    def list_roles(self, include_inactive: bool = False) -> List[Role]:
        with self._data_lock:
            return [
                _copy_role(r)
                for r in sorted(self.roles.values(), key=lambda r: r.id)
                if include_inactive or r.is_active
            ]

    def create_role(
        self,
        *,
        name: str,
        display_name: str,
        description: Optional[str] = None,
        permissions: Optional[List[str]] = None,
    ) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role_id = self._next_id("roles")
            role = Role(
                id=role_id,
                name=name,
                display_name=display_name,
                description=description,
                permissions=list(permissions or []),
            )
            self.roles[role_id] = role
            self._persist_state()
            return _copy_role(role)

    def update_role(self, role_id: int, **changes: Any) -> Optional[Role]:
        unknown = set(changes) - _ROLE_FIELDS
        if unknown:
            raise ValueError(f"unknown role fields: {sorted(unknown)}")
        with self._data_lock:
            role = self.roles.get(int(role_id))
            if not role:
                return None
            if "name" in changes and any(
                r.name == changes["name"] and r.id != role.id for r in self.roles.values()
            ):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            for name, value in changes.items():
                setattr(role, name, list(value) if name == "permissions" else value)
            role.updated_at = utcnow()
            self._persist_state()
            return _copy_role(role)

    def delete_role(self, role_id: int) -> bool:
        with self._data_lock:
            if any(u.role_id == role_id for u in self.users.values()):
                raise ConstraintViolation("role is assigned to users", {"field": "role_id"})
            removed = self.roles.pop(int(role_id), None)
            if removed:
                self._persist_state()
            return removed is not None

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": user_id})
            for existing in self.sessions.values():
                if session_token == existing.session_token:
                    raise ConstraintViolation(
                        "session token already exists", {"field": "session_token"}
                    )
                if refresh_token == existing.refresh_token:
                    raise ConstraintViolation(
                        "refresh token already exists", {"field": "refresh_token"}
                    )
            session_id = self._next_id("sessions")
            sess = Session(
                id=session_id,
                user_id=user_id,
                session_token=session_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                device_info=device_info,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.sessions[session_id] = sess
            self._persist_state()
            return replace(sess)

    def get_active_session(self, session_id: int) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(int(session_id))
            if sess and sess.is_usable():
                return replace(sess)
            return None

    def get_active_session_by_refresh(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.refresh_token == refresh_token),
                None,
            )
            if sess and sess.is_usable():
                return replace(sess)
            return None

    def update_session(self, session_id: int, **changes: Any) -> Optional[Session]:
        unknown = set(changes) - _SESSION_FIELDS
        if unknown:
            raise ValueError(f"unknown session fields: {sorted(unknown)}")
        with self._data_lock:
            sess = self.sessions.get(int(session_id))
            if not sess:
                return None
            for name, value in changes.items():
                setattr(sess, name, value)
            sess.updated_at = utcnow()
            self._persist_state()
            return replace(sess)

    def deactivate_user_sessions(
        self, user_id: int, *, except_session_id: Optional[int] = None
    ) -> int:
        with self._data_lock:
            revoked = 0
            now = utcnow()
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id is not None and sess.id == except_session_id:
                    continue
                sess.is_active = False
                sess.updated_at = now
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "sequences": self._seq,
            "roles": [self._serialize_row(r) for r in self.roles.values()],
            "users": [
                self._serialize_row(u, skip=("role",)) for u in self.users.values()
            ],
            "sessions": [self._serialize_row(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        if self.fs_root is None:
            return False
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.roles = {r["id"]: self._deserialize_row(Role, r) for r in data.get("roles", [])}
        self.users = {u["id"]: self._deserialize_row(User, u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_row(Session, s) for s in data.get("sessions", [])
        }
        self._seq = {
            "users": max(self.users, default=0),
            "roles": max(self.roles, default=0),
            "sessions": max(self.sessions, default=0),
        }
        self._seq.update(data.get("sequences", {}))
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            roles=len(self.roles),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize_row(row: Any, skip: tuple = ()) -> dict:
        data = {}
        for f in fields(row):
            if f.name in skip:
                continue
            value = getattr(row, f.name)
            data[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return data

    @staticmethod
    def _deserialize_row(model: type, data: dict) -> Any:
        kwargs = {}
        for f in fields(model):
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, str) and f.name.endswith(("_at", "_until", "_login")):
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return model(**kwargs)
