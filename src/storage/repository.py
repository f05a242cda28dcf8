from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.models.db import new_session
from src.models.tables import User


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> dict[str, Any] | None: ...

    def update_user(self, user_id: str, patch: dict[str, Any]) -> bool: ...

    def find_user_ids_by_token(self, token: str) -> list[str]: ...


class InMemoryUserDirectory:
    def __init__(self, users: dict[str, dict[str, Any]] | None = None) -> None:
        self._users: dict[str, dict[str, Any]] = {user_id: dict(data) for user_id, data in (users or {}).items()}

    def add_user(self, user_id: str, push_token: str | None = None) -> None:
        self._users[user_id] = {"id": user_id, "push_token": push_token}

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        user = self._users.get(user_id)
        return dict(user) if user is not None else None

    def update_user(self, user_id: str, patch: dict[str, Any]) -> bool:
        user = self._users.get(user_id)
        if user is None:
            return False
        user.update(patch)
        return True

    def find_user_ids_by_token(self, token: str) -> list[str]:
        return [user_id for user_id, user in self._users.items() if user.get("push_token") == token]


class SqlUserDirectory:
    """Reads and patches the ``users`` rows owned by the CRUD layer."""

    _patchable = {"push_token", "updated_at"}

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self.session_factory = session_factory or new_session

    @staticmethod
    def _as_dict(row: User) -> dict[str, Any]:
        return {"id": row.id, "push_token": row.push_token, "updated_at": row.updated_at}

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        db = self.session_factory()
        try:
            row = db.get(User, user_id)
            return self._as_dict(row) if row is not None else None
        finally:
            db.close()

    def update_user(self, user_id: str, patch: dict[str, Any]) -> bool:
        unknown = set(patch) - self._patchable
        if unknown:
            raise ValueError(f"Unsupported user fields: {sorted(unknown)}")
        db = self.session_factory()
        try:
            row = db.get(User, user_id)
            if row is None:
                return False
            for key, value in patch.items():
                setattr(row, key, value)
            db.commit()
            return True
        finally:
            db.close()

    def find_user_ids_by_token(self, token: str) -> list[str]:
        db = self.session_factory()
        try:
            return list(db.execute(select(User.id).where(User.push_token == token)).scalars().all())
        finally:
            db.close()
