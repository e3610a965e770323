from __future__ import annotations

import base64
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from taskkeeper.logging import get_logger
from taskkeeper.service.query import TaskQuery, apply_task_query
from taskkeeper.storage.errors import ConstraintViolation
from taskkeeper.storage.models import Task, User, utcnow

_USER_FIELDS = {"name", "email"}
_TASK_FIELDS = {"description", "completed"}


class MemoryStore:
    """In-memory backing store, snapshotted to JSON under ``fs_root/state``."""

    def __init__(self, fs_root: str = "/tmp/taskkeeper") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.tasks: Dict[str, Task] = {}
        self._task_seq: int = 1
        # RLock for all data operations; nested acquisitions happen in cascades
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def verify_connection(self) -> None:
        """Nothing to reach; present so health checks treat backends alike."""

    # users
    def create_user(self, name: str, email: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), name=name, email=email)
            self.users[user.id] = user
            self._persist_state()
            return replace(user, tokens=list(user.tokens))

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user, tokens=list(user.tokens)) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user, tokens=list(user.tokens)) if user else None

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = fields.get("email")
            if new_email is not None and any(
                other.email == new_email and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user, tokens=list(user.tokens))

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_avatar(self, user_id: str, avatar: Optional[bytes]) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.avatar = avatar
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def get_avatar(self, user_id: str) -> Optional[bytes]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.avatar if user else None

    # session tokens
    def add_user_token(self, user_id: str, token: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            if token not in user.tokens:
                user.tokens.append(token)
                self._persist_state()
            return True

    def remove_user_token(self, user_id: str, token: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or token not in user.tokens:
                return False
            user.tokens.remove(token)
            self._persist_state()
            return True

    def clear_user_tokens(self, user_id: str, *, keep: Optional[str] = None) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            kept = [t for t in user.tokens if keep is not None and t == keep]
            removed = len(user.tokens) - len(kept)
            user.tokens = kept
            self._persist_state()
            return removed

    def has_user_token(self, user_id: str, token: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            return bool(user and token in user.tokens)

    # tasks
    def create_task(
        self, owner_id: str, description: str, completed: bool = False
    ) -> Task:
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation("owner not found", {"field": "owner"})
            task = Task(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                description=description,
                completed=completed,
                seq=self._task_seq,
            )
            self._task_seq += 1
            self.tasks[task.id] = task
            self._persist_state()
            return replace(task)

    def get_task(self, task_id: str, owner_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.owner_id != owner_id:
                return None
            return replace(task)

    def list_tasks(self, query: TaskQuery) -> List[Task]:
        with self._data_lock:
            return [replace(t) for t in apply_task_query(self.tasks.values(), query)]

    def update_task(
        self, task_id: str, owner_id: str, fields: Dict[str, Any]
    ) -> Optional[Task]:
        unknown = set(fields) - _TASK_FIELDS
        if unknown:
            raise ValueError(f"unsupported task fields: {sorted(unknown)}")
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.owner_id != owner_id:
                return None
            for key, value in fields.items():
                setattr(task, key, value)
            task.updated_at = utcnow()
            self._persist_state()
            return replace(task)

    def delete_task(self, task_id: str, owner_id: str) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.owner_id != owner_id:
                return None
            self.tasks.pop(task_id, None)
            self._persist_state()
            return task

    def delete_tasks_for_owner(self, owner_id: str) -> int:
        with self._data_lock:
            doomed = [tid for tid, t in self.tasks.items() if t.owner_id == owner_id]
            for task_id in doomed:
                self.tasks.pop(task_id, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
            "task_seq": self._task_seq,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tasks = {
            t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])
        }
        max_seq = max((t.seq for t in self.tasks.values()), default=0)
        self._task_seq = max(int(data.get("task_seq", 1)), max_seq + 1)
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            tasks=len(self.tasks),
            path=str(path),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "tokens": list(user.tokens),
            "avatar": base64.b64encode(user.avatar).decode("ascii")
            if user.avatar
            else None,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        avatar = data.get("avatar")
        return User(
            id=str(data["id"]),
            name=data["name"],
            email=data["email"],
            tokens=list(data.get("tokens", [])),
            avatar=base64.b64decode(avatar) if avatar else None,
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "owner_id": task.owner_id,
            "description": task.description,
            "completed": task.completed,
            "seq": task.seq,
            "created_at": self._serialize_datetime(task.created_at),
            "updated_at": self._serialize_datetime(task.updated_at),
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=str(data["id"]),
            owner_id=data["owner_id"],
            description=data["description"],
            completed=bool(data.get("completed", False)),
            seq=int(data.get("seq", 0)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )
