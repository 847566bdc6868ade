from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from taskmanager.logging import get_logger
from taskmanager.storage.errors import ConstraintViolation
from taskmanager.storage.models import (
    Claim,
    SaveResult,
    Task,
    TaskStatus,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory credential and task store persisted to a JSON state file.

    Used for tests and single-process development. Writes mirror the
    Postgres store's affected-row semantics: a task write only applies when
    the row is still available and its version matches the one the caller
    read.
    """

    def __init__(self, fs_root: str = "/tmp/taskmanager") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.tasks: Dict[int, Task] = {}
        self._task_id_seq: int = 1
        # RLock so helpers can nest acquisitions
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
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _copy_user(user: User) -> User:
        return replace(user, claims=list(user.claims))

    def verify_connection(self) -> None:
        self._state_path()

    def close(self) -> None:
        pass

    # user / auth
    def create_user(
        self,
        email: str,
        *,
        email_confirmed: bool = False,
        claims: Optional[List[Claim]] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email"},
                    errors=[
                        {
                            "code": "DuplicateEmail",
                            "description": f"Email '{email}' is already taken.",
                        }
                    ],
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                email_confirmed=email_confirmed,
                claims=list(claims or []),
            )
            self.users[user.id] = user
            self._persist_state()
            return self._copy_user(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return self._copy_user(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy_user(user) if user else None

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

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_end: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """Count one failed sign-in; the attempt that reaches ``max_attempts`` locks the account.

        Attempts against an account that is already locked leave its state alone.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if not user.is_locked_out(now):
                failed = user.access_failed_count + 1
                if failed >= max_attempts:
                    user.access_failed_count = 0
                    user.lockout_end = lockout_end
                else:
                    user.access_failed_count = failed
                self._persist_state()
            return self._copy_user(user)

    def reset_failed_logins(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            # A lockout set by a concurrent attempt survives
            if not user.is_locked_out(now):
                user.access_failed_count = 0
                user.lockout_end = None
                self._persist_state()
            return self._copy_user(user)

    def add_user_claim(self, user_id: str, claim: Claim) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if claim not in user.claims:
                user.claims.append(claim)
                self._persist_state()
            return self._copy_user(user)

    # tasks
    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        with self._data_lock:
            return [
                replace(task)
                for task in sorted(self.tasks.values(), key=lambda t: t.id)
                if task.is_available and (status is None or task.status == status)
            ]

    def get_task(
        self, task_id: int, *, include_unavailable: bool = False
    ) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task:
                return None
            if not task.is_available and not include_unavailable:
                return None
            return replace(task)

    def create_task(
        self,
        *,
        title: str,
        description: Optional[str],
        status: TaskStatus,
        created_at: datetime,
        due_date: Optional[datetime],
    ) -> SaveResult:
        with self._data_lock:
            task = Task(
                id=self._task_id_seq,
                title=title,
                description=description,
                status=status,
                created_at=created_at,
                due_date=due_date,
            )
            self._task_id_seq += 1
            self.tasks[task.id] = task
            self._persist_state()
            return SaveResult(rows_affected=1, task=replace(task))

    def update_task(
        self,
        task_id: int,
        *,
        expected_version: int,
        title: str,
        description: Optional[str],
        status: TaskStatus,
        created_at: datetime,
        due_date: Optional[datetime],
    ) -> SaveResult:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or not task.is_available or task.version != expected_version:
                return SaveResult(rows_affected=0)
            task.title = title
            task.description = description
            task.status = status
            task.created_at = created_at
            task.due_date = due_date
            task.version += 1
            self._persist_state()
            return SaveResult(rows_affected=1, task=replace(task))

    def soft_delete_task(self, task_id: int, *, expected_version: int) -> SaveResult:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or not task.is_available or task.version != expected_version:
                return SaveResult(rows_affected=0)
            task.is_available = False
            task.version += 1
            self._persist_state()
            return SaveResult(rows_affected=1, task=replace(task))

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
            "task_id_seq": self._task_id_seq,
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
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        max_task_id = max(self.tasks.keys(), default=0)
        self._task_id_seq = max(int(data.get("task_id_seq", 1)), max_task_id + 1)
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "email_confirmed": user.email_confirmed,
            "access_failed_count": user.access_failed_count,
            "lockout_end": self._serialize_datetime(user.lockout_end),
            "lockout_enabled": user.lockout_enabled,
            "claims": [{"type": c.type, "value": c.value} for c in user.claims],
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            email_confirmed=data.get("email_confirmed", False),
            access_failed_count=int(data.get("access_failed_count", 0)),
            lockout_end=self._deserialize_datetime(data.get("lockout_end")),
            lockout_enabled=data.get("lockout_enabled", True),
            claims=[Claim(c["type"], c.get("value", "true")) for c in data.get("claims", [])],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "title": task.title,
            "description": task.description,
            "status": task.status.value,
            "created_at": self._serialize_datetime(task.created_at),
            "due_date": self._serialize_datetime(task.due_date),
            "is_available": task.is_available,
            "version": task.version,
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=int(data["id"]),
            title=data["title"],
            description=data.get("description"),
            status=TaskStatus(data.get("status", TaskStatus.CREATED.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            due_date=self._deserialize_datetime(data.get("due_date")),
            is_available=data.get("is_available", True),
            version=int(data.get("version", 1)),
        )
