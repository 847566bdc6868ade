from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from taskmanager.logging import get_logger
from taskmanager.service.errors import (
    NotFoundError,
    PersistenceError,
    TaskUnavailableError,
    ValidationError,
)
from taskmanager.storage.models import (
    DESCRIPTION_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    SaveResult,
    Task,
    TaskStatus,
    utcnow,
)

logger = get_logger(__name__)

TITLE_REQUIRED = "Property Title cannot be null or empty."
TASK_NOT_AVAILABLE = "Task not available."


class TaskStore(Protocol):
    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]: ...

    def get_task(
        self, task_id: int, *, include_unavailable: bool = False
    ) -> Optional[Task]: ...

    def create_task(
        self,
        *,
        title: str,
        description: Optional[str],
        status: TaskStatus,
        created_at: datetime,
        due_date: Optional[datetime],
    ) -> SaveResult: ...

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
    ) -> SaveResult: ...

    def soft_delete_task(self, task_id: int, *, expected_version: int) -> SaveResult: ...


def _validate_fields(title: Optional[str], description: Optional[str]) -> str:
    if title is None or not title.strip():
        raise ValidationError(TITLE_REQUIRED, detail={"field": "title"})
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(
            f"Property Title cannot exceed {TITLE_MAX_LENGTH} characters.",
            detail={"field": "title", "max_length": TITLE_MAX_LENGTH},
        )
    if description is not None and len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"Property Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters.",
            detail={"field": "description", "max_length": DESCRIPTION_MAX_LENGTH},
        )
    return title


class TaskService:
    """Task lifecycle rules applied at the write boundary.

    Every call reads fresh state from the store. Writes are conditioned on
    the version that was read, so a concurrent change makes the store report
    zero affected rows and the call fails with :class:`PersistenceError`.
    """

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def list(self, status: Optional[TaskStatus] = None) -> List[Task]:
        return self.store.list_tasks(status=status)

    def get(self, task_id: int) -> Task:
        task = self.store.get_task(task_id)
        if not task:
            raise NotFoundError("task not found", detail={"id": task_id})
        return task

    def create(
        self,
        title: Optional[str],
        description: Optional[str] = None,
        due_date: Optional[datetime] = None,
    ) -> Task:
        title = _validate_fields(title, description)
        result = self.store.create_task(
            title=title,
            description=description,
            status=TaskStatus.CREATED,
            created_at=utcnow(),
            due_date=due_date,
        )
        if not result.applied or result.task is None:
            logger.error("task_create_not_applied", rows_affected=result.rows_affected)
            raise PersistenceError("task could not be saved")
        logger.info("task_created", task_id=result.task.id)
        return result.task

    def _load_for_write(self, task_id: int) -> Task:
        task = self.store.get_task(task_id, include_unavailable=True)
        if not task:
            raise NotFoundError("task not found", detail={"id": task_id})
        return task

    def update(
        self,
        task_id: int,
        title: Optional[str],
        description: Optional[str],
        status: TaskStatus,
        created_at: Optional[datetime] = None,
        due_date: Optional[datetime] = None,
    ) -> None:
        title = _validate_fields(title, description)
        current = self._load_for_write(task_id)
        if not current.is_available:
            raise TaskUnavailableError(TASK_NOT_AVAILABLE, detail={"id": task_id})
        result = self.store.update_task(
            task_id,
            expected_version=current.version,
            title=title,
            description=description,
            status=TaskStatus(status),
            created_at=created_at or current.created_at,
            due_date=due_date,
        )
        if not result.applied:
            logger.warning("task_update_conflict", task_id=task_id, version=current.version)
            raise PersistenceError("task could not be saved", detail={"id": task_id})
        logger.info("task_updated", task_id=task_id)

    def soft_delete(self, task_id: int) -> None:
        current = self._load_for_write(task_id)
        if not current.is_available:
            return
        result = self.store.soft_delete_task(task_id, expected_version=current.version)
        if not result.applied:
            logger.warning("task_delete_conflict", task_id=task_id, version=current.version)
            raise PersistenceError("task could not be saved", detail={"id": task_id})
        logger.info("task_soft_deleted", task_id=task_id)
