from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

TITLE_MAX_LENGTH = 60
DESCRIPTION_MAX_LENGTH = 200


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Closed set of task states accepted at the API boundary."""

    CREATED = "Created"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class Claim:
    type: str
    value: str = "true"


@dataclass
class User:
    id: str
    email: str
    email_confirmed: bool = False
    access_failed_count: int = 0
    lockout_end: Optional[datetime] = None
    lockout_enabled: bool = True
    claims: List[Claim] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def is_locked_out(self, now: Optional[datetime] = None) -> bool:
        if not self.lockout_enabled or self.lockout_end is None:
            return False
        return self.lockout_end > (now or utcnow())


@dataclass
class Task:
    id: int
    title: str
    status: TaskStatus
    created_at: datetime
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    is_available: bool = True
    # Bumped on every write; writes are conditioned on the value read
    version: int = 1


@dataclass
class SaveResult:
    """Outcome of a task write as reported by the store."""

    rows_affected: int
    task: Optional[Task] = None

    @property
    def applied(self) -> bool:
        return self.rows_affected > 0
