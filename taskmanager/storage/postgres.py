from __future__ import annotations

import time
import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional, TypeVar

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

T = TypeVar("T")

_TASK_COLUMNS = "id, title, description, status, created_at, due_date, is_available, version"


class PostgresStore:
    """Postgres-backed credential and task store.

    Each public method runs in its own transaction on a pooled connection.
    Task writes are guarded by ``version`` and report ``rowcount`` through
    :class:`SaveResult`; a zero count means the row changed or disappeared
    after the caller read it.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 10.0,
        max_retries: int = 3,
        max_retry_delay: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.max_retries = max_retries
        self.max_retry_delay = max_retry_delay
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _run(
        self, operation: str, func: Callable[[Any], T], *, idempotent: bool = True
    ) -> T:
        """Run ``func(conn)`` in a transaction, retrying transient connection failures.

        A non-idempotent write is only retried when the failure happened while
        acquiring the connection (``PoolTimeout`` is an ``OperationalError``).
        Once its statements have been sent the outcome is unknown, so the
        error propagates.
        """

        attempt = 0
        while True:
            statements_sent = False
            try:
                with self._connect() as conn:
                    statements_sent = True
                    return func(conn)
            except OperationalError as exc:
                if attempt >= self.max_retries or (statements_sent and not idempotent):
                    raise
                delay = min(self.max_retry_delay, 0.1 * (2**attempt))
                attempt += 1
                self.logger.warning(
                    "postgres_operation_retry",
                    operation=operation,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                )
                time.sleep(delay)

    def _verify_required_schema(self) -> None:
        """Ensure the tables from scripts/schema.sql exist before serving requests."""

        required_tables = ["app_user", "user_auth_credential", "user_claim", "personal_task"]

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

    # users
    def _load_claims(self, conn, user_id: str) -> List[Claim]:
        rows = conn.execute(
            "SELECT claim_type, claim_value FROM user_claim WHERE user_id = %s ORDER BY id",
            (user_id,),
        ).fetchall()
        return [Claim(row["claim_type"], row["claim_value"]) for row in rows]

    def _user_from_row(self, row: dict, claims: List[Claim]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            email_confirmed=row.get("email_confirmed", False),
            access_failed_count=row.get("access_failed_count", 0),
            lockout_end=row.get("lockout_end"),
            lockout_enabled=row.get("lockout_enabled", True),
            claims=claims,
            created_at=row.get("created_at") or utcnow(),
        )

    def create_user(
        self,
        email: str,
        *,
        email_confirmed: bool = False,
        claims: Optional[List[Claim]] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        claims = list(claims or [])

        def _insert(conn) -> dict:
            row = conn.execute(
                """
                INSERT INTO app_user (id, email, email_confirmed)
                VALUES (%s, %s, %s)
                RETURNING *
                """,
                (user_id, email, email_confirmed),
            ).fetchone()
            for claim in claims:
                conn.execute(
                    "INSERT INTO user_claim (user_id, claim_type, claim_value) VALUES (%s, %s, %s)",
                    (user_id, claim.type, claim.value),
                )
            return row

        try:
            row = self._run("create_user", _insert, idempotent=False)
        except errors.UniqueViolation:
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
        return self._user_from_row(row, claims)

    def _get_user_where(self, column: str, value: str) -> Optional[User]:
        def _select(conn) -> Optional[User]:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()
            if not row:
                return None
            return self._user_from_row(row, self._load_claims(conn, str(row["id"])))

        return self._run("get_user", _select)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("email", email)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id", user_id)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        def _upsert(conn) -> None:
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

        try:
            self._run("save_password", _upsert)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        def _select(conn):
            return conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()

        row = self._run("get_password_record", _select)
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_end: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        params = {
            "user_id": user_id,
            "max_attempts": max_attempts,
            "lockout_end": lockout_end,
            "now": now or utcnow(),
        }

        # One statement so concurrent attempts cannot lose increments; SET
        # expressions all see the pre-update row.
        def _update(conn) -> Optional[User]:
            row = conn.execute(
                """
                UPDATE app_user
                SET access_failed_count = CASE
                        WHEN lockout_end > %(now)s THEN access_failed_count
                        WHEN access_failed_count + 1 >= %(max_attempts)s THEN 0
                        ELSE access_failed_count + 1
                    END,
                    lockout_end = CASE
                        WHEN lockout_end > %(now)s THEN lockout_end
                        WHEN access_failed_count + 1 >= %(max_attempts)s THEN %(lockout_end)s
                        ELSE lockout_end
                    END
                WHERE id = %(user_id)s
                RETURNING *
                """,
                params,
            ).fetchone()
            if not row:
                return None
            return self._user_from_row(row, self._load_claims(conn, user_id))

        return self._run("record_failed_login", _update, idempotent=False)

    def reset_failed_logins(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[User]:
        def _update(conn) -> Optional[User]:
            conn.execute(
                """
                UPDATE app_user
                SET access_failed_count = 0, lockout_end = NULL
                WHERE id = %s AND (lockout_end IS NULL OR lockout_end <= %s)
                """,
                (user_id, now or utcnow()),
            )
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
            if not row:
                return None
            return self._user_from_row(row, self._load_claims(conn, user_id))

        return self._run("reset_failed_logins", _update)

    def add_user_claim(self, user_id: str, claim: Claim) -> Optional[User]:
        def _insert(conn) -> Optional[User]:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
            if not row:
                return None
            conn.execute(
                """
                INSERT INTO user_claim (user_id, claim_type, claim_value)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id, claim_type, claim_value) DO NOTHING
                """,
                (user_id, claim.type, claim.value),
            )
            return self._user_from_row(row, self._load_claims(conn, user_id))

        return self._run("add_user_claim", _insert)

    # tasks
    @staticmethod
    def _task_from_row(row: dict) -> Task:
        return Task(
            id=int(row["id"]),
            title=row["title"],
            description=row.get("description"),
            status=TaskStatus(row["status"]),
            created_at=row["created_at"],
            due_date=row.get("due_date"),
            is_available=bool(row.get("is_available", True)),
            version=int(row.get("version", 1)),
        )

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        def _select(conn):
            if status is not None:
                return conn.execute(
                    f"SELECT {_TASK_COLUMNS} FROM personal_task "
                    "WHERE is_available AND status = %s ORDER BY id",
                    (status.value,),
                ).fetchall()
            return conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM personal_task WHERE is_available ORDER BY id"
            ).fetchall()

        return [self._task_from_row(row) for row in self._run("list_tasks", _select)]

    def get_task(
        self, task_id: int, *, include_unavailable: bool = False
    ) -> Optional[Task]:
        def _select(conn):
            if include_unavailable:
                return conn.execute(
                    f"SELECT {_TASK_COLUMNS} FROM personal_task WHERE id = %s",
                    (task_id,),
                ).fetchone()
            return conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM personal_task WHERE id = %s AND is_available",
                (task_id,),
            ).fetchone()

        row = self._run("get_task", _select)
        return self._task_from_row(row) if row else None

    def create_task(
        self,
        *,
        title: str,
        description: Optional[str],
        status: TaskStatus,
        created_at: datetime,
        due_date: Optional[datetime],
    ) -> SaveResult:
        def _insert(conn) -> SaveResult:
            cur = conn.execute(
                f"""
                INSERT INTO personal_task (title, description, status, created_at, due_date, is_available, version)
                VALUES (%s, %s, %s, %s, %s, TRUE, 1)
                RETURNING {_TASK_COLUMNS}
                """,
                (title, description, status.value, created_at, due_date),
            )
            row = cur.fetchone()
            return SaveResult(
                rows_affected=cur.rowcount,
                task=self._task_from_row(row) if row else None,
            )

        return self._run("create_task", _insert, idempotent=False)

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
        def _update(conn) -> SaveResult:
            cur = conn.execute(
                f"""
                UPDATE personal_task
                SET title = %s, description = %s, status = %s, created_at = %s,
                    due_date = %s, version = version + 1
                WHERE id = %s AND version = %s AND is_available
                RETURNING {_TASK_COLUMNS}
                """,
                (
                    title,
                    description,
                    status.value,
                    created_at,
                    due_date,
                    task_id,
                    expected_version,
                ),
            )
            row = cur.fetchone()
            return SaveResult(
                rows_affected=cur.rowcount,
                task=self._task_from_row(row) if row else None,
            )

        return self._run("update_task", _update, idempotent=False)

    def soft_delete_task(self, task_id: int, *, expected_version: int) -> SaveResult:
        def _update(conn) -> SaveResult:
            cur = conn.execute(
                f"""
                UPDATE personal_task
                SET is_available = FALSE, version = version + 1
                WHERE id = %s AND version = %s AND is_available
                RETURNING {_TASK_COLUMNS}
                """,
                (task_id, expected_version),
            )
            row = cur.fetchone()
            return SaveResult(
                rows_affected=cur.rowcount,
                task=self._task_from_row(row) if row else None,
            )

        return self._run("soft_delete_task", _update, idempotent=False)
