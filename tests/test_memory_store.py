from datetime import datetime, timedelta, timezone

import pytest

from taskmanager.storage.errors import ConstraintViolation
from taskmanager.storage.memory import MemoryStore
from taskmanager.storage.models import Claim, TaskStatus


def _create(store, title="task", status=TaskStatus.CREATED):
    return store.create_task(
        title=title,
        description=None,
        status=status,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        due_date=None,
    ).task


def test_duplicate_email_raises_structured_errors(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com")

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("dup@example.com")
    assert exc_info.value.errors[0]["code"] == "DuplicateEmail"


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com", email_confirmed=True)
    store.save_password(user.id, "hash", "argon2id")
    store.add_user_claim(user.id, Claim("DeleteTask"))
    lockout_end = datetime.now(timezone.utc) + timedelta(minutes=5)
    for _ in range(2):
        store.record_failed_login(user.id, max_attempts=2, lockout_end=lockout_end)
    task = _create(store, "remember me")
    store.soft_delete_task(task.id, expected_version=task.version)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.email_confirmed is True
    assert reloaded_user.claims == [Claim("DeleteTask", "true")]
    assert reloaded_user.access_failed_count == 0
    assert reloaded_user.lockout_end == lockout_end
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.get_task(task.id) is None
    assert reloaded.get_task(task.id, include_unavailable=True).is_available is False
    # Ids keep increasing after a reload
    assert _create(reloaded).id == task.id + 1


def test_failed_logins_lock_on_the_limit(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("lock@example.com")
    lockout_end = datetime.now(timezone.utc) + timedelta(minutes=5)

    counts = [
        store.record_failed_login(user.id, max_attempts=3, lockout_end=lockout_end).access_failed_count
        for _ in range(2)
    ]
    locked = store.record_failed_login(user.id, max_attempts=3, lockout_end=lockout_end)

    assert counts == [1, 2]
    assert locked.access_failed_count == 0
    assert locked.lockout_end == lockout_end
    assert locked.is_locked_out()


def test_failed_login_on_locked_account_changes_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("locked@example.com")
    first_end = datetime.now(timezone.utc) + timedelta(minutes=5)
    store.record_failed_login(user.id, max_attempts=1, lockout_end=first_end)

    again = store.record_failed_login(
        user.id, max_attempts=1, lockout_end=first_end + timedelta(minutes=10)
    )

    assert again.lockout_end == first_end
    assert again.access_failed_count == 0


def test_reset_keeps_active_lockout(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("reset@example.com")
    lockout_end = datetime.now(timezone.utc) + timedelta(minutes=5)
    store.record_failed_login(user.id, max_attempts=1, lockout_end=lockout_end)

    assert store.reset_failed_logins(user.id).lockout_end == lockout_end

    later = lockout_end + timedelta(seconds=1)
    cleared = store.reset_failed_logins(user.id, now=later)
    assert cleared.lockout_end is None
    assert cleared.access_failed_count == 0


def test_lockout_ops_on_missing_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    lockout_end = datetime.now(timezone.utc)
    assert store.record_failed_login("missing", max_attempts=5, lockout_end=lockout_end) is None
    assert store.reset_failed_logins("missing") is None


def test_update_requires_matching_version(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    task = _create(store)
    kwargs = dict(
        title="new",
        description=None,
        status=TaskStatus.IN_PROGRESS,
        created_at=task.created_at,
        due_date=None,
    )

    first = store.update_task(task.id, expected_version=task.version, **kwargs)
    second = store.update_task(task.id, expected_version=task.version, **kwargs)

    assert first.rows_affected == 1
    assert first.task.version == task.version + 1
    assert second.rows_affected == 0
    assert second.applied is False


def test_writes_skip_unavailable_and_missing_rows(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    task = _create(store)
    store.soft_delete_task(task.id, expected_version=task.version)
    current = store.get_task(task.id, include_unavailable=True)

    assert store.soft_delete_task(task.id, expected_version=current.version).rows_affected == 0
    assert store.soft_delete_task(999, expected_version=1).rows_affected == 0


def test_returned_records_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    task = _create(store)
    fetched = store.get_task(task.id)
    fetched.title = "mutated"

    assert store.get_task(task.id).title == "task"


def test_list_filters_status_and_availability(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    a = _create(store, "a")
    b = _create(store, "b", TaskStatus.COMPLETED)
    c = _create(store, "c", TaskStatus.COMPLETED)
    store.soft_delete_task(c.id, expected_version=c.version)

    assert [t.id for t in store.list_tasks()] == [a.id, b.id]
    assert [t.id for t in store.list_tasks(TaskStatus.COMPLETED)] == [b.id]
