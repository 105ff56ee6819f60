import asyncio
from pathlib import Path

import pytest
from coreason_devbox.exceptions import InvalidTransitionError, SandboxNotFoundError
from coreason_devbox.models import SandboxStatus, UsageType
from coreason_devbox.store import RecordStore, SQLiteRecordStore

from conftest import FakeClock

GRACE = 900.0


@pytest.mark.asyncio
async def test_create_starts_in_creating_with_deadline(store: SQLiteRecordStore, clock: FakeClock) -> None:
    record_id = await store.create("user-1", "sbx-1", "app", project_id="p-1")

    record = await store.get("sbx-1")
    assert record.id == record_id
    assert record.status is SandboxStatus.CREATING
    assert record.owner_id == "user-1"
    assert record.project_id == "p-1"
    assert record.url is None
    assert record.started_at == clock.now
    assert record.auto_stop_at == record.last_active_at + GRACE


@pytest.mark.asyncio
async def test_get_unknown_raises_not_found(store: SQLiteRecordStore) -> None:
    with pytest.raises(SandboxNotFoundError, match="Sandbox not found: missing"):
        await store.get("missing")


@pytest.mark.asyncio
async def test_touch_and_set_status_rederive_deadline(store: SQLiteRecordStore, clock: FakeClock) -> None:
    await store.create("user-1", "sbx-1", "app")

    clock.advance(120)
    running = await store.set_status("sbx-1", SandboxStatus.RUNNING, url="https://3000-sbx-1.e2b.app")
    assert running.status is SandboxStatus.RUNNING
    assert running.url == "https://3000-sbx-1.e2b.app"
    assert running.last_active_at == clock.now
    assert running.auto_stop_at == clock.now + GRACE

    clock.advance(300)
    touched = await store.touch("sbx-1")
    assert touched.last_active_at == clock.now
    assert touched.auto_stop_at == touched.last_active_at + GRACE
    assert touched.started_at == running.started_at


@pytest.mark.asyncio
async def test_set_status_keeps_url_when_none_given(store: SQLiteRecordStore) -> None:
    await store.create("user-1", "sbx-1", "app")
    await store.set_status("sbx-1", SandboxStatus.RUNNING, url="https://x.e2b.app")

    stopped = await store.set_status("sbx-1", SandboxStatus.STOPPED)
    assert stopped.url == "https://x.e2b.app"


@pytest.mark.asyncio
async def test_backward_transitions_rejected(store: SQLiteRecordStore) -> None:
    await store.create("user-1", "sbx-1", "app")
    await store.set_status("sbx-1", SandboxStatus.STOPPED)

    with pytest.raises(InvalidTransitionError):
        await store.set_status("sbx-1", SandboxStatus.RUNNING)
    assert (await store.get("sbx-1")).status is SandboxStatus.STOPPED


@pytest.mark.asyncio
async def test_unknown_ids_raise_not_found(store: SQLiteRecordStore) -> None:
    with pytest.raises(SandboxNotFoundError):
        await store.touch("missing")
    with pytest.raises(SandboxNotFoundError):
        await store.set_status("missing", SandboxStatus.RUNNING)
    with pytest.raises(SandboxNotFoundError):
        await store.delete("missing")


@pytest.mark.asyncio
async def test_list_expired_only_returns_running_past_deadline(store: SQLiteRecordStore, clock: FakeClock) -> None:
    for sandbox_id in ("old-running", "old-creating", "fresh-running"):
        await store.create("user-1", sandbox_id, "app")
    await store.set_status("old-running", SandboxStatus.RUNNING)

    clock.advance(600)
    await store.set_status("fresh-running", SandboxStatus.RUNNING)

    expired = await store.list_expired(now=clock.now + 400)
    assert [record.sandbox_id for record in expired] == ["old-running"]

    # The deadline itself is not yet expired.
    deadline = (await store.get("old-running")).auto_stop_at
    assert await store.list_expired(now=deadline) == []


@pytest.mark.asyncio
async def test_list_for_owner_filters(store: SQLiteRecordStore, clock: FakeClock) -> None:
    await store.create("user-1", "a", "app")
    clock.advance(1)
    await store.create("user-1", "b", "app")
    await store.create("user-2", "c", "app")
    await store.set_status("a", SandboxStatus.STOPPED)

    assert [r.sandbox_id for r in await store.list_for_owner("user-1")] == ["b", "a"]
    assert [r.sandbox_id for r in await store.list_for_owner("user-1", active_only=True)] == ["b"]
    assert [r.sandbox_id for r in await store.list_for_project("none")] == []


@pytest.mark.asyncio
async def test_delete_cascades_to_children(store: SQLiteRecordStore) -> None:
    await store.create("user-1", "sbx-1", "app")
    await store.create("user-1", "sbx-2", "other")
    await store.add_snapshot("sbx-1", "src/index.js", "console.log(1)")
    await store.add_chat_history("sbx-1", "user-1", "s-1", [{"role": "user", "content": "hi"}])
    await store.add_snapshot("sbx-2", "main.py", "print(1)")

    await store.delete("sbx-1")

    with pytest.raises(SandboxNotFoundError):
        await store.get("sbx-1")
    assert await store.list_snapshots("sbx-1") == []
    assert await store.list_chat_history("sbx-1") == []
    assert len(await store.list_snapshots("sbx-2")) == 1


@pytest.mark.asyncio
async def test_snapshot_and_chat_history_round_trip(store: SQLiteRecordStore) -> None:
    await store.create("user-1", "sbx-1", "app", project_id="p-1")
    await store.add_snapshot("sbx-1", "README.md", "# hi")
    await store.add_chat_history("sbx-1", "user-1", "s-1", [{"role": "user", "content": "hi"}])

    [snapshot] = await store.list_snapshots("sbx-1")
    assert snapshot.file_path == "README.md"
    assert snapshot.project_id == "p-1"
    assert snapshot.size == 4
    assert len(snapshot.hash) == 64

    [history] = await store.list_chat_history("sbx-1")
    assert history.messages == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_purge_orphans_removes_children_without_parent(store: SQLiteRecordStore) -> None:
    await store.create("user-1", "sbx-1", "app")
    await store.add_snapshot("sbx-1", "a.txt", "a")
    record = await store.get("sbx-1")
    # Simulate a crash between the child deletes and the parent delete in the other order.
    await store._run(store._execute_sync, "DELETE FROM sandboxes WHERE id = ?", (record.id,))

    assert await store.purge_orphans() == 1
    assert await store.purge_orphans() == 0


@pytest.mark.asyncio
async def test_usage_summary(store: SQLiteRecordStore, clock: FakeClock) -> None:
    await store.track_usage("user-1", UsageType.GIT_OPERATIONS, 1, {"operation": "clone"})
    await store.track_usage("user-1", UsageType.SANDBOX_HOURS, 0.5)
    clock.advance(10)
    await store.track_usage("user-1", UsageType.SANDBOX_HOURS, 0.25)
    await store.track_usage("user-2", UsageType.GIT_OPERATIONS, 1)

    summary = await store.usage_summary("user-1")
    assert summary == {"sandbox_hours": 0.75, "git_operations": 1.0}

    recent = await store.usage_summary("user-1", since=clock.now)
    assert recent == {"sandbox_hours": 0.25, "git_operations": 0.0}


@pytest.mark.asyncio
async def test_concurrent_touch_and_stop_end_consistent(store: SQLiteRecordStore) -> None:
    await store.create("user-1", "sbx-1", "app")
    await store.set_status("sbx-1", SandboxStatus.RUNNING)

    await asyncio.gather(*(store.touch("sbx-1") for _ in range(5)), store.set_status("sbx-1", SandboxStatus.STOPPED))

    record = await store.get("sbx-1")
    assert record.status is SandboxStatus.STOPPED
    assert record.auto_stop_at == record.last_active_at + GRACE


def test_store_satisfies_protocol(store: SQLiteRecordStore) -> None:
    assert isinstance(store, RecordStore)


def test_in_memory_database_rejected() -> None:
    with pytest.raises(ValueError):
        SQLiteRecordStore(":memory:")


def test_schema_persists_across_instances(tmp_path: Path) -> None:
    SQLiteRecordStore(tmp_path / "nested" / "devbox.db")
    assert (tmp_path / "nested" / "devbox.db").exists()
    SQLiteRecordStore(tmp_path / "nested" / "devbox.db")


@pytest.mark.asyncio
async def test_locks_released_once_record_is_terminal(store: SQLiteRecordStore) -> None:
    await store.create("user-1", "sbx-1", "app")
    await store.create("user-1", "sbx-2", "app")

    await store.set_status("sbx-1", SandboxStatus.RUNNING)
    assert "sbx-1" in store.locks._locks

    await store.set_status("sbx-1", SandboxStatus.STOPPED)
    await store.set_status("sbx-2", SandboxStatus.ERROR)
    assert "sbx-1" not in store.locks._locks
    assert "sbx-2" not in store.locks._locks
