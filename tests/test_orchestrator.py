import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from coreason_devbox.config import DevboxConfig
from coreason_devbox.exceptions import (
    CloneFailure,
    DevboxError,
    RemoteProvisionError,
    SandboxBusyError,
    SandboxNotFoundError,
    ValidationError,
)
from coreason_devbox.models import CloneRequest, CommandResult, SandboxStatus
from coreason_devbox.orchestrator import SandboxOrchestrator
from coreason_devbox.reaper import IdleReaper
from coreason_devbox.store import SQLiteRecordStore

from conftest import SANDBOX_ID, FakeClock, file_tree

OWNER = "user-1"


def _request(**overrides: Any) -> CloneRequest:
    fields: dict[str, Any] = {
        "git_url": "https://github.com/acme/widgets",
        "branch": "main",
        "project_name": "widgets",
    }
    fields.update(overrides)
    return CloneRequest(**fields)


@pytest.fixture
def widgets_repo(mock_runtime: Any) -> Any:
    """A cloned repository holding only a package.json with a dev script."""
    listing = file_tree("/home/user/widgets", {"package.json": None})
    mock_runtime.list_dir.side_effect = lambda path: listing[path]
    mock_runtime.read_file.return_value = '{"scripts": {"dev": "vite --port 3000"}}'
    return mock_runtime


@pytest.fixture
def orchestrator(config: DevboxConfig, store: SQLiteRecordStore, runtime_factory: MagicMock) -> SandboxOrchestrator:
    return SandboxOrchestrator(config, store, runtime_factory=runtime_factory)


@pytest.mark.asyncio
async def test_clone_node_project_end_to_end(
    orchestrator: SandboxOrchestrator, store: SQLiteRecordStore, widgets_repo: Any
) -> None:
    response = await orchestrator.clone_repository(_request(), OWNER)

    assert response.success
    assert response.sandbox_id == SANDBOX_ID
    assert response.project_info.has_package_json
    assert response.server_url == f"https://3000-{SANDBOX_ID}.e2b.app"
    assert response.message == "Repository 'https://github.com/acme/widgets' cloned successfully!"
    assert response.warnings == []

    record = await store.get(SANDBOX_ID)
    assert record.status is SandboxStatus.RUNNING
    assert record.owner_id == OWNER
    assert record.url == response.server_url
    widgets_repo.terminate.assert_not_awaited()

    usage = await store.usage_summary(OWNER)
    assert usage["git_operations"] == 1.0


@pytest.mark.asyncio
async def test_pipeline_steps_run_in_order(orchestrator: SandboxOrchestrator, widgets_repo: Any) -> None:
    await orchestrator.clone_repository(_request(), OWNER)

    commands = [call.args[0] for call in widgets_repo.run_command.await_args_list]
    assert commands[0].startswith("git clone")
    assert commands[1] == "npm install"
    widgets_repo.start_background.assert_awaited_once_with("npm run dev", cwd="/home/user/widgets")


@pytest.mark.asyncio
async def test_no_run_script_still_succeeds(orchestrator: SandboxOrchestrator, widgets_repo: Any) -> None:
    widgets_repo.read_file.return_value = '{"scripts": {"build": "tsc"}}'

    response = await orchestrator.clone_repository(_request(), OWNER)

    assert response.success
    assert response.server_url is None
    assert response.warnings == ["No dev script found in package.json"]


@pytest.mark.asyncio
async def test_bootstrap_failure_is_reported_as_warning(orchestrator: SandboxOrchestrator, widgets_repo: Any) -> None:
    widgets_repo.run_command.side_effect = [
        CommandResult(exit_code=0),
        CommandResult(stderr="npm ERR! missing peer", exit_code=1),
    ]

    response = await orchestrator.clone_repository(_request(), OWNER)

    assert response.success
    assert response.warnings == ["npm install failed: npm ERR! missing peer"]


@pytest.mark.asyncio
async def test_failed_clone_marks_error_and_closes(
    orchestrator: SandboxOrchestrator, store: SQLiteRecordStore, mock_runtime: Any
) -> None:
    mock_runtime.run_command.return_value = CommandResult(
        stderr="fatal: repository 'https://github.com/acme/nope/' not found", exit_code=128
    )

    with pytest.raises(CloneFailure, match="Git clone failed"):
        await orchestrator.clone_repository(_request(git_url="https://github.com/acme/nope"), OWNER)

    record = await store.get(SANDBOX_ID)
    assert record.status is SandboxStatus.ERROR
    mock_runtime.terminate.assert_awaited_once()


@pytest.mark.asyncio
async def test_unexpected_error_is_wrapped(
    orchestrator: SandboxOrchestrator, store: SQLiteRecordStore, widgets_repo: Any
) -> None:
    orchestrator.bootstrap_step = MagicMock()
    orchestrator.bootstrap_step.run = AsyncMock(side_effect=KeyError("internal detail"))

    with pytest.raises(DevboxError, match="^Clone operation failed$"):
        await orchestrator.clone_repository(_request(), OWNER)

    assert (await store.get(SANDBOX_ID)).status is SandboxStatus.ERROR
    widgets_repo.terminate.assert_awaited_once()


@pytest.mark.asyncio
async def test_provision_failure_leaves_no_record(
    orchestrator: SandboxOrchestrator, store: SQLiteRecordStore, mock_runtime: Any
) -> None:
    mock_runtime.start.side_effect = RemoteProvisionError("Failed to create sandbox: quota")

    with pytest.raises(RemoteProvisionError):
        await orchestrator.clone_repository(_request(), OWNER)

    assert await store.list_for_owner(OWNER) == []


@pytest.mark.asyncio
async def test_record_failure_releases_sandbox(
    orchestrator: SandboxOrchestrator, store: SQLiteRecordStore, mock_runtime: Any
) -> None:
    await store.create("someone-else", SANDBOX_ID, "taken")

    with pytest.raises(RemoteProvisionError):
        await orchestrator.clone_repository(_request(), OWNER)
    mock_runtime.terminate.assert_awaited_once()


@pytest.mark.asyncio
async def test_missing_owner_rejected_before_remote_calls(
    orchestrator: SandboxOrchestrator, runtime_factory: MagicMock
) -> None:
    with pytest.raises(ValidationError):
        await orchestrator.clone_repository(_request(), "")
    runtime_factory.assert_not_called()


@pytest.mark.asyncio
async def test_reuse_existing_sandbox(
    orchestrator: SandboxOrchestrator, store: SQLiteRecordStore, widgets_repo: Any
) -> None:
    await store.create(OWNER, "sbx-existing", "widgets")
    await store.set_status("sbx-existing", SandboxStatus.RUNNING)

    response = await orchestrator.clone_repository(_request(sandbox_id="sbx-existing"), OWNER)

    assert response.sandbox_id == "sbx-existing"
    widgets_repo.attach.assert_awaited_once_with("sbx-existing")
    widgets_repo.start.assert_not_awaited()
    assert (await store.get("sbx-existing")).status is SandboxStatus.RUNNING


@pytest.mark.asyncio
async def test_reuse_other_owners_sandbox_forbidden(
    orchestrator: SandboxOrchestrator, store: SQLiteRecordStore, mock_runtime: Any
) -> None:
    await store.create("user-2", "sbx-theirs", "widgets")

    with pytest.raises(PermissionError):
        await orchestrator.clone_repository(_request(sandbox_id="sbx-theirs"), OWNER)
    mock_runtime.attach.assert_not_awaited()


@pytest.mark.asyncio
async def test_reuse_stopped_sandbox_rejected(
    orchestrator: SandboxOrchestrator, store: SQLiteRecordStore, mock_runtime: Any
) -> None:
    await store.create(OWNER, "sbx-old", "widgets")
    await store.set_status("sbx-old", SandboxStatus.STOPPED)

    with pytest.raises(ValidationError):
        await orchestrator.clone_repository(_request(sandbox_id="sbx-old"), OWNER)
    mock_runtime.attach.assert_not_awaited()


@pytest.mark.asyncio
async def test_reuse_stale_sandbox_marks_error(
    orchestrator: SandboxOrchestrator, store: SQLiteRecordStore, mock_runtime: Any
) -> None:
    await store.create(OWNER, "sbx-stale", "widgets")
    mock_runtime.attach.side_effect = SandboxNotFoundError("sbx-stale")

    with pytest.raises(RemoteProvisionError):
        await orchestrator.clone_repository(_request(sandbox_id="sbx-stale"), OWNER)

    assert (await store.get("sbx-stale")).status is SandboxStatus.ERROR


@pytest.mark.asyncio
async def test_second_pipeline_on_same_sandbox_is_busy(
    orchestrator: SandboxOrchestrator, store: SQLiteRecordStore, widgets_repo: Any
) -> None:
    await store.create(OWNER, "sbx-busy", "widgets")
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_clone(*args: Any, **kwargs: Any) -> CommandResult:
        started.set()
        await release.wait()
        return CommandResult(exit_code=0)

    widgets_repo.run_command.side_effect = slow_clone
    first = asyncio.create_task(orchestrator.clone_repository(_request(sandbox_id="sbx-busy"), OWNER))
    await started.wait()

    with pytest.raises(SandboxBusyError):
        await orchestrator.clone_repository(_request(sandbox_id="sbx-busy"), OWNER)

    release.set()
    response = await first
    assert response.sandbox_id == "sbx-busy"
    assert not orchestrator.is_busy("sbx-busy")


@pytest.mark.asyncio
async def test_reuse_refreshes_deadline_and_survives_a_sweep(
    config: DevboxConfig,
    orchestrator: SandboxOrchestrator,
    store: SQLiteRecordStore,
    runtime_factory: MagicMock,
    clock: FakeClock,
    widgets_repo: Any,
) -> None:
    await store.create(OWNER, "sbx-reused", "widgets")
    await store.set_status("sbx-reused", SandboxStatus.RUNNING)
    clock.advance(800)  # 100 s of grace left
    reaper = IdleReaper(config, store, runtime_factory=runtime_factory, clock=clock, is_busy=orchestrator.is_busy)
    seen: dict[str, Any] = {}

    async def slow_clone(*args: Any, **kwargs: Any) -> CommandResult:
        if "before" not in seen:
            seen["before"] = await store.get("sbx-reused")
            clock.advance(200)
            seen["reaped"] = await reaper.sweep(clock.now + 10_000)
        return CommandResult(exit_code=0)

    widgets_repo.run_command.side_effect = slow_clone

    response = await orchestrator.clone_repository(_request(sandbox_id="sbx-reused"), OWNER)

    assert seen["before"].auto_stop_at == seen["before"].last_active_at + 900
    assert seen["before"].last_active_at == clock.now - 200
    assert seen["reaped"] == []
    assert response.sandbox_id == "sbx-reused"
    assert (await store.get("sbx-reused")).status is SandboxStatus.RUNNING
    widgets_repo.terminate.assert_not_awaited()
