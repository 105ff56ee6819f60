from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from coreason_devbox.config import DevboxConfig
from coreason_devbox.models import CommandResult, FileEntry
from coreason_devbox.runtime import SandboxRuntime
from coreason_devbox.store import SQLiteRecordStore

SANDBOX_ID = "sbx-test-1"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def config(tmp_path: Path) -> DevboxConfig:
    return DevboxConfig(
        e2b_api_key="test_key",
        database_path=str(tmp_path / "devbox.db"),
        launch_grace_period=0.0,
        retry_backoff_max=0.0,
        probe_backoff_max=0.0,
        probe_attempts=1,
        verify_server_url=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> SQLiteRecordStore:
    return SQLiteRecordStore(tmp_path / "devbox.db", grace_window=900.0, clock=clock)


@pytest.fixture
def mock_runtime() -> Any:
    runtime = MagicMock(spec=SandboxRuntime)
    runtime.sandbox_id = SANDBOX_ID
    runtime.start = AsyncMock(return_value=SANDBOX_ID)
    runtime.attach = AsyncMock()
    runtime.run_command = AsyncMock(return_value=CommandResult(stdout="", stderr="", exit_code=0))
    runtime.start_background = AsyncMock(return_value=42)
    runtime.is_process_running = AsyncMock(return_value=True)
    runtime.exists = AsyncMock(return_value=True)
    runtime.read_file = AsyncMock(return_value='{"scripts": {"dev": "vite"}}')
    runtime.list_dir = AsyncMock(return_value=[])
    runtime.expose_port = AsyncMock(return_value=f"https://3000-{SANDBOX_ID}.e2b.app")
    runtime.terminate = AsyncMock()
    return runtime


@pytest.fixture
def runtime_factory(mock_runtime: Any) -> MagicMock:
    return MagicMock(return_value=mock_runtime)


def file_tree(root: str, tree: dict[str, Any]) -> dict[str, list[FileEntry]]:
    """Flatten a nested dict (None = file, dict = directory) into list_dir answers per path."""
    listing: dict[str, list[FileEntry]] = {}

    def _add(path: str, node: dict[str, Any]) -> None:
        entries = []
        for name, child in node.items():
            child_path = f"{path}/{name}"
            entries.append(FileEntry(name=name, path=child_path, is_dir=child is not None))
            if child is not None:
                _add(child_path, child)
        listing[path] = entries

    _add(root, tree)
    return listing
