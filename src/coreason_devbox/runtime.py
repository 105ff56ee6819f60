# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

from abc import ABC, abstractmethod

from coreason_devbox.models import CommandResult, FileEntry


class SandboxRuntime(ABC):
    """
    Abstract base class for remote sandbox handles (e.g., E2B).
    Follows the Strategy Pattern.

    One instance drives at most one remote sandbox, identified by ``sandbox_id``.
    """

    @property
    @abstractmethod
    def sandbox_id(self) -> str | None:
        """Identifier issued by the provider, or None before start/attach."""
        pass  # pragma: no cover

    @abstractmethod
    async def start(self) -> str:
        """Create a new remote sandbox.

        Returns:
            str: The provider-issued sandbox id.

        Raises:
            RemoteProvisionError: If the sandbox could not be created.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def attach(self, sandbox_id: str) -> None:
        """Reconnect to an existing remote sandbox.

        Args:
            sandbox_id: The provider-issued id of the sandbox.

        Raises:
            SandboxNotFoundError: If the id is stale (sandbox already gone).
            RemoteProvisionError: If the provider could not be reached.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def run_command(self, command: str, cwd: str | None = None, timeout: float | None = None) -> CommandResult:
        """Run a shell command and wait for it.

        A non-zero exit is reported through ``CommandResult.exit_code``, not raised.

        Args:
            command: The shell command line.
            cwd: Working directory inside the sandbox.
            timeout: Seconds before the command is abandoned.

        Returns:
            CommandResult: Captured output and exit code.

        Raises:
            RuntimeError: If the sandbox is not started.
            CommandTimeoutError: If the command exceeds ``timeout``.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def start_background(self, command: str, cwd: str | None = None) -> int:
        """Launch a detached process.

        Returns:
            int: The process id inside the sandbox.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def is_process_running(self, pid: int) -> bool:
        """Check whether a process started with :meth:`start_background` is alive."""
        pass  # pragma: no cover

    @abstractmethod
    async def exists(self, path: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    async def read_file(self, path: str) -> str:
        """Read a text file from the sandbox.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def list_dir(self, path: str) -> list[FileEntry]:
        """List the direct children of a directory.

        Raises:
            FileNotFoundError: If the directory does not exist.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def expose_port(self, port: int) -> str | None:
        """Public URL for a port inside the sandbox, or None if unavailable."""
        pass  # pragma: no cover

    @abstractmethod
    async def terminate(self) -> None:
        """Kill and cleanup the sandbox environment.

        Stops the sandbox and releases any allocated resources.
        """
        pass  # pragma: no cover
