import asyncio
import os
import time
from typing import Any, Callable, TypeVar

import httpx
from e2b import AuthenticationException, CommandExitException, FileType, NotFoundException, TimeoutException
from e2b_code_interpreter import Sandbox as E2BSandbox
from loguru import logger

from coreason_devbox.exceptions import (
    CommandTimeoutError,
    RemoteAuthError,
    RemoteProvisionError,
    RemoteTransientError,
    SandboxNotFoundError,
)
from coreason_devbox.models import CommandResult, FileEntry
from coreason_devbox.retry import call_with_retry
from coreason_devbox.runtime import SandboxRuntime

T = TypeVar("T")

# Slack on top of the SDK's own command timeout before the thread is abandoned.
_DEADLINE_SLACK = 30.0


class E2BRuntime(SandboxRuntime):
    """E2B Cloud implementation of the SandboxRuntime.

    Uses E2B cloud-based microVMs. The blocking SDK is driven from worker threads.
    """

    def __init__(
        self,
        api_key: str | None = None,
        template: str | None = None,
        sandbox_timeout: int = 900,
        retry_attempts: int = 3,
        retry_backoff_max: float = 8.0,
    ):
        """Initializes the E2BRuntime.

        Args:
            api_key: E2B API Key. Defaults to E2B_API_KEY env var.
            template: E2B template ID to use (default: the provider's base image).
            sandbox_timeout: Remote idle timeout in seconds.
            retry_attempts: Attempts per SDK call on transient transport errors.
            retry_backoff_max: Upper bound in seconds for a single retry wait.
        """
        self.api_key = api_key or os.getenv("E2B_API_KEY")
        self.template = template
        self.sandbox_timeout = sandbox_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff_max = retry_backoff_max
        self.sandbox: E2BSandbox | None = None

    @property
    def sandbox_id(self) -> str | None:
        return self.sandbox.sandbox_id if self.sandbox else None

    def _require_sandbox(self) -> E2BSandbox:
        if not self.sandbox:
            raise RuntimeError("Sandbox not started")
        return self.sandbox

    async def _run_sdk_command(
        self, func: Callable[..., T], *args: Any, deadline: float | None = None, **kwargs: Any
    ) -> T:
        """Helper to run an SDK call in a thread, retrying transient transport failures.

        Args:
            func: The SDK function to call.
            *args: Positional arguments for the function.
            deadline: Optional seconds after which the call is abandoned.
            **kwargs: Keyword arguments for the function.

        Returns:
            T: The result of the function call.

        Raises:
            asyncio.TimeoutError: If ``deadline`` elapses.
            RemoteTransientError: If the transport keeps failing after all attempts.
        """

        async def _attempt() -> T:
            try:
                call = asyncio.to_thread(func, *args, **kwargs)
                if deadline is None:
                    return await call
                return await asyncio.wait_for(call, timeout=deadline)
            except (httpx.TransportError, ConnectionError) as e:
                raise RemoteTransientError(str(e)) from e

        return await call_with_retry(_attempt, attempts=self.retry_attempts, backoff_max=self.retry_backoff_max)

    async def start(self) -> str:
        """Boot the environment.

        If a session is already active, it is terminated first.

        Raises:
            RemoteAuthError: If the API key is rejected.
            RemoteProvisionError: If the sandbox fails to start.
        """
        if self.sandbox:
            logger.warning("E2B sandbox already running. Terminating old session before restart.")
            await self.terminate()

        logger.info(f"Starting E2B sandbox (template: {self.template or 'default'})")
        try:
            self.sandbox = await self._run_sdk_command(
                E2BSandbox.create,
                template=self.template,
                timeout=self.sandbox_timeout,
                api_key=self.api_key,
            )
        except AuthenticationException as e:
            logger.error(f"E2B rejected credentials: {e}")
            raise RemoteAuthError("Sandbox provider rejected the API key") from e
        except Exception as e:
            logger.error(f"Failed to start E2B sandbox: {e}")
            raise RemoteProvisionError(f"Failed to create sandbox: {e}") from e

        sandbox = self._require_sandbox()
        logger.info(f"E2B sandbox started: {sandbox.sandbox_id}")
        return str(sandbox.sandbox_id)

    async def attach(self, sandbox_id: str) -> None:
        logger.info(f"Connecting to E2B sandbox: {sandbox_id}")
        try:
            self.sandbox = await self._run_sdk_command(E2BSandbox.connect, sandbox_id, api_key=self.api_key)
        except NotFoundException as e:
            logger.warning(f"E2B sandbox {sandbox_id} no longer exists")
            raise SandboxNotFoundError(sandbox_id) from e
        except AuthenticationException as e:
            raise RemoteAuthError("Sandbox provider rejected the API key") from e
        except Exception as e:
            logger.error(f"Failed to connect to E2B sandbox {sandbox_id}: {e}")
            raise RemoteProvisionError(f"Failed to connect to sandbox {sandbox_id}: {e}") from e

    async def run_command(self, command: str, cwd: str | None = None, timeout: float | None = None) -> CommandResult:
        sandbox = self._require_sandbox()
        command_timeout = timeout if timeout is not None else 60.0
        start_time = time.time()
        try:
            result = await self._run_sdk_command(
                sandbox.commands.run,
                command,
                cwd=cwd,
                timeout=command_timeout,
                deadline=command_timeout + _DEADLINE_SLACK,
            )
        except CommandExitException as e:
            return CommandResult(
                stdout=e.stdout or "",
                stderr=e.stderr or "",
                exit_code=e.exit_code,
                execution_duration=time.time() - start_time,
            )
        except (TimeoutException, asyncio.TimeoutError) as e:
            logger.warning(f"Command timed out after {command_timeout}s in sandbox {sandbox.sandbox_id}")
            raise CommandTimeoutError(f"Command exceeded {command_timeout} seconds limit.") from e

        return CommandResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            exit_code=result.exit_code,
            execution_duration=time.time() - start_time,
        )

    async def start_background(self, command: str, cwd: str | None = None) -> int:
        sandbox = self._require_sandbox()
        handle = await self._run_sdk_command(sandbox.commands.run, command, cwd=cwd, background=True)
        return int(handle.pid)

    async def is_process_running(self, pid: int) -> bool:
        sandbox = self._require_sandbox()
        processes = await self._run_sdk_command(sandbox.commands.list)
        return any(process.pid == pid for process in processes)

    async def exists(self, path: str) -> bool:
        sandbox = self._require_sandbox()
        return bool(await self._run_sdk_command(sandbox.files.exists, path))

    async def read_file(self, path: str) -> str:
        sandbox = self._require_sandbox()
        try:
            return str(await self._run_sdk_command(sandbox.files.read, path))
        except NotFoundException as e:
            raise FileNotFoundError(f"Remote file not found: {path}") from e

    async def list_dir(self, path: str) -> list[FileEntry]:
        sandbox = self._require_sandbox()
        try:
            entries = await self._run_sdk_command(sandbox.files.list, path)
        except NotFoundException as e:
            raise FileNotFoundError(f"Remote directory not found: {path}") from e
        return [FileEntry(name=entry.name, path=entry.path, is_dir=entry.type == FileType.DIR) for entry in entries]

    async def expose_port(self, port: int) -> str | None:
        sandbox = self._require_sandbox()
        host = sandbox.get_host(port)
        return f"https://{host}" if host else None

    async def terminate(self) -> None:
        """Kill and cleanup the sandbox environment.

        Kills the E2B sandbox. Failures are logged, never raised.
        """
        if self.sandbox:
            logger.info(f"Terminating E2B sandbox: {self.sandbox.sandbox_id}")
            try:
                await self._run_sdk_command(self.sandbox.kill)
            except Exception as e:
                logger.warning(f"Error terminating E2B sandbox: {e}")
            finally:
                self.sandbox = None
        else:
            logger.warning("Attempted to terminate non-existent E2B sandbox")
