# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

import time
from typing import Any, Callable

from loguru import logger

from coreason_devbox.config import DevboxConfig
from coreason_devbox.exceptions import SandboxBusyError, ValidationError
from coreason_devbox.factory import SandboxFactory
from coreason_devbox.git_utils import RepositoryValidator, generate_project_name, parse_git_url
from coreason_devbox.models import CloneRequest, CloneResponse, SandboxRecord, SandboxStatus, ValidateRepositoryRequest
from coreason_devbox.orchestrator import SandboxOrchestrator
from coreason_devbox.reaper import IdleReaper, RuntimeFactory, close_remote_sandbox, track_sandbox_time
from coreason_devbox.store import SQLiteRecordStore


class DevboxService:
    """
    Owner-scoped facade over the orchestrator, the record store and the idle reaper.
    Starts the reaper lazily on first use.
    """

    def __init__(
        self,
        config: DevboxConfig | None = None,
        store: SQLiteRecordStore | None = None,
        runtime_factory: RuntimeFactory = SandboxFactory.get_runtime,
        validator: RepositoryValidator | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or DevboxConfig()
        self.clock = clock
        self.store = store or SQLiteRecordStore(self.config.database_path, self.config.auto_stop_grace, clock=clock)
        self.runtime_factory = runtime_factory
        self.orchestrator = SandboxOrchestrator(self.config, self.store, runtime_factory=runtime_factory)
        self.reaper = IdleReaper(
            self.config,
            self.store,
            runtime_factory=runtime_factory,
            clock=clock,
            is_busy=self.orchestrator.is_busy,
        )
        self.validator = validator or RepositoryValidator(
            api_url=self.config.github_api_url,
            timeout=self.config.github_timeout,
            retry_attempts=self.config.retry_attempts,
            retry_backoff_max=self.config.retry_backoff_max,
        )

    async def _start_reaper_if_needed(self) -> None:
        if not self.reaper.running:
            self.reaper.start()

    async def _owned_record(self, owner_id: str, sandbox_id: str) -> SandboxRecord:
        record = await self.store.get(sandbox_id)
        if record.owner_id != owner_id:
            logger.warning(f"Unauthorized access attempt to sandbox {sandbox_id} by {owner_id}")
            raise PermissionError("Sandbox belongs to another user")
        return record

    async def clone_repository(self, owner_id: str, request: CloneRequest | dict[str, Any]) -> CloneResponse:
        """
        Clone a repository into a sandbox and start its dev server.
        Accepts either a parsed request or a raw camelCase payload.
        """
        await self._start_reaper_if_needed()
        if not isinstance(request, CloneRequest):
            request = CloneRequest.from_payload(request)
        logger.info(f"Clone requested by {owner_id}: {request.git_url} (branch {request.branch})")
        return await self.orchestrator.clone_repository(request, owner_id)

    async def touch_sandbox(self, owner_id: str, sandbox_id: str) -> SandboxRecord:
        """Record activity, pushing the auto-stop deadline back by the grace window."""
        await self._start_reaper_if_needed()
        await self._owned_record(owner_id, sandbox_id)
        return await self.store.touch(sandbox_id)

    async def stop_sandbox(self, owner_id: str, sandbox_id: str) -> SandboxRecord:
        """
        Explicit user stop: best-effort remote close, then mark the record ``stopped``.
        Stopping an already stopped sandbox is a no-op.
        """
        await self._start_reaper_if_needed()
        record = await self._owned_record(owner_id, sandbox_id)
        if record.status is SandboxStatus.STOPPED:
            return record
        if self.orchestrator.is_busy(sandbox_id):
            raise SandboxBusyError(sandbox_id)
        if not record.is_active:
            raise ValidationError(f"Sandbox {sandbox_id} is {record.status.value} and cannot be stopped")

        await close_remote_sandbox(self.config, self.runtime_factory, sandbox_id)
        stopped = await self.store.set_status(sandbox_id, SandboxStatus.STOPPED)
        await track_sandbox_time(self.store, record, self.clock())
        logger.info(f"Sandbox {sandbox_id} stopped by {owner_id}")
        return stopped

    async def delete_sandbox(self, owner_id: str, sandbox_id: str) -> int:
        """
        Close the remote sandbox if it is still active, then delete the record and its children.

        Returns:
            int: The internal id of the deleted record.
        """
        await self._start_reaper_if_needed()
        record = await self._owned_record(owner_id, sandbox_id)
        if self.orchestrator.is_busy(sandbox_id):
            raise SandboxBusyError(sandbox_id)
        if record.is_active:
            await close_remote_sandbox(self.config, self.runtime_factory, sandbox_id)
            await track_sandbox_time(self.store, record, self.clock())
        removed = await self.store.delete(sandbox_id)
        logger.info(f"Sandbox {sandbox_id} deleted by {owner_id}")
        return removed

    async def get_sandbox(self, owner_id: str, sandbox_id: str) -> SandboxRecord:
        return await self._owned_record(owner_id, sandbox_id)

    async def list_sandboxes(self, owner_id: str, active_only: bool = False) -> list[SandboxRecord]:
        await self._start_reaper_if_needed()
        return await self.store.list_for_owner(owner_id, active_only=active_only)

    async def validate_repository(
        self, request: ValidateRepositoryRequest | dict[str, Any]
    ) -> dict[str, Any]:
        """
        Validate a repository before cloning.

        Raises:
            ValidationError: If the payload or the URL is malformed.
        """
        if not isinstance(request, ValidateRepositoryRequest):
            request = ValidateRepositoryRequest.from_payload(request)

        repo_info = parse_git_url(request.git_url)
        if not repo_info:
            raise ValidationError("Invalid Git URL format")

        validation = await self.validator.validate_repository(request.git_url, request.access_token)
        branches: list[str] = []
        if validation.exists:
            branches = await self.validator.get_branches(request.git_url, request.access_token)

        return {
            "valid": validation.exists,
            "owner": repo_info.owner,
            "name": repo_info.name,
            "isPrivate": validation.is_private,
            "defaultBranch": validation.default_branch,
            "branches": branches,
            "suggestedName": generate_project_name(request.git_url),
            "error": validation.error,
        }

    async def usage_summary(self, owner_id: str, since: float = 0.0) -> dict[str, float]:
        return await self.store.usage_summary(owner_id, since)

    async def shutdown(self) -> None:
        """Stop the reaper and release the HTTP client."""
        await self.reaper.shutdown()
        await self.validator.aclose()
        logger.info("Devbox service shut down")
