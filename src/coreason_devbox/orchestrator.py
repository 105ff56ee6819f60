# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

"""Clone-and-bootstrap orchestration: provision -> clone -> bootstrap -> launch -> record."""

from collections.abc import Iterator
from contextlib import contextmanager

from loguru import logger

from coreason_devbox.config import DevboxConfig
from coreason_devbox.exceptions import (
    CloneFailure,
    DevboxError,
    RemoteProvisionError,
    SandboxBusyError,
    SandboxNotFoundError,
    ValidationError,
)
from coreason_devbox.factory import SandboxFactory
from coreason_devbox.models import CloneRequest, CloneResponse, SandboxRecord, SandboxStatus, UsageType
from coreason_devbox.pipeline import BootstrapStep, CloneStep, LaunchStep
from coreason_devbox.reaper import RuntimeFactory
from coreason_devbox.runtime import SandboxRuntime
from coreason_devbox.store import RecordStore


class SandboxOrchestrator:
    """Runs the clone pipeline for one request, keeping the record store in step.

    Steps run strictly in order. Clone failures abort the pipeline, mark the
    record ``error`` and close the sandbox; bootstrap and launch problems are
    downgraded to warnings. Only one pipeline may target a given sandbox id
    at a time.
    """

    def __init__(
        self,
        config: DevboxConfig,
        store: RecordStore,
        runtime_factory: RuntimeFactory = SandboxFactory.get_runtime,
        clone_step: CloneStep | None = None,
        bootstrap_step: BootstrapStep | None = None,
        launch_step: LaunchStep | None = None,
    ):
        self.config = config
        self.store = store
        self.runtime_factory = runtime_factory
        self.clone_step = clone_step or CloneStep(config)
        self.bootstrap_step = bootstrap_step or BootstrapStep(config)
        self.launch_step = launch_step or LaunchStep(config)
        self._in_flight: set[str] = set()

    @contextmanager
    def _claim(self, sandbox_id: str) -> Iterator[None]:
        if sandbox_id in self._in_flight:
            raise SandboxBusyError(sandbox_id)
        self._in_flight.add(sandbox_id)
        try:
            yield
        finally:
            self._in_flight.discard(sandbox_id)

    def is_busy(self, sandbox_id: str) -> bool:
        return sandbox_id in self._in_flight

    async def clone_repository(self, request: CloneRequest, owner_id: str) -> CloneResponse:
        """Clone ``request.git_url`` into a new or reused sandbox and start its dev server.

        Args:
            request: The validated clone request.
            owner_id: The caller; becomes the owner of a newly created sandbox.

        Returns:
            CloneResponse: Project summary, optional server URL and warnings.

        Raises:
            ValidationError: If the owner is missing or a reused sandbox is no longer active.
            PermissionError: If a reused sandbox belongs to another owner.
            SandboxBusyError: If another pipeline is running against the reused sandbox.
            RemoteProvisionError: If the sandbox cannot be created or attached.
            CloneFailure: If the clone or its inspection fails.
            DevboxError: For any other failure, with internal details withheld.
        """
        if not owner_id:
            raise ValidationError("Owner id is required")

        if request.sandbox_id:
            with self._claim(request.sandbox_id):
                runtime = await self._attach_existing(request, owner_id)
                return await self._run_pipeline(runtime, request.sandbox_id, request, owner_id)

        runtime = await self._provision_new(request, owner_id)
        sandbox_id = str(runtime.sandbox_id)
        with self._claim(sandbox_id):
            return await self._run_pipeline(runtime, sandbox_id, request, owner_id)

    async def _provision_new(self, request: CloneRequest, owner_id: str) -> SandboxRuntime:
        runtime = self.runtime_factory(self.config)
        sandbox_id = await runtime.start()
        try:
            await self.store.create(
                owner_id,
                sandbox_id,
                request.project_name,
                project_id=request.project_id,
                is_temporary=request.is_temporary,
            )
        except Exception as e:
            logger.error(f"Could not record sandbox {sandbox_id}; releasing it: {e}")
            await runtime.terminate()
            raise RemoteProvisionError("Failed to register the new sandbox") from e
        return runtime

    async def _attach_existing(self, request: CloneRequest, owner_id: str) -> SandboxRuntime:
        sandbox_id = str(request.sandbox_id)
        record: SandboxRecord | None
        try:
            record = await self.store.get(sandbox_id)
        except SandboxNotFoundError:
            record = None

        if record is not None:
            if record.owner_id != owner_id:
                logger.warning(f"Unauthorized access attempt to sandbox {sandbox_id} by {owner_id}")
                raise PermissionError("Sandbox belongs to another user")
            if not record.is_active:
                raise ValidationError(f"Sandbox {sandbox_id} is {record.status.value}; create a new sandbox instead")

        runtime = self.runtime_factory(self.config)
        try:
            await runtime.attach(sandbox_id)
        except SandboxNotFoundError as e:
            if record is not None:
                await self._mark_error(sandbox_id)
            raise RemoteProvisionError(f"Sandbox {sandbox_id} is no longer available") from e

        if record is None:
            await self.store.create(
                owner_id,
                sandbox_id,
                request.project_name,
                project_id=request.project_id,
                is_temporary=request.is_temporary,
            )
        else:
            await self.store.touch(sandbox_id)
        return runtime

    async def _run_pipeline(
        self, runtime: SandboxRuntime, sandbox_id: str, request: CloneRequest, owner_id: str
    ) -> CloneResponse:
        try:
            project_info = await self.clone_step.run(runtime, request)
            bootstrap_warning = await self.bootstrap_step.run(runtime, project_info)
            launch = await self.launch_step.run(runtime, project_info)
            await self.store.set_status(sandbox_id, SandboxStatus.RUNNING, url=launch.server_url)
        except CloneFailure as e:
            logger.warning(f"Clone failed in sandbox {sandbox_id}: {e}")
            await self._abort(runtime, sandbox_id)
            raise
        except DevboxError as e:
            logger.error(f"Clone pipeline aborted for sandbox {sandbox_id}: {e}")
            await self._abort(runtime, sandbox_id)
            raise
        except Exception as e:
            logger.opt(exception=e).error(f"Clone operation failed for sandbox {sandbox_id}")
            await self._abort(runtime, sandbox_id)
            raise DevboxError("Clone operation failed") from e

        await self._track_clone(owner_id, request)
        warnings = [warning for warning in (bootstrap_warning, launch.warning) if warning]
        return CloneResponse(
            sandbox_id=sandbox_id,
            project_name=request.project_name,
            project_info=project_info,
            server_url=launch.server_url,
            message=f"Repository '{request.git_url}' cloned successfully!",
            warnings=warnings,
        )

    async def _mark_error(self, sandbox_id: str) -> None:
        try:
            await self.store.set_status(sandbox_id, SandboxStatus.ERROR)
        except Exception as e:
            logger.warning(f"Could not mark sandbox {sandbox_id} as error: {e}")

    async def _abort(self, runtime: SandboxRuntime, sandbox_id: str) -> None:
        await self._mark_error(sandbox_id)
        await runtime.terminate()

    async def _track_clone(self, owner_id: str, request: CloneRequest) -> None:
        try:
            await self.store.track_usage(
                owner_id,
                UsageType.GIT_OPERATIONS,
                1,
                {"operation": "clone", "gitUrl": request.git_url, "projectId": request.project_id},
            )
        except Exception as e:
            logger.warning(f"Failed to record clone usage: {e}")
