# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

import asyncio
import time
from typing import Callable

from loguru import logger

from coreason_devbox.config import DevboxConfig
from coreason_devbox.exceptions import InvalidTransitionError, SandboxNotFoundError
from coreason_devbox.factory import SandboxFactory
from coreason_devbox.models import SandboxRecord, SandboxStatus, UsageType
from coreason_devbox.runtime import SandboxRuntime
from coreason_devbox.store import RecordStore

RuntimeFactory = Callable[[DevboxConfig], SandboxRuntime]


async def close_remote_sandbox(config: DevboxConfig, runtime_factory: RuntimeFactory, sandbox_id: str) -> bool:
    """Best-effort kill of a remote sandbox by id.

    Returns:
        bool: False if the sandbox could not be reached. Never raises.
    """
    runtime = runtime_factory(config)
    try:
        await runtime.attach(sandbox_id)
    except SandboxNotFoundError:
        logger.info(f"Remote sandbox {sandbox_id} already gone")
        return True
    except Exception as e:
        logger.warning(f"Could not reach remote sandbox {sandbox_id} to close it: {e}")
        return False
    await runtime.terminate()
    return True


async def track_sandbox_time(store: RecordStore, record: SandboxRecord, stopped_at: float) -> None:
    """Record a stopped sandbox's lifetime as ``sandbox_hours`` usage."""
    minutes = max(0.0, stopped_at - record.started_at) / 60
    try:
        await store.track_usage(
            record.owner_id,
            UsageType.SANDBOX_HOURS,
            minutes / 60,
            {"sandboxId": record.sandbox_id, "minutes": round(minutes, 2)},
        )
    except Exception as e:
        logger.warning(f"Failed to record usage for sandbox {record.sandbox_id}: {e}")


class IdleReaper:
    """Stops running sandboxes whose auto-stop deadline has passed.

    The only actor that moves a record from ``running`` to ``stopped`` without
    a user request. The remote close is attempted first and its failure never
    prevents the record from being marked ``stopped``.
    """

    def __init__(
        self,
        config: DevboxConfig,
        store: RecordStore,
        runtime_factory: RuntimeFactory = SandboxFactory.get_runtime,
        clock: Callable[[], float] = time.time,
        is_busy: Callable[[str], bool] | None = None,
    ):
        self.config = config
        self.store = store
        self.runtime_factory = runtime_factory
        self.clock = clock
        # Sandboxes a pipeline currently holds are skipped until the next sweep.
        self.is_busy = is_busy or (lambda sandbox_id: False)
        self._reaper_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._reaper_task is not None and not self._reaper_task.done()

    async def sweep(self, now: float | None = None) -> list[str]:
        """Stop every expired running sandbox.

        Args:
            now: Reference time (epoch seconds). Defaults to the clock.

        Returns:
            list[str]: Ids of the sandboxes marked ``stopped``.
        """
        now = self.clock() if now is None else now
        expired = await self.store.list_expired(now)
        stopped: list[str] = []

        for record in expired:
            sandbox_id = record.sandbox_id
            if self.is_busy(sandbox_id):
                logger.info(f"Sandbox {sandbox_id} has an operation in progress; not reaping")
                continue
            try:
                # Re-read: the sandbox may have been touched or stopped since the listing.
                current = await self.store.get(sandbox_id)
            except SandboxNotFoundError:
                logger.info(f"Sandbox {sandbox_id} vanished before it could be reaped")
                continue
            if current.status is not SandboxStatus.RUNNING or current.auto_stop_at >= now:
                continue

            logger.info(f"Sandbox {sandbox_id} idle past its deadline. Terminating.")
            await close_remote_sandbox(self.config, self.runtime_factory, sandbox_id)

            try:
                await self.store.set_status(sandbox_id, SandboxStatus.STOPPED)
            except (SandboxNotFoundError, InvalidTransitionError) as e:
                logger.warning(f"Could not mark sandbox {sandbox_id} stopped: {e}")
                continue

            await track_sandbox_time(self.store, current, now)
            stopped.append(sandbox_id)

        if stopped:
            logger.info(f"Idle reaper stopped {len(stopped)} sandbox(es)")
        return stopped

    def start(self) -> None:
        """Start the background sweep task if it is not already running."""
        if not self.running:
            self._reaper_task = asyncio.create_task(self._reaper_loop())

    async def _reaper_loop(self) -> None:
        """Background task: sweep every ``reaper_interval`` seconds until cancelled."""
        logger.info("Idle reaper started")
        try:
            while True:
                await asyncio.sleep(self.config.reaper_interval)
                try:
                    await self.sweep()
                    await self.store.purge_orphans()
                except Exception as e:
                    logger.error(f"Idle reaper sweep failed: {e}")
        except asyncio.CancelledError:
            logger.info("Idle reaper cancelled")

    async def shutdown(self) -> None:
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
        self._reaper_task = None
