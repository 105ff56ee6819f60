# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

"""Dev Server Launch Step: start the project's dev script and find its public URL."""

import asyncio
import json
import posixpath
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from coreason_devbox.config import DevboxConfig
from coreason_devbox.exceptions import LaunchWarning, RemoteTransientError
from coreason_devbox.models import ProjectInfo
from coreason_devbox.retry import call_with_retry
from coreason_devbox.runtime import SandboxRuntime

# Checked in order; the first script present wins.
SCRIPT_COMMANDS: tuple[tuple[str, str], ...] = (
    ("dev", "npm run dev"),
    ("start", "npm start"),
    ("serve", "npm run serve"),
)


def select_dev_command(package_data: dict[str, Any]) -> str | None:
    scripts = package_data.get("scripts") or {}
    if not isinstance(scripts, dict):
        return None
    for script, command in SCRIPT_COMMANDS:
        if script in scripts:
            return command
    return None


@dataclass
class LaunchOutcome:
    server_url: str | None = None
    warning: str | None = None


class ServerProbe:
    """HTTP reachability check for a freshly launched dev server.

    Connection errors and 5xx answers (the sandbox proxy's reply while nothing
    listens on the port) are retried with backoff; anything else counts as up.
    """

    def __init__(
        self,
        attempts: int = 5,
        timeout: float = 5.0,
        backoff_max: float = 4.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.attempts = attempts
        self.timeout = timeout
        self.backoff_max = backoff_max
        self._client = client

    async def _check(self, client: httpx.AsyncClient, url: str) -> None:
        response = await client.get(url, timeout=self.timeout)
        if response.status_code >= 500:
            raise RemoteTransientError(f"{url} answered {response.status_code}")

    async def is_reachable(self, url: str) -> bool:
        try:
            if self._client is not None:
                await call_with_retry(
                    self._check, self._client, url, attempts=self.attempts, backoff_max=self.backoff_max
                )
            else:
                async with httpx.AsyncClient(follow_redirects=True) as client:
                    await call_with_retry(
                        self._check, client, url, attempts=self.attempts, backoff_max=self.backoff_max
                    )
        except (httpx.HTTPError, RemoteTransientError) as e:
            logger.info(f"Dev server not reachable at {url}: {e}")
            return False
        return True


class LaunchStep:
    """Starts the first matching run script in the background.

    Server startup is best-effort: every failure is reported as a warning and
    the server URL is left empty.
    """

    def __init__(self, config: DevboxConfig, probe: ServerProbe | None = None):
        self.config = config
        self.probe = probe or ServerProbe(
            attempts=config.probe_attempts,
            timeout=config.probe_timeout,
            backoff_max=config.probe_backoff_max,
        )

    async def run(self, runtime: SandboxRuntime, project_info: ProjectInfo) -> LaunchOutcome:
        if not project_info.has_package_json:
            return LaunchOutcome()

        try:
            server_url = await self._launch(runtime, project_info)
        except LaunchWarning as warning:
            logger.info(f"Dev server not started: {warning}")
            return LaunchOutcome(warning=str(warning))
        except Exception as e:
            logger.warning(f"Could not start dev server: {e}")
            return LaunchOutcome(warning=f"Could not start dev server: {e}")
        return LaunchOutcome(server_url=server_url)

    async def _launch(self, runtime: SandboxRuntime, project_info: ProjectInfo) -> str | None:
        manifest = await runtime.read_file(posixpath.join(project_info.project_path, "package.json"))
        command = select_dev_command(json.loads(manifest))
        if command is None:
            raise LaunchWarning("No dev script found in package.json")

        logger.info(f"Starting server with: {command}")
        pid = await runtime.start_background(command, cwd=project_info.project_path)

        await asyncio.sleep(self.config.launch_grace_period)
        if not await runtime.is_process_running(pid):
            raise LaunchWarning(f"Server failed to start: '{command}' exited")

        if not self.config.verify_server_url:
            return await self.derive_url(runtime)
        return await self._first_reachable_url(runtime)

    async def derive_url(self, runtime: SandboxRuntime) -> str | None:
        """URL of the primary port, else the first fallback port that resolves.

        If nothing resolves, the primary port's (falsy) answer is returned as None.
        """
        primary_port, *fallback_ports = self.config.dev_server_ports
        primary = await runtime.expose_port(primary_port)
        if primary:
            return primary
        for port in fallback_ports:
            url = await runtime.expose_port(port)
            if url:
                return url
        return primary or None

    async def _first_reachable_url(self, runtime: SandboxRuntime) -> str:
        candidates = []
        for port in self.config.dev_server_ports:
            url = await runtime.expose_port(port)
            if url:
                candidates.append(url)

        if not candidates:
            raise LaunchWarning("Sandbox did not expose a dev server port")

        for url in candidates:
            if await self.probe.is_reachable(url):
                logger.info(f"Development server reachable at {url}")
                return url

        raise LaunchWarning(f"Dev server started but did not respond on {', '.join(candidates)}")
