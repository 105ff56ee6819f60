# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

from loguru import logger

from coreason_devbox.config import DevboxConfig
from coreason_devbox.exceptions import BootstrapWarning, CommandTimeoutError
from coreason_devbox.models import ProjectInfo
from coreason_devbox.runtime import SandboxRuntime

INSTALL_COMMAND = "npm install"


class BootstrapStep:
    """Best-effort dependency install for Node.js projects.

    Never fails the pipeline: problems come back as a warning message.
    """

    def __init__(self, config: DevboxConfig):
        self.config = config

    async def run(self, runtime: SandboxRuntime, project_info: ProjectInfo) -> str | None:
        """Install dependencies if the project has a package manifest.

        Returns:
            str | None: A warning message, or None if nothing went wrong.
        """
        if not project_info.has_package_json:
            return None

        logger.info(f"Installing Node.js dependencies in {project_info.project_path}")
        try:
            await self._install(runtime, project_info)
        except BootstrapWarning as warning:
            logger.warning(f"Dependency bootstrap incomplete: {warning}")
            return str(warning)

        logger.info("Dependencies installed successfully")
        return None

    async def _install(self, runtime: SandboxRuntime, project_info: ProjectInfo) -> None:
        try:
            result = await runtime.run_command(
                INSTALL_COMMAND,
                cwd=project_info.project_path,
                timeout=self.config.install_timeout,
            )
        except CommandTimeoutError as e:
            raise BootstrapWarning("npm install timed out") from e
        except Exception as e:
            raise BootstrapWarning(f"Error installing dependencies: {e}") from e

        if not result.ok:
            raise BootstrapWarning(f"npm install failed: {result.stderr.strip()[-500:]}")
