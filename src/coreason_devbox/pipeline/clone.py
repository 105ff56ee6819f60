# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

"""Git Clone Step: clone a repository into the sandbox and inspect the result."""

import posixpath
import shlex
from collections import deque
from urllib.parse import quote

from loguru import logger

from coreason_devbox.config import DevboxConfig
from coreason_devbox.exceptions import CloneFailure, CommandTimeoutError
from coreason_devbox.git_utils import create_authenticated_git_url
from coreason_devbox.models import CloneRequest, FileEntry, ProjectInfo
from coreason_devbox.runtime import SandboxRuntime
from coreason_devbox.utils.logger import redact_credentials

PACKAGE_MANIFEST = "package.json"
REQUIREMENTS_FILE = "requirements.txt"
CONTAINER_DESCRIPTOR = "Dockerfile"
VCS_DIRECTORY = ".git"


def _scrub(text: str, secret: str | None) -> str:
    if secret:
        text = text.replace(secret, "***").replace(quote(secret, safe=""), "***")
    return redact_credentials(text)


class CloneStep:
    """Clones ``request.git_url`` into ``<workspace_root>/<project_name>``."""

    def __init__(self, config: DevboxConfig):
        self.config = config

    def project_path(self, request: CloneRequest) -> str:
        return posixpath.join(self.config.workspace_root, request.project_name)

    def build_command(self, request: CloneRequest) -> str:
        """Shell command for the clone. Embeds the token for private repositories."""
        git_url = request.git_url
        if request.is_private and request.access_token:
            git_url = create_authenticated_git_url(git_url, request.access_token)

        parts = ["git", "clone"]
        if request.is_private:
            parts.append("-q")
        parts += ["-b", request.branch, git_url, self.project_path(request)]
        return shlex.join(parts)

    async def run(self, runtime: SandboxRuntime, request: CloneRequest) -> ProjectInfo:
        """Clone and inspect.

        The exit code and the inspection are independent checks; both must pass.

        Raises:
            CloneFailure: On non-zero exit, timeout, missing directory or inspection error.
        """
        logger.info(f"Cloning repository: {request.git_url} (branch: {request.branch})")
        try:
            result = await runtime.run_command(
                self.build_command(request),
                cwd=self.config.workspace_root,
                timeout=self.config.clone_timeout,
            )
        except CommandTimeoutError as e:
            raise CloneFailure("Clone operation timed out") from e

        if not result.ok:
            reason = _scrub(result.stderr.strip(), request.access_token) or f"exit code {result.exit_code}"
            raise CloneFailure(f"Git clone failed: {reason}")

        return await self.inspect(runtime, self.project_path(request))

    async def inspect(self, runtime: SandboxRuntime, project_path: str) -> ProjectInfo:
        """Build the file manifest and detect well-known project files.

        Raises:
            CloneFailure: If the directory is missing or cannot be walked.
        """
        try:
            if not await runtime.exists(project_path):
                raise CloneFailure("Project directory not found")
            top_level = await runtime.list_dir(project_path)
            files = await self._walk(runtime, project_path, top_level)
        except CloneFailure:
            raise
        except Exception as e:
            raise CloneFailure(f"Failed to inspect project: {e}") from e

        top_level_files = {entry.name for entry in top_level if not entry.is_dir}
        return ProjectInfo(
            project_path=project_path,
            file_count=len(files),
            files=files[: self.config.manifest_limit],
            has_package_json=PACKAGE_MANIFEST in top_level_files,
            has_requirements=REQUIREMENTS_FILE in top_level_files,
            has_dockerfile=CONTAINER_DESCRIPTOR in top_level_files,
            has_readme=any(name.lower().startswith("readme") for name in top_level_files),
        )

    async def _walk(self, runtime: SandboxRuntime, project_path: str, top_level: list[FileEntry]) -> list[str]:
        # Breadth-first; stops as soon as walk_limit files are collected.
        limit = self.config.walk_limit
        files: list[str] = []
        directories: deque[str] = deque([project_path])

        while directories and len(files) < limit:
            directory = directories.popleft()
            entries = top_level if directory == project_path else await runtime.list_dir(directory)
            for entry in sorted(entries, key=lambda e: e.name):
                if entry.is_dir:
                    if entry.name != VCS_DIRECTORY:
                        directories.append(entry.path)
                    continue
                files.append(posixpath.relpath(entry.path, project_path))
                if len(files) >= limit:
                    break
        return files
