# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

from pydantic import BaseModel


class CommandResult(BaseModel):
    """Represents the result of a shell command run inside the sandbox.

    Attributes:
        stdout: Standard output captured from the command.
        stderr: Standard error captured from the command.
        exit_code: The exit code of the process (0 for success).
        execution_duration: The duration of the command in seconds.
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int
    execution_duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class FileEntry(BaseModel):
    """A directory entry inside the sandbox filesystem."""

    name: str
    path: str
    is_dir: bool = False
