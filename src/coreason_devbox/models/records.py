# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

"""Lifecycle record models."""

from enum import Enum
from typing import Any

from pydantic import Field

from coreason_devbox.models.base import CamelModel


class SandboxStatus(str, Enum):
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"

    def can_transition_to(self, target: "SandboxStatus") -> bool:
        """Forward-only: creating -> running -> stopped, error from anywhere.

        Re-asserting ``running`` on a running record is allowed; ``stopped``
        and ``error`` are terminal.
        """
        if target is SandboxStatus.ERROR:
            return self is not SandboxStatus.ERROR
        return target in _FORWARD[self]


_FORWARD: dict[SandboxStatus, frozenset[SandboxStatus]] = {
    SandboxStatus.CREATING: frozenset({SandboxStatus.RUNNING, SandboxStatus.STOPPED}),
    SandboxStatus.RUNNING: frozenset({SandboxStatus.RUNNING, SandboxStatus.STOPPED}),
    SandboxStatus.STOPPED: frozenset(),
    SandboxStatus.ERROR: frozenset(),
}

ACTIVE_STATUSES = (SandboxStatus.CREATING, SandboxStatus.RUNNING)


class SandboxRecord(CamelModel):
    """Durable record of one provisioned remote sandbox.

    Attributes:
        id: Internal record id. Child records reference it.
        sandbox_id: Identifier issued by the remote provider. Unique.
        owner_id: The exclusive owner.
        project_id: Optional weak reference to a saved project.
        name: Display name (the project directory for cloned repositories).
        status: Lifecycle status.
        url: Externally reachable dev server address, once confirmed.
        started_at: Creation time (epoch seconds). Never changes.
        last_active_at: Last observed activity (epoch seconds).
        auto_stop_at: Deadline after which the reaper may stop the sandbox.
        is_temporary: Throwaway sandbox not tied to a saved project.
    """

    id: int
    sandbox_id: str
    owner_id: str
    project_id: str | None = None
    name: str
    status: SandboxStatus
    url: str | None = None
    started_at: float
    last_active_at: float
    auto_stop_at: float
    is_temporary: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class UsageType(str, Enum):
    SANDBOX_HOURS = "sandbox_hours"
    GIT_OPERATIONS = "git_operations"


class FileSnapshot(CamelModel):
    id: int
    sandbox_ref: int
    project_id: str | None = None
    file_path: str
    content: str
    hash: str
    size: int
    created_at: float


class ChatHistory(CamelModel):
    id: int
    sandbox_ref: int
    owner_id: str
    session_id: str
    messages: list[dict[str, Any]] = Field(default_factory=list)
    created_at: float
    updated_at: float
