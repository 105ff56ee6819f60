# src/coreason_devbox/models/__init__.py

"""
Data models for sandbox records, cloned projects and API payloads.
"""

from .execution import CommandResult, FileEntry
from .project import ProjectInfo
from .records import ACTIVE_STATUSES, ChatHistory, FileSnapshot, SandboxRecord, SandboxStatus, UsageType
from .requests import CloneRequest, CloneResponse, ValidateRepositoryRequest

__all__ = [
    "ACTIVE_STATUSES",
    "ChatHistory",
    "CloneRequest",
    "CloneResponse",
    "CommandResult",
    "FileEntry",
    "FileSnapshot",
    "ProjectInfo",
    "SandboxRecord",
    "SandboxStatus",
    "UsageType",
    "ValidateRepositoryRequest",
]
