# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

"""
coreason-devbox
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import DevboxConfig
from .exceptions import (
    CloneFailure,
    DevboxError,
    InvalidTransitionError,
    RemoteProvisionError,
    SandboxBusyError,
    SandboxNotFoundError,
    ValidationError,
)
from .factory import SandboxFactory
from .models import CloneRequest, CloneResponse, ProjectInfo, SandboxRecord, SandboxStatus
from .orchestrator import SandboxOrchestrator
from .reaper import IdleReaper
from .runtime import SandboxRuntime
from .runtimes.e2b import E2BRuntime
from .service import DevboxService
from .store import SQLiteRecordStore

__all__ = [
    "CloneFailure",
    "CloneRequest",
    "CloneResponse",
    "DevboxConfig",
    "DevboxError",
    "DevboxService",
    "E2BRuntime",
    "IdleReaper",
    "InvalidTransitionError",
    "ProjectInfo",
    "RemoteProvisionError",
    "SQLiteRecordStore",
    "SandboxBusyError",
    "SandboxFactory",
    "SandboxNotFoundError",
    "SandboxOrchestrator",
    "SandboxRecord",
    "SandboxRuntime",
    "SandboxStatus",
    "ValidationError",
]
