# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

"""Error taxonomy for the devbox orchestrator."""


class DevboxError(Exception):
    """Base class for all devbox errors."""


class ValidationError(DevboxError):
    """Malformed input. Raised before any remote call is made."""

    def __init__(self, message: str, details: list[dict[str, str]] | None = None):
        super().__init__(message)
        self.details = details or []


class RemoteProvisionError(DevboxError):
    """The remote sandbox could not be created or attached."""


class RemoteAuthError(RemoteProvisionError):
    """The sandbox provider rejected the credentials."""


class CloneFailure(DevboxError):
    """The clone command failed, timed out, or the cloned tree could not be inspected."""


class SandboxNotFoundError(DevboxError):
    """No record (or no remote sandbox) matches the given sandbox id."""

    def __init__(self, sandbox_id: str):
        super().__init__(f"Sandbox not found: {sandbox_id}")
        self.sandbox_id = sandbox_id


NotFound = SandboxNotFoundError


class InvalidTransitionError(DevboxError):
    """A status change that would move a record backwards."""

    def __init__(self, sandbox_id: str, current: str, requested: str):
        super().__init__(f"Sandbox {sandbox_id} cannot move from '{current}' to '{requested}'")
        self.sandbox_id = sandbox_id
        self.current = current
        self.requested = requested


class SandboxBusyError(DevboxError):
    """Another pipeline is already running against this sandbox."""

    def __init__(self, sandbox_id: str):
        super().__init__(f"Sandbox {sandbox_id} already has an operation in progress")
        self.sandbox_id = sandbox_id


class CommandTimeoutError(DevboxError, TimeoutError):
    """A remote command exceeded its timeout."""


class RemoteTransientError(DevboxError):
    """A remote call failed in a way that is worth retrying (network, transport)."""


class BootstrapWarning(DevboxError):
    """Dependency installation failed. Never fatal."""


class LaunchWarning(DevboxError):
    """The dev server could not be started or reached. Never fatal."""
