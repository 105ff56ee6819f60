# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

from typing import Any

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from coreason_devbox.exceptions import (
    CloneFailure,
    DevboxError,
    SandboxBusyError,
    SandboxNotFoundError,
    ValidationError,
)
from coreason_devbox.models import CloneRequest
from coreason_devbox.service import DevboxService
from coreason_devbox.utils.logger import logger

OWNER_HEADER = "X-Owner-Id"

_service: DevboxService | None = None


def get_service() -> DevboxService:
    """Return the process-wide service, creating it on first use."""
    global _service
    if _service is None:
        _service = DevboxService()
    return _service


# Initialize MCP Server
mcp = FastMCP("coreason-devbox")


def _failure(message: str, status_code: int, details: list[dict[str, str]] | None = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "error": message}
    if details:
        body["details"] = details
    return JSONResponse(body, status_code=status_code)


def error_response(error: Exception) -> JSONResponse:
    """Map an exception to a JSON error response. Internal details never leave the process."""
    if isinstance(error, ValidationError):
        return _failure(str(error), 400, error.details)
    if isinstance(error, CloneFailure):
        return _failure(str(error), 400)
    if isinstance(error, PermissionError):
        return _failure("Forbidden", 403)
    if isinstance(error, SandboxNotFoundError):
        return _failure(str(error), 404)
    if isinstance(error, SandboxBusyError):
        return _failure(str(error), 409)
    if isinstance(error, DevboxError):
        return _failure(str(error), 500)
    logger.opt(exception=error).error("Unhandled error while serving request")
    return _failure("Internal server error", 500)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise ValidationError("Invalid request data", [{"field": "body", "message": "Malformed JSON"}]) from None


@mcp.custom_route("/clone", methods=["POST"])  # type: ignore[misc]
async def clone_route(request: Request) -> JSONResponse:
    """Clone a repository into a sandbox. The owner comes from the ``X-Owner-Id`` header."""
    owner_id = request.headers.get(OWNER_HEADER)
    if not owner_id:
        return _failure("Unauthorized", 401)
    try:
        payload = await _json_body(request)
        response = await get_service().clone_repository(owner_id, payload)
    except Exception as e:
        return error_response(e)
    return JSONResponse(response.to_payload())


@mcp.custom_route("/validate-repository", methods=["POST"])  # type: ignore[misc]
async def validate_repository_route(request: Request) -> JSONResponse:
    if not request.headers.get(OWNER_HEADER):
        return _failure("Unauthorized", 401)
    try:
        payload = await _json_body(request)
        result = await get_service().validate_repository(payload)
    except Exception as e:
        return error_response(e)
    if not result["valid"] and not result["isPrivate"]:
        return _failure(result["error"] or "Repository not found", 404)
    return JSONResponse(result)


@mcp.tool()  # type: ignore[misc]
async def clone_repository(
    owner_id: str,
    git_url: str,
    project_name: str,
    branch: str = "main",
    is_private: bool = False,
    access_token: str | None = None,
    sandbox_id: str | None = None,
) -> dict[str, Any] | str:
    """
    Clone a git repository into a sandbox, install its dependencies and start its dev server.
    Returns the sandbox id, a project summary and the dev server URL when one is reachable.
    """
    try:
        request = CloneRequest.from_payload(
            {
                "gitUrl": git_url,
                "projectName": project_name,
                "branch": branch,
                "isPrivate": is_private,
                "accessToken": access_token,
                "sandboxId": sandbox_id,
            }
        )
        response = await get_service().clone_repository(owner_id, request)
    except ValidationError as e:
        fields = ", ".join(f"{d['field']}: {d['message']}" for d in e.details)
        return f"Error cloning repository: {e!s}" + (f" ({fields})" if fields else "")
    except (DevboxError, PermissionError) as e:
        return f"Error cloning repository: {e!s}"
    return response.to_payload()


@mcp.tool()  # type: ignore[misc]
async def validate_repository(git_url: str, access_token: str | None = None) -> dict[str, Any] | str:
    """
    Check that a repository exists and report its visibility, default branch and branches.
    """
    try:
        return await get_service().validate_repository({"gitUrl": git_url, "accessToken": access_token})
    except Exception as e:
        return f"Error validating repository: {e!s}"


@mcp.tool()  # type: ignore[misc]
async def touch_sandbox(owner_id: str, sandbox_id: str) -> str:
    """
    Record activity on a sandbox so the idle reaper leaves it running.
    """
    try:
        record = await get_service().touch_sandbox(owner_id, sandbox_id)
    except Exception as e:
        return f"Error touching sandbox: {e!s}"
    return f"Sandbox {record.sandbox_id} active until {record.auto_stop_at:.0f}"


@mcp.tool()  # type: ignore[misc]
async def stop_sandbox(owner_id: str, sandbox_id: str) -> str:
    """
    Stop a sandbox. Its record is kept.
    """
    try:
        record = await get_service().stop_sandbox(owner_id, sandbox_id)
    except Exception as e:
        return f"Error stopping sandbox: {e!s}"
    return f"Sandbox {record.sandbox_id} is {record.status.value}"


@mcp.tool()  # type: ignore[misc]
async def delete_sandbox(owner_id: str, sandbox_id: str) -> str:
    """
    Stop a sandbox if needed and delete its record along with its snapshots and chat history.
    """
    try:
        await get_service().delete_sandbox(owner_id, sandbox_id)
    except Exception as e:
        return f"Error deleting sandbox: {e!s}"
    return f"Sandbox {sandbox_id} deleted"


@mcp.tool()  # type: ignore[misc]
async def list_sandboxes(owner_id: str, active_only: bool = False) -> list[dict[str, Any]] | list[str]:
    """
    List the caller's sandboxes.
    """
    try:
        records = await get_service().list_sandboxes(owner_id, active_only=active_only)
    except Exception as e:
        return [f"Error listing sandboxes: {e!s}"]
    return [record.to_payload() for record in records]


def main() -> None:
    """Entry point for the MCP server."""
    mcp.run(transport="streamable-http")


if __name__ == "__main__":  # pragma: no cover
    main()
