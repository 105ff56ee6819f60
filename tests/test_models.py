import pytest
from coreason_devbox.exceptions import ValidationError
from coreason_devbox.models import CloneRequest, CloneResponse, ProjectInfo, SandboxStatus, ValidateRepositoryRequest


def _payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {"gitUrl": "https://github.com/acme/app", "projectName": "app"}
    payload.update(overrides)
    return payload


def test_clone_request_from_camel_case_payload() -> None:
    request = CloneRequest.from_payload(
        _payload(branch="develop", sandboxId="sbx-1", projectId="p-1", isTemporary=True)
    )
    assert request.git_url == "https://github.com/acme/app"
    assert request.branch == "develop"
    assert request.sandbox_id == "sbx-1"
    assert request.project_id == "p-1"
    assert request.is_temporary is True


def test_clone_request_defaults_branch_to_main() -> None:
    assert CloneRequest.from_payload(_payload()).branch == "main"


@pytest.mark.parametrize(
    "overrides",
    [
        {"gitUrl": "https://gitlab.com/acme/app"},
        {"projectName": ""},
        {"projectName": "../escape"},
        {"projectName": "a b"},
        {"branch": "feature/../main"},
        {"branch": "-x"},
    ],
)
def test_clone_request_rejects_malformed_fields(overrides: dict[str, object]) -> None:
    with pytest.raises(ValidationError, match="Invalid request data") as exc_info:
        CloneRequest.from_payload(_payload(**overrides))
    assert exc_info.value.details


def test_private_repository_requires_token() -> None:
    with pytest.raises(ValidationError) as exc_info:
        CloneRequest.from_payload(_payload(isPrivate=True))
    messages = " ".join(d["message"] for d in exc_info.value.details)
    assert "Private repositories require an access token" in messages


def test_access_token_never_serialized_or_echoed() -> None:
    request = CloneRequest.from_payload(_payload(isPrivate=True, accessToken="ghp_secret"))
    assert request.access_token == "ghp_secret"
    assert "ghp_secret" not in repr(request)
    assert "accessToken" not in request.to_payload()


def test_validation_details_never_echo_input() -> None:
    with pytest.raises(ValidationError) as exc_info:
        CloneRequest.from_payload(_payload(gitUrl="https://ghp_leak@gitlab.com/x/y", accessToken="ghp_leak"))
    assert "ghp_leak" not in str(exc_info.value.details)


def test_non_object_payload_rejected() -> None:
    with pytest.raises(ValidationError):
        CloneRequest.from_payload(["not", "a", "dict"])
    with pytest.raises(ValidationError):
        ValidateRepositoryRequest.from_payload("nope")


def test_clone_response_payload_uses_camel_case() -> None:
    response = CloneResponse(
        sandbox_id="sbx-1",
        project_name="app",
        project_info=ProjectInfo(project_path="/home/user/app", has_package_json=True),
        server_url=None,
        message="ok",
    )
    payload = response.to_payload()
    assert payload["sandboxId"] == "sbx-1"
    assert payload["projectInfo"]["hasPackageJson"] is True
    assert payload["serverUrl"] is None
    assert payload["warnings"] == []


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (SandboxStatus.CREATING, SandboxStatus.RUNNING, True),
        (SandboxStatus.RUNNING, SandboxStatus.RUNNING, True),
        (SandboxStatus.RUNNING, SandboxStatus.STOPPED, True),
        (SandboxStatus.CREATING, SandboxStatus.ERROR, True),
        (SandboxStatus.RUNNING, SandboxStatus.ERROR, True),
        (SandboxStatus.STOPPED, SandboxStatus.ERROR, True),
        (SandboxStatus.RUNNING, SandboxStatus.CREATING, False),
        (SandboxStatus.STOPPED, SandboxStatus.RUNNING, False),
        (SandboxStatus.ERROR, SandboxStatus.RUNNING, False),
        (SandboxStatus.ERROR, SandboxStatus.ERROR, False),
    ],
)
def test_status_transitions_only_move_forward(current: SandboxStatus, target: SandboxStatus, allowed: bool) -> None:
    assert current.can_transition_to(target) is allowed
