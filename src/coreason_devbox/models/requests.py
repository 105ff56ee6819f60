# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

import re
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from coreason_devbox.exceptions import ValidationError
from coreason_devbox.git_utils import DEFAULT_BRANCH, is_valid_git_url
from coreason_devbox.models.base import CamelModel
from coreason_devbox.models.project import ProjectInfo

_PROJECT_NAME = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]*$")
_BRANCH_NAME = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._/-]*$")


def _error_details(error: PydanticValidationError) -> list[dict[str, str]]:
    # Raw inputs are left out so credentials never leak into responses.
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or "body", "message": err["msg"]}
        for err in error.errors()
    ]


class CloneRequest(CamelModel):
    """Body of the clone-and-bootstrap operation."""

    git_url: str
    branch: str = DEFAULT_BRANCH
    project_name: str = Field(min_length=1)
    description: str | None = None
    is_private: bool = False
    access_token: str | None = Field(default=None, repr=False, exclude=True)
    sandbox_id: str | None = None
    project_id: str | None = None
    is_temporary: bool = False

    @field_validator("git_url")
    @classmethod
    def _check_git_url(cls, value: str) -> str:
        value = value.strip()
        if not is_valid_git_url(value):
            raise ValueError("Must be a valid GitHub repository URL")
        return value

    @field_validator("branch")
    @classmethod
    def _check_branch(cls, value: str) -> str:
        value = value.strip() or DEFAULT_BRANCH
        if not _BRANCH_NAME.match(value) or ".." in value:
            raise ValueError("Invalid branch name")
        return value

    @field_validator("project_name")
    @classmethod
    def _check_project_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Project name is required")
        if not _PROJECT_NAME.match(value) or value in (".", ".."):
            raise ValueError("Project name must be a single directory name")
        return value

    @model_validator(mode="after")
    def _check_credentials(self) -> "CloneRequest":
        if self.is_private and not self.access_token:
            raise ValueError("Private repositories require an access token")
        return self

    @classmethod
    def from_payload(cls, payload: Any) -> "CloneRequest":
        """Validate a raw request body.

        Raises:
            ValidationError: If the body is malformed.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Invalid request data", [{"field": "body", "message": "Expected a JSON object"}])
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError("Invalid request data", _error_details(e)) from None


class CloneResponse(CamelModel):
    success: bool = True
    sandbox_id: str
    project_name: str
    project_info: ProjectInfo
    server_url: str | None = None
    message: str
    warnings: list[str] = Field(default_factory=list)


class ValidateRepositoryRequest(CamelModel):
    git_url: str = Field(min_length=1)
    access_token: str | None = Field(default=None, repr=False, exclude=True)

    @classmethod
    def from_payload(cls, payload: Any) -> "ValidateRepositoryRequest":
        if not isinstance(payload, dict):
            raise ValidationError("Invalid request data", [{"field": "body", "message": "Expected a JSON object"}])
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError("Invalid request data", _error_details(e)) from None
