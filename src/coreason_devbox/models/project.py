# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

from pydantic import Field

from coreason_devbox.models.base import CamelModel


class ProjectInfo(CamelModel):
    """Summary of a freshly cloned repository.

    Produced once per clone and consumed by the bootstrap and launch steps.

    Attributes:
        success: True once both the clone and the inspection passed.
        project_path: Absolute path of the clone inside the sandbox.
        file_count: Number of files collected by the (capped) walk.
        files: Leading entries of the manifest, relative to ``project_path``.
        has_package_json: A ``package.json`` sits at the project root.
        has_requirements: A ``requirements.txt`` sits at the project root.
        has_dockerfile: A ``Dockerfile`` sits at the project root.
        has_readme: A top-level file name starts with "readme" (any case).
    """

    success: bool = True
    project_path: str
    file_count: int = 0
    files: list[str] = Field(default_factory=list)
    has_package_json: bool = False
    has_requirements: bool = False
    has_dockerfile: bool = False
    has_readme: bool = False
