# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DevboxConfig(BaseSettings):
    """
    Configuration for sandbox provisioning, the clone pipeline and the idle reaper.

    Durations are expressed in seconds.
    """

    runtime: Literal["e2b"] = "e2b"

    # E2B Configuration
    e2b_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("COREASON_DEVBOX_E2B_API_KEY", "E2B_API_KEY", "e2b_api_key"),
    )
    e2b_template: str | None = None
    sandbox_timeout: int = 900  # remote idle timeout, 15 minutes

    # Lifecycle records
    auto_stop_grace: float = 900.0  # 15 minutes
    reaper_interval: float = 60.0  # Check every minute
    database_path: str = "devbox.db"

    # Clone pipeline
    workspace_root: str = "/home/user"
    clone_timeout: float = 300.0
    install_timeout: float = 300.0
    launch_grace_period: float = 3.0
    dev_server_ports: tuple[int, ...] = (3000, 5173)
    manifest_limit: int = 50
    walk_limit: int = 100

    # Remote call retries
    retry_attempts: int = 3
    retry_backoff_max: float = 8.0

    # Dev server reachability probe
    verify_server_url: bool = True
    probe_attempts: int = 5
    probe_timeout: float = 5.0
    probe_backoff_max: float = 4.0

    # Repository validation
    github_api_url: str = "https://api.github.com"
    github_timeout: float = 10.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="COREASON_DEVBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )
