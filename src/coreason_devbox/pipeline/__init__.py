# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

"""The clone -> bootstrap -> launch steps of the orchestration pipeline."""

from .bootstrap import BootstrapStep
from .clone import CloneStep
from .launch import LaunchOutcome, LaunchStep, ServerProbe, select_dev_command

__all__ = ["BootstrapStep", "CloneStep", "LaunchOutcome", "LaunchStep", "ServerProbe", "select_dev_command"]
