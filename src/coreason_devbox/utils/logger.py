# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

import os
import re
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

__all__ = ["logger", "redact_credentials"]

_INLINE_CREDENTIAL = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")


def redact_credentials(text: str) -> str:
    """Mask inline URL credentials (``https://token@host/...``)."""
    return _INLINE_CREDENTIAL.sub(r"\g<scheme>***@", text)


def _redact(record: "Record") -> None:
    record["message"] = redact_credentials(record["message"])


# Ensure logs directory exists
log_path = Path("logs")
log_path.mkdir(parents=True, exist_ok=True)

logger.remove()
logger.configure(patcher=_redact)

# Sink 1: Stdout/Stderr (Human-readable)
logger.add(
    sys.stderr,
    level=os.getenv("COREASON_DEVBOX_LOG_LEVEL", "INFO"),
    format=(
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    ),
    backtrace=False,
    diagnose=False,
)

# Sink 2: File (JSON, Rotation, Retention)
logger.add(
    log_path / "app.log",
    rotation="500 MB",
    retention="10 days",
    serialize=True,
    enqueue=True,
    level="INFO",
    backtrace=False,
    diagnose=False,
)
