# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Process-wide logging setup for GratefulSet components.

Every entry point calls `configure_gratefulset_logging()` once; modules only
ever do `logger = logging.getLogger(__name__)`.
"""

import logging
import os
import sys
from typing import Optional

_HANDLER_MARKER = "_gratefulset_stream_handler"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.environ.get("GS_LOG", "info")).strip().lower()
    return _LEVELS.get(name, logging.INFO)


def configure_gratefulset_logging(level: Optional[str] = None) -> None:
    """Install (or refresh) a single stderr handler on the root logger.

    Args:
        level: Log level name. Falls back to the GS_LOG environment variable,
            then to "info".
    """
    resolved = _resolve_level(level)
    root_logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    existing = None
    for handler in root_logger.handlers:
        if getattr(handler, _HANDLER_MARKER, False):
            existing = handler
            break

    if existing is None:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(resolved)
        setattr(stream_handler, _HANDLER_MARKER, True)
        root_logger.addHandler(stream_handler)
    else:
        existing.setFormatter(formatter)
        existing.setLevel(resolved)

    root_logger.setLevel(resolved)

    # The kubernetes client logs every request body at DEBUG.
    logging.getLogger("kubernetes").setLevel(max(resolved, logging.INFO))
    logging.getLogger("urllib3").setLevel(max(resolved, logging.WARNING))
