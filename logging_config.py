# logging_config.py
"""
Logging setup for the MCP server.

Everything goes to stderr: in STDIO mode stdout carries JSON-RPC and must stay
clean. An optional rotating file handler is added when LACYLIGHTS_LOG_FILE is set.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 3

_configured = False


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Configure the root logger once; later calls only adjust the level."""

    global _configured

    level_name = (level or os.environ.get("LACYLIGHTS_LOG_LEVEL") or "INFO").strip().upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root = logging.getLogger()
    root.setLevel(numeric_level)
    if _configured:
        return root

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT, datefmt=DEFAULT_LOG_DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    path = log_file or (os.environ.get("LACYLIGHTS_LOG_FILE") or "").strip()
    if path:
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
            )
        except OSError as e:
            root.warning("Could not open log file %s: %s", path, e)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    # aiohttp logs every connection at DEBUG; keep it quiet unless asked for.
    logging.getLogger("aiohttp").setLevel(max(numeric_level, logging.WARNING))

    _configured = True
    return root
