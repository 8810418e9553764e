# device_fingerprint.py
"""Stable per-machine fingerprint used for device approval.

The machine id is never sent as-is: py-machineid HMACs it with an app-specific
key, so the value the backend sees cannot be correlated with other software on
the same host. Cached in ~/.lacylights/device-id so the identity survives
restarts (and so an operator only has to approve it once).
"""

from __future__ import annotations

import getpass
import hashlib
import logging
import os
import socket
from pathlib import Path
from typing import Optional

import machineid


log = logging.getLogger(__name__)

FINGERPRINT_FILE = Path.home() / ".lacylights" / "device-id"

APP_ID = "lacylights-mcp"


def _hashed_machine_id() -> Optional[str]:
    try:
        value = machineid.hashed_id(APP_ID)
    except Exception as e:  # py-machineid raises a bare Exception when no id source exists
        log.debug("Machine id unavailable: %s", e)
        return None
    return value or None


def _fallback_fingerprint() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    data = f"{socket.gethostname()}-{user}-lacylights-mcp"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:32]


def _write_cache(path: Path, fingerprint: str) -> None:
    # Owner-only directory and file; temp file + rename so readers never see a partial id.
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(fingerprint)
    os.replace(tmp, path)


def get_device_fingerprint(cache_path: Optional[Path] = None) -> str:
    path = Path(cache_path) if cache_path is not None else FINGERPRINT_FILE

    try:
        if path.exists():
            cached = path.read_text(encoding="utf-8").strip()
            if cached:
                log.debug("Using cached device fingerprint (length=%s)", len(cached))
                return cached
    except OSError as e:
        log.warning("Failed to read cached device fingerprint: %s", e)

    fingerprint = _hashed_machine_id()
    if fingerprint:
        log.debug("Generated fingerprint from hashed machine id")
    else:
        log.warning("No machine id available; using hostname/username hash")
        fingerprint = _fallback_fingerprint()

    try:
        _write_cache(path, fingerprint)
        log.debug("Cached device fingerprint at %s", path)
    except OSError as e:
        # Still usable for this process, just not stable across restarts.
        log.warning("Failed to cache device fingerprint: %s", e)

    return fingerprint


def get_device_name() -> str:
    return f"{socket.gethostname()} (MCP)"


def clear_cached_fingerprint(cache_path: Optional[Path] = None) -> None:
    path = Path(cache_path) if cache_path is not None else FINGERPRINT_FILE
    try:
        if path.exists():
            path.unlink()
            log.info("Cleared cached device fingerprint")
    except OSError as e:
        log.warning("Failed to clear cached device fingerprint: %s", e)
