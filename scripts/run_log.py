#!/usr/bin/env python3
"""Per-run transcript of everything logged during a sweep."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def default_log_dir() -> Path:
    override = os.environ.get("SWEEPER_LOG_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mailbox-sweeper" / "logs"


@contextmanager
def run_log(command: str, enabled: bool = True, log_dir: Optional[Path] = None) -> Iterator[Optional[Path]]:
    """Capture root-logger output into ``<log_dir>/<command>_<timestamp>.log``.

    Yields the transcript path, or None when disabled.
    """
    if not enabled:
        yield None
        return

    directory = Path(log_dir) if log_dir is not None else default_log_dir()
    directory.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    path = directory / f"{command}_{stamp}.log"

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    previous_level = root.level
    root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > logging.DEBUG:
        root.setLevel(logging.DEBUG)

    root.info("Run log started: %s", path)
    try:
        yield path
    finally:
        root.info("Run log finished: %s", path)
        root.removeHandler(handler)
        root.setLevel(previous_level)
        handler.close()
