# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

from __future__ import annotations

import argparse
import json
import logging
import os
import tempfile
from datetime import datetime, time
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

DEFAULT_API_URL = "http://localhost:3000"


def get_home() -> Path:
    """Return the agent home directory from ``RIG_HOME``.

    Raises
    ------
    RuntimeError
        If RIG_HOME is not set.
    """
    load_dotenv()
    home = os.getenv("RIG_HOME")
    if not home:
        raise RuntimeError("RIG_HOME not set")
    return Path(home)


def get_api_url() -> str:
    """Return the fleet backend base URL without a trailing slash."""
    load_dotenv()
    return os.getenv("API_URL", DEFAULT_API_URL).rstrip("/")


def get_rig_token() -> str | None:
    """Return ``RIG_TOKEN`` from the environment, or None when unset."""
    load_dotenv()
    return os.getenv("RIG_TOKEN") or None


def is_termux() -> bool:
    """Detect an Android/Termux environment."""
    return bool(
        "termux" in os.getenv("PREFIX", "")
        or os.getenv("TERMUX_VERSION")
        or os.getenv("ANDROID_DATA")
        or os.getenv("ANDROID_ROOT")
    )


def parse_hhmm(raw: Any) -> time | None:
    """Parse an ``HH:MM`` string. Returns a :class:`datetime.time` or None."""
    if not raw or not isinstance(raw, str):
        return None
    parts = raw.strip().split(":")
    if len(parts) != 2:
        return None
    try:
        h, m = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if 0 <= h <= 23 and 0 <= m <= 59:
        return time(h, m)
    return None


def weekday_name(dt: datetime) -> str:
    """Lowercase English weekday name for ``dt``."""
    return WEEKDAYS[dt.weekday()]


def load_json(path: Path) -> Any:
    """Read JSON from ``path``. Returns None if missing or unreadable."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        logging.getLogger(__name__).warning("Failed to load %s: %s", path, exc)
        return None


def save_json(path: Path, data: Any) -> None:
    """Write ``data`` to ``path`` atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent, suffix=".tmp", prefix=f".{path.stem}_"
    )
    tmp_file = Path(tmp_path)
    try:
        with open(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp_file.replace(path)
    except BaseException:
        tmp_file.unlink(missing_ok=True)
        raise


def setup_cli(parser: argparse.ArgumentParser):
    """Parse command line arguments and configure logging.

    The parser will be extended with ``-v``/``--verbose`` and ``-d``/``--debug``
    flags. Environment variables from ``.env`` are loaded and ``RIG_HOME``
    is validated.
    """

    load_dotenv()
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose output"
    )
    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug logging"
    )
    args = parser.parse_args()

    if args.debug:
        log_level = logging.DEBUG
    elif args.verbose:
        log_level = logging.INFO
    else:
        log_level = logging.WARNING

    logging.basicConfig(level=log_level)

    home = os.getenv("RIG_HOME")
    if not home or not os.path.isdir(home):
        parser.error("RIG_HOME not set or invalid")

    return args
