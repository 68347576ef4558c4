"""Environment-driven defaults.

Environment variables:
    SIB_TIMEOUT_SECONDS: Seconds a run may take before the child is killed
        - 0 / unset = no timeout (default)
        - negative values are treated as 0

    SIB_MAX_LINE_CAPTURES: Results kept per (line, type) before truncating
        - unset / empty / "inf" = unlimited (default)

    SIB_ENCODING: Encoding of the program text and the child's stdio
        - default "utf-8"

    SIB_LOG_DEBUG: Debug logging
        - true/1/yes = on (logs go to a temp file)
        - false/0/no = off (default, logs go to stderr)
"""

from __future__ import annotations

import math
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_timeout(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        return max(0.0, float(value))
    except ValueError:
        return 0.0


def _parse_max_line_captures(value: str | None) -> float:
    if not value or not value.strip() or value.strip().lower() in ("inf", "infinity"):
        return math.inf
    try:
        return max(0, int(value))
    except ValueError:
        return math.inf


def _generate_log_file_path() -> str:
    """Log file path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "seeing-is-believing"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"sib_debug_{timestamp}.log"

    return str(log_file.resolve())


@dataclass
class Config:
    """Defaults for a run.

    Attributes:
        timeout_seconds: Run timeout, 0 for none
        max_line_captures: Capture cap per (line, type), math.inf for none
        encoding: Program and stdio encoding
        log_debug: Debug logging to a temp file
        log_file: Log file path (set when log_debug is on)
    """

    timeout_seconds: float = 0.0
    max_line_captures: float = math.inf
    encoding: str = "utf-8"
    log_debug: bool = False
    log_file: str | None = None


def load_config() -> Config:
    """Load configuration from the environment."""
    log_debug = _parse_bool(os.environ.get("SIB_LOG_DEBUG"), default=False)

    return Config(
        timeout_seconds=_parse_timeout(os.environ.get("SIB_TIMEOUT_SECONDS")),
        max_line_captures=_parse_max_line_captures(os.environ.get("SIB_MAX_LINE_CAPTURES")),
        encoding=os.environ.get("SIB_ENCODING") or "utf-8",
        log_debug=log_debug,
        log_file=_generate_log_file_path() if log_debug else None,
    )


# Lazily loaded global config
_config: Config | None = None


def get_config() -> Config:
    """Return the global config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload the global config (for tests)."""
    global _config
    _config = load_config()
    return _config
