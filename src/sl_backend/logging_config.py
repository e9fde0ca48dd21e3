from __future__ import annotations

import logging
import os
from typing import Dict, Optional

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS: Dict[str, int] = {
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
}


def _parse_level(value: str, default: int = logging.INFO) -> int:
    level = logging.getLevelName(value.strip().upper())
    return level if isinstance(level, int) else default


def _get_log_level_from_env(env_var: str = "SEMANTICLINKER_LOG_LEVEL") -> int:
    """
    Resolve the root log level from an environment variable (INFO by default).
    """
    return _parse_level(os.getenv(env_var, "INFO"))


def _get_logger_overrides(env_var: str = "SEMANTICLINKER_LOG_LEVELS") -> Dict[str, int]:
    """
    Per-logger levels, e.g. ``semanticlinker.matching=DEBUG,httpx=INFO``.

    Malformed entries are ignored.
    """
    overrides: Dict[str, int] = {}
    for entry in os.getenv(env_var, "").split(","):
        name, sep, raw_level = entry.partition("=")
        name = name.strip()
        if not sep or not name:
            continue
        level = logging.getLevelName(raw_level.strip().upper())
        if isinstance(level, int):
            overrides[name] = level
    return overrides


def configure_logging(level: Optional[int] = None) -> None:
    """
    Configure logging for the CLI and the API process.

    Safe to call more than once: if the root logger already has handlers only
    the levels are (re)applied.
    """
    if level is None:
        level = _get_log_level_from_env()

    root_logger = logging.getLogger()
    if root_logger.handlers:
        root_logger.setLevel(level)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )

    levels = dict(_QUIET_LOGGERS)
    levels.update(_get_logger_overrides())
    for name, logger_level in levels.items():
        logging.getLogger(name).setLevel(logger_level)


__all__ = ["configure_logging"]
