from __future__ import annotations

import logging
import os
from typing import Optional


_TRUTHY = {"1", "true", "yes", "on"}

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def _parse_level(value, default_level: int) -> int:
    if value is None:
        return default_level
    if isinstance(value, int):
        return int(value)
    text = str(value).strip().upper()
    if not text:
        return default_level
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text)
    if isinstance(resolved, int):
        return resolved
    return default_level


def get_log_level_from_env(default: str | int = "INFO") -> int:
    """
    Resolve log level from env (CONDPHASE_LOG_LEVEL or CONDPHASE_DEBUG).
    """
    default_level = _parse_level(default, logging.INFO)
    env_level = os.environ.get("CONDPHASE_LOG_LEVEL")
    if env_level:
        return _parse_level(env_level, default_level)
    if _is_truthy(os.environ.get("CONDPHASE_DEBUG")):
        return logging.DEBUG
    return default_level


def setup_logging(*, level: int, log_file: Optional[str] = None) -> None:
    """
    Configure root logging once; optionally mirror records into a file.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)

    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            continue
        handler.setLevel(level)

    if log_file:
        already = any(
            isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_file)
            for h in root.handlers
        )
        if not already:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(file_handler)
