"""
Logging setup for the publisher.

Single log level for all loggers. An explicit level (CLI flag) takes
precedence over IOT_LOG_LEVEL env.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def level_from_arg_or_env(explicit: Optional[str] = None) -> int:
    """
    Resolve log level: explicit value if given, else IOT_LOG_LEVEL env, else INFO.
    """
    if explicit:
        return _parse_level(explicit)
    raw = os.environ.get("IOT_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def configure_logging(explicit: Optional[str] = None) -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logging.getLogger().setLevel(level_from_arg_or_env(explicit))
