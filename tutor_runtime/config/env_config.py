"""
Environment variable helpers.

Invalid values log a warning and fall back to the default; these helpers never
raise, so a bad environment can't stop the runtime from starting.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


def get_env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def get_env_float(
    key: str,
    default: float,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> float:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"[EnvConfig] {key}={raw!r} is not a number, using {default}")
        return default
    if min_val is not None and value < min_val:
        logger.warning(f"[EnvConfig] {key}={value} below minimum {min_val}, using {default}")
        return default
    if max_val is not None and value > max_val:
        logger.warning(f"[EnvConfig] {key}={value} above maximum {max_val}, using {default}")
        return default
    return value


def get_env_int(
    key: str,
    default: int,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
) -> int:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"[EnvConfig] {key}={raw!r} is not an integer, using {default}")
        return default
    if min_val is not None and value < min_val:
        logger.warning(f"[EnvConfig] {key}={value} below minimum {min_val}, using {default}")
        return default
    if max_val is not None and value > max_val:
        logger.warning(f"[EnvConfig] {key}={value} above maximum {max_val}, using {default}")
        return default
    return value


def get_env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    logger.warning(f"[EnvConfig] {key}={raw!r} is not a boolean, using {default}")
    return default
