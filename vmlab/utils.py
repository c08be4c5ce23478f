"""Utility functions for vmlab."""

from __future__ import annotations

import os
import subprocess
import uuid
from pathlib import Path
from typing import List, Optional

from vmlab import constants
from vmlab.constants import TRUTHY
from vmlab.exceptions import ConfigError

_verbose = constants._LOG_VERBOSE


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging with a colour per level."""
    if level == "DEBUG" and not _verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return a trimmed environment value; empty values count as unset."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    trimmed = raw.strip()
    if not trimmed:
        return default
    return trimmed


def require_env(name: str, *fallbacks: str) -> str:
    for candidate in (name, *fallbacks):
        value = get_env(candidate)
        if value is not None:
            return value
    raise ConfigError(f"Expected variable `{name}` not found")


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = get_env(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: float) -> float:
    raw = get_env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds (got '{raw}')")
    if value <= 0:
        raise ConfigError(f"{name} must be > 0 (got {value})")
    return value


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def sanitize_identifier(raw: str) -> str:
    """Reduce a name to lower-case ASCII alphanumerics joined by single hyphens."""
    mapped = "".join(ch.lower() if ch.isascii() and ch.isalnum() else "-" for ch in raw)
    collapsed = constants._IDENTIFIER_INVALID_RE.sub("-", mapped)
    return collapsed.strip("-")


def random_identifier() -> str:
    return uuid.uuid4().hex


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
