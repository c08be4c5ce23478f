"""Global constants and default paths for vmlab."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_INVENTORY_PATH = Path("/config/lab.yaml")
DEFAULT_RUN_DIR = Path("/run/vmlab")
DEFAULT_QEMU_BINARY = "qemu-system-x86_64"
DEFAULT_QEMU_IMG = "qemu-img"
DEFAULT_MACHINE = "q35"
OVERLAY_FORMAT = "qcow2"
OVERLAY_SUFFIX = ".qcow2"

TRUTHY = {"1", "true", "yes", "on"}

VNC_BASE_PORT = 5900
VNC_DISPLAY_START = 0
VNC_DISPLAY_END = 99
VNC_MAX_DISPLAY = 65535 - VNC_BASE_PORT

SHUTDOWN_TIMEOUT = 30.0
KILL_TIMEOUT = 10.0
MONITOR_TIMEOUT = 5.0
GATEWAY_TIMEOUT = 10.0
SOCKET_WAIT_TIMEOUT = 10.0

DEFAULT_CONNECTION_NAME = "vnc-connection"
GATEWAY_ROOT_GROUP = "ROOT"
GATEWAY_TOKEN_HEADER = "Guacamole-Token"

NETWORK_MODES = {"user", "none"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

_SENSITIVE_FIELDS = {"password", "database_url"}

_IDENTIFIER_INVALID_RE = re.compile(r"[^a-z0-9]+")
