"""Configuration loading and environment variable parsing for vmlab."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from vmlab.constants import (
    DEFAULT_INVENTORY_PATH,
    DEFAULT_MACHINE,
    DEFAULT_QEMU_BINARY,
    DEFAULT_QEMU_IMG,
    DEFAULT_RUN_DIR,
    GATEWAY_TIMEOUT,
    KILL_TIMEOUT,
    MONITOR_TIMEOUT,
    NETWORK_MODES,
    SHUTDOWN_TIMEOUT,
    VNC_DISPLAY_END,
    VNC_DISPLAY_START,
    VNC_MAX_DISPLAY,
)
from vmlab.exceptions import ConfigError
from vmlab.guacamole import GatewayConfig, build_gateway_config
from vmlab.models import QemuConfig
from vmlab.utils import (
    ensure_directory,
    get_env,
    get_env_bool,
    kvm_available,
    log,
    parse_float_env,
    parse_int_env,
    require_env,
)

_DATABASE_VARS = ("POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_HOST", "POSTGRES_PORT", "BACKEND_DB")


@dataclass(frozen=True)
class LabConfig:
    image_dir: Path
    overlay_dir: Path
    run_dir: Path
    inventory_path: Path
    gateway: GatewayConfig
    qemu: QemuConfig = field(default_factory=QemuConfig)
    qemu_binary: str = DEFAULT_QEMU_BINARY
    qemu_img: str = DEFAULT_QEMU_IMG
    vnc_display_start: int = VNC_DISPLAY_START
    vnc_display_end: int = VNC_DISPLAY_END
    vnc_host: str = "127.0.0.1"
    vnc_listen: str = "0.0.0.0"
    shutdown_timeout: float = SHUTDOWN_TIMEOUT
    kill_timeout: float = KILL_TIMEOUT
    monitor_timeout: float = MONITOR_TIMEOUT
    workers: int = 8
    database_url: Optional[str] = None


def build_postgres_url(user: str, password: str, host: str, port: str, database: str) -> str:
    return f"postgres://{user}:{password}@{host}:{port}/{database}"


def _parse_directory(name: str, create: bool = False) -> Path:
    path = Path(require_env(name)).expanduser()
    if create:
        ensure_directory(path)
    if not path.is_dir():
        raise ConfigError(f"{name} must point to an existing directory (got {path})")
    return path


def _parse_database_url() -> Optional[str]:
    values = [get_env(name) for name in _DATABASE_VARS]
    if all(value is None for value in values):
        return None
    missing = [name for name, value in zip(_DATABASE_VARS, values) if value is None]
    if missing:
        raise ConfigError(f"Expected variable `{missing[0]}` not found")
    return build_postgres_url(*values)  # type: ignore[arg-type]


def _parse_gateway_base_url() -> str:
    explicit = get_env("GUAC_URL")
    if explicit:
        return explicit
    host = require_env("GUAC_HOST")
    require_env("GUAC_PORT")
    port = parse_int_env("GUAC_PORT", "0", min_val=1, max_val=65535)
    scheme = "https" if get_env("GUAC_HTTPS") == "1" else "http"
    return f"{scheme}://{host}:{port}/guacamole/"


def parse_gateway_env() -> GatewayConfig:
    return build_gateway_config(
        base_url=_parse_gateway_base_url(),
        api_path=require_env("GUAC_API_PATH"),
        tunnel_path=require_env("GUAC_TUNNEL_PATH"),
        connection_prefix=require_env("GUAC_CONNECTION_PREFIX"),
        username=require_env("GUAC_ADMIN_USER", "GUAC_USER"),
        password=require_env("GUAC_ADMIN_PASS", "GUAC_PASS"),
        websocket_url=get_env("GUAC_WEBSOCKET_URL"),
        timeout=parse_float_env("GATEWAY_TIMEOUT", GATEWAY_TIMEOUT),
    )


def parse_qemu_env() -> QemuConfig:
    kvm_default = kvm_available()
    enable_kvm = get_env_bool("ENABLE_KVM", kvm_default)
    if enable_kvm and not kvm_default:
        log("WARN", "ENABLE_KVM is set but /dev/kvm is not usable; QEMU may refuse to start")

    network_mode = (get_env("NETWORK_MODE") or "user").lower()
    if network_mode not in NETWORK_MODES:
        supported = ", ".join(sorted(NETWORK_MODES))
        raise ConfigError(f"Unsupported NETWORK_MODE '{network_mode}'. Supported: {supported}")

    extra_raw = get_env("EXTRA_ARGS", "") or ""
    try:
        extra_args = shlex.split(extra_raw)
    except ValueError as exc:
        raise ConfigError(f"EXTRA_ARGS cannot be parsed: {exc}") from exc

    return QemuConfig(
        memory_mb=parse_int_env("MEMORY", "1024", min_val=64),
        cpu_cores=parse_int_env("CPUS", "1", min_val=1),
        enable_kvm=enable_kvm,
        machine=get_env("MACHINE", DEFAULT_MACHINE) or DEFAULT_MACHINE,
        network_mode=network_mode,
        extra_args=extra_args,
    )


def parse_env() -> LabConfig:
    image_dir = _parse_directory("IMAGE_DIR")
    overlay_dir = _parse_directory("OVERLAY_DIR", create=True)
    run_dir = Path(get_env("RUN_DIR", str(DEFAULT_RUN_DIR)) or DEFAULT_RUN_DIR)
    inventory_path = Path(get_env("LAB_INVENTORY", str(DEFAULT_INVENTORY_PATH)) or DEFAULT_INVENTORY_PATH)

    display_start = parse_int_env("VNC_DISPLAY_START", str(VNC_DISPLAY_START), min_val=0, max_val=VNC_MAX_DISPLAY)
    display_end = parse_int_env("VNC_DISPLAY_END", str(VNC_DISPLAY_END), min_val=0, max_val=VNC_MAX_DISPLAY)
    if display_end < display_start:
        raise ConfigError(
            f"VNC_DISPLAY_END ({display_end}) must be >= VNC_DISPLAY_START ({display_start})"
        )

    return LabConfig(
        image_dir=image_dir,
        overlay_dir=overlay_dir,
        run_dir=run_dir,
        inventory_path=inventory_path,
        gateway=parse_gateway_env(),
        qemu=parse_qemu_env(),
        qemu_binary=get_env("QEMU_BINARY", DEFAULT_QEMU_BINARY) or DEFAULT_QEMU_BINARY,
        qemu_img=get_env("QEMU_IMG", DEFAULT_QEMU_IMG) or DEFAULT_QEMU_IMG,
        vnc_display_start=display_start,
        vnc_display_end=display_end,
        vnc_host=get_env("VNC_HOST", "127.0.0.1") or "127.0.0.1",
        vnc_listen=get_env("VNC_LISTEN", "0.0.0.0") or "0.0.0.0",
        shutdown_timeout=parse_float_env("SHUTDOWN_TIMEOUT", SHUTDOWN_TIMEOUT),
        kill_timeout=parse_float_env("KILL_TIMEOUT", KILL_TIMEOUT),
        monitor_timeout=parse_float_env("MONITOR_TIMEOUT", MONITOR_TIMEOUT),
        workers=parse_int_env("WORKERS", "8", min_val=1, max_val=256),
        database_url=_parse_database_url(),
    )
