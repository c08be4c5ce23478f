"""Data models for vmlab."""

from __future__ import annotations

import subprocess
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from vmlab.constants import VNC_BASE_PORT

if TYPE_CHECKING:  # pragma: no cover
    from vmlab.monitor import MonitorChannel


@dataclass(frozen=True)
class Image:
    """A disk image; base images have no parent, overlay images point at one.

    ``path`` is relative to the image directory and is only turned into a
    filesystem path through :func:`vmlab.paths.resolve_within`.
    """

    id: uuid.UUID
    name: str
    path: str
    parent_id: Optional[uuid.UUID] = None
    description: Optional[str] = None

    def is_base_image(self) -> bool:
        return self.parent_id is None


class NodeStatus(str, Enum):
    STOPPED = "Stopped"
    RUNNING = "Running"


@dataclass
class Node:
    id: uuid.UUID
    name: str
    image_id: uuid.UUID
    instance_overlay_path: str
    status: NodeStatus = NodeStatus.STOPPED
    vnc_port: Optional[int] = None
    guacamole_connection_id: Optional[str] = None


@dataclass
class ImageWithAncestors:
    image: Image
    # immediate parent first, root base image last
    ancestors: List[Image] = field(default_factory=list)


@dataclass
class NodeWithImage:
    node: Node
    image: ImageWithAncestors


@dataclass
class QemuConfig:
    memory_mb: int = 1024
    cpu_cores: int = 1
    enable_kvm: bool = True
    vnc_display: Optional[int] = None
    machine: str = "q35"
    network_mode: str = "user"
    extra_args: List[str] = field(default_factory=list)


@dataclass
class QemuInstance:
    """Runtime handle for one spawned QEMU process.

    Owned by the supervisor for as long as the process lives; never persisted.
    """

    node_id: uuid.UUID
    process: subprocess.Popen
    monitor_socket: Path
    overlay_path: Path
    vnc_port: Optional[int] = None
    monitor: Optional["MonitorChannel"] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def vnc_display(self) -> Optional[int]:
        if self.vnc_port is None:
            return None
        return self.vnc_port - VNC_BASE_PORT


@dataclass(frozen=True)
class GuacamoleUiDescriptor:
    connection_key: str
    client_identifier: str
    api_url: str
    websocket_url: str
    tunnel_url: str
    client_url: str
    share_url: str


@dataclass
class GuacamoleConnection:
    connection_name: str
    connection_key: str
    connection_id: str
    client_identifier: str
    api_url: str
    client_url: str
    share_url: str
    websocket_url: str
    tunnel_url: str
    vnc_host: str
    vnc_port: int
