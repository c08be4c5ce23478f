"""VNC display allocation and runtime toggling for vmlab."""

from __future__ import annotations

import threading
from typing import Iterable, Optional, Set, Tuple

from vmlab.constants import VNC_BASE_PORT, VNC_DISPLAY_END, VNC_DISPLAY_START
from vmlab.exceptions import MonitorError, VncAlreadyEnabled, VncNotEnabled, VncPortAllocationFailed
from vmlab.models import QemuInstance
from vmlab.utils import log


def vnc_port_for(display: int) -> int:
    return VNC_BASE_PORT + display


def allocate_vnc_display(used_displays: Iterable[int], range_start: int, range_end: int) -> int:
    """Return the lowest display in ``[range_start, range_end]`` not in use."""
    used = set(used_displays)
    for display in range(range_start, range_end + 1):
        if display not in used:
            return display
    raise VncPortAllocationFailed(
        f"No free VNC display in range {range_start}-{range_end} ({len(used)} in use)"
    )


class DisplayPool:
    """Lock-protected set of display numbers shared by every node."""

    def __init__(self, range_start: int = VNC_DISPLAY_START, range_end: int = VNC_DISPLAY_END) -> None:
        if range_end < range_start:
            raise ValueError(f"Invalid display range {range_start}-{range_end}")
        self.range_start = range_start
        self.range_end = range_end
        self._used: Set[int] = set()
        self._lock = threading.Lock()

    def allocate(self, preferred: Optional[int] = None) -> int:
        with self._lock:
            if (
                preferred is not None
                and self.range_start <= preferred <= self.range_end
                and preferred not in self._used
            ):
                display = preferred
            else:
                display = allocate_vnc_display(self._used, self.range_start, self.range_end)
            self._used.add(display)
        log("DEBUG", f"Allocated VNC display :{display}")
        return display

    def release(self, display: Optional[int]) -> None:
        if display is None:
            return
        with self._lock:
            self._used.discard(display)
        log("DEBUG", f"Released VNC display :{display}")

    def in_use(self) -> Set[int]:
        with self._lock:
            return set(self._used)


def _require_monitor(instance: QemuInstance):
    if instance.monitor is None:
        raise MonitorError(f"No monitor channel for node {instance.node_id}")
    return instance.monitor


def enable_vnc(instance: QemuInstance, display: int, listen: str = "0.0.0.0") -> int:
    """Start the VNC server of a running instance on ``display``; returns the port."""
    if instance.vnc_port is not None:
        raise VncAlreadyEnabled(instance.node_id)
    port = vnc_port_for(display)
    _require_monitor(instance).execute(
        "display-update",
        {"type": "vnc", "addresses": [{"type": "inet", "host": listen, "port": str(port)}]},
    )
    instance.vnc_port = port
    log("INFO", f"VNC enabled for node {instance.node_id} on {listen}:{port}")
    return port


def disable_vnc(instance: QemuInstance) -> None:
    if instance.vnc_port is None:
        raise VncNotEnabled(instance.node_id)
    _require_monitor(instance).execute("display-update", {"type": "vnc", "addresses": []})
    log("INFO", f"VNC disabled for node {instance.node_id} (was port {instance.vnc_port})")
    instance.vnc_port = None


def get_vnc_info(instance: QemuInstance, host: str = "127.0.0.1") -> Tuple[str, int]:
    if instance.vnc_port is None:
        raise VncNotEnabled(instance.node_id)
    return host, instance.vnc_port
