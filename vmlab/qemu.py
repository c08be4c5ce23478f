"""QEMU process supervision for vmlab.

Each node moves through ``Stopped -> Starting -> Running -> Stopping ->
Stopped``. Only ``Stopped``/``Running`` are persisted; the transient states
live here, guarded by one re-entrant lock per node.
"""

from __future__ import annotations

import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from vmlab.constants import (
    DEFAULT_QEMU_BINARY,
    KILL_TIMEOUT,
    MONITOR_TIMEOUT,
    NETWORK_MODES,
    SHUTDOWN_TIMEOUT,
    SOCKET_WAIT_TIMEOUT,
    VNC_BASE_PORT,
)
from vmlab.exceptions import (
    InvalidConfiguration,
    MonitorError,
    NodeAlreadyRunning,
    NodeNotRunning,
    ProcessExited,
    ShutdownTimeout,
    SpawnFailed,
)
from vmlab.models import Image, Node, QemuConfig, QemuInstance
from vmlab.monitor import MonitorChannel
from vmlab.overlay import OverlayManager
from vmlab.utils import ensure_directory, log

STARTING = "Starting"
RUNNING = "Running"
STOPPING = "Stopping"
STOPPED = "Stopped"


def _validate_chain(image_chain: Sequence[Image]) -> None:
    if not image_chain:
        raise InvalidConfiguration("Image chain is empty")
    if image_chain[0].parent_id is not None:
        raise InvalidConfiguration(f"Image chain does not start at a base image ({image_chain[0].name})")
    for parent, child in zip(image_chain, image_chain[1:]):
        if child.parent_id != parent.id:
            raise InvalidConfiguration(f"Image chain is broken between {parent.name} and {child.name}")


def build_qemu_args(
    node: Node,
    overlay_path: Path,
    image_chain: Sequence[Image],
    config: QemuConfig,
    monitor_socket: Path,
    pidfile: Optional[Path] = None,
    qemu_binary: str = DEFAULT_QEMU_BINARY,
    vnc_listen: str = "0.0.0.0",
) -> List[str]:
    """Build the QEMU command line for ``node``.

    The only disk handed to QEMU is the instance overlay; its qcow2 header
    references the last image of ``image_chain``, which in turn chains back to
    the base image.
    """
    _validate_chain(image_chain)
    if config.memory_mb is None or config.memory_mb <= 0:
        raise InvalidConfiguration(f"memory_mb must be > 0 (got {config.memory_mb})")
    if config.cpu_cores is None or config.cpu_cores <= 0:
        raise InvalidConfiguration(f"cpu_cores must be > 0 (got {config.cpu_cores})")
    if not config.machine:
        raise InvalidConfiguration("machine type must be set")
    if config.network_mode not in NETWORK_MODES:
        raise InvalidConfiguration(f"Unsupported network mode '{config.network_mode}'")
    if config.vnc_display is not None and not 0 <= config.vnc_display <= 65535 - VNC_BASE_PORT:
        raise InvalidConfiguration(f"VNC display out of range: {config.vnc_display}")

    accel = "kvm" if config.enable_kvm else "tcg"
    args = [
        qemu_binary,
        "-name",
        f"{node.name},process=vmlab-{node.id}",
        "-machine",
        f"{config.machine},accel={accel}",
        "-m",
        str(config.memory_mb),
        "-smp",
        str(config.cpu_cores),
    ]
    if config.enable_kvm:
        args.extend(["-cpu", "host"])
    args.extend(
        [
            "-drive",
            f"file={overlay_path},format=qcow2,if=virtio,cache=writeback",
            "-display",
            "none",
            "-serial",
            "null",
        ]
    )
    # a VNC server always exists so it can be re-pointed at runtime
    if config.vnc_display is not None:
        args.extend(["-vnc", f"{vnc_listen}:{config.vnc_display}"])
    else:
        args.extend(["-vnc", "none"])
    args.extend(["-qmp", f"unix:{monitor_socket},server=on,wait=off"])
    if pidfile is not None:
        args.extend(["-pidfile", str(pidfile)])
    if config.network_mode == "user":
        args.extend(["-nic", "user,model=virtio-net-pci"])
    else:
        args.extend(["-nic", "none"])
    args.extend(config.extra_args)
    return args


class QemuSupervisor:
    def __init__(
        self,
        overlays: OverlayManager,
        run_dir: Path,
        qemu_binary: str = DEFAULT_QEMU_BINARY,
        vnc_listen: str = "0.0.0.0",
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
        kill_timeout: float = KILL_TIMEOUT,
        monitor_timeout: float = MONITOR_TIMEOUT,
        socket_wait_timeout: float = SOCKET_WAIT_TIMEOUT,
    ) -> None:
        self.overlays = overlays
        self.run_dir = Path(run_dir)
        self.qemu_binary = qemu_binary
        self.vnc_listen = vnc_listen
        self.shutdown_timeout = shutdown_timeout
        self.kill_timeout = kill_timeout
        self.monitor_timeout = monitor_timeout
        self.socket_wait_timeout = socket_wait_timeout
        self._instances: Dict[uuid.UUID, QemuInstance] = {}
        self._states: Dict[uuid.UUID, str] = {}
        self._node_locks: Dict[uuid.UUID, threading.RLock] = {}
        self._lock = threading.Lock()

    # -- bookkeeping ---------------------------------------------------------

    def node_lock(self, node_id: uuid.UUID) -> threading.RLock:
        with self._lock:
            lock = self._node_locks.get(node_id)
            if lock is None:
                lock = threading.RLock()
                self._node_locks[node_id] = lock
            return lock

    def _set_state(self, node_id: uuid.UUID, state: str) -> None:
        with self._lock:
            if state == STOPPED:
                self._states.pop(node_id, None)
            else:
                self._states[node_id] = state

    def state(self, node_id: uuid.UUID) -> str:
        with self._lock:
            return self._states.get(node_id, STOPPED)

    def get_instance(self, node_id: uuid.UUID) -> Optional[QemuInstance]:
        with self._lock:
            return self._instances.get(node_id)

    def require_instance(self, node_id: uuid.UUID) -> QemuInstance:
        with self.node_lock(node_id):
            instance = self.get_instance(node_id)
            if instance is not None and self.is_running(instance):
                return instance
            self.reap_node(node_id)
            raise NodeNotRunning(node_id)

    def instances(self) -> List[QemuInstance]:
        with self._lock:
            return list(self._instances.values())

    def socket_path(self, node_id: uuid.UUID) -> Path:
        return self.run_dir / f"{node_id}.qmp"

    def log_path(self, node_id: uuid.UUID) -> Path:
        return self.run_dir / f"{node_id}.log"

    def _log_tail(self, node_id: uuid.UUID, lines: int = 20) -> str:
        try:
            text = self.log_path(node_id).read_text(errors="replace")
        except OSError:
            return ""
        return "\n".join(text.strip().splitlines()[-lines:])

    # -- lifecycle -----------------------------------------------------------

    @staticmethod
    def is_running(instance: QemuInstance) -> bool:
        # poll() caches the exit status, so repeated checks stay accurate
        return instance.process.poll() is None

    def start_node(
        self,
        node: Node,
        image: Image,
        image_chain: Sequence[Image],
        config: QemuConfig,
    ) -> QemuInstance:
        with self.node_lock(node.id):
            existing = self.get_instance(node.id)
            if existing is not None:
                if self.is_running(existing):
                    raise NodeAlreadyRunning(node.id)
                self._finalize(existing)

            self._set_state(node.id, STARTING)
            try:
                instance = self._spawn(node, image, image_chain, config)
            except BaseException:
                self._set_state(node.id, STOPPED)
                raise
            self._set_state(node.id, RUNNING)
            log("SUCCESS", f"Node {node.name} running (pid {instance.pid})")
            return instance

    def _spawn(
        self,
        node: Node,
        image: Image,
        image_chain: Sequence[Image],
        config: QemuConfig,
    ) -> QemuInstance:
        if image_chain and image_chain[-1].id != image.id:
            raise InvalidConfiguration(f"Image chain does not end at image {image.name}")
        overlay = self.overlays.create_instance_overlay(node, image)
        ensure_directory(self.run_dir)
        socket_path = self.socket_path(node.id)
        socket_path.unlink(missing_ok=True)
        args = build_qemu_args(
            node,
            overlay,
            image_chain,
            config,
            socket_path,
            pidfile=self.run_dir / f"{node.id}.pid",
            qemu_binary=self.qemu_binary,
            vnc_listen=self.vnc_listen,
        )
        chain_names = " -> ".join(item.name for item in image_chain)
        log("INFO", f"Starting node {node.name} ({chain_names} -> {overlay.name})")
        log("DEBUG", f"QEMU command: {' '.join(args)}")

        self.overlays.registry.attach(overlay)
        try:
            with open(self.log_path(node.id), "ab") as qemu_log:
                process = subprocess.Popen(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=qemu_log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            self.overlays.registry.detach(overlay)
            raise SpawnFailed(f"Failed to spawn QEMU process: {exc}") from exc

        instance = QemuInstance(
            node_id=node.id,
            process=process,
            monitor_socket=socket_path,
            overlay_path=overlay,
            vnc_port=VNC_BASE_PORT + config.vnc_display if config.vnc_display is not None else None,
        )
        with self._lock:
            self._instances[node.id] = instance

        try:
            instance.monitor = self._open_monitor(instance)
        except BaseException:
            log("ERROR", f"Node {node.name} failed during startup; killing pid {process.pid}")
            self._force_kill(instance)
            raise
        return instance

    def _open_monitor(self, instance: QemuInstance) -> MonitorChannel:
        deadline = time.monotonic() + self.socket_wait_timeout
        last_error: Optional[MonitorError] = None
        while True:
            if not self.is_running(instance):
                tail = self._log_tail(instance.node_id)
                detail = f": {tail}" if tail else ""
                raise ProcessExited(f"exit code {instance.process.returncode}{detail}")
            if instance.monitor_socket.exists():
                channel = MonitorChannel(instance.monitor_socket, timeout=self.monitor_timeout)
                try:
                    channel.connect()
                    return channel
                except MonitorError as exc:
                    last_error = exc
            if time.monotonic() >= deadline:
                if last_error is not None:
                    raise last_error
                raise MonitorError(
                    f"Monitor socket {instance.monitor_socket} did not appear within {self.socket_wait_timeout}s"
                )
            time.sleep(0.1)

    def stop_node(self, instance: QemuInstance, timeout: Optional[float] = None) -> Optional[int]:
        """Ask the guest to power down; kill it if it is still up after ``timeout``."""
        timeout = self.shutdown_timeout if timeout is None else timeout
        with self.node_lock(instance.node_id):
            if not self.is_running(instance):
                self._finalize(instance)
                return instance.process.returncode
            self._set_state(instance.node_id, STOPPING)
            try:
                if instance.monitor is None:
                    raise MonitorError("No monitor channel")
                instance.monitor.execute("system_powerdown")
                log("INFO", f"Sent powerdown to node {instance.node_id}; waiting up to {timeout:.0f}s")
            except MonitorError as exc:
                log("WARN", f"Graceful shutdown request failed ({exc}); forcing")
                return self.kill_node(instance)
            try:
                instance.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                log("WARN", f"Node {instance.node_id} did not power down within {timeout:.0f}s; killing")
                return self.kill_node(instance)
            self._finalize(instance)
            log("INFO", f"Node {instance.node_id} stopped (exit code {instance.process.returncode})")
            return instance.process.returncode

    def kill_node(self, instance: QemuInstance) -> Optional[int]:
        with self.node_lock(instance.node_id):
            self._set_state(instance.node_id, STOPPING)
            self._force_kill(instance)
            log("INFO", f"Node {instance.node_id} killed")
            return instance.process.returncode

    def _force_kill(self, instance: QemuInstance) -> None:
        if self.is_running(instance):
            try:
                instance.process.kill()
            except ProcessLookupError:
                pass
        try:
            instance.process.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired as exc:
            raise ShutdownTimeout(
                f"QEMU process {instance.pid} did not exit within {self.kill_timeout}s after SIGKILL"
            ) from exc
        self._finalize(instance)

    def _finalize(self, instance: QemuInstance) -> None:
        if instance.monitor is not None:
            instance.monitor.close()
            instance.monitor = None
        instance.vnc_port = None
        self.overlays.registry.detach(instance.overlay_path)
        instance.monitor_socket.unlink(missing_ok=True)
        with self._lock:
            if self._instances.get(instance.node_id) is instance:
                del self._instances[instance.node_id]
            self._states.pop(instance.node_id, None)

    def reap_node(self, node_id: uuid.UUID) -> Optional[QemuInstance]:
        """Forget the node's instance if its process exited on its own.

        Only the lock of ``node_id`` is taken. Returns the finalized instance,
        or None when nothing was tracked or the process is still alive.
        """
        with self.node_lock(node_id):
            instance = self.get_instance(node_id)
            if instance is None or self.is_running(instance):
                return None
            log("WARN", f"Node {node_id} exited unexpectedly (exit code {instance.process.returncode})")
            self._finalize(instance)
            return instance
