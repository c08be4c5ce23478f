"""Lab orchestration: the request boundary for node lifecycle and remote view."""

from __future__ import annotations

import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional

from vmlab.chain import image_with_ancestors, resolve_chain
from vmlab.config import LabConfig
from vmlab.constants import DEFAULT_CONNECTION_NAME
from vmlab.exceptions import (
    GatewayError,
    LabError,
    NodeAlreadyRunning,
    NodeNotRunning,
    QemuError,
    VncNotEnabled,
)
from vmlab.guacamole import GuacamoleClient
from vmlab.models import GuacamoleConnection, Image, NodeStatus, NodeWithImage, QemuConfig, QemuInstance
from vmlab.overlay import OverlayManager
from vmlab.paths import resolve_within
from vmlab.qemu import QemuSupervisor
from vmlab.store import LabStore
from vmlab.utils import log
from vmlab.vnc import DisplayPool, disable_vnc, enable_vnc, get_vnc_info


class Lab:
    def __init__(
        self,
        config: LabConfig,
        store: LabStore,
        gateway: Optional[GuacamoleClient] = None,
        supervisor: Optional[QemuSupervisor] = None,
        displays: Optional[DisplayPool] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.overlays = OverlayManager(config.image_dir, config.overlay_dir, config.qemu_img)
        self.supervisor = supervisor or QemuSupervisor(
            self.overlays,
            config.run_dir,
            qemu_binary=config.qemu_binary,
            vnc_listen=config.vnc_listen,
            shutdown_timeout=config.shutdown_timeout,
            kill_timeout=config.kill_timeout,
            monitor_timeout=config.monitor_timeout,
        )
        self.displays = displays or DisplayPool(config.vnc_display_start, config.vnc_display_end)
        self.gateway = gateway or GuacamoleClient(config.gateway)
        self._displays: Dict[uuid.UUID, int] = {}
        self._connections: Dict[uuid.UUID, GuacamoleConnection] = {}
        self._executor = ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="vmlab")

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Run a lifecycle call on the worker pool."""
        return self._executor.submit(fn, *args, **kwargs)

    # -- queries ---------------------------------------------------------

    def image_chain(self, image_id: uuid.UUID) -> List[Image]:
        return resolve_chain(image_id, self.store.get_image)

    def node_info(self, node_id: uuid.UUID) -> NodeWithImage:
        node = self.store.get_node(node_id)
        return NodeWithImage(node=node, image=image_with_ancestors(node.image_id, self.store.get_image))

    def connection(self, node_id: uuid.UUID) -> Optional[GuacamoleConnection]:
        return self._connections.get(node_id)

    # -- lifecycle -------------------------------------------------------

    def run_node(self, node_id: uuid.UUID, config: Optional[QemuConfig] = None, vnc: bool = False) -> QemuInstance:
        with self.supervisor.node_lock(node_id):
            node = self.store.get_node(node_id)
            existing = self.supervisor.get_instance(node_id)
            if existing is not None:
                if self.supervisor.is_running(existing):
                    raise NodeAlreadyRunning(node_id)
                self.supervisor.stop_node(existing)
                self._drop_connection(node_id)
                self._release_node(node_id)
            image = self.store.get_image(node.image_id)
            chain = self.image_chain(image.id)

            qemu_config = replace(config or self.config.qemu)
            qemu_config.extra_args = list(qemu_config.extra_args)
            display = None
            if vnc or qemu_config.vnc_display is not None:
                display = self.displays.allocate(preferred=qemu_config.vnc_display)
                qemu_config.vnc_display = display
            try:
                instance = self.supervisor.start_node(node, image, chain, qemu_config)
            except BaseException:
                self.displays.release(display)
                raise
            if display is not None:
                self._displays[node_id] = display
            self.store.update_node(node_id, status=NodeStatus.RUNNING, vnc_port=instance.vnc_port)
            return instance

    def stop_node(self, node_id: uuid.UUID, force: bool = False) -> None:
        with self.supervisor.node_lock(node_id):
            node = self.store.get_node(node_id)
            instance = self.supervisor.get_instance(node_id)
            if instance is None:
                if node.status != NodeStatus.RUNNING:
                    raise NodeNotRunning(node_id)
                log("WARN", f"Node {node.name} marked Running but no process is tracked; marking Stopped")
            else:
                self._drop_connection(node_id)
                if force:
                    self.supervisor.kill_node(instance)
                else:
                    self.supervisor.stop_node(instance)
            self._release_node(node_id)

    def kill_node(self, node_id: uuid.UUID) -> None:
        self.stop_node(node_id, force=True)

    def wipe_node(self, node_id: uuid.UUID) -> Path:
        with self.supervisor.node_lock(node_id):
            self._reconcile_node(node_id)
            if self.supervisor.get_instance(node_id) is not None:
                raise NodeAlreadyRunning(node_id)
            node = self.store.get_node(node_id)
            if node.status == NodeStatus.RUNNING:
                log("WARN", f"Node {node.name} marked Running but no process is tracked; marking Stopped")
                self._release_node(node_id)
                node = self.store.get_node(node_id)
            image = self.store.get_image(node.image_id)
            return self.overlays.wipe_node(node, image)

    def collapse_overlay(self, relative_path: str) -> Path:
        overlay = resolve_within(self.config.overlay_dir, relative_path)
        return self.overlays.remove_overlay(overlay)

    # -- remote view -------------------------------------------------------

    def open_remote_view(self, node_id: uuid.UUID, connection_name: Optional[str] = None) -> GuacamoleConnection:
        with self.supervisor.node_lock(node_id):
            if self._reconcile_node(node_id):
                raise NodeNotRunning(node_id)
            existing = self._connections.get(node_id)
            if existing is not None:
                return existing
            instance = self.supervisor.require_instance(node_id)
            node = self.store.get_node(node_id)

            allocated = None
            if instance.vnc_port is None:
                allocated = self.displays.allocate()
                try:
                    enable_vnc(instance, allocated, listen=self.config.vnc_listen)
                except BaseException:
                    self.displays.release(allocated)
                    raise
                self._displays[node_id] = allocated

            host, port = get_vnc_info(instance, self.config.vnc_host)
            try:
                connection = self.gateway.create(connection_name or node.name, host, port)
            except BaseException:
                if allocated is not None:
                    self._rollback_vnc(instance, allocated)
                raise
            self._connections[node_id] = connection
            self.store.update_node(node_id, vnc_port=port, guacamole_connection_id=connection.connection_id)
            return connection

    def _rollback_vnc(self, instance: QemuInstance, display: int) -> None:
        try:
            disable_vnc(instance)
        except LabError as exc:
            log("WARN", f"Could not disable VNC on node {instance.node_id} after gateway failure: {exc}")
            return
        self._displays.pop(instance.node_id, None)
        self.displays.release(display)

    def close_remote_view(self, node_id: uuid.UUID) -> None:
        """Delete the gateway connection, then disable VNC on the node."""
        with self.supervisor.node_lock(node_id):
            connection = self._connections.get(node_id)
            if self._reconcile_node(node_id):
                # process exited; its gateway record was dropped during release
                if connection is None:
                    raise VncNotEnabled(node_id)
                return
            instance = self.supervisor.get_instance(node_id)
            live = instance is not None and self.supervisor.is_running(instance)
            if connection is None:
                if not live or instance.vnc_port is None:
                    raise VncNotEnabled(node_id)
                disable_vnc(instance)
            elif live and instance.vnc_port is not None:
                try:
                    self.gateway.delete_with_endpoint_disable(connection, instance)
                except QemuError:
                    # gateway record is already gone at this point
                    self._connections.pop(node_id, None)
                    self.store.update_node(node_id, guacamole_connection_id=None)
                    raise
            else:
                self.gateway.delete(connection)
            self._connections.pop(node_id, None)
            self.displays.release(self._displays.pop(node_id, None))
            self.store.update_node(node_id, vnc_port=None, guacamole_connection_id=None)

    def create_vnc_connection(
        self, vnc_host: str, vnc_port: int, connection_name: Optional[str] = None
    ) -> GuacamoleConnection:
        """Register an arbitrary VNC endpoint with the gateway."""
        return self.gateway.create(connection_name or DEFAULT_CONNECTION_NAME, vnc_host, vnc_port)

    # -- housekeeping ----------------------------------------------------

    def _drop_connection(self, node_id: uuid.UUID) -> None:
        connection = self._connections.pop(node_id, None)
        if connection is None:
            return
        try:
            self.gateway.delete(connection)
        except GatewayError as exc:
            log("WARN", f"Failed to delete gateway connection {connection.connection_id}: {exc}")

    def _release_node(self, node_id: uuid.UUID) -> None:
        self.displays.release(self._displays.pop(node_id, None))
        self.store.update_node(
            node_id,
            status=NodeStatus.STOPPED,
            vnc_port=None,
            guacamole_connection_id=None,
        )

    def _reconcile_node(self, node_id: uuid.UUID) -> bool:
        """Release a node whose QEMU process exited on its own.

        Takes only this node's lock. Returns True when the node was released.
        """
        with self.supervisor.node_lock(node_id):
            if self.supervisor.reap_node(node_id) is None:
                return False
            self._drop_connection(node_id)
            self._release_node(node_id)
            return True

    def reap(self) -> List[uuid.UUID]:
        """Mark nodes whose QEMU process exited on its own as Stopped.

        Nodes are visited one at a time; no two node locks are ever held together.
        """
        stopped = []
        for instance in self.supervisor.instances():
            if self._reconcile_node(instance.node_id):
                stopped.append(instance.node_id)
        for node in self.store.list_nodes():
            if node.status == NodeStatus.RUNNING and self.supervisor.get_instance(node.id) is None:
                with self.supervisor.node_lock(node.id):
                    if self.supervisor.get_instance(node.id) is None:
                        self._release_node(node.id)
                        stopped.append(node.id)
        return stopped

    def shutdown(self) -> None:
        for instance in self.supervisor.instances():
            try:
                self.stop_node(instance.node_id)
            except LabError as exc:
                log("ERROR", f"Failed to stop node {instance.node_id}: {exc}")
        self._executor.shutdown(wait=True)
