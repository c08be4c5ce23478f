"""In-memory image/node records and YAML inventory loading for vmlab.

The records normally live in a database owned by another service; this store
is the boundary the lifecycle code talks to (lookups by id, status and overlay
field updates).
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from vmlab.constants import OVERLAY_SUFFIX
from vmlab.exceptions import ConfigError, DuplicateNode, ImageNotFound, NodeNotFound
from vmlab.models import Image, Node, NodeStatus
from vmlab.utils import log

_ID_NAMESPACE = uuid.UUID("6f1c1f3e-2b0e-4c55-9a57-3d0f3c1e9b21")

_UNSET: Any = object()


def _stable_id(kind: str, name: str) -> uuid.UUID:
    return uuid.uuid5(_ID_NAMESPACE, f"{kind}:{name}")


def _parse_uuid(raw: Any, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise ConfigError(f"{label}: '{raw}' is not a valid UUID")


class LabStore:
    def __init__(self) -> None:
        self._images: Dict[uuid.UUID, Image] = {}
        self._nodes: Dict[uuid.UUID, Node] = {}
        self._lock = threading.RLock()

    def add_image(self, image: Image) -> Image:
        with self._lock:
            self._images[image.id] = image
        return image

    def get_image(self, image_id: uuid.UUID) -> Image:
        with self._lock:
            try:
                return self._images[image_id]
            except KeyError:
                raise ImageNotFound(image_id) from None

    def find_image(self, name_or_id: str) -> Image:
        with self._lock:
            for image in self._images.values():
                if image.name == name_or_id or str(image.id) == name_or_id:
                    return image
        raise ImageNotFound(name_or_id)

    def list_images(self) -> List[Image]:
        with self._lock:
            return sorted(self._images.values(), key=lambda image: image.name)

    def add_node(self, node: Node) -> Node:
        with self._lock:
            for existing in self._nodes.values():
                if existing.name == node.name and existing.id != node.id:
                    raise DuplicateNode(f"Node name '{node.name}' already exists")
            self._nodes[node.id] = node
        return node

    def create_node(self, name: str, image_id: uuid.UUID, node_id: Optional[uuid.UUID] = None) -> Node:
        """Register a new Stopped node; its overlay is created on first run."""
        self.get_image(image_id)
        new_id = node_id or uuid.uuid4()
        node = Node(
            id=new_id,
            name=name,
            image_id=image_id,
            instance_overlay_path=f"{new_id}{OVERLAY_SUFFIX}",
        )
        return self.add_node(node)

    def get_node(self, node_id: uuid.UUID) -> Node:
        """Return a copy of the node record; mutate through update_node."""
        with self._lock:
            try:
                return replace(self._nodes[node_id])
            except KeyError:
                raise NodeNotFound(node_id) from None

    def find_node(self, name_or_id: str) -> Node:
        with self._lock:
            for node in self._nodes.values():
                if node.name == name_or_id or str(node.id) == name_or_id:
                    return replace(node)
        raise NodeNotFound(name_or_id)

    def list_nodes(self) -> List[Node]:
        with self._lock:
            return [replace(node) for node in sorted(self._nodes.values(), key=lambda node: node.name)]

    def update_node(
        self,
        node_id: uuid.UUID,
        status: Any = _UNSET,
        vnc_port: Any = _UNSET,
        guacamole_connection_id: Any = _UNSET,
        instance_overlay_path: Any = _UNSET,
    ) -> Node:
        changes: Dict[str, Any] = {}
        if status is not _UNSET:
            changes["status"] = NodeStatus(status)
        if vnc_port is not _UNSET:
            changes["vnc_port"] = vnc_port
        if guacamole_connection_id is not _UNSET:
            changes["guacamole_connection_id"] = guacamole_connection_id
        if instance_overlay_path is not _UNSET:
            changes["instance_overlay_path"] = instance_overlay_path
        with self._lock:
            try:
                current = self._nodes[node_id]
            except KeyError:
                raise NodeNotFound(node_id) from None
            updated = replace(current, **changes)
            self._nodes[node_id] = updated
            return replace(updated)


def load_inventory(path: Path, store: Optional[LabStore] = None) -> LabStore:
    """Populate a store from a YAML inventory.

    Layout::

        images:
          ubuntu-base: {path: ubuntu-base.qcow2}
          ubuntu-docker: {path: ubuntu-docker.qcow2, parent: ubuntu-base}
        nodes:
          web-1: {image: ubuntu-docker}
    """
    if not path.exists():
        raise ConfigError(f"Lab inventory missing: {path}")
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Lab inventory {path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise ConfigError(f"Lab inventory {path} must be a mapping")

    store = store or LabStore()
    images_raw = data.get("images") or {}
    nodes_raw = data.get("nodes") or {}
    if not isinstance(images_raw, dict) or not isinstance(nodes_raw, dict):
        raise ConfigError("Lab inventory 'images' and 'nodes' must be mappings keyed by name")
    images_raw = {str(name): entry for name, entry in images_raw.items()}
    nodes_raw = {str(name): entry for name, entry in nodes_raw.items()}

    ids: Dict[str, uuid.UUID] = {}
    for name, entry in images_raw.items():
        entry = entry or {}
        if not isinstance(entry, dict):
            raise ConfigError(f"[images.{name}] entry is not a mapping")
        if not entry.get("path"):
            raise ConfigError(f"[images.{name}] missing required field 'path'")
        raw_id = entry.get("id")
        ids[name] = _parse_uuid(raw_id, f"[images.{name}] id") if raw_id else _stable_id("image", name)

    known_ids = set(ids.values())
    for name, entry in images_raw.items():
        entry = entry or {}
        parent_ref = entry.get("parent")
        parent_id: Optional[uuid.UUID] = None
        if parent_ref is not None:
            parent_ref = str(parent_ref)
            if parent_ref in ids:
                parent_id = ids[parent_ref]
            else:
                try:
                    parent_id = uuid.UUID(parent_ref)
                except ValueError:
                    parent_id = None
                if parent_id not in known_ids:
                    raise ConfigError(f"[images.{name}] unknown parent '{parent_ref}'")
        store.add_image(
            Image(
                id=ids[name],
                name=str(name),
                path=str(entry["path"]),
                parent_id=parent_id,
                description=entry.get("description"),
            )
        )

    for name, entry in nodes_raw.items():
        entry = entry or {}
        if not isinstance(entry, dict):
            raise ConfigError(f"[nodes.{name}] entry is not a mapping")
        image_ref = entry.get("image")
        if image_ref is None:
            raise ConfigError(f"[nodes.{name}] missing required field 'image'")
        image_ref = str(image_ref)
        try:
            image = store.find_image(image_ref)
        except ImageNotFound:
            raise ConfigError(f"[nodes.{name}] unknown image '{image_ref}'")
        raw_id = entry.get("id")
        node_id = _parse_uuid(raw_id, f"[nodes.{name}] id") if raw_id else _stable_id("node", name)
        store.add_node(
            Node(
                id=node_id,
                name=str(name),
                image_id=image.id,
                instance_overlay_path=str(entry.get("overlay") or f"{node_id}{OVERLAY_SUFFIX}"),
            )
        )

    log("DEBUG", f"Loaded {len(images_raw)} images and {len(nodes_raw)} nodes from {path}")
    return store
