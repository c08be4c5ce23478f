"""Tests for vmlab.store module."""

from __future__ import annotations

import uuid

import pytest

from vmlab.exceptions import ConfigError, DuplicateNode, ImageNotFound, NodeNotFound
from vmlab.models import NodeStatus
from vmlab.store import LabStore, load_inventory

INVENTORY = """
images:
  ubuntu-base:
    path: base.qcow2
    description: Ubuntu 24.04 cloud image
  ubuntu-web:
    path: child.qcow2
    parent: ubuntu-base
nodes:
  web-1:
    image: ubuntu-web
  web-2:
    image: ubuntu-web
    overlay: custom/web-2.qcow2
"""


def _write(tmp_path, text):
    path = tmp_path / "lab.yaml"
    path.write_text(text)
    return path


class TestLabStore:
    def test_create_node_defaults(self, sample_store):
        node = sample_store.find_node("web-1")
        assert node.status == NodeStatus.STOPPED
        assert node.instance_overlay_path == f"{node.id}.qcow2"
        assert node.vnc_port is None

    def test_duplicate_node_name(self, sample_store):
        image = sample_store.find_image("ubuntu-web")
        with pytest.raises(DuplicateNode):
            sample_store.create_node("web-1", image.id)

    def test_create_node_unknown_image(self):
        with pytest.raises(ImageNotFound):
            LabStore().create_node("x", uuid.uuid4())

    def test_get_node_returns_copy(self, sample_store):
        node = sample_store.find_node("web-1")
        node.status = NodeStatus.RUNNING
        assert sample_store.get_node(node.id).status == NodeStatus.STOPPED

    def test_update_node_only_touches_given_fields(self, sample_store):
        node = sample_store.find_node("web-1")
        sample_store.update_node(node.id, vnc_port=5901, guacamole_connection_id="7")
        updated = sample_store.update_node(node.id, status="Running")
        assert updated.status == NodeStatus.RUNNING
        assert updated.vnc_port == 5901
        assert updated.guacamole_connection_id == "7"

    def test_update_unknown_node(self):
        with pytest.raises(NodeNotFound):
            LabStore().update_node(uuid.uuid4(), vnc_port=None)

    def test_find_by_id_string(self, sample_store):
        node = sample_store.find_node("web-1")
        assert sample_store.find_node(str(node.id)).name == "web-1"


class TestLoadInventory:
    def test_loads_images_and_nodes(self, tmp_path):
        store = load_inventory(_write(tmp_path, INVENTORY))
        base = store.find_image("ubuntu-base")
        web = store.find_image("ubuntu-web")
        assert base.is_base_image()
        assert base.description == "Ubuntu 24.04 cloud image"
        assert web.parent_id == base.id
        assert [node.name for node in store.list_nodes()] == ["web-1", "web-2"]
        assert store.find_node("web-2").instance_overlay_path == "custom/web-2.qcow2"

    def test_ids_are_stable_across_loads(self, tmp_path):
        path = _write(tmp_path, INVENTORY)
        first = load_inventory(path).find_node("web-1").id
        second = load_inventory(path).find_node("web-1").id
        assert first == second

    def test_explicit_ids(self, tmp_path):
        image_id = uuid.uuid4()
        text = f"images:\n  base:\n    path: b.qcow2\n    id: {image_id}\nnodes: {{}}\n"
        store = load_inventory(_write(tmp_path, text))
        assert store.find_image("base").id == image_id

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="missing"):
            load_inventory(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_inventory(_write(tmp_path, "images: [unclosed"))

    def test_unknown_parent(self, tmp_path):
        text = "images:\n  child:\n    path: c.qcow2\n    parent: ghost\n"
        with pytest.raises(ConfigError, match="unknown parent"):
            load_inventory(_write(tmp_path, text))

    def test_unknown_node_image(self, tmp_path):
        text = "images:\n  base:\n    path: b.qcow2\nnodes:\n  n1:\n    image: ghost\n"
        with pytest.raises(ConfigError, match="unknown image"):
            load_inventory(_write(tmp_path, text))

    def test_image_without_path(self, tmp_path):
        with pytest.raises(ConfigError, match="'path'"):
            load_inventory(_write(tmp_path, "images:\n  base: {}\n"))

    def test_bad_uuid(self, tmp_path):
        text = "images:\n  base:\n    path: b.qcow2\n    id: not-a-uuid\n"
        with pytest.raises(ConfigError, match="not a valid UUID"):
            load_inventory(_write(tmp_path, text))
