"""Shared test fixtures: clean environment, image tree, fake qemu-img and QEMU."""

from __future__ import annotations

import json
import subprocess
import uuid
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from vmlab.config import LabConfig
from vmlab.guacamole import build_gateway_config
from vmlab.models import Image, QemuConfig
from vmlab.qemu import QemuSupervisor
from vmlab.store import LabStore


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# Every variable parse_env() reads, cleared for a clean slate.
_PARSE_ENV_VARS = [
    "IMAGE_DIR",
    "OVERLAY_DIR",
    "RUN_DIR",
    "LAB_INVENTORY",
    "QEMU_BINARY",
    "QEMU_IMG",
    "GUAC_URL",
    "GUAC_HOST",
    "GUAC_PORT",
    "GUAC_HTTPS",
    "GUAC_API_PATH",
    "GUAC_TUNNEL_PATH",
    "GUAC_WEBSOCKET_URL",
    "GUAC_CONNECTION_PREFIX",
    "GUAC_ADMIN_USER",
    "GUAC_ADMIN_PASS",
    "GUAC_USER",
    "GUAC_PASS",
    "GATEWAY_TIMEOUT",
    "VNC_DISPLAY_START",
    "VNC_DISPLAY_END",
    "VNC_HOST",
    "VNC_LISTEN",
    "SHUTDOWN_TIMEOUT",
    "KILL_TIMEOUT",
    "MONITOR_TIMEOUT",
    "MEMORY",
    "CPUS",
    "ENABLE_KVM",
    "MACHINE",
    "NETWORK_MODE",
    "EXTRA_ARGS",
    "WORKERS",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "BACKEND_DB",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def minimal_env(clean_env, mock_env, image_tree):
    """Set the required variables so parse_env() succeeds."""
    mock_env(
        IMAGE_DIR=image_tree.image_dir,
        OVERLAY_DIR=image_tree.overlay_dir,
        RUN_DIR=image_tree.run_dir,
        GUAC_URL="http://guac.local:8080/guacamole",
        GUAC_API_PATH="api",
        GUAC_TUNNEL_PATH="websocket-tunnel",
        GUAC_CONNECTION_PREFIX="lab",
        GUAC_ADMIN_USER="guacadmin",
        GUAC_ADMIN_PASS="secret",
        ENABLE_KVM="0",
    )


@pytest.fixture
def image_tree(tmp_path):
    """A base image and a child image under images/, plus empty overlay and run dirs."""
    root = tmp_path.resolve()
    image_dir = root / "images"
    overlay_dir = root / "overlays"
    run_dir = root / "run"
    for directory in (image_dir, overlay_dir, run_dir):
        directory.mkdir()
    (image_dir / "base.qcow2").write_bytes(b"base-data")
    (image_dir / "child.qcow2").write_bytes(b"child-data")
    return SimpleNamespace(root=root, image_dir=image_dir, overlay_dir=overlay_dir, run_dir=run_dir)


@pytest.fixture
def sample_store() -> LabStore:
    """ubuntu-base <- ubuntu-web, with node web-1 on ubuntu-web."""
    store = LabStore()
    base = store.add_image(Image(id=uuid.uuid4(), name="ubuntu-base", path="base.qcow2"))
    child = store.add_image(
        Image(id=uuid.uuid4(), name="ubuntu-web", path="child.qcow2", parent_id=base.id)
    )
    store.create_node("web-1", child.id)
    return store


class FakeQemuImg:
    """Stands in for vmlab.overlay.run; keeps qcow2 backing links in a dict."""

    def __init__(self) -> None:
        self.calls = []
        self.backing = {}
        self.fail = {}
        # (subcommand, path substring, stderr)
        self.fail_matching = None

    def subcommands(self):
        return [cmd[1] for cmd in self.calls]

    def __call__(self, cmd, check=True, **kwargs):
        self.calls.append(list(cmd))
        sub = cmd[1]
        if sub in self.fail:
            raise subprocess.CalledProcessError(1, cmd, output="", stderr=self.fail[sub])
        if self.fail_matching and sub == self.fail_matching[0] and self.fail_matching[1] in cmd[-1]:
            raise subprocess.CalledProcessError(1, cmd, output="", stderr=self.fail_matching[2])
        stdout = ""
        if sub == "info":
            path = cmd[-1]
            data = {"filename": path, "format": "qcow2"}
            if path in self.backing:
                data["full-backing-filename"] = self.backing[path]
            stdout = json.dumps(data)
        elif sub == "create":
            path = cmd[-1]
            Path(path).write_bytes(b"overlay")
            self.backing[path] = cmd[cmd.index("-b") + 1]
        elif sub == "rebase":
            self.backing[cmd[-1]] = cmd[cmd.index("-b") + 1]
        elif sub == "commit":
            overlay = cmd[-1]
            with open(self.backing[overlay], "ab") as backing:
                backing.write(Path(overlay).read_bytes())
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")


@pytest.fixture
def fake_qemu_img(monkeypatch, image_tree):
    fake = FakeQemuImg()
    fake.backing[str(image_tree.image_dir / "child.qcow2")] = str(image_tree.image_dir / "base.qcow2")
    monkeypatch.setattr("vmlab.overlay.run", fake)
    return fake


class FakeProcess:
    """Minimal subprocess.Popen double for a QEMU process."""

    def __init__(
        self,
        args=None,
        exits_on_wait: bool = True,
        dies_on_kill: bool = True,
        pid: int = 4242,
        returncode=None,
    ):
        self.args = args
        self.pid = pid
        self.returncode = returncode
        self.exits_on_wait = exits_on_wait
        self.dies_on_kill = dies_on_kill
        self.killed = False

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self.returncode is None:
            if not self.exits_on_wait:
                raise subprocess.TimeoutExpired("qemu-system-x86_64", timeout)
            self.returncode = 0
        return self.returncode

    def kill(self):
        self.killed = True
        if self.dies_on_kill:
            self.returncode = -9


@pytest.fixture
def fake_popen(monkeypatch):
    """Patch Popen in vmlab.qemu; spawned FakeProcess objects land in ``processes``."""
    spawned = []
    options = {}

    def _popen(args, **kwargs):
        opts = dict(options)
        output = opts.pop("output", None)
        if output:
            kwargs["stdout"].write(output)
        process = FakeProcess(args, **opts)
        process.popen_kwargs = kwargs
        spawned.append(process)
        return process

    monkeypatch.setattr("vmlab.qemu.subprocess.Popen", _popen)
    return SimpleNamespace(processes=spawned, options=options)


@pytest.fixture
def fake_monitor(monkeypatch):
    """Replace the QMP handshake with a MagicMock channel."""
    monitor = MagicMock()
    monitor.execute.return_value = {"return": {}}
    monkeypatch.setattr(QemuSupervisor, "_open_monitor", lambda self, instance: monitor)
    return monitor


@pytest.fixture
def gateway_config():
    return build_gateway_config(
        base_url="http://guac.local:8080/guacamole/",
        api_path="api",
        tunnel_path="websocket-tunnel",
        connection_prefix="lab",
        username="guacadmin",
        password="secret",
    )


@pytest.fixture
def lab_config(image_tree, gateway_config) -> LabConfig:
    return LabConfig(
        image_dir=image_tree.image_dir,
        overlay_dir=image_tree.overlay_dir,
        run_dir=image_tree.run_dir,
        inventory_path=image_tree.root / "lab.yaml",
        gateway=gateway_config,
        qemu=QemuConfig(memory_mb=512, cpu_cores=1, enable_kvm=False),
        vnc_display_start=0,
        vnc_display_end=3,
        vnc_host="10.0.0.5",
        shutdown_timeout=1.0,
        kill_timeout=1.0,
        workers=2,
    )
