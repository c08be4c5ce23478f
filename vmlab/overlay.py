"""Copy-on-write overlay management (qcow2 via qemu-img) for vmlab."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from vmlab.constants import DEFAULT_QEMU_IMG, OVERLAY_FORMAT
from vmlab.exceptions import NodeAlreadyRunning, OverlayError, OverlayInUse
from vmlab.models import Image, Node, NodeStatus
from vmlab.paths import resolve_within
from vmlab.utils import ensure_directory, log, run


class OverlayRegistry:
    """Overlay files currently opened for writing by a live QEMU process."""

    def __init__(self) -> None:
        self._paths: Set[Path] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _key(path: Path) -> Path:
        return Path(os.path.realpath(path))

    def attach(self, path: Path) -> None:
        key = self._key(path)
        with self._lock:
            if key in self._paths:
                raise OverlayInUse(f"Overlay {path} is already attached to a running process")
            self._paths.add(key)

    def detach(self, path: Path) -> None:
        with self._lock:
            self._paths.discard(self._key(path))

    def is_in_use(self, path: Path) -> bool:
        with self._lock:
            return self._key(path) in self._paths


def _temp_sibling(path: Path, tag: str) -> Path:
    return path.with_name(f".{path.name}.{tag}-{uuid.uuid4().hex[:8]}")


class OverlayManager:
    def __init__(
        self,
        image_dir: Path,
        overlay_dir: Path,
        qemu_img: str = DEFAULT_QEMU_IMG,
        registry: Optional[OverlayRegistry] = None,
    ) -> None:
        self.image_dir = Path(image_dir)
        self.overlay_dir = Path(overlay_dir)
        self.qemu_img = qemu_img
        self.registry = registry or OverlayRegistry()

    # -- paths ---------------------------------------------------------

    def image_path(self, image: Image) -> Path:
        return resolve_within(self.image_dir, image.path)

    def instance_overlay_path(self, node: Node) -> Path:
        return resolve_within(self.overlay_dir, node.instance_overlay_path)

    # -- qemu-img wrappers -----------------------------------------------

    def _qemu_img(self, args: List[str], action: str) -> subprocess.CompletedProcess:
        cmd = [self.qemu_img] + args
        try:
            return run(cmd, capture_output=True)
        except FileNotFoundError as exc:
            raise OverlayError(f"{self.qemu_img} not found; cannot {action}") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip() or f"exit code {exc.returncode}"
            raise OverlayError(f"Failed to {action}: {detail}") from exc

    def info(self, path: Path) -> Dict[str, Any]:
        # -U: read the header even while a running QEMU holds the image lock
        result = self._qemu_img(["info", "-U", "--output=json", str(path)], f"inspect {path}")
        try:
            data = json.loads(result.stdout)
        except ValueError as exc:
            raise OverlayError(f"Unreadable qemu-img info output for {path}") from exc
        if not isinstance(data, dict):
            raise OverlayError(f"Unreadable qemu-img info output for {path}")
        return data

    def backing_file(self, path: Path) -> Optional[Path]:
        data = self.info(path)
        backing = data.get("full-backing-filename") or data.get("backing-filename")
        if not backing:
            return None
        backing_path = Path(backing)
        if not backing_path.is_absolute():
            backing_path = path.parent / backing_path
        return backing_path

    def check(self, path: Path) -> None:
        self._qemu_img(["check", "-q", str(path)], f"verify {path} (image may be corrupted)")

    # -- operations --------------------------------------------------------

    def create_overlay(self, backing_path: Path, overlay_path: Path) -> None:
        """Create a qcow2 overlay backed by ``backing_path``."""
        if not backing_path.is_file():
            raise OverlayError(f"Backing image not found: {backing_path}")
        if os.path.lexists(overlay_path):
            raise OverlayError(f"Overlay already exists: {overlay_path}")
        backing_format = self.info(backing_path).get("format") or OVERLAY_FORMAT
        ensure_directory(overlay_path.parent)
        log("INFO", f"Creating overlay {overlay_path} (backing {backing_path}, {backing_format})")
        try:
            self._qemu_img(
                [
                    "create",
                    "-q",
                    "-f",
                    OVERLAY_FORMAT,
                    "-b",
                    str(backing_path),
                    "-F",
                    backing_format,
                    str(overlay_path),
                ],
                f"create overlay {overlay_path}",
            )
        except OverlayError:
            overlay_path.unlink(missing_ok=True)
            raise
        if not overlay_path.is_file():
            raise OverlayError(f"qemu-img reported success but {overlay_path} was not created")

    def create_instance_overlay(self, node: Node, image: Image) -> Path:
        """Create the node's overlay on top of ``image`` unless it already exists."""
        backing = self.image_path(image)
        overlay = self.instance_overlay_path(node)
        if overlay.exists():
            log("DEBUG", f"Instance overlay for {node.name} already present at {overlay}")
            return overlay
        self.create_overlay(backing, overlay)
        return overlay

    def delete_overlay(self, overlay_path: Path) -> None:
        if self.registry.is_in_use(overlay_path):
            raise OverlayInUse(f"Overlay {overlay_path} is in use by a running process")
        if not overlay_path.is_file():
            raise OverlayError(f"Overlay not found: {overlay_path}")
        overlay_path.unlink()
        log("INFO", f"Deleted overlay {overlay_path}")

    def remove_overlay(self, overlay_path: Path) -> Path:
        """Commit an overlay into its backing file and delete it.

        The commit happens on a scratch copy of the backing file which only
        replaces the real one once ``qemu-img check`` passes, so a failure at
        any step leaves both the overlay and the backing file untouched.
        Returns the backing file path.
        """
        if self.registry.is_in_use(overlay_path):
            raise OverlayInUse(f"Overlay {overlay_path} is in use by a running process")
        if not overlay_path.is_file():
            raise OverlayError(f"Overlay not found: {overlay_path}")
        info = self.info(overlay_path)
        if info.get("format") != OVERLAY_FORMAT:
            raise OverlayError(f"{overlay_path} is not a {OVERLAY_FORMAT} image (format={info.get('format')})")
        backing = self.backing_file(overlay_path)
        if backing is None:
            raise OverlayError(f"{overlay_path} has no backing file; nothing to commit into")
        if not backing.is_file():
            raise OverlayError(f"Backing file of {overlay_path} is missing: {backing}")
        if self.registry.is_in_use(backing):
            raise OverlayInUse(f"Backing file {backing} is in use by a running process")
        backing_format = self.info(backing).get("format") or OVERLAY_FORMAT

        self.check(overlay_path)
        scratch_backing = _temp_sibling(backing, "commit")
        scratch_overlay = _temp_sibling(overlay_path, "commit")
        log("INFO", f"Committing {overlay_path} into {backing}")
        try:
            shutil.copy2(backing, scratch_backing)
            shutil.copy2(overlay_path, scratch_overlay)
            self._qemu_img(
                ["rebase", "-u", "-b", str(scratch_backing), "-F", backing_format, str(scratch_overlay)],
                f"point scratch overlay at {scratch_backing}",
            )
            self._qemu_img(["commit", "-q", "-d", str(scratch_overlay)], f"commit {overlay_path}")
            self.check(scratch_backing)
            os.replace(scratch_backing, backing)
        except OSError as exc:
            raise OverlayError(f"Failed to commit {overlay_path}: {exc}") from exc
        finally:
            scratch_backing.unlink(missing_ok=True)
            scratch_overlay.unlink(missing_ok=True)

        overlay_path.unlink()
        log("SUCCESS", f"Collapsed {overlay_path} into {backing}")
        return backing

    def wipe_node(self, node: Node, image: Image) -> Path:
        """Replace the node's overlay with a fresh one backed by ``image``.

        The new overlay is built under a temporary name and renamed over the
        old one, so callers see either the old file or the new one.
        """
        if node.status != NodeStatus.STOPPED:
            raise NodeAlreadyRunning(node.id)
        backing = self.image_path(image)
        overlay = self.instance_overlay_path(node)
        if self.registry.is_in_use(overlay):
            raise OverlayInUse(f"Overlay {overlay} is in use by a running process")
        scratch = _temp_sibling(overlay, "wipe")
        try:
            self.create_overlay(backing, scratch)
            os.replace(scratch, overlay)
        except OSError as exc:
            raise OverlayError(f"Failed to wipe overlay {overlay}: {exc}") from exc
        finally:
            scratch.unlink(missing_ok=True)
        log("SUCCESS", f"Wiped node {node.name}; fresh overlay at {overlay}")
        return overlay
