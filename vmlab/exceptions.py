"""Custom exceptions for vmlab."""

from __future__ import annotations

from typing import Optional


class LabError(RuntimeError):
    """Base class for every error reported at the request boundary."""


class ConfigError(LabError):
    """Raised on missing, empty or invalid startup configuration."""


class PathError(LabError):
    """Raised when a configured path cannot be resolved."""


class PathTraversal(PathError):
    """Raised when a relative path escapes its sandbox directory."""


class ImageNotFound(LabError):
    def __init__(self, image_id) -> None:
        super().__init__(f"Image not found: {image_id}")
        self.image_id = image_id


class DuplicateNode(LabError):
    """Raised when a node name is already taken."""


class NodeNotFound(LabError):
    def __init__(self, node_id) -> None:
        super().__init__(f"Node not found: {node_id}")
        self.node_id = node_id


class OverlayError(LabError):
    """Raised when an overlay cannot be created, committed or deleted."""


class OverlayInUse(OverlayError):
    """Raised when an overlay is attached to a live QEMU process."""


class QemuError(LabError):
    """Raised on QEMU process supervision failures."""


class NodeAlreadyRunning(QemuError):
    def __init__(self, node_id) -> None:
        super().__init__(f"Node is already running: {node_id}")
        self.node_id = node_id


class NodeNotRunning(QemuError):
    def __init__(self, node_id) -> None:
        super().__init__(f"Node is not running: {node_id}")
        self.node_id = node_id


class InvalidConfiguration(QemuError):
    """Raised when launch parameters are missing or out of range."""


class SpawnFailed(QemuError):
    """Raised when the OS refuses to start the QEMU process."""


class ProcessExited(QemuError):
    """Raised when the QEMU process exits while it was expected to run."""


class MonitorError(QemuError):
    """Raised on control socket failures (refused, write error, bad reply)."""


class ShutdownTimeout(QemuError):
    """Raised when a killed process still has not exited after the wait."""


class VncNotEnabled(QemuError):
    def __init__(self, node_id=None) -> None:
        super().__init__("VNC is not enabled for this node")
        self.node_id = node_id


class VncAlreadyEnabled(QemuError):
    def __init__(self, node_id=None) -> None:
        super().__init__("VNC is already enabled for this node")
        self.node_id = node_id


class VncPortAllocationFailed(QemuError):
    """Raised when every display number in the configured range is taken."""


class GatewayError(LabError):
    """Raised on remote-desktop gateway failures."""

    def __init__(self, message: str, status: Optional[int] = None, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.detail = detail


class GatewayUnavailable(GatewayError):
    """Raised when the gateway cannot be reached (timeout, refused)."""


class AuthFailed(GatewayError):
    """Raised when the gateway rejects the admin credentials."""


class ConnectionFailed(GatewayError):
    """Raised when the gateway rejects a connection create or delete."""


class ImageCycleDetected(LabError):
    """Raised when following parent links revisits an image."""
