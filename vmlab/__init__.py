"""vmlab package."""

__all__ = [
    "chain",
    "cli",
    "config",
    "constants",
    "exceptions",
    "guacamole",
    "lab",
    "models",
    "monitor",
    "overlay",
    "paths",
    "qemu",
    "store",
    "utils",
    "vnc",
]
