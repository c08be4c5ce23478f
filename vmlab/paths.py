"""Sandboxed path resolution for image and overlay directories."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Union

from vmlab.exceptions import PathError, PathTraversal


def _is_within(candidate: Path, base: Path) -> bool:
    return candidate == base or base in candidate.parents


def resolve_within(base_dir: Union[str, Path], relative_path: str) -> Path:
    """Return the canonical form of ``base_dir / relative_path``.

    The target does not need to exist yet; in that case its parent directory is
    canonicalized and the file name re-appended. The result always lies inside
    the canonical ``base_dir`` or :class:`PathTraversal` is raised.
    """
    if not relative_path or "\x00" in relative_path:
        raise PathError(f"Invalid path: {relative_path!r}")
    try:
        base = Path(base_dir).resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise PathError(f"Invalid base directory {base_dir}: {exc}") from exc

    full_path = base / relative_path
    if not _is_within(Path(os.path.normpath(full_path)), base):
        raise PathTraversal(f"{relative_path} is outside the allowed directory")
    try:
        if os.path.lexists(full_path):
            candidate = full_path.resolve(strict=True)
        else:
            name = full_path.name
            if not name or name in {".", ".."}:
                raise PathError(f"Invalid path: {relative_path} has no file name")
            candidate = full_path.parent.resolve(strict=True) / name
    except (OSError, RuntimeError) as exc:
        # dangling symlinks and missing parents end up here
        raise PathError(f"Invalid path {relative_path}: {exc}") from exc

    if not _is_within(candidate, base):
        raise PathTraversal(f"{relative_path} is outside the allowed directory")
    return candidate
