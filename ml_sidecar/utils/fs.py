"""Filesystem helpers shared by the registry, transfer and bridge layers."""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger("ml_sidecar.fs")


def atomic_write_text(path: Path, content: str, mode: Optional[int] = None) -> None:
    """Write ``content`` to ``path`` via a sibling temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        remove_quietly(tmp_path)
        raise


def remove_quietly(path: Optional[Path]) -> None:
    """Delete a scratch file; failures are logged, never raised."""
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        LOGGER.warning("Failed to remove %s: %s", path, exc)


def remove_tree(path: Path) -> None:
    """Delete a directory tree if present."""
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()


def file_size(path: Path) -> int:
    """Return the size of ``path`` or 0 when it does not exist."""
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


__all__ = ["atomic_write_text", "file_size", "remove_quietly", "remove_tree"]
