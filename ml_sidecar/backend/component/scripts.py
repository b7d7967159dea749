"""Materialize backend worker scripts into the shared scripts directory."""

import logging
from pathlib import Path
from typing import List, Optional

from ml_sidecar import PACKAGE_DIR
from ml_sidecar.model.backends.base import BackendDescriptor
from ml_sidecar.utils.fs import atomic_write_text

WORKERS_DIR = PACKAGE_DIR / "model" / "workers"

LOGGER = logging.getLogger("ml_sidecar.scripts")


class WorkerScripts:
    """Copies packaged worker scripts next to the environments that run them.

    Scripts are rewritten before every use so an upgraded package never runs
    against a stale copy.
    """

    def __init__(self, scripts_dir: Path, source_dir: Optional[Path] = None) -> None:
        self.scripts_dir = Path(scripts_dir).expanduser()
        self.source_dir = source_dir or WORKERS_DIR

    def path_for(self, name: str) -> Path:
        return self.scripts_dir / name

    def write(self, name: str) -> Path:
        content = (self.source_dir / name).read_text(encoding="utf-8")
        target = self.path_for(name)
        atomic_write_text(target, content, mode=0o755)
        LOGGER.debug("Wrote worker script %s", target)
        return target

    def write_all(self, descriptor: BackendDescriptor) -> List[Path]:
        return [self.write(name) for name in descriptor.all_scripts()]


__all__ = ["WORKERS_DIR", "WorkerScripts"]
