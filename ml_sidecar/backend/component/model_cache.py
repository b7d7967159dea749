"""Locate model directories in hub-style caches and report download state."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from ml_sidecar.backend.core.types import ModelStatus
from ml_sidecar.errors import ModelNotDownloadedError, UnknownModelError
from ml_sidecar.model.backends.base import BackendDescriptor, ModelHub, ModelManifest
from ml_sidecar.utils.fs import file_size, remove_tree

LOGGER = logging.getLogger("ml_sidecar.model_cache")

PART_SUFFIX = ".part"


def part_path(target: Path) -> Path:
    return target.with_name(target.name + PART_SUFFIX)


class ModelCache:
    """Read-side view of the model caches for one backend.

    Three layouts are probed in order: ``<ns>/<model>``,
    ``models/<ns>/<model>`` and ``models--<ns>--<model>/snapshots/*``.
    Downloads managed here always land in the first layout.
    """

    def __init__(self, descriptor: BackendDescriptor, hub_roots: Dict[ModelHub, Path]):
        self.descriptor = descriptor
        self.hub_root = Path(hub_roots[descriptor.hub]).expanduser()

    def manifest(self, model: Optional[str] = None) -> ModelManifest:
        if model is None:
            return self.descriptor.default_model()
        manifest = self.descriptor.model(model)
        if manifest is None:
            raise UnknownModelError(
                f"unknown {self.descriptor.display_name} model '{model}'"
            )
        return manifest

    def download_dir(self, manifest: ModelManifest) -> Path:
        return self.hub_root / manifest.namespace / manifest.repo_name

    def candidates(self, manifest: ModelManifest) -> List[Path]:
        ns, repo = manifest.namespace, manifest.repo_name
        paths = [
            self.hub_root / ns / repo,
            self.hub_root / "models" / ns / repo,
        ]
        snapshots = self.hub_root / f"models--{ns}--{repo}" / "snapshots"
        if snapshots.is_dir():
            paths.extend(
                sorted(entry for entry in snapshots.iterdir() if entry.is_dir())
            )
        return paths

    def locate(self, manifest: ModelManifest) -> Optional[Path]:
        """Return the first directory holding a complete copy of the model."""
        for candidate in self.candidates(manifest):
            if self._complete(candidate, manifest):
                return candidate
        return None

    def is_downloaded(self, manifest: ModelManifest) -> bool:
        return self.locate(manifest) is not None

    def require(self, model: Optional[str] = None) -> Path:
        manifest = self.manifest(model)
        path = self.locate(manifest)
        if path is None:
            raise ModelNotDownloadedError(
                f"{self.descriptor.display_name} model {manifest.name} "
                "is not downloaded"
            )
        return path

    def partial_bytes(self, manifest: ModelManifest) -> int:
        """Bytes already on disk in the managed layout (finished + ``.part``)."""
        if self.descriptor.hub is ModelHub.HUGGINGFACE:
            # huggingface_hub stores content (and *.incomplete files) as blobs
            blobs = (
                self.hub_root
                / f"models--{manifest.namespace}--{manifest.repo_name}"
                / "blobs"
            )
            if not blobs.is_dir():
                return 0
            return sum(file_size(entry) for entry in blobs.iterdir() if entry.is_file())
        target_dir = self.download_dir(manifest)
        total = 0
        for item in manifest.files:
            target = target_dir / item.name
            if target.exists():
                total += file_size(target)
            else:
                total += file_size(part_path(target))
        return total

    def status(self, manifest: ModelManifest) -> ModelStatus:
        path = self.locate(manifest)
        return ModelStatus(
            name=manifest.name,
            size_label=manifest.size_label,
            downloaded=path is not None,
            partial_bytes=0 if path is not None else self.partial_bytes(manifest),
            path=str(path) if path is not None else None,
        )

    def statuses(self) -> List[ModelStatus]:
        return [self.status(manifest) for manifest in self.descriptor.models]

    def delete(self, model: Optional[str] = None) -> List[Path]:
        """Remove every cached copy of a model, including partial downloads."""
        manifest = self.manifest(model)
        ns, repo = manifest.namespace, manifest.repo_name
        removed: List[Path] = []
        for candidate in (
            self.hub_root / ns / repo,
            self.hub_root / "models" / ns / repo,
            self.hub_root / f"models--{ns}--{repo}",
        ):
            if candidate.exists():
                remove_tree(candidate)
                removed.append(candidate)
        if not removed:
            raise ModelNotDownloadedError(
                f"{self.descriptor.display_name} model {manifest.name} "
                "is not downloaded"
            )
        LOGGER.info("Deleted model %s: %s", manifest.name, removed)
        return removed

    @staticmethod
    def _complete(directory: Path, manifest: ModelManifest) -> bool:
        if not directory.is_dir():
            return False
        for item in manifest.files:
            target = directory / item.name
            if not target.is_file():
                return False
            if item.size is not None and file_size(target) != item.size:
                return False
        return True


__all__ = ["ModelCache", "PART_SUFFIX", "part_path"]
