"""Resumable, supersedable multi-file model downloads over HTTP."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Optional, Tuple

import requests

from ml_sidecar.backend.component.model_cache import ModelCache, part_path
from ml_sidecar.backend.core.cancellation import OperationScope
from ml_sidecar.backend.core.progress import ProgressReporter
from ml_sidecar.backend.core.types import DownloadOutcome, ProgressStatus
from ml_sidecar.errors import DownloadFailedError
from ml_sidecar.model.backends.base import ModelFile, ModelManifest
from ml_sidecar.utils.fs import file_size, remove_quietly

LOGGER = logging.getLogger("ml_sidecar.transfer")


def _percent(done: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return done * 100.0 / total


class ResumableTransferManager:
    """Downloads a model manifest file by file into ``<name>.part`` files.

    Cancellation and supersession are observed at every chunk boundary,
    before the chunk is written. A newer download of the same backend
    advances the generation first and then waits here for the transfer lock,
    which the stale loop releases once it notices the invalidation.
    """

    def __init__(
        self,
        cache: ModelCache,
        session: Optional[requests.Session] = None,
        chunk_bytes: int = 1024 * 1024,
        timeout: Tuple[float, float] = (30.0, 60.0),
        lock: Optional[threading.Lock] = None,
    ) -> None:
        self._cache = cache
        self._session = session or requests.Session()
        self._chunk_bytes = chunk_bytes
        self._timeout = timeout
        self._lock = lock or threading.Lock()

    def download(
        self,
        manifest: ModelManifest,
        scope: OperationScope,
        reporter: ProgressReporter,
    ) -> DownloadOutcome:
        existing = self._cache.locate(manifest)
        if existing is not None:
            LOGGER.info("Model %s already present at %s", manifest.name, existing)
            return DownloadOutcome(manifest.name, existing, 0, already_present=True)
        if any(item.size is None for item in manifest.files):
            raise DownloadFailedError(
                f"model {manifest.name} has no sized manifest to download from"
            )

        scope.acquire(self._lock)
        try:
            return self._download_locked(manifest, scope, reporter)
        finally:
            self._lock.release()

    def _download_locked(
        self,
        manifest: ModelManifest,
        scope: OperationScope,
        reporter: ProgressReporter,
    ) -> DownloadOutcome:
        scope.check()
        target_dir = self._cache.download_dir(manifest)
        target_dir.mkdir(parents=True, exist_ok=True)
        total = manifest.total_bytes
        done = 0
        transferred = 0
        reporter.emit(
            0,
            f"Downloading {manifest.name}",
            ProgressStatus.DOWNLOADING,
            current=0,
            total=total,
        )
        for item in manifest.files:
            expected = item.size or 0
            target = target_dir / item.name
            part = part_path(target)
            if target.is_file():
                if file_size(target) == expected:
                    done += expected
                    continue
                LOGGER.warning("Discarding %s with unexpected size", target)
                target.unlink()
            partial = file_size(part)
            if partial > expected:
                LOGGER.warning("Discarding oversize partial file %s", part)
                remove_quietly(part)
                partial = 0
            if partial < expected:
                transferred += self._fetch(
                    manifest, item, part, partial, done, total, scope, reporter
                )
            actual = file_size(part)
            if actual != expected:
                raise DownloadFailedError(
                    f"size mismatch for {item.name}: expected {expected}, got {actual}"
                )
            os.replace(part, target)
            done += expected
            LOGGER.debug("Finished %s (%d bytes)", target, expected)
        LOGGER.info(
            "Downloaded %s to %s (%d bytes transferred)",
            manifest.name,
            target_dir,
            transferred,
        )
        return DownloadOutcome(manifest.name, target_dir, transferred)

    def _fetch(
        self,
        manifest: ModelManifest,
        item: ModelFile,
        part: Path,
        partial: int,
        done: int,
        total: int,
        scope: OperationScope,
        reporter: ProgressReporter,
    ) -> int:
        url = self._cache.descriptor.file_url(manifest, item.name)
        headers = {"Range": f"bytes={partial}-"} if partial > 0 else {}
        scope.check()
        try:
            response = self._session.get(
                url, headers=headers, stream=True, timeout=self._timeout
            )
        except requests.RequestException as exc:
            raise DownloadFailedError(f"{item.name}: {exc}") from exc
        try:
            if response.status_code == 206:
                mode, offset = "ab", partial
            elif response.status_code == 200:
                if partial:
                    LOGGER.info(
                        "Server ignored range request for %s; restarting", item.name
                    )
                mode, offset = "wb", 0
            else:
                raise DownloadFailedError(
                    f"HTTP {response.status_code} while downloading {item.name}"
                )
            received = 0
            with part.open(mode) as fh:
                for chunk in response.iter_content(chunk_size=self._chunk_bytes):
                    scope.check()
                    if not chunk:
                        continue
                    fh.write(chunk)
                    received += len(chunk)
                    offset += len(chunk)
                    reporter.emit(
                        _percent(done + offset, total),
                        f"Downloading {item.name}",
                        current=done + offset,
                        total=total,
                    )
            return received
        except requests.RequestException as exc:
            raise DownloadFailedError(f"{item.name}: {exc}") from exc
        finally:
            response.close()


__all__ = ["ResumableTransferManager"]
