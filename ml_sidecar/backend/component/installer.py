"""Provision backend environments by shelling out to ``uv``."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from ml_sidecar.backend.component.environment_registry import EnvironmentRegistry
from ml_sidecar.backend.component.scripts import WorkerScripts
from ml_sidecar.backend.core.cancellation import OperationScope
from ml_sidecar.backend.core.progress import ProgressReporter
from ml_sidecar.backend.core.types import EnvironmentVariant, ProgressStatus
from ml_sidecar.errors import (
    InstallFailedError,
    OperationCancelledError,
    OperationSupersededError,
    ToolMissingError,
)

LOGGER = logging.getLogger("ml_sidecar.installer")

PopenFactory = Callable[..., Any]


def locate_uv(
    configured: Optional[str] = None,
    home: Optional[Path] = None,
    windows: Optional[bool] = None,
) -> Optional[Path]:
    """Find ``uv``: configured path, then PATH, then ``~/.local/bin``."""
    if configured:
        path = Path(configured).expanduser()
        return path if path.exists() else None
    found = shutil.which("uv")
    if found:
        return Path(found)
    is_windows = os.name == "nt" if windows is None else windows
    candidate = (home or Path.home()) / ".local" / "bin" / (
        "uv.exe" if is_windows else "uv"
    )
    return candidate if candidate.exists() else None


class DependencyInstaller:
    """Creates a variant environment and installs the backend's packages.

    Each step's child process is polled every ``poll_interval_sec`` so a
    cancelled or superseded install kills it within one interval.
    """

    def __init__(
        self,
        registry: EnvironmentRegistry,
        scripts: WorkerScripts,
        uv_path: Optional[str] = None,
        python_version: str = "3.11",
        poll_interval_sec: float = 0.2,
        popen: Optional[PopenFactory] = None,
        uv_locator: Optional[Callable[[Optional[str]], Optional[Path]]] = None,
    ) -> None:
        self._registry = registry
        self._scripts = scripts
        self._uv_path = uv_path
        self._python_version = python_version
        self._poll_interval_sec = poll_interval_sec
        self._popen = popen or subprocess.Popen
        self._uv_locator = uv_locator or locate_uv

    def tool_path(self) -> Optional[Path]:
        return self._uv_locator(self._uv_path)

    def install(
        self,
        variant: EnvironmentVariant,
        scope: OperationScope,
        reporter: ProgressReporter,
    ) -> Path:
        descriptor = self._registry.descriptor
        if not descriptor.supports(variant):
            raise InstallFailedError(
                f"{descriptor.display_name} has no {variant.value} build"
            )
        scope.check()
        reporter.emit(0, "Checking for uv", ProgressStatus.INSTALLING)
        uv = self.tool_path()
        if uv is None:
            raise ToolMissingError()

        env_dir = self._registry.env_dir(variant)
        if env_dir.exists():
            # Reinstall starts from a clean directory.
            self._registry.uninstall(variant)
        interpreter = self._registry.interpreter_path(env_dir)
        label = variant.value.upper()
        try:
            self._run_step(
                scope,
                reporter,
                10,
                f"Creating Python environment ({label})",
                [uv, "venv", env_dir, "--python", self._python_version],
            )
            self._run_step(
                scope,
                reporter,
                30,
                f"Installing PyTorch ({label}), this may take a few minutes",
                [
                    uv,
                    "pip",
                    "install",
                    "--python",
                    interpreter,
                    *descriptor.runtime_packages,
                    "--index-url",
                    descriptor.index_urls[variant],
                ],
            )
            self._run_step(
                scope,
                reporter,
                60,
                f"Installing {descriptor.display_name}",
                [
                    uv,
                    "pip",
                    "install",
                    "--python",
                    interpreter,
                    *descriptor.extra_packages,
                ],
            )
            scope.check()
            reporter.emit(85, "Writing worker scripts")
            self._scripts.write_all(descriptor)
            scope.check()
        except (OperationCancelledError, OperationSupersededError):
            self._registry.remove_incomplete(variant)
            raise
        self._registry.set_active(variant)
        LOGGER.info(
            "Installed %s %s environment at %s",
            descriptor.backend_id,
            variant.value,
            env_dir,
        )
        return env_dir

    def _run_step(
        self,
        scope: OperationScope,
        reporter: ProgressReporter,
        percent: float,
        text: str,
        argv: Sequence[Any],
    ) -> None:
        scope.check()
        reporter.emit(percent, text)
        command: List[str] = [str(arg) for arg in argv]
        LOGGER.info("Running: %s", " ".join(command))
        try:
            proc = self._popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            raise InstallFailedError(f"{text}: {exc}") from exc
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self._poll_interval_sec)
                break
            except subprocess.TimeoutExpired:
                if scope.superseded() or scope.cancelled():
                    LOGGER.info("Killing installer step: %s", text)
                    proc.kill()
                    proc.communicate()
                    scope.check()
        if proc.returncode != 0:
            detail = (stderr or "").strip() or (stdout or "").strip()
            raise InstallFailedError(
                f"{text} failed: {detail or f'exit code {proc.returncode}'}"
            )
        if stderr:
            LOGGER.debug("%s stderr: %s", command[1], stderr.strip())


__all__ = ["DependencyInstaller", "locate_uv"]
