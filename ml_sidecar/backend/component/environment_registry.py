"""Per-backend environment state: installed/ready variants and the active one."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ml_sidecar.backend.core.types import (
    EnvironmentStatus,
    EnvironmentVariant,
    VariantState,
)
from ml_sidecar.errors import EnvironmentNotInstalledError, EnvironmentNotReadyError
from ml_sidecar.model.backends.base import BackendDescriptor
from ml_sidecar.utils.fs import atomic_write_text, remove_tree

LOGGER = logging.getLogger("ml_sidecar.environment_registry")

_NO_ACTIVE = "none"


def _noop_variant_hook(_variant: EnvironmentVariant) -> None:
    return None


@dataclass
class EnvironmentRegistryHooks:
    """Callbacks invoked before the active variant changes or is removed."""

    before_activate: Callable[[EnvironmentVariant], None] = _noop_variant_hook
    before_remove: Callable[[EnvironmentVariant], None] = _noop_variant_hook


@dataclass(frozen=True)
class VerifyResult:
    variant: EnvironmentVariant
    ok: bool
    detail: str


class EnvironmentRegistry:
    """Tracks the CPU/GPU environments of one backend under ``config_root``.

    Readiness is a filesystem heuristic (interpreter + marker package
    directory); ``verify`` is the slow path that actually imports the marker.
    Every mutation runs under the backend lock.
    """

    def __init__(
        self,
        descriptor: BackendDescriptor,
        config_root: Path,
        lock: Optional[threading.RLock] = None,
        hooks: Optional[EnvironmentRegistryHooks] = None,
        verify_timeout_sec: float = 60.0,
        windows: Optional[bool] = None,
    ) -> None:
        self.descriptor = descriptor
        self.config_root = Path(config_root).expanduser()
        self.hooks = hooks or EnvironmentRegistryHooks()
        self._lock = lock or threading.RLock()
        self._verify_timeout_sec = verify_timeout_sec
        self._windows = os.name == "nt" if windows is None else windows

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def env_dir(self, variant: EnvironmentVariant) -> Path:
        return self.config_root / f"{self.descriptor.backend_id}-env-{variant.value}"

    @property
    def marker_path(self) -> Path:
        return self.config_root / f"{self.descriptor.backend_id}-active-env"

    @property
    def legacy_dir(self) -> Path:
        return self.config_root / f"{self.descriptor.backend_id}-env"

    @property
    def scripts_dir(self) -> Path:
        return self.config_root / "scripts"

    def interpreter_path(self, env_dir: Path) -> Path:
        if self._windows:
            return env_dir / "Scripts" / "python.exe"
        return env_dir / "bin" / "python"

    def probe(self) -> EnvironmentStatus:
        """Report variant states, repairing the active marker if needed."""
        with self._lock:
            self.migrate_legacy_layout()
            status = self._snapshot()
            healed = self._heal(status)
            if healed != status.active:
                if status.active is not None and healed is not None:
                    self.hooks.before_activate(healed)
                LOGGER.warning(
                    "Active %s environment repaired: %s -> %s",
                    self.descriptor.backend_id,
                    status.active.value if status.active else _NO_ACTIVE,
                    healed.value if healed else _NO_ACTIVE,
                )
                self._write_marker(healed)
                status = replace(status, active=healed)
            return status

    def set_active(self, variant: EnvironmentVariant) -> EnvironmentStatus:
        """Mark a ready variant active, stopping dependents first."""
        with self._lock:
            status = self.probe()
            if not status.state(variant).ready:
                raise EnvironmentNotReadyError(
                    f"{self.descriptor.display_name} {variant.value} environment "
                    "is not ready"
                )
            if status.active is variant:
                return status
            self.hooks.before_activate(variant)
            self._write_marker(variant)
            LOGGER.info(
                "Activated %s environment for %s",
                variant.value,
                self.descriptor.backend_id,
            )
            return replace(status, active=variant)

    def migrate_legacy_layout(self) -> bool:
        """Move a single-directory legacy environment into the dual layout."""
        with self._lock:
            legacy = self.legacy_dir
            if not legacy.is_dir():
                return False
            cpu_dir = self.env_dir(EnvironmentVariant.CPU)
            gpu_dir = self.env_dir(EnvironmentVariant.GPU)
            if cpu_dir.exists() or gpu_dir.exists():
                LOGGER.info("Removing superseded legacy environment %s", legacy)
                remove_tree(legacy)
                return False
            variant = EnvironmentVariant.CPU
            marker = self.descriptor.legacy_gpu_marker
            if (
                marker
                and (legacy / marker).exists()
                and self.descriptor.supports(EnvironmentVariant.GPU)
            ):
                variant = EnvironmentVariant.GPU
            target = self.env_dir(variant)
            legacy.rename(target)
            self._write_marker(variant)
            LOGGER.info("Migrated legacy environment %s -> %s", legacy, target)
            return True

    def uninstall(
        self, variant: Optional[EnvironmentVariant] = None
    ) -> EnvironmentStatus:
        """Remove one variant (or every installed one when ``variant`` is None)."""
        with self._lock:
            status = self.probe()
            if variant is None:
                targets = [
                    state.variant
                    for state in (status.cpu, status.gpu)
                    if state.installed
                ]
                if not targets:
                    raise EnvironmentNotInstalledError(
                        f"no {self.descriptor.display_name} environment is installed"
                    )
            else:
                if not status.state(variant).installed:
                    raise EnvironmentNotInstalledError(
                        f"{self.descriptor.display_name} {variant.value} "
                        "environment is not installed"
                    )
                targets = [variant]
            if status.active is not None and status.active in targets:
                self.hooks.before_remove(status.active)
                self._write_marker(None)
            for target in targets:
                LOGGER.info(
                    "Removing %s %s environment",
                    self.descriptor.backend_id,
                    target.value,
                )
                remove_tree(self.env_dir(target))
            return self.probe()

    def remove_incomplete(self, variant: EnvironmentVariant) -> None:
        """Delete a variant directory left behind by an interrupted install."""
        with self._lock:
            env_dir = self.env_dir(variant)
            if env_dir.exists():
                LOGGER.info("Removing incomplete environment %s", env_dir)
                remove_tree(env_dir)
            self.probe()

    def interpreter_for(self, variant: EnvironmentVariant) -> Path:
        with self._lock:
            status = self.probe()
            state = status.state(variant)
            if not state.ready:
                raise EnvironmentNotReadyError(
                    f"{self.descriptor.display_name} {variant.value} environment "
                    "is not ready"
                )
            return self.interpreter_path(state.path)

    def active_interpreter(self) -> Tuple[EnvironmentVariant, Path]:
        with self._lock:
            status = self.probe()
            if status.active is None:
                raise EnvironmentNotReadyError(
                    f"{self.descriptor.display_name} environment is not installed"
                )
            return status.active, self.interpreter_path(
                self.env_dir(status.active)
            )

    def verify(self, variant: Optional[EnvironmentVariant] = None) -> VerifyResult:
        """Import the marker package with the environment's interpreter."""
        if variant is None:
            variant, interpreter = self.active_interpreter()
        else:
            interpreter = self.interpreter_for(variant)
        marker = self.descriptor.marker_package
        try:
            completed = subprocess.run(
                [str(interpreter), "-c", f"import {marker}"],
                capture_output=True,
                text=True,
                timeout=self._verify_timeout_sec,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return VerifyResult(variant, False, f"import {marker} timed out")
        except OSError as exc:
            return VerifyResult(variant, False, str(exc))
        if completed.returncode != 0:
            detail = _last_line(completed.stderr) or f"exit code {completed.returncode}"
            return VerifyResult(variant, False, detail)
        return VerifyResult(variant, True, f"import {marker} ok")

    def _snapshot(self) -> EnvironmentStatus:
        states = {
            variant: self._variant_state(variant) for variant in EnvironmentVariant
        }
        active = self._read_marker()
        return EnvironmentStatus(
            cpu=states[EnvironmentVariant.CPU],
            gpu=states[EnvironmentVariant.GPU],
            active=active,
        )

    def _variant_state(self, variant: EnvironmentVariant) -> VariantState:
        env_dir = self.env_dir(variant)
        if not self.descriptor.supports(variant):
            return VariantState(variant, env_dir, installed=False, ready=False)
        installed = env_dir.is_dir()
        ready = installed and self._is_ready(env_dir)
        return VariantState(variant, env_dir, installed=installed, ready=ready)

    def _is_ready(self, env_dir: Path) -> bool:
        if not self.interpreter_path(env_dir).exists():
            return False
        marker = self.descriptor.marker_package
        if self._windows:
            return (env_dir / "Lib" / "site-packages" / marker).exists()
        return any(env_dir.glob(f"lib/python*/site-packages/{marker}"))

    @staticmethod
    def _heal(status: EnvironmentStatus) -> Optional[EnvironmentVariant]:
        ready: List[EnvironmentVariant] = status.ready_variants()
        if status.active is not None and status.active in ready:
            return status.active
        return ready[0] if ready else None

    def _read_marker(self) -> Optional[EnvironmentVariant]:
        try:
            raw = self.marker_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return EnvironmentVariant.parse(raw)

    def _write_marker(self, variant: Optional[EnvironmentVariant]) -> None:
        atomic_write_text(self.marker_path, variant.value if variant else _NO_ACTIVE)


def _last_line(text: str) -> str:
    lines = [line for line in (text or "").splitlines() if line.strip()]
    return lines[-1].strip() if lines else ""


__all__ = [
    "EnvironmentRegistry",
    "EnvironmentRegistryHooks",
    "VerifyResult",
]
