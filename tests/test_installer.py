import subprocess
from pathlib import Path

import pytest

from ml_sidecar.backend.component.environment_registry import EnvironmentRegistry
from ml_sidecar.backend.component.installer import DependencyInstaller, locate_uv
from ml_sidecar.backend.component.scripts import WorkerScripts
from ml_sidecar.backend.core.cancellation import (
    CancellationToken,
    GenerationCounter,
    OperationScope,
)
from ml_sidecar.backend.core.progress import ProgressReporter
from ml_sidecar.backend.core.types import EnvironmentVariant, ProgressStatus
from ml_sidecar.errors import (
    InstallFailedError,
    OperationCancelledError,
    ToolMissingError,
)

CPU = EnvironmentVariant.CPU


class _FakeProc:
    """Stand-in for Popen that can hang until killed."""

    def __init__(self, returncode=0, stderr="", on_hang=None):
        self.returncode = returncode
        self._stderr = stderr
        self._on_hang = on_hang
        self.killed = False

    def communicate(self, timeout=None):
        if self._on_hang is not None and not self.killed:
            self._on_hang()
            raise subprocess.TimeoutExpired("uv", timeout)
        return "", self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9


def _fake_uv(commands, hang_step=None, on_hang=None, fail_step=None):
    """Popen factory that mimics uv's effect on the filesystem."""

    def _popen(command, **_kwargs):
        commands.append(command)
        step = len(commands)
        if command[1] == "venv":
            env_dir = Path(command[2])
            (env_dir / "bin").mkdir(parents=True)
            (env_dir / "bin" / "python").write_text("", encoding="utf-8")
        elif "demo-pkg" in command:
            env_dir = Path(command[4]).parent.parent
            (env_dir / "lib" / "python3.11" / "site-packages" / "demo_pkg").mkdir(
                parents=True
            )
        if step == fail_step:
            return _FakeProc(returncode=2, stderr="resolution failed\n")
        if step == hang_step:
            return _FakeProc(on_hang=on_hang)
        return _FakeProc()

    return _popen


def _build(descriptor, tmp_path: Path, worker_sources: Path, popen, uv="/usr/bin/uv"):
    """Registry + installer with a fake uv."""
    registry = EnvironmentRegistry(descriptor, tmp_path / "cfg", windows=False)
    scripts = WorkerScripts(registry.scripts_dir, source_dir=worker_sources)
    installer = DependencyInstaller(
        registry,
        scripts,
        poll_interval_sec=0.01,
        popen=popen,
        uv_locator=lambda _configured: Path(uv) if uv else None,
    )
    return registry, installer


def _scope():
    """Fresh operation scope."""
    return OperationScope(CancellationToken(), GenerationCounter().begin())


def test_install_runs_steps_and_activates(
    descriptor, tmp_path: Path, worker_sources: Path
) -> None:
    """A successful install creates a ready, active env and writes scripts."""
    commands = []
    registry, installer = _build(
        descriptor, tmp_path, worker_sources, _fake_uv(commands)
    )
    events = []

    env_dir = installer.install(CPU, _scope(), ProgressReporter(events.append))

    assert env_dir == registry.env_dir(CPU)
    assert [command[1] for command in commands] == ["venv", "pip", "pip"]
    assert commands[1][-2:] == ["--index-url", "https://index.test/cpu"]
    assert "torch" in commands[1]
    status = registry.probe()
    assert status.cpu.ready
    assert status.active is CPU
    assert (registry.scripts_dir / "demo_worker.py").exists()
    assert (registry.scripts_dir / "demo_service.py").exists()
    assert [event.percent for event in events] == [0, 10, 30, 60, 85]
    assert all(event.status is ProgressStatus.INSTALLING for event in events)


def test_install_without_uv_fails(
    descriptor, tmp_path: Path, worker_sources: Path
) -> None:
    """A missing uv binary raises ToolMissingError before touching disk."""
    commands = []
    registry, installer = _build(
        descriptor, tmp_path, worker_sources, _fake_uv(commands), uv=None
    )
    with pytest.raises(ToolMissingError):
        installer.install(CPU, _scope(), ProgressReporter())
    assert commands == []
    assert not registry.env_dir(CPU).exists()


def test_failed_step_reports_stderr(
    descriptor, tmp_path: Path, worker_sources: Path
) -> None:
    """A non-zero exit surfaces the step's stderr."""
    registry, installer = _build(
        descriptor, tmp_path, worker_sources, _fake_uv([], fail_step=2)
    )
    with pytest.raises(InstallFailedError) as exc_info:
        installer.install(CPU, _scope(), ProgressReporter())
    assert "resolution failed" in exc_info.value.detail
    assert registry.probe().active is None


def test_cancel_kills_step_and_removes_partial_env(
    descriptor, tmp_path: Path, worker_sources: Path
) -> None:
    """Cancelling mid-step kills the child and deletes the half-built env."""
    scope = _scope()
    registry, installer = _build(
        descriptor,
        tmp_path,
        worker_sources,
        _fake_uv([], hang_step=2, on_hang=scope.token.cancel),
    )
    with pytest.raises(OperationCancelledError):
        installer.install(CPU, scope, ProgressReporter())
    assert not registry.env_dir(CPU).exists()
    assert registry.probe().active is None


def test_reinstall_replaces_existing_env(
    descriptor, tmp_path: Path, worker_sources: Path, make_ready_env
) -> None:
    """Installing over an existing variant starts from a clean directory."""
    registry, installer = _build(descriptor, tmp_path, worker_sources, _fake_uv([]))
    stale = make_ready_env(registry.env_dir(CPU)) / "stale.txt"
    stale.write_text("old", encoding="utf-8")

    installer.install(CPU, _scope(), ProgressReporter())

    assert not stale.exists()
    assert registry.probe().cpu.ready


def test_install_rejects_unsupported_variant(
    descriptor, tmp_path: Path, worker_sources: Path
) -> None:
    """Backends without a GPU build refuse GPU installs."""
    from dataclasses import replace

    cpu_only = replace(descriptor, supported_variants=(CPU,))
    _, installer = _build(cpu_only, tmp_path, worker_sources, _fake_uv([]))
    with pytest.raises(InstallFailedError):
        installer.install(EnvironmentVariant.GPU, _scope(), ProgressReporter())


def test_locate_uv_prefers_configured_path(tmp_path: Path) -> None:
    """A configured path wins; a missing one yields None."""
    uv = tmp_path / "uv"
    uv.write_text("", encoding="utf-8")
    assert locate_uv(str(uv)) == uv
    assert locate_uv(str(tmp_path / "missing")) is None


def test_locate_uv_falls_back_to_local_bin(tmp_path: Path, monkeypatch) -> None:
    """Without PATH hits, ~/.local/bin/uv is used."""
    monkeypatch.setattr(
        "ml_sidecar.backend.component.installer.shutil.which", lambda _name: None
    )
    candidate = tmp_path / ".local" / "bin" / "uv"
    candidate.parent.mkdir(parents=True)
    candidate.write_text("", encoding="utf-8")
    assert locate_uv(home=tmp_path, windows=False) == candidate
