from pathlib import Path
from typing import Callable

import pytest

from ml_sidecar.backend.core.types import EnvironmentVariant, ProgressStatus
from ml_sidecar.model.backends.base import (
    BackendDescriptor,
    ModelFile,
    ModelHub,
    ModelManifest,
    ProgressTransport,
    WorkerSpec,
)


def build_descriptor(**overrides) -> BackendDescriptor:
    """Small backend used across tests: two-file manifest, polling worker."""
    values = dict(
        backend_id="demo",
        display_name="Demo",
        marker_package="demo_pkg",
        runtime_packages=("torch",),
        index_urls={
            EnvironmentVariant.CPU: "https://index.test/cpu",
            EnvironmentVariant.GPU: "https://index.test/gpu",
        },
        extra_packages=("demo-pkg",),
        hub=ModelHub.MODELSCOPE,
        models=(
            ModelManifest(
                name="demo-model",
                size_label="~1 KB",
                namespace="acme",
                files=(ModelFile("a.bin", 1000, large=True), ModelFile("b.txt", 10)),
            ),
        ),
        download_url_template="https://hub.test/{namespace}/{model}/{file}",
        worker=WorkerSpec(
            script="demo_worker.py",
            transport=ProgressTransport.POLLING_FILE,
            progress_env="DEMO_PROGRESS_FILE",
            status=ProgressStatus.CORRECTING,
            positional=("input_path",),
        ),
        service_script="demo_service.py",
        legacy_gpu_marker=".gpu_version",
    )
    values.update(overrides)
    return BackendDescriptor(**values)


@pytest.fixture
def descriptor() -> BackendDescriptor:
    """Fixture for the demo backend descriptor."""
    return build_descriptor()


@pytest.fixture
def make_ready_env() -> Callable[[Path, str], Path]:
    """Fixture creating an environment directory that probes as ready."""

    def _make(env_dir: Path, marker: str = "demo_pkg") -> Path:
        (env_dir / "bin").mkdir(parents=True, exist_ok=True)
        (env_dir / "bin" / "python").write_text("", encoding="utf-8")
        (env_dir / "lib" / "python3.11" / "site-packages" / marker).mkdir(
            parents=True, exist_ok=True
        )
        return env_dir

    return _make


@pytest.fixture
def worker_sources(tmp_path: Path) -> Path:
    """Fixture with placeholder worker/service scripts to copy from."""
    source = tmp_path / "worker-src"
    source.mkdir()
    for name in ("demo_worker.py", "demo_service.py"):
        (source / name).write_text("print('placeholder')\n", encoding="utf-8")
    return source
