"""faster-whisper transcription backend.

Model files come from the Hugging Face hub through ``huggingface_hub`` inside
the backend environment, so downloads are delegated to a worker script.
"""

from ml_sidecar.backend.core.types import EnvironmentVariant, ProgressStatus
from ml_sidecar.model.backends.base import (
    BackendDescriptor,
    LineProtocol,
    ModelFile,
    ModelHub,
    ModelManifest,
    ProgressTransport,
    WorkerSpec,
)

_REQUIRED_FILES = (
    ModelFile("model.bin", None, large=True),
    ModelFile("config.json", None),
)


def _manifest(size: str, label: str) -> ModelManifest:
    return ModelManifest(
        name=size,
        size_label=label,
        namespace="Systran",
        repo=f"faster-whisper-{size}",
        files=_REQUIRED_FILES,
    )


WHISPER = BackendDescriptor(
    backend_id="whisper",
    display_name="faster-whisper",
    marker_package="faster_whisper",
    runtime_packages=("torch", "torchaudio"),
    index_urls={
        EnvironmentVariant.CPU: "https://download.pytorch.org/whl/cpu",
        EnvironmentVariant.GPU: "https://download.pytorch.org/whl/cu124",
    },
    extra_packages=("faster-whisper", "pydub", "huggingface_hub"),
    hub=ModelHub.HUGGINGFACE,
    models=(
        _manifest("base", "~145 MB"),
        _manifest("tiny", "~75 MB"),
        _manifest("small", "~488 MB"),
        _manifest("medium", "~1.5 GB"),
        _manifest("large-v2", "~3.1 GB"),
        _manifest("large-v3", "~3.1 GB"),
    ),
    worker=WorkerSpec(
        script="whisper_transcribe.py",
        transport=ProgressTransport.PIPED,
        protocol=LineProtocol.TAGGED,
        status=ProgressStatus.TRANSCRIBING,
        positional=("audio_path",),
        defaults=(("model", "base"), ("language", "auto"), ("device", "auto")),
        progress_span=(10.0, 95.0),
    ),
    download_worker=WorkerSpec(
        script="whisper_download_model.py",
        transport=ProgressTransport.PIPED,
        protocol=LineProtocol.TAGGED,
        status=ProgressStatus.DOWNLOADING,
        writes_output=False,
    ),
)
