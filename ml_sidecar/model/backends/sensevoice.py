"""SenseVoice transcription backend."""

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

SENSEVOICE = BackendDescriptor(
    backend_id="sensevoice",
    display_name="SenseVoice",
    marker_package="funasr",
    runtime_packages=("torch", "torchaudio"),
    index_urls={
        EnvironmentVariant.CPU: "https://download.pytorch.org/whl/cpu",
        EnvironmentVariant.GPU: "https://download.pytorch.org/whl/cu124",
    },
    extra_packages=("funasr", "modelscope", "pydub"),
    hub=ModelHub.MODELSCOPE,
    models=(
        ModelManifest(
            name="SenseVoiceSmall",
            size_label="~900 MB",
            namespace="iic",
            files=(
                ModelFile("model.pt", 936291369, large=True),
                ModelFile("chn_jpn_yue_eng_ko_spectok.bpe.model", 377341, large=True),
                ModelFile("configuration.json", 396),
                ModelFile("config.yaml", 1855),
                ModelFile("am.mvn", 11203),
                ModelFile("tokens.json", 352064),
            ),
        ),
    ),
    download_url_template=(
        "https://modelscope.cn/models/{namespace}/{model}/resolve/master/{file}"
    ),
    worker=WorkerSpec(
        script="sensevoice_transcribe.py",
        transport=ProgressTransport.PIPED,
        protocol=LineProtocol.JSON,
        status=ProgressStatus.TRANSCRIBING,
        positional=("audio_path",),
        defaults=(("language", "auto"),),
    ),
    legacy_gpu_marker=".gpu_version",
)
