"""FireRedASR subtitle correction backend."""

from ml_sidecar.backend.core.types import EnvironmentVariant, ProgressStatus
from ml_sidecar.model.backends.base import (
    BackendDescriptor,
    ModelFile,
    ModelHub,
    ModelManifest,
    ProgressTransport,
    WorkerSpec,
)

FIRERED_PROGRESS_ENV = "FIRERED_PROGRESS_FILE"

FIRERED = BackendDescriptor(
    backend_id="firered",
    display_name="FireRedASR",
    marker_package="fireredasr",
    runtime_packages=("torch", "torchaudio"),
    index_urls={
        EnvironmentVariant.CPU: "https://download.pytorch.org/whl/cpu",
        EnvironmentVariant.GPU: "https://download.pytorch.org/whl/cu124",
    },
    extra_packages=(
        "fireredasr",
        "pydub",
        "transformers",
        "sentencepiece",
        "modelscope",
        "fastapi",
        "uvicorn",
    ),
    hub=ModelHub.MODELSCOPE,
    models=(
        ModelManifest(
            name="FireRedASR-AED-L",
            size_label="~4.4 GB",
            namespace="FireRedTeam",
            files=(
                ModelFile("model.pth.tar", 4678597714, large=True),
                ModelFile("train_bpe1000.model", 251707, large=True),
                ModelFile("cmvn.ark", 1311, large=True),
                ModelFile("dict.txt", 71448),
                ModelFile("cmvn.txt", 2985),
                ModelFile("configuration.json", 86),
            ),
        ),
    ),
    download_url_template=(
        "https://modelscope.cn/models/{namespace}/{model}/resolve/master/{file}"
    ),
    worker=WorkerSpec(
        script="firered_correct.py",
        transport=ProgressTransport.POLLING_FILE,
        progress_env=FIRERED_PROGRESS_ENV,
        status=ProgressStatus.CORRECTING,
        positional=("srt_path", "audio_path"),
        defaults=(("language", "zh"), ("preserve_case", True)),
    ),
    service_script="firered_service.py",
)
