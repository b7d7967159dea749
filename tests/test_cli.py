import argparse
import json
from pathlib import Path

import pytest
import yaml

from ml_sidecar.backend.runtime import RuntimeConfig, SidecarRuntime
from ml_sidecar.backend.runtime.config import PathsRuntimeConfig
from ml_sidecar.errors import UnknownBackendError
from ml_sidecar.main import _parse_option, main, parse_args
from ml_sidecar.utils import logger as logger_module


def _stop_logging_listener() -> None:
    """Helper for stop logging listener."""
    if logger_module.QUEUE_LISTENER:
        logger_module.QUEUE_LISTENER.stop()
        for handler in logger_module.QUEUE_LISTENER.handlers:
            handler.close()
        logger_module.QUEUE_LISTENER = None


def _write_config(tmp_path: Path) -> Path:
    """Helper for a config rooted under tmp_path."""
    config_path = tmp_path / "sidecar.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "paths": {
                    "config_root": str(tmp_path / "cfg"),
                    "modelscope_hub": str(tmp_path / "ms"),
                    "huggingface_hub": str(tmp_path / "hf"),
                },
                "installer": {"uv_path": str(tmp_path / "no-uv")},
            }
        ),
        encoding="utf-8",
    )
    return config_path


def test_parse_option_decodes_json_values() -> None:
    """Test worker options parse JSON where possible."""
    assert _parse_option("beam_size=5") == {"beam_size": 5}
    assert _parse_option("preserve_case=false") == {"preserve_case": False}
    assert _parse_option("audio_path=/tmp/a.wav") == {"audio_path": "/tmp/a.wav"}
    with pytest.raises(argparse.ArgumentTypeError):
        _parse_option("novalue")


def test_parse_args_run_collects_options() -> None:
    """Test run subcommand collects repeated options."""
    args = parse_args(
        ["run", "whisper", "-o", "audio_path=/a.wav", "--option", "model=base"]
    )
    assert args.command == "run"
    assert args.backend == "whisper"
    assert args.options == [{"audio_path": "/a.wav"}, {"model": "base"}]


def test_parse_args_rejects_unknown_backend() -> None:
    """Test unknown backends are rejected by argparse."""
    with pytest.raises(SystemExit):
        parse_args(["install", "nope"])


def test_main_status_prints_json(tmp_path: Path, capsys) -> None:
    """Test status prints the backend status as JSON."""
    config_path = _write_config(tmp_path)
    try:
        exit_code = main(["--config", str(config_path), "status", "sensevoice"])
    finally:
        _stop_logging_listener()

    assert exit_code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload[0]["backend"] == "sensevoice"
    assert payload[0]["uv_installed"] is False
    assert payload[0]["environment"]["active"] == "none"
    assert payload[0]["models"][0]["downloaded"] is False


def test_main_reports_sidecar_errors(tmp_path: Path, capsys) -> None:
    """Test sidecar errors print their code and exit non-zero."""
    config_path = _write_config(tmp_path)
    try:
        exit_code = main(["--config", str(config_path), "switch", "whisper", "gpu"])
    finally:
        _stop_logging_listener()

    assert exit_code == 1
    assert "ERR1003" in capsys.readouterr().err


def test_runtime_builds_orchestrators_lazily(tmp_path: Path) -> None:
    """Test runtime caches one orchestrator per backend."""
    runtime = SidecarRuntime(
        RuntimeConfig(paths=PathsRuntimeConfig(config_root=tmp_path / "cfg"))
    )
    try:
        first = runtime.orchestrator("firered")
        assert runtime.orchestrator("firered") is first
        assert first.supervisor is not None
        assert runtime.orchestrator("whisper").supervisor is None
        with pytest.raises(UnknownBackendError):
            runtime.orchestrator("nope")
    finally:
        runtime.close()
    assert sorted(runtime.backend_ids()) == ["firered", "sensevoice", "whisper"]
