import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest

from ml_sidecar.backend.component.process_bridge import ProcessBridge, WorkerInvocation
from ml_sidecar.backend.core.cancellation import (
    CancellationToken,
    GenerationCounter,
    OperationScope,
)
from ml_sidecar.backend.core.progress import ProgressReporter
from ml_sidecar.backend.core.types import ProgressStatus
from ml_sidecar.errors import (
    OperationCancelledError,
    ResultParseError,
    WorkerExitError,
)
from ml_sidecar.model.backends.base import LineProtocol, ProgressTransport, WorkerSpec

_OUTPUT_HELPER = """
import json, os, sys, time
def output_path():
    return sys.argv[sys.argv.index("--output") + 1]
def write_result(payload):
    with open(output_path(), "w", encoding="utf-8") as fh:
        json.dump(payload, fh)
"""


def _script(tmp_path: Path, name: str, body: str) -> Path:
    """Write a worker script using the shared helper preamble."""
    path = tmp_path / name
    path.write_text(_OUTPUT_HELPER + textwrap.dedent(body), encoding="utf-8")
    return path


def _scope():
    """Fresh operation scope."""
    return OperationScope(CancellationToken(), GenerationCounter().begin())


def _run(tmp_path: Path, script: Path, spec: WorkerSpec, scope=None, args=()):
    """Run ``script`` through a bridge, returning (result, events)."""
    events = []
    bridge = ProcessBridge(poll_interval_ms=20, scratch_dir=tmp_path / "scratch")
    invocation = WorkerInvocation(
        interpreter=Path(sys.executable),
        script=script,
        args=list(args),
        spec=spec,
        env={"DEMO_VALUE": "42"},
    )
    result = bridge.run(invocation, scope or _scope(), ProgressReporter(events.append))
    return result, events


def test_piped_json_progress_and_result(tmp_path: Path) -> None:
    """JSON progress lines on stderr are mapped onto the progress span."""
    script = _script(
        tmp_path,
        "json_worker.py",
        """
        for pct in (0, 50, 100):
            line = {"type": "progress", "percent": pct, "message": f"step {pct}"}
            sys.stderr.write(json.dumps(line) + "\\n")
            sys.stderr.flush()
        print("DEVICE_INFO:cpu::", flush=True)
        write_result({"text": sys.argv[1], "env": os.environ["DEMO_VALUE"]})
        """,
    )
    spec = WorkerSpec(script="json_worker.py", progress_span=(0.0, 50.0))

    result, events = _run(tmp_path, script, spec, args=["hello"])

    assert result.payload == {"text": "hello", "env": "42"}
    assert result.device_info == "CPU"
    assert [event.percent for event in events] == [0.0, 25.0, 50.0]
    assert events[1].text == "step 50"
    assert list((tmp_path / "scratch").iterdir()) == []


def test_tagged_protocol(tmp_path: Path) -> None:
    """STATUS/PROGRESS/DEVICE_INFO tags drive progress and device detection."""
    script = _script(
        tmp_path,
        "tagged_worker.py",
        """
        print("DEVICE_INFO:cuda:RTX 4090:24.0GB", flush=True)
        print("STATUS:loading", flush=True)
        print("DURATION:12.5", flush=True)
        print("STATUS:transcribing", flush=True)
        print("PROGRESS:50.0:hello world", flush=True)
        write_result({"segments": []})
        print("STATUS:completed", flush=True)
        """,
    )
    spec = WorkerSpec(
        script="tagged_worker.py",
        protocol=LineProtocol.TAGGED,
        progress_span=(10.0, 95.0),
    )

    result, events = _run(tmp_path, script, spec)

    assert result.device_info == "CUDA (RTX 4090, 24.0GB)"
    assert [event.percent for event in events] == [5.0, 10.0, 52.5, 99.0]
    assert events[0].status is ProgressStatus.LOADING
    assert events[2].text == "hello world"
    assert events[2].status is ProgressStatus.TRANSCRIBING


def test_polling_file_progress(tmp_path: Path) -> None:
    """Progress written to the polling file is forwarded once per increase."""
    script = _script(
        tmp_path,
        "poll_worker.py",
        """
        path = os.environ["DEMO_PROGRESS_FILE"]
        for pct, text in ((10, "loading"), (10, "loading"), (60, "fixing")):
            with open(path, "w", encoding="utf-8") as fh:
                json.dump({"progress": pct, "current": 1, "total": 2,
                           "text": text, "device_info": False}, fh)
            time.sleep(0.15)
        write_result({"corrected": True})
        """,
    )
    spec = WorkerSpec(
        script="poll_worker.py",
        transport=ProgressTransport.POLLING_FILE,
        progress_env="DEMO_PROGRESS_FILE",
        status=ProgressStatus.CORRECTING,
    )

    result, events = _run(tmp_path, script, spec)

    assert result.payload == {"corrected": True}
    assert [event.percent for event in events] == [10.0, 60.0]
    assert events[-1].status is ProgressStatus.CORRECTING
    assert events[-1].current == 1 and events[-1].total == 2


def test_polling_file_device_info(tmp_path: Path) -> None:
    """A device entry in the progress file is described like DEVICE_INFO."""
    script = _script(
        tmp_path,
        "device_worker.py",
        """
        path = os.environ["DEMO_PROGRESS_FILE"]
        with open(path, "w", encoding="utf-8") as fh:
            json.dump({"progress": 2, "current": 0, "total": 0,
                       "text": "Using device: CUDA (RTX 4090)",
                       "device_info": True, "device": "cuda:RTX 4090:24.0GB"}, fh)
        time.sleep(0.2)
        write_result({"corrected": True})
        """,
    )
    spec = WorkerSpec(
        script="device_worker.py",
        transport=ProgressTransport.POLLING_FILE,
        progress_env="DEMO_PROGRESS_FILE",
        status=ProgressStatus.CORRECTING,
    )

    result, events = _run(tmp_path, script, spec)

    assert result.device_info == "CUDA (RTX 4090, 24.0GB)"
    assert events[0].text == "Using device: CUDA (RTX 4090)"


def test_nonzero_exit_carries_error_detail(tmp_path: Path) -> None:
    """A JSON error line on stderr becomes the WorkerExitError detail."""
    script = _script(
        tmp_path,
        "failing_worker.py",
        """
        print(json.dumps({"error": "model missing"}), file=sys.stderr)
        sys.exit(1)
        """,
    )
    spec = WorkerSpec(
        script="failing_worker.py",
        transport=ProgressTransport.POLLING_FILE,
        progress_env="DEMO_PROGRESS_FILE",
    )

    with pytest.raises(WorkerExitError) as exc_info:
        _run(tmp_path, script, spec)

    assert exc_info.value.exit_code == 1
    assert "model missing" in str(exc_info.value)


def test_missing_result_file(tmp_path: Path) -> None:
    """Exit code 0 without a result file is a parse error."""
    script = _script(tmp_path, "silent_worker.py", "print('nothing to see')\n")
    with pytest.raises(ResultParseError):
        _run(tmp_path, script, WorkerSpec(script="silent_worker.py"))


def test_malformed_result_file(tmp_path: Path) -> None:
    """A result file that is not JSON is a parse error."""
    script = _script(
        tmp_path,
        "garbled_worker.py",
        """
        with open(output_path(), "w", encoding="utf-8") as fh:
            fh.write("{not json")
        """,
    )
    with pytest.raises(ResultParseError):
        _run(tmp_path, script, WorkerSpec(script="garbled_worker.py"))


def test_cancel_kills_worker_promptly(tmp_path: Path) -> None:
    """Cancelling the scope kills a long-running worker within an interval."""
    script = _script(tmp_path, "sleepy_worker.py", "time.sleep(30)\n")
    scope = _scope()
    threading.Timer(0.3, scope.token.cancel).start()
    started = time.monotonic()

    with pytest.raises(OperationCancelledError):
        _run(tmp_path, script, WorkerSpec(script="sleepy_worker.py"), scope=scope)

    assert time.monotonic() - started < 10.0


def test_build_args_renders_positionals_and_flags() -> None:
    """Positionals come first; booleans become --flag/--no-flag."""
    spec = WorkerSpec(
        script="w.py",
        positional=("audio_path",),
        defaults=(("language", "auto"), ("use_gpu", True)),
    )
    args = spec.build_args(
        {"audio_path": "/a.wav", "use_gpu": False, "beam_size": 5, "x": None}
    )
    assert args == ["/a.wav", "--language", "auto", "--no-use-gpu", "--beam-size", "5"]
    with pytest.raises(ValueError):
        spec.build_args({})
