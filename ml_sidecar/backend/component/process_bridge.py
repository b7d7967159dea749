"""Run one-shot worker processes and bridge their progress to the caller."""

from __future__ import annotations

import json
import logging
import os
import queue
import subprocess
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ml_sidecar.backend.core.cancellation import OperationScope
from ml_sidecar.backend.core.progress import ProgressReporter
from ml_sidecar.backend.core.types import ProgressStatus, WorkerResult
from ml_sidecar.errors import ProcessSpawnError, ResultParseError, WorkerExitError
from ml_sidecar.model.backends.base import LineProtocol, ProgressTransport, WorkerSpec
from ml_sidecar.utils.fs import remove_quietly

LOGGER = logging.getLogger("ml_sidecar.process_bridge")

PopenFactory = Callable[..., Any]

_STDOUT = "stdout"
_STDERR = "stderr"
_DEVICE_INFO_PREFIX = "DEVICE_INFO:"
_PROGRESS_PREFIX = "PROGRESS:"
_STATUS_PREFIX = "STATUS:"
_STATUS_STEPS: Dict[str, Tuple[float, str, Optional[ProgressStatus]]] = {
    "loading": (5.0, "Loading model", ProgressStatus.LOADING),
    "transcribing": (10.0, "Model loaded, processing", None),
    "completed": (99.0, "Processing result", None),
}


@dataclass
class WorkerInvocation:
    """One worker run: interpreter, script, rendered arguments and its spec."""

    interpreter: Path
    script: Path
    args: Sequence[str]
    spec: WorkerSpec
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[Path] = None


@dataclass
class _RunState:
    spec: WorkerSpec
    reporter: ProgressReporter
    last_stdout: str = ""
    last_stderr: str = ""
    device_info: Optional[str] = None
    polled_percent: float = -1.0
    open_streams: int = 2

    def failure_detail(self) -> str:
        line = self.last_stderr or self.last_stdout
        return _error_detail(line) if line else ""


def _error_detail(line: str) -> str:
    """Prefer the ``error`` field when the diagnostic line is JSON."""
    try:
        payload = json.loads(line)
    except ValueError:
        return line
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return line


def _status_from(value: Any, default: ProgressStatus) -> ProgressStatus:
    try:
        status = ProgressStatus(str(value))
    except ValueError:
        return default
    return default if status.terminal else status


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ProcessBridge:
    """Spawns a worker, streams its progress and returns its JSON result.

    The supervising loop wakes at least every ``poll_interval_ms`` to check
    the operation scope, poll the progress file and the exit status, so a
    cancelled run is killed within one interval.
    """

    def __init__(
        self,
        poll_interval_ms: int = 100,
        scratch_dir: Optional[Path] = None,
        popen: Optional[PopenFactory] = None,
    ) -> None:
        self._interval = max(poll_interval_ms, 1) / 1000.0
        self._scratch_dir = Path(scratch_dir or tempfile.gettempdir())
        self._popen = popen or subprocess.Popen

    def run(
        self,
        invocation: WorkerInvocation,
        scope: OperationScope,
        reporter: ProgressReporter,
    ) -> WorkerResult:
        spec = invocation.spec
        started = time.monotonic()
        token = f"{Path(spec.script).stem}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        output_path = (
            self._scratch_dir / f"{token}-result.json" if spec.writes_output else None
        )
        progress_path = (
            self._scratch_dir / f"{token}-progress.json"
            if spec.transport is ProgressTransport.POLLING_FILE
            else None
        )
        argv: List[str] = [
            str(invocation.interpreter),
            "-u",
            str(invocation.script),
            *invocation.args,
        ]
        if output_path is not None:
            argv.extend(["--output", str(output_path)])
        env = dict(os.environ)
        env.update(invocation.env)
        env["PYTHONUNBUFFERED"] = "1"
        if progress_path is not None and spec.progress_env:
            env[spec.progress_env] = str(progress_path)

        scope.check()
        self._scratch_dir.mkdir(parents=True, exist_ok=True)
        LOGGER.info("Starting worker: %s", " ".join(argv))
        try:
            proc = self._popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=env,
                cwd=str(invocation.cwd) if invocation.cwd else None,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"{invocation.script}: {exc}") from exc

        state = _RunState(spec=spec, reporter=reporter)
        lines: "queue.Queue[Tuple[str, Optional[str]]]" = queue.Queue()
        readers = [
            self._start_reader(proc.stdout, _STDOUT, lines),
            self._start_reader(proc.stderr, _STDERR, lines),
        ]
        try:
            self._supervise(proc, lines, state, progress_path, scope)
            for reader in readers:
                reader.join(timeout=1.0)
            if progress_path is not None:
                self._poll_progress_file(progress_path, state)
            if proc.returncode != 0:
                detail = state.failure_detail() or f"exit code {proc.returncode}"
                raise WorkerExitError(detail, exit_code=proc.returncode)
            payload = self._read_output(output_path)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            remove_quietly(progress_path)
            remove_quietly(output_path)
        elapsed = time.monotonic() - started
        LOGGER.info("Worker %s finished in %.2fs", spec.script, elapsed)
        return WorkerResult(
            payload=payload, elapsed_sec=elapsed, device_info=state.device_info
        )

    def _supervise(
        self,
        proc: Any,
        lines: "queue.Queue[Tuple[str, Optional[str]]]",
        state: _RunState,
        progress_path: Optional[Path],
        scope: OperationScope,
    ) -> None:
        while True:
            try:
                stream, line = lines.get(timeout=self._interval)
            except queue.Empty:
                pass
            else:
                self._handle(stream, line, state)
                # drain whatever else is already buffered
                while True:
                    try:
                        stream, line = lines.get_nowait()
                    except queue.Empty:
                        break
                    self._handle(stream, line, state)
            if scope.superseded() or scope.cancelled():
                LOGGER.info("Killing worker %s", state.spec.script)
                proc.kill()
                proc.wait()
                scope.check()
            if progress_path is not None:
                self._poll_progress_file(progress_path, state)
            if proc.poll() is not None and state.open_streams == 0:
                return

    @staticmethod
    def _start_reader(
        stream: Optional[IO[str]],
        name: str,
        lines: "queue.Queue[Tuple[str, Optional[str]]]",
    ) -> threading.Thread:
        def _pump() -> None:
            if stream is not None:
                try:
                    for raw in iter(stream.readline, ""):
                        lines.put((name, raw.rstrip("\r\n")))
                finally:
                    stream.close()
            lines.put((name, None))

        thread = threading.Thread(target=_pump, name=f"worker-{name}", daemon=True)
        thread.start()
        return thread

    def _handle(self, stream: str, line: Optional[str], state: _RunState) -> None:
        if line is None:
            state.open_streams -= 1
            return
        text = line.strip()
        if not text:
            return
        if text.startswith(_DEVICE_INFO_PREFIX):
            state.device_info = _describe_device(text[len(_DEVICE_INFO_PREFIX) :])
            LOGGER.info("Worker device: %s", state.device_info)
            return
        if state.spec.transport is ProgressTransport.PIPED:
            if state.spec.protocol is LineProtocol.JSON and self._json_line(
                text, state
            ):
                return
            if state.spec.protocol is LineProtocol.TAGGED and self._tagged_line(
                text, state
            ):
                return
        LOGGER.debug("worker %s: %s", stream, text)
        if stream == _STDERR:
            state.last_stderr = text
        else:
            state.last_stdout = text

    @staticmethod
    def _json_line(text: str, state: _RunState) -> bool:
        if not text.startswith("{"):
            return False
        try:
            payload = json.loads(text)
        except ValueError:
            return False
        if not isinstance(payload, dict) or payload.get("type") != "progress":
            return False
        try:
            percent = float(payload.get("percent", payload.get("progress", 0)))
        except (TypeError, ValueError):
            return False
        spec = state.spec
        state.reporter.emit(
            spec.map_percent(percent),
            str(payload.get("message") or payload.get("text") or ""),
            _status_from(payload.get("status"), spec.status),
            current=_to_int(payload.get("current")),
            total=_to_int(payload.get("total")),
        )
        return True

    @staticmethod
    def _tagged_line(text: str, state: _RunState) -> bool:
        spec = state.spec
        if text.startswith(_PROGRESS_PREFIX):
            body = text[len(_PROGRESS_PREFIX) :]
            pct_text, _, message = body.partition(":")
            try:
                percent = float(pct_text)
            except ValueError:
                return False
            state.reporter.emit(
                spec.map_percent(percent), message or f"{percent:.0f}%", spec.status
            )
            return True
        if text.startswith(_STATUS_PREFIX):
            step = _STATUS_STEPS.get(text[len(_STATUS_PREFIX) :].strip())
            if step is None:
                return False
            percent, message, status = step
            state.reporter.emit(percent, message, status or spec.status)
            return True
        return text.startswith("DURATION:") or text == "SUCCESS"

    def _poll_progress_file(self, path: Path, state: _RunState) -> None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as exc:
            LOGGER.debug("Progress file unreadable: %s", exc)
            return
        try:
            payload = json.loads(raw)
            percent = float(payload["progress"])
        except (ValueError, KeyError, TypeError):
            # The worker rewrites the file in place; a torn read is retried.
            return
        text = str(payload.get("text") or "")
        if payload.get("device_info"):
            state.device_info = _describe_device(str(payload.get("device") or ""))
            LOGGER.info("Worker device: %s", state.device_info)
        if percent <= state.polled_percent:
            return
        state.polled_percent = percent
        state.reporter.emit(
            state.spec.map_percent(percent),
            text,
            state.spec.status,
            current=_to_int(payload.get("current")),
            total=_to_int(payload.get("total")),
        )

    @staticmethod
    def _read_output(output_path: Optional[Path]) -> Any:
        if output_path is None:
            return None
        try:
            raw = output_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ResultParseError("worker produced no result file") from exc
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise ResultParseError(f"malformed worker result: {exc}") from exc


def _describe_device(content: str) -> str:
    """``cuda:<name>:<memory>`` -> ``CUDA (<name>, <memory>)``; else CPU."""
    parts = content.split(":", 2)
    if len(parts) >= 2 and parts[0] == "cuda" and parts[1]:
        if len(parts) == 3 and parts[2]:
            return f"CUDA ({parts[1]}, {parts[2]})"
        return f"CUDA ({parts[1]})"
    return "CPU"


__all__ = ["ProcessBridge", "WorkerInvocation"]
