import threading
from pathlib import Path

import pytest
import requests

from ml_sidecar.backend.application.context import BackendContext, OperationKind
from ml_sidecar.backend.component.model_cache import ModelCache, part_path
from ml_sidecar.backend.component.transfer import ResumableTransferManager
from ml_sidecar.backend.core.cancellation import (
    CancellationToken,
    GenerationCounter,
    OperationScope,
)
from ml_sidecar.backend.core.progress import ProgressReporter
from ml_sidecar.errors import (
    DownloadFailedError,
    DownloadSupersededError,
    OperationCancelledError,
)
from ml_sidecar.model.backends.base import ModelHub

URL_A = "https://hub.test/acme/demo-model/a.bin"
URL_B = "https://hub.test/acme/demo-model/b.txt"
BODY_A = bytes(range(250)) * 4
BODY_B = b"0123456789"


class _FakeResponse:
    def __init__(self, status_code, body, on_chunk=None):
        self.status_code = status_code
        self._body = body
        self._on_chunk = on_chunk
        self.closed = False

    def iter_content(self, chunk_size):
        for start in range(0, len(self._body), chunk_size):
            if self._on_chunk is not None:
                self._on_chunk(start)
            yield self._body[start : start + chunk_size]

    def close(self):
        self.closed = True


class _FakeSession:
    """Serves fixed bodies and honors (or ignores) Range headers."""

    def __init__(
        self, honor_range=True, status=None, on_chunk=None, error=None, bodies=None
    ):
        self.calls = []
        self._bodies = {URL_A: BODY_A, URL_B: BODY_B}
        self._bodies.update(bodies or {})
        self._honor_range = honor_range
        self._status = status
        self._on_chunk = on_chunk
        self._error = error
        self.responses = []

    def get(self, url, headers=None, stream=False, timeout=None):
        self.calls.append((url, dict(headers or {})))
        if self._error is not None:
            raise self._error
        body = self._bodies[url]
        status = self._status or 200
        range_header = (headers or {}).get("Range")
        if range_header and self._honor_range and self._status is None:
            offset = int(range_header[len("bytes=") : -1])
            body = body[offset:]
            status = 206
        response = _FakeResponse(status, body, self._on_chunk)
        self.responses.append(response)
        return response


def _scope(counter=None):
    """Fresh scope, optionally on a shared counter."""
    return OperationScope(
        CancellationToken(),
        (counter or GenerationCounter()).begin(),
        DownloadSupersededError,
    )


def _manager(descriptor, root: Path, session, chunk_bytes=100, lock=None):
    """Cache + transfer manager under ``root``."""
    cache = ModelCache(
        descriptor,
        {ModelHub.MODELSCOPE: root / "ms", ModelHub.HUGGINGFACE: root / "hf"},
    )
    return cache, ResumableTransferManager(
        cache, session, chunk_bytes=chunk_bytes, lock=lock
    )


def test_fresh_download_fetches_every_file(descriptor, tmp_path: Path) -> None:
    """Both files land in the managed layout with monotonic progress."""
    session = _FakeSession()
    cache, manager = _manager(descriptor, tmp_path, session)
    events = []

    outcome = manager.download(
        cache.manifest(), _scope(), ProgressReporter(events.append)
    )

    target_dir = tmp_path / "ms" / "acme" / "demo-model"
    assert outcome.path == target_dir
    assert outcome.bytes_transferred == 1010
    assert (target_dir / "a.bin").read_bytes() == BODY_A
    assert (target_dir / "b.txt").read_bytes() == BODY_B
    assert not part_path(target_dir / "a.bin").exists()
    assert [url for url, _ in session.calls] == [URL_A, URL_B]
    percents = [event.percent for event in events]
    assert percents == sorted(percents)
    assert events[-1].current == 1010
    assert events[-1].total == 1010
    assert all(response.closed for response in session.responses)


def test_resume_sends_range_and_appends(descriptor, tmp_path: Path) -> None:
    """An existing .part file is resumed with a Range request."""
    session = _FakeSession()
    cache, manager = _manager(descriptor, tmp_path, session)
    target_dir = tmp_path / "ms" / "acme" / "demo-model"
    target_dir.mkdir(parents=True)
    part_path(target_dir / "a.bin").write_bytes(BODY_A[:400])
    (target_dir / "b.txt").write_bytes(BODY_B)

    outcome = manager.download(cache.manifest(), _scope(), ProgressReporter())

    assert session.calls == [(URL_A, {"Range": "bytes=400-"})]
    assert outcome.bytes_transferred == 600
    assert (target_dir / "a.bin").read_bytes() == BODY_A


def test_ignored_range_restarts_file(descriptor, tmp_path: Path) -> None:
    """A 200 reply to a range request truncates and rewrites the file."""
    session = _FakeSession(honor_range=False)
    cache, manager = _manager(descriptor, tmp_path, session)
    target_dir = tmp_path / "ms" / "acme" / "demo-model"
    target_dir.mkdir(parents=True)
    part_path(target_dir / "a.bin").write_bytes(b"garbage!" * 50)

    manager.download(cache.manifest(), _scope(), ProgressReporter())

    assert session.calls[0] == (URL_A, {"Range": "bytes=400-"})
    assert (target_dir / "a.bin").read_bytes() == BODY_A


def test_unexpected_status_fails(descriptor, tmp_path: Path) -> None:
    """Statuses other than 200/206 abort the download."""
    cache, manager = _manager(descriptor, tmp_path, _FakeSession(status=404))
    with pytest.raises(DownloadFailedError) as exc_info:
        manager.download(cache.manifest(), _scope(), ProgressReporter())
    assert "HTTP 404" in exc_info.value.detail


def test_network_error_is_wrapped(descriptor, tmp_path: Path) -> None:
    """requests exceptions become DownloadFailedError."""
    session = _FakeSession(error=requests.ConnectionError("refused"))
    cache, manager = _manager(descriptor, tmp_path, session)
    with pytest.raises(DownloadFailedError):
        manager.download(cache.manifest(), _scope(), ProgressReporter())


def test_complete_model_makes_no_requests(descriptor, tmp_path: Path) -> None:
    """Downloading an already complete model is a no-op."""
    session = _FakeSession()
    cache, manager = _manager(descriptor, tmp_path, session)
    target_dir = tmp_path / "ms" / "acme" / "demo-model"
    target_dir.mkdir(parents=True)
    (target_dir / "a.bin").write_bytes(BODY_A)
    (target_dir / "b.txt").write_bytes(BODY_B)

    outcome = manager.download(cache.manifest(), _scope(), ProgressReporter())

    assert outcome.already_present
    assert outcome.bytes_transferred == 0
    assert session.calls == []


def test_supersede_stops_within_one_chunk(descriptor, tmp_path: Path) -> None:
    """A newer generation aborts before the next chunk is written."""
    counter = GenerationCounter()
    scope = _scope(counter)

    def _on_chunk(start):
        if start == 200:
            counter.advance()

    session = _FakeSession(on_chunk=_on_chunk)
    cache, manager = _manager(descriptor, tmp_path, session)

    with pytest.raises(DownloadSupersededError):
        manager.download(cache.manifest(), scope, ProgressReporter())

    part = part_path(tmp_path / "ms" / "acme" / "demo-model" / "a.bin")
    assert part.read_bytes() == BODY_A[:200]


def test_cancel_keeps_partial_file_for_resume(descriptor, tmp_path: Path) -> None:
    """Cancellation leaves the .part file so the next call can resume."""
    scope = _scope()

    def _on_chunk(start):
        if start == 300:
            scope.token.cancel()

    cache, manager = _manager(descriptor, tmp_path, _FakeSession(on_chunk=_on_chunk))
    with pytest.raises(OperationCancelledError):
        manager.download(cache.manifest(), scope, ProgressReporter())

    session = _FakeSession()
    cache, manager = _manager(descriptor, tmp_path, session)
    manager.download(cache.manifest(), _scope(), ProgressReporter())
    assert session.calls[0] == (URL_A, {"Range": "bytes=300-"})


def test_short_body_fails_size_check(descriptor, tmp_path: Path) -> None:
    """A stream shorter than the manifest size never becomes the final file."""
    session = _FakeSession(bodies={URL_A: BODY_A[:900]})
    cache, manager = _manager(descriptor, tmp_path, session)

    with pytest.raises(DownloadFailedError) as exc_info:
        manager.download(cache.manifest(), _scope(), ProgressReporter())

    assert "size mismatch" in exc_info.value.detail
    target = tmp_path / "ms" / "acme" / "demo-model" / "a.bin"
    assert not target.exists()
    assert part_path(target).read_bytes() == BODY_A[:900]


def test_newer_download_takes_over_running_one(descriptor, tmp_path: Path) -> None:
    """A second download supersedes the first and finishes with intact files."""
    context = BackendContext(descriptor)
    mid_stream = threading.Event()
    proceed = threading.Event()
    paused = []

    def _on_chunk(start):
        if start == 200 and not paused:
            paused.append(start)
            mid_stream.set()
            proceed.wait(timeout=5.0)

    session = _FakeSession(on_chunk=_on_chunk)
    cache, manager = _manager(
        descriptor, tmp_path, session, lock=context.transfer_lock
    )
    outcomes = {}

    def _download(name, scope):
        try:
            outcomes[name] = manager.download(
                cache.manifest(), scope, ProgressReporter()
            )
        except DownloadSupersededError as exc:
            outcomes[name] = exc

    first = threading.Thread(
        target=_download,
        args=("first", context.begin(OperationKind.DOWNLOAD)),
        daemon=True,
    )
    first.start()
    assert mid_stream.wait(timeout=5.0)
    second = threading.Thread(
        target=_download,
        args=("second", context.begin(OperationKind.DOWNLOAD)),
        daemon=True,
    )
    second.start()
    proceed.set()
    first.join(timeout=5.0)
    second.join(timeout=5.0)

    assert isinstance(outcomes["first"], DownloadSupersededError)
    target_dir = tmp_path / "ms" / "acme" / "demo-model"
    assert outcomes["second"].path == target_dir
    assert (target_dir / "a.bin").stat().st_size == 1000
    assert (target_dir / "b.txt").stat().st_size == 10
    assert (target_dir / "a.bin").read_bytes() == BODY_A
    assert not part_path(target_dir / "a.bin").exists()
