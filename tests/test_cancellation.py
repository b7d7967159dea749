import threading
import time

import pytest

from ml_sidecar.backend.application.context import BackendContext, OperationKind
from ml_sidecar.backend.core.cancellation import (
    CancellationToken,
    GenerationCounter,
    OperationScope,
)
from ml_sidecar.errors import (
    DownloadSupersededError,
    OperationCancelledError,
    OperationSupersededError,
)


def test_lease_invalidated_by_next_generation() -> None:
    """A lease stays valid only until the counter advances."""
    counter = GenerationCounter()
    first = counter.begin()
    assert first.valid()
    second = counter.begin()
    assert not first.valid()
    assert second.valid()
    assert second.generation == first.generation + 1


def test_scope_checks_supersession_before_cancellation() -> None:
    """A superseded scope raises the superseded error even when cancelled."""
    counter = GenerationCounter()
    token = CancellationToken()
    scope = OperationScope(token, counter.begin())
    token.cancel()
    with pytest.raises(OperationCancelledError):
        scope.check()
    counter.advance()
    with pytest.raises(OperationSupersededError):
        scope.check()


def test_scope_sleep_wakes_early_on_cancel() -> None:
    """sleep() returns as soon as the token is set."""
    scope = OperationScope(CancellationToken(), GenerationCounter().begin())
    timer = threading.Timer(0.05, scope.token.cancel)
    timer.start()
    started = time.monotonic()
    with pytest.raises(OperationCancelledError):
        scope.sleep(5.0)
    assert time.monotonic() - started < 2.0


def test_detached_scope_never_raises() -> None:
    """Detached scopes are for callers without a token."""
    scope = OperationScope.detached()
    scope.check()
    assert not scope.superseded()
    assert not scope.cancelled()


def test_context_begin_resets_token_and_supersedes(descriptor) -> None:
    """begin() invalidates the previous scope of the same kind only."""
    context = BackendContext(descriptor)
    install = context.begin(OperationKind.INSTALL)
    download = context.begin(OperationKind.DOWNLOAD)
    context.cancel(OperationKind.INSTALL)
    assert install.cancelled()

    newer = context.begin(OperationKind.INSTALL)
    assert not newer.cancelled()
    assert install.superseded()
    assert not download.superseded()


def test_download_scope_raises_download_superseded(descriptor) -> None:
    """Superseded downloads surface the dedicated error type."""
    context = BackendContext(descriptor)
    scope = context.begin(OperationKind.DOWNLOAD)
    context.supersede(OperationKind.DOWNLOAD)
    with pytest.raises(DownloadSupersededError):
        scope.check()


def test_non_superseding_begin_keeps_running_scope_valid(descriptor) -> None:
    """Service starts share a generation instead of killing each other."""
    context = BackendContext(descriptor)
    first = context.begin(OperationKind.SERVICE, supersede=False)
    second = context.begin(OperationKind.SERVICE, supersede=False)
    assert not first.superseded()
    assert not second.superseded()


def test_cancel_without_kind_cancels_everything(descriptor) -> None:
    """cancel(None) sets every token of the backend."""
    context = BackendContext(descriptor)
    kinds = context.cancel()
    assert set(kinds) == set(OperationKind)
    assert all(context.token(kind).is_cancelled() for kind in OperationKind)


def test_acquire_honors_scope_while_blocked(descriptor) -> None:
    """Waiting on a held lock still observes cancellation."""
    context = BackendContext(descriptor)
    scope = context.begin(OperationKind.DOWNLOAD)
    context.transfer_lock.acquire()
    try:
        threading.Timer(0.05, scope.token.cancel).start()
        with pytest.raises(OperationCancelledError):
            context.acquire(context.transfer_lock, scope)
    finally:
        context.transfer_lock.release()
