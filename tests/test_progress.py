import pytest

from ml_sidecar.backend.core.progress import ProgressReporter
from ml_sidecar.backend.core.types import ProgressStatus
from ml_sidecar.errors import (
    InstallFailedError,
    OperationCancelledError,
    OperationSupersededError,
)


def _collect():
    """Return a sink and the list it appends to."""
    events = []
    return events.append, events


def test_percent_never_moves_backwards() -> None:
    """Lower percentages are clamped to the previous value."""
    sink, events = _collect()
    reporter = ProgressReporter(sink, ProgressStatus.DOWNLOADING)
    reporter.emit(40, "a")
    reporter.emit(25, "b")
    reporter.emit(150, "c")
    assert [event.percent for event in events] == [40.0, 40.0, 100.0]
    assert all(event.status is ProgressStatus.DOWNLOADING for event in events)


def test_terminal_emits_exactly_one_completion() -> None:
    """A clean exit produces one completed event at 100%."""
    sink, events = _collect()
    reporter = ProgressReporter(sink)
    with reporter.terminal("done"):
        reporter.emit(50, "half")
    reporter.complete("again")
    reporter.emit(60, "late")
    assert [event.status for event in events] == [
        ProgressStatus.LOADING,
        ProgressStatus.COMPLETED,
    ]
    assert events[-1].percent == 100.0
    assert events[-1].text == "done"


def test_terminal_reports_cancellation() -> None:
    """Cancellation yields a cancelled event and re-raises."""
    sink, events = _collect()
    reporter = ProgressReporter(sink)
    with pytest.raises(OperationCancelledError):
        with reporter.terminal():
            reporter.emit(30, "working")
            raise OperationCancelledError()
    assert events[-1].status is ProgressStatus.CANCELLED
    assert events[-1].percent == 30.0


def test_terminal_reports_failure_detail() -> None:
    """Sidecar errors surface their detail in the error event."""
    sink, events = _collect()
    reporter = ProgressReporter(sink)
    with pytest.raises(InstallFailedError):
        with reporter.terminal():
            raise InstallFailedError("pip exploded")
    assert events[-1].status is ProgressStatus.ERROR
    assert events[-1].text == "pip exploded"


def test_terminal_is_silent_on_supersession() -> None:
    """A superseded operation emits no terminal event at all."""
    sink, events = _collect()
    reporter = ProgressReporter(sink)
    with pytest.raises(OperationSupersededError):
        with reporter.terminal():
            reporter.emit(10, "started")
            raise OperationSupersededError()
    assert len(events) == 1
    assert not reporter.finished


def test_sink_errors_do_not_break_reporting() -> None:
    """A raising sink is logged and ignored."""

    def _broken(_message):
        raise RuntimeError("sink down")

    reporter = ProgressReporter(_broken)
    reporter.emit(10, "x")
    reporter.complete()
    assert reporter.finished


def test_event_payload_shape() -> None:
    """as_event() carries the fields consumers read."""
    sink, events = _collect()
    reporter = ProgressReporter(sink, ProgressStatus.DOWNLOADING)
    reporter.emit(12.5, "a.bin", current=125, total=1000)
    event = events[0].as_event()
    assert event == {
        "progress": 12.5,
        "current_text": "a.bin",
        "status": "downloading",
        "current": 125,
        "total": 1000,
    }
