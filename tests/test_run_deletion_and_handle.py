# mypy: ignore-errors
"""Tests for the DeletionExecutor and handle_exception function."""

import threading
from collections import Counter
from datetime import datetime, timedelta

import pytest
from conftest import FakeBackend, make_args

from tarsnap_prune import (
    ArchiveRecord,
    DeletionExecutor,
    DeletionFailedError,
    DeletionOutcome,
    Logger,
    LogLevel,
    handle_exception,
)


def _discards(*names: str) -> list[ArchiveRecord]:
    start = datetime(2020, 1, 1)
    return [ArchiveRecord(name, start + timedelta(hours=idx)) for idx, name in enumerate(names)]


def _executor(backend, already_deleted=(), batch_size=100, concurrency=1, **logger_args) -> DeletionExecutor:
    return DeletionExecutor(backend, frozenset(already_deleted), batch_size, concurrency, Logger(make_args(**logger_args)))


def test_form_batches_chunks_in_order(fake_backend) -> None:
    executor = _executor(fake_backend, batch_size=2)
    assert executor.form_batches(_discards("a", "b", "c", "d", "e")) == [["a", "b"], ["c", "d"], ["e"]]


def test_form_batches_skips_already_deleted(fake_backend, capsys) -> None:
    executor = _executor(fake_backend, already_deleted={"b", "d"}, batch_size=2)
    assert executor.form_batches(_discards("a", "b", "c", "d", "e")) == [["a", "c"], ["e"]]
    assert capsys.readouterr().out.splitlines() == ["gone    b", "gone    d"]


@pytest.mark.parametrize("batch_size, concurrency", [(0, 1), (1, 0)])
def test_executor_rejects_invalid_limits(fake_backend, batch_size, concurrency) -> None:
    with pytest.raises(ValueError):
        _executor(fake_backend, batch_size=batch_size, concurrency=concurrency)


def test_run_deletes_all_batches(fake_backend, capsys) -> None:
    execution = _executor(fake_backend, batch_size=2).run(_discards("a", "b", "c"))
    assert execution.succeeded
    assert fake_backend.calls == [["a", "b"], ["c"]]
    assert sorted(execution.names(DeletionOutcome.DELETED)) == ["a", "b", "c"]
    assert capsys.readouterr().out.splitlines() == ["deleted a", "deleted b", "deleted c"]


def test_run_without_discards_never_calls_backend(fake_backend) -> None:
    execution = _executor(fake_backend).run([])
    assert execution.succeeded
    assert execution.outcomes == {}
    assert fake_backend.calls == []


def test_batch_falls_back_to_single_deletes(capsys) -> None:
    """One absent archive in a batch: it is 'gone', all others are deleted, nobody is deleted twice."""
    backend = FakeBackend(missing={"b"})
    execution = _executor(backend, batch_size=3).run(_discards("a", "b", "c", "d"))

    assert execution.succeeded
    assert execution.outcomes == {
        "a": DeletionOutcome.DELETED,
        "b": DeletionOutcome.ALREADY_GONE,
        "c": DeletionOutcome.DELETED,
        "d": DeletionOutcome.DELETED,
    }
    assert backend.calls == [["a", "b", "c"], ["a"], ["b"], ["c"], ["d"]]
    single_calls = Counter(call[0] for call in backend.calls if len(call) == 1)
    assert all(count == 1 for count in single_calls.values())
    # fallback results are reported in batch order
    assert capsys.readouterr().out.splitlines() == ["deleted a", "gone    b", "deleted c", "deleted d"]


def test_fatal_error_cancels_queued_batches(capsys) -> None:
    backend = FakeBackend(failing={"c"})
    execution = _executor(backend, batch_size=2).run(_discards("a", "b", "c", "d", "e", "f"))

    assert not execution.succeeded
    assert isinstance(execution.error, DeletionFailedError)
    assert "account balance is too low" in str(execution.error)
    # first batch done, second failed, third never started
    assert backend.calls == [["a", "b"], ["c", "d"]]
    assert execution.names(DeletionOutcome.DELETED) == ["a", "b"]
    assert execution.names(DeletionOutcome.FATAL) == ["c", "d"]
    assert "e" not in execution.outcomes
    assert capsys.readouterr().out.splitlines() == ["deleted a", "deleted b"]


def test_fatal_error_during_fallback() -> None:
    """A hard failure while deleting one by one stops at that archive."""
    backend = FakeBackend(missing={"a"}, failing={"c"})
    execution = _executor(backend, batch_size=4).run(_discards("a", "b", "c", "d"))

    assert isinstance(execution.error, DeletionFailedError)
    assert backend.calls == [["a", "b", "c", "d"], ["a"], ["b"], ["c"]]
    assert execution.outcomes == {
        "a": DeletionOutcome.ALREADY_GONE,
        "b": DeletionOutcome.DELETED,
        "c": DeletionOutcome.FATAL,
    }


def test_os_error_is_fatal() -> None:
    class MissingExecutableBackend(FakeBackend):
        def delete(self, names, cancel_event):
            super().delete(names, cancel_event)
            raise FileNotFoundError("tarsnap: not found")

    backend = MissingExecutableBackend()
    execution = _executor(backend, batch_size=1).run(_discards("a", "b"))
    assert isinstance(execution.error, FileNotFoundError)
    assert backend.calls == [["a"]]


def test_cancel_event_set_before_run(fake_backend) -> None:
    executor = _executor(fake_backend, batch_size=1)
    executor.cancel_event.set()
    execution = executor.run(_discards("a", "b"))
    assert execution.succeeded
    assert execution.outcomes == {}
    assert fake_backend.calls == []


def test_concurrency_limit_is_respected() -> None:
    """No more batches are in flight than the configured concurrency."""

    class TrackingBackend(FakeBackend):
        def __init__(self):
            super().__init__()
            self.in_flight = 0
            self.max_in_flight = 0
            self.entered = 0
            self._track = threading.Lock()
            self._barrier = threading.Barrier(2, timeout=5)

        def delete(self, names, cancel_event):
            with self._track:
                self.entered += 1
                first_two = self.entered <= 2
                self.in_flight += 1
                self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                if first_two:  # hold the first two batches until both are running
                    self._barrier.wait()
                super().delete(names, cancel_event)
            finally:
                with self._track:
                    self.in_flight -= 1

    backend = TrackingBackend()
    execution = _executor(backend, batch_size=1, concurrency=2).run(_discards("a", "b", "c", "d", "e"))
    assert execution.succeeded
    assert backend.max_in_flight == 2
    assert sorted(execution.names(DeletionOutcome.DELETED)) == ["a", "b", "c", "d", "e"]


def test_sequential_with_concurrency_one() -> None:
    class TrackingBackend(FakeBackend):
        def __init__(self):
            super().__init__()
            self.in_flight = 0
            self.max_in_flight = 0

        def delete(self, names, cancel_event):
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                super().delete(names, cancel_event)
            finally:
                self.in_flight -= 1

    backend = TrackingBackend()
    _executor(backend, batch_size=1).run(_discards("a", "b", "c"))
    assert backend.max_in_flight == 1
    assert backend.calls == [["a"], ["b"], ["c"]]


def test_unexpected_worker_error_propagates() -> None:
    class BrokenBackend(FakeBackend):
        def delete(self, names, cancel_event):
            raise RuntimeError("boom")

    executor = _executor(BrokenBackend(), batch_size=1)
    with pytest.raises(RuntimeError, match="boom"):
        executor.run(_discards("a", "b"))
    assert executor.cancel_event.is_set()


def test_fallback_is_logged(capsys) -> None:
    backend = FakeBackend(missing={"a"})
    _executor(backend, verbose=LogLevel.WARN).run(_discards("a", "b"))
    assert "[WARN] Batch of 2 archive(s) contains already deleted archives" in capsys.readouterr().err


def test_handle_exception_exits_and_outputs(capsys) -> None:
    """handle_exception should print the message (and optionally stacktrace) and exit with the given code."""
    with pytest.raises(SystemExit) as exc:
        handle_exception(ValueError("boom"), exit_code=3, stacktrace=False)
    assert exc.value.code == 3
    captured = capsys.readouterr()
    assert "[ERROR]" in captured.err
    assert "boom" in captured.err


def test_handle_exception_prefix(capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        handle_exception(RuntimeError("strange"), exit_code=9, stacktrace=False, prefix="UNEXPECTED ERROR")
    assert exc.value.code == 9
    assert "[UNEXPECTED ERROR] strange" in capsys.readouterr().err
