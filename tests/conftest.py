import threading
from datetime import datetime, timezone
from typing import Optional

import pytest

from tarsnap_prune import ArchiveNotFoundError, ConfigNamespace, DeletionFailedError, Logger, LogLevel


# Fixed "now" for all retention tests: thresholds are 2024-10-19 and 2026-08-19 (UTC midnight)
NOW = datetime(2026, 10, 19, 12, 30, 0, tzinfo=timezone.utc)


def make_args(**overrides) -> ConfigNamespace:
    defaults = dict(
        archive_regex=".*",
        archive_regex_compiled=None,
        file=None,
        already_deleted_file=None,
        tarsnap="tarsnap",
        dry_run=True,
        batch_size=100,
        concurrency=1,
        verbose=LogLevel.ERROR,
        stacktrace=False,
    )
    defaults.update(overrides)
    return ConfigNamespace(**defaults)


class FakeBackend:
    """Records every delete request; names in `missing` are reported absent, names in `failing` fail hard."""

    def __init__(self, missing: Optional[set] = None, failing: Optional[set] = None, listing: str = "") -> None:
        self.missing = set(missing or ())
        self.failing = set(failing or ())
        self.listing = listing
        self.calls: list[list[str]] = []
        self.list_calls = 0
        self._lock = threading.Lock()

    def list_archives(self) -> str:
        self.list_calls += 1
        return self.listing

    def delete(self, names: list[str], cancel_event: threading.Event) -> None:
        with self._lock:
            self.calls.append(list(names))
        if self.missing.intersection(names):
            raise ArchiveNotFoundError("tarsnap: Archive does not exist")
        if self.failing.intersection(names):
            raise DeletionFailedError("tarsnap: Error: account balance is too low")
        self.missing.update(names)


@pytest.fixture
def logger() -> Logger:
    return Logger(make_args())


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
