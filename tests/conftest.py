"""Shared fixtures for the q2_monitor tests."""

import itertools
import logging

import pytest

from q2_monitor.ledger import TimingLedger
from q2_monitor.runner import StepRunner


class CountingIOProbe:
    """Deterministic stand-in for the disk counters: +1 MB read, +2 MB written per call."""

    def __init__(self):
        self._ticks = itertools.count()

    def read(self):
        n = next(self._ticks)
        return n * 1024 ** 2, n * 2 * 1024 ** 2


@pytest.fixture
def ledger(tmp_path):
    return TimingLedger.create(tmp_path / "logs" / "timing_summary.csv")


@pytest.fixture
def make_runner(tmp_path, ledger):
    """Factory for runners writing into ``tmp_path`` with a short sampling interval."""

    def _make(**kwargs):
        kwargs.setdefault("ledger", ledger)
        kwargs.setdefault("log_dir", tmp_path / "logs")
        kwargs.setdefault("sample_interval", 0.1)
        kwargs.setdefault("io_probe", CountingIOProbe())
        return StepRunner(**kwargs)

    return _make


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging() between tests so caplog sees package records."""
    yield
    log = logging.getLogger("q2_monitor")
    for handler in list(log.handlers):
        handler.close()
        log.removeHandler(handler)
    log.propagate = True
    log.setLevel(logging.NOTSET)
