# -*- coding: utf-8 -*-
"""
Append-only CSV ledger of step records (``timing_summary.csv``).

Each append is a single ``write`` of one complete line on an append-mode
handle, done under a process-local lock and an exclusive ``flock`` so that
parallel steps (threads) and separate ``q2-monitor run-step`` processes can
share one file. The line is fsync'ed before the lock is released, so rows of
finished steps survive a crash of the controller.
"""

from __future__ import annotations

import csv
import fcntl
import io
import logging
import os
import threading
from pathlib import Path
from typing import List

from q2_monitor.errors import InfrastructureError
from q2_monitor.records import LEDGER_FIELDS, StepRecord


logger = logging.getLogger(__name__)


def _csv_line(values) -> str:
    buf = io.StringIO()
    csv.writer(buf, lineterminator="\n").writerow(values)
    return buf.getvalue()


class TimingLedger:
    """Durable, ordered record of completed steps.

    Parameters
    ----------
    path : pathlib.Path
        CSV file. Created (with its header row) on first append.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def create(cls, path: Path, *, overwrite: bool = False) -> "TimingLedger":
        """Start a ledger for a new run.

        With ``overwrite`` an existing file is truncated to just the header;
        otherwise rows already present are kept and new rows follow them.
        """
        ledger = cls(path)
        try:
            ledger.path.parent.mkdir(parents=True, exist_ok=True)
            if overwrite or not ledger.path.exists():
                with ledger.path.open("w", encoding="utf-8", newline="") as fh:
                    fh.write(_csv_line(LEDGER_FIELDS))
        except OSError as err:
            raise InfrastructureError(f"Cannot create ledger {ledger.path}: {err}") from err
        return ledger

    def append(self, record: StepRecord) -> None:
        """Append one row atomically.

        Raises
        ------
        InfrastructureError
            If the ledger cannot be written.
        """
        line = _csv_line(record.to_row())
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8", newline="") as fh:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
                    try:
                        if os.fstat(fh.fileno()).st_size == 0:
                            line = _csv_line(LEDGER_FIELDS) + line
                        fh.write(line)
                        fh.flush()
                        os.fsync(fh.fileno())
                    finally:
                        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
            except OSError as err:
                raise InfrastructureError(f"Cannot append to ledger {self.path}: {err}") from err
        logger.debug("Ledger row: %s", line.rstrip("\n"))

    def read_all(self) -> List[StepRecord]:
        """Return every record in append order; empty if the file is missing."""
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8", newline="") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_SH)
            try:
                reader = csv.DictReader(fh)
                missing = [f for f in LEDGER_FIELDS if f not in (reader.fieldnames or [])]
                if reader.fieldnames and missing:
                    raise ValueError(
                        f"{self.path} is not a timing ledger (missing columns: {', '.join(missing)})"
                    )
                return [StepRecord.from_row(row) for row in reader]
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
