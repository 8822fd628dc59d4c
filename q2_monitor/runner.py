# -*- coding: utf-8 -*-
"""
Run one external command under timing and resource instrumentation.

Overview
--------
``StepRunner.run(spec)``:

1. stamps the start time and reads the disk I/O counters,
2. launches the command in its own process group, stdout/stderr appended to
   ``<log_dir>/<step>.log``, and starts a sampler on it,
3. waits for the child (optionally with a timeout),
4. stops the sampler, reads the I/O counters again,
5. builds a :class:`~q2_monitor.records.StepRecord`, appends it to the ledger
   and returns it.

A non-zero exit status is data, not an error: it is recorded and returned.
Only an unopenable step log, a spawn failure or a ledger write failure raise
(:class:`~q2_monitor.errors.InfrastructureError`). A samples CSV that cannot
be written is logged as a warning after the ledger row is stored.
"""

from __future__ import annotations

import logging
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from q2_monitor.errors import InfrastructureError
from q2_monitor.io_probe import SystemIOProbe
from q2_monitor.ledger import TimingLedger
from q2_monitor.process import ChildProcess
from q2_monitor.records import StepRecord, StepSpec
from q2_monitor.sampler import ResourceSampler


_MB = 1024 ** 2


def _log_metrics(log: logging.Logger, record: StepRecord) -> None:
    """Emit the per-step metrics block."""
    status = "OK" if record.succeeded else f"FAILED (exit={record.exit_status})"
    log.info("  -- metrics: %s --", record.name)
    log.info("  Duration:   %.0fs (%.2f min)", record.duration_seconds, record.duration_seconds / 60.0)
    log.info(
        "  Peak RSS:   %.2f MB (%.3f GB)",
        record.peak_memory_bytes / _MB,
        record.peak_memory_bytes / 1024 ** 3,
    )
    log.info("  CPU avg:    %.1f%%", record.cpu_percent)
    log.info(
        "  I/O:        read %.2f MB | write %.2f MB",
        record.io_read_bytes / _MB,
        record.io_write_bytes / _MB,
    )
    log.info("  Status:     %s", status)


class StepRunner:
    """Execute StepSpecs one at a time per call; safe to call from many threads.

    Parameters
    ----------
    ledger : TimingLedger
        Destination of the records.
    log_dir : pathlib.Path
        Directory for per-step stdout/stderr logs.
    metrics_dir : pathlib.Path, optional
        If given, each step's sample time series is written to
        ``<metrics_dir>/<step>_samples.csv``.
    sample_interval : float
        Seconds between resource samples.
    io_probe : SystemIOProbe, optional
        Shared probe; a default one is created if omitted.
    logger : logging.Logger, optional
        Destination for progress messages.
    """

    def __init__(
        self,
        *,
        ledger: TimingLedger,
        log_dir: Path,
        metrics_dir: Optional[Path] = None,
        sample_interval: float = 2.0,
        io_probe: Optional[SystemIOProbe] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.ledger = ledger
        self.log_dir = Path(log_dir)
        self.metrics_dir = Path(metrics_dir) if metrics_dir is not None else None
        self.sampler = ResourceSampler(interval=sample_interval)
        self.io_probe = io_probe or SystemIOProbe()
        self.logger = logger or logging.getLogger(__name__)

    def step_log(self, name: str) -> Path:
        return self.log_dir / f"{name}.log"

    def run(self, spec: StepSpec) -> StepRecord:
        """Run ``spec`` to completion and return its (already ledgered) record."""
        log = self.logger
        log_file = self.step_log(spec.name)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            lf = log_file.open("a", encoding="utf-8")
        except OSError as err:
            raise InfrastructureError(f"Cannot open step log {log_file}: {err}") from err
        log.info("▶ [%s] %s", spec.name, spec.display())
        log.debug("Step log: %s", log_file)

        start_time = datetime.now()
        t0 = time.monotonic()
        io_read_start, io_write_start = self.io_probe.read()

        with lf:
            lf.write(f"# {start_time:%Y-%m-%d %H:%M:%S} start {spec.name}\n")
            lf.write("$ " + spec.display() + "\n")
            lf.flush()
            child = ChildProcess.spawn(
                name=spec.name, argv=spec.argv(), stdout=lf, env=spec.env, cwd=spec.cwd
            )
            handle = self.sampler.start(child.pid)
            try:
                exit_status = child.wait(timeout=spec.timeout)
            except subprocess.TimeoutExpired:
                log.error("[%s] exceeded timeout of %ss; terminating", spec.name, spec.timeout)
                exit_status = child.terminate()
            except BaseException:
                # Children run in their own session and never see our SIGINT.
                child.terminate()
                raise
            finally:
                usage = self.sampler.stop(handle)
            elapsed = time.monotonic() - t0
            end_time = datetime.now()
            lf.write(f"# {end_time:%Y-%m-%d %H:%M:%S} exit {exit_status}\n")

        io_read_end, io_write_end = self.io_probe.read()

        # The kernel's rusage covers CPU burnt between samples and after the last one.
        cpu_seconds = max(usage.cpu_seconds, child.cpu_seconds())
        cpu_percent = (cpu_seconds / elapsed * 100.0) if elapsed > 0 else 0.0

        record = StepRecord.build(
            name=spec.name,
            start_time=start_time,
            end_time=end_time,
            peak_memory_bytes=usage.peak_memory_bytes,
            cpu_percent=cpu_percent,
            io_read_bytes=max(0, io_read_end - io_read_start),
            io_write_bytes=max(0, io_write_end - io_write_start),
            exit_status=exit_status,
        )
        self.ledger.append(record)

        if self.metrics_dir is not None and usage.samples:
            samples_csv = self.metrics_dir / f"{spec.name}_samples.csv"
            try:
                usage.write_samples_csv(samples_csv)
            except OSError as err:
                log.warning("[%s] could not write samples to %s: %s", spec.name, samples_csv, err)

        _log_metrics(log, record)
        if not record.succeeded:
            log.warning("[%s] exited with status %s; see %s", spec.name, exit_status, log_file)
        return record
