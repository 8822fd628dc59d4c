# -*- coding: utf-8 -*-
"""
Background sampling of a step's process tree (resident memory and CPU).

Overview
--------
``ResourceSampler.start(pid)`` returns a :class:`SamplerHandle` whose thread
samples the root process and all of its descendants straight away and then
every ``interval`` seconds. ``ResourceSampler.stop(handle)`` ends the loop,
takes a last sample and returns a :class:`ResourceSummary`.

Notes
-----
- Sampling is periodic: memory spikes shorter than the interval are missed,
  so ``peak_memory_bytes`` is a lower bound on the real peak.
- CPU percent is derived from CPU-time deltas, so 100 means one core fully
  busy; multi-threaded steps can exceed 100.
- Each handle owns its thread and sample buffer; samplers for concurrent
  steps do not share state.
"""

from __future__ import annotations

import csv
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import psutil


logger = logging.getLogger(__name__)

_ProcKey = Tuple[int, float]


@dataclass(frozen=True)
class Sample:
    """One observation of the monitored process tree."""

    elapsed: float
    rss_bytes: int
    cpu_percent: float
    n_processes: int


@dataclass
class ResourceSummary:
    """Result of one sampling session."""

    peak_memory_bytes: int = 0
    average_cpu_percent: float = 0.0
    cpu_seconds: float = 0.0
    samples: List[Sample] = field(default_factory=list)

    def write_samples_csv(self, path: Path) -> Path:
        """Write the sample time series as CSV and return ``path``."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as fh:
            writer = csv.writer(fh)
            writer.writerow(["elapsed_seconds", "rss_bytes", "cpu_percent", "n_processes"])
            for s in self.samples:
                writer.writerow([f"{s.elapsed:.3f}", s.rss_bytes, f"{s.cpu_percent:.2f}", s.n_processes])
        return path


class SamplerHandle:
    """Caller-owned state of one running sampler.

    Parameters
    ----------
    pid : int
        Root process of the monitored tree.
    interval : float
        Seconds between samples.
    """

    def __init__(self, pid: int, interval: float) -> None:
        self.pid = pid
        self.interval = interval
        self.samples: List[Sample] = []
        self.cpu_seconds = 0.0
        self._cpu_seen: Dict[_ProcKey, float] = {}
        self._procs: Dict[_ProcKey, psutil.Process] = {}
        self._t0 = time.monotonic()
        self._last_t = self._t0
        self._last_sample_t: Optional[float] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        try:
            self._root: Optional[psutil.Process] = psutil.Process(pid)
        except psutil.NoSuchProcess:
            self._root = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _tree(self) -> List[psutil.Process]:
        if self._root is None:
            return []
        try:
            procs = [self._root] + self._root.children(recursive=True)
        except psutil.NoSuchProcess:
            return []
        # Reuse Process objects so psutil can tell a recycled pid from the original.
        tree = []
        for proc in procs:
            try:
                key = (proc.pid, proc.create_time())
            except psutil.NoSuchProcess:
                continue
            tree.append(self._procs.setdefault(key, proc))
        return tree

    def sample(self) -> Optional[Sample]:
        """Take one sample; returns None once the tree has gone away."""
        with self._lock:
            now = time.monotonic()
            rss = 0
            cpu_delta = 0.0
            n = 0
            for proc in self._tree():
                try:
                    with proc.oneshot():
                        key = (proc.pid, proc.create_time())
                        if proc.status() == psutil.STATUS_ZOMBIE:
                            continue
                        mem = proc.memory_info().rss
                        times = proc.cpu_times()
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
                total = times.user + times.system
                cpu_delta += max(0.0, total - self._cpu_seen.get(key, 0.0))
                self._cpu_seen[key] = total
                rss += mem
                n += 1
            if n == 0:
                return None
            dt = now - self._last_t
            self._last_t = now
            self._last_sample_t = now
            self.cpu_seconds += cpu_delta
            # First sample has no meaningful interval.
            cpu_pct = (cpu_delta / dt * 100.0) if (dt > 0 and self.samples) else 0.0
            s = Sample(elapsed=now - self._t0, rss_bytes=rss, cpu_percent=cpu_pct, n_processes=n)
            self.samples.append(s)
            return s

    def _loop(self) -> None:
        while not self._stop.is_set():
            if self.sample() is None and self.samples:
                # Tree gone after at least one observation.
                break
            self._stop.wait(self.interval)

    def summary(self) -> ResourceSummary:
        if not self.samples or self._last_sample_t is None:
            return ResourceSummary()
        wall = self._last_sample_t - self._t0
        avg = (self.cpu_seconds / wall * 100.0) if wall > 0 else 0.0
        return ResourceSummary(
            peak_memory_bytes=max(s.rss_bytes for s in self.samples),
            average_cpu_percent=avg,
            cpu_seconds=self.cpu_seconds,
            samples=list(self.samples),
        )


class ResourceSampler:
    """Start and stop per-step samplers.

    Parameters
    ----------
    interval : float
        Seconds between samples.
    """

    def __init__(self, interval: float = 2.0) -> None:
        if interval <= 0:
            raise ValueError("Sampling interval must be positive")
        self.interval = interval

    def start(self, pid: int) -> SamplerHandle:
        """Begin sampling ``pid`` and its descendants; returns immediately."""
        handle = SamplerHandle(pid, self.interval)
        handle._thread = threading.Thread(
            target=handle._loop, name=f"sampler-{pid}", daemon=True
        )
        handle._thread.start()
        return handle

    def stop(self, handle: SamplerHandle) -> ResourceSummary:
        """Stop sampling and summarise everything observed since ``start``."""
        handle._stop.set()
        if handle._thread is not None:
            handle._thread.join()
        # Catch CPU time burnt since the last periodic sample.
        handle.sample()
        summary = handle.summary()
        if not summary.samples:
            logger.debug("No samples for pid %s (exited before first sample)", handle.pid)
        return summary
