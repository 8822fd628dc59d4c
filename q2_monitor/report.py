# -*- coding: utf-8 -*-
"""
Summaries of a timing ledger.

``ReportAggregator.summarize`` is a pure read of the ledger and may be called
while a run is still appending rows. The text and TSV writers mirror the
``pipeline_summary.txt`` / ``summary.tsv`` files produced at the end of a run.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import List, Optional, Sequence

from q2_monitor.ledger import TimingLedger
from q2_monitor.records import TIMESTAMP_FORMAT, RunSummary, StepRecord


_MB = 1024 ** 2


def summarize_records(records: Sequence[StepRecord]) -> RunSummary:
    """Aggregate a list of records; an empty list gives an all-zero summary."""
    if not records:
        return RunSummary()
    started = min(r.start_time for r in records)
    finished = max(r.end_time for r in records)
    return RunSummary(
        n_steps=len(records),
        n_failed=sum(1 for r in records if not r.succeeded),
        total_wall_time=(finished - started).total_seconds(),
        total_step_time=sum(r.duration_seconds for r in records),
        total_peak_memory_bytes=sum(r.peak_memory_bytes for r in records),
        average_cpu_percent=round(sum(r.cpu_percent for r in records) / len(records), 2),
        total_io_read_bytes=sum(r.io_read_bytes for r in records),
        total_io_write_bytes=sum(r.io_write_bytes for r in records),
        started=started,
        finished=finished,
    )


class ReportAggregator:
    """Compute :class:`RunSummary` objects from a ledger."""

    def summarize(self, ledger: TimingLedger) -> RunSummary:
        return summarize_records(ledger.read_all())


def _hms(seconds: float) -> str:
    seconds = int(round(seconds))
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m {seconds % 60}s"


def format_summary(
    summary: RunSummary,
    records: Sequence[StepRecord] = (),
    *,
    project: Optional[str] = None,
) -> str:
    """
    Render a human-readable run summary.

    Parameters
    ----------
    summary : RunSummary
        Aggregate figures.
    records : sequence of StepRecord
        If given, a per-step table is appended (minutes, MB, CPU, MB of I/O).
    project : str, optional
        Project label for the header.

    Returns
    -------
    str
        Multi-line text ending with a newline.
    """
    def ts(value) -> str:
        return value.strftime(TIMESTAMP_FORMAT) if value else "NA"

    lines: List[str] = ["PIPELINE RUN SUMMARY", "===================="]
    if project:
        lines.append(f"Project:              {project}")
    lines += [
        f"Start:                {ts(summary.started)}",
        f"End:                  {ts(summary.finished)}",
        f"Wall time:            {_hms(summary.total_wall_time)} ({summary.total_wall_time / 60:.2f} min)",
        f"Summed step time:     {summary.total_step_time / 60:.2f} min",
        f"Steps:                {summary.n_steps} ({summary.n_failed} failed)",
        "",
        "RESOURCES",
        "=========",
        f"I/O read:             {summary.total_io_read_bytes / _MB:.2f} MB",
        f"I/O write:            {summary.total_io_write_bytes / _MB:.2f} MB",
        f"I/O total:            {summary.total_io_bytes / _MB:.2f} MB",
        f"Summed peak memory:   {summary.total_peak_memory_bytes / _MB:.2f} MB",
        f"Average CPU:          {summary.average_cpu_percent:.2f}%",
    ]
    if records:
        lines += ["", "STEPS", "====="]
        lines.append(f"{'step':<30} {'minutes':>8}  {'peak MB':>10}  {'CPU':>6}  {'I/O MB':>9}  exit")
        for r in records:
            io_mb = (r.io_read_bytes + r.io_write_bytes) / _MB
            lines.append(
                f"{r.name:<30} {r.duration_seconds / 60:8.2f}  {r.peak_memory_bytes / _MB:10.2f}  "
                f"{r.cpu_percent:5.1f}%  {io_mb:9.2f}  {r.exit_status}"
            )
    return "\n".join(lines) + "\n"


def write_summary_tsv(summary: RunSummary, path: Path) -> Path:
    """Write the summary as a two-column key/value TSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as fh:
        writer = csv.writer(fh, delimiter="\t")
        writer.writerow(["key", "value"])
        for key, value in summary.to_dict().items():
            writer.writerow([key, "NA" if value is None else value])
    return path
