# -*- coding: utf-8 -*-
"""
Static performance dashboard for a timing ledger.

Renders PNG charts with matplotlib (Agg backend, no display needed) and a
small ``index.html`` linking them:

- ``duration.png``, ``memory.png``, ``cpu.png``: one bar per step
- ``overview.png``: 2x2 panel of duration, peak memory, CPU and I/O
- ``timeseries/<step>.png``: RSS and CPU over time, for every step with a
  ``<metrics_dir>/<step>_samples.csv`` file
"""

from __future__ import annotations

import logging
from html import escape
from pathlib import Path
from typing import Dict, List, Optional

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import pandas as pd  # noqa: E402

from q2_monitor.records import LEDGER_FIELDS, TIMESTAMP_FORMAT  # noqa: E402
from q2_monitor.report import summarize_records  # noqa: E402
from q2_monitor.ledger import TimingLedger  # noqa: E402


logger = logging.getLogger(__name__)

_MB = 1024 ** 2
OK_COLOUR = "#4c72b0"
FAIL_COLOUR = "#c44e52"


def load_ledger_frame(path: Path) -> pd.DataFrame:
    """Read a ledger CSV into a DataFrame with derived MB/minute columns.

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist.
    ValueError
        If required columns are missing.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Ledger not found: {path}")
    if path.stat().st_size == 0:
        return pd.DataFrame(columns=list(LEDGER_FIELDS))
    df = pd.read_csv(path)
    missing = [c for c in LEDGER_FIELDS if c not in df.columns]
    if missing:
        raise ValueError(f"Ledger {path} is missing columns: {', '.join(missing)}")
    df["start_time"] = pd.to_datetime(df["start_time"], format=TIMESTAMP_FORMAT)
    df["end_time"] = pd.to_datetime(df["end_time"], format=TIMESTAMP_FORMAT)
    df["duration_min"] = df["duration_seconds"] / 60.0
    df["peak_memory_mb"] = df["peak_memory_bytes"] / _MB
    df["io_mb"] = (df["io_read_bytes"] + df["io_write_bytes"]) / _MB
    return df


def _colours(df: pd.DataFrame) -> List[str]:
    return [OK_COLOUR if code == 0 else FAIL_COLOUR for code in df["exit_status"]]


def _bar(ax, df: pd.DataFrame, column: str, ylabel: str, title: str) -> None:
    ax.bar(range(len(df)), df[column], color=_colours(df))
    ax.set_xticks(range(len(df)))
    ax.set_xticklabels(df["name"], rotation=60, ha="right", fontsize=7)
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    ax.grid(axis="y", alpha=0.3)


def plot_metric_bars(df: pd.DataFrame, column: str, ylabel: str, title: str, out_png: Path) -> Path:
    """One bar per step, failed steps in red."""
    fig, ax = plt.subplots(1, 1, figsize=(max(8.0, 0.35 * len(df)), 4.5))
    _bar(ax, df, column, ylabel, title)
    fig.tight_layout()
    fig.savefig(out_png, dpi=120)
    plt.close(fig)
    return out_png


def plot_overview(df: pd.DataFrame, out_png: Path) -> Path:
    fig, axes = plt.subplots(2, 2, figsize=(max(12.0, 0.5 * len(df)), 9))
    panels = [
        ("duration_min", "minutes", "Duration"),
        ("peak_memory_mb", "MB", "Peak memory (RSS)"),
        ("cpu_percent", "%", "Average CPU"),
        ("io_mb", "MB", "Disk I/O (read + write)"),
    ]
    for ax, (column, ylabel, title) in zip(axes.flat, panels):
        _bar(ax, df, column, ylabel, title)
    fig.suptitle("Pipeline resource overview")
    fig.tight_layout(rect=[0, 0, 1, 0.96])
    fig.savefig(out_png, dpi=120)
    plt.close(fig)
    return out_png


def plot_step_timeseries(samples_csv: Path, out_png: Path, *, step: str) -> Optional[Path]:
    """RSS and CPU against elapsed time for one step; None if there are no samples."""
    ts = pd.read_csv(samples_csv)
    if ts.empty:
        return None
    fig, (ax1, ax2) = plt.subplots(2, 1, figsize=(9, 5.5), sharex=True)
    ax1.plot(ts["elapsed_seconds"], ts["rss_bytes"] / _MB, color=OK_COLOUR)
    ax1.set_ylabel("RSS (MB)")
    ax1.set_title(step)
    ax1.grid(alpha=0.3)
    ax2.plot(ts["elapsed_seconds"], ts["cpu_percent"], color="#55a868")
    ax2.set_ylabel("CPU (%)")
    ax2.set_xlabel("elapsed (s)")
    ax2.grid(alpha=0.3)
    fig.tight_layout()
    fig.savefig(out_png, dpi=120)
    plt.close(fig)
    return out_png


def write_dashboard_index(
    out_dir: Path, *, charts: List[Path], step_charts: Dict[str, Path], title: str, summary_lines: List[str]
) -> Path:
    """Create a minimal landing page linking to every chart."""

    def rel(p: Path) -> str:
        return escape(str(p.relative_to(out_dir)).replace("\\", "/"))

    lines = [
        "<!doctype html>",
        "<html lang='en'>",
        "<head>",
        "  <meta charset='utf-8' />",
        f"  <title>Pipeline performance: {escape(title)}</title>",
        "  <style>",
        "    body{font-family:system-ui,-apple-system,Segoe UI,Roboto,Ubuntu,Arial,sans-serif;line-height:1.45;margin:2rem;}",
        "    h1{font-size:1.6rem;margin:0 0 0.5rem}",
        "    h2{font-size:1.2rem;margin:2rem 0 0.5rem}",
        "    img{max-width:100%;border:1px solid #ddd;margin:0.5rem 0}",
        "    pre{background:#f6f8fa;padding:0.6rem;border-radius:4px}",
        "    .muted{color:#888}",
        "  </style>",
        "</head>",
        "<body>",
        f"  <h1>Pipeline performance: <code>{escape(title)}</code></h1>",
        "  <pre>" + escape("\n".join(summary_lines)) + "</pre>",
        "  <h2>Per-step charts</h2>",
    ]
    if charts:
        for p in charts:
            lines.append(f"  <div><img src='{rel(p)}' alt='{escape(p.stem)}' /></div>")
    else:
        lines.append("  <p class='muted'>No steps recorded yet.</p>")
    lines.append("  <h2>Resource time series</h2>")
    if step_charts:
        lines.append("  <ul>")
        for step, p in step_charts.items():
            lines.append(f"    <li><a href='{rel(p)}'>{escape(step)}</a></li>")
        lines.append("  </ul>")
    else:
        lines.append("  <p class='muted'>No sample time series found.</p>")
    lines += ["</body>", "</html>"]

    index = out_dir / "index.html"
    index.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return index


def render_dashboard(
    *, ledger_path: Path, out_dir: Path, metrics_dir: Optional[Path] = None
) -> Path:
    """
    Render every chart for ``ledger_path`` into ``out_dir``.

    Parameters
    ----------
    ledger_path : pathlib.Path
        Timing ledger CSV.
    out_dir : pathlib.Path
        Destination; created if needed.
    metrics_dir : pathlib.Path, optional
        Directory holding ``<step>_samples.csv`` files.

    Returns
    -------
    pathlib.Path
        The written ``index.html``.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    df = load_ledger_frame(ledger_path)
    summary = summarize_records(TimingLedger(ledger_path).read_all())
    summary_lines = [
        f"steps: {summary.n_steps} ({summary.n_failed} failed)",
        f"wall time: {summary.total_wall_time / 60:.2f} min",
        f"summed step time: {summary.total_step_time / 60:.2f} min",
        f"average CPU: {summary.average_cpu_percent:.2f}%",
        f"total I/O: {summary.total_io_bytes / _MB:.2f} MB",
    ]

    charts: List[Path] = []
    if not df.empty:
        charts.append(plot_metric_bars(
            df, "duration_min", "minutes", "Step duration", out_dir / "duration.png"
        ))
        charts.append(plot_metric_bars(
            df, "peak_memory_mb", "MB", "Peak memory (RSS)", out_dir / "memory.png"
        ))
        charts.append(plot_metric_bars(
            df, "cpu_percent", "%", "Average CPU", out_dir / "cpu.png"
        ))
        charts.append(plot_overview(df, out_dir / "overview.png"))

    step_charts: Dict[str, Path] = {}
    if metrics_dir is not None and not df.empty:
        ts_dir = out_dir / "timeseries"
        ts_dir.mkdir(exist_ok=True)
        for step in df["name"]:
            samples_csv = Path(metrics_dir) / f"{step}_samples.csv"
            if not samples_csv.exists():
                logger.debug("No samples for %s", step)
                continue
            png = plot_step_timeseries(samples_csv, ts_dir / f"{step}.png", step=step)
            if png is not None:
                step_charts[step] = png

    index = write_dashboard_index(
        out_dir,
        charts=charts,
        step_charts=step_charts,
        title=Path(ledger_path).parent.parent.name or Path(ledger_path).stem,
        summary_lines=summary_lines,
    )
    logger.info("Dashboard written: %s (%d charts, %d time series)", index, len(charts), len(step_charts))
    return index
