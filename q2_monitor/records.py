# -*- coding: utf-8 -*-
"""
Data model: step specifications, step records and run summaries.

Notes
-----
- Timestamps are naive local datetimes truncated to whole seconds, which is
  the resolution of the ledger's ``%Y-%m-%d %H:%M:%S`` format.
- ``StepRecord`` is frozen: once a step has finished its record never changes.
"""

from __future__ import annotations

import shlex
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union


TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

LEDGER_FIELDS = (
    "name",
    "start_time",
    "end_time",
    "duration_seconds",
    "peak_memory_bytes",
    "cpu_percent",
    "io_read_bytes",
    "io_write_bytes",
    "exit_status",
)

Command = Union[List[str], str]


def now_seconds() -> datetime:
    """Current local time truncated to whole seconds."""
    return datetime.now().replace(microsecond=0)


@dataclass
class StepSpec:
    """One external command to run under monitoring.

    Attributes
    ----------
    name : str
        Identifier, unique within a run. Used for the step log file name.
    command : list of str or str
        Either an argv vector (run without a shell) or a shell string
        (run with ``bash -c``).
    allow_failure : bool
        If True a non-zero exit is logged and the pipeline continues.
    env : dict, optional
        Extra environment variables layered over ``os.environ``.
    cwd : pathlib.Path, optional
        Working directory for the child.
    timeout : float, optional
        Seconds before the step's process group is terminated.
    """

    name: str
    command: Command
    allow_failure: bool = False
    env: Optional[Dict[str, str]] = None
    cwd: Optional[Path] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.name or "/" in self.name:
            raise ValueError(f"Invalid step name: {self.name!r}")
        if not self.command:
            raise ValueError(f"Step '{self.name}' has an empty command")

    def argv(self) -> List[str]:
        """Return the concrete argv for ``subprocess``."""
        if isinstance(self.command, str):
            return ["bash", "-c", self.command]
        return [str(tok) for tok in self.command]

    def display(self) -> str:
        """Printable form of the command for logs."""
        if isinstance(self.command, str):
            return self.command
        return " ".join(shlex.quote(str(tok)) for tok in self.command)


@dataclass
class FanOut:
    """Steps with no dependency between them; all finish before the next item."""

    name: str
    steps: List[StepSpec] = field(default_factory=list)


PipelineItem = Union[StepSpec, FanOut]


@dataclass(frozen=True)
class StepRecord:
    """Measured outcome of one step; one ledger row."""

    name: str
    start_time: datetime
    end_time: datetime
    duration_seconds: float
    peak_memory_bytes: int
    cpu_percent: float
    io_read_bytes: int
    io_write_bytes: int
    exit_status: int

    @classmethod
    def build(
        cls,
        *,
        name: str,
        start_time: datetime,
        end_time: datetime,
        peak_memory_bytes: int,
        cpu_percent: float,
        io_read_bytes: int,
        io_write_bytes: int,
        exit_status: int,
    ) -> "StepRecord":
        """Create a record, deriving ``duration_seconds`` from the timestamps."""
        start_time = start_time.replace(microsecond=0)
        end_time = end_time.replace(microsecond=0)
        if end_time < start_time:
            raise ValueError(f"end_time precedes start_time for step '{name}'")
        return cls(
            name=name,
            start_time=start_time,
            end_time=end_time,
            duration_seconds=(end_time - start_time).total_seconds(),
            peak_memory_bytes=int(peak_memory_bytes),
            cpu_percent=round(float(cpu_percent), 2),
            io_read_bytes=int(io_read_bytes),
            io_write_bytes=int(io_write_bytes),
            exit_status=int(exit_status),
        )

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0

    def to_row(self) -> List[str]:
        """Serialise to ledger column strings (order of ``LEDGER_FIELDS``)."""
        return [
            self.name,
            self.start_time.strftime(TIMESTAMP_FORMAT),
            self.end_time.strftime(TIMESTAMP_FORMAT),
            str(self.duration_seconds),
            str(self.peak_memory_bytes),
            str(self.cpu_percent),
            str(self.io_read_bytes),
            str(self.io_write_bytes),
            str(self.exit_status),
        ]

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> "StepRecord":
        """Parse a ledger row (as produced by ``csv.DictReader``)."""
        return cls(
            name=row["name"],
            start_time=datetime.strptime(row["start_time"], TIMESTAMP_FORMAT),
            end_time=datetime.strptime(row["end_time"], TIMESTAMP_FORMAT),
            duration_seconds=float(row["duration_seconds"]),
            peak_memory_bytes=int(row["peak_memory_bytes"]),
            cpu_percent=float(row["cpu_percent"]),
            io_read_bytes=int(row["io_read_bytes"]),
            io_write_bytes=int(row["io_write_bytes"]),
            exit_status=int(row["exit_status"]),
        )


@dataclass(frozen=True)
class RunSummary:
    """Aggregate view of a ledger; recomputable at any time."""

    n_steps: int = 0
    n_failed: int = 0
    total_wall_time: float = 0.0
    total_step_time: float = 0.0
    total_peak_memory_bytes: int = 0
    average_cpu_percent: float = 0.0
    total_io_read_bytes: int = 0
    total_io_write_bytes: int = 0
    started: Optional[datetime] = None
    finished: Optional[datetime] = None

    @property
    def total_io_bytes(self) -> int:
        return self.total_io_read_bytes + self.total_io_write_bytes

    def to_dict(self) -> Dict[str, object]:
        out = asdict(self)
        for key in ("started", "finished"):
            value = out[key]
            out[key] = value.strftime(TIMESTAMP_FORMAT) if value else None
        out["total_io_bytes"] = self.total_io_bytes
        return out


def flatten(items: Sequence[PipelineItem]) -> List[StepSpec]:
    """Return every StepSpec in declaration order, expanding fan-outs."""
    specs: List[StepSpec] = []
    for item in items:
        if isinstance(item, FanOut):
            specs.extend(item.steps)
        else:
            specs.append(item)
    return specs
