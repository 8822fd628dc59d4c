# -*- coding: utf-8 -*-
"""
q2_monitor: run QIIME 2 amplicon pipelines under timing and resource monitoring.

Every external step is launched as a child process, sampled for memory and
CPU while it runs, and recorded as one row of an append-only CSV ledger
(``timing_summary.csv``) that can be summarised or plotted at any time.
"""

from q2_monitor.errors import ConfigError, InfrastructureError, Q2MonitorError, StepFailure
from q2_monitor.ledger import TimingLedger
from q2_monitor.orchestrator import PipelineOrchestrator, PipelineResult
from q2_monitor.records import FanOut, RunSummary, StepRecord, StepSpec
from q2_monitor.report import ReportAggregator
from q2_monitor.runner import StepRunner

__version__ = "0.3.0"

__all__ = [
    "ConfigError",
    "FanOut",
    "InfrastructureError",
    "PipelineOrchestrator",
    "PipelineResult",
    "Q2MonitorError",
    "ReportAggregator",
    "RunSummary",
    "StepFailure",
    "StepRecord",
    "StepRunner",
    "StepSpec",
    "TimingLedger",
    "__version__",
]
