# -*- coding: utf-8 -*-
"""
Sequence and fan out monitored steps.

Items are run in declaration order. A :class:`~q2_monitor.records.FanOut`
runs its steps on a bounded thread pool and acts as a barrier: the next item
starts only once every fan-out step has finished.

Failure policy
--------------
- A failed step with ``allow_failure=False`` stops the run: no further steps
  are launched, queued fan-out steps are cancelled, steps already running
  are left to finish (no forced kill, so the external tools do not leave
  half-written artefacts behind).
- A failed step with ``allow_failure=True`` is logged and the run goes on.
- :class:`~q2_monitor.errors.InfrastructureError` aborts the run and
  propagates once in-flight steps have drained.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from q2_monitor.errors import StepFailure
from q2_monitor.records import FanOut, PipelineItem, StepRecord, StepSpec, flatten
from q2_monitor.runner import StepRunner


@dataclass
class PipelineResult:
    """Records of the steps that ran (completion order) and the fatal failure, if any."""

    records: List[StepRecord] = field(default_factory=list)
    failure: Optional[StepRecord] = None
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def raise_for_failure(self) -> None:
        """Raise :class:`StepFailure` if a required step failed."""
        if self.failure is not None:
            raise StepFailure(self.failure.name, self.failure.exit_status)


def _check_unique_names(items: Sequence[PipelineItem]) -> None:
    seen: Dict[str, int] = {}
    for spec in flatten(items):
        seen[spec.name] = seen.get(spec.name, 0) + 1
    dupes = sorted(n for n, c in seen.items() if c > 1)
    if dupes:
        raise ValueError(f"Duplicate step names: {', '.join(dupes)}")


class PipelineOrchestrator:
    """Run a declared list of steps through a :class:`StepRunner`.

    Parameters
    ----------
    runner : StepRunner
        Executes and records individual steps.
    max_parallelism : int
        Upper bound on concurrently running steps inside a fan-out.
    logger : logging.Logger, optional
        Destination for progress messages.
    """

    def __init__(
        self,
        runner: StepRunner,
        *,
        max_parallelism: int = 1,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be >= 1")
        self.runner = runner
        self.max_parallelism = max_parallelism
        self.logger = logger or logging.getLogger(__name__)

    def _is_fatal(self, spec: StepSpec, record: StepRecord) -> bool:
        if record.succeeded:
            return False
        if spec.allow_failure:
            self.logger.warning(
                "Optional step '%s' failed (exit=%s); continuing.", spec.name, record.exit_status
            )
            return False
        self.logger.error("Step '%s' failed with exit status %s", spec.name, record.exit_status)
        return True

    def _run_fan_out(self, block: FanOut, result: PipelineResult) -> None:
        self.logger.info(
            "Fan-out '%s': %d step(s), up to %d at a time",
            block.name, len(block.steps), self.max_parallelism,
        )
        stop = threading.Event()

        def guarded(spec: StepSpec) -> Optional[StepRecord]:
            # Set from the worker so an idle worker never picks up the next queued step.
            if stop.is_set():
                return None
            try:
                record = self.runner.run(spec)
            except BaseException:
                stop.set()
                raise
            if not record.succeeded and not spec.allow_failure:
                stop.set()
            return record

        infra_error: Optional[BaseException] = None
        with ThreadPoolExecutor(
            max_workers=self.max_parallelism, thread_name_prefix=f"fanout-{block.name}"
        ) as pool:
            pending: Dict[Future, StepSpec] = {pool.submit(guarded, s): s for s in block.steps}
            while pending:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for fut in done:
                    spec = pending.pop(fut)
                    if fut.cancelled():
                        result.skipped.append(spec.name)
                        continue
                    exc = fut.exception()
                    if exc is not None:
                        infra_error = infra_error or exc
                        stop.set()
                        continue
                    record = fut.result()
                    if record is None:
                        result.skipped.append(spec.name)
                        continue
                    result.records.append(record)
                    if self._is_fatal(spec, record) and result.failure is None:
                        result.failure = record
                        stop.set()
                if stop.is_set():
                    for fut, spec in list(pending.items()):
                        if fut.cancel():
                            pending.pop(fut)
                            result.skipped.append(spec.name)
                    if pending:
                        self.logger.info(
                            "Waiting for %d in-flight step(s) to finish", len(pending)
                        )
        if infra_error is not None:
            raise infra_error

    def run(self, items: Sequence[PipelineItem]) -> PipelineResult:
        """
        Run ``items`` and return every record produced, in completion order.

        Raises
        ------
        ValueError
            If two steps share a name.
        InfrastructureError
            If a step could not be launched or recorded.
        """
        _check_unique_names(items)
        result = PipelineResult()
        for idx, item in enumerate(items):
            if isinstance(item, FanOut):
                self._run_fan_out(item, result)
            else:
                record = self.runner.run(item)
                result.records.append(record)
                if self._is_fatal(item, record):
                    result.failure = record
            if result.failure is not None:
                result.skipped.extend(s.name for s in flatten(items[idx + 1:]))
                self.logger.error(
                    "Stopping pipeline: '%s' failed (exit=%s); %d step(s) not run.",
                    result.failure.name, result.failure.exit_status, len(result.skipped),
                )
                break
        return result
