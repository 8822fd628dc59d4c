"""Tests for sequencing, fan-out and failure policy."""

import threading
import time
from datetime import datetime

import pytest

from q2_monitor.errors import InfrastructureError, StepFailure
from q2_monitor.orchestrator import PipelineOrchestrator
from q2_monitor.records import FanOut, StepRecord, StepSpec
from q2_monitor.report import ReportAggregator


class FakeRunner:
    """Records calls and concurrency without launching processes.

    ``exits`` maps step name to exit status; ``delay`` is the time each step "runs".
    """

    def __init__(self, exits=None, delay=0.05, raise_on=None):
        self.exits = exits or {}
        self.delay = delay
        self.raise_on = raise_on
        self.started = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run(self, spec):
        with self._lock:
            self.started.append(spec.name)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            start = datetime.now()
            time.sleep(self.delay)
            if spec.name == self.raise_on:
                raise InfrastructureError("ledger unwritable")
            return StepRecord.build(
                name=spec.name,
                start_time=start,
                end_time=datetime.now(),
                peak_memory_bytes=0,
                cpu_percent=0.0,
                io_read_bytes=0,
                io_write_bytes=0,
                exit_status=self.exits.get(spec.name, 0),
            )
        finally:
            with self._lock:
                self.active -= 1


def _step(name, allow_failure=False):
    return StepSpec(name=name, command=["true"], allow_failure=allow_failure)


def test_sequential_order_is_preserved():
    runner = FakeRunner()
    result = PipelineOrchestrator(runner).run([_step("a"), _step("b"), _step("c")])
    assert result.ok
    assert [r.name for r in result.records] == ["a", "b", "c"]
    assert runner.started == ["a", "b", "c"]


def test_strict_failure_halts_pipeline():
    runner = FakeRunner(exits={"b": 7})
    result = PipelineOrchestrator(runner).run([_step("a"), _step("b"), _step("c"), FanOut("f", [_step("d")])])
    assert not result.ok
    assert result.failure.name == "b"
    assert result.failure.exit_status == 7
    assert runner.started == ["a", "b"]
    assert result.skipped == ["c", "d"]
    with pytest.raises(StepFailure) as excinfo:
        result.raise_for_failure()
    assert excinfo.value.step == "b"
    assert excinfo.value.exit_status == 7


def test_allowed_failure_continues():
    runner = FakeRunner(exits={"b": 1})
    result = PipelineOrchestrator(runner).run([_step("a"), _step("b", allow_failure=True), _step("c")])
    assert result.ok
    assert runner.started == ["a", "b", "c"]
    assert [r.exit_status for r in result.records] == [0, 1, 0]
    result.raise_for_failure()


def test_fan_out_respects_max_parallelism():
    runner = FakeRunner(delay=0.2)
    steps = [_step(f"s{i}") for i in range(6)]
    result = PipelineOrchestrator(runner, max_parallelism=2).run([FanOut("fan", steps)])
    assert result.ok
    assert sorted(r.name for r in result.records) == sorted(s.name for s in steps)
    assert runner.max_active == 2


def test_fan_out_is_a_barrier():
    runner = FakeRunner(delay=0.1)
    items = [FanOut("fan", [_step("x"), _step("y"), _step("z")]), _step("after")]
    PipelineOrchestrator(runner, max_parallelism=3).run(items)
    assert runner.started[-1] == "after"


def test_strict_failure_in_fan_out_cancels_queued_steps():
    runner = FakeRunner(exits={"bad": 3})
    items = [FanOut("fan", [_step("bad"), _step("x"), _step("y")]), _step("after")]
    result = PipelineOrchestrator(runner, max_parallelism=1).run(items)
    assert result.failure.name == "bad"
    assert runner.started == ["bad"]
    assert set(result.skipped) == {"x", "y", "after"}


def test_in_flight_fan_out_steps_drain_after_failure():
    runner = FakeRunner(exits={"bad": 3}, delay=0.2)
    result = PipelineOrchestrator(runner, max_parallelism=2).run([FanOut("fan", [_step("bad"), _step("slow")])])
    assert {r.name for r in result.records} == {"bad", "slow"}
    assert result.failure.name == "bad"


def test_allowed_failure_in_fan_out_does_not_cancel():
    runner = FakeRunner(exits={"meh": 2})
    items = [FanOut("fan", [_step("meh", allow_failure=True), _step("x"), _step("y")])]
    result = PipelineOrchestrator(runner, max_parallelism=1).run(items)
    assert result.ok
    assert sorted(runner.started) == ["meh", "x", "y"]


def test_infrastructure_error_propagates():
    runner = FakeRunner(raise_on="b")
    with pytest.raises(InfrastructureError):
        PipelineOrchestrator(runner, max_parallelism=2).run([FanOut("fan", [_step("a"), _step("b")])])


def test_duplicate_names_rejected():
    with pytest.raises(ValueError):
        PipelineOrchestrator(FakeRunner()).run([_step("a"), FanOut("f", [_step("a")])])


def test_max_parallelism_must_be_positive():
    with pytest.raises(ValueError):
        PipelineOrchestrator(FakeRunner(), max_parallelism=0)


def test_parallel_runners_share_one_ledger(make_runner, ledger):
    n = 12
    runners = [make_runner() for _ in range(n)]
    threads = [
        threading.Thread(target=r.run, args=(StepSpec(name=f"noop_{i}", command=["true"]),))
        for i, r in enumerate(runners)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    rows = ledger.read_all()
    assert len(rows) == n
    assert {r.name for r in rows} == {f"noop_{i}" for i in range(n)}


@pytest.mark.slow
def test_sequential_scenario_wall_time(make_runner, ledger):
    steps = [StepSpec(name=n, command="sleep 1; exit 0") for n in ("fetch", "transform", "analyze")]
    result = PipelineOrchestrator(make_runner()).run(steps)
    assert result.ok
    rows = ledger.read_all()
    assert [r.name for r in rows] == ["fetch", "transform", "analyze"]
    summary = ReportAggregator().summarize(ledger)
    # Whole-second timestamps: three 1 s steps span 3 or 4 ledger seconds.
    assert 3 <= summary.total_wall_time <= 5
    assert summary.n_steps == 3


@pytest.mark.slow
def test_parallel_scenario_wall_time(make_runner, ledger):
    steps = [StepSpec(name=n, command="sleep 1; exit 0") for n in ("fetch", "transform", "analyze")]
    result = PipelineOrchestrator(make_runner(), max_parallelism=3).run([FanOut("all", steps)])
    assert result.ok
    rows = ledger.read_all()
    assert sorted(r.name for r in rows) == ["analyze", "fetch", "transform"]
    assert [r.name for r in rows] == [r.name for r in result.records]
    summary = ReportAggregator().summarize(ledger)
    assert 1 <= summary.total_wall_time <= 2
