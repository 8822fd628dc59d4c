"""Tests for ledger summaries and their renderings."""

import csv
from datetime import datetime, timedelta

from q2_monitor.ledger import TimingLedger
from q2_monitor.records import RunSummary, StepRecord
from q2_monitor.report import ReportAggregator, format_summary, summarize_records, write_summary_tsv


def _rec(name, start_offset, duration, exit_status=0, mem=100, cpu=50.0):
    start = datetime(2024, 5, 1, 8, 0, 0) + timedelta(seconds=start_offset)
    return StepRecord.build(
        name=name,
        start_time=start,
        end_time=start + timedelta(seconds=duration),
        peak_memory_bytes=mem,
        cpu_percent=cpu,
        io_read_bytes=10,
        io_write_bytes=5,
        exit_status=exit_status,
    )


def test_empty_ledger_gives_zero_summary(tmp_path):
    summary = ReportAggregator().summarize(TimingLedger.create(tmp_path / "t.csv"))
    assert summary == RunSummary()
    assert summary.n_steps == 0
    assert summary.total_wall_time == 0.0
    assert summary.total_io_bytes == 0


def test_missing_ledger_gives_zero_summary(tmp_path):
    assert ReportAggregator().summarize(TimingLedger(tmp_path / "none.csv")) == RunSummary()


def test_totals_and_wall_time():
    records = [
        _rec("a", 0, 10, mem=100, cpu=100.0),
        _rec("b", 5, 20, exit_status=2, mem=300, cpu=50.0),
        _rec("c", 30, 5, mem=50, cpu=0.0),
    ]
    s = summarize_records(records)
    assert s.n_steps == 3
    assert s.n_failed == 1
    assert s.total_wall_time == 35.0
    assert s.total_step_time == 35.0
    assert s.total_peak_memory_bytes == 450
    assert s.average_cpu_percent == 50.0
    assert s.total_io_read_bytes == 30
    assert s.total_io_write_bytes == 15
    assert s.started == datetime(2024, 5, 1, 8, 0, 0)
    assert s.finished == datetime(2024, 5, 1, 8, 0, 35)


def test_parallel_steps_wall_time_shorter_than_step_time():
    records = [_rec("x", 0, 60), _rec("y", 0, 60), _rec("z", 1, 60)]
    s = summarize_records(records)
    assert s.total_wall_time == 61.0
    assert s.total_step_time == 180.0


def test_format_summary_lists_steps():
    records = [_rec("dada2_g1", 0, 120), _rec("phylogeny_combined", 120, 60, exit_status=1)]
    text = format_summary(summarize_records(records), records, project="proj")
    assert "Project:              proj" in text
    assert "Steps:                2 (1 failed)" in text
    assert "0h 3m 0s" in text
    assert "dada2_g1" in text
    assert text.endswith("\n")


def test_format_empty_summary_has_na_dates():
    text = format_summary(RunSummary())
    assert "Start:                NA" in text


def test_write_summary_tsv(tmp_path):
    out = write_summary_tsv(summarize_records([_rec("a", 0, 3)]), tmp_path / "m" / "summary.tsv")
    with out.open() as fh:
        rows = dict(csv.reader(fh, delimiter="\t"))
    assert rows["key"] == "value"
    assert rows["n_steps"] == "1"
    assert rows["total_io_bytes"] == "15"
    assert rows["started"] == "2024-05-01 08:00:00"


def test_write_summary_tsv_empty_uses_na(tmp_path):
    out = write_summary_tsv(RunSummary(), tmp_path / "summary.tsv")
    with out.open() as fh:
        rows = dict(csv.reader(fh, delimiter="\t"))
    assert rows["started"] == "NA"
