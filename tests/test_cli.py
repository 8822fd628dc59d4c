"""Tests for the q2-monitor command line."""

import json

import pytest

from q2_monitor.cli import _split_command, build_arg_parser, main
from q2_monitor.ledger import TimingLedger


def test_split_command():
    assert _split_command(["run-step", "x", "--", "echo", "--", "y"]) == (
        ["run-step", "x"], ["echo", "--", "y"],
    )
    assert _split_command(["summarize", "l.csv"]) == (["summarize", "l.csv"], [])


def test_parser_rejects_abbreviations():
    with pytest.raises(SystemExit):
        build_arg_parser().parse_args(["run-pipeline", "--project", "p"])


def test_run_step_success(tmp_path):
    ledger = tmp_path / "timing.csv"
    code = main([
        "run-step", "hello", "--ledger", str(ledger), "--log_dir", str(tmp_path / "logs"),
        "--interval", "0.1", "--", "bash", "-c", "echo hi",
    ])
    assert code == 0
    rows = TimingLedger(ledger).read_all()
    assert [r.name for r in rows] == ["hello"]
    assert "hi" in (tmp_path / "logs" / "hello.log").read_text()


def test_run_step_passes_through_exit_status(tmp_path):
    ledger = tmp_path / "timing.csv"
    code = main(["run-step", "seven", "--ledger", str(ledger), "--log_dir", str(tmp_path), "--", "bash", "-c", "exit 7"])
    assert code == 7
    assert TimingLedger(ledger).read_all()[0].exit_status == 7


def test_run_step_allowed_failure_exits_zero(tmp_path):
    ledger = tmp_path / "timing.csv"
    code = main([
        "run-step", "meh", "--allow_failure", "--ledger", str(ledger), "--log_dir", str(tmp_path),
        "--", "false",
    ])
    assert code == 0
    assert TimingLedger(ledger).read_all()[0].exit_status == 1


def test_run_step_requires_command(tmp_path):
    with pytest.raises(SystemExit):
        main(["run-step", "nothing", "--ledger", str(tmp_path / "t.csv")])


def test_run_step_missing_program_is_error(tmp_path, capsys):
    code = main(["run-step", "ghost", "--ledger", str(tmp_path / "t.csv"), "--log_dir", str(tmp_path), "--", "no-such-binary-q2m"])
    assert code == 2
    assert "ERROR" in capsys.readouterr().err


def test_summarize_text_and_json(tmp_path, capsys):
    ledger = tmp_path / "timing.csv"
    main(["run-step", "a", "--ledger", str(ledger), "--log_dir", str(tmp_path), "--", "true"])
    main(["run-step", "b", "--ledger", str(ledger), "--log_dir", str(tmp_path), "--", "false"])
    capsys.readouterr()

    assert main(["summarize", str(ledger)]) == 0
    text = capsys.readouterr().out
    assert "Steps:                2 (1 failed)" in text

    tsv = tmp_path / "summary.tsv"
    assert main(["summarize", str(ledger), "--json", "--summary_tsv", str(tsv)]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["n_steps"] == 2
    assert data["n_failed"] == 1
    assert tsv.exists()


def test_summarize_empty_ledger(tmp_path, capsys):
    ledger = TimingLedger.create(tmp_path / "t.csv")
    assert main(["summarize", str(ledger.path), "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["n_steps"] == 0
    assert data["total_wall_time"] == 0.0


def test_run_pipeline_dry_run(tmp_path, capsys):
    group = tmp_path / "raw_sequences" / "g1"
    group.mkdir(parents=True)
    for suffix in ("_1.fq.gz", "_2.fq.gz"):
        (group / f"S1{suffix}").write_bytes(b"")
    (tmp_path / "metadata.tsv").write_text("sample-id\tgroup\nS1\tg1\n")
    config = tmp_path / "c.yaml"
    config.write_text("tools:\n  qiime_env: null\n")

    code = main(["run-pipeline", "--project_dir", str(tmp_path), "--config", str(config), "--jobs", "2", "--dry_run"])
    assert code == 0
    out = capsys.readouterr().out
    assert "[fastp] fan-out of 1" in out
    assert "dada2_g1: qiime dada2 denoise-paired" in out
    assert not (tmp_path / "logs" / "timing_summary.csv").exists()
    assert not (tmp_path / "logs").exists()
    assert not (tmp_path / "qiime2_analysis").exists()
    assert not (tmp_path / "cleaned_sequences").exists()


def test_run_pipeline_bad_config(tmp_path, capsys):
    (tmp_path / "raw_sequences").mkdir()
    config = tmp_path / "c.yaml"
    config.write_text("dada2:\n  bogus: 1\n")
    assert main(["run-pipeline", "--project_dir", str(tmp_path), "--config", str(config)]) == 2
    assert "bogus" in capsys.readouterr().err


def test_run_pipeline_without_reads(tmp_path):
    (tmp_path / "raw_sequences").mkdir()
    assert main(["run-pipeline", "--project_dir", str(tmp_path), "--dry_run"]) == 2


def test_run_pipeline_reports_failed_step(tmp_path):
    """With tools pointed at `false`, the first fastp step fails and the run stops."""
    group = tmp_path / "raw_sequences" / "g1"
    group.mkdir(parents=True)
    for suffix in ("_1.fq.gz", "_2.fq.gz"):
        (group / f"S1{suffix}").write_bytes(b"")
    config = tmp_path / "c.yaml"
    config.write_text("fastp:\n  binary: 'false'\nmonitor:\n  sample_interval: 0.1\n")

    code = main(["run-pipeline", "--project_dir", str(tmp_path), "--config", str(config)])
    assert code == 1
    rows = TimingLedger(tmp_path / "logs" / "timing_summary.csv").read_all()
    assert [r.name for r in rows] == ["fastp_g1_S1"]
    assert (tmp_path / "metrics" / "pipeline_summary.txt").exists()
    assert (tmp_path / "metrics" / "summary.tsv").exists()


def test_run_pipeline_fastp_writes_into_group_dirs(tmp_path):
    """fastp never creates parent dirs; the cleaned group dir must already exist."""
    group = tmp_path / "raw_sequences" / "g1"
    group.mkdir(parents=True)
    for suffix in ("_1.fq.gz", "_2.fq.gz"):
        (group / f"S1{suffix}").write_bytes(b"")
    fake_fastp = tmp_path / "fake_fastp.sh"
    fake_fastp.write_text(
        "#!/bin/sh\n"
        "while [ \"$#\" -gt 0 ]; do\n"
        "  case \"$1\" in -o|-O) : > \"$2\" || exit 1; shift ;; esac\n"
        "  shift\n"
        "done\n"
    )
    fake_fastp.chmod(0o755)
    config = tmp_path / "c.yaml"
    config.write_text(
        f"fastp:\n  binary: '{fake_fastp}'\n"
        "tools:\n  conda_bin: 'false'\n  multiqc_binary: 'true'\n"
        "monitor:\n  sample_interval: 0.1\n"
    )

    code = main(["run-pipeline", "--project_dir", str(tmp_path), "--config", str(config)])
    assert code == 1
    rows = TimingLedger(tmp_path / "logs" / "timing_summary.csv").read_all()
    assert [(r.name, r.exit_status) for r in rows][:2] == [("fastp_g1_S1", 0), ("multiqc_fastp", 0)]
    assert rows[-1].name == "import_g1" and not rows[-1].succeeded
    assert (tmp_path / "cleaned_sequences" / "g1" / "S1_1.fq.gz").exists()
    assert (tmp_path / "qiime2_analysis" / "dada2" / "g1" / "manifest.tsv").exists()


def test_plot(tmp_path, capsys):
    ledger = tmp_path / "timing.csv"
    main(["run-step", "a", "--ledger", str(ledger), "--log_dir", str(tmp_path), "--", "true"])
    capsys.readouterr()
    assert main(["plot", str(ledger), "--out_dir", str(tmp_path / "plots")]) == 0
    assert capsys.readouterr().out.strip().endswith("index.html")
    assert (tmp_path / "plots" / "duration.png").exists()
