# -*- coding: utf-8 -*-
"""
Command-line interface: ``q2-monitor <subcommand> [options]``.

Subcommands
-----------
run-step
    Run one command under monitoring and append its row to a ledger::

        q2-monitor run-step dada2_g1 --ledger logs/timing_summary.csv -- \\
            qiime dada2 denoise-paired ...

    Everything after ``--`` is the command. The exit code is 0 on success or
    on an allowed failure, otherwise the child's exit status (1 if that is
    not a value a process can exit with).
run-pipeline
    Discover samples under ``<project_dir>/raw_sequences`` and run the whole
    QIIME 2 pipeline with a shared ledger and end-of-run summaries.
summarize
    Print the aggregate figures of a ledger (text or JSON).
plot
    Render the PNG/HTML performance dashboard for a ledger.

Exit codes other than the run-step passthrough: 1 when a required pipeline
step failed, 2 for usage, configuration or infrastructure errors, 130 on
interrupt.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from q2_monitor import __version__
from q2_monitor.config import load_config
from q2_monitor.errors import ConfigError, InfrastructureError, StepFailure
from q2_monitor.io_probe import SystemIOProbe
from q2_monitor.ledger import TimingLedger
from q2_monitor.logging_setup import log_memory_usage, log_section, setup_logging
from q2_monitor.orchestrator import PipelineOrchestrator
from q2_monitor.qiime_steps import Paths, build_pipeline, discover_samples, write_group_manifests
from q2_monitor.records import FanOut, StepSpec
from q2_monitor.report import ReportAggregator, format_summary, summarize_records, write_summary_tsv
from q2_monitor.runner import StepRunner


def _split_command(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Split ``argv`` at the first ``--``; the tail is the monitored command."""
    argv = list(argv)
    if "--" in argv:
        idx = argv.index("--")
        return argv[:idx], argv[idx + 1:]
    return argv, []


def build_arg_parser() -> argparse.ArgumentParser:
    """Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser
        Parser with one subparser per subcommand and named-only options.
    """
    p = argparse.ArgumentParser(
        prog="q2-monitor",
        description="Run QIIME 2 pipeline steps under timing and resource monitoring.",
        allow_abbrev=False,
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--verbose", action="store_true", help="Show DEBUG messages on stderr.")

    rs = sub.add_parser(
        "run-step", parents=[common], allow_abbrev=False,
        help="Run one command under monitoring (command follows --).",
    )
    rs.add_argument("name", type=str, help="Step name (used for the log file and ledger row).")
    rs.add_argument("--ledger", type=Path, default=Path("logs/timing_summary.csv"), help="Ledger CSV.")
    rs.add_argument("--log_dir", type=Path, default=Path("logs"), help="Directory for the step log.")
    rs.add_argument("--metrics_dir", type=Path, default=None, help="Write the sample time series here.")
    rs.add_argument("--allow_failure", action="store_true", help="Exit 0 even if the command fails.")
    rs.add_argument("--interval", type=float, default=2.0, help="Seconds between resource samples.")
    rs.add_argument("--timeout", type=float, default=None, help="Terminate the step after this many seconds.")

    sm = sub.add_parser("summarize", parents=[common], allow_abbrev=False, help="Summarise a ledger.")
    sm.add_argument("ledger", type=Path, help="Ledger CSV.")
    sm.add_argument("--json", action="store_true", help="Print JSON instead of text.")
    sm.add_argument("--summary_tsv", type=Path, default=None, help="Also write a key/value TSV.")

    rp = sub.add_parser(
        "run-pipeline", parents=[common], allow_abbrev=False, help="Run the QIIME 2 pipeline."
    )
    rp.add_argument("--project_dir", required=True, type=Path, help="Project root (raw_sequences/, metadata.tsv).")
    rp.add_argument("--config", type=Path, default=None, help="YAML file overriding default parameters.")
    rp.add_argument("--jobs", type=int, default=None, help="Max concurrent steps in a fan-out.")
    rp.add_argument("--dry_run", action="store_true", help="Print the planned steps and exit.")

    pl = sub.add_parser("plot", parents=[common], allow_abbrev=False, help="Render the performance dashboard.")
    pl.add_argument("ledger", type=Path, help="Ledger CSV.")
    pl.add_argument("--out_dir", required=True, type=Path, help="Destination for PNGs and index.html.")
    pl.add_argument("--metrics_dir", type=Path, default=None, help="Directory with <step>_samples.csv files.")
    return p


def _step_exit_code(exit_status: int, allow_failure: bool) -> int:
    if exit_status == 0 or allow_failure:
        return 0
    return exit_status if 0 < exit_status < 256 else 1


def cmd_run_step(args: argparse.Namespace, command: List[str]) -> int:
    logger = setup_logging(verbose=args.verbose)
    spec = StepSpec(
        name=args.name, command=command, allow_failure=args.allow_failure, timeout=args.timeout
    )
    runner = StepRunner(
        ledger=TimingLedger(args.ledger),
        log_dir=args.log_dir,
        metrics_dir=args.metrics_dir,
        sample_interval=args.interval,
        logger=logger,
    )
    record = runner.run(spec)
    if not record.succeeded and args.allow_failure:
        logger.warning("Step '%s' failed (exit=%s) but failure is allowed.", spec.name, record.exit_status)
    return _step_exit_code(record.exit_status, args.allow_failure)


def cmd_summarize(args: argparse.Namespace) -> int:
    setup_logging(verbose=args.verbose)
    ledger = TimingLedger(args.ledger)
    summary = ReportAggregator().summarize(ledger)
    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        print(format_summary(summary, ledger.read_all()), end="")
    if args.summary_tsv is not None:
        write_summary_tsv(summary, args.summary_tsv)
    return 0


def cmd_run_pipeline(args: argparse.Namespace) -> int:
    paths = Paths(Path(args.project_dir).expanduser().resolve())
    # A dry run leaves the project untouched, debug log included.
    log_dir = None if args.dry_run else paths.logs
    logger = setup_logging(out_dir=log_dir, run_label=paths.root.name, verbose=args.verbose)
    log_memory_usage(logger=logger, prefix="START")

    config = load_config(args.config)
    if args.jobs is not None:
        config.monitor.jobs = args.jobs
        config.validate()
    logger.info("project_dir=%s jobs=%d interval=%.1fs", paths.root, config.monitor.jobs,
                config.monitor.sample_interval)

    samples = discover_samples(raw_dir=paths.raw)
    if not samples:
        logger.error("No paired *_1.fq.gz / *_2.fq.gz reads under %s", paths.raw)
        return 2
    for group, rows in samples.items():
        logger.info("Group %s: %d sample(s)", group, len(rows))
    if not paths.metadata.exists():
        logger.warning("Metadata not found: %s (diversity steps will fail)", paths.metadata)

    items = build_pipeline(
        paths=paths, config=config, samples=samples, timeout=config.monitor.step_timeout
    )
    if args.dry_run:
        for item in items:
            if isinstance(item, FanOut):
                print(f"[{item.name}] fan-out of {len(item.steps)}")
                for spec in item.steps:
                    print(f"  {spec.name}: {spec.display()}")
            else:
                print(f"{item.name}: {item.display()}")
        return 0

    paths.mkdirs(samples)
    for group, manifest in write_group_manifests(paths=paths, samples=samples).items():
        logger.debug("Manifest for %s: %s", group, manifest)
    ledger = TimingLedger.create(paths.timing_csv, overwrite=True)
    runner = StepRunner(
        ledger=ledger,
        log_dir=paths.logs,
        metrics_dir=paths.metrics,
        sample_interval=config.monitor.sample_interval,
        io_probe=SystemIOProbe(),
        logger=logger,
    )
    orchestrator = PipelineOrchestrator(runner, max_parallelism=config.monitor.jobs, logger=logger)

    log_section(logger=logger, title="Running pipeline")
    result = orchestrator.run(items)

    log_section(logger=logger, title="Summary")
    records = ledger.read_all()
    summary = summarize_records(records)
    text = format_summary(summary, records, project=paths.root.name)
    paths.pipeline_summary.write_text(text, encoding="utf-8")
    write_summary_tsv(summary, paths.summary_tsv)
    for line in text.splitlines():
        logger.info("%s", line)
    logger.info("Ledger: %s", paths.timing_csv)
    log_memory_usage(logger=logger, prefix="END")

    try:
        result.raise_for_failure()
    except StepFailure as err:
        logger.error("%s; see %s", err, runner.step_log(err.step))
        if result.skipped:
            logger.error("Not run: %s", ", ".join(result.skipped))
        return 1
    return 0


def cmd_plot(args: argparse.Namespace) -> int:
    from q2_monitor.dashboard import render_dashboard

    setup_logging(verbose=args.verbose)
    index = render_dashboard(ledger_path=args.ledger, out_dir=args.out_dir, metrics_dir=args.metrics_dir)
    print(index)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for ``q2-monitor``; returns the process exit code."""
    head, command = _split_command(sys.argv[1:] if argv is None else argv)
    parser = build_arg_parser()
    args = parser.parse_args(head)
    if args.command != "run-step" and command:
        parser.error("'--' is only valid with run-step")

    try:
        if args.command == "run-step":
            if not command:
                parser.error("run-step needs a command after --")
            return cmd_run_step(args, command)
        if args.command == "summarize":
            return cmd_summarize(args)
        if args.command == "run-pipeline":
            return cmd_run_pipeline(args)
        return cmd_plot(args)
    except (ConfigError, InfrastructureError, FileNotFoundError, ValueError) as err:
        print(f"ERROR: {err}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
