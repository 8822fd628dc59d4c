# -*- coding: utf-8 -*-
"""
QIIME 2 amplicon pipeline expressed as monitored steps.

Overview
--------
Each builder returns a :class:`~q2_monitor.records.StepSpec` whose command is
a list of discrete arguments assembled from typed parameters; no flags are
spliced into shell strings. :func:`build_pipeline` arranges them into the
run order used for paired-end 16S projects:

1. fastp per sample (fan-out)
2. MultiQC over the fastp reports (optional)
3. import per group (fan-out)
4. DADA2 denoise-paired per group (fan-out)
5. denoising-stats tabulation per group (fan-out, optional)
6. merge feature tables, merge representative sequences
7. MAFFT + FastTree phylogeny on the merged sequences
8. core-metrics-phylogenetic
9. alpha-group-significance per metric (optional), alpha rarefaction (optional)

Project layout
--------------
``<project>/raw_sequences/<group>/<sample>_1.fq.gz`` and ``_2.fq.gz`` plus
``<project>/metadata.tsv``. Everything else is created under the project.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from q2_monitor.config import (
    Dada2Params,
    DiversityParams,
    FastpParams,
    PhylogenyParams,
    PipelineConfig,
    ToolParams,
)
from q2_monitor.records import FanOut, PipelineItem, StepSpec


logger = logging.getLogger(__name__)

R1_SUFFIX = "_1.fq.gz"
R2_SUFFIX = "_2.fq.gz"

SampleTriple = Tuple[str, Path, Path]


class Paths:
    """Container for key filesystem paths of a monitored project.

    Attributes
    ----------
    root : Path
        Project directory.
    raw : Path
        Input reads, one subdirectory per group.
    metadata : Path
        QIIME metadata TSV.
    cleaned, qc_reports : Path
        fastp outputs (reads / JSON+HTML reports).
    dada2, phylogeny, combined : Path
        QIIME artefacts per group and merged.
    core_diversity : Path
        Output of core-metrics-phylogenetic. Not created here: QIIME refuses
        to write into an existing ``--output-dir``.
    results : Path
        Visualisations (.qzv).
    logs, metrics, plots : Path
        Step logs, resource time series, dashboard.
    timing_csv, pipeline_summary, summary_tsv : Path
        Ledger and end-of-run summaries.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.raw = self.root / "raw_sequences"
        self.metadata = self.root / "metadata.tsv"
        self.cleaned = self.root / "cleaned_sequences"
        self.qc_reports = self.root / "qc_reports"
        self.qiime = self.root / "qiime2_analysis"
        self.dada2 = self.qiime / "dada2"
        self.combined = self.qiime / "combined"
        self.phylogeny = self.qiime / "phylogeny"
        self.core_diversity = self.qiime / "core_diversity"
        self.results = self.root / "results"
        self.logs = self.root / "logs"
        self.metrics = self.root / "metrics"
        self.plots = self.root / "performance_plots"
        self.timing_csv = self.logs / "timing_summary.csv"
        self.pipeline_summary = self.metrics / "pipeline_summary.txt"
        self.summary_tsv = self.metrics / "summary.tsv"

    def manifest(self, group: str) -> Path:
        return self.dada2 / group / "manifest.tsv"

    def mkdirs(self, groups: Iterable[str] = ()) -> None:
        """Create all output directories if they do not already exist.

        fastp does not create parent directories, so each group also gets
        ``cleaned_sequences/<group>/`` (and ``qiime2_analysis/dada2/<group>/``).
        """
        for p in (
            self.cleaned,
            self.qc_reports,
            self.dada2,
            self.combined,
            self.phylogeny,
            self.results,
            self.logs,
            self.metrics,
        ):
            p.mkdir(parents=True, exist_ok=True)
        for g in groups:
            (self.cleaned / g).mkdir(parents=True, exist_ok=True)
            (self.dada2 / g).mkdir(parents=True, exist_ok=True)


# ------------------------ discovery / manifests ------------------------ #

def discover_samples(*, raw_dir: Path) -> Dict[str, List[SampleTriple]]:
    """Find paired FASTQs grouped by subdirectory of ``raw_dir``.

    A sample is ``<id>_1.fq.gz`` with a matching ``<id>_2.fq.gz``; unpaired
    R1 files are skipped with a warning.

    Returns
    -------
    dict
        Group name -> list of (sample_id, r1, r2), both sorted by name.

    Raises
    ------
    FileNotFoundError
        If ``raw_dir`` does not exist.
    """
    raw_dir = Path(raw_dir)
    if not raw_dir.is_dir():
        raise FileNotFoundError(f"Raw sequence directory not found: {raw_dir}")
    groups: Dict[str, List[SampleTriple]] = {}
    for group_dir in sorted(p for p in raw_dir.iterdir() if p.is_dir()):
        triples: List[SampleTriple] = []
        for r1 in sorted(group_dir.glob(f"*{R1_SUFFIX}")):
            sample_id = r1.name[: -len(R1_SUFFIX)]
            r2 = r1.with_name(sample_id + R2_SUFFIX)
            if not r2.exists():
                logger.warning("No R2 for %s; skipping sample.", r1)
                continue
            triples.append((sample_id, r1.resolve(), r2.resolve()))
        if triples:
            groups[group_dir.name] = triples
        else:
            logger.warning("Group %s has no paired reads; skipping.", group_dir.name)
    return groups


def write_paired_manifest(*, rows: List[SampleTriple], out_manifest: Path) -> Path:
    """Write a PairedEndFastqManifestPhred33V2 TSV (absolute paths)."""
    out_manifest.parent.mkdir(parents=True, exist_ok=True)
    with out_manifest.open("w", encoding="utf-8", newline="") as fh:
        w = csv.writer(fh, delimiter="\t", lineterminator="\n")
        w.writerow(["sample-id", "forward-absolute-filepath", "reverse-absolute-filepath"])
        for sid, r1, r2 in rows:
            w.writerow([sid, str(Path(r1).resolve()), str(Path(r2).resolve())])
    return out_manifest


def cleaned_reads(*, paths: Paths, group: str, sample_id: str) -> Tuple[Path, Path]:
    """fastp output pair for one sample."""
    out_dir = paths.cleaned / group
    return out_dir / f"{sample_id}{R1_SUFFIX}", out_dir / f"{sample_id}{R2_SUFFIX}"


def write_group_manifests(*, paths: Paths, samples: Dict[str, List[SampleTriple]]) -> Dict[str, Path]:
    """Write one import manifest per group, pointing at the fastp outputs."""
    written: Dict[str, Path] = {}
    for g in sorted(samples):
        rows = [
            (sid, *cleaned_reads(paths=paths, group=g, sample_id=sid))
            for sid, _, _ in samples[g]
        ]
        written[g] = write_paired_manifest(rows=rows, out_manifest=paths.manifest(g))
    return written


# ----------------------------- builders ----------------------------- #

def qiime_cmd(tools: ToolParams, *args: str) -> List[str]:
    """``qiime <args>``, run inside the configured conda env if any."""
    prefix: List[str] = []
    if tools.qiime_env:
        prefix = [tools.conda_bin, "run", "-n", tools.qiime_env]
    return prefix + ["qiime", *args]


def fastp_step(
    *, sample_id: str, group: str, r1: Path, r2: Path, paths: Paths, params: FastpParams
) -> StepSpec:
    """Quality trimming of one paired sample with fastp."""
    out1, out2 = cleaned_reads(paths=paths, group=group, sample_id=sample_id)
    cmd = [
        params.binary,
        "-i", str(r1), "-I", str(r2),
        "-o", str(out1),
        "-O", str(out2),
        "--trim_front1", str(params.trim_front1),
        "--trim_front2", str(params.trim_front2),
        "--qualified_quality_phred", str(params.quality_phred),
        "--length_required", str(params.length_required),
        "--thread", str(params.threads),
        "--json", str(paths.qc_reports / f"{sample_id}_fastp.json"),
        "--html", str(paths.qc_reports / f"{sample_id}_fastp.html"),
    ]
    if params.cut_tail:
        cmd.append("--cut_tail")
    if params.detect_adapters:
        cmd.append("--detect_adapter_for_pe")
    return StepSpec(name=f"fastp_{group}_{sample_id}", command=cmd)


def multiqc_step(*, paths: Paths, tools: ToolParams) -> StepSpec:
    """Aggregate fastp reports; a missing MultiQC does not stop the run."""
    cmd = [
        tools.multiqc_binary, str(paths.qc_reports),
        "-o", str(paths.qc_reports),
        "-n", "multiqc_report.html",
        "--force",
    ]
    return StepSpec(name="multiqc_fastp", command=cmd, allow_failure=True)


def import_step(*, group: str, manifest: Path, out_qza: Path, tools: ToolParams) -> StepSpec:
    cmd = qiime_cmd(
        tools, "tools", "import",
        "--type", "SampleData[PairedEndSequencesWithQuality]",
        "--input-path", str(manifest),
        "--input-format", "PairedEndFastqManifestPhred33V2",
        "--output-path", str(out_qza),
    )
    return StepSpec(name=f"import_{group}", command=cmd)


def dada2_step(
    *, group: str, demux_qza: Path, out_dir: Path, params: Dada2Params, tools: ToolParams
) -> StepSpec:
    """Run DADA2 paired-end denoising in QIIME 2."""
    cmd = qiime_cmd(
        tools, "dada2", "denoise-paired",
        "--i-demultiplexed-seqs", str(demux_qza),
        "--p-trim-left-f", str(params.trim_left_f),
        "--p-trim-left-r", str(params.trim_left_r),
        "--p-trunc-len-f", str(params.trunc_len_f),
        "--p-trunc-len-r", str(params.trunc_len_r),
        "--p-max-ee-f", str(params.max_ee_f),
        "--p-max-ee-r", str(params.max_ee_r),
        "--p-n-threads", str(params.threads),
        "--o-table", str(out_dir / "table.qza"),
        "--o-representative-sequences", str(out_dir / "rep-seqs.qza"),
        "--o-denoising-stats", str(out_dir / "denoising-stats.qza"),
        "--verbose",
    )
    return StepSpec(name=f"dada2_{group}", command=cmd)


def denoise_stats_step(*, group: str, stats_qza: Path, out_qzv: Path, tools: ToolParams) -> StepSpec:
    cmd = qiime_cmd(
        tools, "metadata", "tabulate",
        "--m-input-file", str(stats_qza),
        "--o-visualization", str(out_qzv),
    )
    return StepSpec(name=f"denoise_stats_{group}", command=cmd, allow_failure=True)


def merge_tables_step(*, tables: List[Path], out_qza: Path, tools: ToolParams) -> StepSpec:
    args: List[str] = ["feature-table", "merge"]
    for t in tables:
        args += ["--i-tables", str(t)]
    args += ["--o-merged-table", str(out_qza)]
    return StepSpec(name="merge_tables", command=qiime_cmd(tools, *args))


def merge_seqs_step(*, seqs: List[Path], out_qza: Path, tools: ToolParams) -> StepSpec:
    args: List[str] = ["feature-table", "merge-seqs"]
    for s in seqs:
        args += ["--i-data", str(s)]
    args += ["--o-merged-data", str(out_qza)]
    return StepSpec(name="merge_sequences", command=qiime_cmd(tools, *args))


def phylogeny_step(
    *, repseqs_qza: Path, out_dir: Path, params: PhylogenyParams, tools: ToolParams
) -> StepSpec:
    """Build a phylogenetic tree using MAFFT alignment and FastTree."""
    cmd = qiime_cmd(
        tools, "phylogeny", "align-to-tree-mafft-fasttree",
        "--i-sequences", str(repseqs_qza),
        "--p-n-threads", str(params.threads),
        "--o-alignment", str(out_dir / "aligned-rep-seqs.qza"),
        "--o-masked-alignment", str(out_dir / "masked-aligned-rep-seqs.qza"),
        "--o-tree", str(out_dir / "unrooted-tree.qza"),
        "--o-rooted-tree", str(out_dir / "rooted-tree.qza"),
        "--verbose",
    )
    return StepSpec(name="phylogeny_combined", command=cmd)


def core_metrics_step(
    *, table_qza: Path, rooted_tree: Path, metadata: Path, out_dir: Path,
    params: DiversityParams, tools: ToolParams,
) -> StepSpec:
    cmd = qiime_cmd(
        tools, "diversity", "core-metrics-phylogenetic",
        "--i-table", str(table_qza),
        "--i-phylogeny", str(rooted_tree),
        "--m-metadata-file", str(metadata),
        "--p-sampling-depth", str(params.sampling_depth),
        "--output-dir", str(out_dir),
        "--verbose",
    )
    return StepSpec(name="core_metrics", command=cmd)


def alpha_significance_step(
    *, metric: str, core_dir: Path, metadata: Path, results: Path, tools: ToolParams
) -> StepSpec:
    """Alpha-group significance for one metric; skipped metrics just fail softly."""
    cmd = qiime_cmd(
        tools, "diversity", "alpha-group-significance",
        "--i-alpha-diversity", str(core_dir / f"{metric}_vector.qza"),
        "--m-metadata-file", str(metadata),
        "--o-visualization", str(results / f"{metric}-group-significance.qzv"),
    )
    return StepSpec(name=f"alpha_sig_{metric}", command=cmd, allow_failure=True)


def alpha_rarefaction_step(
    *, table_qza: Path, rooted_tree: Path, metadata: Path, results: Path,
    params: DiversityParams, tools: ToolParams,
) -> StepSpec:
    cmd = qiime_cmd(
        tools, "diversity", "alpha-rarefaction",
        "--i-table", str(table_qza),
        "--i-phylogeny", str(rooted_tree),
        "--m-metadata-file", str(metadata),
        "--p-max-depth", str(params.sampling_depth),
        "--p-steps", str(params.rarefaction_steps),
        "--o-visualization", str(results / "alpha-rarefaction.qzv"),
    )
    return StepSpec(name="alpha_rarefaction", command=cmd, allow_failure=True)


# ----------------------------- assembly ----------------------------- #

def build_pipeline(
    *,
    paths: Paths,
    config: PipelineConfig,
    samples: Dict[str, List[SampleTriple]],
    timeout: Optional[float] = None,
) -> List[PipelineItem]:
    """
    Assemble the ordered pipeline for ``samples``.

    Touches no files. Before running the items, call ``paths.mkdirs(samples)``
    and :func:`write_group_manifests`; the import steps read
    ``paths.manifest(group)``.

    Raises
    ------
    ValueError
        If ``samples`` is empty.
    """
    if not samples:
        raise ValueError("No samples to process")
    tools = config.tools
    groups = sorted(samples)

    fastp = FanOut(name="fastp", steps=[
        fastp_step(sample_id=sid, group=g, r1=r1, r2=r2, paths=paths, params=config.fastp)
        for g in groups for sid, r1, r2 in samples[g]
    ])

    imports: List[StepSpec] = []
    dada2: List[StepSpec] = []
    stats: List[StepSpec] = []
    tables: List[Path] = []
    seqs: List[Path] = []
    for g in groups:
        group_dir = paths.dada2 / g
        demux = group_dir / "demux.qza"
        imports.append(import_step(group=g, manifest=paths.manifest(g), out_qza=demux, tools=tools))
        dada2.append(dada2_step(
            group=g, demux_qza=demux, out_dir=group_dir, params=config.dada2, tools=tools
        ))
        stats.append(denoise_stats_step(
            group=g,
            stats_qza=group_dir / "denoising-stats.qza",
            out_qzv=paths.results / f"denoising-stats-{g}.qzv",
            tools=tools,
        ))
        tables.append(group_dir / "table.qza")
        seqs.append(group_dir / "rep-seqs.qza")

    merged_table = paths.combined / "merged_table.qza"
    merged_seqs = paths.combined / "merged_rep-seqs.qza"
    rooted = paths.phylogeny / "rooted-tree.qza"

    items: List[PipelineItem] = [
        fastp,
        multiqc_step(paths=paths, tools=tools),
        FanOut(name="import", steps=imports),
        FanOut(name="dada2", steps=dada2),
        FanOut(name="denoise_stats", steps=stats),
        merge_tables_step(tables=tables, out_qza=merged_table, tools=tools),
        merge_seqs_step(seqs=seqs, out_qza=merged_seqs, tools=tools),
        phylogeny_step(
            repseqs_qza=merged_seqs, out_dir=paths.phylogeny, params=config.phylogeny, tools=tools
        ),
        core_metrics_step(
            table_qza=merged_table, rooted_tree=rooted, metadata=paths.metadata,
            out_dir=paths.core_diversity, params=config.diversity, tools=tools,
        ),
    ]
    items += [
        alpha_significance_step(
            metric=m, core_dir=paths.core_diversity, metadata=paths.metadata,
            results=paths.results, tools=tools,
        )
        for m in config.diversity.alpha_metrics
    ]
    items.append(alpha_rarefaction_step(
        table_qza=merged_table, rooted_tree=rooted, metadata=paths.metadata,
        results=paths.results, params=config.diversity, tools=tools,
    ))

    if timeout is not None:
        for item in items:
            for spec in (item.steps if isinstance(item, FanOut) else [item]):
                spec.timeout = timeout
    return items
