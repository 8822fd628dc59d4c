# -*- coding: utf-8 -*-
"""
Pipeline parameters as typed dataclasses, with YAML overrides.

Defaults suit V3-V4 16S paired-end reads. A YAML file overrides any subset
of them, e.g.::

    fastp:
      quality_phred: 25
      length_required: 200
    dada2:
      trunc_len_f: 250
      trunc_len_r: 230
      max_ee_f: 1.5
    diversity:
      sampling_depth: 10000
    monitor:
      jobs: 3

Unknown sections or keys are rejected rather than silently ignored.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from q2_monitor.errors import ConfigError


@dataclass
class FastpParams:
    """Read trimming / quality filtering (fastp, per sample)."""

    binary: str = "fastp"
    trim_front1: int = 10
    trim_front2: int = 10
    cut_tail: bool = True
    quality_phred: int = 20
    length_required: int = 150
    threads: int = 5
    detect_adapters: bool = True


@dataclass
class Dada2Params:
    trim_left_f: int = 0
    trim_left_r: int = 0
    trunc_len_f: int = 230
    trunc_len_r: int = 220
    max_ee_f: float = 2.0
    max_ee_r: float = 2.0
    threads: int = 16


@dataclass
class PhylogenyParams:
    threads: int = 5


@dataclass
class DiversityParams:
    sampling_depth: int = 6000
    alpha_metrics: List[str] = field(
        default_factory=lambda: ["shannon", "evenness", "faith_pd", "observed_features"]
    )
    rarefaction_steps: int = 20


@dataclass
class ToolParams:
    """How external programs are located."""

    conda_bin: str = "conda"
    # Set to null in YAML to call qiime directly from PATH.
    qiime_env: Optional[str] = "qiime2"
    multiqc_binary: str = "multiqc"


@dataclass
class MonitorParams:
    jobs: int = 3
    sample_interval: float = 2.0
    step_timeout: Optional[float] = None


@dataclass
class PipelineConfig:
    fastp: FastpParams = field(default_factory=FastpParams)
    dada2: Dada2Params = field(default_factory=Dada2Params)
    phylogeny: PhylogenyParams = field(default_factory=PhylogenyParams)
    diversity: DiversityParams = field(default_factory=DiversityParams)
    tools: ToolParams = field(default_factory=ToolParams)
    monitor: MonitorParams = field(default_factory=MonitorParams)

    def validate(self) -> None:
        """Check cross-field constraints; raises :class:`ConfigError`."""
        for section in ("fastp", "dada2", "phylogeny"):
            if getattr(self, section).threads < 1:
                raise ConfigError(f"{section}.threads must be >= 1")
        if self.monitor.jobs < 1:
            raise ConfigError("monitor.jobs must be >= 1")
        if self.monitor.sample_interval <= 0:
            raise ConfigError("monitor.sample_interval must be > 0")
        if self.diversity.sampling_depth < 1:
            raise ConfigError("diversity.sampling_depth must be >= 1")
        if not (0 <= self.fastp.quality_phred <= 60):
            raise ConfigError("fastp.quality_phred must be between 0 and 60")


def _coerce(section: str, key: str, current: Any, value: Any) -> Any:
    """Check ``value`` against the type of the default it replaces."""
    where = f"{section}.{key}"
    if value is None:
        if key in ("qiime_env", "step_timeout"):
            return None
        raise ConfigError(f"{where} may not be null")
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{where} must be true or false, got {value!r}")
        return value
    if isinstance(current, int) and not isinstance(current, bool):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{where} must be an integer, got {value!r}")
        return value
    if isinstance(current, float) or key == "step_timeout":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{where} must be a number, got {value!r}")
        return float(value)
    if isinstance(current, list):
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{where} must be a list of strings")
        return list(value)
    if not isinstance(value, str):
        raise ConfigError(f"{where} must be a string, got {value!r}")
    return value


def apply_overrides(config: PipelineConfig, overrides: Dict[str, Any]) -> PipelineConfig:
    """Return a copy of ``config`` with ``{section: {key: value}}`` applied."""
    if not isinstance(overrides, dict):
        raise ConfigError("Configuration must be a mapping of sections")
    sections = {f.name for f in dataclasses.fields(config)}
    updated = {}
    for section, values in overrides.items():
        if section not in sections:
            raise ConfigError(
                f"Unknown config section '{section}' (expected one of: {', '.join(sorted(sections))})"
            )
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ConfigError(f"Config section '{section}' must be a mapping")
        params = getattr(config, section)
        known = {f.name for f in dataclasses.fields(params)}
        changes = {}
        for key, value in values.items():
            if key not in known:
                raise ConfigError(f"Unknown key '{section}.{key}'")
            changes[key] = _coerce(section, key, getattr(params, key), value)
        updated[section] = dataclasses.replace(params, **changes)
    new = dataclasses.replace(config, **updated)
    new.validate()
    return new


def load_config(path: Optional[Path] = None) -> PipelineConfig:
    """
    Build a :class:`PipelineConfig` from defaults plus an optional YAML file.

    Raises
    ------
    ConfigError
        If the file cannot be read or parsed, or contains unknown keys or
        values of the wrong type.
    """
    config = PipelineConfig()
    if path is None:
        config.validate()
        return config
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as err:
        raise ConfigError(f"Cannot read config {path}: {err}") from err
    except yaml.YAMLError as err:
        raise ConfigError(f"Invalid YAML in {path}: {err}") from err
    if data is None:
        config.validate()
        return config
    return apply_overrides(config, data)
