"""Tests for typed configuration and YAML overrides."""

import pytest

from q2_monitor.config import PipelineConfig, apply_overrides, load_config
from q2_monitor.errors import ConfigError


def test_defaults():
    config = load_config()
    assert config.dada2.trunc_len_f == 230
    assert config.dada2.trunc_len_r == 220
    assert config.fastp.quality_phred == 20
    assert config.diversity.sampling_depth == 6000
    assert config.monitor.jobs == 3
    assert config.tools.qiime_env == "qiime2"


def test_yaml_overrides_apply(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "dada2:\n"
        "  trunc_len_f: 250\n"
        "  max_ee_f: 1\n"
        "fastp:\n"
        "  cut_tail: false\n"
        "tools:\n"
        "  qiime_env: null\n"
        "diversity:\n"
        "  alpha_metrics: [shannon]\n"
    )
    config = load_config(path)
    assert config.dada2.trunc_len_f == 250
    assert config.dada2.trunc_len_r == 220
    assert config.dada2.max_ee_f == 1.0
    assert isinstance(config.dada2.max_ee_f, float)
    assert config.fastp.cut_tail is False
    assert config.tools.qiime_env is None
    assert config.diversity.alpha_metrics == ["shannon"]


def test_overrides_do_not_mutate_defaults():
    base = PipelineConfig()
    apply_overrides(base, {"monitor": {"jobs": 8}})
    assert base.monitor.jobs == 3


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == PipelineConfig()


@pytest.mark.parametrize(
    "overrides",
    [
        {"nonsense": {"x": 1}},
        {"dada2": {"trunc_len_q": 1}},
        {"dada2": {"trunc_len_f": "250"}},
        {"fastp": {"cut_tail": 1}},
        {"fastp": {"threads": True}},
        {"diversity": {"alpha_metrics": "shannon"}},
        {"monitor": {"jobs": 0}},
        {"monitor": {"sample_interval": 0}},
        {"fastp": {"binary": None}},
        {"dada2": [1, 2]},
        ["dada2"],
    ],
)
def test_bad_overrides_rejected(overrides):
    with pytest.raises(ConfigError):
        apply_overrides(PipelineConfig(), overrides)


def test_invalid_yaml_is_config_error(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("dada2: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(path)


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yaml")
