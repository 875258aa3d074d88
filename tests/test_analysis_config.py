"""Tests for analysis configuration loading."""
import pytest

from analysis_config import AnalysisConfig, load_config


def test_shipped_defaults_match_dataclass(config_dir):
    config = load_config(config_dir / "analysis.yaml")
    assert config == AnalysisConfig()


def test_partial_file_overrides_defaults(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("analysis:\n  alpha: 0.05\n  filter_rule: lowess\n  n_workers: 4\n")
    config = load_config(path)
    assert config.alpha == 0.05
    assert config.filter_rule == "lowess"
    assert config.n_workers == 4
    assert config.glm_max_iter == 100


def test_flat_mapping_without_section(tmp_path):
    path = tmp_path / "flat.yaml"
    path.write_text("shrinkage_method: normal\n")
    assert load_config(path).shrinkage_method == "normal"


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == AnalysisConfig()


def test_unknown_keys_rejected(tmp_path):
    path = tmp_path / "typo.yaml"
    path.write_text("analysis:\n  alfa: 0.05\n")
    with pytest.raises(ValueError, match="alfa"):
        load_config(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")


@pytest.mark.parametrize(
    "overrides",
    [
        {"alpha": 1.5},
        {"filter_rule": "median"},
        {"size_factor_method": "tmm"},
        {"shrinkage_method": "apeglm"},
        {"glm_max_iter": 0},
        {"n_workers": 0},
    ],
)
def test_invalid_values(overrides):
    with pytest.raises(ValueError):
        AnalysisConfig(**overrides)


def test_with_overrides_and_to_dict():
    config = AnalysisConfig().with_overrides(alpha=0.01)
    assert config.alpha == 0.01
    assert AnalysisConfig().alpha == 0.1
    assert config.to_dict()["alpha"] == 0.01
    assert "batch_size" in config.to_dict()
