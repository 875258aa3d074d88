"""
Analysis configuration for the differential expression engine.

All numeric tolerances, iteration caps and filtering defaults live here so a
run can be reproduced from a single YAML file.
"""

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisConfig:
    """Tunable constants for size factors, dispersion, GLM fitting and testing."""

    # Multiple testing / filtering
    alpha: float = 0.1
    independent_filtering: bool = True
    filter_rule: str = "max"  # "max" or "lowess"

    # Size factors
    size_factor_method: str = "ratio"  # "ratio" or "poscounts"

    # Dispersion
    min_disp: float = 1e-8
    max_disp: Optional[float] = None  # None -> max(10, n_samples)
    outlier_sd: float = 2.0
    min_log_disp_prior_var: float = 0.25

    # GLM
    glm_max_iter: int = 100
    glm_tol: float = 1e-8
    ridge_lambda: float = 1e-6
    min_mu: float = 0.5
    max_abs_log2_beta: float = 30.0

    # Cook's distance
    cooks_filter: bool = True
    cooks_cutoff_quantile: float = 0.99
    min_replicates_for_cooks: int = 3

    # Shrinkage
    shrinkage_method: str = "cauchy"  # "cauchy" or "normal"
    interval_level: float = 0.95

    # Worker pool
    n_workers: int = 1
    batch_size: int = 2000

    def __post_init__(self):
        if not 0 < self.alpha < 1:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")
        if self.filter_rule not in ("max", "lowess"):
            raise ValueError(f"Unknown filter_rule: {self.filter_rule}")
        if self.size_factor_method not in ("ratio", "poscounts"):
            raise ValueError(f"Unknown size_factor_method: {self.size_factor_method}")
        if self.shrinkage_method not in ("cauchy", "normal"):
            raise ValueError(f"Unknown shrinkage_method: {self.shrinkage_method}")
        if self.glm_max_iter < 1:
            raise ValueError("glm_max_iter must be at least 1")
        if self.n_workers < 1 or self.batch_size < 1:
            raise ValueError("n_workers and batch_size must be positive")

    def with_overrides(self, **overrides: Any) -> "AnalysisConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_config(config_path: Union[str, Path]) -> AnalysisConfig:
    """
    Load an AnalysisConfig from a YAML file.

    The file holds a flat mapping under an optional top-level ``analysis`` key.
    Keys that are not AnalysisConfig fields are rejected so typos do not
    silently fall back to defaults.

    Args:
        config_path: Path to YAML config file

    Returns:
        AnalysisConfig with file values applied over the defaults

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file contains unknown keys or invalid values
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Analysis config not found: {config_path}")

    with open(config_file, "r") as f:
        raw = yaml.safe_load(f) or {}

    if "analysis" in raw:
        raw = raw["analysis"] or {}

    known = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown analysis config keys in {config_path}: {unknown}")

    config = AnalysisConfig(**raw)
    logger.info(f"Loaded analysis config from {config_path}")
    return config
