"""
Design specification and design matrix compilation.

A DesignSpecification is an explicit list of terms (main effects and
interactions) with explicit reference levels. Compiling it against sample
metadata deterministically yields a numeric DesignMatrix with
treatment-coded columns:

    Intercept, cell[T.N61311], dex[T.untrt], cell[T.N61311]:dex[T.untrt], ...

Formula strings such as ``"~ cell + dex"`` are accepted as a convenience and
parsed into terms; they are never evaluated.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import logging
import re

import numpy as np
import pandas as pd

from count_data import SampleMetadata

logger = logging.getLogger(__name__)

INTERCEPT = "Intercept"


class DesignError(Exception):
    """Raised when a design cannot be compiled into a usable design matrix."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


@dataclass(frozen=True)
class Term:
    """A model term: one covariate, or an interaction of several."""

    covariates: Tuple[str, ...]
    interaction: bool = False

    def __post_init__(self):
        if not self.covariates:
            raise DesignError("A design term needs at least one covariate")
        if self.interaction and len(self.covariates) < 2:
            raise DesignError(f"Interaction term needs two or more covariates: {self.covariates}")
        if not self.interaction and len(self.covariates) != 1:
            raise DesignError(f"Main effect term takes exactly one covariate: {self.covariates}")

    @property
    def label(self) -> str:
        return ":".join(self.covariates)


@dataclass(frozen=True)
class DesignSpecification:
    """
    Explicit model design.

    Attributes:
        terms: Ordered model terms; an intercept is always included
        reference_levels: covariate -> reference level. Categorical covariates
            without an entry use their first category (pandas Categorical order)
            or, for plain columns, the alphabetically first level.
    """

    terms: Tuple[Term, ...]
    reference_levels: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_formula(
        cls, formula: str, reference_levels: Optional[Dict[str, str]] = None
    ) -> "DesignSpecification":
        """
        Parse ``"~ a + b + a:b"`` (or ``"~ a * b"``) into terms.

        Args:
            formula: Right-hand side formula, leading "~" optional
            reference_levels: Optional explicit reference levels

        Returns:
            DesignSpecification
        """
        rhs = formula.strip()
        if rhs.startswith("~"):
            rhs = rhs[1:]
        rhs = re.sub(r"\s+", "", rhs)
        if not rhs:
            raise DesignError(f"Empty design formula: '{formula}'")

        terms: List[Term] = []
        for chunk in rhs.split("+"):
            if not chunk or chunk == "1":
                continue
            if "*" in chunk:
                names = chunk.split("*")
                for name in names:
                    terms.append(Term((name,)))
                terms.append(Term(tuple(names), interaction=True))
            elif ":" in chunk:
                terms.append(Term(tuple(chunk.split(":")), interaction=True))
            else:
                terms.append(Term((chunk,)))

        for term in terms:
            for name in term.covariates:
                if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_.]*", name):
                    raise DesignError(f"Invalid covariate name '{name}' in formula '{formula}'")

        deduped: List[Term] = []
        for term in terms:
            if term not in deduped:
                deduped.append(term)
        return cls(tuple(deduped), dict(reference_levels or {}))

    @property
    def covariates(self) -> List[str]:
        names: List[str] = []
        for term in self.terms:
            for name in term.covariates:
                if name not in names:
                    names.append(name)
        return names

    @property
    def formula(self) -> str:
        return "~ " + " + ".join(t.label for t in self.terms) if self.terms else "~ 1"

    def drop_terms(self, *labels: str) -> "DesignSpecification":
        """Return the reduced design without the named terms (e.g. "dex", "cell:dex")."""
        known = {t.label for t in self.terms}
        unknown = [lb for lb in labels if lb not in known]
        if unknown:
            raise DesignError(f"Terms {unknown} are not in design {self.formula}")
        kept = tuple(t for t in self.terms if t.label not in labels)
        return DesignSpecification(kept, dict(self.reference_levels))

    def with_reference(self, covariate: str, level: str) -> "DesignSpecification":
        """Copy of this specification with ``level`` as the reference of ``covariate``."""
        levels = dict(self.reference_levels)
        levels[covariate] = level
        return DesignSpecification(self.terms, levels)

    def compile(self, metadata: SampleMetadata) -> "DesignMatrix":
        """
        Compile the design against sample metadata.

        Raises:
            DesignError: Missing covariate, unknown reference level, single-level
                factor, or rank-deficient design matrix
        """
        missing = [c for c in self.covariates if c not in metadata.columns]
        if missing:
            raise DesignError(
                f"Design covariates {missing} not found in sample metadata. "
                f"Available: {metadata.columns}",
                details={"missing": missing},
            )

        levels: Dict[str, List[str]] = {}
        continuous: List[str] = []
        values: Dict[str, pd.Series] = {}
        for name in self.covariates:
            series = metadata.column(name)
            if name in self.reference_levels or not _is_continuous(series):
                levels[name] = _factor_levels(series, name, self.reference_levels.get(name))
                values[name] = series.astype(str)
            else:
                continuous.append(name)
                values[name] = series.astype(float)

        n = len(metadata)
        columns: Dict[str, np.ndarray] = {INTERCEPT: np.ones(n)}
        for term in self.terms:
            parts = [_covariate_columns(name, values[name], levels.get(name)) for name in term.covariates]
            combined = parts[0]
            for part in parts[1:]:
                combined = {
                    f"{a}:{b}": va * vb for a, va in combined.items() for b, vb in part.items()
                }
            columns.update(combined)

        names = list(columns)
        matrix = np.column_stack([columns[c] for c in names]).astype(float)
        design = DesignMatrix(
            matrix=matrix,
            coef_names=tuple(names),
            sample_ids=pd.Index(metadata.sample_ids),
            specification=self,
            levels=levels,
            continuous=tuple(continuous),
        )

        if design.n_coefs > n:
            raise DesignError(
                f"Design {self.formula} has {design.n_coefs} coefficients but only {n} samples",
                details={"n_coefs": design.n_coefs, "n_samples": n},
            )
        rank = np.linalg.matrix_rank(matrix)
        if rank < design.n_coefs:
            raise DesignError(
                f"Design matrix for {self.formula} is not full rank ({rank} < {design.n_coefs}). "
                f"Suggestion: check for confounded covariates or empty level combinations.",
                details={"rank": int(rank), "n_coefs": design.n_coefs},
            )

        logger.info(
            f"Design matrix compiled: {n} samples × {design.n_coefs} coefficients ({self.formula})"
        )
        return design


def _is_continuous(series: pd.Series) -> bool:
    return (
        pd.api.types.is_numeric_dtype(series)
        and not isinstance(series.dtype, pd.CategoricalDtype)
        and not pd.api.types.is_bool_dtype(series)
    )


def _factor_levels(series: pd.Series, name: str, reference: Optional[str]) -> List[str]:
    if isinstance(series.dtype, pd.CategoricalDtype):
        present = set(series.astype(str))
        levels = [str(c) for c in series.cat.categories if str(c) in present]
    else:
        levels = sorted(set(series.astype(str)))

    if reference is not None:
        reference = str(reference)
        if reference not in levels:
            raise DesignError(
                f"Reference level '{reference}' not present in covariate '{name}'. Levels: {levels}",
                details={"covariate": name, "levels": levels},
            )
        levels = [reference] + [lv for lv in levels if lv != reference]

    if len(levels) < 2:
        raise DesignError(
            f"Covariate '{name}' has a single level {levels}; it cannot be estimated",
            details={"covariate": name, "levels": levels},
        )
    return levels


def _covariate_columns(
    name: str, values: pd.Series, levels: Optional[List[str]]
) -> Dict[str, np.ndarray]:
    if levels is None:
        return {name: values.to_numpy(dtype=float)}
    return {
        f"{name}[T.{level}]": (values == level).to_numpy(dtype=float) for level in levels[1:]
    }


ContrastSpec = Union[str, Sequence[str], Sequence[float], np.ndarray]


@dataclass(frozen=True, eq=False)
class DesignMatrix:
    """Numeric samples × coefficients matrix compiled from a DesignSpecification."""

    matrix: np.ndarray
    coef_names: Tuple[str, ...]
    sample_ids: pd.Index
    specification: DesignSpecification
    levels: Dict[str, List[str]]
    continuous: Tuple[str, ...] = ()

    def __post_init__(self):
        matrix = np.array(self.matrix, dtype=float)
        matrix.setflags(write=False)
        object.__setattr__(self, "matrix", matrix)

    @property
    def n_samples(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_coefs(self) -> int:
        return self.matrix.shape[1]

    @property
    def residual_df(self) -> int:
        return self.n_samples - self.n_coefs

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(np.array(self.matrix), index=self.sample_ids, columns=list(self.coef_names))

    def replicates_per_sample(self) -> np.ndarray:
        """Number of samples sharing each sample's design row (its cell size)."""
        _, inverse, counts = np.unique(self.matrix, axis=0, return_inverse=True, return_counts=True)
        return counts[np.asarray(inverse).ravel()]

    def contrast_vector(self, contrast: ContrastSpec) -> Tuple[np.ndarray, str]:
        """
        Build a numeric contrast vector over the coefficients.

        Args:
            contrast: One of
                - a coefficient name, e.g. "dex[T.trt]"
                - (factor, numerator_level, denominator_level)
                - a numeric vector with one weight per coefficient

        Returns:
            (vector, description)

        Raises:
            DesignError: Unknown coefficient, factor or level
        """
        if isinstance(contrast, str):
            if contrast not in self.coef_names:
                raise DesignError(
                    f"Coefficient '{contrast}' not in design. Available: {list(self.coef_names)}"
                )
            vec = np.zeros(self.n_coefs)
            vec[self.coef_names.index(contrast)] = 1.0
            return vec, contrast

        items = list(contrast)
        if len(items) == 3 and all(isinstance(x, str) for x in items):
            return self._factor_contrast(*items)

        vec = np.asarray(items, dtype=float)
        if vec.shape != (self.n_coefs,):
            raise DesignError(
                f"Numeric contrast must have {self.n_coefs} entries, got {vec.shape[0]}"
            )
        if not np.any(vec):
            raise DesignError("Numeric contrast must have at least one non-zero weight")
        desc = " + ".join(f"{w:g}*{n}" for w, n in zip(vec, self.coef_names) if w != 0)
        return vec, desc

    def _factor_contrast(self, factor: str, numerator: str, denominator: str) -> Tuple[np.ndarray, str]:
        if factor not in self.levels:
            raise DesignError(
                f"'{factor}' is not a categorical covariate of this design. "
                f"Factors: {list(self.levels)}"
            )
        if Term((factor,)) not in self.specification.terms:
            raise DesignError(f"'{factor}' has no main effect term in {self.specification.formula}")
        levels = self.levels[factor]
        for level in (numerator, denominator):
            if level not in levels:
                raise DesignError(
                    f"Level '{level}' not present in factor '{factor}'. Levels: {levels}"
                )
        if numerator == denominator:
            raise DesignError("Contrast numerator and denominator must differ")

        vec = np.zeros(self.n_coefs)
        if numerator != levels[0]:
            vec[self.coef_names.index(f"{factor}[T.{numerator}]")] += 1.0
        if denominator != levels[0]:
            vec[self.coef_names.index(f"{factor}[T.{denominator}]")] -= 1.0
        return vec, f"{factor}_{numerator}_vs_{denominator}"
