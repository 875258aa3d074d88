"""
Results assembly for differential expression contrasts.

A ResultsTable joins, per gene, the base mean, raw and shrunk log2 fold
changes, test statistic, raw and adjusted p-values, fit diagnostics and any
annotation columns. Not-available values are NaN and are kept visible in the
table; they are never coerced to zero or dropped.

Columns: gene, baseMean, log2FoldChange, lfcSE, stat, pvalue, padj,
log2FoldChangeShrunk, lfcShrunkLower, lfcShrunkUpper, dispersion,
dispOutlier, cooksOutlier, converged (+ annotation columns)
"""

from dataclasses import dataclass, field, replace
from os import PathLike
from typing import Any, Dict, Iterable, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd

from lfc_shrink import ShrinkageResult

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "gene",
    "baseMean",
    "log2FoldChange",
    "lfcSE",
    "stat",
    "pvalue",
    "padj",
    "log2FoldChangeShrunk",
    "lfcShrunkLower",
    "lfcShrunkUpper",
    "dispersion",
    "dispOutlier",
    "cooksOutlier",
    "converged",
]


def ensure_gene_column(df: pd.DataFrame) -> pd.DataFrame:
    """
    Ensure DataFrame has a 'gene' column, handling various index/column naming conventions.

    Args:
        df: DataFrame that may have gene info in index or with non-standard column name

    Returns:
        DataFrame with a lowercase "gene" column containing gene identifiers
    """
    if "gene" in df.columns:
        return df

    gene_aliases = [
        "Gene", "GENE", "gene_id", "GeneSymbol", "gene_symbol", "SYMBOL",
        "gene_name", "ensembl_gene_id",
    ]
    for alias in gene_aliases:
        if alias in df.columns:
            df = df.copy()
            df.columns = ["gene" if col == alias else col for col in df.columns]
            return df

    if df.index.name and df.index.name.lower() in ["gene", "gene_id", "geneid", "symbol"]:
        df = df.reset_index()
        df.columns = ["gene"] + list(df.columns[1:])
        return df

    return df


@dataclass(frozen=True, eq=False)
class ResultsTable:
    """
    Read-only results of one contrast or likelihood ratio test.

    ``to_frame`` returns a copy; ordering and annotation methods return new
    tables.
    """

    frame: pd.DataFrame = field(repr=False)
    contrast: str = ""
    test: str = "Wald"
    alpha: float = 0.1
    filter_threshold: Optional[float] = None
    provisional: bool = False
    shrinkage_method: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "frame", self.frame.copy())

    def __len__(self) -> int:
        return len(self.frame)

    @property
    def columns(self):
        return list(self.frame.columns)

    def to_frame(self) -> pd.DataFrame:
        return self.frame.copy()

    def sort_by(self, column: str, ascending: bool = True) -> "ResultsTable":
        """Return a table ordered by ``column``; NaN always sorts last."""
        if column not in self.frame.columns:
            raise KeyError(f"Unknown results column '{column}'. Available: {self.columns}")
        ordered = self.frame.sort_values(
            column, ascending=ascending, na_position="last", kind="mergesort"
        ).reset_index(drop=True)
        return replace(self, frame=ordered)

    def significant(self, alpha: Optional[float] = None, lfc_threshold: float = 0.0) -> pd.DataFrame:
        """Genes with padj < alpha and |log2FoldChange| > lfc_threshold (NaN never qualifies)."""
        alpha = self.alpha if alpha is None else alpha
        df = self.frame
        mask = (df["padj"] < alpha) & (df["log2FoldChange"].abs() > lfc_threshold)
        return df[mask.fillna(False)].copy()

    def summary(self, alpha: Optional[float] = None) -> Dict[str, Any]:
        """
        Count up/down-regulated genes, Cook's outliers and low-count filtered genes.

        Returns:
            Dict with total_nonzero, alpha, up, down, outliers, low_counts,
            filter_threshold and provisional
        """
        alpha = self.alpha if alpha is None else alpha
        df = self.frame
        nonzero = df["baseMean"] > 0
        sig = (df["padj"] < alpha).fillna(False)
        low_counts = df["pvalue"].notna() & df["padj"].isna()
        return {
            "total_nonzero": int(nonzero.sum()),
            "alpha": alpha,
            "up": int((sig & (df["log2FoldChange"] > 0)).sum()),
            "down": int((sig & (df["log2FoldChange"] < 0)).sum()),
            "outliers": int(df["cooksOutlier"].sum()) if "cooksOutlier" in df else 0,
            "low_counts": int(low_counts.sum()),
            "filter_threshold": self.filter_threshold,
            "provisional": self.provisional,
        }

    def format_summary(self, alpha: Optional[float] = None) -> str:
        s = self.summary(alpha)
        n = max(s["total_nonzero"], 1)
        lines = [
            f"out of {s['total_nonzero']} with nonzero total read count",
            f"adjusted p-value < {s['alpha']}",
            f"LFC > 0 (up)       : {s['up']}, {100 * s['up'] / n:.2g}%",
            f"LFC < 0 (down)     : {s['down']}, {100 * s['down'] / n:.2g}%",
            f"outliers [1]       : {s['outliers']}, {100 * s['outliers'] / n:.2g}%",
            f"low counts [2]     : {s['low_counts']}, {100 * s['low_counts'] / n:.2g}%",
        ]
        if s["filter_threshold"] is not None:
            lines.append(f"(mean count < {s['filter_threshold']:.4g})")
        if s["provisional"]:
            lines.append("independent filtering flagged as provisional")
        return "\n".join(lines)

    def with_annotation(self, resolver, columns: Sequence[str] = ("symbol",)) -> "ResultsTable":
        """Return a new table with annotation columns joined by gene identifier."""
        frame = self.frame.copy()
        for column in columns:
            frame[column] = resolver.resolve(frame["gene"].tolist(), column=column).to_numpy()
        n_mapped = int(frame[columns[0]].notna().sum()) if columns else 0
        logger.info(f"Annotated results with {list(columns)}: {n_mapped}/{len(frame)} genes mapped")
        return replace(self, frame=frame)

    def to_csv(self, path: Union[str, PathLike]) -> None:
        self.frame.to_csv(path, index=False)


def assemble_results(
    gene_ids: Iterable,
    base_mean: np.ndarray,
    log2_fold_change: np.ndarray,
    lfc_se: np.ndarray,
    stat: np.ndarray,
    pvalue: np.ndarray,
    padj: np.ndarray,
    shrinkage: Optional[ShrinkageResult] = None,
    dispersion: Optional[np.ndarray] = None,
    disp_outlier: Optional[np.ndarray] = None,
    cooks_outlier: Optional[np.ndarray] = None,
    converged: Optional[np.ndarray] = None,
    contrast: str = "",
    test: str = "Wald",
    alpha: float = 0.1,
    filter_threshold: Optional[float] = None,
    provisional: bool = False,
) -> ResultsTable:
    """
    Join per-gene outputs into a ResultsTable ordered by ascending p-value.

    Genes with base mean 0 (all-zero counts) always get NaN fold changes,
    statistics and p-values.
    """
    gene_ids = list(gene_ids)
    n = len(gene_ids)
    base_mean = np.asarray(base_mean, dtype=float)
    nan = np.full(n, np.nan)
    false = np.zeros(n, dtype=bool)

    frame = pd.DataFrame(
        {
            "gene": gene_ids,
            "baseMean": base_mean,
            "log2FoldChange": np.asarray(log2_fold_change, dtype=float),
            "lfcSE": np.asarray(lfc_se, dtype=float),
            "stat": np.asarray(stat, dtype=float),
            "pvalue": np.asarray(pvalue, dtype=float),
            "padj": np.asarray(padj, dtype=float),
            "log2FoldChangeShrunk": shrinkage.lfc if shrinkage is not None else nan,
            "lfcShrunkLower": shrinkage.lower if shrinkage is not None else nan,
            "lfcShrunkUpper": shrinkage.upper if shrinkage is not None else nan,
            "dispersion": dispersion if dispersion is not None else nan,
            "dispOutlier": disp_outlier if disp_outlier is not None else false,
            "cooksOutlier": cooks_outlier if cooks_outlier is not None else false,
            "converged": converged if converged is not None else ~false,
        }
    )

    zero = frame["baseMean"] == 0
    frame.loc[zero, [c for c in RESULT_COLUMNS[2:10]]] = np.nan

    frame = frame.sort_values("pvalue", na_position="last", kind="mergesort").reset_index(drop=True)
    return ResultsTable(
        frame=frame,
        contrast=contrast,
        test=test,
        alpha=alpha,
        filter_threshold=filter_threshold,
        provisional=provisional,
        shrinkage_method=shrinkage.method if shrinkage is not None else None,
    )
