"""
Count matrix and sample metadata containers.

Handles ingestion and validation of RNA-seq count data:
- Rectangular, non-negative, integer-valued counts
- Unique gene and sample identifiers
- Sample metadata aligned to the count columns in exactly the same order

Canonical orientation inside the engine: genes × samples.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
from os import PathLike
import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

INTEGER_TOLERANCE = 1e-3

KNOWN_SAMPLE_HEADERS = [
    "sample",
    "sample_id",
    "SampleID",
    "Sample_ID",
    "samplename",
    "Sample_Name",
    "samples",
    "id",
    "ID",
]


class InputValidationError(Exception):
    """Raised when counts or metadata violate an input invariant."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


def _check_unique(labels: Sequence, what: str) -> None:
    index = pd.Index(labels)
    if index.has_duplicates:
        duplicated = index[index.duplicated()].unique().tolist()
        raise InputValidationError(
            f"{what} identifiers must be unique. Found duplicates: {duplicated[:10]}",
            details={"duplicates": duplicated},
        )


@dataclass(frozen=True, eq=False)
class CountMatrix:
    """
    Immutable genes × samples matrix of non-negative integer counts.

    Construct through ``from_dataframe`` or ``from_array`` so that every
    invariant is checked before any fitting starts.
    """

    gene_ids: pd.Index
    sample_ids: pd.Index
    values: np.ndarray = field(repr=False)

    def __post_init__(self):
        values = np.asarray(self.values)
        if values.ndim != 2:
            raise InputValidationError(
                f"Count matrix must be 2-dimensional, got {values.ndim} dimensions"
            )
        if values.shape != (len(self.gene_ids), len(self.sample_ids)):
            raise InputValidationError(
                f"Count matrix shape {values.shape} does not match "
                f"{len(self.gene_ids)} genes × {len(self.sample_ids)} samples",
                details={"shape": values.shape},
            )
        _check_unique(self.gene_ids, "Gene")
        _check_unique(self.sample_ids, "Sample")
        values = values.astype(np.int64, copy=True)
        values.setflags(write=False)
        object.__setattr__(self, "values", values)

    @classmethod
    def from_array(
        cls,
        values: np.ndarray,
        gene_ids: Optional[Iterable] = None,
        sample_ids: Optional[Iterable] = None,
    ) -> "CountMatrix":
        """Build a CountMatrix from a genes × samples array."""
        try:
            arr = np.asarray(values, dtype=float)
        except ValueError as e:
            raise InputValidationError(f"Count matrix must be rectangular and numeric: {e}")
        arr = validate_counts(arr)
        n_genes, n_samples = arr.shape
        if gene_ids is None:
            gene_ids = [f"gene_{i + 1}" for i in range(n_genes)]
        if sample_ids is None:
            sample_ids = [f"sample_{j + 1}" for j in range(n_samples)]
        return cls(pd.Index(list(gene_ids)), pd.Index(list(sample_ids)), arr)

    @classmethod
    def from_dataframe(
        cls, df: pd.DataFrame, orientation: str = "genes_x_samples"
    ) -> "CountMatrix":
        """
        Build a CountMatrix from a DataFrame.

        Args:
            df: Count DataFrame with identifiers on index and columns
            orientation: "genes_x_samples" (default) or "samples_x_genes"

        Returns:
            Validated CountMatrix (genes × samples)

        Raises:
            InputValidationError: If the frame has non-numeric, negative,
                non-integer or missing values
        """
        if orientation == "samples_x_genes":
            df = df.T
        elif orientation != "genes_x_samples":
            raise ValueError(f"Unknown orientation: {orientation}")

        non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
        if non_numeric:
            raise InputValidationError(
                f"Count matrix contains non-numeric columns: {non_numeric[:10]}. "
                f"Suggestion: move gene identifiers to the index before loading.",
                details={"non_numeric_columns": non_numeric},
            )
        arr = validate_counts(df.to_numpy(dtype=float))
        return cls(pd.Index(df.index), pd.Index(df.columns), arr)

    @property
    def n_genes(self) -> int:
        return len(self.gene_ids)

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            np.array(self.values), index=self.gene_ids, columns=self.sample_ids
        )

    def filter_genes(self, mask: Union[np.ndarray, Sequence[bool]]) -> "CountMatrix":
        """Return a new CountMatrix keeping genes where mask is True."""
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (self.n_genes,):
            raise InputValidationError(
                f"Gene mask length {mask.shape} does not match {self.n_genes} genes"
            )
        logger.info(f"Filtering count matrix: keeping {int(mask.sum())} of {self.n_genes} genes")
        return CountMatrix(self.gene_ids[mask], self.sample_ids, self.values[mask])

    def subset_samples(self, sample_ids: Sequence) -> "CountMatrix":
        """Return a new CountMatrix with the given samples, in the given order."""
        missing = [s for s in sample_ids if s not in self.sample_ids]
        if missing:
            raise InputValidationError(f"Unknown samples: {missing}")
        idx = self.sample_ids.get_indexer(list(sample_ids))
        return CountMatrix(self.gene_ids, pd.Index(list(sample_ids)), self.values[:, idx])

    def all_zero_genes(self) -> np.ndarray:
        return (self.values == 0).all(axis=1)


def validate_counts(arr: np.ndarray) -> np.ndarray:
    """
    Validate a numeric count array and round integer-like values.

    Checks:
    - No missing values
    - No negative values (count matrices cannot be negative)
    - Every value within INTEGER_TOLERANCE of an integer

    Raises:
        InputValidationError: If validation fails
    """
    if arr.ndim != 2:
        raise InputValidationError(
            f"Count matrix must be rectangular (2-dimensional), got shape {arr.shape}"
        )
    if not np.isfinite(arr).all():
        n_missing = int((~np.isfinite(arr)).sum())
        raise InputValidationError(
            f"Count matrix contains {n_missing} missing or infinite values.",
            details={"missing_count": n_missing},
        )
    if (arr < 0).any():
        negative_count = int((arr < 0).sum())
        raise InputValidationError(
            f"Count matrices cannot contain negative values. Found {negative_count} negative values. "
            f"Suggestion: Check if your data has been log-transformed or normalized.",
            details={"negative_count": negative_count},
        )
    non_integer = np.abs(arr - np.round(arr)) > INTEGER_TOLERANCE
    if non_integer.any():
        raise InputValidationError(
            f"Count matrix contains {int(non_integer.sum())} non-integer values. "
            f"Differential expression requires raw counts (non-negative integers).",
            details={"non_integer_count": int(non_integer.sum())},
        )
    return np.round(arr)


@dataclass(frozen=True, eq=False)
class SampleMetadata:
    """
    Immutable per-sample covariate table indexed by sample identifier.

    Updates (new covariates, changed reference levels) return new instances.
    """

    table: pd.DataFrame

    def __post_init__(self):
        _check_unique(self.table.index, "Sample")
        object.__setattr__(self, "table", self.table.copy())

    @classmethod
    def from_dataframe(
        cls, df: pd.DataFrame, sample_column: Optional[str] = None
    ) -> "SampleMetadata":
        """
        Build SampleMetadata, moving a sample identifier column to the index.

        When ``sample_column`` is not given, the first known sample header
        (``sample_id``, ``sample`` ...) present in the columns is used; if none
        is present the existing index is kept.
        """
        if sample_column is None:
            sample_column = next((c for c in KNOWN_SAMPLE_HEADERS if c in df.columns), None)
        if sample_column is not None:
            if sample_column not in df.columns:
                raise InputValidationError(f"Sample column '{sample_column}' not found in metadata")
            df = df.set_index(sample_column)
        df = df.copy()
        df.index = df.index.astype(str)
        return cls(df)

    @property
    def sample_ids(self) -> pd.Index:
        return self.table.index

    @property
    def columns(self) -> List[str]:
        return list(self.table.columns)

    def __len__(self) -> int:
        return len(self.table)

    def column(self, name: str) -> pd.Series:
        if name not in self.table.columns:
            raise InputValidationError(
                f"Covariate '{name}' not found in sample metadata. Available: {self.columns}"
            )
        return self.table[name].copy()

    def with_column(self, name: str, values: Sequence) -> "SampleMetadata":
        """Return a new SampleMetadata with a covariate added or replaced."""
        if len(values) != len(self.table):
            raise InputValidationError(
                f"Covariate '{name}' has {len(values)} values for {len(self.table)} samples"
            )
        table = self.table.copy()
        table[name] = list(values)
        logger.info(f"Metadata updated: covariate '{name}' set on {len(table)} samples")
        return SampleMetadata(table)

    def relevel(self, column: str, reference: str) -> "SampleMetadata":
        """Return a new SampleMetadata with ``reference`` as the first level of ``column``."""
        values = self.column(column).astype(str)
        levels = list(pd.unique(values))
        if reference not in levels:
            raise InputValidationError(
                f"Reference level '{reference}' not present in covariate '{column}'. Levels: {levels}"
            )
        ordered = [reference] + sorted(lv for lv in levels if lv != reference)
        table = self.table.copy()
        table[column] = pd.Categorical(values, categories=ordered)
        logger.info(f"Metadata updated: '{column}' reference level set to '{reference}'")
        return SampleMetadata(table)


def validate_alignment(counts: CountMatrix, metadata: SampleMetadata) -> None:
    """
    Check metadata rows match count columns exactly, in the same order.

    No implicit realignment is performed: a reordered metadata table is an
    error, since silently reordering would change which covariate applies to
    which sample.

    Raises:
        InputValidationError: If the sample sets or their order differ
    """
    if len(metadata) != counts.n_samples:
        raise InputValidationError(
            f"Sample metadata has {len(metadata)} rows but count matrix has "
            f"{counts.n_samples} sample columns.",
            details={"metadata_rows": len(metadata), "count_columns": counts.n_samples},
        )
    count_ids = [str(s) for s in counts.sample_ids]
    meta_ids = [str(s) for s in metadata.sample_ids]
    if count_ids != meta_ids:
        missing = sorted(set(count_ids) - set(meta_ids))
        extra = sorted(set(meta_ids) - set(count_ids))
        if not missing and not extra:
            raise InputValidationError(
                "Sample metadata order does not match count matrix column order. "
                "Reorder the metadata explicitly before analysis.",
                details={"count_order": count_ids, "metadata_order": meta_ids},
            )
        raise InputValidationError(
            f"Sample identifiers differ between counts and metadata. "
            f"Missing from metadata: {missing[:10]}; not in counts: {extra[:10]}",
            details={"missing_from_metadata": missing, "missing_from_counts": extra},
        )


def read_delimited(file_path: Union[str, PathLike], **kwargs) -> pd.DataFrame:
    """
    Parse CSV or TSV file with automatic delimiter detection.

    Raises:
        InputValidationError: If file cannot be parsed or is empty
    """
    try:
        df = pd.read_csv(file_path, sep=",", **kwargs)
        # A single parsed field per line means the file is not comma separated
        if len(df.columns) + (1 if kwargs.get("index_col") is not None else 0) == 1:
            df = pd.read_csv(file_path, sep="\t", **kwargs)
    except pd.errors.EmptyDataError:
        raise InputValidationError(f"File is empty or contains no readable data: {file_path}")
    except pd.errors.ParserError as e:
        raise InputValidationError(f"Failed to parse delimited file {file_path}: {str(e)}")
    except FileNotFoundError:
        raise InputValidationError(f"File not found: {file_path}")

    if df.empty:
        raise InputValidationError(f"File is empty: {file_path}")
    return df


def load_counts_csv(
    file_path: Union[str, PathLike], orientation: str = "genes_x_samples"
) -> CountMatrix:
    """
    Load a count matrix from CSV/TSV. The first column holds the row identifiers.

    Args:
        file_path: Path to CSV/TSV file
        orientation: Layout of the file ("genes_x_samples" or "samples_x_genes")

    Returns:
        Validated CountMatrix
    """
    df = read_delimited(file_path, index_col=0)
    if len(df.columns) < 1:
        raise InputValidationError(
            f"Count file must have at least 2 columns (identifiers + samples), found {len(df.columns) + 1}"
        )
    counts = CountMatrix.from_dataframe(df, orientation=orientation)
    logger.info(f"Loaded counts from {file_path}: {counts.n_genes} genes × {counts.n_samples} samples")
    return counts


def load_metadata_csv(
    file_path: Union[str, PathLike], sample_column: Optional[str] = None
) -> SampleMetadata:
    """Load sample metadata from CSV/TSV keyed by sample identifier."""
    df = read_delimited(file_path)
    if sample_column is None and not any(c in df.columns for c in KNOWN_SAMPLE_HEADERS):
        sample_column = df.columns[0]
    metadata = SampleMetadata.from_dataframe(df, sample_column=sample_column)
    logger.info(f"Loaded metadata from {file_path}: {len(metadata)} samples, covariates {metadata.columns}")
    return metadata
