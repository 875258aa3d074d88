"""
Gene-level import of Salmon transcript quantifications.

Each sample directory holds a ``quant.sf`` table
(Name, Length, EffectiveLength, TPM, NumReads). Transcripts are mapped to
genes with a tx2gene table and aggregated per sample:

- counts: sum of NumReads, rounded to integers
- abundance: sum of TPM
- length: TPM-weighted mean of EffectiveLength; genes with zero abundance in
  a sample take the mean of that gene's lengths across the other samples

The length matrix feeds size_factors.estimate_normalization_factors.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd

from count_data import CountMatrix, InputValidationError, read_delimited

logger = logging.getLogger(__name__)

QUANT_COLUMNS = ["Name", "Length", "EffectiveLength", "TPM", "NumReads"]


@dataclass(frozen=True, eq=False)
class QuantificationImport:
    """Gene-level counts, abundances and average transcript lengths."""

    counts: CountMatrix
    abundance: pd.DataFrame = field(repr=False)
    lengths: pd.DataFrame = field(repr=False)


def read_tx2gene(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read a transcript -> gene mapping.

    The first two columns are taken as transcript_id and gene_id whatever
    their headers are.

    Returns:
        DataFrame with transcript_id and gene_id columns
    """
    df = read_delimited(path, dtype=str)
    if df.shape[1] < 2:
        raise InputValidationError(
            f"tx2gene table needs at least two columns, found {df.shape[1]}: {path}"
        )
    df = df.iloc[:, :2].copy()
    df.columns = ["transcript_id", "gene_id"]
    return df.dropna().drop_duplicates("transcript_id")


def _read_quant(quant_file: Path) -> pd.DataFrame:
    if not quant_file.exists():
        raise FileNotFoundError(f"Salmon quantification not found: {quant_file}")
    df = pd.read_csv(quant_file, sep="\t")
    missing = [c for c in QUANT_COLUMNS if c not in df.columns]
    if missing:
        raise InputValidationError(
            f"{quant_file} is missing columns {missing}",
            details={"found_columns": list(df.columns)},
        )
    return df


def import_salmon(
    sample_dirs: Sequence[Union[str, Path]],
    tx2gene: pd.DataFrame,
    sample_names: Optional[Sequence[str]] = None,
) -> QuantificationImport:
    """
    Aggregate transcript quantifications from several samples to gene level.

    Args:
        sample_dirs: Salmon output directories, one per sample
        tx2gene: Mapping from read_tx2gene
        sample_names: Names for the samples (default: directory names)

    Returns:
        QuantificationImport with genes × samples counts, TPM and lengths

    Raises:
        InputValidationError: If no transcript of a sample is in the mapping
    """
    sample_dirs = [Path(d) for d in sample_dirs]
    if sample_names is None:
        sample_names = [d.name for d in sample_dirs]
    if len(sample_names) != len(sample_dirs):
        raise InputValidationError("sample_names must match the number of sample directories")

    counts_list: List[pd.Series] = []
    tpm_list: List[pd.Series] = []
    length_list: List[pd.Series] = []

    for sample_dir, sample_name in zip(sample_dirs, sample_names):
        df = _read_quant(sample_dir / "quant.sf")

        # Merge with gene mapping
        merged = df.merge(tx2gene, left_on="Name", right_on="transcript_id")
        n_dropped = len(df) - len(merged)
        if merged.empty:
            raise InputValidationError(
                f"No transcripts of sample {sample_name} are present in the tx2gene mapping",
                details={"sample": sample_name, "n_transcripts": len(df)},
            )
        if n_dropped:
            logger.warning(f"{sample_name}: {n_dropped} transcripts missing from tx2gene were dropped")

        merged["weighted_length"] = merged["TPM"] * merged["EffectiveLength"]
        grouped = merged.groupby("gene_id")
        gene_counts = grouped["NumReads"].sum()
        gene_tpm = grouped["TPM"].sum()
        with np.errstate(divide="ignore", invalid="ignore"):
            gene_length = grouped["weighted_length"].sum() / gene_tpm
        gene_length = gene_length.where(gene_tpm > 0)

        gene_counts.name = sample_name
        gene_tpm.name = sample_name
        gene_length.name = sample_name
        counts_list.append(gene_counts)
        tpm_list.append(gene_tpm)
        length_list.append(gene_length)

    counts_df = pd.concat(counts_list, axis=1).fillna(0.0)
    tpm_df = pd.concat(tpm_list, axis=1).fillna(0.0)
    length_df = pd.concat(length_list, axis=1)

    # Zero-abundance genes: average length across the samples that have one
    row_means = length_df.mean(axis=1)
    length_df = length_df.apply(lambda col: col.fillna(row_means))
    # Genes with no abundance in any sample: overall mean length
    length_df = length_df.fillna(float(np.nanmean(length_df.to_numpy())) if length_df.notna().any().any() else 1.0)

    counts = CountMatrix.from_dataframe(counts_df.round())
    logger.info(
        f"Imported {len(sample_dirs)} Salmon samples: {counts.n_genes} genes from "
        f"{tx2gene['gene_id'].nunique()} genes in the mapping"
    )
    return QuantificationImport(
        counts=counts,
        abundance=tpm_df.loc[counts.gene_ids],
        lengths=length_df.loc[counts.gene_ids],
    )
