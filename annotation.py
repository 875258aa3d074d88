"""
Gene annotation lookup for results tables.

Maps gene identifiers (typically Ensembl ids, optionally versioned) to
symbols, biotypes or any other column of a reference table. References are
either a delimited gene table with a ``gene_id`` column or a GTF file, whose
``gene`` records supply ``gene_id``, ``gene_name`` and ``gene_biotype``.

Parsed references are kept in an AnnotationCache keyed by the SHA-256
checksum of the file contents, so an edited file is always re-read. The
cache is an explicit object owned by the caller.
"""

from pathlib import Path
from typing import Dict, Iterable, Optional, Union
import csv
import hashlib
import logging
import re

import numpy as np
import pandas as pd

from count_data import InputValidationError, read_delimited

logger = logging.getLogger(__name__)

GTF_COLUMNS = [
    "seqname", "source", "feature", "start", "end",
    "score", "strand", "frame", "attributes",
]
GTF_ATTRIBUTE = re.compile(r'(\S+)\s+"([^"]*)"')

# GTF attribute -> annotation column
GTF_FIELDS = {
    "gene_name": "symbol",
    "gene_biotype": "biotype",
    "gene_type": "biotype",
}


def file_checksum(path: Union[str, Path], chunk_size: int = 1 << 20) -> str:
    """SHA-256 hex digest of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def strip_gene_version(gene_id: str) -> str:
    """ENSG00000141510.17 -> ENSG00000141510"""
    gene_id = str(gene_id)
    if gene_id.startswith("ENS") and "." in gene_id:
        return gene_id.split(".", 1)[0]
    return gene_id


class AnnotationCache:
    """In-memory store of parsed annotation tables keyed by file checksum."""

    def __init__(self):
        self._tables: Dict[str, pd.DataFrame] = {}

    def __len__(self) -> int:
        return len(self._tables)

    def __contains__(self, checksum: str) -> bool:
        return checksum in self._tables

    def get(self, checksum: str) -> Optional[pd.DataFrame]:
        return self._tables.get(checksum)

    def put(self, checksum: str, table: pd.DataFrame) -> None:
        self._tables[checksum] = table

    def invalidate(self, checksum: str) -> bool:
        """Drop one entry. Returns True if it was present."""
        return self._tables.pop(checksum, None) is not None

    def clear(self) -> None:
        self._tables.clear()


def parse_gtf(path: Union[str, Path]) -> pd.DataFrame:
    """
    Extract gene records from a GTF file.

    Args:
        path: Path to a (possibly gzipped) GTF file

    Returns:
        DataFrame indexed by gene_id with symbol and biotype columns
        (NaN where the attribute is absent)

    Raises:
        InputValidationError: If the file has no gene records
    """
    gtf = pd.read_csv(
        path,
        sep="\t",
        comment="#",
        header=None,
        names=GTF_COLUMNS,
        dtype=str,
        quoting=csv.QUOTE_NONE,
        compression="infer",
    )
    genes = gtf[gtf["feature"] == "gene"]
    if genes.empty:
        raise InputValidationError(
            f"No gene records found in GTF: {path}",
            details={"path": str(path), "n_records": len(gtf)},
        )

    records = []
    for attributes in genes["attributes"]:
        parsed = dict(GTF_ATTRIBUTE.findall(attributes))
        if "gene_id" not in parsed:
            continue
        record = {"gene_id": parsed["gene_id"]}
        for key, column in GTF_FIELDS.items():
            if key in parsed and column not in record:
                record[column] = parsed[key]
        records.append(record)

    table = pd.DataFrame.from_records(records)
    for column in set(GTF_FIELDS.values()):
        if column not in table.columns:
            table[column] = np.nan
    return table.drop_duplicates("gene_id").set_index("gene_id")


def parse_gene_table(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read a delimited gene table with a gene_id column.

    Raises:
        InputValidationError: If no gene_id column is present
    """
    df = read_delimited(path)
    id_column = next(
        (c for c in df.columns if str(c).lower() in ("gene_id", "geneid", "ensembl_gene_id")),
        None,
    )
    if id_column is None:
        raise InputValidationError(
            f"Annotation table has no gene_id column: {path}",
            details={"columns": list(df.columns)},
        )
    df = df.rename(columns={id_column: "gene_id"})
    df = df.rename(columns={c: "symbol" for c in df.columns if str(c).lower() in ("gene_name", "gene_symbol")})
    df["gene_id"] = df["gene_id"].astype(str)
    return df.drop_duplicates("gene_id").set_index("gene_id")


class GeneAnnotationResolver:
    """
    Resolve gene identifiers against a reference annotation.

    Example:
        resolver = GeneAnnotationResolver(AnnotationCache())
        resolver.load("Homo_sapiens.GRCh38.gtf.gz")
        symbols = resolver.resolve(results["gene"], column="symbol")
    """

    def __init__(self, cache: Optional[AnnotationCache] = None):
        self.cache = cache if cache is not None else AnnotationCache()
        self.table: Optional[pd.DataFrame] = None
        self.checksum: Optional[str] = None

    def load(self, path: Union[str, Path]) -> pd.DataFrame:
        """
        Load a GTF or delimited gene table, reusing the cached parse when the
        file contents are unchanged.

        Returns:
            Annotation table indexed by gene_id
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Annotation file not found: {path}")

        checksum = file_checksum(path)
        table = self.cache.get(checksum)
        if table is None:
            suffixes = [s.lower() for s in path.suffixes]
            if ".gtf" in suffixes or ".gff" in suffixes:
                table = parse_gtf(path)
            else:
                table = parse_gene_table(path)
            self.cache.put(checksum, table)
            logger.info(f"Parsed annotation {path.name}: {len(table)} genes, columns {list(table.columns)}")
        else:
            logger.info(f"Using cached annotation for {path.name} ({checksum[:12]})")

        self.table = table
        self.checksum = checksum
        return table

    def resolve(
        self,
        gene_ids: Iterable,
        column: str = "symbol",
        strip_version: bool = True,
    ) -> pd.Series:
        """
        Look up one annotation column for each gene id.

        Args:
            gene_ids: Gene identifiers in result order
            column: Annotation column to return
            strip_version: Match Ensembl ids without their ".N" version suffix

        Returns:
            Series aligned with gene_ids; NaN where no mapping was found
        """
        if self.table is None:
            raise RuntimeError("No annotation loaded; call load() first")
        if column not in self.table.columns:
            raise KeyError(f"Annotation column '{column}' not available. Available: {list(self.table.columns)}")

        gene_ids = [str(g) for g in gene_ids]
        lookup = self.table[column]
        if strip_version:
            lookup = lookup.copy()
            lookup.index = [strip_gene_version(g) for g in lookup.index]
            lookup = lookup[~lookup.index.duplicated()]
            keys = [strip_gene_version(g) for g in gene_ids]
        else:
            keys = gene_ids

        values = lookup.reindex(keys).to_numpy()
        resolved = pd.Series(values, index=gene_ids, name=column)
        n_missing = int(resolved.isna().sum())
        if n_missing:
            logger.info(f"{n_missing}/{len(gene_ids)} genes have no '{column}' annotation")
        return resolved
