"""
Gene-partitioned batch execution.

Per-gene fits are independent given shared inputs (size factors, design,
dispersion trend), so genes are split into contiguous batches and handed to a
fixed-size thread pool. Each batch returns arrays for its own rows only and
results are stitched back in gene order, so the output is identical for any
worker count.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Tuple
import logging

import numpy as np

logger = logging.getLogger(__name__)

BatchResult = Dict[str, np.ndarray]


def gene_batches(n_genes: int, batch_size: int) -> List[Tuple[int, int]]:
    """Contiguous (start, stop) slices covering range(n_genes)."""
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    return [(start, min(start + batch_size, n_genes)) for start in range(0, n_genes, batch_size)]


def run_in_batches(
    func: Callable[[slice], BatchResult],
    n_genes: int,
    n_workers: int = 1,
    batch_size: int = 2000,
) -> BatchResult:
    """
    Apply ``func`` to every gene batch and concatenate the results.

    Args:
        func: Called with a slice of gene rows; returns a dict of arrays whose
            first axis has the batch length
        n_genes: Total number of genes
        n_workers: Thread pool size (1 runs inline)
        batch_size: Genes per batch

    Returns:
        Dict of arrays with first axis of length n_genes
    """
    slices = [slice(a, b) for a, b in gene_batches(n_genes, batch_size)]
    if not slices:
        return {}

    if n_workers == 1 or len(slices) == 1:
        parts = [func(s) for s in slices]
    else:
        logger.debug(f"Running {len(slices)} gene batches on {n_workers} workers")
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            parts = list(pool.map(func, slices))

    return {key: np.concatenate([p[key] for p in parts], axis=0) for key in parts[0]}
