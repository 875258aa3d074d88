"""Tests for gene-partitioned batch execution."""
import pytest
import numpy as np

from gene_batches import gene_batches, run_in_batches


def test_batches_cover_all_genes():
    assert gene_batches(10, 4) == [(0, 4), (4, 8), (8, 10)]
    assert gene_batches(0, 4) == []
    with pytest.raises(ValueError):
        gene_batches(10, 0)


@pytest.mark.parametrize("n_workers,batch_size", [(1, 1000), (1, 7), (4, 7), (8, 1)])
def test_results_independent_of_worker_count(n_workers, batch_size):
    data = np.arange(100, dtype=float).reshape(50, 2)

    def func(rows):
        block = data[rows]
        return {"total": block.sum(axis=1), "block": block * 2}

    result = run_in_batches(func, 50, n_workers=n_workers, batch_size=batch_size)
    np.testing.assert_array_equal(result["total"], data.sum(axis=1))
    np.testing.assert_array_equal(result["block"], data * 2)


def test_no_genes():
    assert run_in_batches(lambda rows: {"x": np.zeros(0)}, 0) == {}


def test_batch_errors_propagate():
    def func(rows):
        if rows.start >= 10:
            raise RuntimeError("batch failed")
        return {"x": np.zeros(rows.stop - rows.start)}

    with pytest.raises(RuntimeError):
        run_in_batches(func, 20, n_workers=2, batch_size=5)
