"""Shared fixtures for scExpress tests."""

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp


@pytest.fixture
def rng():
    """Seeded random number generator for reproducibility."""
    return np.random.RandomState(42)


@pytest.fixture
def small_counts(rng):
    """Small count matrix: 40 genes x 8 cells, Poisson(3) with dropouts."""
    counts = rng.poisson(3, (40, 8)).astype(np.float64)
    counts[rng.uniform(size=counts.shape) < 0.3] = 0
    return counts


@pytest.fixture
def small_csc(small_counts):
    return sp.csc_matrix(small_counts)


@pytest.fixture
def gene_annotation():
    return pd.DataFrame(
        {'gene_short_name': [f"GENE{i}" for i in range(40)]},
        index=[f"g{i}" for i in range(40)],
    )


@pytest.fixture
def cell_annotation():
    return pd.DataFrame(
        {'batch': ['a', 'a', 'b', 'b', 'a', 'b', 'a', 'b'],
         'depth': np.arange(1.0, 9.0)},
        index=[f"c{j}" for j in range(8)],
    )


@pytest.fixture
def cds(small_counts, cell_annotation, gene_annotation):
    """Dense CellDataSet built from small_counts."""
    import scexpress as sx
    return sx.new_cell_data_set(small_counts, pheno_data=cell_annotation,
                                feature_data=gene_annotation)


@pytest.fixture
def sparse_cds(small_csc, cell_annotation, gene_annotation):
    """Sparse (csc) CellDataSet built from small_counts."""
    import scexpress as sx
    return sx.new_cell_data_set(small_csc, pheno_data=cell_annotation,
                                feature_data=gene_annotation)
