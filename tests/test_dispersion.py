"""Tests for the parametric dispersion fit and the dispersion table."""

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

import scexpress as sx


@pytest.fixture
def nb_counts():
    """300 genes x 100 cells of NB counts with dispersion 0.1 + 1/mu."""
    rng = np.random.RandomState(7)
    n_genes, n_cells = 300, 100
    mu = np.exp(rng.uniform(np.log(0.5), np.log(50), n_genes))
    phi = 0.1 + 1.0 / mu
    sf = np.exp(rng.normal(0, 0.2, n_cells))
    means = np.outer(mu, sf)
    size = 1.0 / phi[:, None]
    counts = rng.negative_binomial(size, size / (size + means)).astype(np.float64)
    return counts


@pytest.fixture
def nb_cds(nb_counts):
    genes = pd.DataFrame({'gene_short_name': [f"G{i}" for i in range(nb_counts.shape[0])]},
                         index=[f"g{i}" for i in range(nb_counts.shape[0])])
    cds = sx.new_cell_data_set(nb_counts, feature_data=genes)
    return sx.estimate_size_factors(cds)


class TestParametricDispersionFunction:
    """a0 + a1 / q."""

    def test_evaluate(self):
        f = sx.ParametricDispersionFunction([0.1, 2.0])
        assert np.allclose(f(np.array([1.0, 2.0, 4.0])), [2.1, 1.1, 0.6])
        assert np.isinf(f(0.0))


class TestParametricDispersionFit:
    """Gamma GLM fit of dispersion against mean."""

    def test_recovers_coefficients(self):
        rng = np.random.RandomState(3)
        mu = np.exp(rng.uniform(0, np.log(100), 200))
        disp = (0.2 + 3.0 / mu) * rng.gamma(50, 1 / 50, 200)
        table = pd.DataFrame({'mu': mu, 'disp': disp})
        fit, coefs, good = sx.parametric_dispersion_fit(table)
        assert good.sum() == 200
        assert abs(coefs[0] - 0.2) < 0.05
        assert abs(coefs[1] - 3.0) < 0.5

    def test_zero_dispersions_excluded(self):
        rng = np.random.RandomState(3)
        mu = np.exp(rng.uniform(0, np.log(100), 100))
        disp = (0.2 + 3.0 / mu) * rng.gamma(50, 1 / 50, 100)
        disp[:10] = 0
        fit, coefs, good = sx.parametric_dispersion_fit(pd.DataFrame({'mu': mu, 'disp': disp}))
        assert not np.any(good[:10])
        assert np.all(coefs > 0)

    def test_too_few_points(self):
        table = pd.DataFrame({'mu': [1.0, 2.0], 'disp': [0.0, 0.5]})
        with pytest.raises(RuntimeError):
            sx.parametric_dispersion_fit(table)


class TestEstimateDispersions:
    """estimate_dispersions on simulated negative binomial data."""

    def test_fit_cached(self, nb_cds):
        sx.estimate_dispersions(nb_cds)
        fit = sx.get_dispersion_fit(nb_cds, 'blind')
        assert isinstance(fit, sx.DispersionFit)
        coefs = fit.disp_func.coefficients
        assert np.all(coefs > 0)
        assert 0.01 < coefs[0] < 1.0
        assert list(fit.disp_table.columns) == ['gene_id', 'mu', 'disp']

    def test_outlier_removal_refit(self, nb_cds):
        with_removal = sx.estimate_dispersions(nb_cds._copy())
        without = sx.estimate_dispersions(nb_cds._copy(), remove_outliers=False)
        a = sx.get_dispersion_fit(with_removal).disp_func.coefficients
        b = sx.get_dispersion_fit(without).disp_func.coefficients
        assert np.all(np.isfinite(a)) and np.all(a > 0)
        assert 0.05 < a[0] < 0.2
        assert 0.5 < a[1] < 1.5
        assert np.all(b > 0)

    def test_sparse_matches_dense(self, nb_counts, nb_cds):
        sparse = sx.new_cell_data_set(sp.csc_matrix(nb_counts),
                                      feature_data=nb_cds.features[['gene_short_name']])
        sx.estimate_size_factors(sparse)
        sx.estimate_dispersions(nb_cds)
        sx.estimate_dispersions(sparse)
        dense_fit = sx.get_dispersion_fit(nb_cds)
        sparse_fit = sx.get_dispersion_fit(sparse)
        assert np.allclose(dense_fit.disp_func.coefficients,
                           sparse_fit.disp_func.coefficients)

    def test_worker_pool_matches_in_process(self, nb_cds):
        single = sx.estimate_dispersions(nb_cds._copy())
        multi = sx.estimate_dispersions(nb_cds._copy(), cores=2)
        a = sx.dispersion_table(single)
        b = sx.dispersion_table(multi)
        pd.testing.assert_frame_equal(a, b)

    def test_requires_size_factors(self, cds):
        with pytest.raises(ValueError, match="estimate_size_factors"):
            sx.estimate_dispersions(cds)

    def test_requires_negbinomial(self, small_counts, gene_annotation):
        cds = sx.new_cell_data_set(small_counts, feature_data=gene_annotation,
                                   expression_family='tobit')
        sx.estimate_size_factors(cds)
        with pytest.raises(ValueError, match="negbinomial"):
            sx.estimate_dispersions(cds)


class TestDispersionTable:
    """dispersion_table reads the 'blind' fit."""

    def test_no_fit(self, cds):
        with pytest.warns(UserWarning, match="negbinomial"):
            with pytest.raises(ValueError, match="no dispersion model found"):
                sx.dispersion_table(cds)

    def test_from_cached_fit(self, cds):
        table = pd.DataFrame({'gene_id': ['g0', 'g1', 'g2'],
                              'mu': [1.0, 2.0, 4.0],
                              'disp': [1.5, 0.9, 0.7]})
        sx.set_dispersion_fit(cds, sx.DispersionFit(
            disp_table=table, disp_func=sx.ParametricDispersionFunction([0.1, 2.0])))
        out = sx.dispersion_table(cds)
        assert list(out.columns) == ['gene_id', 'mean_expression',
                                     'dispersion_fit', 'dispersion_empirical']
        assert list(out['gene_id']) == ['g0', 'g1', 'g2']
        assert np.allclose(out['mean_expression'], [1.0, 2.0, 4.0])
        assert np.allclose(out['dispersion_fit'], [2.1, 1.1, 0.6])
        assert np.allclose(out['dispersion_empirical'], [1.5, 0.9, 0.7])

    def test_other_fit_names_ignored(self, cds):
        sx.set_dispersion_fit(cds, sx.DispersionFit(
            disp_table=pd.DataFrame({'gene_id': [], 'mu': [], 'disp': []}),
            disp_func=sx.ParametricDispersionFunction([0.1, 1.0])), name='pooled')
        with pytest.warns(UserWarning):
            with pytest.raises(ValueError):
                sx.dispersion_table(cds)
