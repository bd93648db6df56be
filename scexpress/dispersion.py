"""
Dispersion estimation for scExpress.

Fits a parametric mean-dispersion relationship, ``disp = a0 + a1 / mu``,
to method-of-moments dispersion estimates of size-factor normalized counts,
and exposes the fit as a per-feature dispersion table.
"""

import numpy as np
import pandas as pd
import warnings
from statsmodels.genmod import families
from statsmodels.genmod.generalized_linear_model import GLM

from .apply import es_apply
from .cell_data_set import get_dispersion_fit, set_dispersion_fit, size_factors
from .classes import DispersionFit
from .matrix import wrap_matrix

NEGBINOMIAL_FAMILIES = ('negbinomial', 'negbinomial.size')


class ParametricDispersionFunction:
    """Fitted dispersion as a function of mean: ``a0 + a1 / q``."""

    def __init__(self, coefficients):
        self.coefficients = np.asarray(coefficients, dtype=np.float64)

    def __call__(self, q):
        q = np.asarray(q, dtype=np.float64)
        with np.errstate(divide='ignore'):
            return self.coefficients[0] + self.coefficients[1] / q

    def __repr__(self):
        a0, a1 = self.coefficients
        return f"ParametricDispersionFunction(a0={a0:.6g}, a1={a1:.6g})"


def _normalized_moments(x, Size_Factor):
    """Mean and variance of one feature's rounded, normalized counts."""
    y = np.round(x) / Size_Factor
    if y.size < 2:
        return (float(np.mean(y)), np.nan)
    return (float(np.mean(y)), float(np.var(y, ddof=1)))


def _disp_calc_helper_nb(cds, min_cells_detected, cores=None):
    """Method-of-moments dispersion per feature."""
    m = wrap_matrix(cds['exprs'])
    nz_genes = m.round().count_above(cds['lower_detection_limit'], axis=1)
    keep = np.where(nz_genes > min_cells_detected)[0]
    sub = cds[keep, :]

    moments = es_apply(sub, 'rows', _normalized_moments, cores=cores)
    mu = np.array([mv[0] for mv in moments], dtype=np.float64)
    var = np.array([mv[1] for mv in moments], dtype=np.float64)

    xim = np.mean(1.0 / size_factors(cds))
    with np.errstate(divide='ignore', invalid='ignore'):
        disp = (var - xim * mu) / mu ** 2
    mu[mu == 0] = np.nan
    disp[disp < 0] = 0

    return pd.DataFrame({
        'gene_id': [str(g) for g in sub['features'].index],
        'mu': mu,
        'disp': disp,
    })


def _gamma_identity_glm(disp, mu, start):
    exog = np.column_stack([np.ones(len(mu)), 1.0 / mu])
    model = GLM(disp, exog, family=families.Gamma(link=families.links.Identity()))
    with warnings.catch_warnings():
        # Identity is not the canonical Gamma link.
        warnings.simplefilter("ignore")
        return model.fit(start_params=start)


def parametric_dispersion_fit(disp_table, initial_coefs=(1e-6, 1.0), verbose=False):
    """Fit ``disp ~ a0 + a1 / mu`` with a Gamma GLM (identity link).

    Iterates, refitting on features with positive dispersion whose ratio
    to the current fit is below 10000, until the coefficients settle.

    Parameters
    ----------
    disp_table : DataFrame
        Columns ``mu`` and ``disp``.
    initial_coefs : tuple of float
        Starting ``(a0, a1)``. ``a0`` is also the floor for the fitted
        intercept.
    verbose : bool
        Print coefficients at each iteration.

    Returns
    -------
    tuple (fit, coefs, good)
        The statsmodels GLM results, the final coefficients, and a boolean
        mask of the rows of ``disp_table`` used in the final fit.
    """
    mu = disp_table['mu'].values.astype(np.float64)
    disp = disp_table['disp'].values.astype(np.float64)
    initial_coefs = np.asarray(initial_coefs, dtype=np.float64)
    coefs = initial_coefs.copy()
    it = 0
    while True:
        with np.errstate(divide='ignore', invalid='ignore'):
            residuals = disp / (coefs[0] + coefs[1] / mu)
        good = (disp > 0) & (residuals < 10000)
        if np.sum(good) < 2:
            raise RuntimeError("Parametric dispersion fit failed: too few features "
                               "with positive dispersion")
        fit = _gamma_identity_glm(disp[good], mu[good], coefs)
        oldcoefs = coefs
        coefs = np.asarray(fit.params, dtype=np.float64).copy()
        if coefs[0] < initial_coefs[0]:
            coefs[0] = initial_coefs[0]
        if coefs[1] < 0:
            raise RuntimeError("Parametric dispersion fit failed. Try a local fit "
                               "and/or a pooled estimation.")
        if verbose:
            print(f"Iteration {it}: a0={coefs[0]:.6g}, a1={coefs[1]:.6g}")
        if np.sum(np.log(coefs / oldcoefs) ** 2) < coefs[0]:
            break
        it += 1
        if it > 10:
            warnings.warn("Dispersion fit did not converge.")
            break

    if not np.all(coefs > 0):
        raise RuntimeError("Parametric dispersion fit failed. Try a local fit "
                           "and/or a pooled estimation.")
    return fit, coefs, good


def estimate_dispersions(cds, min_cells_detected=1, remove_outliers=True,
                         cores=None, verbose=False):
    """Estimate the mean-dispersion relationship of a CellDataSet.

    Computes method-of-moments dispersions of size-factor normalized counts
    for every feature detected in more than ``min_cells_detected`` samples,
    fits ``disp = a0 + a1 / mu`` to them, and caches the result under the
    name ``"blind"``.

    Parameters
    ----------
    cds : CellDataSet
        Must use a negative binomial expression family and carry size
        factors.
    min_cells_detected : int
        Features must be detected above ``lower_detection_limit`` in more
        than this many samples.
    remove_outliers : bool
        Refit after dropping features with Cook's distance above ``4 / n``.
    cores : int, optional
        Worker processes for the per-feature moments. None runs in process.
    verbose : bool
        Print progress.

    Returns
    -------
    CellDataSet
    """
    if cds['expression_family'] not in NEGBINOMIAL_FAMILIES:
        raise ValueError("estimate_dispersions only works, and is only needed, "
                         "when using a CellDataSet with a negbinomial or "
                         "negbinomial.size expression family")
    sfs = size_factors(cds)
    if np.any(~np.isfinite(sfs)):
        raise ValueError("Call estimate_size_factors() before calling this function.")

    disp_table = _disp_calc_helper_nb(cds, min_cells_detected, cores=cores)
    disp_table = disp_table[disp_table['mu'].notna()].reset_index(drop=True)
    if verbose:
        print(f"Fitting dispersion model to {len(disp_table)} features")

    fit, coefs, good = parametric_dispersion_fit(disp_table, verbose=verbose)

    if remove_outliers:
        # Expected-information weights; the observed Hessian can go negative
        # under the identity link.
        cooks = fit.get_influence(observed=False).cooks_distance[0]
        cooks_cutoff = 4.0 / len(disp_table)
        keep = np.zeros(len(disp_table), dtype=bool)
        keep[np.where(good)[0][cooks <= cooks_cutoff]] = True
        if verbose:
            print(f"Removing {len(disp_table) - np.sum(keep)} outliers")
        fit, coefs, good = parametric_dispersion_fit(
            disp_table[keep].reset_index(drop=True), verbose=verbose)

    set_dispersion_fit(cds, DispersionFit(disp_table=disp_table,
                                          disp_func=ParametricDispersionFunction(coefs)))
    return cds


def dispersion_table(cds):
    """Retrieve the mean-dispersion table of a CellDataSet.

    Parameters
    ----------
    cds : CellDataSet
        Must have been passed through ``estimate_dispersions``.

    Returns
    -------
    DataFrame with columns ``gene_id``, ``mean_expression``,
    ``dispersion_fit`` and ``dispersion_empirical``.
    """
    fit = get_dispersion_fit(cds, 'blind')
    if fit is None:
        warnings.warn("estimate_dispersions only works, and is only needed, when "
                      "using a CellDataSet with a negbinomial or negbinomial.size "
                      "expression family", stacklevel=2)
        raise ValueError("no dispersion model found. Please call "
                         "estimate_dispersions() before calling this function")

    table = fit.disp_table
    mu = table['mu'].values
    return pd.DataFrame({
        'gene_id': table['gene_id'].values,
        'mean_expression': mu,
        'dispersion_fit': fit.disp_func(mu),
        'dispersion_empirical': table['disp'].values,
    })
