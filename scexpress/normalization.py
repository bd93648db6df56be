"""
Size factor estimation for scExpress.

Per-sample scaling factors from a raw count matrix, by one of six methods,
with separate numeric paths for sparse and dense matrices. Sparse input is
reduced through its triplet form.
"""

import math

import numpy as np
from numba import njit
from scipy import stats

from .matrix import as_triplet, is_sparse_matrix, wrap_matrix

SIZE_FACTOR_METHODS = ('mean-geometric-mean-total', 'geometric-mean-total',
                       'median-geometric-mean', 'weighted-median',
                       'median', 'mode')


def estimate_size_factors(cds, locfunc=np.median, round_exprs=True,
                          method='mean-geometric-mean-total'):
    """Estimate size factors for each sample of a CellDataSet.

    The factors are written to ``cds['samples']['Size_Factor']``.

    Parameters
    ----------
    cds : CellDataSet
    locfunc : callable
        Location function used by the median-based methods.
    round_exprs : bool
        Round expression values to integers first.
    method : str
        One of ``SIZE_FACTOR_METHODS``.

    Returns
    -------
    CellDataSet
    """
    sfs = estimate_size_factors_for_matrix(cds['exprs'], locfunc=locfunc,
                                           round_exprs=round_exprs, method=method)
    cds['samples']['Size_Factor'] = sfs
    return cds


def estimate_size_factors_for_matrix(counts, locfunc=np.median, round_exprs=True,
                                     method='mean-geometric-mean-total'):
    """Calculate a size factor for each column of a count matrix.

    Parameters
    ----------
    counts : ndarray, DataFrame, scipy csc/coo matrix, or ExpressionMatrix
        Count matrix (features x samples): read counts, FPKM values or
        transcript counts.
    locfunc : callable
        Location function used to find the representative value of a
        vector, e.g. ``np.median``.
    round_exprs : bool
        Round expression values to the nearest integer before computing
        any statistic.
    method : str
        ``'mean-geometric-mean-total'`` (default), ``'geometric-mean-total'``,
        ``'median-geometric-mean'``, ``'weighted-median'``, ``'median'``
        or ``'mode'``. The last two are only available for dense matrices.

    Returns
    -------
    ndarray of size factors, one per column. Undefined factors are 1.
    """
    if method not in SIZE_FACTOR_METHODS:
        raise ValueError(f"method must be one of {SIZE_FACTOR_METHODS}")
    m = wrap_matrix(counts)
    if m.nrow == 0 or m.ncol == 0:
        raise ValueError("count matrix must have at least one row and one column")
    if is_sparse_matrix(m):
        return _estimate_size_factors_for_sparse_matrix(
            m, locfunc=locfunc, round_exprs=round_exprs, method=method)
    return _estimate_size_factors_for_dense_matrix(
        m.values, locfunc=locfunc, round_exprs=round_exprs, method=method)


def _finalize(sfs):
    sfs = np.asarray(sfs, dtype=np.float64)
    sfs[np.isnan(sfs)] = 1.0
    return sfs


def _exp_location(norm_cnts, locfunc):
    norm_cnts = norm_cnts[np.isfinite(norm_cnts)]
    if norm_cnts.size == 0:
        return np.nan
    return np.exp(locfunc(norm_cnts))


def _exp_mean(norm_cnts):
    norm_cnts = norm_cnts[np.isfinite(norm_cnts)]
    if norm_cnts.size == 0:
        return np.nan
    return np.exp(np.mean(norm_cnts))


@njit(cache=True)
def _triplet_weighted_log_means(i, j, v, weights, log_medians, ncol):
    """Mean of finite ``weights[i] * (log(v) - log_medians[i])`` per column."""
    sums = np.zeros(ncol)
    n = np.zeros(ncol, dtype=np.int64)
    for k in range(len(v)):
        if v[k] <= 0.0:
            continue
        r = i[k]
        val = weights[r] * (math.log(v[k]) - log_medians[r])
        if math.isfinite(val):
            sums[j[k]] += val
            n[j[k]] += 1
    out = np.full(ncol, np.nan)
    for c in range(ncol):
        if n[c] > 0:
            out[c] = sums[c] / n[c]
    return out


def _estimate_size_factors_for_sparse_matrix(counts, locfunc=np.median,
                                             round_exprs=True,
                                             method='mean-geometric-mean-total'):
    """Size factors for a sparse matrix, via its triplet form."""
    if method in ('median', 'mode'):
        raise NotImplementedError(
            f"method '{method}' not yet supported for sparse matrices")

    cm = counts.round() if round_exprs else counts
    cm = as_triplet(cm)

    with np.errstate(divide='ignore', invalid='ignore'):
        if method == 'weighted-median':
            log_medians = np.log(cm.row_apply(locfunc).astype(np.float64))
            num_pos = np.bincount(cm.i, weights=(cm.v > 0).astype(np.float64),
                                  minlength=cm.nrow)
            weights = num_pos / cm.ncol
            sfs = np.exp(_triplet_weighted_log_means(
                cm.i, cm.j, cm.v, weights, log_medians, cm.ncol))
        elif method == 'median-geometric-mean':
            log_geo_means = cm.row_apply(lambda x: np.mean(np.log(x)))
            sfs = cm.col_apply(
                lambda cnts: _exp_location(np.log(cnts) - log_geo_means, locfunc))
        elif method == 'geometric-mean-total':
            cell_total = cm.col_sums()
            sfs = np.log(cell_total) / np.mean(np.log(cell_total))
        else:
            cell_total = cm.col_sums()
            sfs = cell_total / np.exp(np.mean(np.log(cell_total)))

    return _finalize(sfs)


def _estimate_size_factors_for_dense_matrix(counts, locfunc=np.median,
                                            round_exprs=True,
                                            method='mean-geometric-mean-total'):
    """Size factors for a dense matrix."""
    cm = np.asarray(counts, dtype=np.float64)
    if round_exprs:
        cm = np.round(cm)

    with np.errstate(divide='ignore', invalid='ignore'):
        if method == 'weighted-median':
            log_medians = np.log(np.apply_along_axis(locfunc, 1, cm).astype(np.float64))
            weights = np.sum(cm > 0, axis=1) / cm.shape[1]
            norm = weights[:, None] * (np.log(cm) - log_medians[:, None])
            sfs = np.array([_exp_mean(norm[:, j]) for j in range(cm.shape[1])])
        elif method == 'median-geometric-mean':
            log_geo_means = np.mean(np.log(cm), axis=1)
            sfs = np.array([_exp_location(np.log(cm[:, j]) - log_geo_means, locfunc)
                            for j in range(cm.shape[1])])
        elif method == 'median':
            row_median = np.median(cm, axis=1)
            sfs = np.median(cm - row_median[:, None], axis=0)
        elif method == 'mode':
            sfs = estimate_t(cm)
        elif method == 'geometric-mean-total':
            cell_total = cm.sum(axis=0)
            sfs = np.log(cell_total) / np.mean(np.log(cell_total))
        else:
            cell_total = cm.sum(axis=0)
            sfs = cell_total / np.exp(np.mean(np.log(cell_total)))

    return _finalize(sfs)


def _bw_nrd0(x):
    """Silverman's rule-of-thumb bandwidth."""
    hi = np.std(x, ddof=1)
    q75, q25 = np.percentile(x, [75, 25])
    lo = min(hi, (q75 - q25) / 1.34)
    if not lo > 0:
        lo = hi or abs(x[0]) or 1.0
    return 0.9 * lo * len(x) ** -0.2


def _dmode(x, n=512):
    """Location(s) of the maximum of a Gaussian kernel density estimate."""
    x = np.asarray(x, dtype=np.float64)
    if len(x) < 2:
        return np.array([0.0])
    bw = _bw_nrd0(x)
    grid = np.linspace(x.min() - 3 * bw, x.max() + 3 * bw, n)
    dens = stats.norm.pdf(grid[:, None], loc=x[None, :], scale=bw).mean(axis=1)
    return grid[dens == dens.max()]


def estimate_t(relative_expr_matrix, relative_expr_thresh=0.1):
    """Estimate the most frequent expression value of each column.

    For each column, takes ``log10`` of the values above
    ``relative_expr_thresh`` and returns ``10 ** mode`` of their kernel
    density. Columns with fewer than two such values get 1.

    Parameters
    ----------
    relative_expr_matrix : array-like
        Dense matrix of relative expression values (features x samples).
    relative_expr_thresh : float
        Values at or below this threshold are ignored.

    Returns
    -------
    ndarray, one value per column.
    """
    x = np.asarray(relative_expr_matrix, dtype=np.float64)
    out = np.empty(x.shape[1])
    for j in range(x.shape[1]):
        col = x[:, j]
        vals = col[col > relative_expr_thresh]
        out[j] = 10 ** np.mean(_dmode(np.log10(vals)))
    return out
