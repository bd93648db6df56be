"""
CellDataSet construction, validation, and accessors.
"""

import numpy as np
import pandas as pd
import scipy.sparse as sp
import warnings

from .classes import CellDataSet, DispersionFit
from .matrix import (ExpressionMatrix, SPARSE_FORMATS, is_sparse_matrix,
                     wrap_matrix)

EXPRESSION_FAMILIES = ('negbinomial.size', 'negbinomial', 'tobit',
                       'gaussianff', 'uninormal', 'binomialff')


def _gene_short_name_warning():
    warnings.warn("feature_data must contain a column verbatim named "
                  "'gene_short_name' for certain functions", stacklevel=3)


def new_cell_data_set(cell_data, pheno_data=None, feature_data=None,
                      lower_detection_limit=0.1,
                      expression_family='negbinomial.size'):
    """Construct a CellDataSet from components.

    Parameters
    ----------
    cell_data : ndarray, DataFrame, or scipy.sparse csc/coo matrix
        Expression matrix (features x samples).
    pheno_data : DataFrame, optional
        Sample (cell) annotation, one row per column of ``cell_data``.
    feature_data : DataFrame, optional
        Feature (gene) annotation, one row per row of ``cell_data``.
        Should carry a ``gene_short_name`` column.
    lower_detection_limit : float
        Minimum expression level that constitutes true expression.
    expression_family : str
        Response distribution of the expression values. One of
        ``EXPRESSION_FAMILIES``.

    Returns
    -------
    CellDataSet
    """
    if feature_data is None or 'gene_short_name' not in feature_data.columns:
        _gene_short_name_warning()

    if sp.issparse(cell_data) and not is_sparse_matrix(cell_data):
        raise TypeError(f"sparse cell_data must be one of the formats "
                        f"{SPARSE_FORMATS}, got '{cell_data.format}'")
    if not (is_sparse_matrix(cell_data)
            or isinstance(cell_data, (np.ndarray, pd.DataFrame, ExpressionMatrix))):
        raise TypeError("argument cell_data must be a matrix (either sparse "
                        "csc/coo from scipy.sparse or dense)")

    if expression_family not in EXPRESSION_FAMILIES:
        raise ValueError(f"expression_family must be one of {EXPRESSION_FAMILIES}")

    row_names = col_names = None
    if feature_data is not None:
        row_names = [str(r) for r in feature_data.index]
    if pheno_data is not None:
        col_names = [str(c) for c in pheno_data.index]

    try:
        m = wrap_matrix(cell_data)
    except ValueError as err:
        raise ValueError(f"invalid cell_data: {err}") from err
    if m.nrow == 0 or m.ncol == 0:
        raise ValueError("cell_data must have at least one row and one column")

    if feature_data is not None and len(feature_data) != m.nrow:
        raise ValueError("Number of rows in 'feature_data' must equal number "
                         "of rows in 'cell_data'")
    if pheno_data is not None and len(pheno_data) != m.ncol:
        raise ValueError("Number of rows in 'pheno_data' must equal number "
                         "of columns in 'cell_data'")

    if row_names is None:
        row_names = list(m.row_names)
    if col_names is None:
        col_names = list(m.col_names)

    if pheno_data is None:
        pheno_data = pd.DataFrame(index=col_names)
    else:
        pheno_data = pd.DataFrame(pheno_data).copy()
        pheno_data.index = col_names
    if feature_data is None:
        feature_data = pd.DataFrame(index=row_names)
    else:
        feature_data = pd.DataFrame(feature_data).copy()
        feature_data.index = row_names

    pheno_data['Size_Factor'] = np.full(m.ncol, np.nan)

    cds = CellDataSet()
    cds['exprs'] = m.values if m.is_sparse else m.values.copy()
    cds['samples'] = pheno_data
    cds['features'] = feature_data
    cds['lower_detection_limit'] = float(lower_detection_limit)
    cds['expression_family'] = expression_family
    cds['disp_fit_info'] = {}

    return valid_cell_data_set(cds)


def valid_cell_data_set(cds):
    """Check the structural invariants of a CellDataSet and fill defaults."""
    if 'exprs' not in cds or cds['exprs'] is None:
        raise ValueError("No expression matrix")
    nrow, ncol = cds['exprs'].shape
    if 'samples' not in cds:
        cds['samples'] = pd.DataFrame(index=list(wrap_matrix(cds['exprs']).col_names))
    if 'features' not in cds:
        cds['features'] = pd.DataFrame(index=list(wrap_matrix(cds['exprs']).row_names))
    if len(cds['samples']) != ncol:
        raise ValueError("sample annotation must have one row per column of exprs")
    if len(cds['features']) != nrow:
        raise ValueError("feature annotation must have one row per row of exprs")
    if 'Size_Factor' not in cds['samples'].columns:
        cds['samples']['Size_Factor'] = np.full(ncol, np.nan)
    cds.setdefault('lower_detection_limit', 0.1)
    cds.setdefault('expression_family', 'negbinomial.size')
    cds.setdefault('disp_fit_info', {})
    return cds


def exprs(cds):
    """Extract the raw expression matrix from a CellDataSet."""
    return cds['exprs']


def p_data(cds):
    """Sample annotation table."""
    return cds['samples']


def f_data(cds):
    """Feature annotation table."""
    return cds['features']


def get_expression_matrix(cds):
    """Expression matrix wrapped with feature and sample names."""
    return wrap_matrix(cds['exprs'],
                       row_names=[str(r) for r in cds['features'].index],
                       col_names=[str(c) for c in cds['samples'].index])


def size_factors(cds):
    """Per-sample size factors (NaN until estimated)."""
    return cds['samples']['Size_Factor'].values.astype(np.float64)


def get_dispersion_fit(cds, name='blind'):
    """Return the cached dispersion fit called ``name``, or None."""
    return cds.get('disp_fit_info', {}).get(name)


def set_dispersion_fit(cds, fit, name='blind'):
    """Store a dispersion fit in the CellDataSet's fit cache."""
    if not isinstance(fit, DispersionFit):
        raise TypeError("fit must be a DispersionFit")
    cds.setdefault('disp_fit_info', {})[name] = fit
    return cds


def detect_genes(cds, min_expr=None):
    """Count detectably expressed features and samples.

    Adds ``num_cells_expressed`` to the feature table (samples per feature
    with expression above ``min_expr``) and ``num_genes_expressed`` to the
    sample table (features per sample above ``min_expr``).

    Parameters
    ----------
    cds : CellDataSet
    min_expr : float, optional
        Expression threshold. Defaults to the data set's
        ``lower_detection_limit``.

    Returns
    -------
    CellDataSet
    """
    if min_expr is None:
        min_expr = cds['lower_detection_limit']
    m = wrap_matrix(cds['exprs'])
    cds['features']['num_cells_expressed'] = m.count_above(min_expr, axis=1)
    cds['samples']['num_genes_expressed'] = m.count_above(min_expr, axis=0)
    return cds
