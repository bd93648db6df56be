"""
Row-wise and column-wise apply over dense and sparse expression matrices.

``sparse_apply`` runs a function over every row or column of one matrix
in-process. ``par_apply`` splits the matrix into row or column blocks and
fans them out across a process pool. ``es_apply`` applies a function over a
CellDataSet, giving it the sample annotation columns by name.
"""

import importlib
import inspect
from concurrent.futures import ProcessPoolExecutor

import numpy as np
import pandas as pd

from .matrix import wrap_matrix

MARGINS = ('rows', 'columns')


def _check_margin(margin):
    if margin not in MARGINS:
        raise ValueError(f"margin must be one of {MARGINS}, got {margin!r}")
    return margin


def split_indices(n, ncl):
    """Split ``range(n)`` into at most ``ncl`` contiguous index blocks.

    Blocks cover every index exactly once, in order. Returns an empty list
    when ``n == 0``.
    """
    if ncl < 1:
        raise ValueError("number of blocks must be at least 1")
    if n == 0:
        return []
    return np.array_split(np.arange(n), min(ncl, n))


def split_rows(x, ncl):
    """Split a matrix into at most ``ncl`` row blocks."""
    x = wrap_matrix(x)
    return [x.take(rows=idx) for idx in split_indices(x.nrow, ncl)]


def split_cols(x, ncl):
    """Split a matrix into at most ``ncl`` column blocks."""
    x = wrap_matrix(x)
    return [x.take(cols=idx) for idx in split_indices(x.ncol, ncl)]


def sparse_apply(x, margin, fn, convert_to_dense, *args, **kwargs):
    """Apply ``fn`` to every row or column of a matrix, in order.

    Row application transposes the matrix and walks its columns, so the
    same column path serves both margins.

    Parameters
    ----------
    x : ndarray, scipy csc/coo matrix, or ExpressionMatrix
    margin : str
        ``'rows'`` or ``'columns'``.
    fn : callable
        Called as ``fn(slice, *args, **kwargs)``.
    convert_to_dense : bool
        Hand ``fn`` a dense 1-D array. Otherwise sparse matrices yield
        ``(n, 1)`` compressed-column slices.

    Returns
    -------
    list of results, one per row or column.
    """
    x = wrap_matrix(x)
    if _check_margin(margin) == 'rows':
        x = x.T
    return [fn(s, *args, **kwargs) for s in x.iter_columns(dense=convert_to_dense)]


def _load_packages(packages):
    for name in packages:
        try:
            importlib.import_module(name)
        except ImportError as err:
            raise ImportError(f"worker could not load required package "
                              f"'{name}': {err}") from err


def _apply_block(block, margin, fn, convert_to_dense, required_packages, args, kwargs):
    if required_packages:
        _load_packages(required_packages)
    return sparse_apply(block, margin, fn, convert_to_dense, *args, **kwargs)


def _label_results(res, names):
    index = pd.Index(list(names), dtype=object)
    if res and all(np.ndim(r) == 0 for r in res):
        return pd.Series(res, index=index)
    values = np.empty(len(res), dtype=object)
    for k, r in enumerate(res):
        values[k] = r
    return pd.Series(values, index=index, dtype=object)


def par_apply(x, margin, fn, *args, cores=1, convert_to_dense=True,
              required_packages=None, mp_context=None, **kwargs):
    """Apply ``fn`` over the rows or columns of a matrix in a process pool.

    The matrix is split into at most ``cores`` blocks along ``margin``
    (rows into row blocks, columns into column blocks). Each block is sent
    to a worker, which calls ``fn`` on each of its rows or columns in order.

    Parameters
    ----------
    x : ndarray, DataFrame, scipy csc/coo matrix, or ExpressionMatrix
        Matrix to apply over.
    margin : str
        ``'rows'`` or ``'columns'``.
    fn : callable
        Called as ``fn(slice, *args, **kwargs)``. Must be picklable when
        ``cores > 1``.
    cores : int
        Number of worker processes. With 1, blocks run in this process.
    convert_to_dense : bool
        Densify each slice before calling ``fn``.
    required_packages : list of str, optional
        Modules each worker imports before running its block. A module
        that cannot be imported raises ImportError in the caller.
    mp_context : multiprocessing context, optional
        Start method context passed to the process pool.

    Returns
    -------
    Series of results indexed by row or column names, in matrix order.
    """
    x = wrap_matrix(x)
    margin = _check_margin(margin)
    if cores < 1:
        raise ValueError("'cores' must be at least 1")

    if margin == 'rows':
        names = x.row_names
        blocks = split_rows(x, cores)
    else:
        names = x.col_names
        blocks = split_cols(x, cores)

    executor = ProcessPoolExecutor(max_workers=cores, mp_context=mp_context)
    try:
        if cores == 1:
            chunks = [_apply_block(b, margin, fn, convert_to_dense,
                                   required_packages, args, kwargs)
                      for b in blocks]
        else:
            futures = [executor.submit(_apply_block, b, margin, fn, convert_to_dense,
                                       required_packages, args, kwargs)
                       for b in blocks]
            chunks = [f.result() for f in futures]
    finally:
        executor.shutdown(wait=True, cancel_futures=True)

    res = [r for chunk in chunks for r in chunk]
    return _label_results(res, names)


def par_row_apply(x, fn, *args, **kwargs):
    """``par_apply`` over rows."""
    return par_apply(x, 'rows', fn, *args, **kwargs)


def par_col_apply(x, fn, *args, **kwargs):
    """``par_apply`` over columns."""
    return par_apply(x, 'columns', fn, *args, **kwargs)


class SampleScopedFunction:
    """Wrap ``fn`` so it sees the sample annotation columns by name.

    Columns are copied when the wrapper is built. On each call, parameters
    of ``fn`` named after a column receive that column's values, and a
    parameter named ``pdata`` receives a dict of all columns. Arguments the
    caller passes explicitly take precedence.
    """

    def __init__(self, fn, samples):
        self.fn = fn
        self.scope = {str(c): np.asarray(samples[c]).copy() for c in samples.columns}
        self._params = self._keyword_params(fn)

    @staticmethod
    def _keyword_params(fn):
        try:
            sig = inspect.signature(fn)
        except (TypeError, ValueError):
            return []
        kinds = (inspect.Parameter.POSITIONAL_ONLY,
                 inspect.Parameter.POSITIONAL_OR_KEYWORD,
                 inspect.Parameter.KEYWORD_ONLY)
        return [(name, p.kind) for name, p in sig.parameters.items() if p.kind in kinds]

    def __call__(self, x, *args, **kwargs):
        # The slice and explicit positionals fill the leading parameters.
        npos = 1 + len(args)
        for k, (name, kind) in enumerate(self._params):
            if kind == inspect.Parameter.POSITIONAL_ONLY:
                continue
            if kind == inspect.Parameter.POSITIONAL_OR_KEYWORD and k < npos:
                continue
            if name in kwargs:
                continue
            if name == 'pdata':
                kwargs[name] = dict(self.scope)
            elif name in self.scope:
                kwargs[name] = self.scope[name]
        return self.fn(x, *args, **kwargs)


def _names_for(cds):
    return ([str(r) for r in cds['features'].index],
            [str(c) for c in cds['samples'].index])


def smart_es_apply(cds, margin, fn, *args, convert_to_dense=True, **kwargs):
    """Apply ``fn`` over a CellDataSet in a single process.

    Sample annotation columns are bound into ``fn`` as described in
    ``SampleScopedFunction``.
    """
    row_names, col_names = _names_for(cds)
    x = wrap_matrix(cds['exprs'], row_names=row_names, col_names=col_names)
    scoped = SampleScopedFunction(fn, cds['samples'])
    res = sparse_apply(x, margin, scoped, convert_to_dense, *args, **kwargs)
    return _label_results(res, row_names if margin == 'rows' else col_names)


def mc_es_apply(cds, margin, fn, *args, required_packages=None, cores=1,
                convert_to_dense=True, **kwargs):
    """Apply ``fn`` over a CellDataSet across ``cores`` worker processes.

    Sample annotation columns are bound into ``fn`` as described in
    ``SampleScopedFunction``. Packages in ``required_packages`` are imported
    in every worker first.
    """
    row_names, col_names = _names_for(cds)
    x = wrap_matrix(cds['exprs'], row_names=row_names, col_names=col_names)
    scoped = SampleScopedFunction(fn, cds['samples'])
    return par_apply(x, margin, scoped, *args, cores=cores,
                     convert_to_dense=convert_to_dense,
                     required_packages=required_packages, **kwargs)


def es_apply(cds, margin, fn, *args, cores=None, convert_to_dense=True,
             required_packages=None, **kwargs):
    """Apply ``fn`` over the rows or columns of a CellDataSet.

    With ``cores=None`` the single-process path is used; otherwise the
    work is spread over ``cores`` worker processes. Both paths give the
    same results.

    Parameters
    ----------
    cds : CellDataSet
    margin : str
        ``'rows'`` (features) or ``'columns'`` (samples).
    fn : callable
        Called as ``fn(slice, *args, **kwargs)``, with sample annotation
        columns bound to matching parameter names.
    cores : int, optional
        Number of worker processes.
    convert_to_dense : bool
        Densify each slice before calling ``fn``.
    required_packages : list of str, optional
        Modules each worker must import (parallel path only).

    Returns
    -------
    Series of results indexed by feature or sample names.
    """
    _check_margin(margin)
    if cores is None:
        return smart_es_apply(cds, margin, fn, *args,
                              convert_to_dense=convert_to_dense, **kwargs)
    return mc_es_apply(cds, margin, fn, *args, required_packages=required_packages,
                       cores=cores, convert_to_dense=convert_to_dense, **kwargs)
