"""
Matrix representations for scExpress.

Dense and sparse expression matrices behind one interface, so that row-wise
and column-wise statistics run identically over either, plus conversion to
and from triplet form.

Only two sparse kinds are recognized: compressed-column (csc) and triplet
(coo). Any other scipy sparse format is rejected.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
import scipy.sparse as sp

SPARSE_FORMATS = ('csc', 'coo')


def is_sparse_matrix(x):
    """True if x is a recognized sparse matrix (csc or coo)."""
    if isinstance(x, ExpressionMatrix):
        return x.is_sparse
    return sp.issparse(x) and x.format in SPARSE_FORMATS


def _default_row_names(n):
    return [str(i + 1) for i in range(n)]


def _default_col_names(n):
    return [f"Cell{i + 1}" for i in range(n)]


def _check_names(names, n, what):
    names = np.asarray(list(names), dtype=object)
    if len(names) != n:
        raise ValueError(f"length of {what} names ({len(names)}) must equal "
                         f"number of {what}s ({n})")
    return names


class ExpressionMatrix:
    """A features x samples matrix with row and column names.

    Subclasses provide slicing and reductions for one concrete
    representation; algorithms should only use this interface.
    """

    is_sparse = False

    def __init__(self, values, row_names=None, col_names=None):
        self.values = values
        nr, nc = values.shape
        self.row_names = _check_names(
            _default_row_names(nr) if row_names is None else row_names, nr, 'row')
        self.col_names = _check_names(
            _default_col_names(nc) if col_names is None else col_names, nc, 'column')

    @property
    def shape(self):
        return self.values.shape

    @property
    def nrow(self):
        return self.values.shape[0]

    @property
    def ncol(self):
        return self.values.shape[1]

    @property
    def T(self):
        return self.transpose()

    def __repr__(self):
        kind = 'sparse' if self.is_sparse else 'dense'
        return f"{type(self).__name__} ({kind}) with {self.nrow} rows and {self.ncol} columns"

    def iter_rows(self, dense=True):
        for i in range(self.nrow):
            yield self.row(i, dense=dense)

    def iter_columns(self, dense=True):
        for j in range(self.ncol):
            yield self.column(j, dense=dense)

    def _take_names(self, rows, cols):
        rn = self.row_names if rows is None else self.row_names[rows]
        cn = self.col_names if cols is None else self.col_names[cols]
        return rn, cn

    def row(self, i, dense=True):
        raise NotImplementedError

    def column(self, j, dense=True):
        raise NotImplementedError

    def transpose(self):
        raise NotImplementedError

    def take(self, rows=None, cols=None):
        raise NotImplementedError

    def row_sums(self):
        raise NotImplementedError

    def col_sums(self):
        raise NotImplementedError

    def round(self):
        raise NotImplementedError

    def count_above(self, threshold, axis):
        raise NotImplementedError

    def toarray(self):
        raise NotImplementedError

    def to_triplet(self):
        raise TypeError("only sparse matrices can be converted to triplet form")


class DenseMatrix(ExpressionMatrix):
    """Dense matrix backed by a 2-D float ndarray."""

    def __init__(self, values, row_names=None, col_names=None):
        values = np.asarray(values, dtype=np.float64)
        if values.ndim != 2:
            raise ValueError("expression matrix must be 2-dimensional")
        super().__init__(values, row_names, col_names)

    def row(self, i, dense=True):
        return self.values[i, :].copy()

    def column(self, j, dense=True):
        return self.values[:, j].copy()

    def transpose(self):
        return DenseMatrix(self.values.T, self.col_names, self.row_names)

    def take(self, rows=None, cols=None):
        v = self.values
        if rows is not None:
            v = v[rows, :]
        if cols is not None:
            v = v[:, cols]
        rn, cn = self._take_names(rows, cols)
        return DenseMatrix(v, rn, cn)

    def row_sums(self):
        return self.values.sum(axis=1)

    def col_sums(self):
        return self.values.sum(axis=0)

    def round(self):
        return DenseMatrix(np.round(self.values), self.row_names, self.col_names)

    def count_above(self, threshold, axis):
        return np.sum(self.values > threshold, axis=axis)

    def toarray(self):
        return self.values.copy()


class SparseMatrix(ExpressionMatrix):
    """Sparse matrix in compressed-column (csc) or triplet (coo) form.

    Slicing always goes through a compressed-column copy; ``kind`` records
    the representation the matrix was created with.
    """

    is_sparse = True

    def __init__(self, values, row_names=None, col_names=None):
        if not (sp.issparse(values) and values.format in SPARSE_FORMATS):
            fmt = getattr(values, 'format', type(values).__name__)
            raise TypeError(f"unsupported sparse matrix format '{fmt}'; "
                            f"expected one of {SPARSE_FORMATS}")
        values = values.astype(np.float64)
        super().__init__(values, row_names, col_names)
        self.kind = values.format
        self._csc = values if self.kind == 'csc' else values.tocsc()

    def column(self, j, dense=True):
        col = self._csc[:, [j]]
        if dense:
            return col.toarray().ravel()
        return col

    def row(self, i, dense=True):
        r = self._csc[[i], :]
        if dense:
            return r.toarray().ravel()
        return r.T.tocsc()

    def transpose(self):
        return SparseMatrix(self._csc.T.tocsc(), self.col_names, self.row_names)

    def take(self, rows=None, cols=None):
        m = self._csc
        if rows is not None:
            m = m[rows, :]
        if cols is not None:
            m = m[:, cols]
        rn, cn = self._take_names(rows, cols)
        return SparseMatrix(sp.csc_matrix(m), rn, cn)

    def row_sums(self):
        return np.asarray(self._csc.sum(axis=1)).ravel()

    def col_sums(self):
        return np.asarray(self._csc.sum(axis=0)).ravel()

    def round(self):
        m = self._csc.copy()
        m.data = np.round(m.data)
        return SparseMatrix(m, self.row_names, self.col_names)

    def count_above(self, threshold, axis):
        if threshold >= 0:
            m = self._csc.copy()
            m.data = (m.data > threshold).astype(np.float64)
            return np.asarray(m.sum(axis=axis)).ravel().astype(np.int64)
        return np.sum(self._csc.toarray() > threshold, axis=axis)

    def toarray(self):
        return self._csc.toarray()

    def to_triplet(self):
        coo = self._csc.tocoo()
        return TripletMatrix(
            i=np.asarray(coo.row, dtype=np.int64),
            j=np.asarray(coo.col, dtype=np.int64),
            v=np.asarray(coo.data, dtype=np.float64),
            nrow=self.nrow, ncol=self.ncol,
            dimnames=(list(self.row_names), list(self.col_names)),
        )


def wrap_matrix(x, row_names=None, col_names=None):
    """Wrap a raw matrix in the matching ExpressionMatrix variant.

    Parameters
    ----------
    x : ndarray, DataFrame, scipy csc/coo matrix, or ExpressionMatrix
        The matrix to wrap. A DataFrame donates its index and columns
        as names unless names are given explicitly.
    row_names, col_names : sequence of str, optional
        Axis names. Default to ``"1".."n"`` and ``"Cell1".."CellN"``.

    Returns
    -------
    DenseMatrix or SparseMatrix
    """
    if isinstance(x, ExpressionMatrix):
        if row_names is None and col_names is None:
            return x
        return type(x)(x.values, row_names if row_names is not None else x.row_names,
                       col_names if col_names is not None else x.col_names)
    if sp.issparse(x):
        return SparseMatrix(x, row_names, col_names)
    if isinstance(x, pd.DataFrame):
        if row_names is None:
            row_names = [str(r) for r in x.index]
        if col_names is None:
            col_names = [str(c) for c in x.columns]
        return DenseMatrix(x.to_numpy(dtype=np.float64), row_names, col_names)
    if isinstance(x, np.ndarray) or isinstance(x, (list, tuple)):
        return DenseMatrix(x, row_names, col_names)
    raise TypeError("matrix must be dense (ndarray or DataFrame) or a "
                    "csc/coo scipy sparse matrix")


@dataclass(eq=False)
class TripletMatrix:
    """Sparse matrix as parallel (row index, column index, value) arrays.

    Indices are 0-based. ``dimnames`` is ``(row_names, col_names)`` or None.
    """

    i: np.ndarray
    j: np.ndarray
    v: np.ndarray
    nrow: int
    ncol: int
    dimnames: tuple = None

    @property
    def shape(self):
        return (self.nrow, self.ncol)

    def row_sums(self):
        return np.bincount(self.i, weights=self.v, minlength=self.nrow).astype(np.float64)

    def col_sums(self):
        return np.bincount(self.j, weights=self.v, minlength=self.ncol).astype(np.float64)

    def row_apply(self, fn):
        """Apply fn to each row as a dense vector."""
        return _grouped_apply(self.i, self.j, self.v, self.nrow, self.ncol, fn)

    def col_apply(self, fn):
        """Apply fn to each column as a dense vector."""
        return _grouped_apply(self.j, self.i, self.v, self.ncol, self.nrow, fn)

    def transpose(self):
        dimnames = None
        if self.dimnames is not None:
            dimnames = (self.dimnames[1], self.dimnames[0])
        return TripletMatrix(self.j.copy(), self.i.copy(), self.v.copy(),
                             self.ncol, self.nrow, dimnames)


def _grouped_apply(key, other, v, nkey, length, fn):
    order = np.lexsort((other, key))
    key, other, v = key[order], other[order], v[order]
    bounds = np.searchsorted(key, np.arange(nkey + 1))
    out = []
    for k in range(nkey):
        lo, hi = bounds[k], bounds[k + 1]
        dense = np.zeros(length)
        dense[other[lo:hi]] = v[lo:hi]
        out.append(fn(dense))
    return np.asarray(out)


def as_triplet(x):
    """Convert a sparse matrix to a TripletMatrix."""
    if not is_sparse_matrix(x):
        raise TypeError("only csc/coo sparse matrices can be converted to triplet form")
    return wrap_matrix(x).to_triplet()


def as_sparse_matrix(triplet):
    """Convert a TripletMatrix back to a compressed-column SparseMatrix."""
    m = sp.coo_matrix(
        (np.asarray(triplet.v, dtype=np.float64),
         (np.asarray(triplet.i, dtype=np.int64), np.asarray(triplet.j, dtype=np.int64))),
        shape=(triplet.nrow, triplet.ncol),
    ).tocsc()
    row_names = col_names = None
    if triplet.dimnames is not None:
        row_names, col_names = triplet.dimnames
    return SparseMatrix(m, row_names, col_names)
