"""
Core data classes for scExpress.

CellDataSet is a dict with attribute access, subsetting and display;
DispersionFit is the record stored in its dispersion fit cache.
"""

from copy import deepcopy
from dataclasses import dataclass
from typing import Callable

import numpy as np
import pandas as pd

from .matrix import wrap_matrix


class _ScBase(dict):
    """Base class providing dict-like access and display."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __setattr__(self, name, value):
        self[name] = value

    def __delattr__(self, name):
        try:
            del self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    @property
    def shape(self):
        if 'exprs' in self:
            return self['exprs'].shape
        return None

    @property
    def nrow(self):
        return self.shape[0]

    @property
    def ncol(self):
        return self.shape[1]

    def __repr__(self):
        cls = type(self).__name__
        components = list(self.keys())
        s = self.shape
        if s is not None:
            return f"{cls} with {s[0]} features and {s[1]} samples\nComponents: {', '.join(components)}"
        return f"{cls}\nComponents: {', '.join(components)}"

    def _copy(self):
        """Deep copy of the object."""
        return deepcopy(self)


def _resolve_index(idx, names):
    """Resolve index to integer array. Supports bool, int, str, slice."""
    if idx is None:
        return None
    if isinstance(idx, slice):
        return np.arange(len(names))[idx]
    idx = np.atleast_1d(idx)
    if idx.dtype == bool:
        if len(idx) != len(names):
            raise IndexError("boolean index has the wrong length")
        return np.where(idx)[0]
    if idx.dtype.kind in ('U', 'S', 'O'):
        names_arr = np.asarray(names)
        result = []
        for name in idx:
            matches = np.where(names_arr == name)[0]
            if len(matches) == 0:
                raise KeyError(f"Name '{name}' not found")
            result.append(matches[0])
        return np.array(result, dtype=np.int64)
    return idx.astype(np.int64)


class CellDataSet(_ScBase):
    """Single-cell expression data set.

    Attributes
    ----------
    exprs : ndarray or scipy.sparse csc/coo matrix
        Expression matrix (features x samples).
    samples : DataFrame
        Sample (cell) annotation, one row per column of ``exprs``.
        Always carries a ``Size_Factor`` column.
    features : DataFrame
        Feature (gene) annotation, one row per row of ``exprs``.
    lower_detection_limit : float
    expression_family : str
    disp_fit_info : dict of str -> DispersionFit
    """

    def __getitem__(self, key):
        if isinstance(key, str):
            return super().__getitem__(key)
        if not (isinstance(key, tuple) and len(key) == 2):
            raise IndexError("Two subscripts required")
        i, j = key

        i_idx = _resolve_index(i, list(self['features'].index))
        j_idx = _resolve_index(j, list(self['samples'].index))

        out = self._copy()
        m = wrap_matrix(out['exprs']).take(rows=i_idx, cols=j_idx)
        if m.is_sparse:
            out['exprs'] = m.values
        else:
            out['exprs'] = m.values.copy()
        if i_idx is not None:
            out['features'] = out['features'].iloc[i_idx].copy()
        if j_idx is not None:
            out['samples'] = out['samples'].iloc[j_idx].copy()
        return out

    def head(self, n=5):
        """Show first n features as a DataFrame."""
        m = wrap_matrix(self['exprs']).take(rows=np.arange(min(n, self.nrow)))
        return pd.DataFrame(m.toarray(), index=list(self['features'].index[:m.nrow]),
                            columns=list(self['samples'].index))


@dataclass
class DispersionFit:
    """A fitted mean-dispersion relationship.

    ``disp_table`` holds per-feature ``gene_id``, ``mu`` and ``disp``;
    ``disp_func`` maps mean expression to fitted dispersion.
    """

    disp_table: pd.DataFrame
    disp_func: Callable
