"""
scExpress: core data structures and normalization for single-cell
expression analysis.

A CellDataSet container over dense or sparse expression matrices,
row/column apply that can fan out across worker processes, size factor
estimation, and dispersion modelling.
"""

__version__ = "0.1.0"

# --- Classes ---
from .classes import CellDataSet, DispersionFit

# --- Matrix representations ---
from .matrix import (
    ExpressionMatrix,
    DenseMatrix,
    SparseMatrix,
    TripletMatrix,
    is_sparse_matrix,
    wrap_matrix,
    as_triplet,
    as_sparse_matrix,
)

# --- CellDataSet construction & accessors ---
from .cell_data_set import (
    new_cell_data_set,
    valid_cell_data_set,
    exprs,
    p_data,
    f_data,
    get_expression_matrix,
    size_factors,
    get_dispersion_fit,
    set_dispersion_fit,
    detect_genes,
)

# --- Apply ---
from .apply import (
    split_indices,
    split_rows,
    split_cols,
    sparse_apply,
    par_apply,
    par_row_apply,
    par_col_apply,
    SampleScopedFunction,
    smart_es_apply,
    mc_es_apply,
    es_apply,
)

# --- Size factors ---
from .normalization import (
    estimate_size_factors,
    estimate_size_factors_for_matrix,
    estimate_t,
)

# --- Dispersion ---
from .dispersion import (
    estimate_dispersions,
    parametric_dispersion_fit,
    dispersion_table,
    ParametricDispersionFunction,
)
