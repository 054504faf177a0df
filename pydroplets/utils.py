"""
Helpers shared by the droplet-processing modules.

All public functions take either an AnnData (barcodes in ``obs``, features in
``var``) or a plain matrix laid out features x barcodes. They are converted
here to a CSR matrix with one row per barcode, which is what the numba kernels
iterate over.
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from statsmodels.stats.multitest import multipletests

from .exceptions import EmptyInput, InvalidParameters

logger = logging.getLogger(__name__)


def as_barcode_matrix(
    data,
    barcodes: Optional[Sequence[str]] = None,
    features: Optional[Sequence[str]] = None,
) -> Tuple[sparse.csr_matrix, pd.Index, pd.Index]:
    """
    Convert a count matrix to CSR with barcodes as rows.

    Parameters
    ----------
    data : AnnData, sparse matrix, ndarray or DataFrame
        AnnData objects are used as-is (obs = barcodes). Anything else is
        expected as features x barcodes.
    barcodes, features : sequence of str, optional
        Identifiers for matrix input. Ignored for AnnData and DataFrames,
        which carry their own names.

    Returns
    -------
    tuple
        (csr matrix, barcode index, feature index). The matrix is a copy;
        the input is never modified.
    """
    if isinstance(data, sc.AnnData):
        matrix = data.X
        barcode_names = pd.Index(data.obs_names)
        feature_names = pd.Index(data.var_names)
    elif isinstance(data, pd.DataFrame):
        matrix = data.to_numpy().T
        barcode_names = pd.Index(data.columns.astype(str))
        feature_names = pd.Index(data.index.astype(str))
    else:
        matrix = data.T if sparse.issparse(data) else np.asarray(data).T
        n_barcodes, n_features = matrix.shape
        barcode_names = pd.Index(
            [str(b) for b in barcodes] if barcodes is not None
            else [f"Barcode_{i}" for i in range(n_barcodes)]
        )
        feature_names = pd.Index(
            [str(f) for f in features] if features is not None
            else [f"Feature_{i}" for i in range(n_features)]
        )

    csr = sparse.csr_matrix(matrix, dtype=np.float64, copy=True)
    if csr.shape != (len(barcode_names), len(feature_names)):
        raise InvalidParameters(
            f"Matrix shape {csr.shape} does not match {len(barcode_names)} barcodes "
            f"x {len(feature_names)} features"
        )
    csr.sum_duplicates()
    csr.sort_indices()

    if csr.nnz and csr.data.min() < 0:
        raise InvalidParameters("Count matrix contains negative values")
    rounded = np.rint(csr.data)
    if not np.array_equal(rounded, csr.data):
        logger.debug("Rounding non-integer counts to the nearest integer")
    csr.data = rounded
    csr.eliminate_zeros()

    return csr, barcode_names, feature_names


def barcode_totals(csr: sparse.csr_matrix) -> np.ndarray:
    """Total count per barcode (row sums) as int64."""
    return np.asarray(csr.sum(axis=1)).ravel().astype(np.int64)


def require_barcodes(csr: sparse.csr_matrix, what: str = "count matrix") -> None:
    if csr.shape[0] == 0:
        raise EmptyInput(f"The {what} contains no barcodes")


def benjamini_hochberg(pvalues: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values; NaN entries stay NaN."""
    pvalues = np.asarray(pvalues, dtype=float)
    adjusted = np.full(pvalues.shape, np.nan)
    valid = ~np.isnan(pvalues)
    if valid.any():
        adjusted[valid] = multipletests(pvalues[valid], method="fdr_bh")[1]
    return adjusted


def validate_profile(profile, names: pd.Index, what: str = "Ambient profile") -> pd.Series:
    """
    Align a user-supplied profile to ``names`` and normalise it to sum to 1.

    A Series is matched by index label, anything else by position.
    """
    if isinstance(profile, pd.Series):
        missing = names.difference(profile.index.astype(str))
        if len(missing) > 0:
            raise InvalidParameters(f"{what} is missing entries for: {list(missing)[:10]}")
        values = profile.set_axis(profile.index.astype(str)).reindex(names).to_numpy(dtype=np.float64)
    else:
        values = np.asarray(profile, dtype=np.float64).ravel()
        if len(values) != len(names):
            raise InvalidParameters(f"{what} has {len(values)} entries for {len(names)} features")

    if np.any(~np.isfinite(values)) or np.any(values < 0):
        raise InvalidParameters(f"{what} must be finite and non-negative")
    if values.sum() <= 0:
        raise InvalidParameters(f"{what} sums to zero")
    return pd.Series(values / values.sum(), index=names, name="ambient")
