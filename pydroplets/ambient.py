"""
Ambient RNA profile estimation.

The ambient profile is the expected composition of an empty droplet: the
per-feature counts pooled over low-count barcodes, normalised to proportions.
The same subset is used to fit the Dirichlet-multinomial overdispersion that
the EmptyDrops test simulates from.
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.optimize import minimize_scalar
from scipy.special import gammaln

from .exceptions import InsufficientAmbientData, InvalidParameters
from .utils import as_barcode_matrix, barcode_totals

logger = logging.getLogger(__name__)

DEFAULT_LOWER = 100
ALPHA_INTERVAL = (0.01, 10000.0)


def ambient_mask(
    totals: np.ndarray,
    lower: int = DEFAULT_LOWER,
    by_rank: Optional[int] = None,
) -> Tuple[np.ndarray, int]:
    """
    Select the ambient-defining barcodes.

    Parameters
    ----------
    totals : array-like
        Total count per barcode
    lower : int
        Barcodes with ``0 < total <= lower`` define the ambient profile
    by_rank : int, optional
        Assume at most ``by_rank`` barcodes contain cells. ``lower`` is then
        replaced by the total of the ``by_rank + 1``-th highest barcode, so
        ties at the boundary fall into the ambient set.

    Returns
    -------
    tuple
        (boolean mask over barcodes, effective lower threshold)
    """
    totals = np.asarray(totals)
    if by_rank is not None:
        if by_rank <= 0:
            raise InvalidParameters(f"by_rank must be positive, got {by_rank}")
        ordered = np.sort(totals)[::-1]
        effective_lower = int(ordered[by_rank]) if by_rank < len(ordered) else 0
    else:
        if lower is None or lower < 0:
            raise InvalidParameters(f"lower must be a non-negative integer, got {lower}")
        effective_lower = int(lower)

    mask = (totals > 0) & (totals <= effective_lower)
    return mask, effective_lower


def ambient_proportions(gene_sums: np.ndarray, good_turing: bool = True) -> np.ndarray:
    """
    Normalise pooled ambient counts to proportions.

    With ``good_turing`` the features that were never observed receive a
    pseudo-probability of ``1 / total`` split between them, and the observed
    proportions are shrunk by the same mass, so every entry is positive.
    """
    gene_sums = np.asarray(gene_sums, dtype=np.float64).ravel()
    total_obs_counts = gene_sums.sum()
    if total_obs_counts <= 0:
        raise InsufficientAmbientData("Ambient barcodes contain no counts")

    ambient_props = gene_sums / total_obs_counts

    if good_turing:
        still_zero = ambient_props <= 0
        if np.any(still_zero):
            pseudo_prob = 1.0 / total_obs_counts
            n_zero = np.sum(still_zero)
            ambient_props[still_zero] = pseudo_prob / n_zero
            ambient_props[~still_zero] = ambient_props[~still_zero] * (1 - pseudo_prob)

    return ambient_props


def estimate_ambient(
    data,
    lower: int = DEFAULT_LOWER,
    by_rank: Optional[int] = None,
    min_barcodes: int = 1,
    good_turing: bool = True,
    barcodes: Optional[Sequence[str]] = None,
    features: Optional[Sequence[str]] = None,
) -> pd.Series:
    """
    Estimate the ambient profile from low-count barcodes.

    Parameters
    ----------
    data : AnnData or matrix
        Counts; matrices are features x barcodes
    lower : int
        Upper bound on the total count of ambient barcodes
    by_rank : int, optional
        Exclude the top ``by_rank`` barcodes instead of using ``lower``
    min_barcodes : int
        Minimum number of qualifying barcodes
    good_turing : bool
        Give unobserved features a small positive proportion

    Returns
    -------
    pd.Series
        Proportions indexed by feature, summing to 1
    """
    csr, _, feature_names = as_barcode_matrix(data, barcodes, features)
    totals = barcode_totals(csr)
    mask, effective_lower = ambient_mask(totals, lower, by_rank)

    n_ambient = int(mask.sum())
    if n_ambient < max(min_barcodes, 1):
        raise InsufficientAmbientData(
            f"Only {n_ambient} barcodes have 0 < total <= {effective_lower} "
            f"(at least {max(min_barcodes, 1)} required)"
        )

    gene_sums = np.asarray(csr[mask].sum(axis=0)).ravel()
    props = ambient_proportions(gene_sums, good_turing=good_turing)
    logger.debug("Ambient profile from %d barcodes, %d counts", n_ambient, int(gene_sums.sum()))

    return pd.Series(props, index=feature_names, name="ambient")


def estimate_overdispersion(
    matrix,
    ambient: np.ndarray,
    interval: Tuple[float, float] = ALPHA_INTERVAL,
) -> float:
    """
    Estimate the Dirichlet-multinomial concentration ``alpha``.

    Maximises the Dirichlet-multinomial likelihood of the ambient barcodes,
    whose expected proportions are fixed at ``ambient``. Smaller values mean
    more overdispersion; an optimum on the upper bound means the counts are
    no more variable than a multinomial and ``np.inf`` is returned.

    Parameters
    ----------
    matrix : sparse matrix
        Ambient barcodes x features
    ambient : array-like
        Ambient proportions for the same features
    interval : tuple
        Search bounds for alpha

    Returns
    -------
    float
        The estimated alpha, or ``np.inf``
    """
    csr = sparse.csr_matrix(matrix)
    prop = np.asarray(ambient, dtype=np.float64)
    totals = barcode_totals(csr).astype(np.float64)
    totals = totals[totals > 0]
    if len(totals) == 0:
        raise InsufficientAmbientData("No ambient counts to estimate overdispersion from")

    counts = csr.data
    gene_idx = csr.indices

    def loglik(log_alpha):
        alpha = 10.0 ** log_alpha
        prop_alpha = prop[gene_idx] * alpha
        return (gammaln(alpha) * len(totals)
                - np.sum(gammaln(totals + alpha))
                + np.sum(gammaln(counts + prop_alpha))
                - np.sum(gammaln(prop_alpha)))

    lo, hi = np.log10(interval[0]), np.log10(interval[1])
    result = minimize_scalar(lambda x: -loglik(x), bounds=(lo, hi), method="bounded")

    if result.x >= hi - 1e-3:
        logger.info("No overdispersion detected in ambient counts, using a multinomial model")
        return np.inf

    alpha = float(10.0 ** result.x)
    logger.info("Estimated overdispersion alpha = %.4g", alpha)
    return alpha
