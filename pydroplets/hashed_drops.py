"""
Demultiplex cell-hashing experiments.

Each called cell carries counts for a handful of hashing tags (HTOs). The tag
with the highest ambient-corrected abundance is taken as the sample of origin;
the log-fold change to the runner-up measures confidence, and a runner-up far
above background marks a likely doublet.
"""

import logging
import warnings
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import median_abs_deviation
from sklearn import mixture

from .exceptions import DegenerateTag, EmptyInput, InvalidParameters
from .utils import as_barcode_matrix, validate_profile

logger = logging.getLogger(__name__)

DEFAULT_PSEUDO_COUNT = 5
DEFAULT_NMADS = 3
DEFAULT_DOUBLET_MIN = 2
DEFAULT_CONFIDENT_MIN = 2


def _tag_counts(data, barcodes, features) -> Tuple[np.ndarray, pd.Index, pd.Index]:
    csr, cell_names, tag_names = as_barcode_matrix(data, barcodes, features)
    if csr.shape[0] == 0:
        raise EmptyInput("No cells supplied for hash demultiplexing")
    if csr.shape[1] == 0:
        raise InvalidParameters("No hashing tags supplied")
    return csr.toarray(), cell_names, tag_names


def _low_mode_mean(tag_counts: np.ndarray, seed: Optional[int]) -> float:
    """Mean count of the cells in the lower of two modes of log-counts."""
    log_counts = np.log1p(tag_counts).reshape(-1, 1)

    gmm = mixture.GaussianMixture(n_components=2, n_init=5, covariance_type="tied", random_state=seed)
    gmm.fit(log_counts)
    low_component = np.argmin(gmm.means_.ravel())
    low = gmm.predict(log_counts) == low_component

    if not low.any():
        low = tag_counts <= np.median(tag_counts)
    return float(tag_counts[low].mean())


def _bimodal_levels(counts: np.ndarray, tag_names: pd.Index, seed: Optional[int]) -> pd.Series:
    levels = np.empty(counts.shape[1], dtype=np.float64)
    for j, tag in enumerate(tag_names):
        tag_counts = counts[:, j]
        if np.ptp(tag_counts) == 0:
            raise DegenerateTag(tag)
        levels[j] = _low_mode_mean(tag_counts, seed)

    total = levels.sum()
    if total <= 0:
        logger.warning("All tags have zero background counts; using a uniform ambient profile")
        return pd.Series(1.0 / len(levels), index=tag_names, name="ambient")
    return pd.Series(levels / total, index=tag_names, name="ambient")


def ambient_profile_bimodal(
    data,
    seed: Optional[int] = 0,
    barcodes: Optional[Sequence[str]] = None,
    features: Optional[Sequence[str]] = None,
) -> pd.Series:
    """
    Estimate the ambient tag profile from bimodal per-tag distributions.

    For every tag a two-component Gaussian mixture is fitted to the log-counts
    across cells. Cells in the lower component are taken to carry only
    ambient tag; their mean count is the tag's ambient level. Levels are
    normalised to proportions.

    Raises ``DegenerateTag`` when a tag has the same count in every cell.
    """
    counts, _, tag_names = _tag_counts(data, barcodes, features)
    return _bimodal_levels(counts, tag_names, seed)


def _ambient_scale(counts: np.ndarray, ambient: np.ndarray) -> np.ndarray:
    """
    Per-cell multiplier turning the ambient profile into expected counts.

    Median of count / ambient over the tags outside the top two by raw count
    (outside the top one when only two tags exist), i.e. the tags that should
    carry nothing but background.
    """
    n_exclude = 2 if counts.shape[1] > 2 else 1
    raw_order = np.argsort(-counts, axis=1, kind="stable")[:, n_exclude:]
    rest_counts = np.take_along_axis(counts, raw_order, axis=1)
    rest_ambient = ambient[raw_order]

    with np.errstate(divide="ignore", invalid="ignore"):
        ratios = np.where(rest_ambient > 0, rest_counts / rest_ambient, np.nan)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        scale = np.nanmedian(ratios, axis=1)
    return np.nan_to_num(scale, nan=0.0)


def hashed_drops(
    data,
    ambient=None,
    pseudo_count: float = DEFAULT_PSEUDO_COUNT,
    constant_ambient: bool = False,
    doublet_nmads: float = DEFAULT_NMADS,
    doublet_min: float = DEFAULT_DOUBLET_MIN,
    confident_nmads: float = DEFAULT_NMADS,
    confident_min: float = DEFAULT_CONFIDENT_MIN,
    seed: Optional[int] = 0,
    barcodes: Optional[Sequence[str]] = None,
    features: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Assign each cell to its most likely hashing tag.

    Parameters
    ----------
    data : AnnData or matrix
        Tag counts for called cells only; matrices are tags x cells
    ambient : pd.Series or array-like, optional
        Ambient tag profile. Estimated with ``ambient_profile_bimodal`` when
        not given.
    pseudo_count : float, optional (default: 5)
        Added to corrected abundances before taking log-fold changes
    constant_ambient : bool, optional (default: False)
        Use the median ambient scale across cells instead of a per-cell one
    doublet_nmads, doublet_min : float
        A cell is a doublet when LogFC2 exceeds both ``doublet_min`` and the
        median plus ``doublet_nmads`` MADs of LogFC2
    confident_nmads, confident_min : float
        A non-doublet is confident when LogFC is at least ``confident_min``
        and not more than ``confident_nmads`` MADs below the median LogFC of
        non-doublets
    seed : int, optional (default: 0)
        Random state of the mixture fits; ``None`` leaves them unseeded

    Returns
    -------
    pd.DataFrame
        Indexed by cell with columns Total, Best, Second, LogFC, LogFC2,
        Doublet and Confident; ``attrs['ambient']`` holds the tag profile.
    """
    if pseudo_count is None or not pseudo_count > 0:
        raise InvalidParameters(f"pseudo_count must be positive, got {pseudo_count}")

    counts, cell_names, tag_names = _tag_counts(data, barcodes, features)
    if counts.shape[1] < 2:
        raise InvalidParameters(f"At least two hashing tags are required, got {counts.shape[1]}")

    if ambient is None:
        ambient = _bimodal_levels(counts, tag_names, seed)
    else:
        ambient = validate_profile(ambient, tag_names, "Ambient tag profile")
    ambient_values = ambient.to_numpy()

    scale = _ambient_scale(counts, ambient_values)
    if constant_ambient:
        scale = np.full_like(scale, np.median(scale))
    corrected = np.maximum(counts - scale[:, None] * ambient_values[None, :], 0.0)

    order = np.lexsort((-counts, -corrected), axis=1)
    rows = np.arange(counts.shape[0])
    best_idx = order[:, 0]
    second_idx = order[:, 1]
    best = corrected[rows, best_idx]
    second = corrected[rows, second_idx]

    lfc = np.log2((best + pseudo_count) / (second + pseudo_count))
    lfc2 = np.log2((second + pseudo_count) / pseudo_count)

    med2 = np.median(lfc2)
    mad2 = median_abs_deviation(lfc2, scale="normal")
    is_doublet = lfc2 > max(doublet_min, med2 + doublet_nmads * mad2)

    singlets = ~is_doublet
    if singlets.any():
        med = np.median(lfc[singlets])
        mad = median_abs_deviation(lfc[singlets], scale="normal")
        threshold = max(confident_min, med - confident_nmads * mad)
    else:
        threshold = confident_min
    confident = singlets & (lfc >= threshold)

    logger.info("Hash demultiplexing: %d cells, %d confident, %d doublets",
                len(cell_names), int(confident.sum()), int(is_doublet.sum()))

    results = pd.DataFrame({
        "Total": counts.sum(axis=1).astype(np.int64),
        "Best": tag_names[best_idx].to_numpy(),
        "Second": tag_names[second_idx].to_numpy(),
        "LogFC": lfc,
        "LogFC2": lfc2,
        "Doublet": is_doublet,
        "Confident": confident,
    }, index=cell_names)
    results.attrs["ambient"] = ambient
    return results


def demultiplex_cells(
    hto_data,
    empty_drops_results: pd.DataFrame,
    fdr_threshold: Optional[float] = None,
    barcodes: Optional[Sequence[str]] = None,
    features: Optional[Sequence[str]] = None,
    **kwargs,
) -> pd.DataFrame:
    """
    Run ``hashed_drops`` on the barcodes called as cells by ``empty_drops``.

    Parameters
    ----------
    hto_data : AnnData or matrix
        Tag counts for all barcodes (tags x barcodes for matrices)
    empty_drops_results : pd.DataFrame
        Output of ``empty_drops``
    fdr_threshold : float, optional
        Call cells at this FDR instead of using the IsCell column
    **kwargs
        Passed to ``hashed_drops``
    """
    csr, cell_names, tag_names = as_barcode_matrix(hto_data, barcodes, features)

    if fdr_threshold is None:
        called = empty_drops_results["IsCell"].to_numpy(dtype=bool)
    else:
        called = (empty_drops_results["FDR"] <= fdr_threshold).to_numpy()
    called_barcodes = empty_drops_results.index[called]

    keep = np.asarray(cell_names.isin(called_barcodes))
    if not keep.any():
        raise EmptyInput("None of the called cells have hashing-tag counts")
    logger.info("Demultiplexing %d of %d called cells", int(keep.sum()), len(called_barcodes))

    return hashed_drops(
        csr[keep].T,
        barcodes=cell_names[keep],
        features=tag_names,
        **kwargs,
    )
