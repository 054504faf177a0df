"""
Barcode-rank curve and its knee and inflection points.

The rank curve plots each barcode's total count against its rank on log-log
axes. Cell-containing barcodes form a plateau at high totals that drops
sharply into the ambient tail; the knee and inflection mark that drop.
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .ambient import DEFAULT_LOWER
from .exceptions import InsufficientRankPoints
from .utils import as_barcode_matrix, barcode_totals

logger = logging.getLogger(__name__)

EXCLUDE_FROM = 50


def rank_curve(totals: np.ndarray) -> pd.DataFrame:
    """
    Run-length encode the descending totals.

    Returns
    -------
    DataFrame
        One row per unique total, highest first, with the mid-rank of the
        barcodes sharing it and the run length.
    """
    totals = np.asarray(totals)
    ordered_totals = np.sort(totals)[::-1]
    if len(ordered_totals) == 0:
        return pd.DataFrame({"rank": [], "total": [], "length": []})

    change = np.flatnonzero(np.diff(ordered_totals)) + 1
    starts = np.concatenate([[0], change])
    run_values = ordered_totals[starts]
    run_lengths = np.diff(np.concatenate([starts, [len(ordered_totals)]]))

    run_rank = np.cumsum(run_lengths) - (run_lengths - 1) / 2.0

    return pd.DataFrame({"rank": run_rank, "total": run_values, "length": run_lengths})


def _find_curve_bounds(x: np.ndarray, y: np.ndarray, exclude_from: int = EXCLUDE_FROM) -> Tuple[int, int]:
    """
    Locate the plateau (left) and steepest-drop (right) edges of the curve.

    ``x`` and ``y`` are log10 rank and total. The first derivative is taken by
    finite differences; points ranked within ``exclude_from`` are skipped
    because the top of the curve is noisy.
    """
    d1n = np.diff(y) / np.diff(x)

    skip = min(len(d1n) - 1, int(np.sum(x <= np.log10(exclude_from))))
    if skip > 0:
        d1n = d1n[skip:]

    right_edge = int(np.argmin(d1n))
    left_edge = int(np.argmax(d1n[:right_edge + 1]))

    return left_edge + skip, right_edge + skip


def find_knee_and_inflection(
    totals: np.ndarray,
    lower: int = DEFAULT_LOWER,
    fit_bounds: Optional[Tuple[float, float]] = None,
    exclude_from: int = EXCLUDE_FROM,
) -> Tuple[float, float]:
    """
    Knee and inflection of the log-log barcode-rank curve.

    The inflection is the total at the point of minimum slope. The knee is the
    point above the chord between the curve bounds (or inside ``fit_bounds``)
    with the largest perpendicular distance from that chord.

    Parameters
    ----------
    totals : array-like
        Total count per barcode
    lower : int
        Only unique totals above this are used
    fit_bounds : tuple, optional
        (lower, upper) totals delimiting the region searched for the knee
    exclude_from : int
        Number of top-ranked barcodes ignored when locating the bounds

    Returns
    -------
    tuple
        (knee, inflection) as totals
    """
    curve = rank_curve(np.asarray(totals)[np.asarray(totals) > 0])
    keep = curve["total"].to_numpy() > lower
    if np.sum(keep) < 3:
        raise InsufficientRankPoints(
            f"Insufficient unique points for computing knee/inflection points "
            f"({int(np.sum(keep))} unique totals above {lower})"
        )

    y = np.log10(curve["total"].to_numpy()[keep].astype(np.float64))
    x = np.log10(curve["rank"].to_numpy()[keep])

    left_edge, right_edge = _find_curve_bounds(x, y, exclude_from)
    inflection = 10.0 ** y[right_edge]

    if fit_bounds is None:
        new_keep = np.arange(left_edge, right_edge + 1)
    else:
        new_keep = np.flatnonzero((y > np.log10(fit_bounds[0])) & (y < np.log10(fit_bounds[1])))
        if len(new_keep) == 0:
            new_keep = np.arange(left_edge, right_edge + 1)

    if len(new_keep) >= 4:
        curx = x[new_keep]
        cury = y[new_keep]
        xbounds = curx[[0, -1]]
        ybounds = cury[[0, -1]]
        gradient = (ybounds[1] - ybounds[0]) / (xbounds[1] - xbounds[0])
        intercept = ybounds[0] - xbounds[0] * gradient

        above = np.flatnonzero(cury >= curx * gradient + intercept)
        if len(above) > 0:
            dist = np.abs(gradient * curx[above] - cury[above] + intercept) / np.sqrt(gradient ** 2 + 1)
            knee = 10.0 ** cury[above[np.argmax(dist)]]
        else:
            knee = 10.0 ** cury[0]
    else:
        knee = 10.0 ** y[new_keep[0]]

    return float(knee), float(inflection)


def barcode_ranks(
    data,
    lower: int = DEFAULT_LOWER,
    fit_bounds: Optional[Tuple[float, float]] = None,
    exclude_from: int = EXCLUDE_FROM,
    barcodes: Optional[Sequence[str]] = None,
    features: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Per-barcode rank and total, with the knee and inflection in ``attrs``.

    Ties share their average rank. Raises ``InsufficientRankPoints`` when the
    curve above ``lower`` has fewer than three unique totals.
    """
    csr, barcode_names, _ = as_barcode_matrix(data, barcodes, features)
    totals = barcode_totals(csr)

    order = np.argsort(-totals, kind="stable")
    sorted_totals = totals[order]
    _, inverse, counts = np.unique(-sorted_totals, return_inverse=True, return_counts=True)
    avg_ranks = np.cumsum(counts) - (counts - 1) / 2.0
    ranks = np.empty(len(totals), dtype=float)
    ranks[order] = avg_ranks[inverse]

    knee, inflection = find_knee_and_inflection(totals, lower, fit_bounds, exclude_from)

    results = pd.DataFrame({"rank": ranks, "total": totals}, index=barcode_names)
    results.attrs = {
        "knee": knee,
        "inflection": inflection,
        "lower": lower,
        "exclude_from": exclude_from,
    }
    return results


def suggest_lower(
    totals: np.ndarray,
    exclude_from: int = EXCLUDE_FROM,
    fallback: int = DEFAULT_LOWER,
) -> int:
    """
    Default ``lower`` threshold from the rank curve of all non-zero barcodes.

    Uses the inflection point, below which the curve flattens into the
    ambient tail. Falls back to ``fallback`` when the curve is too short.
    """
    try:
        _, inflection = find_knee_and_inflection(totals, lower=0, exclude_from=exclude_from)
    except InsufficientRankPoints as e:
        logger.warning("%s; using lower=%d", e, fallback)
        return int(fallback)
    return int(np.floor(inflection))
