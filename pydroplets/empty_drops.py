"""
EmptyDrops - distinguish cell-containing droplets from empty ones.

Every barcode above the ``lower`` threshold is tested against the ambient
profile: its count vector is scored by its (Dirichlet-)multinomial
log-probability under the ambient model, and the score is compared with
``niters`` Monte Carlo draws from that model at the same total. Barcodes whose
composition is too unlikely to be ambient are called as cells after
Benjamini-Hochberg correction.

Based on:
Lun A, Riesenfeld S, Andrews T, et al. (2019).
Distinguishing cells from empty droplets in droplet-based single-cell RNA sequencing data.
Genome Biol. 20, 63.
"""

import logging
import math
import time
from typing import Optional, Sequence, Union

import numba
import numpy as np
import pandas as pd
import scanpy as sc
from numba import njit, prange
from tqdm.auto import tqdm

from .ambient import DEFAULT_LOWER, ambient_mask, ambient_proportions, estimate_overdispersion
from .barcode_ranks import find_knee_and_inflection, suggest_lower
from .exceptions import DegenerateAmbientModel, InsufficientRankPoints, InvalidParameters
from .utils import as_barcode_matrix, barcode_totals, benjamini_hochberg, require_barcodes, validate_profile

logger = logging.getLogger(__name__)

DEFAULT_NITERS = 10000
DEFAULT_FDR = 0.001

# Monte Carlo iterations are seeded per block, so results do not depend on
# how many threads run the blocks.
ITERATIONS_PER_BLOCK = 100

# Relative tolerance when comparing simulated and observed log-probabilities.
TIE_TOLERANCE = 1e-10


# --- numba kernels ---

@njit(nogil=True)
def _log_prob_rows(indptr, indices, data, totals, log_ambient, prop_alpha, alpha, use_multinomial):
    """Log-probability of each CSR row under the ambient model."""
    n_rows = len(totals)
    log_probs = np.empty(n_rows, dtype=np.float64)

    for i in range(n_rows):
        total = float(totals[i])
        log_prob = math.lgamma(total + 1.0)
        if not use_multinomial:
            log_prob += math.lgamma(alpha) - math.lgamma(total + alpha)

        for k in range(indptr[i], indptr[i + 1]):
            gene_idx = indices[k]
            count = data[k]
            if use_multinomial:
                log_prob += count * log_ambient[gene_idx] - math.lgamma(count + 1.0)
            else:
                log_prob += (math.lgamma(count + prop_alpha[gene_idx])
                             - math.lgamma(prop_alpha[gene_idx])
                             - math.lgamma(count + 1.0))
        log_probs[i] = log_prob

    return log_probs


@njit(nogil=True)
def _draw_category(cum_ambient, u):
    target = u * cum_ambient[-1]
    lo = 0
    hi = len(cum_ambient) - 1
    while lo < hi:
        mid = (lo + hi) // 2
        if cum_ambient[mid] <= target:
            lo = mid + 1
        else:
            hi = mid
    return lo


@njit(nogil=True)
def _first_at_least(values, start, end, threshold):
    lo = start
    hi = end
    while lo < hi:
        mid = (lo + hi) // 2
        if values[mid] < threshold:
            lo = mid + 1
        else:
            hi = mid
    return lo


@njit(nogil=True)
def _simulate_block(block_seed, n_iter, group_totals, group_starts, sorted_log_probs,
                    cum_ambient, log_ambient, prop_alpha, alpha, use_multinomial, hits_delta):
    """
    Run ``n_iter`` simulations and record hits as a difference array.

    Each iteration draws counts one at a time from the ambient model (a Polya
    urn for the Dirichlet-multinomial) up to the largest candidate total,
    updating the log-probability incrementally. Whenever the running total
    reaches a candidate total, every candidate in that group whose observed
    log-probability is at least the simulated one gets a hit. Candidates are
    sorted by (total, log-probability), so those form a suffix of the group.
    """
    np.random.seed(block_seed)

    n_genes = len(cum_ambient)
    max_total = group_totals[len(group_totals) - 1]
    counts = np.zeros(n_genes, dtype=np.int64)
    history = np.zeros(max_total, dtype=np.int64)

    for _ in range(n_iter):
        cur = 0.0
        grp = 0
        for n in range(max_total):
            if use_multinomial or np.random.random() * (n + alpha) < alpha:
                g = _draw_category(cum_ambient, np.random.random())
            else:
                g = history[int(np.random.random() * n)]
            history[n] = g

            c = counts[g]
            if use_multinomial:
                cur += math.log(n + 1.0) - math.log(c + 1.0) + log_ambient[g]
            else:
                cur += (math.log(n + 1.0) - math.log(n + alpha)
                        + math.log(c + prop_alpha[g]) - math.log(c + 1.0))
            counts[g] = c + 1

            if n + 1 == group_totals[grp]:
                start = group_starts[grp]
                end = group_starts[grp + 1]
                threshold = cur - TIE_TOLERANCE * max(1.0, abs(cur))
                pos = _first_at_least(sorted_log_probs, start, end, threshold)
                hits_delta[pos] += 1
                hits_delta[end] -= 1
                grp += 1

        for n in range(max_total):
            counts[history[n]] = 0


@njit(parallel=True)
def _simulate_blocks(block_seeds, block_sizes, group_totals, group_starts, sorted_log_probs,
                     cum_ambient, log_ambient, prop_alpha, alpha, use_multinomial):
    n_blocks = len(block_seeds)
    deltas = np.zeros((n_blocks, len(sorted_log_probs) + 1), dtype=np.int64)
    for b in prange(n_blocks):
        _simulate_block(block_seeds[b], block_sizes[b], group_totals, group_starts,
                        sorted_log_probs, cum_ambient, log_ambient, prop_alpha,
                        alpha, use_multinomial, deltas[b])
    return deltas


# --- Monte Carlo driver ---

def _block_seeds(seed_seq: np.random.SeedSequence, niters: int):
    n_blocks = -(-niters // ITERATIONS_PER_BLOCK)
    block_sizes = np.full(n_blocks, ITERATIONS_PER_BLOCK, dtype=np.int64)
    block_sizes[-1] = niters - ITERATIONS_PER_BLOCK * (n_blocks - 1)
    block_seeds = np.array(
        [child.generate_state(1)[0] for child in seed_seq.spawn(n_blocks)],
        dtype=np.uint32,
    )
    return block_seeds, block_sizes


def monte_carlo_hits(
    totals: np.ndarray,
    log_probs: np.ndarray,
    ambient: np.ndarray,
    alpha: float,
    niters: int,
    seed: Union[None, int, np.random.SeedSequence] = None,
    n_threads: Optional[int] = None,
    progress: bool = False,
) -> np.ndarray:
    """
    Count simulated draws at least as extreme as each observed barcode.

    Parameters
    ----------
    totals : array-like
        Total count of each tested barcode (all > 0)
    log_probs : array-like
        Observed log-probability of each tested barcode
    ambient : array-like
        Ambient proportions
    alpha : float
        Dirichlet-multinomial concentration; ``np.inf`` for a multinomial
    niters : int
        Number of Monte Carlo iterations
    seed : int or SeedSequence, optional
        Seed for the simulation; identical seeds give identical counts
        regardless of ``n_threads``
    n_threads : int, optional
        Number of numba threads (defaults to numba's setting)

    Returns
    -------
    np.ndarray
        Number of simulated log-probabilities ``<=`` each observed one
    """
    totals = np.asarray(totals, dtype=np.int64)
    log_probs = np.asarray(log_probs, dtype=np.float64)
    if len(totals) == 0:
        return np.zeros(0, dtype=np.int64)

    order = np.lexsort((log_probs, totals))
    ordered_totals = totals[order]
    ordered_probs = log_probs[order]
    group_totals, group_starts = np.unique(ordered_totals, return_index=True)
    group_starts = np.append(group_starts, len(ordered_totals)).astype(np.int64)
    group_totals = group_totals.astype(np.int64)

    ambient = np.asarray(ambient, dtype=np.float64)
    cum_ambient = np.cumsum(ambient)
    use_multinomial = bool(np.isinf(alpha))
    with np.errstate(divide="ignore"):
        log_ambient = np.log(ambient)
    if use_multinomial:
        prop_alpha = np.zeros_like(ambient)
        alpha_arg = 0.0
    else:
        prop_alpha = ambient * alpha
        alpha_arg = float(alpha)

    seed_seq = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    block_seeds, block_sizes = _block_seeds(seed_seq, niters)

    previous_threads = numba.get_num_threads()
    threads = previous_threads if n_threads is None else max(1, min(int(n_threads), numba.config.NUMBA_NUM_THREADS))
    numba.set_num_threads(threads)

    hits_delta = np.zeros(len(ordered_totals) + 1, dtype=np.int64)
    try:
        for wave_start in tqdm(range(0, len(block_seeds), threads),
                               desc="Monte Carlo blocks", disable=not progress):
            wave = slice(wave_start, wave_start + threads)
            deltas = _simulate_blocks(
                block_seeds[wave], block_sizes[wave], group_totals, group_starts,
                ordered_probs, cum_ambient, log_ambient, prop_alpha, alpha_arg, use_multinomial,
            )
            hits_delta += deltas.sum(axis=0)
    finally:
        numba.set_num_threads(previous_threads)

    n_above = np.empty(len(totals), dtype=np.int64)
    n_above[order] = np.cumsum(hits_delta[:-1])
    return n_above


def _check_retain(retain) -> None:
    if isinstance(retain, str):
        if retain != "knee":
            raise InvalidParameters(f"retain must be a number, 'knee' or None, got {retain!r}")
    elif retain is not None and not retain > 0:
        raise InvalidParameters(f"retain must be positive, got {retain}")


def _resolve_retain(retain, knee: float) -> float:
    if retain is None:
        return np.inf
    if isinstance(retain, str):
        return knee if np.isfinite(knee) else np.inf
    return float(retain)


# --- Main EmptyDrops function ---

def empty_drops(
    data,
    lower: Optional[int] = DEFAULT_LOWER,
    niters: int = DEFAULT_NITERS,
    alpha: float = DEFAULT_FDR,
    test_ambient: bool = False,
    ignore: Optional[int] = None,
    retain: Union[None, float, str] = None,
    by_rank: Optional[int] = None,
    overdispersion: Optional[float] = None,
    ambient=None,
    seed: Optional[int] = 0,
    n_threads: Optional[int] = None,
    barcodes: Optional[Sequence[str]] = None,
    features: Optional[Sequence[str]] = None,
    progress: bool = False,
    return_metadata: bool = False,
):
    """
    Test barcodes against the ambient profile and call cells.

    Parameters
    ----------
    data : AnnData or matrix
        Raw counts for all barcodes; matrices are features x barcodes
    lower : int, optional (default: 100)
        Barcodes with total <= lower define the ambient profile and are not
        tested. ``None`` uses the inflection of the barcode-rank curve.
    niters : int, optional (default: 10000)
        Number of Monte Carlo iterations
    alpha : float, optional (default: 0.001)
        FDR threshold for calling cells
    test_ambient : bool, optional (default: False)
        Also test the ambient barcodes (every barcode with a non-zero total)
    ignore : int, optional
        Barcodes with total <= ignore are never tested
    retain : float or 'knee', optional
        Barcodes with total >= retain get a p-value of 0 in the FDR
        correction. ``'knee'`` uses the knee point; ``None`` disables it.
    by_rank : int, optional
        Exclude the top ``by_rank`` barcodes from the ambient profile
        instead of using ``lower``
    overdispersion : float, optional
        Dirichlet-multinomial concentration. ``None`` estimates it from the
        ambient barcodes, ``np.inf`` uses a plain multinomial.
    ambient : pd.Series or array-like, optional
        Ambient profile to test against, aligned to features by name (Series)
        or position. Estimated from the ambient barcodes when not given; the
        ambient barcodes are still used to fit the overdispersion.
    seed : int, optional (default: 0)
        Seed for the Monte Carlo simulation; ``None`` draws fresh entropy
    n_threads : int, optional
        Number of numba threads for the simulation
    progress : bool, optional (default: False)
        Show a progress bar over the Monte Carlo blocks
    return_metadata : bool, optional (default: False)
        Also return a flat dict describing the run

    Returns
    -------
    pd.DataFrame
        Indexed by barcode with columns Total, LogProb, PValue, Limited,
        FDR and IsCell. Untested barcodes have NaN statistics and a missing
        Limited flag. ``attrs`` holds knee, inflection, ambient, alpha,
        lower, retain, niters, fdr_threshold and seed.
    """
    start_time = time.time()

    if niters is None or int(niters) != niters or niters <= 0:
        raise InvalidParameters(f"niters must be a positive integer, got {niters}")
    niters = int(niters)
    if alpha is None or not 0 < alpha < 1:
        raise InvalidParameters(f"alpha must lie in (0, 1), got {alpha}")
    if ignore is not None and ignore < 0:
        raise InvalidParameters(f"ignore must be non-negative, got {ignore}")
    if overdispersion is not None and not overdispersion > 0:
        raise InvalidParameters(f"overdispersion must be positive, got {overdispersion}")
    _check_retain(retain)

    # === STEP 1: MATRIX PREPARATION ===
    csr, barcode_names, feature_names = as_barcode_matrix(data, barcodes, features)
    require_barcodes(csr)
    logger.info("Starting EmptyDrops on %d barcodes x %d features", csr.shape[0], csr.shape[1])

    gene_subset, _ = sc.pp.filter_genes(csr, min_counts=1, inplace=False)
    gene_subset = np.asarray(gene_subset, dtype=bool)
    logger.info("%d features filtered out since sum(counts) over the feature was 0.",
                int((~gene_subset).sum()))
    if ambient is not None:
        supplied = validate_profile(ambient, feature_names)
    csr = csr[:, gene_subset].tocsr()
    feature_names = feature_names[gene_subset]

    totals = barcode_totals(csr)

    if lower is None:
        lower = suggest_lower(totals)
        logger.info("Using lower=%d from the barcode-rank curve", lower)

    # === STEP 2: AMBIENT PROFILE ===
    amb_mask, effective_lower = ambient_mask(totals, lower, by_rank)
    n_ambient = int(amb_mask.sum())
    if n_ambient == 0 and (ambient is None or overdispersion is None):
        raise DegenerateAmbientModel(
            f"No barcodes with 0 < total <= {effective_lower} "
            f"(lower={lower}, by_rank={by_rank}) to define the ambient model"
        )
    ambient_csr = csr[amb_mask]
    gene_sums = np.asarray(ambient_csr.sum(axis=0)).ravel()
    if n_ambient > 0 and gene_sums.sum() <= 0:
        raise DegenerateAmbientModel(f"The {n_ambient} ambient barcodes contain no counts")

    if ambient is None:
        ambient_props = ambient_proportions(gene_sums)
        logger.info("Ambient profile from %d barcodes (%d counts)", n_ambient, int(gene_sums.sum()))
    else:
        ambient_props = supplied.to_numpy()[gene_subset]
        if np.any(ambient_props <= 0):
            raise InvalidParameters(
                "Ambient profile is zero for features with observed counts: "
                f"{list(feature_names[ambient_props <= 0])[:10]}"
            )
        if not gene_subset.all():
            ambient_props = ambient_props / ambient_props.sum()
        logger.info("Using the supplied ambient profile")

    if overdispersion is None:
        fitted_alpha = estimate_overdispersion(ambient_csr, ambient_props)
    else:
        fitted_alpha = float(overdispersion)
    use_multinomial = bool(np.isinf(fitted_alpha))

    # === STEP 3: OBSERVED LOG-PROBABILITIES ===
    if test_ambient:
        test_mask = totals > 0
    else:
        test_mask = totals > effective_lower
    if ignore is not None:
        test_mask &= totals > ignore
    n_tested = int(test_mask.sum())
    logger.info("Found %d barcodes to test", n_tested)

    test_csr = csr[test_mask]
    test_totals = totals[test_mask]
    with np.errstate(divide="ignore"):
        log_ambient = np.log(ambient_props)
    prop_alpha = np.zeros_like(ambient_props) if use_multinomial else ambient_props * fitted_alpha
    obs_log_probs = _log_prob_rows(
        test_csr.indptr, test_csr.indices, test_csr.data, test_totals,
        log_ambient, prop_alpha, 0.0 if use_multinomial else fitted_alpha, use_multinomial,
    )

    # === STEP 4: MONTE CARLO ===
    seed_seq = np.random.SeedSequence(seed)
    logger.info("Running %d Monte Carlo iterations", niters)
    mc_start = time.time()
    n_above = monte_carlo_hits(
        test_totals, obs_log_probs, ambient_props, fitted_alpha, niters,
        seed=seed_seq, n_threads=n_threads, progress=progress,
    )
    logger.info("Monte Carlo completed in %.2f seconds", time.time() - mc_start)

    # === STEP 5: RESULTS ===
    p_values = (n_above + 1) / (niters + 1)

    knee, inflection = np.nan, np.nan
    try:
        knee, inflection = find_knee_and_inflection(totals, lower=effective_lower)
    except InsufficientRankPoints as e:
        logger.warning("Knee point detection failed: %s", e)
    retain_value = _resolve_retain(retain, knee)

    n_barcodes = len(totals)
    tested_idx = np.flatnonzero(test_mask)

    log_prob_col = np.full(n_barcodes, np.nan)
    log_prob_col[tested_idx] = obs_log_probs
    pvalue_col = np.full(n_barcodes, np.nan)
    pvalue_col[tested_idx] = p_values
    limited_col = pd.array([pd.NA] * n_barcodes, dtype="boolean")
    limited_col[tested_idx] = n_above == 0

    pvals_for_fdr = pvalue_col.copy()
    pvals_for_fdr[test_mask & (totals >= retain_value)] = 0.0
    fdr_col = benjamini_hochberg(pvals_for_fdr)

    results = pd.DataFrame({
        "Total": totals,
        "LogProb": log_prob_col,
        "PValue": pvalue_col,
        "Limited": limited_col,
        "FDR": fdr_col,
    }, index=barcode_names)
    results["IsCell"] = (results["FDR"] <= alpha).to_numpy()

    results.attrs.update({
        "knee": knee,
        "inflection": inflection,
        "ambient": pd.Series(ambient_props, index=feature_names, name="ambient"),
        "alpha": fitted_alpha,
        "lower": effective_lower,
        "retain": retain_value,
        "niters": niters,
        "fdr_threshold": alpha,
        "seed": seed_seq.entropy,
    })

    total_runtime = time.time() - start_time
    n_cells = int(results["IsCell"].sum())
    logger.info("EmptyDrops finished in %.2f seconds: %d cells at FDR <= %g",
                total_runtime, n_cells, alpha)

    if not return_metadata:
        return results

    metadata = {
        "timestamp": pd.Timestamp.now().strftime("%Y%m%d_%H%M%S"),
        "niters": niters,
        "fdr_threshold": alpha,
        "n_cells": n_cells,
        "fdr_0_001": int((results["FDR"] <= 0.001).sum()),
        "fdr_0_01": int((results["FDR"] <= 0.01).sum()),
        "fdr_0_05": int((results["FDR"] <= 0.05).sum()),
        "knee": knee,
        "inflection": inflection,
        "retain": retain_value,
        "lower": effective_lower,
        "alpha": fitted_alpha,
        "seed": str(seed_seq.entropy),
        "runtime_seconds": round(total_runtime, 2),
        "total_barcodes": n_barcodes,
        "tested_barcodes": n_tested,
        "data_shape": f"{csr.shape[0]}x{csr.shape[1]}",
    }
    return results, metadata
