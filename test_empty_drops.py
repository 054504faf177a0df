"""
Tests for the EmptyDrops cell-calling test.

Matrices are small and niters low; numba compilation dominates the runtime.
"""

import numpy as np
import pandas as pd
import pytest
import scanpy as sc
from scipy import sparse

from pydroplets import (
    DegenerateAmbientModel,
    EmptyInput,
    InvalidParameters,
    empty_drops,
    monte_carlo_hits,
)


def _droplets(seed=0, n_empty=300, n_cells=20, n_genes=30):
    """Features x barcodes counts: multinomial empties (total < 60) then cells."""
    rng = np.random.default_rng(seed)
    ambient = rng.dirichlet(np.ones(n_genes))
    empty = np.column_stack([
        rng.multinomial(rng.integers(1, 60), ambient) for _ in range(n_empty)
    ])
    cell_profile = rng.dirichlet(np.ones(n_genes) * 0.3)
    cells = np.column_stack([
        rng.multinomial(rng.integers(500, 2000), cell_profile) for _ in range(n_cells)
    ])
    return sparse.csc_matrix(np.hstack([empty, cells]))


@pytest.fixture(scope="module")
def droplets():
    return _droplets()


@pytest.fixture(scope="module")
def results(droplets):
    return empty_drops(droplets, lower=100, niters=1000, seed=1)


def test_single_obvious_cell_is_called():
    counts = np.array([
        [10000, 1, 1, 1, 1],
        [0, 2, 2, 2, 2],
        [0, 2, 2, 2, 2],
    ])
    res = empty_drops(counts, lower=5, niters=999, alpha=0.001,
                      barcodes=["cell", "e1", "e2", "e3", "e4"], features=["A", "B", "C"])

    assert res["IsCell"].tolist() == [True, False, False, False, False]
    assert res.loc["cell", "PValue"] == pytest.approx(1 / 1000)
    assert bool(res.loc["cell", "Limited"])
    assert res.loc[["e1", "e2", "e3", "e4"], "FDR"].isna().all()
    assert res.loc[["e1", "e2", "e3", "e4"], "PValue"].isna().all()
    assert res.loc[["e1", "e2", "e3", "e4"], "Limited"].isna().all()
    assert np.isnan(res.attrs["knee"])
    assert res.attrs["niters"] == 999
    np.testing.assert_allclose(res.attrs["ambient"].to_numpy(), [0.2, 0.4, 0.4])


def test_result_columns_and_attrs(results, droplets):
    assert list(results.columns) == ["Total", "LogProb", "PValue", "Limited", "FDR", "IsCell"]
    assert len(results) == droplets.shape[1]
    assert results["Total"].tolist() == np.asarray(droplets.sum(axis=0)).ravel().tolist()
    for key in ("knee", "inflection", "ambient", "alpha", "lower", "retain", "niters", "fdr_threshold", "seed"):
        assert key in results.attrs
    assert np.isclose(results.attrs["ambient"].sum(), 1.0)
    assert results.attrs["lower"] == 100


def test_cells_are_called_and_empties_are_not(results):
    assert results["IsCell"].iloc[-20:].all()
    assert not results["IsCell"].iloc[:300].any()


def test_pvalue_and_fdr_bounds(results):
    tested = results["PValue"].notna()
    p = results.loc[tested, "PValue"]
    fdr = results.loc[tested, "FDR"]

    assert ((p > 0) & (p <= 1)).all()
    assert ((fdr >= p) & (fdr <= 1)).all()
    assert (p >= 1 / 1001).all()
    # Limited exactly when no simulated draw was as extreme
    limited = results.loc[tested, "Limited"].astype(bool)
    assert (limited == np.isclose(p, 1 / 1001)).all()


def test_fdr_preserves_pvalue_order(results):
    tested = results[results["PValue"].notna()].sort_values("PValue")
    assert tested["FDR"].is_monotonic_increasing


def test_untested_barcodes_are_null(results):
    untested = results["Total"] <= 100
    assert results.loc[untested, "PValue"].isna().all()
    assert results.loc[untested, "LogProb"].isna().all()
    assert results.loc[untested, "FDR"].isna().all()
    assert results.loc[untested, "Limited"].isna().all()
    assert not results.loc[untested, "IsCell"].any()


def test_same_seed_reproduces(droplets, results):
    again = empty_drops(droplets, lower=100, niters=1000, seed=1)
    pd.testing.assert_series_equal(results["PValue"], again["PValue"])


def test_different_seeds_agree_within_monte_carlo_error(droplets):
    niters = 1000
    kwargs = dict(lower=100, niters=niters, test_ambient=True, overdispersion=np.inf)
    first = empty_drops(droplets, seed=1, **kwargs)["PValue"].to_numpy()
    second = empty_drops(droplets, seed=2, **kwargs)["PValue"].to_numpy()

    assert not np.array_equal(first, second)

    p = (first + second) / 2
    # two independent estimates, each with binomial error sqrt(p(1-p)/niters)
    tolerance = 5 * np.sqrt(2 * p * (1 - p) / niters) + 2 / (niters + 1)
    assert (np.abs(first - second) <= tolerance).all()


def test_thread_count_does_not_change_results(droplets):
    kwargs = dict(lower=20, niters=350, seed=5, overdispersion=50.0)
    one = empty_drops(droplets, n_threads=1, **kwargs)
    two = empty_drops(droplets, n_threads=2, **kwargs)

    pd.testing.assert_series_equal(one["PValue"], two["PValue"])


def test_monte_carlo_hits_extremes():
    ambient = np.array([0.5, 0.3, 0.2])
    hits = monte_carlo_hits(
        totals=np.array([3, 3, 5]),
        log_probs=np.array([0.0, -1e9, 0.0]),
        ambient=ambient,
        alpha=np.inf,
        niters=250,
        seed=0,
    )
    assert hits.tolist() == [250, 0, 250]

    hits = monte_carlo_hits(np.array([4]), np.array([-1e9]), ambient, alpha=2.0, niters=50, seed=0)
    assert hits.tolist() == [0]


def test_pvalues_of_ambient_barcodes_are_not_small(droplets):
    res = empty_drops(droplets, lower=100, niters=500, seed=2, test_ambient=True, overdispersion=np.inf)
    ambient_p = res["PValue"].iloc[:300]

    assert ambient_p.notna().all()
    assert 0.35 < ambient_p.mean() < 0.85
    assert (ambient_p < 0.05).mean() < 0.1


def test_retain_forces_calls(droplets):
    res = empty_drops(droplets, lower=100, niters=100, seed=0, retain=500)

    retained = res["Total"] >= 500
    assert (res.loc[retained, "FDR"] == 0).all()
    assert res.loc[retained, "IsCell"].all()
    assert res.attrs["retain"] == 500


def test_retain_knee(droplets):
    res = empty_drops(droplets, lower=100, niters=100, seed=0, retain="knee")
    knee = res.attrs["knee"]
    if np.isnan(knee):
        assert np.isinf(res.attrs["retain"])
    else:
        assert res.attrs["retain"] == knee


def test_retain_disabled_by_default(results):
    assert np.isinf(results.attrs["retain"])


def test_ignore_excludes_small_barcodes(droplets):
    res = empty_drops(droplets, lower=20, niters=100, seed=0, ignore=40)
    assert res.loc[res["Total"] <= 40, "PValue"].isna().all()
    assert res.loc[res["Total"] > 40, "PValue"].notna().all()


def test_anndata_input(droplets):
    adata = sc.AnnData(sparse.csr_matrix(droplets.T, dtype=np.float32))
    adata.obs_names = [f"BC{i}" for i in range(adata.n_obs)]
    res = empty_drops(adata, lower=100, niters=100, seed=0)

    assert res.index[0] == "BC0"
    assert res.loc["BC0", "Total"] == droplets[:, 0].sum()


def test_metadata(droplets):
    res, metadata = empty_drops(droplets, lower=100, niters=100, seed=0, return_metadata=True)

    assert metadata["n_cells"] == int(res["IsCell"].sum())
    assert metadata["tested_barcodes"] == int(res["PValue"].notna().sum())
    assert metadata["total_barcodes"] == droplets.shape[1]
    assert metadata["niters"] == 100
    assert metadata["seed"] == "0"


def test_auto_lower(droplets):
    res = empty_drops(droplets, lower=None, niters=100, seed=0)
    assert res.attrs["lower"] > 0


@pytest.mark.parametrize("kwargs", [
    dict(niters=0),
    dict(niters=2.5),
    dict(alpha=0),
    dict(alpha=1.5),
    dict(ignore=-1),
    dict(overdispersion=0),
    dict(retain="elbow"),
    dict(retain=-5),
    dict(lower=-1),
    dict(by_rank=0),
])
def test_invalid_parameters(droplets, kwargs):
    with pytest.raises(InvalidParameters):
        empty_drops(droplets, **kwargs)


def test_no_ambient_barcodes(droplets):
    with pytest.raises(DegenerateAmbientModel):
        empty_drops(droplets, lower=0, niters=10)


def test_empty_matrix():
    with pytest.raises(EmptyInput):
        empty_drops(np.zeros((3, 0)), niters=10)


def _one_cell(extra_zero_feature=False):
    counts = [
        [10000, 1, 1, 1, 1],
        [0, 2, 2, 2, 2],
        [0, 2, 2, 2, 2],
    ]
    features = ["A", "B", "C"]
    if extra_zero_feature:
        counts.append([0, 0, 0, 0, 0])
        features.append("D")
    return np.array(counts), ["cell", "e1", "e2", "e3", "e4"], features


def test_supplied_ambient_matches_estimated():
    counts, barcodes, features = _one_cell()
    estimated = empty_drops(counts, lower=5, niters=199, barcodes=barcodes, features=features)

    ambient = pd.Series([4.0, 4.0, 2.0], index=["C", "B", "A"])
    supplied = empty_drops(counts, lower=5, niters=199, ambient=ambient,
                           barcodes=barcodes, features=features)

    np.testing.assert_allclose(supplied.attrs["ambient"].to_numpy(), [0.2, 0.4, 0.4])
    pd.testing.assert_series_equal(estimated["PValue"], supplied["PValue"])
    assert supplied["IsCell"].tolist() == estimated["IsCell"].tolist()


def test_supplied_ambient_follows_feature_filtering():
    counts, barcodes, features = _one_cell(extra_zero_feature=True)
    res = empty_drops(counts, lower=5, niters=99, ambient=[0.2, 0.4, 0.4, 1.0],
                      barcodes=barcodes, features=features)

    ambient = res.attrs["ambient"]
    assert list(ambient.index) == ["A", "B", "C"]
    np.testing.assert_allclose(ambient.to_numpy(), [0.2, 0.4, 0.4])


def test_supplied_ambient_without_ambient_barcodes():
    counts, barcodes, features = _one_cell()
    res = empty_drops(counts, lower=0, niters=999, ambient=[0.2, 0.4, 0.4], overdispersion=np.inf,
                      barcodes=barcodes, features=features)

    assert res["PValue"].notna().all()
    assert res.loc["cell", "PValue"] == pytest.approx(1 / 1000)

    with pytest.raises(DegenerateAmbientModel):
        empty_drops(counts, lower=0, niters=10, ambient=[0.2, 0.4, 0.4],
                    barcodes=barcodes, features=features)


@pytest.mark.parametrize("ambient", [
    [0.5, 0.5],
    [0.2, -0.4, 0.4],
    [0.0, 0.5, 0.5],
    [np.nan, 0.5, 0.5],
    pd.Series([0.5, 0.5], index=["A", "B"]),
])
def test_invalid_supplied_ambient(ambient):
    counts, barcodes, features = _one_cell()
    with pytest.raises(InvalidParameters):
        empty_drops(counts, lower=5, niters=10, ambient=ambient, barcodes=barcodes, features=features)
