"""
Tests for the barcode-rank curve and knee/inflection detection.
"""

import logging

import numpy as np
import pytest

from pydroplets import InsufficientRankPoints, barcode_ranks, find_knee_and_inflection, rank_curve, suggest_lower


def _knee_totals(seed=0):
    """500 cells with 2000-8000 counts on top of an exponential ambient tail."""
    rng = np.random.default_rng(seed)
    cells = rng.integers(2000, 8000, size=500)
    empties = rng.geometric(1 / 20, size=20000)
    return cells, np.concatenate([cells, empties])


def test_rank_curve_mid_ranks():
    curve = rank_curve(np.array([5, 10, 10, 3, 0]))

    assert curve["total"].tolist() == [10, 5, 3, 0]
    assert curve["rank"].tolist() == [1.5, 3.0, 4.0, 5.0]
    assert curve["length"].tolist() == [2, 1, 1, 1]


def test_rank_curve_empty():
    assert len(rank_curve(np.array([]))) == 0


def test_knee_and_inflection_on_synthetic_curve():
    cells, totals = _knee_totals()
    knee, inflection = find_knee_and_inflection(totals, lower=100)

    # steepest drop is from the smallest cell into the ambient tail
    assert inflection == pytest.approx(cells.min())
    assert inflection <= knee <= cells.max()


def test_knee_respects_fit_bounds():
    cells, totals = _knee_totals(seed=1)
    knee, _ = find_knee_and_inflection(totals, lower=100, fit_bounds=(3000, 7000))

    assert 3000 < knee < 7000


def test_too_few_points_above_lower():
    with pytest.raises(InsufficientRankPoints):
        find_knee_and_inflection(np.array([1000, 500, 50, 20]), lower=100)
    with pytest.raises(InsufficientRankPoints):
        find_knee_and_inflection(np.array([1000, 1000, 1000, 500]), lower=100)


def test_barcode_ranks_table():
    cells, totals = _knee_totals()
    counts = totals.reshape(1, -1)
    names = [f"BC{i}" for i in range(len(totals))]

    ranks = barcode_ranks(counts, lower=100, barcodes=names)

    assert list(ranks.columns) == ["rank", "total"]
    assert ranks.index[0] == "BC0"
    assert ranks["total"].to_numpy().tolist() == totals.tolist()
    assert ranks.loc[ranks["total"].idxmax(), "rank"] == 1.0
    assert ranks.attrs["inflection"] == pytest.approx(cells.min())
    assert ranks.attrs["lower"] == 100


def test_barcode_ranks_ties_share_average_rank():
    counts = np.array([[10, 3, 10, 6, 6, 6, 200, 150, 90, 120]])
    ranks = barcode_ranks(counts, lower=0, exclude_from=1)

    assert ranks["rank"].tolist() == [5.5, 10.0, 5.5, 8.0, 8.0, 8.0, 1.0, 2.0, 4.0, 3.0]


def test_suggest_lower_uses_inflection():
    cells, totals = _knee_totals()
    assert abs(suggest_lower(totals) - cells.min()) <= 1


def test_suggest_lower_falls_back(caplog):
    with caplog.at_level(logging.WARNING, logger="pydroplets.barcode_ranks"):
        assert suggest_lower(np.array([5, 3, 0]), fallback=42) == 42
    assert "using lower=42" in caplog.text
