"""
pydroplets - cell calling and hash demultiplexing for droplet scRNA-seq.
"""

from .ambient import ambient_mask, ambient_proportions, estimate_ambient, estimate_overdispersion
from .barcode_ranks import barcode_ranks, find_knee_and_inflection, rank_curve, suggest_lower
from .empty_drops import empty_drops, monte_carlo_hits
from .exceptions import (
    DegenerateAmbientModel,
    DegenerateTag,
    DropletError,
    EmptyInput,
    InsufficientAmbientData,
    InsufficientRankPoints,
    InvalidParameters,
)
from .hashed_drops import ambient_profile_bimodal, demultiplex_cells, hashed_drops

__version__ = "0.2.0"

__all__ = [
    "ambient_mask",
    "ambient_proportions",
    "estimate_ambient",
    "estimate_overdispersion",
    "barcode_ranks",
    "find_knee_and_inflection",
    "rank_curve",
    "suggest_lower",
    "empty_drops",
    "monte_carlo_hits",
    "ambient_profile_bimodal",
    "demultiplex_cells",
    "hashed_drops",
    "DropletError",
    "InvalidParameters",
    "InsufficientAmbientData",
    "DegenerateAmbientModel",
    "InsufficientRankPoints",
    "EmptyInput",
    "DegenerateTag",
]
