#!/usr/bin/env python3
"""
EmptyDrops runner script.

Calls cells in a raw 10x Genomics H5 matrix and, when the matrix carries
hashing-tag features, demultiplexes the called cells. Can be used from the
command line (``pydroplets``) or imported as a module.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd
import scanpy as sc

from .ambient import DEFAULT_LOWER
from .empty_drops import DEFAULT_FDR, DEFAULT_NITERS, empty_drops
from .exceptions import DropletError
from .hashed_drops import demultiplex_cells
from .run_logger import log_run_metadata

logger = logging.getLogger(__name__)

GEX_FEATURE_TYPE = "Gene Expression"
HASHING_FEATURE_TYPES = ("Antibody Capture", "Multiplexing Capture")


def split_features(adata: sc.AnnData) -> Tuple[sc.AnnData, Optional[sc.AnnData]]:
    """
    Split a 10x matrix into gene-expression and hashing-tag parts.

    Without a ``feature_types`` column every feature is treated as gene
    expression.
    """
    if "feature_types" not in adata.var:
        return adata, None

    types = adata.var["feature_types"].astype(str)
    gex = adata[:, (types == GEX_FEATURE_TYPE).to_numpy()]
    hto_mask = types.isin(HASHING_FEATURE_TYPES).to_numpy()
    hto = adata[:, hto_mask] if hto_mask.any() else None
    return gex, hto


def save_results(
    results_df: pd.DataFrame,
    metadata: dict,
    output_prefix: str,
    original_data: Optional[sc.AnnData] = None,
    hashed_df: Optional[pd.DataFrame] = None,
):
    """
    Save EmptyDrops results as CSV, JSON and H5AD files.

    Parameters
    ----------
    results_df : pd.DataFrame
        EmptyDrops results
    metadata : dict
        Run metadata
    output_prefix : str
        Prefix for output files (without extension)
    original_data : sc.AnnData, optional
        Counts; the called cells are written to ``<prefix>_cells.h5ad``
    hashed_df : pd.DataFrame, optional
        Hash demultiplexing results
    """
    csv_path = f"{output_prefix}_emptydrops.csv"
    results_df.to_csv(csv_path, index=True)
    logger.info("Results saved to CSV: %s", csv_path)

    json_path = f"{output_prefix}_metadata.json"
    with open(json_path, "w") as f:
        json.dump(metadata, f, indent=2)
    logger.info("Metadata saved to: %s", json_path)

    if hashed_df is not None:
        hashed_path = f"{output_prefix}_hashed.csv"
        hashed_df.to_csv(hashed_path, index=True)
        logger.info("Hash assignments saved to: %s", hashed_path)

    if original_data is not None:
        is_cell = results_df["IsCell"].to_numpy(dtype=bool)
        filtered_data = original_data[is_cell].copy()

        called = results_df.loc[is_cell]
        for col in ("Total", "LogProb", "PValue", "FDR"):
            filtered_data.obs[col] = called[col].to_numpy()
        filtered_data.obs["Limited"] = called["Limited"].fillna(False).to_numpy(dtype=bool)

        if hashed_df is not None:
            hashed = hashed_df.reindex(filtered_data.obs_names)
            filtered_data.obs["HashBest"] = hashed["Best"].astype(str).to_numpy()
            filtered_data.obs["HashConfident"] = hashed["Confident"].fillna(False).to_numpy(dtype=bool)
            filtered_data.obs["HashDoublet"] = hashed["Doublet"].fillna(False).to_numpy(dtype=bool)

        filtered_data.uns["empty_drops"] = {k: v for k, v in metadata.items() if v is not None}

        h5ad_path = f"{output_prefix}_cells.h5ad"
        filtered_data.write(h5ad_path)
        logger.info("Called cells saved to H5AD: %s (%d cells)", h5ad_path, filtered_data.n_obs)


def run_empty_drops(
    input_file: str,
    output_dir: str = ".",
    lower: Optional[int] = DEFAULT_LOWER,
    niters: int = DEFAULT_NITERS,
    alpha: float = DEFAULT_FDR,
    retain: Union[None, float, str] = None,
    test_ambient: bool = False,
    seed: Optional[int] = 0,
    n_threads: Optional[int] = None,
    hto: bool = True,
    output_prefix: Optional[str] = None,
    log_file: Optional[str] = None,
    save: bool = True,
):
    """
    Run EmptyDrops (and hash demultiplexing) on a 10x H5 file.

    Parameters
    ----------
    input_file : str
        Path to a raw (unfiltered) 10x H5 file
    output_dir : str
        Directory to save output files
    hto : bool
        Demultiplex called cells when hashing features are present
    output_prefix : str, optional
        Prefix for output files (default: input filename without extension)
    log_file : str, optional
        CSV run log to append the run metadata to
    save : bool
        Write the result files

    Returns
    -------
    tuple
        (results_df, metadata, hashed_df or None)
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    if output_prefix is None:
        output_prefix = Path(input_file).stem
    output_prefix = output_dir / output_prefix

    logger.info("Loading data from: %s", input_file)
    adata = sc.read_10x_h5(input_file, gex_only=False)
    adata.var_names_make_unique()
    logger.info("Loaded data: %d barcodes x %d features", adata.n_obs, adata.n_vars)

    gex, hto_data = split_features(adata)

    results_df, metadata = empty_drops(
        gex,
        lower=lower,
        niters=niters,
        alpha=alpha,
        retain=retain,
        test_ambient=test_ambient,
        seed=seed,
        n_threads=n_threads,
        progress=True,
        return_metadata=True,
    )
    metadata["input_file"] = str(input_file)

    hashed_df = None
    if hto and hto_data is not None:
        hashed_df = demultiplex_cells(hto_data, results_df, seed=seed)
        metadata["hash_confident"] = int(hashed_df["Confident"].sum())
        metadata["hash_doublets"] = int(hashed_df["Doublet"].sum())
    elif hto:
        logger.info("No hashing features found; skipping demultiplexing")

    if save:
        save_results(results_df, metadata, str(output_prefix), original_data=gex, hashed_df=hashed_df)
    if log_file is not None:
        log_run_metadata(metadata, log_file)

    return results_df, metadata, hashed_df


def _parse_retain(value: str):
    if value == "knee":
        return value
    try:
        return float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"retain must be a number or 'knee', got {value!r}")


def main(argv=None):
    """Command-line interface."""
    parser = argparse.ArgumentParser(
        description="Call cells and demultiplex hashing tags in 10x Genomics H5 files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Basic usage
  pydroplets raw_feature_bc_matrix.h5

  # With custom output directory and parameters
  pydroplets raw_feature_bc_matrix.h5 -o results/ --lower 200 --niters 5000

  # Keep everything above the knee, skip demultiplexing
  pydroplets raw_feature_bc_matrix.h5 --retain knee --no-hto
        """
    )

    parser.add_argument('input_file', type=str, help='Path to input 10x H5 file')
    parser.add_argument('-o', '--output-dir', type=str, default='.',
                        help='Output directory for results (default: current directory)')
    parser.add_argument('--output-prefix', type=str, default=None,
                        help='Prefix for output files (default: input filename without extension)')
    parser.add_argument('--lower', type=int, default=DEFAULT_LOWER,
                        help=f'Lower threshold for testing (default: {DEFAULT_LOWER})')
    parser.add_argument('--auto-lower', action='store_true',
                        help='Derive the lower threshold from the barcode-rank curve')
    parser.add_argument('--niters', type=int, default=DEFAULT_NITERS,
                        help=f'Number of Monte Carlo iterations (default: {DEFAULT_NITERS})')
    parser.add_argument('--fdr', type=float, default=DEFAULT_FDR,
                        help=f'FDR threshold for calling cells (default: {DEFAULT_FDR})')
    parser.add_argument('--retain', type=_parse_retain, default=None,
                        help="Retain threshold: a total count or 'knee' (default: none)")
    parser.add_argument('--test-ambient', action='store_true',
                        help='Also test the barcodes used for the ambient profile')
    parser.add_argument('--seed', type=int, default=0, help='Random seed (default: 0)')
    parser.add_argument('--threads', type=int, default=None,
                        help='Number of threads for the Monte Carlo simulation')
    parser.add_argument('--no-hto', action='store_true',
                        help='Skip hash demultiplexing even if hashing features exist')
    parser.add_argument('--log-file', type=str, default=None,
                        help='CSV file to append run metadata to')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    parser.add_argument('-q', '--quiet', action='store_true', help='Only log warnings and errors')

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    if not os.path.exists(args.input_file):
        logger.error("Input file not found: %s", args.input_file)
        sys.exit(1)

    try:
        results_df, metadata, hashed_df = run_empty_drops(
            input_file=args.input_file,
            output_dir=args.output_dir,
            lower=None if args.auto_lower else args.lower,
            niters=args.niters,
            alpha=args.fdr,
            retain=args.retain,
            test_ambient=args.test_ambient,
            seed=args.seed,
            n_threads=args.threads,
            hto=not args.no_hto,
            output_prefix=args.output_prefix,
            log_file=args.log_file,
        )
    except DropletError as e:
        logger.error("EmptyDrops analysis failed: %s", e)
        sys.exit(1)

    logger.info("EmptyDrops analysis completed: %d cells called", int(np.sum(results_df["IsCell"])))
    return 0


if __name__ == "__main__":
    sys.exit(main())
