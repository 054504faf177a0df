"""
Run logging utilities.

Each EmptyDrops run appends one row of metadata to a CSV file so parameter
settings and call counts can be compared across runs.
"""

import logging
from pathlib import Path
from typing import Optional

import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_LOG_FILE = "runs/run_log.csv"


def log_run_metadata(metadata_dict: dict, log_file_path: str = DEFAULT_LOG_FILE) -> str:
    """
    Append run metadata to a CSV file.

    Parameters
    ----------
    metadata_dict : dict
        Flat dictionary describing the run
    log_file_path : str
        Path to the log CSV file; created with its directory when missing

    Returns
    -------
    str
        Path of the log file
    """
    log_file = Path(log_file_path)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    df_new = pd.DataFrame([metadata_dict])
    if log_file.exists():
        df_existing = pd.read_csv(log_file)
        df_combined = pd.concat([df_existing, df_new], ignore_index=True)
    else:
        df_combined = df_new

    df_combined.to_csv(log_file, index=False)
    logger.info("Run metadata logged to: %s", log_file)

    return str(log_file)


def get_run_summary(log_file_path: str = DEFAULT_LOG_FILE) -> Optional[pd.DataFrame]:
    """All logged runs, or None if no log exists yet."""
    log_file = Path(log_file_path)

    if not log_file.exists():
        logger.info("No log file found at: %s", log_file)
        return None

    return pd.read_csv(log_file)
