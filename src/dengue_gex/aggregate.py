"""
Probe-level preprocessing: log-scale check and probe-to-gene collapsing.
"""

import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def detect_log_scale(matrix: pd.DataFrame) -> bool:
    """
    Return True if the values already look log-transformed.

    Uses the GEO2R quantile rule: data is linear-scale when the 99th
    percentile exceeds 100, or when the range exceeds 50 with a positive
    lower quartile.
    """
    values = matrix.to_numpy(dtype=float).ravel()
    values = values[~np.isnan(values)]
    if values.size == 0:
        return True

    q0, q25, q99, q100 = np.quantile(values, [0.0, 0.25, 0.99, 1.0])
    is_linear = (q99 > 100) or (q100 - q0 > 50 and q25 > 0)
    return not is_linear


def ensure_log2(matrix: pd.DataFrame) -> pd.DataFrame:
    """Log2-transform linear-scale data; non-positive values become NaN."""
    if detect_log_scale(matrix):
        logger.info("Values appear log-scaled; leaving as is")
        return matrix

    logger.info("Values appear linear-scaled; applying log2")
    logged = matrix.astype(float).where(matrix > 0)
    return np.log2(logged)


def collapse_probes(
    probe_table: pd.DataFrame,
    key: str = "IDENTIFIER",
) -> pd.DataFrame:
    """
    Collapse duplicate probe rows into one row per gene by averaging.

    Args:
        probe_table: Probe rows with a key column plus numeric sample columns
        key: Column holding the gene identifier (non-unique)

    Returns:
        Gene x sample matrix indexed by the distinct keys (sorted); each
        value is the arithmetic mean of that gene's probe rows, NaN skipped
    """
    if key not in probe_table.columns:
        raise KeyError(f"Aggregation key column '{key}' not found")

    keyed = probe_table[probe_table[key].notna()]
    n_dropped = len(probe_table) - len(keyed)
    if n_dropped:
        logger.debug("Dropped %d probes without a %s", n_dropped, key)

    sample_columns = [c for c in keyed.columns if c != key]
    keys = keyed[key].astype(str).str.strip()
    collapsed = keyed[sample_columns].groupby(keys.values, sort=True).mean()
    collapsed.index.name = "gene"

    logger.info(
        "Collapsed %d probes into %d genes", len(keyed), len(collapsed)
    )
    return collapsed
