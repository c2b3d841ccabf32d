"""
Key-preserving reconciliation of result tables with annotation.

Annotation tables repeat keys (several probes per gene symbol), so a naive
merge would multiply result rows. ``left_join_dedup`` deduplicates the right
side first and checks that the left side comes back with exactly its own
rows, in its own order.
"""

import logging

import pandas as pd

from .de_analysis import sort_by_pvalue
from .errors import DataIntegrityError

logger = logging.getLogger(__name__)

KEEP_POLICIES = ("first", "last")


def left_join_dedup(
    left: pd.DataFrame,
    right: pd.DataFrame,
    left_on: str,
    right_on: str,
    keep: str = "first",
    suffix: str = "_annotation",
) -> pd.DataFrame:
    """
    Left join that never changes the number or order of ``left`` rows.

    Args:
        left: Table whose rows are preserved (the key may be a column or the
            index name)
        right: Lookup table, possibly with repeated keys
        left_on: Join key in ``left``
        right_on: Join key in ``right`` (column or index name)
        keep: Which duplicate of a right-hand key wins: "first" or "last"
        suffix: Appended to right-hand columns whose names collide with left

    Returns:
        DataFrame with ``left``'s index and columns followed by the right-hand
        columns; rows without a match hold nulls in every right-hand column

    Raises:
        ValueError: Unknown keep policy or missing key column
        DataIntegrityError: Result row count differs from ``len(left)``
    """
    if keep not in KEEP_POLICIES:
        raise ValueError(f"keep must be one of {KEEP_POLICIES}, got {keep!r}")

    left_keys = _key_values(left, left_on, "left")
    right = right.reset_index() if right_on not in right.columns else right
    if right_on not in right.columns:
        raise ValueError(f"Join key '{right_on}' not found in right table")

    lookup = right[right[right_on].notna()]
    lookup = lookup.drop_duplicates(subset=right_on, keep=keep).set_index(right_on)

    overlap = [c for c in lookup.columns if c in left.columns]
    if overlap:
        lookup = lookup.rename(columns={c: f"{c}{suffix}" for c in overlap})

    # reindex keeps the left order and fills unmatched keys with nulls
    matched = lookup.reindex(pd.Index(left_keys))
    matched.index = left.index

    joined = pd.concat([left, matched], axis=1)
    if len(joined) != len(left):
        raise DataIntegrityError(
            f"Join produced {len(joined)} rows for {len(left)} input rows"
        )

    n_unmatched = int(matched.isna().all(axis=1).sum()) if len(matched.columns) else len(left)
    logger.debug(
        "Joined %d rows on %s; %d without a match", len(left), left_on, n_unmatched
    )
    return joined


def _key_values(frame: pd.DataFrame, key: str, side: str) -> list:
    if key in frame.columns:
        return list(frame[key])
    if frame.index.name == key:
        return list(frame.index)
    raise ValueError(f"Join key '{key}' not found in {side} table")


def reconcile_annotation(
    de_table: pd.DataFrame,
    annotation: pd.DataFrame,
    key: str = "symbol",
    keep: str = "first",
) -> pd.DataFrame:
    """
    Attach gene annotation to a differential expression top table.

    Args:
        de_table: Top table indexed by gene identifier
        annotation: Normalized annotation (symbol, gene_id, chromosome)
        key: Annotation column matching the top table index
        keep: Duplicate policy passed to ``left_join_dedup``

    Returns:
        Top table with the annotation columns (except ``key``) appended,
        one row per input gene, sorted ascending by p-value

    Raises:
        DataIntegrityError: Input genes lost or duplicated by the join
    """
    columns = [c for c in annotation.columns if c != key]
    annotation = annotation[[key] + columns]

    left = de_table.copy()
    index_name = left.index.name or "gene"
    left.index.name = index_name

    reconciled = left_join_dedup(
        left.reset_index(),
        annotation,
        left_on=index_name,
        right_on=key,
        keep=keep,
    ).set_index(index_name)

    counts = reconciled.index.value_counts()
    duplicated = counts[counts > 1]
    if len(reconciled) != len(de_table) or len(duplicated):
        raise DataIntegrityError(
            f"Reconciliation changed the gene set: {len(de_table)} in, "
            f"{len(reconciled)} out, {len(duplicated)} duplicated"
        )
    if set(reconciled.index) != set(de_table.index):
        raise DataIntegrityError("Reconciliation lost input genes")

    n_annotated = int(reconciled[columns].notna().any(axis=1).sum()) if columns else 0
    logger.info(
        "Reconciled %d genes with annotation; %d annotated, %d without a match",
        len(reconciled), n_annotated, len(reconciled) - n_annotated,
    )

    if "pvalue" in reconciled.columns:
        reconciled = sort_by_pvalue(reconciled)
    return reconciled
