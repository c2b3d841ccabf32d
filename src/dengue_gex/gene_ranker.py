"""
Gene ranking for enrichment input and report tables.

``build_ranked_gene_list`` turns the reconciled top table into the
gene-ID keyed, effect-size ordered list that enrichment testing consumes.
``GeneRanker`` picks the genes highlighted in the report.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from .de_result import DEResult, GeneResult

logger = logging.getLogger(__name__)


class RankingMethod(Enum):
    """Methods for ranking genes."""

    EFFECT_SIZE = "effect_size"  # |log2FC|
    PVALUE = "pvalue"  # -log10(p_adj)
    COMBINED = "combined"  # |t| as a signed-significance proxy
    VOLCANO = "volcano"  # |log2FC| * -log10(p_adj)


@dataclass
class RankingConfig:
    """Configuration for gene ranking."""

    method: RankingMethod = RankingMethod.EFFECT_SIZE
    top_n: int = 20  # genes listed per direction in the report
    id_column: str = "gene_id"
    score_column: str = "log2_fold_change"


def build_ranked_gene_list(
    table: pd.DataFrame,
    id_column: str = "gene_id",
    score_column: str = "log2_fold_change",
) -> pd.Series:
    """
    Gene-ID keyed scores sorted from most positive to most negative.

    The table is expected in significance order, so when several rows share
    an ID (several symbols mapping to one Entrez gene) the first, most
    significant one is kept.

    Args:
        table: Reconciled top table
        id_column: Column holding the gene identifier used as key
        score_column: Column holding the ranking score

    Returns:
        Series indexed by gene ID, non-increasing, with unique IDs
    """
    for column in (id_column, score_column):
        if column not in table.columns:
            raise KeyError(f"Column '{column}' not found in result table")

    subset = table[[id_column, score_column]]
    subset = subset[subset[id_column].notna() & subset[score_column].notna()]
    subset = subset.drop_duplicates(subset=id_column, keep="first")

    ranked = pd.Series(
        subset[score_column].astype(float).values,
        index=pd.Index(subset[id_column].astype(str).values, name=id_column),
        name=score_column,
    )
    # Stable sort keeps significance order among ties
    ranked = ranked.sort_values(ascending=False, kind="mergesort")

    logger.info(
        "Ranked %d genes by %s (%d rows without an ID or score dropped)",
        len(ranked), score_column, len(table) - len(ranked),
    )
    return ranked


class GeneRanker:
    """
    Ranks genes from a differential expression result.

    Example:
        ranker = GeneRanker()
        up_genes = ranker.get_top_upregulated(de_result, n=10)
    """

    def __init__(self, config: Optional[RankingConfig] = None):
        """
        Initialize the ranker.

        Args:
            config: Ranking configuration (uses defaults if None)
        """
        self.config = config or RankingConfig()

    def rank_genes(
        self,
        result: DEResult,
        method: Optional[RankingMethod] = None,
        top_n: Optional[int] = None,
    ) -> List[GeneResult]:
        """
        Rank all significant genes, up and down combined.

        Args:
            result: DEResult from differential expression analysis
            method: Ranking method (uses config default if None)
            top_n: Number of top genes to return (uses config default if None)
        """
        return self._top(result.upregulated + result.downregulated, method, top_n)

    def get_top_upregulated(
        self,
        result: DEResult,
        n: Optional[int] = None,
        method: Optional[RankingMethod] = None,
    ) -> List[GeneResult]:
        """Top N significant upregulated genes."""
        return self._top(result.upregulated, method, n)

    def get_top_downregulated(
        self,
        result: DEResult,
        n: Optional[int] = None,
        method: Optional[RankingMethod] = None,
    ) -> List[GeneResult]:
        """Top N significant downregulated genes."""
        return self._top(result.downregulated, method, n)

    def _top(
        self,
        genes: List[GeneResult],
        method: Optional[RankingMethod],
        n: Optional[int],
    ) -> List[GeneResult]:
        method = method or self.config.method
        n = n or self.config.top_n
        scored = [(gene, self._calculate_score(gene, method)) for gene in genes]
        scored.sort(key=lambda x: x[1], reverse=True)
        return [gene for gene, _ in scored[:n]]

    def _calculate_score(self, gene: GeneResult, method: RankingMethod) -> float:
        """Calculate ranking score for a gene."""
        log2fc = gene.log2_fold_change
        pvalue = gene.pvalue_adjusted if gene.pvalue_adjusted is not None else 1.0

        # Avoid log(0)
        pvalue = max(pvalue, 1e-300)

        if method == RankingMethod.EFFECT_SIZE:
            return abs(log2fc)

        elif method == RankingMethod.PVALUE:
            return -np.log10(pvalue)

        elif method == RankingMethod.COMBINED:
            return abs(gene.t_statistic) if gene.t_statistic is not None else 0.0

        elif method == RankingMethod.VOLCANO:
            return abs(log2fc) * -np.log10(pvalue)

        return 0.0


def filter_by_thresholds(
    genes: List[GeneResult],
    fdr_threshold: float = 0.05,
    log2fc_threshold: float = 1.0,
) -> List[GeneResult]:
    """
    Filter genes by significance thresholds.

    Args:
        genes: List of GeneResult objects
        fdr_threshold: Maximum adjusted p-value
        log2fc_threshold: Minimum absolute log2 fold change
    """
    return [
        g for g in genes
        if g.pvalue_adjusted is not None
        and g.pvalue_adjusted < fdr_threshold
        and abs(g.log2_fold_change) >= log2fc_threshold
    ]


def separate_by_direction(
    genes: List[GeneResult],
) -> Tuple[List[GeneResult], List[GeneResult]]:
    """Split genes into (upregulated, downregulated)."""
    up = [g for g in genes if g.direction == "up"]
    down = [g for g in genes if g.direction == "down"]
    return up, down
