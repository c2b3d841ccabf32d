"""
Unsupervised clustering of samples and high-variance genes.

Builds the pairwise sample distance matrix, hierarchical clusterings over
samples and over the most variable genes, and the row-scaled matrix shown
in the heatmap.

Example:
    analyzer = ClusteringAnalyzer(ClusteringConfig(linkage_method="average"))
    result = analyzer.analyze(gene_matrix, sample_metadata)
    print(result.cluster_table)
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, leaves_list, linkage
from scipy.spatial.distance import pdist, squareform

logger = logging.getLogger(__name__)


@dataclass
class ClusteringConfig:
    """
    Configuration for hierarchical clustering.

    Attributes:
        distance_metric: Any scipy ``pdist`` metric
        linkage_method: scipy linkage method (complete, average, ward, ...)
        top_variance_genes: Genes kept for the gene clustering and heatmap
        n_clusters: Flat clusters cut from the sample tree
        scale_rows: Z-score heatmap rows (per gene)
    """

    distance_metric: str = "euclidean"
    linkage_method: str = "complete"
    top_variance_genes: int = 50
    n_clusters: int = 4
    scale_rows: bool = True


@dataclass
class ClusteringResult:
    """Distances, trees and heatmap matrix for one expression matrix."""

    distance_matrix: pd.DataFrame
    sample_linkage: np.ndarray
    sample_order: List[str]
    sample_clusters: pd.Series
    top_genes: List[str]
    gene_linkage: Optional[np.ndarray]
    gene_order: List[str]
    heatmap_matrix: pd.DataFrame
    cluster_table: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def n_clusters(self) -> int:
        return int(self.sample_clusters.nunique())


def _complete_rows(matrix: pd.DataFrame) -> pd.DataFrame:
    complete = matrix.dropna(axis=0, how="any")
    if len(complete) < len(matrix):
        logger.debug("Clustering on %d of %d genes without missing values", len(complete), len(matrix))
    return complete


def sample_distance_matrix(matrix: pd.DataFrame, metric: str = "euclidean") -> pd.DataFrame:
    """Square, symmetric sample x sample distance matrix."""
    values = _complete_rows(matrix).to_numpy(dtype=float).T
    distances = squareform(pdist(values, metric=metric))
    return pd.DataFrame(distances, index=matrix.columns, columns=matrix.columns)


def top_variance_genes(matrix: pd.DataFrame, n: int) -> List[str]:
    """The ``n`` genes with the highest variance across samples."""
    variances = matrix.var(axis=1, skipna=True).dropna()
    # Stable sort keeps gene order for ties
    ordered = variances.sort_values(ascending=False, kind="mergesort")
    return list(ordered.index[:n])


def scale_rows(matrix: pd.DataFrame) -> pd.DataFrame:
    """Z-score each row; constant rows become zeros."""
    centered = matrix.sub(matrix.mean(axis=1), axis=0)
    std = matrix.std(axis=1).replace(0, np.nan)
    return centered.div(std, axis=0).fillna(0.0)


def cluster_samples(matrix: pd.DataFrame, config: ClusteringConfig) -> np.ndarray:
    """Linkage matrix over samples (columns)."""
    values = _complete_rows(matrix).to_numpy(dtype=float).T
    return linkage(values, method=config.linkage_method, metric=config.distance_metric)


def cluster_genes(matrix: pd.DataFrame, config: ClusteringConfig) -> Optional[np.ndarray]:
    """Linkage matrix over genes (rows); None when fewer than two genes."""
    complete = _complete_rows(matrix)
    if len(complete) < 2:
        return None
    return linkage(
        complete.to_numpy(dtype=float),
        method=config.linkage_method,
        metric=config.distance_metric,
    )


class ClusteringAnalyzer:
    """Runs sample and gene clustering with a shared configuration."""

    def __init__(self, config: Optional[ClusteringConfig] = None):
        self.config = config or ClusteringConfig()

    def analyze(
        self,
        matrix: pd.DataFrame,
        sample_metadata: Optional[pd.DataFrame] = None,
    ) -> ClusteringResult:
        """
        Cluster samples and the top-variance genes.

        Args:
            matrix: Gene x sample log-expression matrix
            sample_metadata: Optional metadata with a disease_state column,
                used for the cluster cross-tabulation

        Returns:
            ClusteringResult
        """
        if matrix.shape[1] < 2:
            raise ValueError("At least two samples are required for clustering")

        cfg = self.config
        distances = sample_distance_matrix(matrix, cfg.distance_metric)
        sample_tree = cluster_samples(matrix, cfg)
        sample_order = [matrix.columns[i] for i in leaves_list(sample_tree)]

        n_clusters = max(1, min(cfg.n_clusters, matrix.shape[1]))
        labels = fcluster(sample_tree, t=n_clusters, criterion="maxclust")
        clusters = pd.Series(labels, index=matrix.columns, name="cluster")

        genes = top_variance_genes(matrix, cfg.top_variance_genes)
        subset = _complete_rows(matrix.loc[genes])
        gene_tree = cluster_genes(subset, cfg)
        if gene_tree is not None:
            gene_order = [subset.index[i] for i in leaves_list(gene_tree)]
        else:
            gene_order = list(subset.index)

        heatmap = subset.loc[gene_order, sample_order]
        if cfg.scale_rows:
            heatmap = scale_rows(heatmap)

        cluster_table = pd.DataFrame()
        if sample_metadata is not None and "disease_state" in sample_metadata.columns:
            cluster_table = pd.crosstab(
                clusters,
                sample_metadata.loc[matrix.columns, "disease_state"],
            )

        logger.info(
            "Clustered %d samples into %d clusters; heatmap of %d genes",
            matrix.shape[1], clusters.nunique(), len(gene_order),
        )

        return ClusteringResult(
            distance_matrix=distances,
            sample_linkage=sample_tree,
            sample_order=sample_order,
            sample_clusters=clusters,
            top_genes=genes,
            gene_linkage=gene_tree,
            gene_order=gene_order,
            heatmap_matrix=heatmap,
            cluster_table=cluster_table,
        )
