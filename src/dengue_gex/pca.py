"""
Principal component analysis of the aggregated expression matrix.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

logger = logging.getLogger(__name__)


@dataclass
class PCAConfig:
    """PCA settings. ``scale=False`` centers genes only."""

    n_components: int = 5
    scale: bool = False


@dataclass
class PCAResult:
    """Sample scores, gene loadings and explained variance."""

    scores: pd.DataFrame  # samples x PCs
    loadings: pd.DataFrame  # genes x PCs
    explained_variance_ratio: pd.Series  # per PC

    @property
    def n_components(self) -> int:
        return self.scores.shape[1]

    def axis_label(self, component: str) -> str:
        """Axis title like ``PC1 (23.4%)``."""
        return f"{component} ({self.explained_variance_ratio[component] * 100:.1f}%)"

    def top_loadings(self, component: str = "PC1", n: int = 10) -> pd.Series:
        """Genes with the largest absolute loading on a component."""
        col = self.loadings[component]
        order = col.abs().sort_values(ascending=False, kind="mergesort").index[:n]
        return col.loc[order]


def run_pca(matrix: pd.DataFrame, config: Optional[PCAConfig] = None) -> PCAResult:
    """
    Compute principal components over samples.

    Args:
        matrix: Gene x sample log-expression matrix
        config: PCA settings

    Returns:
        PCAResult; genes with missing values are excluded
    """
    config = config or PCAConfig()

    complete = matrix.dropna(axis=0, how="any")
    if complete.empty:
        raise ValueError("No genes without missing values available for PCA")

    X = complete.to_numpy(dtype=float).T  # samples x genes
    if config.scale:
        X = StandardScaler().fit_transform(X)

    n_components = max(1, min(config.n_components, X.shape[0], X.shape[1]))
    pca = PCA(n_components=n_components, svd_solver="full")
    scores = pca.fit_transform(X)

    components = [f"PC{i + 1}" for i in range(n_components)]
    result = PCAResult(
        scores=pd.DataFrame(scores, index=complete.columns, columns=components),
        loadings=pd.DataFrame(pca.components_.T, index=complete.index, columns=components),
        explained_variance_ratio=pd.Series(
            np.asarray(pca.explained_variance_ratio_), index=components, name="explained_variance_ratio"
        ),
    )

    logger.info(
        "PCA on %d genes: %s",
        len(complete),
        ", ".join(f"{c}={v:.1%}" for c, v in result.explained_variance_ratio.items()),
    )
    return result
