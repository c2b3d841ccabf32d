"""Tests for hierarchical clustering and PCA."""

import numpy as np
import pandas as pd
import pytest

from dengue_gex.clustering import (
    ClusteringAnalyzer,
    ClusteringConfig,
    sample_distance_matrix,
    scale_rows,
    top_variance_genes,
)
from dengue_gex.pca import PCAConfig, run_pca
from dengue_gex.pipeline import aggregate_dataset

from conftest import make_dataset


def _make_expression(n_genes=100, n_samples=12, seed=42):
    rng = np.random.RandomState(seed)
    genes = [f"GENE{i}" for i in range(n_genes)]
    samples = [f"GSM{i}" for i in range(n_samples)]
    return pd.DataFrame(rng.normal(7, 1, size=(n_genes, n_samples)), index=genes, columns=samples)


class TestDistances:

    def test_symmetric_zero_diagonal(self):
        distances = sample_distance_matrix(_make_expression())
        values = distances.to_numpy()
        np.testing.assert_allclose(values, values.T)
        np.testing.assert_allclose(np.diag(values), 0.0)
        assert list(distances.index) == list(distances.columns)

    def test_other_metric(self):
        distances = sample_distance_matrix(_make_expression(), metric="correlation")
        assert (distances.to_numpy() >= 0).all()

    def test_missing_genes_ignored(self):
        matrix = _make_expression()
        with_nan = matrix.copy()
        with_nan.iloc[0, 0] = np.nan
        expected = sample_distance_matrix(matrix.iloc[1:])
        pd.testing.assert_frame_equal(sample_distance_matrix(with_nan), expected)


class TestTopVarianceGenes:

    def test_highest_variance_first(self):
        matrix = _make_expression()
        matrix.loc["GENE5"] *= 10
        matrix.loc["GENE9"] *= 5
        assert top_variance_genes(matrix, 2) == ["GENE5", "GENE9"]

    def test_n_larger_than_matrix(self):
        assert len(top_variance_genes(_make_expression(n_genes=10), 50)) == 10


class TestScaleRows:

    def test_zero_mean_unit_sd(self):
        scaled = scale_rows(_make_expression())
        np.testing.assert_allclose(scaled.mean(axis=1), 0.0, atol=1e-10)
        np.testing.assert_allclose(scaled.std(axis=1), 1.0)

    def test_constant_row(self):
        matrix = pd.DataFrame([[3.0, 3.0, 3.0], [1.0, 2.0, 3.0]])
        scaled = scale_rows(matrix)
        assert (scaled.iloc[0] == 0).all()


class TestClusteringAnalyzer:

    def test_result_structure(self):
        _, genes = aggregate_dataset(make_dataset())
        meta = make_dataset().sample_metadata
        config = ClusteringConfig(top_variance_genes=20, n_clusters=4)

        result = ClusteringAnalyzer(config).analyze(genes, meta)

        assert sorted(result.sample_order) == sorted(genes.columns)
        assert 1 <= result.n_clusters <= 4
        assert len(result.top_genes) == 20
        assert result.heatmap_matrix.shape == (20, genes.shape[1])
        assert list(result.heatmap_matrix.columns) == result.sample_order
        assert result.sample_linkage.shape == (genes.shape[1] - 1, 4)
        assert result.cluster_table.to_numpy().sum() == genes.shape[1]

    def test_planted_genes_dominate_variance(self):
        _, genes = aggregate_dataset(make_dataset())
        result = ClusteringAnalyzer(ClusteringConfig(top_variance_genes=10)).analyze(genes)
        assert set(result.top_genes) == {f"GENE{i:02d}" for i in range(10)}
        assert result.cluster_table.empty

    def test_single_gene_heatmap(self):
        result = ClusteringAnalyzer(ClusteringConfig(top_variance_genes=1)).analyze(_make_expression())
        assert result.gene_linkage is None
        assert len(result.gene_order) == 1

    def test_requires_two_samples(self):
        with pytest.raises(ValueError):
            ClusteringAnalyzer().analyze(_make_expression(n_samples=1))

    def test_deterministic(self):
        matrix = _make_expression()
        first = ClusteringAnalyzer().analyze(matrix)
        second = ClusteringAnalyzer().analyze(matrix)
        np.testing.assert_array_equal(first.sample_linkage, second.sample_linkage)
        assert first.sample_order == second.sample_order
        pd.testing.assert_series_equal(first.sample_clusters, second.sample_clusters)


class TestPCA:

    def test_shapes(self):
        matrix = _make_expression()
        result = run_pca(matrix, PCAConfig(n_components=5))
        assert result.scores.shape == (12, 5)
        assert result.loadings.shape == (100, 5)
        assert list(result.scores.index) == list(matrix.columns)
        assert result.n_components == 5

    def test_explained_variance_ordered(self):
        result = run_pca(_make_expression())
        ratio = result.explained_variance_ratio.to_numpy()
        assert (np.diff(ratio) <= 1e-12).all()
        assert 0 < ratio.sum() <= 1 + 1e-9

    def test_components_capped_by_samples(self):
        result = run_pca(_make_expression(n_samples=3), PCAConfig(n_components=10))
        assert result.n_components == 3

    def test_missing_genes_excluded(self):
        matrix = _make_expression()
        matrix.iloc[:5, 0] = np.nan
        result = run_pca(matrix)
        assert len(result.loadings) == 95

    def test_all_missing(self):
        matrix = _make_expression()
        matrix.iloc[:, 0] = np.nan
        with pytest.raises(ValueError):
            run_pca(matrix)

    def test_separates_planted_group(self):
        """The DHF shift is the dominant axis of variation."""
        dataset = make_dataset(effect=4.0)
        _, genes = aggregate_dataset(dataset)
        result = run_pca(genes, PCAConfig(n_components=3, scale=True))

        dhf = dataset.sample_metadata["group"] == "DHF"
        pc1 = result.scores["PC1"]
        assert pc1[dhf].min() > pc1[~dhf].max() or pc1[dhf].max() < pc1[~dhf].min()
        assert result.axis_label("PC1").startswith("PC1 (")
        assert len(result.top_loadings("PC1", 5)) == 5
