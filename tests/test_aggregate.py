"""Tests for the log-scale check and probe collapsing."""

import numpy as np
import pandas as pd
import pytest

from dengue_gex.aggregate import collapse_probes, detect_log_scale, ensure_log2
from dengue_gex.pipeline import aggregate_dataset

from conftest import make_dataset


def _probe_table():
    return pd.DataFrame(
        {
            "IDENTIFIER": ["A", "A", "B", None, "C", "C"],
            "GSM1": [1.0, 3.0, 5.0, 9.0, 2.0, np.nan],
            "GSM2": [2.0, 4.0, 6.0, 9.0, np.nan, np.nan],
        },
        index=["p1", "p2", "p3", "p4", "p5", "p6"],
    )


class TestCollapseProbes:

    def test_one_row_per_key(self):
        collapsed = collapse_probes(_probe_table())
        assert list(collapsed.index) == ["A", "B", "C"]
        assert collapsed.index.is_unique

    def test_values_are_means(self):
        collapsed = collapse_probes(_probe_table())
        assert collapsed.loc["A", "GSM1"] == pytest.approx(2.0)
        assert collapsed.loc["A", "GSM2"] == pytest.approx(3.0)
        assert collapsed.loc["B", "GSM1"] == pytest.approx(5.0)

    def test_missing_values_skipped(self):
        """NaN probes do not pull the mean; all-NaN stays NaN."""
        collapsed = collapse_probes(_probe_table())
        assert collapsed.loc["C", "GSM1"] == pytest.approx(2.0)
        assert np.isnan(collapsed.loc["C", "GSM2"])

    def test_null_keys_dropped(self):
        collapsed = collapse_probes(_probe_table())
        assert 9.0 not in collapsed.to_numpy()

    def test_missing_key_column(self):
        with pytest.raises(KeyError):
            collapse_probes(_probe_table(), key="Gene symbol")

    def test_matches_groupby_mean_on_random_data(self):
        rng = np.random.RandomState(0)
        keys = rng.choice(list("ABCDEFGH"), size=200)
        table = pd.DataFrame(rng.normal(size=(200, 4)), columns=["s1", "s2", "s3", "s4"])
        table.insert(0, "IDENTIFIER", keys)

        collapsed = collapse_probes(table)

        assert len(collapsed) == len(set(keys))
        for key in collapsed.index:
            expected = table.loc[table["IDENTIFIER"] == key, ["s1", "s2", "s3", "s4"]].mean()
            np.testing.assert_allclose(collapsed.loc[key].to_numpy(), expected.to_numpy())


class TestLogScale:

    def test_log_values_detected(self):
        rng = np.random.RandomState(1)
        matrix = pd.DataFrame(rng.normal(8, 1.5, size=(500, 6)))
        assert detect_log_scale(matrix)

    def test_linear_values_detected(self):
        rng = np.random.RandomState(1)
        matrix = pd.DataFrame(2 ** rng.normal(8, 1.5, size=(500, 6)))
        assert not detect_log_scale(matrix)

    def test_all_missing_counts_as_log(self):
        assert detect_log_scale(pd.DataFrame([[np.nan, np.nan]]))

    def test_ensure_log2_transforms_linear(self):
        matrix = pd.DataFrame({"s1": [1024.0, 0.0, 256.0], "s2": [4096.0, 2.0, 8.0]})
        logged = ensure_log2(matrix)
        assert logged.loc[0, "s1"] == pytest.approx(10.0)
        assert logged.loc[0, "s2"] == pytest.approx(12.0)
        # Non-positive values cannot be logged
        assert np.isnan(logged.loc[1, "s1"])

    def test_ensure_log2_leaves_log_data(self):
        rng = np.random.RandomState(2)
        matrix = pd.DataFrame(rng.normal(7, 1, size=(50, 4)))
        pd.testing.assert_frame_equal(ensure_log2(matrix), matrix)


class TestAggregateDataset:

    def test_log_dataset(self):
        dataset = make_dataset()
        was_log, genes = aggregate_dataset(dataset)
        assert was_log
        assert genes.shape == (60, dataset.n_samples)
        assert list(genes.columns) == dataset.sample_ids

    def test_linear_dataset_is_logged(self):
        log_ds = make_dataset(seed=3)
        lin_ds = make_dataset(seed=3, linear=True)

        was_log, logged = aggregate_dataset(lin_ds)
        _, reference = aggregate_dataset(log_ds)

        assert not was_log
        # Probes are logged before they are averaged
        np.testing.assert_allclose(logged.to_numpy(), reference.to_numpy() + 5, rtol=1e-9)
