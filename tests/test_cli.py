"""Tests for the click command line (analysis steps are mocked or run offline)."""

from pathlib import Path
from unittest.mock import MagicMock, patch

from click.testing import CliRunner

from dengue_gex.cli import apply_overrides, cli
from dengue_gex.config import PipelineConfig
from dengue_gex.errors import DataUnavailableError
from dengue_gex.pipeline import run_pipeline

from conftest import FakeLoader, make_dataset


def _offline_pipeline(config):
    return run_pipeline(config, loader=FakeLoader(make_dataset()))


class TestApplyOverrides:

    def test_values_applied(self, tmp_path):
        config = apply_overrides(
            PipelineConfig(),
            accession="GDS9999",
            output_dir=tmp_path,
            contrast="DF - control",
            fdr=0.1,
            n_clusters=3,
            gene_sets={"KEGG": "kegg.gmt"},
            no_enrichment=True,
        )
        assert config.accession == "GDS9999"
        assert config.output_dir == Path(tmp_path)
        assert config.de.contrast == "DF - control"
        assert config.de.fdr_threshold == 0.1
        assert config.clustering.n_clusters == 3
        assert config.enrichment.gene_set_files == {"KEGG": "kegg.gmt"}
        assert config.run_enrichment is False

    def test_defaults_untouched(self):
        config = apply_overrides(PipelineConfig())
        assert config.accession == "GDS5093"
        assert config.de.contrast == "DHF - control"
        assert config.run_enrichment is True


class TestReportCommand:

    @patch("dengue_gex.cli.run_pipeline")
    def test_success(self, mock_run, tmp_path):
        mock_run.side_effect = _offline_pipeline

        result = CliRunner().invoke(
            cli, ["report", "--no-enrichment", "--output-dir", str(tmp_path)]
        )

        assert result.exit_code == 0, result.output
        assert "GDS5093" in result.output
        assert str(tmp_path / "report.html") in result.output
        assert (tmp_path / "de_results.tsv").exists()

        config = mock_run.call_args[0][0]
        assert config.run_enrichment is False
        assert config.output_dir == tmp_path

    @patch("dengue_gex.cli.run_pipeline")
    def test_analysis_error_reported(self, mock_run):
        mock_run.side_effect = DataUnavailableError("boom")

        result = CliRunner().invoke(cli, ["report"])

        assert result.exit_code != 0
        assert "boom" in result.output

    @patch("dengue_gex.cli.run_pipeline")
    def test_bad_contrast_reported(self, mock_run):
        mock_run.side_effect = ValueError("Unknown group 'severe'")

        result = CliRunner().invoke(cli, ["report", "--contrast", "severe - control"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_bad_gene_sets_option(self):
        result = CliRunner().invoke(cli, ["report", "--gene-sets", "nope"])
        assert result.exit_code == 2
        assert "DB=PATH" in result.output

    def test_fdr_range_checked(self):
        result = CliRunner().invoke(cli, ["report", "--fdr", "1.5"])
        assert result.exit_code == 2


class TestFetchCommand:

    @patch("dengue_gex.cli.GEODataLoader")
    def test_summary(self, mock_loader_cls, tmp_path):
        loader = MagicMock()
        loader.load.return_value = make_dataset()
        mock_loader_cls.return_value = loader

        result = CliRunner().invoke(cli, ["fetch", "--cache-dir", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "GDS5093" in result.output
        assert "Samples: 16" in result.output
        assert "DHF: 4" in result.output
        loader.load.assert_called_once_with("GDS5093")
        assert mock_loader_cls.call_args.kwargs["cache_dir"] == tmp_path

    @patch("dengue_gex.cli.GEODataLoader")
    def test_unavailable(self, mock_loader_cls):
        mock_loader_cls.return_value.load.side_effect = DataUnavailableError("no network")

        result = CliRunner().invoke(cli, ["fetch"])

        assert result.exit_code == 1
        assert "no network" in result.output
