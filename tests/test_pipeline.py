"""End-to-end tests of the pipeline on a synthetic dataset."""

import json
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from dengue_gex.config import PipelineConfig, load_config
from dengue_gex.enrichment_analyzer import GeneSetBackend
from dengue_gex.errors import DataIntegrityError, DataUnavailableError, EnrichmentServiceError
from dengue_gex.gene_sets import GeneSet
from dengue_gex.pipeline import OUTPUT_FILES, build_report, run_pipeline
from dengue_gex.report_generator import ReportGenerator

from conftest import FakeLoader, make_dataset


def _config(tmp_path=None, **overrides):
    config = PipelineConfig(output_dir=tmp_path or "unused", write_outputs=tmp_path is not None)
    config.enrichment.top_n = 10
    config.enrichment.databases = {"GO": ["GO:BP"]}
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def _planted_backend():
    """GO:BP set holding the Entrez IDs of the ten planted genes plus two others."""
    genes = frozenset(str(5000 + i) for i in range(12))
    gene_sets = {"GO": [GeneSet("GOBP_PLANTED_RESPONSE", "planted response", genes)]}
    return GeneSetBackend(gene_sets, min_set_size=5)


class TestRunPipeline:

    def test_stages(self, fake_loader):
        result = run_pipeline(_config(), loader=fake_loader, enrichment_backend=_planted_backend())

        assert fake_loader.calls == 1
        assert result.was_log_scaled
        assert result.gene_matrix.shape == (60, 16)
        assert len(result.reconciled) == 60
        assert result.reconciled.index.is_unique
        assert result.outputs == {}

        # Planted genes lead the table and are called up
        assert set(result.reconciled.index[:10]) == {f"GENE{i:02d}" for i in range(10)}
        assert result.de_result.n_upregulated == 10
        assert result.de_result.n_downregulated == 0

        # GENE00 has two annotation rows; the first wins
        assert result.reconciled.loc["GENE00", "gene_id"] == "5000"
        # GENE55..59 have no annotation
        assert result.reconciled.loc["GENE57"].isna()["gene_id"]

        assert (np.diff(result.ranked.to_numpy()) <= 0).all()
        assert len(result.ranked) == 55

        terms = result.enrichment.activated.terms
        assert [t.term_id for t in terms] == ["GOBP_PLANTED_RESPONSE"]
        assert result.enrichment_note is None

    def test_enrichment_disabled(self, fake_loader):
        result = run_pipeline(_config(run_enrichment=False), loader=fake_loader)
        assert result.enrichment is None
        assert "disabled" in result.enrichment_note

    def test_enrichment_service_unavailable(self, fake_loader):
        backend = MagicMock()
        backend.name = "gprofiler"
        backend.analyze.side_effect = EnrichmentServiceError("g:Profiler query failed: timeout")

        result = run_pipeline(_config(), loader=fake_loader, enrichment_backend=backend)

        assert result.enrichment is None
        assert "timeout" in result.enrichment_note
        assert result.de_result.n_upregulated == 10

    def test_idempotent(self):
        first = run_pipeline(_config(run_enrichment=False), loader=FakeLoader(make_dataset()))
        second = run_pipeline(_config(run_enrichment=False), loader=FakeLoader(make_dataset()))

        pd.testing.assert_frame_equal(first.contrast.table, second.contrast.table)
        pd.testing.assert_frame_equal(first.reconciled, second.reconciled)
        np.testing.assert_array_equal(
            first.clustering.sample_linkage, second.clustering.sample_linkage
        )
        assert first.clustering.sample_order == second.clustering.sample_order
        pd.testing.assert_series_equal(first.ranked, second.ranked)
        pd.testing.assert_frame_equal(first.pca.scores, second.pca.scores)

    def test_other_contrast(self, fake_loader):
        config = _config(run_enrichment=False)
        config.de.contrast = "DF - control"
        result = run_pipeline(config, loader=fake_loader)
        assert result.de_result.provenance.contrast == "DF - control"
        assert result.de_result.n_upregulated == 0

    def test_loader_errors_propagate(self):
        loader = MagicMock()
        loader.load.side_effect = DataUnavailableError("Could not fetch GDS5093 from GEO")
        with pytest.raises(DataUnavailableError):
            run_pipeline(_config(), loader=loader)

    def test_annotation_integrity_checked(self, fake_loader, monkeypatch):
        def duplicating_join(left, right, left_on, right_on, keep="first"):
            joined = left.merge(right, how="left", left_on=left_on, right_on=right_on)
            return joined.drop(columns=[right_on])

        monkeypatch.setattr("dengue_gex.reconcile.left_join_dedup", duplicating_join)
        with pytest.raises(DataIntegrityError):
            run_pipeline(_config(run_enrichment=False), loader=fake_loader)


class TestOutputs:

    def test_files_written(self, fake_loader, tmp_path):
        result = run_pipeline(_config(tmp_path), loader=fake_loader, enrichment_backend=_planted_backend())

        assert set(result.outputs) == set(OUTPUT_FILES)
        for path in result.outputs.values():
            assert path.exists()
            assert path.stat().st_size > 0

        html = (tmp_path / "report.html").read_text()
        assert "GDS5093" in html
        assert "Sample clustering" in html
        assert "Principal component analysis" in html
        assert "Differential expression: DHF - control" in html
        assert "GOBP_PLANTED_RESPONSE" in html
        assert 'id="volcano"' in html

    def test_de_table_tsv(self, fake_loader, tmp_path):
        run_pipeline(_config(tmp_path, run_enrichment=False), loader=fake_loader)

        table = pd.read_csv(tmp_path / "de_results.tsv", sep="\t", keep_default_na=False)
        assert len(table) == 60
        assert table.columns[0] == "gene"
        assert (table.loc[table["gene"] == "GENE57", "gene_id"] == "NA").all()
        assert not (tmp_path / "enrichment.tsv").exists()

    def test_json(self, fake_loader, tmp_path):
        run_pipeline(_config(tmp_path), loader=fake_loader, enrichment_backend=_planted_backend())

        with open(tmp_path / "results.json") as f:
            data = json.load(f)
        assert data["summary"]["n_upregulated"] == 10
        assert data["provenance"]["dataset"]["accession"] == "GDS5093"
        assert data["configuration"]["de"]["contrast"] == "DHF - control"
        assert data["enrichment"]["summary"]["activated_terms"] == 1
        assert len(data["clustering"]["sample_order"]) == 16

    def test_enrichment_tsv(self, fake_loader, tmp_path):
        run_pipeline(_config(tmp_path), loader=fake_loader, enrichment_backend=_planted_backend())

        lines = (tmp_path / "enrichment.tsv").read_text().splitlines()
        assert lines[0].split("\t")[:3] == ["direction", "database", "source"]
        assert lines[1].startswith("activated\tGO\tGO:BP\tover\tGOBP_PLANTED_RESPONSE")

    def test_report_without_enrichment_mentions_note(self, fake_loader):
        backend = MagicMock()
        backend.name = "gprofiler"
        backend.analyze.side_effect = EnrichmentServiceError("service down")
        result = run_pipeline(_config(), loader=fake_loader, enrichment_backend=backend)

        html = build_report(result).render()

        assert "service down" in html

    def test_console_groups_in_disease_order(self, fake_loader):
        result = run_pipeline(_config(run_enrichment=False), loader=fake_loader)

        summary = ReportGenerator().to_console_summary(result.de_result)

        lines = summary.splitlines()
        start = lines.index("SAMPLES") + 1
        block = [line.strip() for line in lines[start:start + 4]]
        assert block == ["control: 4", "DF: 4", "DHF: 4", "convalescent: 4"]


class TestConfig:

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DENGUE_GEX_ACCESSION", "GDS9999")
        monkeypatch.setenv("DENGUE_GEX_OUTPUT_DIR", str(tmp_path / "out"))
        config = load_config(env_file=tmp_path / "missing.env")
        assert config.accession == "GDS9999"
        assert config.output_dir == tmp_path / "out"

    def test_dotenv_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("DENGUE_GEX_CACHE_DIR", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text(f"DENGUE_GEX_CACHE_DIR={tmp_path / 'cache'}\n")
        config = load_config(env_file=env_file)
        assert config.cache_dir == tmp_path / "cache"

    def test_to_dict(self):
        config = PipelineConfig()
        data = config.to_dict()
        assert data["de"]["contrast"] == "DHF - control"
        assert data["enrichment"]["databases"]["GO"] == ["GO:BP", "GO:MF", "GO:CC"]
