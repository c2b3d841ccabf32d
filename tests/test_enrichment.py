"""Tests for gene set loading and over-representation analysis."""

from unittest.mock import MagicMock, patch

import pandas as pd
import pytest
import requests

from dengue_gex.enrichment_analyzer import (
    EnrichmentAnalyzer,
    EnrichmentConfig,
    GeneSetBackend,
    GProfilerBackend,
    run_enrichment,
)
from dengue_gex.errors import EnrichmentServiceError
from dengue_gex.gene_sets import GeneSet, load_gmt, parse_gmt, source_for

BACKGROUND = [str(i) for i in range(1, 201)]


def _gene_set(name, genes, description=""):
    return GeneSet(name=name, description=description, genes=frozenset(str(g) for g in genes))


def _ranked(n=200):
    """IDs "1".."n" scored from +2 down to -2."""
    scores = [2.0 - 4.0 * i / (n - 1) for i in range(n)]
    return pd.Series(scores, index=pd.Index([str(i) for i in range(1, n + 1)], name="gene_id"))


def _gprofiler_row(**overrides):
    row = {
        "native": "GO:0051607",
        "name": "defense response to virus",
        "source": "GO:BP",
        "p_value": 1e-6,
        "term_size": 40,
        "query_size": 5,
        "intersection_size": 3,
        "precision": 0.6,
        "recall": 0.075,
        "intersections": [["IEA"], [], ["TAS"], ["IDA"], []],
    }
    row.update(overrides)
    return row


class TestParseGmt:

    def test_parses_sets(self):
        lines = [
            "# comment",
            "GOBP_DEFENSE_RESPONSE_TO_VIRUS\thttp://www.gsea-msigdb.org/x\t3439\t3440\t3441",
            "",
            "hsa04620\tToll-like receptor signaling pathway\t7097\t7098",
        ]
        sets = parse_gmt(lines)
        assert [s.name for s in sets] == ["GOBP_DEFENSE_RESPONSE_TO_VIRUS", "hsa04620"]
        assert sets[0].size == 3
        assert sets[0].label == "GOBP_DEFENSE_RESPONSE_TO_VIRUS"
        assert sets[1].label == "Toll-like receptor signaling pathway"

    def test_skips_malformed_and_duplicates(self):
        lines = ["onlyname", "A\tdesc\t1\t2", "A\tother\t3", "B\tdesc\t"]
        sets = parse_gmt(lines)
        assert [s.name for s in sets] == ["A", "B"]
        assert sets[0].genes == frozenset({"1", "2"})
        assert sets[1].size == 0

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "kegg.gmt"
        path.write_text("hsa04620\tTLR\t1\t2\t3\nhsa04630\tJAK-STAT\t4\t5\n")
        sets = load_gmt(path)
        assert len(sets) == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_gmt(tmp_path / "absent.gmt")

    def test_load_from_url(self):
        session = MagicMock()
        session.get.return_value.text = "hsa04620\tTLR\t1\t2\n"
        sets = load_gmt("https://example.org/kegg.gmt", session=session)
        session.get.assert_called_once()
        session.get.return_value.raise_for_status.assert_called_once()
        assert sets[0].name == "hsa04620"

    def test_source_for(self):
        assert source_for("GO", "GOBP_X") == "GO:BP"
        assert source_for("GO", "gomf_y") == "GO:MF"
        assert source_for("GO", "OTHER") == "GO"
        assert source_for("KEGG", "GOBP_X") == "KEGG"


class TestGeneSetBackend:

    def _backend(self, **kwargs):
        sets = {
            "GO": [
                _gene_set("GOBP_PLANTED", range(1, 21)),
                _gene_set("GOBP_DEPLETED", range(101, 161)),
                _gene_set("GOCC_TINY", range(1, 4)),
            ],
        }
        return GeneSetBackend(sets, **kwargs)

    def _run(self, backend, genes, underrepresentation=False, sources=None):
        return backend.analyze(
            genes=genes,
            background=BACKGROUND,
            database="GO",
            sources=sources if sources is not None else ["GO:BP", "GO:MF", "GO:CC"],
            organism="hsapiens",
            threshold=0.05,
            correction="fdr",
            underrepresentation=underrepresentation,
        )

    def test_overrepresented_set_found(self):
        terms, n_mapped = self._run(self._backend(), [str(i) for i in range(1, 21)])
        assert n_mapped == 20
        assert [t.term_id for t in terms] == ["GOBP_PLANTED"]
        term = terms[0]
        assert term.source == "GO:BP"
        assert term.intersection_size == 20
        assert term.precision == pytest.approx(1.0)
        assert term.recall == pytest.approx(1.0)
        assert term.genes[0] == "1"
        assert term.pvalue <= term.pvalue_adjusted < 0.05

    def test_underrepresented_set_found(self):
        terms, _ = self._run(self._backend(), [str(i) for i in range(1, 21)], underrepresentation=True)
        assert [t.term_id for t in terms] == ["GOBP_DEPLETED"]
        assert terms[0].representation == "under"
        assert terms[0].intersection_size == 0

    def test_set_size_limits(self):
        backend = self._backend(min_set_size=1, max_set_size=30)
        terms, _ = self._run(backend, [str(i) for i in range(1, 21)])
        assert "GOBP_DEPLETED" not in {t.term_id for t in terms}
        assert "GOCC_TINY" in {t.term_id for t in terms}

    def test_source_filter(self):
        backend = self._backend(min_set_size=1)
        terms, _ = self._run(backend, [str(i) for i in range(1, 21)], sources=["GO:CC"])
        assert {t.source for t in terms} == {"GO:CC"}

    def test_genes_outside_background_ignored(self):
        terms, n_mapped = self._run(self._backend(), ["999", "1000"])
        assert terms == []
        assert n_mapped == 0

    def test_unknown_database_skipped(self):
        terms, n_mapped = self._backend().analyze(
            ["1"], BACKGROUND, "KEGG", ["KEGG"], "hsapiens", 0.05, "fdr"
        )
        assert terms == [] and n_mapped == 0

    def test_unsupported_correction(self):
        with pytest.raises(ValueError):
            self._backend().analyze(["1"], BACKGROUND, "GO", [], "hsapiens", 0.05, "g_SCS")

    def test_from_files(self, tmp_path):
        path = tmp_path / "go.gmt"
        path.write_text("GOBP_A\tx\t1\t2\t3\n")
        backend = GeneSetBackend.from_files({"GO": str(path)}, min_set_size=2)
        assert backend.gene_sets["GO"][0].name == "GOBP_A"
        assert backend.min_set_size == 2


class TestEnrichmentAnalyzer:

    def _analyzer(self, **config):
        sets = {
            "KEGG": [
                _gene_set("hsa04620", range(1, 16), "Toll-like receptor signaling pathway"),
                _gene_set("hsa04110", range(186, 201), "Cell cycle"),
                _gene_set("hsa00010", range(60, 140), "Glycolysis"),
            ],
        }
        defaults = dict(databases={"KEGG": ["KEGG"]}, top_n=15)
        defaults.update(config)
        return EnrichmentAnalyzer(EnrichmentConfig(**defaults), backend=GeneSetBackend(sets))

    def test_split_ranked(self):
        activated, suppressed = self._analyzer().split_ranked(_ranked())
        assert activated[:3] == ["1", "2", "3"]
        assert suppressed[:3] == ["200", "199", "198"]
        assert len(activated) == len(suppressed) == 15

    def test_both_directions(self):
        result = self._analyzer().analyze(_ranked())

        assert [t.term_id for t in result.activated.terms] == ["hsa04620"]
        assert [t.term_id for t in result.suppressed.terms] == ["hsa04110"]
        assert result.activated.terms_for("KEGG") == result.activated.terms
        assert result.provenance.backend == "gene_sets"
        assert result.total_terms == 2
        assert not result.is_empty

    def test_empty_result_is_valid(self):
        ranked = pd.Series([1.0] * 100 + [-1.0] * 100, index=[str(i) for i in range(300, 500)])
        result = self._analyzer().analyze(ranked)
        assert result.is_empty
        assert result.to_dict()["summary"]["total_significant_terms"] == 0

    def test_too_few_genes_skips_backend(self):
        backend = MagicMock()
        backend.name = "mock"
        ranked = pd.Series([2.0, 1.0, -1.0, -2.0], index=["1", "2", "3", "4"])
        analyzer = EnrichmentAnalyzer(EnrichmentConfig(min_genes=5), backend=backend)

        result = analyzer.analyze(ranked)

        backend.analyze.assert_not_called()
        assert result.activated.n_genes_mapped == 0
        assert result.is_empty

    def test_underrepresentation_runs_both_modes(self):
        backend = MagicMock()
        backend.name = "mock"
        backend.analyze.return_value = ([], 10)
        config = EnrichmentConfig(
            databases={"GO": ["GO:BP"], "KEGG": ["KEGG"]},
            include_underrepresentation=True,
        )

        EnrichmentAnalyzer(config, backend=backend).analyze(_ranked())

        # 2 directions x 2 databases x 2 modes
        assert backend.analyze.call_count == 8
        modes = {c.kwargs["underrepresentation"] for c in backend.analyze.call_args_list}
        assert modes == {False, True}

    def test_default_backend_selection(self, tmp_path):
        assert isinstance(EnrichmentAnalyzer().backend, GProfilerBackend)

        path = tmp_path / "kegg.gmt"
        path.write_text("hsa04620\tTLR\t1\t2\n")
        analyzer = EnrichmentAnalyzer(EnrichmentConfig(gene_set_files={"KEGG": str(path)}))
        assert isinstance(analyzer.backend, GeneSetBackend)


class TestGProfilerBackend:

    def _analyze(self, backend, genes=None, **kwargs):
        return backend.analyze(
            genes=genes or ["3439", "3440", "3441", "3442", "3443"],
            background=BACKGROUND,
            database="GO",
            sources=["GO:BP"],
            organism="hsapiens",
            threshold=0.05,
            correction="fdr",
            **kwargs,
        )

    @patch.object(GProfilerBackend, "_get_client")
    def test_query_parameters(self, mock_client):
        mock_client.return_value.profile.return_value = [_gprofiler_row()]
        backend = GProfilerBackend()

        terms, n_mapped = self._analyze(backend)

        kwargs = mock_client.return_value.profile.call_args.kwargs
        assert kwargs["ordered"] is True
        assert kwargs["numeric_namespace"] == "ENTREZGENE_ACC"
        assert kwargs["domain_scope"] == "custom"
        assert kwargs["background"] == BACKGROUND
        assert kwargs["measure_underrepresentation"] is False
        assert n_mapped == 5
        assert terms[0].term_id == "GO:0051607"
        assert terms[0].genes == ["3439", "3441", "3442"]
        assert terms[0].pvalue_adjusted == terms[0].pvalue

    @patch.object(GProfilerBackend, "_get_client")
    def test_underrepresentation_flag(self, mock_client):
        mock_client.return_value.profile.return_value = [_gprofiler_row(intersections=[])]
        terms, _ = self._analyze(GProfilerBackend(), underrepresentation=True)
        assert mock_client.return_value.profile.call_args.kwargs["measure_underrepresentation"] is True
        assert terms[0].representation == "under"
        assert terms[0].genes == []

    @patch.object(GProfilerBackend, "_get_client")
    def test_no_results(self, mock_client):
        mock_client.return_value.profile.return_value = []
        assert self._analyze(GProfilerBackend()) == ([], 0)

    @patch.object(GProfilerBackend, "_get_client")
    def test_connection_error_wrapped(self, mock_client):
        mock_client.return_value.profile.side_effect = requests.ConnectionError("unreachable")
        with pytest.raises(EnrichmentServiceError, match="unreachable"):
            self._analyze(GProfilerBackend())

    @patch.object(GProfilerBackend, "_get_client")
    def test_rejected_query_wrapped(self, mock_client):
        mock_client.return_value.profile.side_effect = AssertionError("Request failed 500")
        with pytest.raises(EnrichmentServiceError):
            self._analyze(GProfilerBackend())

    def test_empty_query_skips_service(self):
        backend = GProfilerBackend()
        with patch.object(backend, "_get_client") as mock_client:
            assert backend.analyze([], BACKGROUND, "GO", ["GO:BP"], "hsapiens", 0.05, "fdr") == ([], 0)
            mock_client.assert_not_called()

    @patch.object(GProfilerBackend, "_get_client")
    def test_run_enrichment_convenience(self, mock_client):
        mock_client.return_value.profile.return_value = [_gprofiler_row(intersections=[])]

        result = run_enrichment(_ranked(), top_n=10, databases={"GO": ["GO:BP"]})

        assert result.provenance.backend == "gprofiler"
        assert result.activated.n_terms == 1
        assert result.suppressed.n_terms == 1
