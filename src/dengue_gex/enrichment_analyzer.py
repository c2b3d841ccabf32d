"""
Over-representation analysis of the ranked gene list.

Tests the top (activated) and bottom (suppressed) of the effect-size ranking
against Gene Ontology and KEGG, using the whole ranked list as background.
Two backends are available: g:Profiler (default, network) and a local
hypergeometric test over GMT gene sets.

Example:
    from dengue_gex.enrichment_analyzer import EnrichmentAnalyzer, EnrichmentConfig

    config = EnrichmentConfig(top_n=150, include_underrepresentation=True)
    analyzer = EnrichmentAnalyzer(config=config)
    result = analyzer.analyze(ranked_genes)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import pandas as pd
import requests
from scipy.stats import hypergeom
from statsmodels.stats.multitest import multipletests

from .de_result import (
    DirectionEnrichment,
    EnrichedTerm,
    EnrichmentProvenance,
    EnrichmentResult,
)
from .errors import EnrichmentServiceError
from .gene_sets import GeneSet, create_session, load_gmt, source_for

logger = logging.getLogger(__name__)

DEFAULT_DATABASES: Dict[str, List[str]] = {
    "GO": ["GO:BP", "GO:MF", "GO:CC"],
    "KEGG": ["KEGG"],
}

# correction_method -> statsmodels multipletests method (local backend)
LOCAL_CORRECTIONS = {
    "fdr": "fdr_bh",
    "bonferroni": "bonferroni",
}


@dataclass
class EnrichmentConfig:
    """
    Configuration for enrichment analysis.

    Attributes:
        databases: Database name -> g:Profiler sources queried for it
        organism: Organism identifier (hsapiens, mmusculus, etc.)
        top_n: Genes taken from each end of the ranking
        significance_threshold: Adjusted p-value threshold
        correction_method: Multiple testing correction (fdr, bonferroni, g_SCS)
        include_underrepresentation: Also test for depleted terms
        min_genes: Minimum genes required to run analysis
        min_set_size: Smallest gene set tested (local backend)
        max_set_size: Largest gene set tested (local backend)
        gene_set_files: Database -> GMT path or URL; selects the local backend
    """

    databases: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_DATABASES.items()}
    )
    organism: str = "hsapiens"
    top_n: int = 200
    significance_threshold: float = 0.05
    correction_method: str = "fdr"
    include_underrepresentation: bool = False
    min_genes: int = 5
    min_set_size: int = 10
    max_set_size: int = 500
    gene_set_files: Dict[str, str] = field(default_factory=dict)


class EnrichmentBackend(Protocol):
    """Protocol for enrichment analysis backends."""

    name: str

    def analyze(
        self,
        genes: List[str],
        background: List[str],
        database: str,
        sources: List[str],
        organism: str,
        threshold: float,
        correction: str,
        underrepresentation: bool = False,
    ) -> Tuple[List[EnrichedTerm], int]:
        """
        Run enrichment analysis on a gene list.

        Args:
            genes: Query gene IDs, most extreme first
            background: All ranked gene IDs
            database: Database label (GO, KEGG)
            sources: Sources making up the database
            organism: Organism identifier
            threshold: Significance threshold on adjusted p-values
            correction: Multiple testing correction method
            underrepresentation: Test for depletion instead of enrichment

        Returns:
            Tuple of (list of significant terms, number of genes mapped)
        """
        ...


class GProfilerBackend:
    """
    Enrichment analysis using g:Profiler API.

    Queries are ordered, use Entrez Gene IDs and a custom background made of
    the ranked gene list.
    """

    name = "gprofiler"

    def __init__(self):
        """Initialize g:Profiler backend."""
        self._gp = None

    def _get_client(self):
        """Lazy initialization of g:Profiler client."""
        if self._gp is None:
            from gprofiler import GProfiler

            self._gp = GProfiler(user_agent="dengue-gex", return_dataframe=False)
        return self._gp

    def analyze(
        self,
        genes: List[str],
        background: List[str],
        database: str,
        sources: List[str],
        organism: str,
        threshold: float,
        correction: str,
        underrepresentation: bool = False,
    ) -> Tuple[List[EnrichedTerm], int]:
        """
        Run one g:Profiler query.

        Raises:
            EnrichmentServiceError: Service unreachable or query rejected
        """
        if not genes:
            return [], 0

        gp = self._get_client()
        try:
            result = gp.profile(
                organism=organism,
                query=list(genes),
                sources=list(sources),
                user_threshold=threshold,
                significance_threshold_method=correction,
                ordered=True,
                numeric_namespace="ENTREZGENE_ACC",
                background=list(background),
                domain_scope="custom",
                measure_underrepresentation=underrepresentation,
                no_evidences=False,  # Include intersections (gene lists)
            )
        # gprofiler-official reports non-200 responses with AssertionError
        except (requests.RequestException, AssertionError) as e:
            raise EnrichmentServiceError(f"g:Profiler query failed: {e}") from e

        if not result:
            return [], 0

        n_mapped = result[0].get("query_size", len(genes))
        representation = "under" if underrepresentation else "over"

        terms = []
        for r in result:
            evidences = r.get("intersections") or []
            if len(evidences) == len(genes):
                members = [g for g, ev in zip(genes, evidences) if ev]
            else:
                members = []
            terms.append(
                EnrichedTerm(
                    term_id=r["native"],
                    term_name=r["name"],
                    database=database,
                    source=r["source"],
                    pvalue=r["p_value"],
                    pvalue_adjusted=r["p_value"],  # g:Profiler returns adjusted values
                    term_size=r["term_size"],
                    query_size=r["query_size"],
                    intersection_size=r["intersection_size"],
                    precision=r["precision"],
                    recall=r["recall"],
                    genes=members,
                    representation=representation,
                )
            )
        return terms, n_mapped


class GeneSetBackend:
    """
    Offline enrichment with a hypergeometric test over GMT gene sets.

    Gene set members are intersected with the background; sets outside
    ``[min_set_size, max_set_size]`` after that are not tested.
    """

    name = "gene_sets"

    def __init__(
        self,
        gene_sets: Dict[str, Sequence[GeneSet]],
        min_set_size: int = 10,
        max_set_size: int = 500,
    ):
        self.gene_sets = {db: list(sets) for db, sets in gene_sets.items()}
        self.min_set_size = min_set_size
        self.max_set_size = max_set_size

    @classmethod
    def from_files(
        cls,
        files: Dict[str, str],
        min_set_size: int = 10,
        max_set_size: int = 500,
    ) -> "GeneSetBackend":
        """Load one GMT file or URL per database."""
        session = None
        gene_sets = {}
        for database, source in files.items():
            if str(source).startswith(("http://", "https://")):
                session = session or create_session()
            gene_sets[database] = load_gmt(source, session=session)
        return cls(gene_sets, min_set_size=min_set_size, max_set_size=max_set_size)

    def analyze(
        self,
        genes: List[str],
        background: List[str],
        database: str,
        sources: List[str],
        organism: str,
        threshold: float,
        correction: str,
        underrepresentation: bool = False,
    ) -> Tuple[List[EnrichedTerm], int]:
        if database not in self.gene_sets:
            logger.warning("No gene sets loaded for %s; skipping", database)
            return [], 0
        if correction not in LOCAL_CORRECTIONS:
            raise ValueError(
                f"Correction '{correction}' not supported offline "
                f"(use one of {', '.join(LOCAL_CORRECTIONS)})"
            )

        universe = set(background)
        query = [g for g in dict.fromkeys(genes) if g in universe]
        N = len(universe)
        n = len(query)
        if n == 0:
            return [], 0

        rows = []
        for gene_set in self.gene_sets[database]:
            source = source_for(database, gene_set.name)
            if sources and source not in sources and source != database:
                continue
            members = gene_set.genes & universe
            K = len(members)
            if K < self.min_set_size or K > self.max_set_size:
                continue
            overlap = [g for g in query if g in members]
            k = len(overlap)
            if underrepresentation:
                pvalue = float(hypergeom.cdf(k, N, K, n))
            else:
                pvalue = float(hypergeom.sf(k - 1, N, K, n))
            rows.append((gene_set, source, K, overlap, pvalue))

        if not rows:
            return [], n

        _, adjusted, _, _ = multipletests(
            [r[4] for r in rows], method=LOCAL_CORRECTIONS[correction]
        )

        representation = "under" if underrepresentation else "over"
        terms = []
        for (gene_set, source, K, overlap, pvalue), padj in zip(rows, adjusted):
            if padj >= threshold:
                continue
            terms.append(
                EnrichedTerm(
                    term_id=gene_set.name,
                    term_name=gene_set.label,
                    database=database,
                    source=source,
                    pvalue=pvalue,
                    pvalue_adjusted=float(padj),
                    term_size=K,
                    query_size=n,
                    intersection_size=len(overlap),
                    precision=len(overlap) / n,
                    recall=len(overlap) / K,
                    genes=overlap,
                    representation=representation,
                )
            )

        terms.sort(key=lambda t: (t.pvalue_adjusted, t.term_id))
        logger.debug(
            "%s (%s): %d of %d sets significant",
            database, representation, len(terms), len(rows),
        )
        return terms, n


class EnrichmentAnalyzer:
    """
    Gene set enrichment analyzer for a ranked gene list.

    Example:
        analyzer = EnrichmentAnalyzer(EnrichmentConfig(top_n=100))
        result = analyzer.analyze(ranked)
        print(result.activated.get_top_terms(5, database="KEGG"))
    """

    def __init__(
        self,
        config: Optional[EnrichmentConfig] = None,
        backend: Optional[EnrichmentBackend] = None,
    ):
        """
        Initialize enrichment analyzer.

        Args:
            config: Analysis configuration
            backend: Enrichment backend (default: GeneSetBackend when
                ``gene_set_files`` is configured, else GProfilerBackend)
        """
        self.config = config or EnrichmentConfig()
        if backend is None:
            if self.config.gene_set_files:
                backend = GeneSetBackend.from_files(
                    self.config.gene_set_files,
                    min_set_size=self.config.min_set_size,
                    max_set_size=self.config.max_set_size,
                )
            else:
                backend = GProfilerBackend()
        self.backend = backend

    def split_ranked(self, ranked: pd.Series) -> Tuple[List[str], List[str]]:
        """
        Pick the activated and suppressed query genes from a ranking.

        Returns:
            (top ``top_n`` positive IDs, bottom ``top_n`` negative IDs with
            the most negative first)
        """
        top_n = self.config.top_n
        activated = [str(g) for g in ranked[ranked > 0].index[:top_n]]
        negative = ranked[ranked < 0]
        suppressed = [str(g) for g in negative.index[::-1][:top_n]]
        return activated, suppressed

    def analyze(self, ranked: pd.Series) -> EnrichmentResult:
        """
        Run enrichment analysis on both ends of a ranked gene list.

        Args:
            ranked: Gene-ID keyed scores, sorted non-increasing

        Returns:
            EnrichmentResult; zero significant terms is a valid, empty result
        """
        background = [str(g) for g in ranked.index]
        activated, suppressed = self.split_ranked(ranked)
        logger.info(
            "Enrichment (%s): %d activated, %d suppressed genes, background %d",
            self.backend.name, len(activated), len(suppressed), len(background),
        )

        provenance = EnrichmentProvenance(
            backend=self.backend.name,
            organism=self.config.organism,
            databases={k: list(v) for k, v in self.config.databases.items()},
            significance_threshold=self.config.significance_threshold,
            correction_method=self.config.correction_method,
            top_n=self.config.top_n,
        )

        result = EnrichmentResult(
            provenance=provenance,
            activated=self.analyze_gene_list(activated, "activated", background),
            suppressed=self.analyze_gene_list(suppressed, "suppressed", background),
        )
        logger.info("Enrichment: %r", result)
        return result

    def analyze_gene_list(
        self,
        genes: List[str],
        direction: str,
        background: List[str],
    ) -> DirectionEnrichment:
        """
        Test one gene list against every configured database.

        Args:
            genes: Query gene IDs
            direction: "activated" or "suppressed"
            background: Background gene IDs
        """
        if len(genes) < self.config.min_genes:
            logger.info(
                "Only %d %s genes (minimum %d); skipping enrichment",
                len(genes), direction, self.config.min_genes,
            )
            return DirectionEnrichment(
                direction=direction,
                input_genes=genes,
                n_genes_mapped=0,
                terms=[],
            )

        modes = [False, True] if self.config.include_underrepresentation else [False]
        terms: List[EnrichedTerm] = []
        n_mapped = 0
        for database, sources in self.config.databases.items():
            for under in modes:
                found, mapped = self.backend.analyze(
                    genes=genes,
                    background=background,
                    database=database,
                    sources=sources,
                    organism=self.config.organism,
                    threshold=self.config.significance_threshold,
                    correction=self.config.correction_method,
                    underrepresentation=under,
                )
                terms.extend(found)
                n_mapped = max(n_mapped, mapped)

        return DirectionEnrichment(
            direction=direction,
            input_genes=genes,
            n_genes_mapped=n_mapped,
            terms=terms,
        )


def run_enrichment(
    ranked: pd.Series,
    organism: str = "hsapiens",
    databases: Optional[Dict[str, List[str]]] = None,
    top_n: int = 200,
    significance_threshold: float = 0.05,
) -> EnrichmentResult:
    """
    Convenience function for running g:Profiler enrichment.

    Example:
        result = run_enrichment(ranked, top_n=100)
    """
    config = EnrichmentConfig(
        organism=organism,
        databases=databases or {k: list(v) for k, v in DEFAULT_DATABASES.items()},
        top_n=top_n,
        significance_threshold=significance_threshold,
    )
    analyzer = EnrichmentAnalyzer(config=config)
    return analyzer.analyze(ranked)
