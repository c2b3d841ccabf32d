"""
Result dataclasses for differential expression and enrichment, with provenance.

These capture everything needed to reproduce and interpret one contrast:
dataset accession, group sizes, the contrast expression, the fitted
empirical-Bayes prior and the significance thresholds.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


def _none_if_nan(value):
    if value is None:
        return None
    try:
        if value != value:  # NaN
            return None
    except TypeError:
        pass
    return value


@dataclass
class GeneResult:
    """
    Result for a single gene in the moderated linear-model contrast.

    Annotation fields are None when the gene had no annotation row.
    """

    gene_symbol: str
    log2_fold_change: float
    average_expression: float
    t_statistic: Optional[float]
    pvalue: Optional[float]
    pvalue_adjusted: Optional[float]  # BH-corrected
    direction: str  # "up" | "down" | "none" (untestable)
    gene_id: Optional[str] = None
    chromosome: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "gene_symbol": self.gene_symbol,
            "gene_id": self.gene_id,
            "chromosome": self.chromosome,
            "log2_fold_change": self.log2_fold_change,
            "average_expression": self.average_expression,
            "t_statistic": self.t_statistic,
            "pvalue": self.pvalue,
            "pvalue_adjusted": self.pvalue_adjusted,
            "direction": self.direction,
        }

    def __repr__(self) -> str:
        adj_p = f"{self.pvalue_adjusted:.2e}" if self.pvalue_adjusted is not None else "N/A"
        return (
            f"GeneResult({self.gene_symbol}, log2FC={self.log2_fold_change:.2f}, "
            f"p_adj={adj_p}, {self.direction})"
        )


@dataclass
class DEProvenance:
    """
    Provenance record for one differential expression contrast.
    """

    timestamp: str
    accession: str
    platform: str
    contrast: str
    group_sizes: Dict[str, int]
    sample_ids: List[str]
    n_genes: int
    method: str
    fdr_method: str
    thresholds: Dict[str, float]
    prior_df: Optional[float] = None
    prior_variance: Optional[float] = None

    @classmethod
    def create(
        cls,
        accession: str,
        platform: str,
        contrast: str,
        group_sizes: Dict[str, int],
        sample_ids: List[str],
        n_genes: int,
        fdr_threshold: float,
        log2fc_threshold: float,
        method: str = "linear_model_ebayes",
        fdr_method: str = "fdr_bh",
    ) -> "DEProvenance":
        """Create a provenance record with current timestamp."""
        return cls(
            timestamp=datetime.now().isoformat(),
            accession=accession,
            platform=platform,
            contrast=contrast,
            group_sizes=dict(group_sizes),
            sample_ids=list(sample_ids),
            n_genes=n_genes,
            method=method,
            fdr_method=fdr_method,
            thresholds={
                "fdr": fdr_threshold,
                "log2fc": log2fc_threshold,
            },
        )

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        prior_df = self.prior_df
        if prior_df is not None and prior_df == float("inf"):
            prior_df = "inf"
        return {
            "timestamp": self.timestamp,
            "dataset": {
                "accession": self.accession,
                "platform": self.platform,
                "n_genes": self.n_genes,
            },
            "samples": {
                "n_samples": self.n_samples,
                "group_sizes": self.group_sizes,
                "ids": self.sample_ids,
            },
            "contrast": self.contrast,
            "methods": {
                "test": self.method,
                "fdr": self.fdr_method,
            },
            "empirical_bayes": {
                "prior_df": prior_df,
                "prior_variance": self.prior_variance,
            },
            "thresholds": self.thresholds,
        }


@dataclass
class DEResult:
    """
    Complete differential expression result for one contrast.

    ``all_genes`` follows the reconciled table order (ascending p-value);
    ``upregulated``/``downregulated`` hold the genes passing both thresholds.
    """

    provenance: DEProvenance
    genes_tested: int
    genes_significant: int
    upregulated: List[GeneResult]
    downregulated: List[GeneResult]
    all_genes: List[GeneResult] = field(default_factory=list)

    @property
    def n_upregulated(self) -> int:
        """Number of significantly upregulated genes."""
        return len(self.upregulated)

    @property
    def n_downregulated(self) -> int:
        """Number of significantly downregulated genes."""
        return len(self.downregulated)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "provenance": self.provenance.to_dict(),
            "summary": {
                "genes_tested": self.genes_tested,
                "genes_significant": self.genes_significant,
                "n_upregulated": self.n_upregulated,
                "n_downregulated": self.n_downregulated,
            },
            "upregulated": [g.to_dict() for g in self.upregulated],
            "downregulated": [g.to_dict() for g in self.downregulated],
        }

    def __repr__(self) -> str:
        return (
            f"DEResult(genes_tested={self.genes_tested}, "
            f"significant={self.genes_significant}, "
            f"up={self.n_upregulated}, down={self.n_downregulated})"
        )


def _direction(log2fc: float) -> str:
    if math.isnan(log2fc):
        return "none"
    return "up" if log2fc > 0 else "down"


def gene_result_from_row(symbol: str, row) -> GeneResult:
    """Build a GeneResult from one row of the reconciled top table."""
    log2fc = float(row["log2_fold_change"])
    return GeneResult(
        gene_symbol=str(symbol),
        log2_fold_change=log2fc,
        average_expression=float(row["average_expression"]),
        t_statistic=_none_if_nan(row.get("t_statistic")),
        pvalue=_none_if_nan(row.get("pvalue")),
        pvalue_adjusted=_none_if_nan(row.get("pvalue_adjusted")),
        direction=_direction(log2fc),
        gene_id=_none_if_nan(row.get("gene_id")),
        chromosome=_none_if_nan(row.get("chromosome")),
    )


# =============================================================================
# Enrichment Analysis Result Dataclasses
# =============================================================================


@dataclass
class EnrichedTerm:
    """
    A single enriched (or depleted) GO term or KEGG pathway.
    """

    term_id: str  # GO:XXXXXXX, KEGG:hsa00000
    term_name: str
    database: str  # GO | KEGG
    source: str  # GO:BP, GO:CC, GO:MF, KEGG
    pvalue: float
    pvalue_adjusted: float
    term_size: int  # genes in term (within background)
    query_size: int  # genes submitted
    intersection_size: int  # genes overlapping
    precision: float  # intersection_size / query_size (gene ratio)
    recall: float  # intersection_size / term_size
    genes: List[str]
    representation: str = "over"  # over | under

    def __repr__(self) -> str:
        return (
            f"EnrichedTerm({self.term_id}, {self.term_name!r}, "
            f"p_adj={self.pvalue_adjusted:.2e}, genes={self.intersection_size})"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "term_id": self.term_id,
            "term_name": self.term_name,
            "database": self.database,
            "source": self.source,
            "representation": self.representation,
            "pvalue": self.pvalue,
            "pvalue_adjusted": self.pvalue_adjusted,
            "term_size": self.term_size,
            "query_size": self.query_size,
            "intersection_size": self.intersection_size,
            "precision": self.precision,
            "recall": self.recall,
            "genes": self.genes,
        }


@dataclass
class DirectionEnrichment:
    """
    Enrichment results for one end of the ranked list.

    "activated" tests the top of the ranking (positive effect sizes),
    "suppressed" the bottom.
    """

    direction: str  # "activated" | "suppressed"
    input_genes: List[str]
    n_genes_mapped: int
    terms: List[EnrichedTerm] = field(default_factory=list)

    @property
    def n_terms(self) -> int:
        """Number of significant terms."""
        return len(self.terms)

    def terms_for(self, database: str) -> List[EnrichedTerm]:
        return [t for t in self.terms if t.database == database]

    def get_top_terms(self, n: int = 10, database: Optional[str] = None) -> List[EnrichedTerm]:
        """
        Get top N terms by adjusted p-value.

        Args:
            n: Number of terms to return
            database: Restrict to GO or KEGG
        """
        terms = self.terms
        if database:
            terms = [t for t in terms if t.database == database]
        sorted_terms = sorted(terms, key=lambda t: (t.pvalue_adjusted, t.term_id))
        return sorted_terms[:n]

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "direction": self.direction,
            "input_genes": len(self.input_genes),
            "n_genes_mapped": self.n_genes_mapped,
            "n_significant_terms": self.n_terms,
            "terms": [t.to_dict() for t in self.terms],
        }


@dataclass
class EnrichmentProvenance:
    """
    Provenance record for enrichment analysis.
    """

    backend: str  # "gprofiler" | "gene_sets"
    organism: str
    databases: Dict[str, List[str]]
    significance_threshold: float
    correction_method: str
    top_n: int
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "backend": self.backend,
            "organism": self.organism,
            "databases": self.databases,
            "significance_threshold": self.significance_threshold,
            "correction_method": self.correction_method,
            "top_n": self.top_n,
            "timestamp": self.timestamp,
        }


@dataclass
class EnrichmentResult:
    """
    Complete enrichment result for both ends of the ranked gene list.
    """

    provenance: EnrichmentProvenance
    activated: DirectionEnrichment
    suppressed: DirectionEnrichment

    @property
    def total_terms(self) -> int:
        """Total number of significant terms across both directions."""
        return self.activated.n_terms + self.suppressed.n_terms

    @property
    def is_empty(self) -> bool:
        return self.total_terms == 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "provenance": self.provenance.to_dict(),
            "summary": {
                "total_significant_terms": self.total_terms,
                "activated_terms": self.activated.n_terms,
                "suppressed_terms": self.suppressed.n_terms,
            },
            "activated": self.activated.to_dict(),
            "suppressed": self.suppressed.to_dict(),
        }

    def __repr__(self) -> str:
        return (
            f"EnrichmentResult(total_terms={self.total_terms}, "
            f"activated={self.activated.n_terms}, suppressed={self.suppressed.n_terms})"
        )
