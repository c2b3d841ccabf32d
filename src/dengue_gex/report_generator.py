"""
Machine-readable and console outputs for the expression report.

Supports multiple output formats:
- JSON: DE summary, enrichment and provenance for programmatic use
- TSV: Reconciled DE table and enrichment terms for spreadsheet analysis
- Console: Human-readable summary
"""

import csv
import json
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .config import GROUP_ORDER
from .de_result import DEResult, EnrichmentResult, GeneResult

NA = "NA"


def json_safe(value: Any) -> Any:
    """Recursively convert numpy scalars and non-finite floats for JSON."""
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, Path):
        return str(value)
    return value


def ordered_group_sizes(group_sizes: Dict[str, int]) -> List[Tuple[str, int]]:
    """Group counts in disease-state order; unknown groups follow by name."""
    rank = {g: i for i, g in enumerate(GROUP_ORDER)}
    return sorted(group_sizes.items(), key=lambda item: (rank.get(item[0], len(rank)), item[0]))


class ReportGenerator:
    """
    Writes result tables, JSON and console summaries.

    Example:
        generator = ReportGenerator()
        generator.to_tsv(reconciled_table, "de_results.tsv")
        print(generator.to_console_summary(de_result))
    """

    def to_json(
        self,
        result: DEResult,
        path: Union[str, Path],
        enrichment_result: Optional[EnrichmentResult] = None,
        extra: Optional[Dict[str, Any]] = None,
        indent: int = 2,
    ) -> None:
        """
        Write DE results (and enrichment, if any) to a JSON file.

        Args:
            result: DE result
            path: Output file path
            enrichment_result: Optional enrichment result
            extra: Additional top-level sections (configuration, clustering)
            indent: JSON indentation level
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            f.write(self.to_json_string(result, enrichment_result, extra, indent))

    def to_json_string(
        self,
        result: DEResult,
        enrichment_result: Optional[EnrichmentResult] = None,
        extra: Optional[Dict[str, Any]] = None,
        indent: int = 2,
    ) -> str:
        """Combined results as a JSON string."""
        combined = result.to_dict()
        combined["enrichment"] = enrichment_result.to_dict() if enrichment_result else None
        if extra:
            combined.update(extra)
        return json.dumps(json_safe(combined), indent=indent)

    def to_tsv(self, table: pd.DataFrame, path: Union[str, Path]) -> None:
        """
        Write the reconciled DE table, one row per gene, nulls as ``NA``.

        Args:
            table: Reconciled top table indexed by gene
            path: Output file path
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        frame = table.copy()
        frame.index.name = frame.index.name or "gene"
        frame.to_csv(path, sep="\t", na_rep=NA, float_format="%.6g")

    def enrichment_to_tsv(
        self,
        enrichment_result: EnrichmentResult,
        path: Union[str, Path],
        direction: Optional[str] = None,
    ) -> None:
        """
        Write enrichment terms to a TSV file; a header-only file when empty.

        Args:
            enrichment_result: Enrichment analysis result
            path: Output file path
            direction: "activated", "suppressed", or None for both
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        terms = []
        if direction in (None, "activated"):
            terms.extend(("activated", t) for t in enrichment_result.activated.terms)
        if direction in (None, "suppressed"):
            terms.extend(("suppressed", t) for t in enrichment_result.suppressed.terms)

        with open(path, "w", newline="") as f:
            writer = csv.writer(f, delimiter="\t")
            writer.writerow([
                "direction",
                "database",
                "source",
                "representation",
                "term_id",
                "term_name",
                "pvalue",
                "pvalue_adjusted",
                "intersection_size",
                "term_size",
                "query_size",
                "gene_ratio",
                "genes",
            ])

            # Sorted by adjusted p-value, ties by term id
            for dir_label, term in sorted(terms, key=lambda x: (x[1].pvalue_adjusted, x[1].term_id)):
                writer.writerow([
                    dir_label,
                    term.database,
                    term.source,
                    term.representation,
                    term.term_id,
                    term.term_name,
                    f"{term.pvalue:.2e}",
                    f"{term.pvalue_adjusted:.2e}",
                    term.intersection_size,
                    term.term_size,
                    term.query_size,
                    f"{term.precision:.4f}",
                    ",".join(term.genes),
                ])

    def to_console_summary(
        self,
        result: DEResult,
        enrichment_result: Optional[EnrichmentResult] = None,
        top_n: int = 10,
        show_provenance: bool = True,
    ) -> str:
        """
        Generate human-readable console summary.

        Args:
            result: DE result
            enrichment_result: Optional enrichment result appended at the end
            top_n: Number of top genes to show per direction
            show_provenance: Whether to include provenance details
        """
        lines = []

        lines.append("=" * 70)
        lines.append("DIFFERENTIAL EXPRESSION ANALYSIS RESULTS")
        lines.append("=" * 70)

        if show_provenance:
            prov = result.provenance
            lines.append("")
            lines.append("DATASET")
            lines.append(f"  Accession: {prov.accession}")
            if prov.platform:
                lines.append(f"  Platform: {prov.platform}")
            lines.append(f"  Timestamp: {prov.timestamp}")
            lines.append("")
            lines.append("SAMPLES")
            for group, n in ordered_group_sizes(prov.group_sizes):
                lines.append(f"  {group}: {n}")
            lines.append("")
            lines.append("METHODS")
            lines.append(f"  Contrast: {prov.contrast}")
            lines.append(f"  Statistical test: {prov.method}")
            lines.append(f"  FDR correction: {prov.fdr_method}")
            if prov.prior_df is not None:
                lines.append(
                    f"  Prior df: {prov.prior_df:.2f}, prior variance: {prov.prior_variance:.4g}"
                )
            lines.append("")
            lines.append("THRESHOLDS")
            lines.append(f"  FDR: {prov.thresholds.get('fdr', 0.05)}")
            lines.append(f"  Log2 FC: {prov.thresholds.get('log2fc', 1.0)}")

        lines.append("")
        lines.append("-" * 70)
        lines.append("SUMMARY")
        lines.append("-" * 70)
        lines.append(f"  Genes tested: {result.genes_tested:,}")
        lines.append(f"  Genes significant: {result.genes_significant:,}")
        lines.append(f"  Upregulated: {result.n_upregulated:,}")
        lines.append(f"  Downregulated: {result.n_downregulated:,}")

        for label, genes in (
            ("UPREGULATED", result.upregulated),
            ("DOWNREGULATED", result.downregulated),
        ):
            if not genes:
                continue
            lines.append("")
            lines.append("-" * 70)
            lines.append(f"TOP {min(top_n, len(genes))} {label} GENES")
            lines.append("-" * 70)
            lines.append(format_gene_table(genes, max_genes=top_n, show_more=False))

        if enrichment_result is not None:
            lines.append(self.format_enrichment_summary(enrichment_result, top_n))

        lines.append("")
        lines.append("=" * 70)

        return "\n".join(lines)

    def format_enrichment_summary(
        self,
        enrichment_result: EnrichmentResult,
        top_n: int = 10,
    ) -> str:
        """
        Generate human-readable enrichment summary.

        Args:
            enrichment_result: Enrichment analysis result
            top_n: Number of top terms to show per direction
        """
        lines = []

        lines.append("")
        lines.append("-" * 70)
        lines.append("ENRICHMENT ANALYSIS")
        lines.append("-" * 70)

        prov = enrichment_result.provenance
        lines.append(f"  Backend: {prov.backend}")
        lines.append(f"  Organism: {prov.organism}")
        lines.append(f"  Databases: {', '.join(prov.databases)}")
        lines.append(f"  Threshold: {prov.significance_threshold}")
        lines.append(f"  Genes per direction: {prov.top_n}")

        lines.append("")
        lines.append(f"  Total significant terms: {enrichment_result.total_terms}")
        lines.append(f"  Activated: {enrichment_result.activated.n_terms} terms")
        lines.append(f"  Suppressed: {enrichment_result.suppressed.n_terms} terms")

        for direction in (enrichment_result.activated, enrichment_result.suppressed):
            if not direction.terms:
                continue
            top_terms = direction.get_top_terms(top_n)
            lines.append("")
            lines.append("-" * 70)
            lines.append(f"TOP {len(top_terms)} TERMS ({direction.direction.upper()} GENES)")
            lines.append("-" * 70)
            lines.append(
                f"  {'Source':<8} {'Term ID':<14} {'P-adj':>10} {'Genes':>6}  Term Name"
            )
            lines.append("  " + "-" * 66)

            for term in top_terms:
                name = term.term_name[:35] + "..." if len(term.term_name) > 35 else term.term_name
                marker = "" if term.representation == "over" else " (under)"
                lines.append(
                    f"  {term.source:<8} {term.term_id:<14} "
                    f"{term.pvalue_adjusted:>10.2e} {term.intersection_size:>6}  {name}{marker}"
                )

        return "\n".join(lines)


def format_gene_table(genes: List[GeneResult], max_genes: int = 20, show_more: bool = True) -> str:
    """
    Format a list of genes as a simple table.

    Args:
        genes: List of GeneResult objects
        max_genes: Maximum genes to show
        show_more: Append a line counting the genes left out
    """
    if not genes:
        return "  No genes found."

    lines = []
    lines.append(f"  {'Gene':<12} {'Entrez':>10} {'Log2FC':>8} {'AveExpr':>8} {'P-adj':>10}")
    lines.append("  " + "-" * 52)

    for gene in genes[:max_genes]:
        p_adj = f"{gene.pvalue_adjusted:.2e}" if gene.pvalue_adjusted is not None else NA
        lines.append(
            f"  {gene.gene_symbol:<12} {gene.gene_id or NA:>10} "
            f"{gene.log2_fold_change:>8.2f} {gene.average_expression:>8.2f} {p_adj:>10}"
        )

    if show_more and len(genes) > max_genes:
        lines.append(f"  ... and {len(genes) - max_genes} more genes")

    return "\n".join(lines)


def format_provenance_brief(result: DEResult) -> str:
    """One-line provenance summary."""
    prov = result.provenance
    groups = ", ".join(f"{g}={n}" for g, n in prov.group_sizes.items())
    return (
        f"{prov.accession} {prov.contrast} | {groups} | "
        f"{result.n_upregulated} up, {result.n_downregulated} down"
    )
