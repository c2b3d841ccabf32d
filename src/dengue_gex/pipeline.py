"""
End-to-end exploratory analysis of the dengue expression dataset.

Stages run strictly in order, each consuming the previous stage's output:
load, log-scale check and probe collapsing, clustering, PCA, differential
expression, annotation reconciliation, ranking, enrichment, rendering.

Example:
    from dengue_gex.config import load_config
    from dengue_gex.pipeline import run_pipeline

    result = run_pipeline(load_config())
    print(result.outputs["report"])
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd
import requests

from .aggregate import collapse_probes, detect_log_scale, ensure_log2
from .clustering import ClusteringAnalyzer, ClusteringResult
from .config import GROUP_ORDER, PipelineConfig
from .de_analysis import ContrastResult, DifferentialExpressionAnalyzer
from .de_result import DEResult, EnrichmentResult
from .enrichment_analyzer import EnrichmentAnalyzer, EnrichmentBackend
from .errors import DataUnavailableError, EnrichmentServiceError
from .gene_ranker import GeneRanker, build_ranked_gene_list
from .geo_loader import IDENTIFIER_COLUMN, GEODataLoader, GEODataset
from .html_report import AnalysisReport, frame_table, results_table
from .pca import PCAResult, run_pca
from .plots import ReportPlotter
from .reconcile import reconcile_annotation
from .report_generator import ReportGenerator

logger = logging.getLogger(__name__)

OUTPUT_FILES = {
    "report": "report.html",
    "de_table": "de_results.tsv",
    "enrichment": "enrichment.tsv",
    "json": "results.json",
    "summary": "summary.txt",
}

TOP_TABLE_DISPLAY = [
    "gene_id",
    "chromosome",
    "log2_fold_change",
    "average_expression",
    "t_statistic",
    "pvalue",
    "pvalue_adjusted",
]


@dataclass
class PipelineResult:
    """Every intermediate artifact of one run."""

    config: PipelineConfig
    dataset: GEODataset
    was_log_scaled: bool
    gene_matrix: pd.DataFrame
    clustering: ClusteringResult
    pca: PCAResult
    contrast: ContrastResult
    reconciled: pd.DataFrame
    de_result: DEResult
    ranked: pd.Series
    enrichment: Optional[EnrichmentResult] = None
    enrichment_note: Optional[str] = None
    outputs: Dict[str, Path] = field(default_factory=dict)

    def __repr__(self) -> str:
        return (
            f"PipelineResult({self.dataset.accession}, genes={len(self.gene_matrix)}, "
            f"{self.de_result!r})"
        )


def aggregate_dataset(dataset: GEODataset) -> Tuple[bool, pd.DataFrame]:
    """Log-transform if needed and collapse probes into one row per gene."""
    expression = dataset.expression
    was_log_scaled = detect_log_scale(expression)
    logged = ensure_log2(expression)
    probe_table = pd.concat([dataset.probe_table[[IDENTIFIER_COLUMN]], logged], axis=1)
    return was_log_scaled, collapse_probes(probe_table, key=IDENTIFIER_COLUMN)


def _build_enrichment_analyzer(
    config: PipelineConfig,
    backend: Optional[EnrichmentBackend],
) -> EnrichmentAnalyzer:
    try:
        return EnrichmentAnalyzer(config.enrichment, backend=backend)
    except (OSError, requests.RequestException) as e:
        raise DataUnavailableError(f"Could not load gene sets: {e}") from e


def run_pipeline(
    config: PipelineConfig,
    loader: Optional[GEODataLoader] = None,
    enrichment_backend: Optional[EnrichmentBackend] = None,
) -> PipelineResult:
    """
    Run every stage and (optionally) write the outputs.

    Args:
        config: Run configuration
        loader: Dataset loader (defaults to a GEODataLoader on ``config.cache_dir``)
        enrichment_backend: Override for the enrichment backend

    Returns:
        PipelineResult

    Raises:
        DataUnavailableError: Dataset or gene sets could not be fetched
        DataIntegrityError: Samples or annotation do not line up
    """
    loader = loader or GEODataLoader(
        cache_dir=config.cache_dir,
        disease_state_column=config.disease_state_column,
        individual_column=config.individual_column,
    )

    logger.info("[1/8] Loading %s", config.accession)
    dataset = loader.load(config.accession)

    logger.info("[2/8] Checking scale and collapsing probes")
    was_log_scaled, gene_matrix = aggregate_dataset(dataset)
    metadata = dataset.sample_metadata

    logger.info("[3/8] Clustering samples and genes")
    clustering = ClusteringAnalyzer(config.clustering).analyze(gene_matrix, metadata)

    logger.info("[4/8] Principal component analysis")
    pca = run_pca(gene_matrix, config.pca)

    logger.info("[5/8] Differential expression: %s", config.de.contrast)
    de_analyzer = DifferentialExpressionAnalyzer(config.de)
    contrast = de_analyzer.analyze(gene_matrix, metadata)

    logger.info("[6/8] Reconciling with platform annotation")
    reconciled = reconcile_annotation(contrast.table, dataset.annotation, key="symbol")
    provenance = de_analyzer.make_provenance(contrast, dataset.accession, dataset.platform)
    de_result = de_analyzer.to_de_result(reconciled, provenance)

    logger.info("[7/8] Ranking genes")
    ranked = build_ranked_gene_list(
        reconciled,
        id_column=config.ranking.id_column,
        score_column=config.ranking.score_column,
    )

    enrichment = None
    enrichment_note = None
    if config.run_enrichment:
        logger.info("[8/8] Enrichment analysis")
        analyzer = _build_enrichment_analyzer(config, enrichment_backend)
        try:
            enrichment = analyzer.analyze(ranked)
        except EnrichmentServiceError as e:
            logger.warning("Enrichment skipped: %s", e)
            enrichment_note = f"Enrichment analysis was skipped: {e}"
    else:
        enrichment_note = "Enrichment analysis was disabled for this run."
        logger.info("[8/8] Enrichment disabled")

    result = PipelineResult(
        config=config,
        dataset=dataset,
        was_log_scaled=was_log_scaled,
        gene_matrix=gene_matrix,
        clustering=clustering,
        pca=pca,
        contrast=contrast,
        reconciled=reconciled,
        de_result=de_result,
        ranked=ranked,
        enrichment=enrichment,
        enrichment_note=enrichment_note,
    )

    if config.write_outputs:
        result.outputs = write_outputs(result, config.output_dir)
    return result


def write_outputs(result: PipelineResult, output_dir: Path) -> Dict[str, Path]:
    """Write the HTML report and its JSON/TSV/text companions."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    generator = ReportGenerator()
    paths = {key: output_dir / name for key, name in OUTPUT_FILES.items()}

    generator.to_tsv(result.reconciled, paths["de_table"])
    if result.enrichment is not None:
        generator.enrichment_to_tsv(result.enrichment, paths["enrichment"])
    else:
        del paths["enrichment"]

    generator.to_json(
        result.de_result,
        paths["json"],
        enrichment_result=result.enrichment,
        extra={
            "configuration": result.config.to_dict(),
            "clustering": {
                "sample_order": result.clustering.sample_order,
                "sample_clusters": result.clustering.sample_clusters.to_dict(),
                "top_genes": result.clustering.top_genes,
            },
            "pca": {
                "explained_variance_ratio": result.pca.explained_variance_ratio.to_dict(),
            },
        },
    )
    paths["summary"].write_text(
        generator.to_console_summary(result.de_result, result.enrichment) + "\n"
    )
    build_report(result).save(paths["report"])

    logger.info("Wrote %d files to %s", len(paths), output_dir)
    return paths


# =============================================================================
# HTML narrative
# =============================================================================


def _group_table(dataset: GEODataset) -> str:
    meta = dataset.sample_metadata
    counts = meta.groupby(["group", "disease_state"]).size()
    order = {g: i for i, g in enumerate(GROUP_ORDER)}
    rows = sorted(
        ({"group": g, "disease state": s, "samples": int(n)} for (g, s), n in counts.items()),
        key=lambda r: (order.get(r["group"], len(order)), r["group"]),
    )
    return results_table(rows, ["group", "disease state", "samples"])


def _terms_table(enrichment: EnrichmentResult, database: str, n: int = 10) -> str:
    rows = []
    for direction in (enrichment.activated, enrichment.suppressed):
        for term in direction.get_top_terms(n, database=database):
            rows.append({
                "direction": direction.direction,
                "term": term.term_id,
                "name": term.term_name,
                "representation": term.representation,
                "p.adjust": term.pvalue_adjusted,
                "genes": term.intersection_size,
                "ratio": term.precision,
            })
    return results_table(rows)


def build_report(result: PipelineResult, plotter: Optional[ReportPlotter] = None) -> AnalysisReport:
    """Assemble the narrative HTML document for a finished run."""
    plotter = plotter or ReportPlotter()
    cfg = result.config
    dataset = result.dataset
    meta = dataset.sample_metadata
    de = result.de_result

    report = AnalysisReport(
        title=dataset.title or f"Expression analysis of {dataset.accession}",
        dataset=dataset.accession,
        badges=[b for b in (dataset.accession, dataset.platform, dataset.value_type) if b],
    )

    scale_text = (
        "Values were already on a log scale and were used as provided."
        if result.was_log_scaled
        else "Values looked linear-scaled and were log2-transformed; non-positive values were treated as missing."
    )
    report.add_section(
        "Dataset",
        paragraphs=[
            f"{dataset.accession} ({dataset.platform}) contains {dataset.n_probes:,} probes "
            f"measured in {dataset.n_samples} samples.",
            scale_text,
            f"Probes sharing a gene identifier were averaged, leaving "
            f"{len(result.gene_matrix):,} genes.",
        ],
        tables=[_group_table(dataset)],
    )

    clustering = result.clustering
    cluster_table = clustering.cluster_table
    report.add_section(
        "Sample clustering",
        paragraphs=[
            f"Samples were clustered hierarchically ({cfg.clustering.linkage_method} linkage, "
            f"{cfg.clustering.distance_metric} distance) over all genes and cut into "
            f"{clustering.n_clusters} clusters.",
            f"The heatmap shows the {len(clustering.gene_order)} genes with the highest variance "
            f"across samples, z-scored per gene.",
        ],
        tables=[frame_table(cluster_table, index_label="cluster")] if not cluster_table.empty else [],
        figures=[
            plotter.to_html(
                plotter.sample_dendrogram(result.gene_matrix, meta, cfg.clustering), "sample-dendrogram"
            ),
            plotter.to_html(plotter.clustered_heatmap(clustering, meta), "heatmap"),
            plotter.to_html(
                plotter.gene_dendrogram(clustering, result.gene_matrix, cfg.clustering), "gene-dendrogram"
            ),
        ],
    )

    pca = result.pca
    pc1 = pca.top_loadings("PC1", 10).to_frame("loading")
    report.add_section(
        "Principal component analysis",
        paragraphs=[
            f"The first two components explain "
            f"{pca.explained_variance_ratio.iloc[:2].sum() * 100:.1f}% of the variance.",
        ],
        tables=[frame_table(pc1, index_label="gene")],
        figures=[
            plotter.to_html(plotter.pca_scatter(pca, meta), "pca"),
            plotter.to_html(plotter.explained_variance(pca), "pca-variance"),
        ],
    )

    contrast = result.contrast
    prior = (
        "no additional variability beyond sampling noise (prior df is infinite)"
        if contrast.prior_df == float("inf")
        else f"{contrast.prior_df:.2f} prior degrees of freedom"
    )
    columns = [c for c in TOP_TABLE_DISPLAY if c in result.reconciled.columns]
    report.add_section(
        f"Differential expression: {contrast.contrast}",
        paragraphs=[
            f"A linear model with one mean per disease-state group was fitted for every gene "
            f"and the contrast {contrast.contrast} evaluated; residual variances were moderated "
            f"towards a common prior ({prior}).",
            f"Of {de.genes_tested:,} genes tested, {de.n_upregulated:,} are up and "
            f"{de.n_downregulated:,} down at FDR < {cfg.de.fdr_threshold} and "
            f"|log2FC| >= {cfg.de.log2fc_threshold}.",
        ],
        tables=[frame_table(result.reconciled[columns], max_rows=25, index_label="gene")],
        figures=[
            plotter.to_html(
                plotter.volcano(
                    result.reconciled,
                    fdr_threshold=cfg.de.fdr_threshold,
                    log2fc_threshold=cfg.de.log2fc_threshold,
                ),
                "volcano",
            ),
        ],
    )

    ranker = GeneRanker(cfg.ranking)
    top_rows = [
        {
            "direction": g.direction,
            "gene": g.gene_symbol,
            "entrez": g.gene_id,
            "log2FC": g.log2_fold_change,
            "p.adjust": g.pvalue_adjusted,
        }
        for g in ranker.get_top_upregulated(de) + ranker.get_top_downregulated(de)
    ]
    report.add_section(
        "Top genes by effect size",
        paragraphs=[
            f"{len(result.ranked):,} genes with an Entrez ID were ranked by log2 fold change "
            f"for enrichment testing.",
        ],
        tables=[results_table(top_rows)],
    )

    enrichment = result.enrichment
    if enrichment is None:
        report.add_section("Gene set enrichment", paragraphs=[result.enrichment_note or ""])
    else:
        paragraphs = [
            f"The top {cfg.enrichment.top_n} activated and suppressed genes were tested "
            f"against {', '.join(cfg.enrichment.databases)} with the ranked list as background "
            f"({enrichment.provenance.backend}).",
        ]
        if enrichment.is_empty:
            paragraphs.append("No gene set reached significance.")
        figures: List[str] = []
        tables: List[str] = []
        for database in cfg.enrichment.databases:
            figures.append(
                plotter.to_html(plotter.enrichment_dotplot(enrichment, database), f"enrichment-{database.lower()}")
            )
            tables.append(_terms_table(enrichment, database))
        report.add_section("Gene set enrichment", paragraphs=paragraphs, figures=figures, tables=tables)

    summary = [
        f"{de.provenance.contrast}: {de.n_upregulated:,} genes up, {de.n_downregulated:,} down "
        f"(FDR < {cfg.de.fdr_threshold}, |log2FC| >= {cfg.de.log2fc_threshold}).",
    ]
    if enrichment is not None:
        summary.append(
            f"{enrichment.activated.n_terms} terms for activated and "
            f"{enrichment.suppressed.n_terms} for suppressed genes."
        )
    report.set_summary("\n\n".join(summary))

    report.add_provenance("platform", dataset.platform)
    report.add_provenance("configuration", {
        "contrast": cfg.de.contrast,
        "fdr": cfg.de.fdr_threshold,
        "log2fc": cfg.de.log2fc_threshold,
        "clustering": f"{cfg.clustering.linkage_method}/{cfg.clustering.distance_metric}",
        "enrichment": enrichment.provenance.backend if enrichment else "none",
    })
    report.add_provenance("samples", de.provenance.group_sizes)
    report.add_provenance("empirical Bayes", {
        "prior df": contrast.prior_df,
        "prior variance": contrast.prior_variance,
    })
    return report
