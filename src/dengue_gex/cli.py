from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import click

from dengue_gex.config import PipelineConfig, load_config
from dengue_gex.errors import AnalysisError
from dengue_gex.geo_loader import GEODataLoader
from dengue_gex.pipeline import run_pipeline
from dengue_gex.report_generator import ReportGenerator, format_provenance_brief


def parse_gene_sets(ctx, param, values: Iterable[str]) -> Dict[str, str]:
    """Turn repeated ``DB=PATH`` options into a mapping."""
    mapping: Dict[str, str] = {}
    for value in values:
        database, sep, source = value.partition("=")
        if not sep or not database.strip() or not source.strip():
            raise click.BadParameter(f"expected DB=PATH, got {value!r}", ctx=ctx, param=param)
        mapping[database.strip()] = source.strip()
    return mapping


def apply_overrides(
    config: PipelineConfig,
    accession: Optional[str] = None,
    cache_dir: Optional[Path] = None,
    output_dir: Optional[Path] = None,
    contrast: Optional[str] = None,
    fdr: Optional[float] = None,
    log2fc: Optional[float] = None,
    top_variance_genes: Optional[int] = None,
    n_clusters: Optional[int] = None,
    top_n: Optional[int] = None,
    gene_sets: Optional[Dict[str, str]] = None,
    underrepresentation: bool = False,
    no_enrichment: bool = False,
) -> PipelineConfig:
    """Apply command-line values on top of the environment configuration."""
    if accession:
        config.accession = accession
    if cache_dir is not None:
        config.cache_dir = Path(cache_dir)
    if output_dir is not None:
        config.output_dir = Path(output_dir)
    if contrast:
        config.de.contrast = contrast
    if fdr is not None:
        config.de.fdr_threshold = fdr
    if log2fc is not None:
        config.de.log2fc_threshold = log2fc
    if top_variance_genes is not None:
        config.clustering.top_variance_genes = top_variance_genes
    if n_clusters is not None:
        config.clustering.n_clusters = n_clusters
    if top_n is not None:
        config.enrichment.top_n = top_n
    if gene_sets:
        config.enrichment.gene_set_files = dict(gene_sets)
    if underrepresentation:
        config.enrichment.include_underrepresentation = True
    if no_enrichment:
        config.run_enrichment = False
    return config


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Exploratory expression report for the GEO dengue dataset."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@cli.command("report")
@click.option("--accession", default=None, help="GEO DataSet accession [default: GDS5093].")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for downloaded GEO files.",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for the report and companion files.",
)
@click.option("--contrast", default=None, help='Group contrast, e.g. "DHF - control".')
@click.option(
    "--fdr",
    type=click.FloatRange(0, 1, min_open=True),
    default=None,
    help="Adjusted p-value threshold [default: 0.05].",
)
@click.option(
    "--log2fc",
    type=click.FloatRange(min=0),
    default=None,
    help="Absolute log2 fold-change threshold [default: 1.0].",
)
@click.option(
    "--top-variance-genes",
    type=click.IntRange(2, 5000),
    default=None,
    help="Genes shown in the clustered heatmap [default: 50].",
)
@click.option(
    "--n-clusters",
    type=click.IntRange(1, 100),
    default=None,
    help="Flat clusters cut from the sample tree [default: 4].",
)
@click.option(
    "--top-n",
    type=click.IntRange(1, 5000),
    default=None,
    help="Genes per direction tested for enrichment [default: 200].",
)
@click.option(
    "--gene-sets",
    multiple=True,
    callback=parse_gene_sets,
    metavar="DB=PATH",
    help="GMT file or URL for a database (repeat); enables offline enrichment.",
)
@click.option(
    "--underrepresentation",
    is_flag=True,
    help="Also test for under-represented gene sets.",
)
@click.option("--no-enrichment", is_flag=True, help="Skip gene set enrichment.")
def report_command(
    accession: Optional[str],
    cache_dir: Optional[Path],
    output_dir: Optional[Path],
    contrast: Optional[str],
    fdr: Optional[float],
    log2fc: Optional[float],
    top_variance_genes: Optional[int],
    n_clusters: Optional[int],
    top_n: Optional[int],
    gene_sets: Dict[str, str],
    underrepresentation: bool,
    no_enrichment: bool,
) -> None:
    """Run the full analysis and write the HTML report."""
    config = apply_overrides(
        load_config(),
        accession=accession,
        cache_dir=cache_dir,
        output_dir=output_dir,
        contrast=contrast,
        fdr=fdr,
        log2fc=log2fc,
        top_variance_genes=top_variance_genes,
        n_clusters=n_clusters,
        top_n=top_n,
        gene_sets=gene_sets,
        underrepresentation=underrepresentation,
        no_enrichment=no_enrichment,
    )

    click.echo(f"Analyzing {config.accession} ({config.de.contrast})...")
    try:
        result = run_pipeline(config)
    except AnalysisError as exc:
        raise click.ClickException(str(exc)) from exc
    except ValueError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc

    summary = ReportGenerator().to_console_summary(
        result.de_result, result.enrichment, show_provenance=False
    )
    click.echo(summary)
    if result.enrichment_note:
        click.echo(result.enrichment_note, err=True)
    click.echo(format_provenance_brief(result.de_result))
    for name, path in result.outputs.items():
        click.echo(f"  {name}: {path}")


@cli.command("fetch")
@click.option("--accession", default=None, help="GEO DataSet accession [default: GDS5093].")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for downloaded GEO files.",
)
def fetch_command(accession: Optional[str], cache_dir: Optional[Path]) -> None:
    """Download (or reuse cached) data and summarize the dataset."""
    config = apply_overrides(load_config(), accession=accession, cache_dir=cache_dir)
    loader = GEODataLoader(
        cache_dir=config.cache_dir,
        disease_state_column=config.disease_state_column,
        individual_column=config.individual_column,
    )
    try:
        dataset = loader.load(config.accession)
    except AnalysisError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"{dataset.accession}: {dataset.title}")
    click.echo(f"  Platform: {dataset.platform} ({dataset.value_type})")
    click.echo(f"  Probes: {dataset.n_probes:,}")
    click.echo(f"  Samples: {dataset.n_samples}")
    for group, count in _sorted_counts(dataset.group_counts()):
        click.echo(f"    {group}: {count}")
    annotated = int(dataset.annotation["symbol"].notna().sum())
    click.echo(f"  Annotated probes: {annotated:,} of {len(dataset.annotation):,}")
    click.echo(f"  Cached in {config.cache_dir}")


def _sorted_counts(counts: Dict[str, int]) -> Iterable[Tuple[str, int]]:
    return sorted(counts.items(), key=lambda item: item[0].lower())


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
