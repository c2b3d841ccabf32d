"""
Run configuration for the dengue expression report.

Every stage receives its settings from one ``PipelineConfig`` instead of
module-level state. ``load_config`` reads a ``.env`` file and the
environment, and the CLI overrides individual fields.

Usage:
    from dengue_gex.config import load_config

    cfg = load_config()
    cfg.de.contrast = "DF - control"
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .clustering import ClusteringConfig
from .de_analysis import DEConfig
from .enrichment_analyzer import EnrichmentConfig
from .gene_ranker import RankingConfig
from .pca import PCAConfig

DEFAULT_ACCESSION = "GDS5093"
DEFAULT_CACHE_DIR = Path("data/geo")
DEFAULT_OUTPUT_DIR = Path("reports/dengue")

# GDS5093 "disease state" subset values -> design-matrix group keys.
# Keys are matched case-insensitively.
DISEASE_STATE_GROUPS: Dict[str, str] = {
    "healthy control": "control",
    "control": "control",
    "dengue fever": "DF",
    "dengue hemorrhagic fever": "DHF",
    "convalescent": "convalescent",
}

# Order used for legends and tables.
GROUP_ORDER = ["control", "DF", "DHF", "convalescent"]


@dataclass
class PipelineConfig:
    """Settings for one end-to-end run of the report."""

    accession: str = DEFAULT_ACCESSION
    cache_dir: Path = DEFAULT_CACHE_DIR
    output_dir: Path = DEFAULT_OUTPUT_DIR

    # Sample-metadata columns in the GDS subset table
    disease_state_column: str = "disease state"
    individual_column: str = "individual"

    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    pca: PCAConfig = field(default_factory=PCAConfig)
    de: DEConfig = field(default_factory=DEConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    run_enrichment: bool = True
    write_outputs: bool = True

    def __post_init__(self):
        self.cache_dir = Path(self.cache_dir)
        self.output_dir = Path(self.output_dir)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten the settings that affect results, for provenance."""
        return {
            "accession": self.accession,
            "clustering": {
                "distance_metric": self.clustering.distance_metric,
                "linkage_method": self.clustering.linkage_method,
                "top_variance_genes": self.clustering.top_variance_genes,
                "n_clusters": self.clustering.n_clusters,
            },
            "pca": {
                "n_components": self.pca.n_components,
                "scale": self.pca.scale,
            },
            "de": {
                "contrast": self.de.contrast,
                "fdr_threshold": self.de.fdr_threshold,
                "log2fc_threshold": self.de.log2fc_threshold,
                "adjust_method": self.de.adjust_method,
            },
            "enrichment": {
                "enabled": self.run_enrichment,
                "databases": self.enrichment.databases,
                "top_n": self.enrichment.top_n,
                "significance_threshold": self.enrichment.significance_threshold,
                "include_underrepresentation": self.enrichment.include_underrepresentation,
            },
        }


def load_config(env_file: Optional[Path] = None) -> PipelineConfig:
    """
    Load ``.env`` and build a ``PipelineConfig`` from the environment.

    Recognized variables:
        DENGUE_GEX_ACCESSION: GEO accession to analyze
        DENGUE_GEX_CACHE_DIR: Directory for GEOparse downloads
        DENGUE_GEX_OUTPUT_DIR: Directory for the rendered report

    Args:
        env_file: Explicit .env path (defaults to python-dotenv's search)

    Returns:
        PipelineConfig with environment overrides applied
    """
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    return PipelineConfig(
        accession=os.environ.get("DENGUE_GEX_ACCESSION", DEFAULT_ACCESSION),
        cache_dir=Path(os.environ.get("DENGUE_GEX_CACHE_DIR", str(DEFAULT_CACHE_DIR))),
        output_dir=Path(os.environ.get("DENGUE_GEX_OUTPUT_DIR", str(DEFAULT_OUTPUT_DIR))),
    )
