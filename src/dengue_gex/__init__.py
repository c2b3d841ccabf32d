"""
dengue_gex: exploratory expression report for GEO DataSet GDS5093

Whole-blood expression in dengue infection (healthy control, dengue fever,
dengue hemorrhagic fever, convalescent), from download to HTML report.

## Full run

```python
from dengue_gex import load_config, run_pipeline

config = load_config()
config.de.contrast = "DHF - control"
result = run_pipeline(config)
print(result.outputs["report"])
```

## Individual stages

```python
from dengue_gex import (
    GEODataLoader, collapse_probes, ClusteringAnalyzer, run_pca,
    DifferentialExpressionAnalyzer, reconcile_annotation, build_ranked_gene_list,
    EnrichmentAnalyzer,
)
```

## Command Line Interface

```bash
dengue-gex report --contrast "DF - control" --output-dir reports/df
dengue-gex fetch
```
"""

from .aggregate import collapse_probes, detect_log_scale, ensure_log2
from .clustering import ClusteringAnalyzer, ClusteringConfig, ClusteringResult
from .config import PipelineConfig, load_config
from .de_analysis import (
    ContrastResult,
    DEConfig,
    DifferentialExpressionAnalyzer,
    LinearModelFit,
    build_design,
    fit_f_distribution,
    fit_linear_model,
    parse_contrast,
)
from .de_result import (
    DEProvenance,
    DEResult,
    DirectionEnrichment,
    EnrichedTerm,
    EnrichmentProvenance,
    EnrichmentResult,
    GeneResult,
)
from .enrichment_analyzer import (
    EnrichmentAnalyzer,
    EnrichmentBackend,
    EnrichmentConfig,
    GeneSetBackend,
    GProfilerBackend,
    run_enrichment,
)
from .errors import (
    AnalysisError,
    DataIntegrityError,
    DataUnavailableError,
    EnrichmentServiceError,
)
from .gene_ranker import GeneRanker, RankingConfig, RankingMethod, build_ranked_gene_list
from .geo_loader import GEODataLoader, GEODataset
from .pca import PCAConfig, PCAResult, run_pca
from .pipeline import PipelineResult, run_pipeline
from .reconcile import left_join_dedup, reconcile_annotation
from .report_generator import ReportGenerator

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "PipelineConfig",
    "load_config",
    "ClusteringConfig",
    "PCAConfig",
    "DEConfig",
    "RankingConfig",
    "EnrichmentConfig",
    # Loading and preprocessing
    "GEODataLoader",
    "GEODataset",
    "collapse_probes",
    "detect_log_scale",
    "ensure_log2",
    # Exploratory analysis
    "ClusteringAnalyzer",
    "ClusteringResult",
    "run_pca",
    "PCAResult",
    # Differential expression
    "DifferentialExpressionAnalyzer",
    "ContrastResult",
    "LinearModelFit",
    "build_design",
    "parse_contrast",
    "fit_linear_model",
    "fit_f_distribution",
    "DEResult",
    "DEProvenance",
    "GeneResult",
    # Reconciliation and ranking
    "left_join_dedup",
    "reconcile_annotation",
    "build_ranked_gene_list",
    "GeneRanker",
    "RankingMethod",
    # Enrichment
    "EnrichmentAnalyzer",
    "EnrichmentBackend",
    "GProfilerBackend",
    "GeneSetBackend",
    "run_enrichment",
    "EnrichmentResult",
    "DirectionEnrichment",
    "EnrichedTerm",
    "EnrichmentProvenance",
    # Output
    "ReportGenerator",
    "PipelineResult",
    "run_pipeline",
    # Errors
    "AnalysisError",
    "DataUnavailableError",
    "DataIntegrityError",
    "EnrichmentServiceError",
]
