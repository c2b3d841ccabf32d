"""
GEO DataSet loader.

Fetches a curated GEO DataSet (GDS) with GEOparse, splits it into the probe
value table and per-sample metadata, and pulls gene annotation for the
platform. Downloads are cached in ``cache_dir`` by GEOparse itself.

Example:
    loader = GEODataLoader(cache_dir=Path("data/geo"))
    dataset = loader.load("GDS5093")
    print(dataset.n_samples, dataset.platform)
"""

import ftplib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import GEOparse
import pandas as pd

from .config import DISEASE_STATE_GROUPS
from .errors import DataIntegrityError, DataUnavailableError

logger = logging.getLogger(__name__)

PROBE_ID_COLUMN = "ID_REF"
IDENTIFIER_COLUMN = "IDENTIFIER"

# Download, socket and parse failures GEOparse lets through
FETCH_ERRORS = ftplib.all_errors + (ValueError, KeyError)

# Candidate column names in GPL annot files (first) and full GPL tables
ANNOTATION_COLUMNS: Dict[str, List[str]] = {
    "symbol": ["Gene symbol", "Gene Symbol", "GENE_SYMBOL", "Symbol"],
    "gene_id": ["Gene ID", "ENTREZ_GENE_ID", "Entrez_Gene_ID", "GENE"],
    "chromosome": ["Chromosome location", "Chromosome annotation", "CHROMOSOME", "Chromosome"],
}


@dataclass
class GEODataset:
    """
    One fetched GEO DataSet.

    Attributes:
        accession: GDS accession (e.g. GDS5093)
        probe_table: Probe rows indexed by ID_REF with an IDENTIFIER column
            followed by one numeric column per sample
        sample_metadata: One row per sample (index = GSM) with disease_state,
            group, individual and description columns
        annotation: One row per probe with symbol, gene_id, chromosome
        platform: GPL accession
        title: Dataset title
        value_type: GEO value type ("count", "transformed count", ...)
    """

    accession: str
    probe_table: pd.DataFrame
    sample_metadata: pd.DataFrame
    annotation: pd.DataFrame
    platform: str = ""
    title: str = ""
    value_type: str = ""
    metadata: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def sample_ids(self) -> List[str]:
        return list(self.sample_metadata.index)

    @property
    def n_samples(self) -> int:
        return len(self.sample_metadata)

    @property
    def n_probes(self) -> int:
        return len(self.probe_table)

    @property
    def expression(self) -> pd.DataFrame:
        """Probe x sample value matrix (no identifier column)."""
        return self.probe_table[self.sample_ids]

    def group_counts(self) -> Dict[str, int]:
        """Number of samples per disease-state group."""
        return self.sample_metadata["group"].value_counts().sort_index().to_dict()

    def __repr__(self) -> str:
        return (
            f"GEODataset({self.accession}, platform={self.platform}, "
            f"probes={self.n_probes}, samples={self.n_samples})"
        )


def group_key(disease_state: str, mapping: Optional[Dict[str, str]] = None) -> str:
    """
    Map a disease-state label to an identifier-safe group key.

    Known labels use ``DISEASE_STATE_GROUPS``; anything else is lowercased
    with non-alphanumeric runs replaced by underscores.
    """
    mapping = mapping or DISEASE_STATE_GROUPS
    label = str(disease_state).strip()
    lookup = {k.lower(): v for k, v in mapping.items()}
    if label.lower() in lookup:
        return lookup[label.lower()]
    key = re.sub(r"[^0-9a-zA-Z]+", "_", label).strip("_").lower()
    if not key or key[0].isdigit():
        key = f"g_{key}"
    return key


def build_sample_metadata(
    columns: pd.DataFrame,
    disease_state_column: str = "disease state",
    individual_column: str = "individual",
    group_map: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    """
    Normalize the GDS subset table into the sample metadata frame.

    Args:
        columns: GEOparse ``GDS.columns`` (index = GSM)
        disease_state_column: Subset column holding the four-valued state
        individual_column: Subset column holding the subject identifier
        group_map: Override for ``DISEASE_STATE_GROUPS``

    Returns:
        DataFrame indexed by sample with disease_state, group, individual,
        description

    Raises:
        DataUnavailableError: If the disease-state subset is missing
    """
    if disease_state_column not in columns.columns:
        raise DataUnavailableError(
            f"Dataset has no '{disease_state_column}' subset "
            f"(available: {', '.join(map(str, columns.columns))})"
        )

    states = columns[disease_state_column].astype(str).str.strip()
    metadata = pd.DataFrame(
        {
            "disease_state": states,
            "group": [group_key(s, group_map) for s in states],
        },
        index=columns.index.astype(str),
    )
    if individual_column in columns.columns:
        metadata["individual"] = columns[individual_column].astype(str).values
    else:
        metadata["individual"] = None
    if "description" in columns.columns:
        metadata["description"] = columns["description"].values
    else:
        metadata["description"] = None
    metadata.index.name = "sample"
    return metadata


def _first_token(value) -> Optional[str]:
    """First entry of a GEO multi-value field ("123 /// 456" -> "123")."""
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    text = str(value).strip()
    if not text or text.lower() == "nan":
        return None
    return text.split("///")[0].strip() or None


def normalize_annotation(table: pd.DataFrame) -> pd.DataFrame:
    """
    Reduce a GPL table to probe-keyed symbol, gene_id and chromosome columns.

    Columns absent from the source are filled with nulls so downstream joins
    always see the same schema.
    """
    if "ID" in table.columns:
        index = table["ID"].astype(str)
    else:
        index = table.index.astype(str)

    normalized = pd.DataFrame(index=pd.Index(index.values, name="probe"))
    for target, candidates in ANNOTATION_COLUMNS.items():
        source = next((c for c in candidates if c in table.columns), None)
        if source is None:
            logger.debug("Annotation column for %s not found; filling nulls", target)
            normalized[target] = None
            continue
        values = table[source].values
        if target == "gene_id":
            normalized[target] = [_first_token(v) for v in values]
        else:
            normalized[target] = [
                None if pd.isna(v) or str(v).strip() == "" else str(v).strip()
                for v in values
            ]
    return normalized


class GEODataLoader:
    """Fetches and normalizes a GDS and its platform annotation."""

    def __init__(
        self,
        cache_dir: Path,
        disease_state_column: str = "disease state",
        individual_column: str = "individual",
        group_map: Optional[Dict[str, str]] = None,
    ):
        self.cache_dir = Path(cache_dir)
        self.disease_state_column = disease_state_column
        self.individual_column = individual_column
        self.group_map = group_map

    def _get_geo(self, accession: str, **kwargs):
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        try:
            return GEOparse.get_GEO(
                geo=accession, destdir=str(self.cache_dir), silent=True, **kwargs
            )
        except FETCH_ERRORS as e:
            raise DataUnavailableError(f"Could not fetch {accession} from GEO: {e}") from e

    def load(self, accession: str) -> GEODataset:
        """
        Fetch the dataset and its annotation.

        Raises:
            DataUnavailableError: Fetch failure or unexpected table layout
            DataIntegrityError: Metadata does not cover the expression samples
        """
        logger.info("Fetching %s (cache: %s)", accession, self.cache_dir)
        gds = self._get_geo(accession)

        table = getattr(gds, "table", None)
        if table is None or table.empty:
            raise DataUnavailableError(f"{accession} has no value table")
        if IDENTIFIER_COLUMN not in table.columns:
            raise DataUnavailableError(f"{accession} value table lacks {IDENTIFIER_COLUMN}")

        sample_metadata = build_sample_metadata(
            gds.columns,
            disease_state_column=self.disease_state_column,
            individual_column=self.individual_column,
            group_map=self.group_map,
        )
        probe_table = self._build_probe_table(accession, table, sample_metadata.index)

        platform = _first_token((gds.metadata.get("platform") or [""])[0]) or ""
        annotation = self.load_annotation(platform) if platform else normalize_annotation(
            pd.DataFrame(columns=["ID"])
        )

        dataset = GEODataset(
            accession=accession,
            probe_table=probe_table,
            sample_metadata=sample_metadata,
            annotation=annotation,
            platform=platform,
            title=(gds.metadata.get("title") or [""])[0],
            value_type=(gds.metadata.get("value_type") or [""])[0],
            metadata=dict(gds.metadata),
        )
        logger.info(
            "Loaded %s: %d probes x %d samples, groups %s",
            accession, dataset.n_probes, dataset.n_samples, dataset.group_counts(),
        )
        return dataset

    def load_annotation(self, platform: str) -> pd.DataFrame:
        """Fetch the platform annotation (annot file preferred) and normalize it."""
        logger.info("Fetching annotation for %s", platform)
        gpl = self._get_geo(platform, annotate_gpl=True)
        table = getattr(gpl, "table", None)
        if table is None or table.empty:
            raise DataUnavailableError(f"Platform {platform} has no annotation table")
        annotation = normalize_annotation(table)
        logger.info(
            "Annotation: %d probes, %d with a gene symbol",
            len(annotation), int(annotation["symbol"].notna().sum()),
        )
        return annotation

    @staticmethod
    def _build_probe_table(
        accession: str,
        table: pd.DataFrame,
        sample_ids: Sequence[str],
    ) -> pd.DataFrame:
        value_columns = [c for c in table.columns if c not in (PROBE_ID_COLUMN, IDENTIFIER_COLUMN)]
        if not value_columns:
            raise DataUnavailableError(f"{accession} value table has no sample columns")

        known = set(sample_ids)
        present = set(value_columns)
        missing = [s for s in value_columns if s not in known]
        if missing:
            raise DataIntegrityError(
                f"{len(missing)} sample column(s) lack metadata: {', '.join(missing[:5])}"
            )
        absent = [s for s in sample_ids if s not in present]
        if absent:
            raise DataIntegrityError(
                f"{len(absent)} annotated sample(s) missing from the value table: "
                f"{', '.join(absent[:5])}"
            )

        probe_table = table.copy()
        if PROBE_ID_COLUMN in probe_table.columns:
            probe_table = probe_table.set_index(PROBE_ID_COLUMN)
        probe_table.index = probe_table.index.astype(str)
        probe_table.index.name = PROBE_ID_COLUMN

        for col in sample_ids:
            probe_table[col] = pd.to_numeric(probe_table[col], errors="coerce")

        return probe_table[[IDENTIFIER_COLUMN] + list(sample_ids)]
