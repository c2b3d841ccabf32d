"""Gene set collections read from GMT files or URLs."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

# MSigDB-style name prefixes for the three GO branches
GO_BRANCH_PREFIXES = {
    "GOBP_": "GO:BP",
    "GOMF_": "GO:MF",
    "GOCC_": "GO:CC",
}


def create_session(
    max_retries: int = 3,
    backoff_factor: float = 0.5,
    status_forcelist: tuple = (500, 502, 503, 504),
    user_agent: str = "dengue-gex/0.1",
) -> requests.Session:
    """
    Create a requests Session that retries transient download failures.

    Args:
        max_retries: Maximum retry attempts
        backoff_factor: Backoff multiplier between retries
        status_forcelist: HTTP status codes that trigger retries
        user_agent: User-Agent header value
    """
    session = requests.Session()
    retries = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=status_forcelist,
        allowed_methods=("GET",),
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": user_agent})
    return session


@dataclass(frozen=True)
class GeneSet:
    """One gene set: identifier, description and member gene IDs."""

    name: str
    description: str
    genes: FrozenSet[str]

    @property
    def size(self) -> int:
        return len(self.genes)

    @property
    def label(self) -> str:
        """Human-readable name; GMT descriptions are often just a URL."""
        if not self.description or self.description.startswith(("http://", "https://")):
            return self.name
        return self.description


def source_for(database: str, name: str) -> str:
    """g:Profiler-style source label for a set (GO branch when recognizable)."""
    if database == "GO":
        for prefix, branch in GO_BRANCH_PREFIXES.items():
            if name.upper().startswith(prefix):
                return branch
    return database


def parse_gmt(lines: Iterable[str]) -> List[GeneSet]:
    """
    Parse GMT lines: name, description, then member genes, tab separated.

    Blank lines and ``#`` comments are skipped; duplicate names keep the
    first occurrence.
    """
    gene_sets: Dict[str, GeneSet] = {}
    for line in lines:
        line = line.rstrip("\r\n")
        if not line.strip() or line.startswith("#"):
            continue
        parts = line.split("\t")
        if len(parts) < 3:
            logger.debug("Skipping malformed GMT line: %.60s", line)
            continue
        name = parts[0].strip()
        if name in gene_sets:
            continue
        genes = frozenset(g.strip() for g in parts[2:] if g.strip())
        gene_sets[name] = GeneSet(name=name, description=parts[1].strip(), genes=genes)
    return list(gene_sets.values())


def load_gmt(
    source: Union[str, Path],
    session: Optional[requests.Session] = None,
    timeout: float = 60.0,
) -> List[GeneSet]:
    """
    Load gene sets from a local GMT file or an http(s) URL.

    Raises:
        FileNotFoundError: Local file does not exist
        requests.RequestException: Download failed
    """
    text_source = str(source)
    if text_source.startswith(("http://", "https://")):
        session = session or create_session()
        logger.info("Downloading gene sets from %s", text_source)
        response = session.get(text_source, timeout=timeout)
        response.raise_for_status()
        gene_sets = parse_gmt(response.text.splitlines())
    else:
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"Gene set file not found: {path}")
        with open(path, "r") as f:
            gene_sets = parse_gmt(f)

    logger.info("Loaded %d gene sets from %s", len(gene_sets), text_source)
    return gene_sets
