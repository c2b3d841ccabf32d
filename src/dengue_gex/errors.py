"""Exception types raised by the analysis stages."""


class AnalysisError(Exception):
    """Base class for failures that halt the report."""

    pass


class DataUnavailableError(AnalysisError):
    """The dataset could not be fetched, parsed, or lacks required fields."""

    pass


class DataIntegrityError(AnalysisError):
    """A join or alignment step produced rows that do not match its inputs."""

    pass


class EnrichmentServiceError(AnalysisError):
    """The remote enrichment service could not be reached or rejected the query."""

    pass
