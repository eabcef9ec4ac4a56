"""Error taxonomy for the soil analysis pipeline."""

from typing import List, Optional


class SoilAnalysisError(Exception):
    """Base class for every error raised by the analysis services."""


class InvalidGeometry(SoilAnalysisError, ValueError):
    """Input GeoJSON is malformed or not a Polygon/MultiPolygon study area."""


class GeometryConversionError(SoilAnalysisError):
    """Geometry was structurally valid but could not be serialized to WKT."""


class QueryError(SoilAnalysisError):
    """Base class for Soil Data Access query failures."""


class QueryExecutionError(QueryError):
    """SDA answered, but with an HTTP error or a non-JSON body."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 snippet: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.snippet = snippet


class QueryTimeout(QueryError):
    """Request deadline expired or the run was cancelled.

    ``cancelled`` tells the two apart: a timeout may be retried, a
    cancellation is terminal for the run.
    """

    def __init__(self, message: str = "Query timeout - try reducing scope or increasing timeout",
                 cancelled: bool = False):
        super().__init__(message)
        self.cancelled = cancelled


class IntersectionComputationError(SoilAnalysisError):
    """Every intersection strategy raised for one soil polygon."""

    def __init__(self, message: str, errors: Optional[List[Exception]] = None):
        super().__init__(message)
        self.errors = list(errors or [])
