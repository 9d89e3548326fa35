"""
Error taxonomy for the Sanctions Corpus Service

Ingestion code recovers from these locally (log and continue); the query
path lets them reach the API exception handlers, which turn them into
structured JSON errors.
"""

from typing import Optional


class SanctionsCorpusError(Exception):
    """Base class for all corpus errors

    Attributes:
        code: Error code for programmatic handling
        source: Sanctions source involved, if any
    """
    code = "CORPUS_ERROR"

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


class FetchError(SanctionsCorpusError):
    """Raised when a remote feed cannot be reached (network, timeout, non-200)"""
    code = "FETCH_ERROR"


class ParseError(SanctionsCorpusError):
    """Raised when XML or JSON content is malformed beyond recovery"""
    code = "PARSE_ERROR"


class ValidationError(SanctionsCorpusError):
    """Raised when a record or request is missing a required field"""
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str = "unknown", source: Optional[str] = None):
        self.field = field
        super().__init__(message, source=source)


class NotFoundError(SanctionsCorpusError):
    """Raised when a record or the whole corpus is absent"""
    code = "NOT_FOUND"


class StorageError(SanctionsCorpusError, OSError):
    """Raised when reading or writing corpus files fails"""
    code = "STORAGE_ERROR"
