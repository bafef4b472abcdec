class TaxKBError(Exception):
    """Base class for all knowledge-base pipeline errors."""


class ExtractionError(TaxKBError):
    """The source PDF is unreachable, unsupported, or has no searchable text."""


class EmbeddingServiceError(TaxKBError):
    """An embedding batch call failed as a whole."""


class CompletionServiceError(TaxKBError):
    """The completion service could not produce an answer."""


class StoreError(TaxKBError):
    """Persisting or reading records failed."""


class RetrievalUnavailable(TaxKBError):
    """The similarity index cannot serve the query; callers fall back to brute force."""


class IngestTimeout(TaxKBError):
    """The wall-clock budget of an ingest run was exhausted."""


class JobConflictError(TaxKBError):
    """Another ingest job for the same document is still pending or processing."""


class DocumentNotFoundError(TaxKBError):
    pass
