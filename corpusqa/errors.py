"""Error taxonomy for corpusqa.

Library code raises these; the HTTP layer and the CLI translate them into
status codes and exit codes.
"""
from typing import Optional


class CorpusQAError(Exception):
    """Base exception for corpusqa."""

    pass


class ValidationError(CorpusQAError):
    """Invalid name, empty query, missing required path or bad argument."""

    pass


class NotFoundError(CorpusQAError):
    """Requested model, source or snapshot was not found."""

    pass


class IndexNotAvailableError(NotFoundError):
    """The model has no built index yet (build before querying)."""

    pass


class AlreadyExistsError(CorpusQAError):
    """A model with the same name already exists."""

    pass


class UnsupportedInputError(CorpusQAError):
    """Unrecognized document type."""

    pass


class EncryptedSourceError(UnsupportedInputError):
    """Source document is encrypted and cannot be read."""

    pass


class EmptyCorpusError(CorpusQAError):
    """Build produced zero usable chunks."""

    pass


class SnapshotParseError(CorpusQAError):
    """Index snapshot exists but is structurally invalid."""

    pass


class DimensionMismatchError(CorpusQAError):
    """Vector length disagrees with the index's established dimension."""

    def __init__(self, expected: int, actual: int, context: str = ""):
        self.expected = expected
        self.actual = actual
        message = f"Embedding dimension mismatch: expected {expected}, got {actual}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class UpstreamError(CorpusQAError):
    """Embedding or generation backend unreachable or returned an error."""

    def __init__(
        self,
        message: str,
        backend: str = "ollama",
        operation: str = "",
        status_code: Optional[int] = None,
    ):
        self.backend = backend
        self.operation = operation
        self.status_code = status_code
        super().__init__(message)
