from __future__ import annotations


class IngestError(Exception):
    """Base class for errors raised by the ingestion and query core."""


class ValidationError(IngestError):
    """Request rejected before any file or dataset row was created."""


class ParseError(IngestError):
    """Payload (or part of it) is not a readable feature document."""


class GeometryError(IngestError):
    """Feature geometry is not a two-component point."""


class PersistenceError(IngestError):
    """Backing store write failed."""


class StorageError(IngestError):
    """Raw upload storage is unavailable."""


class NotFoundError(IngestError):
    """Unknown dataset id."""


class ConflictError(IngestError):
    """Operation not allowed in the dataset's current state."""


class IngestCancelled(IngestError):
    """Processing stopped between records by a cancellation signal."""
