"""Exception hierarchy shared by the index, transport and service layers."""

from __future__ import annotations


class NoteFinderError(Exception):
    """Base class for all NoteFinder errors."""


class InvalidQueryError(NoteFinderError, ValueError):
    """Raised for empty queries, bad limits or malformed vectors."""


class SchemaError(NoteFinderError):
    """The vector index cannot serve requests until it is rebuilt."""

    needs_rebuild = True


class SchemaMismatchError(SchemaError):
    """Existing table does not match the expected dimensions or columns."""


class IndexNotReadyError(SchemaError):
    """The index was never initialised or a rebuild failed midway."""


class RebuildError(SchemaError):
    """Dropping or recreating the index failed."""


class TransportError(NoteFinderError):
    """A request to the backend could not be completed."""


class RequestTimeoutError(TransportError):
    """No response arrived before the per-request deadline."""


class WorkerTerminatedError(TransportError):
    """The backend was shut down or crashed while a request was pending."""


class WorkerRequestError(TransportError):
    """The backend answered with an error response."""


class WorkerInitializationError(TransportError):
    """The backend failed to load its model or open the index."""
