"""
Error hierarchy for the knowledge store.

Read misses are not errors: fetches return None or an empty list.
"""

import sqlite3


class KnowledgeStoreError(Exception):
    """Base exception for all knowledge store errors."""
    pass


class ConstraintViolation(KnowledgeStoreError):
    """
    A write breached a foreign key or uniqueness constraint.

    The enclosing transaction has been rolled back.
    """
    pass


class ProviderError(KnowledgeStoreError):
    """
    Embedding generation failed.

    Raised when:
    - The provider raised or was unreachable
    - The provider call timed out
    - The provider returned a vector of the wrong dimension

    No writes are attempted once this is raised.
    """

    def __init__(self, message: str, provider: str = None):
        super().__init__(message)
        self.provider = provider


class CodecError(KnowledgeStoreError):
    """A vector could not be encoded or decoded."""
    pass


class FormatError(CodecError):
    """Encoded vector bytes are malformed (length not a multiple of 4, or wrong dimension)."""
    pass


class StoreError(KnowledgeStoreError):
    """The underlying storage engine failed."""
    pass


def translate_sqlite_error(exc: sqlite3.Error) -> KnowledgeStoreError:
    """Wrap a native sqlite3 error in the matching store error."""
    if isinstance(exc, sqlite3.IntegrityError):
        return ConstraintViolation(str(exc))
    return StoreError(f"{exc.__class__.__name__}: {exc}")
