"""Exceptions raised by batchwise."""

from typing import Any


class BatchwiseError(Exception):
    """Base class for every error raised by batchwise."""


class UnresolvedReferenceError(BatchwiseError):
    """
    A staged row references a row whose key has not been written yet.

    This always means the tables were flushed out of dependency order: the
    referenced table must be flushed before the table holding the reference.
    """

    def __init__(self, table: str, field: str, ref: Any):
        self.table = table
        self.field = field
        self.ref = ref
        super().__init__(
            f"Unresolved reference in '{table}.{field}': {ref!r} points to a row "
            f"of '{ref.table}' that has not been flushed yet"
        )


class InvalidReferenceError(BatchwiseError):
    """A reference token issued by a different staging store was used."""


class ConstraintViolationError(BatchwiseError):
    """The database rejected a batched statement."""

    def __init__(self, table: str, message: str):
        self.table = table
        super().__init__(f"Batch write to '{table}' failed: {message}")


class PresetNotFoundError(BatchwiseError, KeyError):
    """No connection is configured under the requested preset name."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class UnknownTableError(BatchwiseError):
    """The table is neither declared in the metadata nor present in the database."""


class UnsupportedDialectError(BatchwiseError):
    """The database dialect cannot run RETURNING based batch writes."""


class UnsupportedIsolationLevelError(BatchwiseError):
    """The preset's database does not offer the requested isolation level."""
