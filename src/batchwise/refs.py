"""Forward references to rows that have been staged but not written yet."""

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping


@dataclass(frozen=True)
class Ref:
    """
    Opaque placeholder for the key a staged row will receive once written.

    A ``Ref`` is only meaningful to the staging store that issued it. It can be
    used as a field value in rows registered later, and is replaced by the
    real value when the row holding it is flushed.

    Attributes:
        store_id: Identifier of the issuing staging store.
        seq: Position of the row in the store's global registration order.
        table: Table the referenced row is staged for.
        column: Column of the written row to resolve to. None means the primary key.
    """

    store_id: str
    seq: int
    table: str
    column: str | None = None

    def using(self, column: str) -> "Ref":
        """
        Return a reference to another column of the same row.

        Example:
            >>> user = trx.register("users", {"email": "a@example.com"})
            >>> trx.register("invites", {"user_email": user.using("email")})
        """
        return replace(self, column=column)

    def __repr__(self) -> str:
        target = f".{self.column}" if self.column else ""
        return f"Ref({self.table}#{self.seq}{target})"


@dataclass(frozen=True)
class StagedRow:
    """A row waiting to be written, in registration order within its table."""

    table: str
    fields: Mapping[str, Any]
    position: int
    ref: Ref

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))


@dataclass(frozen=True)
class ResolvedRow:
    """Values the database returned for a written row."""

    key: Any
    values: Mapping[str, Any] = field(default_factory=dict)

    def value_for(self, ref: Ref) -> Any:
        if ref.column is None:
            return self.key
        return self.values[ref.column]
