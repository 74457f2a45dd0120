"""
Staging store and batch write engine.

Rows are staged per table with :meth:`UpsertBuilder.register`, which returns a
:class:`~batchwise.refs.Ref` immediately. Staged rows may hold refs to other
staged rows. Flushing a table resolves every ref against the keys recorded by
earlier flushes, writes the rows in chunks and records the keys the database
returned, so tables flushed afterwards can resolve refs to them.

Flush order is the caller's responsibility: a table must be flushed before
any table whose rows reference it.
"""

import itertools
import logging
import uuid
from collections import defaultdict
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Sequence

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncConnection

from .exceptions import (
    BatchwiseError,
    ConstraintViolationError,
    InvalidReferenceError,
    UnresolvedReferenceError,
    UnsupportedDialectError,
)
from .refs import Ref, ResolvedRow, StagedRow

if TYPE_CHECKING:
    from .handle import DatabaseHandle

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}

_MATCH_PREFIX = "_bw_match_"
_SET_PREFIX = "_bw_set_"


class WriteMode(str, Enum):
    """Conflict policy for a flush."""

    UPSERT = "upsert"
    INSERT = "insert"


def chunked(items: Sequence[Any], size: int) -> Iterator[list[Any]]:
    """Yield consecutive slices of ``items`` holding at most ``size`` elements."""
    iterator = iter(items)
    while chunk := list(itertools.islice(iterator, size)):
        yield chunk


def _as_columns(columns: str | Sequence[str] | None) -> tuple[str, ...]:
    if columns is None:
        return ()
    if isinstance(columns, str):
        return (columns,)
    return tuple(columns)


def _primary_key_names(table: sa.Table) -> tuple[str, ...]:
    return tuple(column.name for column in table.primary_key.columns)


def _key_from(table: sa.Table, values: Mapping[str, Any]) -> Any:
    names = _primary_key_names(table)
    if not names or any(name not in values for name in names):
        return None
    if len(names) == 1:
        return values[names[0]]
    return tuple(values[name] for name in names)


def _conflict_target(
    table: sa.Table, columns: Sequence[str], explicit: tuple[str, ...]
) -> tuple[str, ...]:
    """Pick the unique key an upsert of ``columns`` can conflict on."""
    if explicit:
        return explicit

    candidates = [_primary_key_names(table)]
    uniques = [
        constraint
        for constraint in table.constraints
        if isinstance(constraint, sa.UniqueConstraint)
    ]
    uniques += [index for index in table.indexes if index.unique]
    candidates += sorted(tuple(column.name for column in item.columns) for item in uniques)

    supplied = set(columns)
    for candidate in candidates:
        if candidate and supplied.issuperset(candidate):
            return candidate
    return ()


class UpsertBuilder:
    """
    Staged rows and resolved keys for one transaction.

    A builder lives exactly as long as the transaction handle that owns it.
    It is not safe to share between concurrently running call chains.
    """

    def __init__(self):
        self.store_id = uuid.uuid4().hex
        self._seq = itertools.count(1)
        self._tables: dict[str, list[StagedRow]] = {}
        self._positions: dict[str, int] = defaultdict(int)
        self._resolved: dict[int, ResolvedRow] = {}

    def __repr__(self) -> str:
        pending = {table: len(rows) for table, rows in self._tables.items() if rows}
        return f"<UpsertBuilder {self.store_id[:8]} pending={pending} resolved={len(self._resolved)}>"

    # -- staging -----------------------------------------------------------------

    def register(self, table: str, fields: Mapping[str, Any]) -> Ref:
        """
        Stage a row for ``table`` and return a reference to its future key.

        No database I/O happens here. Values in ``fields`` may be refs returned
        by earlier calls on this builder; whether they can be resolved is only
        checked when ``table`` is flushed.

        Raises:
            InvalidReferenceError: If a value is a ref issued by another builder.
        """
        if not isinstance(fields, Mapping):
            raise TypeError(f"Row for '{table}' must be a mapping, got {type(fields).__name__}")
        for value in fields.values():
            if isinstance(value, Ref):
                self._check_ref(value)

        ref = Ref(self.store_id, next(self._seq), table)
        position = self._positions[table]
        self._positions[table] = position + 1
        self._tables.setdefault(table, []).append(StagedRow(table, fields, position, ref))
        logger.debug("Staged %r at position %d", ref, position)
        return ref

    def pending(self, table: str) -> tuple[StagedRow, ...]:
        """Rows staged for ``table`` that have not been flushed."""
        return tuple(self._tables.get(table, ()))

    def resolve(self, ref: Ref) -> Any:
        """
        Return the value ``ref`` resolves to.

        Raises:
            InvalidReferenceError: If ``ref`` was issued by another builder.
            KeyError: If the referenced row has not been flushed.
        """
        self._check_ref(ref)
        return self._resolved[ref.seq].value_for(ref)

    def _check_ref(self, ref: Ref) -> None:
        if ref.store_id != self.store_id:
            raise InvalidReferenceError(
                f"{ref!r} was issued by another staging store and cannot be used here"
            )

    def _resolve_row(self, row: StagedRow) -> dict[str, Any]:
        values = {}
        for name, value in row.fields.items():
            if isinstance(value, Ref):
                self._check_ref(value)
                resolved = self._resolved.get(value.seq)
                if resolved is None:
                    raise UnresolvedReferenceError(row.table, name, value)
                if value.column is None and resolved.key is None:
                    raise BatchwiseError(
                        f"{value!r} used in '{row.table}.{name}' points to a row of "
                        f"'{value.table}', which has no primary key; select a column "
                        f"with {value!r}.using(...)"
                    )
                try:
                    value = resolved.value_for(value)
                except KeyError:
                    raise BatchwiseError(
                        f"{value!r} used in '{row.table}.{name}' selects column "
                        f"'{value.column}', which was not written for that row"
                    ) from None
            values[name] = value
        return values

    def _take(self, table: str, count: int) -> None:
        # Rows staged while the flush was running stay queued.
        remaining = self._tables.get(table, [])[count:]
        if remaining:
            self._tables[table] = remaining
        else:
            self._tables.pop(table, None)

    @staticmethod
    def _chunk_size(handle: "DatabaseHandle", chunk_size: int | None) -> int:
        size = handle.chunk_size if chunk_size is None else chunk_size
        if not isinstance(size, int) or isinstance(size, bool) or size <= 0:
            raise ValueError(f"chunk_size must be a positive integer, got {size!r}")
        return size

    # -- flushing ----------------------------------------------------------------

    async def upsert(
        self,
        handle: "DatabaseHandle",
        table: str,
        chunk_size: int | None = None,
        conflict_columns: str | Sequence[str] | None = None,
    ) -> list[Any]:
        """Insert staged rows of ``table``, updating rows that already exist."""
        return await self._flush(handle, table, WriteMode.UPSERT, chunk_size, conflict_columns)

    async def insert_only(
        self, handle: "DatabaseHandle", table: str, chunk_size: int | None = None
    ) -> list[Any]:
        """Insert staged rows of ``table``, failing on unique key conflicts."""
        return await self._flush(handle, table, WriteMode.INSERT, chunk_size)

    async def upsert_or_insert(
        self,
        handle: "DatabaseHandle",
        table: str,
        mode: WriteMode | str,
        chunk_size: int | None = None,
    ) -> list[Any]:
        return await self._flush(handle, table, WriteMode(mode), chunk_size)

    async def _flush(
        self,
        handle: "DatabaseHandle",
        table: str,
        mode: WriteMode,
        chunk_size: int | None,
        conflict_columns: str | Sequence[str] | None = None,
    ) -> list[Any]:
        rows = self.pending(table)
        if not rows:
            return []
        size = self._chunk_size(handle, chunk_size)
        # Resolve everything up front so a missing ref writes nothing.
        resolved_values = [self._resolve_row(row) for row in rows]
        target = _as_columns(conflict_columns)

        written: list[ResolvedRow] = []
        async with handle.connection() as conn:
            sa_table = await handle.get_table(table, conn)
            for chunk in chunked(resolved_values, size):
                written.extend(await self._write_chunk(conn, sa_table, chunk, mode, target))

        for row, result in zip(rows, written):
            self._resolved[row.ref.seq] = result
        self._take(table, len(rows))

        logger.debug(
            "Flushed %d row(s) to '%s' (%s, chunk size %d) on preset '%s'",
            len(rows),
            table,
            mode.value,
            size,
            handle.preset,
        )
        return [result.key for result in written]

    async def _write_chunk(
        self,
        conn: AsyncConnection,
        table: sa.Table,
        chunk: list[dict[str, Any]],
        mode: WriteMode,
        conflict_columns: tuple[str, ...],
    ) -> list[ResolvedRow]:
        # One statement needs identical keys in every row, so rows are grouped
        # by column set and put back in place afterwards.
        groups: dict[tuple[str, ...], list[int]] = defaultdict(list)
        for index, values in enumerate(chunk):
            groups[tuple(sorted(values))].append(index)

        results: list[ResolvedRow | None] = [None] * len(chunk)
        for columns, indexes in groups.items():
            self._check_columns(table, columns)
            params = [chunk[index] for index in indexes]
            target = ()
            if mode is WriteMode.UPSERT and columns:
                target = _conflict_target(table, columns, conflict_columns)
                if not target:
                    logger.debug(
                        "No unique key of '%s' is covered by %s; inserting without conflict handling",
                        table.name,
                        columns,
                    )
            try:
                if target:
                    returned = await self._upsert_rows(conn, table, columns, target, params)
                else:
                    returned = await self._insert_rows(conn, table, params)
            except sa_exc.IntegrityError as exc:
                logger.error("Batch write to '%s' rejected: %s", table.name, exc.orig)
                raise ConstraintViolationError(table.name, str(exc.orig)) from exc
            for index, row in zip(indexes, returned):
                values = dict(row._mapping)
                results[index] = ResolvedRow(_key_from(table, values), values)
        return results

    @staticmethod
    def _check_columns(table: sa.Table, columns: Sequence[str]) -> None:
        unknown = [name for name in columns if name not in table.c]
        if unknown:
            raise BatchwiseError(f"Table '{table.name}' has no column(s): {', '.join(unknown)}")

    @staticmethod
    def _dialect_insert(conn: AsyncConnection, table: sa.Table):
        factory = _DIALECT_INSERTS.get(conn.dialect.name)
        if factory is None:
            raise UnsupportedDialectError(
                f"Batch writes are not supported on the '{conn.dialect.name}' dialect; "
                "they need INSERT .. ON CONFLICT .. RETURNING"
            )
        return factory(table)

    @staticmethod
    def _on_conflict_update(statement, columns: Sequence[str], target: tuple[str, ...]):
        updates = {name: statement.excluded[name] for name in columns if name not in target}
        if not updates:
            # Every supplied column is part of the key; a no-op update still returns the row.
            updates = {target[0]: statement.excluded[target[0]]}
        return statement.on_conflict_do_update(index_elements=list(target), set_=updates)

    async def _insert_rows(
        self, conn: AsyncConnection, table: sa.Table, params: list[dict[str, Any]]
    ) -> list[sa.Row]:
        statement = self._dialect_insert(conn, table)
        if (
            len(params) > 1
            and params[0]
            and conn.dialect.insert_executemany_returning_sort_by_parameter_order
        ):
            result = await conn.execute(
                statement.returning(*table.c, sort_by_parameter_order=True), params
            )
            return list(result.all())

        rows = []
        single = statement.returning(*table.c)
        for values in params:
            result = await conn.execute(single, values)
            rows.append(result.one())
        return rows

    async def _upsert_rows(
        self,
        conn: AsyncConnection,
        table: sa.Table,
        columns: tuple[str, ...],
        target: tuple[str, ...],
        params: list[dict[str, Any]],
    ) -> list[sa.Row]:
        # Updated rows keep their old keys, so RETURNING order says nothing about
        # which staged row a returned row belongs to. Rows are matched back on
        # their conflict key instead; when that key is not unique within the
        # group, rows are written one at a time.
        keys = None
        if len(params) > 1 and set(target).issubset(columns):
            keys = [tuple(values[name] for name in target) for values in params]
            if len(set(keys)) != len(keys):
                keys = None

        if keys is None:
            rows = []
            for values in params:
                statement = self._dialect_insert(conn, table).values(values)
                statement = self._on_conflict_update(statement, columns, target)
                result = await conn.execute(statement.returning(*table.c))
                rows.append(result.one())
            return rows

        statement = self._dialect_insert(conn, table).values(params)
        statement = self._on_conflict_update(statement, columns, target)
        result = await conn.execute(statement.returning(*table.c))
        returned = {tuple(row._mapping[name] for name in target): row for row in result.all()}
        try:
            return [returned[key] for key in keys]
        except KeyError:
            raise BatchwiseError(
                f"Rows returned by the upsert of '{table.name}' could not be matched "
                f"to the staged rows on {target}"
            ) from None

    # -- updates -----------------------------------------------------------------

    async def update_batch(
        self,
        handle: "DatabaseHandle",
        table: str,
        chunk_size: int | None = None,
        match_columns: str | Sequence[str] | None = None,
    ) -> None:
        """
        Update existing rows of ``table`` from the staged rows, without inserting.

        Each staged row is matched on ``match_columns`` (the primary key by
        default) and every other supplied column is written.
        """
        rows = self.pending(table)
        if not rows:
            return
        size = self._chunk_size(handle, chunk_size)
        resolved_values = [self._resolve_row(row) for row in rows]

        async with handle.connection() as conn:
            sa_table = await handle.get_table(table, conn)
            match = _as_columns(match_columns) or _primary_key_names(sa_table)
            if not match:
                raise BatchwiseError(
                    f"Table '{table}' has no primary key; pass match_columns to update it"
                )
            for row, values in zip(rows, resolved_values):
                missing = [name for name in match if name not in values]
                if missing:
                    raise BatchwiseError(
                        f"Row {row.position} staged for '{table}' lacks match column(s): "
                        + ", ".join(missing)
                    )
            for chunk in chunked(resolved_values, size):
                await self._update_chunk(conn, sa_table, chunk, match)

        for row, values in zip(rows, resolved_values):
            key = _key_from(sa_table, values)
            if key is not None:
                self._resolved[row.ref.seq] = ResolvedRow(key, values)
        self._take(table, len(rows))
        logger.debug("Updated %d row(s) of '%s' matched on %s", len(rows), table, match)

    async def _update_chunk(
        self,
        conn: AsyncConnection,
        table: sa.Table,
        chunk: list[dict[str, Any]],
        match: tuple[str, ...],
    ) -> None:
        groups: dict[tuple[str, ...], list[dict[str, Any]]] = defaultdict(list)
        for values in chunk:
            groups[tuple(sorted(values))].append(values)

        for columns, members in groups.items():
            self._check_columns(table, columns)
            assigned = [name for name in columns if name not in match]
            if not assigned:
                logger.debug("Skipping %d row(s) of '%s' with nothing to update", len(members), table.name)
                continue
            statement = (
                sa.update(table)
                .where(sa.and_(*(table.c[name] == sa.bindparam(_MATCH_PREFIX + name) for name in match)))
                .values({name: sa.bindparam(_SET_PREFIX + name) for name in assigned})
            )
            params = [
                {
                    **{_MATCH_PREFIX + name: values[name] for name in match},
                    **{_SET_PREFIX + name: values[name] for name in assigned},
                }
                for values in members
            ]
            try:
                await conn.execute(statement, params)
            except sa_exc.IntegrityError as exc:
                logger.error("Batch update of '%s' rejected: %s", table.name, exc.orig)
                raise ConstraintViolationError(table.name, str(exc.orig)) from exc
