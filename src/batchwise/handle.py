"""Database handles bound either to a preset's engine or to an open transaction."""

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Mapping, Sequence, TypeVar

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .config import IsolationLevel
from .exceptions import UnsupportedIsolationLevelError
from .refs import Ref
from .upsert import UpsertBuilder, WriteMode

if TYPE_CHECKING:
    from .presets import PresetRegistry

T = TypeVar("T")

logger = logging.getLogger(__name__)


class DatabaseHandle:
    """
    Entry point for statements and staged batch writes on one preset.

    A handle is bound either to the preset's engine (every operation runs in
    its own short transaction) or to a connection with an open transaction
    (every operation joins that transaction). Each handle owns a staging store;
    transaction handles get a fresh one when their transaction opens.

    Attributes:
        preset: Name of the preset the handle belongs to.
        bind: The engine or connection statements are executed on.
        upsert_builder: Staging store for :meth:`register` and the flush methods.
        isolation: Isolation level of the open transaction, if one was requested.
    """

    def __init__(
        self,
        registry: "PresetRegistry",
        preset: str,
        bind: AsyncEngine | AsyncConnection,
        upsert_builder: UpsertBuilder | None = None,
        isolation: IsolationLevel | None = None,
    ):
        self.registry = registry
        self.preset = preset
        self.bind = bind
        self.upsert_builder = upsert_builder if upsert_builder is not None else UpsertBuilder()
        self.isolation = isolation

    def __repr__(self) -> str:
        kind = "transaction" if self.in_transaction else "engine"
        return f"<DatabaseHandle preset={self.preset!r} {kind}>"

    @property
    def in_transaction(self) -> bool:
        return isinstance(self.bind, AsyncConnection)

    @property
    def chunk_size(self) -> int:
        return self.registry.chunk_size

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        """
        Yield a connection for a unit of work.

        Transaction handles yield their own connection. Engine handles check out
        a connection and commit when the block exits cleanly.
        """
        if isinstance(self.bind, AsyncConnection):
            yield self.bind
        else:
            async with self.bind.begin() as conn:
                yield conn

    async def get_table(self, name: str, conn: AsyncConnection | None = None) -> sa.Table:
        """Return the table ``name``, reflecting it on first use."""
        if conn is not None:
            return await self.registry.get_table(name, conn)
        async with self.connection() as conn:
            return await self.registry.get_table(name, conn)

    async def execute(self, statement: Any, params: Mapping[str, Any] | Sequence[Mapping[str, Any]] | None = None):
        """
        Execute a SQLAlchemy statement, or a raw SQL string, on this handle.

        Returns:
            The buffered ``sqlalchemy.engine.Result``.
        """
        if isinstance(statement, str):
            statement = sa.text(statement)
        async with self.connection() as conn:
            return await conn.execute(statement, params)

    async def transaction(
        self,
        callback: Callable[["DatabaseHandle"], Awaitable[T]],
        isolation: IsolationLevel | str | None = None,
    ) -> T:
        """
        Run ``callback`` inside a transaction and return its result.

        The transaction commits when ``callback`` returns and rolls back when it
        raises; the exception is re-raised. On a handle that is already inside a
        transaction a SAVEPOINT is used instead and ``callback`` receives this
        handle.

        Args:
            callback: Coroutine function receiving the transaction handle.
            isolation: Isolation level for a new transaction. Defaults to the
                preset's configured level, then to the engine default.

        Raises:
            UnsupportedIsolationLevelError: If the database does not offer the
                requested level, e.g. READ COMMITTED on SQLite.
        """
        level = IsolationLevel.parse(isolation)

        if isinstance(self.bind, AsyncConnection):
            if level is not None and level is not self.isolation:
                logger.warning(
                    "Savepoint on preset '%s' keeps isolation %s; requested %s is ignored",
                    self.preset,
                    self.isolation.value if self.isolation else "engine default",
                    level.value,
                )
            async with self.bind.begin_nested():
                return await callback(self)

        if level is None:
            level = self.registry.default_isolation(self.preset)
        async with self.bind.connect() as conn:
            if level is not None:
                try:
                    conn = await conn.execution_options(isolation_level=level.sql)
                except sa_exc.ArgumentError as exc:
                    raise UnsupportedIsolationLevelError(
                        f"Isolation level '{level.value}' is not supported on preset "
                        f"'{self.preset}' ({conn.dialect.name})"
                    ) from exc
            async with conn.begin():
                trx = DatabaseHandle(self.registry, self.preset, conn, isolation=level)
                logger.debug(
                    "Opened transaction on preset '%s' (isolation: %s)",
                    self.preset,
                    level.value if level else "engine default",
                )
                return await callback(trx)

    def describe(self) -> str:
        """Summarize the transaction state of this handle."""
        if isinstance(self.bind, AsyncConnection) and self.bind.in_transaction():
            level = self.isolation.value if self.isolation else "engine default"
            savepoint = ", savepoint" if self.bind.in_nested_transaction() else ""
            return f"In Transaction, preset: {self.preset}, isolation: {level}{savepoint}"
        return f"Not in Transaction, preset: {self.preset}"

    def debug_transaction(self) -> None:
        logger.info("[transaction] %s", self.describe())

    # -- staged batch writes ------------------------------------------------------

    def register(self, table: str, fields: Mapping[str, Any]) -> Ref:
        """
        Stage a row for ``table`` and return a reference to its future key.

        Example:
            >>> company = trx.register("companies", {"name": "Tech Corp"})
            >>> trx.register("departments", {"name": "R&D", "company_id": company})
        """
        return self.upsert_builder.register(table, fields)

    async def upsert(
        self,
        table: str,
        chunk_size: int | None = None,
        conflict_columns: str | Sequence[str] | None = None,
    ) -> list[Any]:
        """
        Write the rows staged for ``table``, updating rows whose unique key exists.

        Returns:
            The primary keys of the written rows, in registration order.
        """
        return await self.upsert_builder.upsert(self, table, chunk_size, conflict_columns)

    async def insert_only(self, table: str, chunk_size: int | None = None) -> list[Any]:
        """Write the rows staged for ``table``; unique key conflicts raise."""
        return await self.upsert_builder.insert_only(self, table, chunk_size)

    async def upsert_or_insert(
        self, table: str, mode: WriteMode | str, chunk_size: int | None = None
    ) -> list[Any]:
        return await self.upsert_builder.upsert_or_insert(self, table, mode, chunk_size)

    async def update_batch(
        self,
        table: str,
        chunk_size: int | None = None,
        match_columns: str | Sequence[str] | None = None,
    ) -> None:
        """Update existing rows from the rows staged for ``table``."""
        await self.upsert_builder.update_batch(self, table, chunk_size, match_columns)
