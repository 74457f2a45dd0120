"""Registry mapping preset names to database engines."""

import logging
from typing import Mapping

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from .config import DEFAULT_CHUNK_SIZE, DEFAULT_PRESET, DatabaseSettings, IsolationLevel, PresetConfig
from .context import current_transaction
from .exceptions import BatchwiseError, PresetNotFoundError, UnknownTableError
from .handle import DatabaseHandle

logger = logging.getLogger(__name__)


class PresetRegistry:
    """
    Named database connections, e.g. ``"w"`` for the primary and ``"r"`` for a replica.

    Tables declared in :attr:`metadata` are used as declared; any other table
    is reflected from the database the first time it is written to.
    """

    def __init__(self, metadata: sa.MetaData | None = None, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.metadata = metadata if metadata is not None else sa.MetaData()
        self.chunk_size = chunk_size
        self.default_preset = DEFAULT_PRESET
        self._engines: dict[str, AsyncEngine] = {}
        self._configs: dict[str, PresetConfig] = {}

    def __repr__(self) -> str:
        return f"<PresetRegistry presets={self.presets}>"

    @property
    def presets(self) -> tuple[str, ...]:
        return tuple(self._engines)

    def add_preset(self, name: str, preset: str | PresetConfig | AsyncEngine) -> AsyncEngine:
        """
        Register a preset.

        Args:
            name: The preset name callers will request.
            preset: A database URL, a :class:`PresetConfig`, or a ready engine.

        Returns:
            The engine now serving ``name``.
        """
        if name in self._engines:
            raise BatchwiseError(f"Preset '{name}' is already configured; disconnect first")

        if isinstance(preset, AsyncEngine):
            engine = preset
            config = PresetConfig(url=engine.url.render_as_string(hide_password=False))
        else:
            config = PresetConfig(url=preset) if isinstance(preset, str) else preset
            engine = create_async_engine(
                config.url, echo=config.echo, pool_pre_ping=config.pool_pre_ping
            )

        self._engines[name] = engine
        self._configs[name] = config
        logger.debug("Configured preset '%s' (%s)", name, engine.url.render_as_string())
        return engine

    def configure(self, settings: DatabaseSettings) -> None:
        """Apply environment or file based settings to this registry."""
        for name, config in settings.presets.items():
            self.add_preset(name, config)
        self.chunk_size = settings.chunk_size
        self.default_preset = settings.default_preset
        logging.getLogger("batchwise").setLevel(settings.log_level.upper())

    def get_engine(self, name: str) -> AsyncEngine:
        try:
            return self._engines[name]
        except KeyError:
            raise PresetNotFoundError(
                f"Unknown preset '{name}'; configured presets: {', '.join(self._engines) or 'none'}"
            ) from None

    def default_isolation(self, name: str) -> IsolationLevel | None:
        config = self._configs.get(name)
        return config.isolation if config else None

    def base_handle(self, name: str) -> DatabaseHandle:
        """Return a new engine bound handle for ``name``, ignoring open transactions."""
        return DatabaseHandle(self, name, self.get_engine(name))

    def get_preset(self, name: str | None = None) -> DatabaseHandle:
        """
        Resolve a preset to a handle.

        Inside a transactional call chain that holds an open transaction for
        ``name`` this is that transaction's handle; otherwise it is a new handle
        on the preset's engine, with its own staging store.
        """
        name = name or self.default_preset
        trx = current_transaction(name)
        if trx is not None:
            return trx
        return self.base_handle(name)

    async def get_table(self, name: str, conn: AsyncConnection) -> sa.Table:
        table = self.metadata.tables.get(name)
        if table is not None:
            return table

        def reflect(sync_conn):
            try:
                self.metadata.reflect(sync_conn, only=[name])
            except sa_exc.InvalidRequestError as exc:
                raise UnknownTableError(f"Table '{name}' does not exist") from exc

        await conn.run_sync(reflect)
        logger.debug("Reflected table '%s'", name)
        return self.metadata.tables[name]

    async def create_tables(self) -> None:
        """Create every table declared in :attr:`metadata` on every preset."""
        for name, engine in self._engines.items():
            async with engine.begin() as conn:
                await conn.run_sync(self.metadata.create_all)
            logger.debug("Created tables on preset '%s'", name)

    async def dispose(self) -> None:
        """Dispose every engine and forget all presets."""
        for engine in self._engines.values():
            await engine.dispose()
        self._engines.clear()
        self._configs.clear()


# Registry used by connect(), get_preset() and the transactional scope
registry = PresetRegistry()


async def connect(
    presets: Mapping[str, str | PresetConfig | AsyncEngine] | DatabaseSettings,
    metadata: sa.MetaData | None = None,
    create_tables: bool = False,
    chunk_size: int | None = None,
) -> PresetRegistry:
    """
    Configure the database presets.

    Args:
        presets: Preset name to database URL, :class:`PresetConfig` or engine,
            or a :class:`DatabaseSettings` instance.
        metadata: Table definitions to use instead of reflection.
        create_tables: If True, create all tables in ``metadata`` on every preset.
        chunk_size: Default number of rows per batched statement.

    Example:
        >>> await batchwise.connect({"w": "sqlite+aiosqlite:///app.db"}, metadata=meta)
    """
    if metadata is not None:
        registry.metadata = metadata
    if isinstance(presets, DatabaseSettings):
        registry.configure(presets)
    else:
        for name, preset in presets.items():
            registry.add_preset(name, preset)
    if chunk_size is not None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be a positive integer, got {chunk_size!r}")
        registry.chunk_size = chunk_size
    if create_tables:
        await registry.create_tables()
    return registry


async def disconnect() -> None:
    """Dispose all engines and reset the registry to its defaults."""
    await registry.dispose()
    registry.metadata = sa.MetaData()
    registry.chunk_size = DEFAULT_CHUNK_SIZE
    registry.default_preset = DEFAULT_PRESET


def get_preset(name: str | None = None) -> DatabaseHandle:
    """Resolve ``name`` to the active transaction handle or a base handle."""
    return registry.get_preset(name)
