"""
Configuration models for connection presets.

Presets can be given directly to :func:`batchwise.connect` or loaded from
the environment through :class:`DatabaseSettings`:

    BATCHWISE_PRESETS__W__URL=postgresql+asyncpg://app@primary/app
    BATCHWISE_PRESETS__R__URL=postgresql+asyncpg://app@replica/app
    BATCHWISE_CHUNK_SIZE=1000
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PRESET = "w"
DEFAULT_CHUNK_SIZE = 500


class IsolationLevel(str, Enum):
    """Transaction isolation levels accepted by the transactional scope."""

    READ_UNCOMMITTED = "read uncommitted"
    READ_COMMITTED = "read committed"
    REPEATABLE_READ = "repeatable read"
    SERIALIZABLE = "serializable"

    @property
    def sql(self) -> str:
        """The name SQLAlchemy expects for the ``isolation_level`` option."""
        return self.value.upper()

    @classmethod
    def parse(cls, value: "IsolationLevel | str | None") -> "IsolationLevel | None":
        """
        Normalize an isolation level given in any common spelling.

        Args:
            value: An ``IsolationLevel``, a string such as ``"repeatable-read"``,
                ``"READ_COMMITTED"`` or ``"serializable"``, or None.

        Returns:
            The matching member, or None when ``value`` is None.

        Raises:
            ValueError: For unknown levels, including ``"snapshot"``.
        """
        if value is None or isinstance(value, cls):
            return value
        normalized = " ".join(str(value).replace("-", " ").replace("_", " ").lower().split())
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(
            f"Unsupported isolation level {value!r}; expected one of: "
            + ", ".join(member.value for member in cls)
        )


class PresetConfig(BaseModel):
    """Connection settings for one named preset."""

    model_config = ConfigDict(frozen=True, use_attribute_docstrings=True)

    url: str
    """SQLAlchemy async database URL, e.g. ``sqlite+aiosqlite:///app.db``."""

    echo: bool = False
    """Log every statement through SQLAlchemy's engine logger."""

    isolation: IsolationLevel | None = None
    """Isolation level used when a transactional call does not request one."""

    pool_pre_ping: bool = False

    @field_validator("isolation", mode="before")
    @classmethod
    def _parse_isolation(cls, value: Any) -> IsolationLevel | None:
        return IsolationLevel.parse(value)


class DatabaseSettings(BaseSettings):
    """Environment driven settings for the preset registry."""

    model_config = SettingsConfigDict(
        env_prefix="BATCHWISE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    presets: dict[str, PresetConfig] = Field(default_factory=dict)
    default_preset: str = DEFAULT_PRESET
    chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, gt=0)
    log_level: str = "INFO"

    @field_validator("presets", mode="before")
    @classmethod
    def _accept_plain_urls(cls, value: Any) -> Any:
        # {"w": "sqlite+aiosqlite:///app.db"} is shorthand for {"w": {"url": ...}}
        if isinstance(value, dict):
            return {
                name: {"url": preset} if isinstance(preset, str) else preset
                for name, preset in value.items()
            }
        return value
