"""
Batchwise: staged multi-table batch writes with call chain scoped transactions.

Rows for several tables are staged in memory, may reference each other's
not-yet-generated primary keys, and are written table by table inside one
transaction that nested business methods share automatically.
"""

import logging

from .config import DatabaseSettings, IsolationLevel, PresetConfig
from .context import TransactionContext, current_context, current_transaction
from .exceptions import (
    BatchwiseError,
    ConstraintViolationError,
    InvalidReferenceError,
    PresetNotFoundError,
    UnknownTableError,
    UnresolvedReferenceError,
    UnsupportedDialectError,
    UnsupportedIsolationLevelError,
)
from .handle import DatabaseHandle
from .presets import PresetRegistry, connect, disconnect, get_preset, registry
from .refs import Ref
from .transactional import TransactionalService, run_scoped, transactional
from .upsert import UpsertBuilder, WriteMode

__version__ = "0.1.0"

# Set up the Batchwise logger
_logger = logging.getLogger("batchwise")
# Only add a handler if none exists (to avoid duplicate logs)
if not _logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(name)s: %(levelname)s: %(message)s"))
    _logger.addHandler(_handler)
    _logger.setLevel(logging.INFO)
    # Prevent propagation to root logger to avoid duplicate messages
    _logger.propagate = False


__all__ = [
    "connect",
    "disconnect",
    "get_preset",
    "registry",
    "run_scoped",
    "transactional",
    "TransactionalService",
    "TransactionContext",
    "current_context",
    "current_transaction",
    "DatabaseHandle",
    "PresetRegistry",
    "UpsertBuilder",
    "WriteMode",
    "Ref",
    "IsolationLevel",
    "PresetConfig",
    "DatabaseSettings",
    "BatchwiseError",
    "UnresolvedReferenceError",
    "InvalidReferenceError",
    "ConstraintViolationError",
    "PresetNotFoundError",
    "UnknownTableError",
    "UnsupportedDialectError",
    "UnsupportedIsolationLevelError",
]
