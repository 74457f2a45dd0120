"""
Call chain scoped transactions.

A coroutine decorated with :func:`transactional` runs inside a transaction on
its preset. Transactional calls made further down the same call chain on the
same preset join that transaction instead of opening their own, so an error
anywhere in the chain rolls back everything the chain wrote.

    class UserService(TransactionalService):
        @transactional()
        async def save(self, rows):
            wdb = self.get_preset("w")
            for row in rows:
                wdb.register("users", row)
            return await wdb.upsert("users")
"""

import functools
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from . import presets
from .config import IsolationLevel
from .context import TransactionContext, current_context, transaction_context
from .handle import DatabaseHandle

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def run_scoped(
    fn: Callable[[], Awaitable[T]],
    preset: str | None = None,
    isolation: IsolationLevel | str | None = None,
) -> T:
    """
    Await ``fn()`` inside a transaction on ``preset`` and return its result.

    If the running call chain already holds a transaction for ``preset``,
    ``fn`` runs in it and nothing is opened. Otherwise a transaction is opened
    with ``isolation``, published to the call chain for the duration of
    ``fn``, committed when ``fn`` returns and rolled back when it raises.

    When a transaction is reused, a differing ``isolation`` request is ignored
    and the outer transaction's level applies. Without ``preset`` the
    registry's default preset is used.
    """
    preset = preset or presets.registry.default_preset
    level = IsolationLevel.parse(isolation)
    context = current_context()

    if context is not None:
        active = context.get_transaction(preset)
        if active is not None:
            if level is not None and level is not active.isolation:
                logger.warning(
                    "Joining transaction on preset '%s' with isolation %s; requested %s is ignored",
                    preset,
                    active.isolation.value if active.isolation else "engine default",
                    level.value,
                )
            logger.debug("Joining open transaction on preset '%s'", preset)
            return await fn()
        return await _open_transaction(context, fn, preset, level)

    with transaction_context() as context:
        return await _open_transaction(context, fn, preset, level)


async def _open_transaction(
    context: TransactionContext,
    fn: Callable[[], Awaitable[T]],
    preset: str,
    level: IsolationLevel | None,
) -> T:
    async def scoped(trx: DatabaseHandle) -> T:
        context.set_transaction(preset, trx)
        try:
            return await fn()
        finally:
            context.delete_transaction(preset)

    base = presets.registry.base_handle(preset)
    return await base.transaction(scoped, isolation=level)


def transactional(
    preset: str | Callable[..., Any] | None = None,
    isolation: IsolationLevel | str | None = None,
):
    """
    Decorator running a coroutine function under :func:`run_scoped`.

    Args:
        preset: Preset whose transaction the call runs in, by default the
            registry's default preset when the call is made.
        isolation: Isolation level for a newly opened transaction.

    Raises:
        TypeError: If the decorated function is not a coroutine function.
    """
    if callable(preset):
        # Used bare, as @transactional
        return transactional()(preset)

    level = IsolationLevel.parse(isolation)

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"@transactional needs an async function, got {func.__qualname__}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await run_scoped(lambda: func(*args, **kwargs), preset=preset, isolation=level)

        return wrapper

    return decorator


class TransactionalService:
    """Mixin giving business classes access to preset handles."""

    def get_preset(self, name: str | None = None) -> DatabaseHandle:
        return presets.get_preset(name)
