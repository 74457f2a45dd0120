"""Per call chain bookkeeping of the transactions opened for each preset."""

from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

from .state import _TRANSACTION_CONTEXT

if TYPE_CHECKING:
    from .handle import DatabaseHandle


class TransactionContext:
    """
    Active transaction handles of one call chain, keyed by preset name.

    The context is created by the outermost transactional call of a chain and
    outlives the individual entries: a preset's entry is removed as soon as the
    call that opened its transaction returns, while the context itself stays
    until the outermost call returns.
    """

    def __init__(self):
        self._transactions: dict[str, "DatabaseHandle"] = {}

    def __repr__(self) -> str:
        return f"<TransactionContext presets={sorted(self._transactions)}>"

    def __contains__(self, preset: str) -> bool:
        return preset in self._transactions

    def get_transaction(self, preset: str) -> "DatabaseHandle | None":
        return self._transactions.get(preset)

    def set_transaction(self, preset: str, trx: "DatabaseHandle") -> None:
        self._transactions[preset] = trx

    def delete_transaction(self, preset: str) -> None:
        self._transactions.pop(preset, None)

    @property
    def presets(self) -> tuple[str, ...]:
        return tuple(self._transactions)


def current_context() -> TransactionContext | None:
    """Return the transaction context of the running call chain, if any."""
    return _TRANSACTION_CONTEXT.get()


def current_transaction(preset: str) -> "DatabaseHandle | None":
    """Return the active transaction for ``preset`` in the running call chain."""
    context = _TRANSACTION_CONTEXT.get()
    if context is None:
        return None
    return context.get_transaction(preset)


@contextmanager
def transaction_context() -> Iterator[TransactionContext]:
    """
    Install a fresh transaction context for the duration of the block.

    Tasks started inside the block inherit the context; code running in
    sibling tasks keeps seeing its own.
    """
    context = TransactionContext()
    token = _TRANSACTION_CONTEXT.set(context)
    try:
        yield context
    finally:
        _TRANSACTION_CONTEXT.reset(token)
