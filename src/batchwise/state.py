from contextvars import ContextVar
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .context import TransactionContext

# Context variable holding the transaction context of the current call chain
_TRANSACTION_CONTEXT: ContextVar["TransactionContext | None"] = ContextVar(
    "transaction_context", default=None
)
