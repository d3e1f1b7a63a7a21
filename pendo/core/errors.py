"""Error taxonomy shared by the conversation core and the routers."""

from __future__ import annotations


class ConversationNotFoundError(LookupError):
    """Raised when a referenced conversation does not exist."""


class ConversationConflictError(RuntimeError):
    """Raised when an operation is not valid for the conversation's state."""


class TransientStoreError(RuntimeError):
    """Raised when the datastore stays unavailable after bounded retries.

    Callers should retry later with the original input preserved.
    """


__all__ = [
    "ConversationConflictError",
    "ConversationNotFoundError",
    "TransientStoreError",
]
