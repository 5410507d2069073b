"""
Error taxonomy shared by the ledger and bank services.
"""


class CeDeFiError(Exception):
    """Base class for all domain errors."""


class ValidationError(CeDeFiError):
    """Malformed input; rejected before any side effect."""


class NotFoundError(CeDeFiError):
    """Unknown transaction, node or chain record."""


class ConflictError(CeDeFiError):
    """Request conflicts with existing state (duplicate vote, double claim, ...)."""


class AlreadyFinalizedError(CeDeFiError):
    """The chain already holds a final outcome for this transaction."""


class StoreUnavailableError(CeDeFiError):
    """Persistent document store could not be reached."""


class ChainUnavailableError(CeDeFiError):
    """Immutable ledger could not be reached."""


class LedgerUnavailableError(CeDeFiError):
    """Ledger service could not be reached from a bank."""
