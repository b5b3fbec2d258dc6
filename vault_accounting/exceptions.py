"""Exceptions raised by the accounting engine.

Every per-entity failure derives from AccountingError so that the tick pipeline
can abandon a single entity update and keep processing its siblings.
"""


class AccountingError(Exception):
    """Base exception for all accounting errors."""


class MulticallError(AccountingError):
    """Raised when a whole multicall chunk could not be executed."""


class CallFailedError(AccountingError):
    """Raised when a required call reverted inside a multicall chunk."""


class DecodeError(AccountingError):
    """Raised when call return data does not match the expected ABI shape."""


class PriceUnavailableError(AccountingError):
    """Raised when an oracle price is missing or zero."""
