"""Exception hierarchy for the loan engine."""


class MicroloanError(Exception):
    """Base exception for all engine errors."""


class InvalidInputError(MicroloanError, ValueError):
    """Raised when calculator or manager arguments are malformed."""


class OverpaymentError(InvalidInputError):
    """Raised when a payment exceeds the amount due under the reject policy."""


class InsufficientDataError(MicroloanError):
    """Raised when an operation lacks the records it needs (e.g. no open schedule entries)."""


class InsufficientFundsError(MicroloanError):
    """Raised when a cash account debit exceeds its balance."""


class NotFoundError(MicroloanError, LookupError):
    """Raised when a referenced record does not exist."""


class InvalidStateError(MicroloanError):
    """Raised when a record is in an invalid state for the operation."""
