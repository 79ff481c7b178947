"""
Error Taxonomy Module

Exceptions raised by the repayment engine. Every error derives from
ValueError so callers that already guard engine calls with ValueError keep
working.
"""


class MicrofinanceError(ValueError):
    """Base exception for all engine errors"""


class ValidationError(MicrofinanceError):
    """Raised when input is missing or malformed"""


class NotFoundError(MicrofinanceError):
    """Raised when a loan or installment does not exist"""


class NotReadyError(MicrofinanceError):
    """Raised when a schedule is requested before approval and disbursement"""


class AlreadyPaidError(MicrofinanceError):
    """Raised when a payment targets an installment that is already paid"""


class AmountExceedsBalanceError(MicrofinanceError):
    """Raised when a payment exceeds what the installment can absorb"""


class InvalidRangeError(MicrofinanceError):
    """Raised when a date range ends before it starts"""


class ConfigurationError(MicrofinanceError):
    """Raised when penalty or engine settings are invalid"""
