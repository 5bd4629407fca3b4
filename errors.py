class CommissionError(Exception):
    """base class for everything the commission core raises on purpose."""


class MalformedEventError(CommissionError):
    """
    webhook payload is missing required fields.
    never retryable: the transport acknowledges it and moves on.
    """


class LedgerUnavailableError(CommissionError):
    """
    the ledger store could not be reached (transient).
    must reach the transport as a failure so the provider redelivers.
    """


class BalanceInvariantError(CommissionError):
    """
    a payout would push pending_balance below zero.
    signals a prior bug; not retryable and never auto-corrected.
    """


class InvalidSignatureError(CommissionError):
    pass


class ReferralError(CommissionError, ValueError):
    pass


class ConfigurationError(CommissionError, ValueError):
    pass
