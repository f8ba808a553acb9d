class LedgerError(Exception):
    """Base exception for credit ledger errors."""


class UserNotFoundError(LedgerError):
    """Raised when the ledger is asked about a user that does not exist."""


class InsufficientCreditsError(LedgerError):
    """Raised when a debit adjustment would take a balance below zero."""
