"""Typed failures raised by the credit ledger and gate."""

from typing import Optional


class CreditError(Exception):
    """Base class for recoverable credit accounting failures."""


class InsufficientCredits(CreditError):
    """Raised when the active balance cannot cover a requested charge."""

    def __init__(self, requested: int, available: int, account_id: Optional[str] = None):
        self.requested = requested
        self.available = available
        self.account_id = account_id
        owner = f"Account {account_id}" if account_id else "Demo session"
        super().__init__(f"{owner}: requested {requested}, available {available}")


class StoreUnavailable(CreditError):
    """Raised when the ledger store cannot be read or written in time."""


class ConcurrentModification(CreditError):
    """Raised when a conditional balance write loses to another writer."""

    def __init__(self, account_id: str, expected_credits: Optional[int] = None):
        self.account_id = account_id
        self.expected_credits = expected_credits
        message = f"Account {account_id}: ledger changed since it was read"
        if expected_credits is not None:
            message += f" (expected balance {expected_credits})"
        super().__init__(message)


class AccountNotFound(CreditError):
    """Raised when a mutation targets an account that was never provisioned."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} does not exist")


class InvalidCreditAmount(CreditError, ValueError):
    """Raised when a charge or grant amount is not a positive integer."""


class InvalidTransactionKind(CreditError, ValueError):
    """Raised for a transaction kind the ledger does not know, or a grant that is not bonus or purchased."""


class DemoUnavailable(CreditError):
    """Raised when demo mode is requested after an identity superseded it."""


class LoginRequired(CreditError):
    """Raised when an account operation runs without a signed-in identity."""
