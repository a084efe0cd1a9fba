"""Models package."""

from .account import Account
from .credit_transaction import CreditTransaction
