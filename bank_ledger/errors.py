"""
Ledger Error Taxonomy

Every error raised by the ledger carries enough context (account number,
attempted amount, available balance) to be shown to a user directly.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""

    def __init__(self, message: str, account_number: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.account_number = account_number


class ValidationError(LedgerError):
    """Malformed input: non-positive amount, bad PIN format, missing field"""


class NotFoundError(LedgerError):
    """Unknown account"""

    def __init__(self, account_number: str, side: Optional[str] = None):
        prefix = f"{side} account" if side else "Account"
        super().__init__(f"{prefix} not found: {account_number}", account_number)
        self.side = side


class InactiveAccountError(LedgerError):
    """Account exists but is not ACTIVE"""

    def __init__(self, account_number: str, side: Optional[str] = None):
        prefix = f"{side} account" if side else "Account"
        super().__init__(f"{prefix} is not active: {account_number}", account_number)
        self.side = side


class InsufficientFundsError(LedgerError):
    """Balance too low for the requested debit"""

    def __init__(
        self,
        account_number: str,
        amount: Decimal,
        available: Decimal,
        side: Optional[str] = None
    ):
        where = f" in {side.lower()} account" if side else ""
        super().__init__(
            f"Insufficient balance{where}. Available: ${available:,.2f}",
            account_number
        )
        self.amount = amount
        self.available = available
        self.side = side


class SameAccountError(LedgerError):
    """Transfer where source and destination are the same account"""

    def __init__(self, account_number: str):
        super().__init__("Cannot transfer to the same account", account_number)


class AuthError(LedgerError):
    """PIN mismatch"""


class PersistenceError(LedgerError):
    """Store failure, including detected partial writes"""
