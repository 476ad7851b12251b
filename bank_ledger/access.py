"""
Access Guard

PIN verification and rotation. The engine does not call the guard itself:
interactive callers verify the owner's PIN first and only then invoke
withdraw or transfer.
"""

from .accounts import AccountStore
from .errors import AuthError, NotFoundError, PersistenceError
from .logging_config import get_logger, log_action
from .security import validate_pin


class AccessGuard:
    """Recognizes the account owner by PIN"""

    def __init__(self, account_store: AccountStore):
        self.accounts = account_store
        self.logger = get_logger("bank_ledger.access")

    def verify_pin(self, account_number: str, pin: str) -> bool:
        """
        Exact PIN match against the stored hash.

        Unknown accounts and malformed PINs simply fail to match. There is
        no lockout or throttling.
        """
        verified = self.accounts.verify_pin(account_number, pin)
        if not verified:
            log_action(
                self.logger, "warning", f"PIN verification failed: {account_number}",
                action="verify_pin", resource=f"account:{account_number}"
            )
        return verified

    def change_pin(self, account_number: str, current_pin: str, new_pin: str) -> bool:
        """
        Replace the PIN after checking the current one.

        Raises:
            ValidationError: new PIN is not exactly 4 digits
            NotFoundError: unknown account
            AuthError: current PIN is incorrect
        """
        validate_pin(new_pin, "New PIN")

        account = self.accounts.get_by_number(account_number)
        if not account:
            raise NotFoundError(account_number)

        if not self.accounts.verify_pin(account_number, current_pin):
            log_action(
                self.logger, "warning", f"PIN change refused: {account_number}",
                action="change_pin", resource=f"account:{account_number}"
            )
            raise AuthError("Current PIN is incorrect", account_number)

        if not self.accounts.update_pin(account.account_id, new_pin):
            raise PersistenceError(f"PIN update was not applied: {account_number}", account_number)

        log_action(
            self.logger, "info", f"PIN changed: {account_number}",
            action="change_pin", resource=f"account:{account_number}"
        )
        return True
