"""
Ledger Engine

The only component allowed to change an account balance. Every deposit,
withdrawal, transfer and opening balance writes the new balance(s) and the
matching ledger entry inside one storage unit of work: either all of them
persist or none do.

Inputs are validated before anything is written. Account state is re-read
inside the unit of work, which holds the storage write lock, so funds checks
always run against the latest committed balance.
"""

from contextlib import contextmanager
from decimal import Decimal
from dataclasses import dataclass
from typing import Any, List, Optional

from .accounts import Account, AccountStatus, AccountStore, AccountType
from .errors import (
    InactiveAccountError, InsufficientFundsError, LedgerError, NotFoundError,
    PersistenceError, SameAccountError, ValidationError
)
from .ledger import (
    DepositEntry, LedgerEntry, LedgerStore, OpeningBalanceEntry,
    TransactionSummary, TransferEntry, WithdrawalEntry
)
from .logging_config import get_logger, log_action
from .money import format_amount, require_non_negative, require_positive
from .security import validate_pin

DEFAULT_DEPOSIT_DESCRIPTION = "Cash deposit"
DEFAULT_WITHDRAWAL_DESCRIPTION = "Cash withdrawal"


@dataclass(frozen=True)
class TransferResult:
    """Both account snapshots after a completed transfer"""
    from_account: Account
    to_account: Account
    amount: Decimal


class LedgerEngine:
    """
    Orchestrates balance mutation and ledger append as one logical unit
    """

    def __init__(self, account_store: AccountStore, ledger_store: LedgerStore):
        if account_store.storage is not ledger_store.storage:
            raise ValueError("Account and ledger stores must share one storage backend")
        self.accounts = account_store
        self.ledger = ledger_store
        self.storage = account_store.storage
        self.logger = get_logger("bank_ledger.engine")

    # ------------------------------------------------------------------
    # Balance-mutating operations
    # ------------------------------------------------------------------

    def open_account(
        self,
        customer_id: Any,
        account_type: AccountType,
        initial_balance: Decimal,
        pin: str,
        description: Optional[str] = None
    ) -> Account:
        """
        Create an ACTIVE account with a fresh account number.

        A positive initial balance is recorded as an OPENING_BALANCE entry;
        a zero balance produces no ledger entry.

        Raises:
            ValidationError: missing customer, unknown type, bad PIN or
                negative balance
            PersistenceError: the store rejected the write
        """
        try:
            if customer_id is None or customer_id == "":
                raise ValidationError("Customer id is required")
            account_type = AccountType.from_value(account_type)
            initial_balance = require_non_negative(initial_balance, "Initial balance")
            validate_pin(pin, "PIN")
        except ValidationError as e:
            self._log_rejected("open_account", None, e)
            raise

        with self._unit_of_work("open_account"):
            account_number = self.accounts.generate_account_number()
            account = self.accounts.create(
                account_number=account_number,
                customer_id=customer_id,
                account_type=account_type,
                balance=initial_balance,
                pin=pin
            )
            if initial_balance > 0:
                self.ledger.append(OpeningBalanceEntry(
                    amount=initial_balance,
                    description=description or self._opening_description(account_type),
                    to_account_id=account.account_id
                ))

        log_action(
            self.logger, "info", f"Account opened: {account.account_number}",
            action="open_account", resource=f"account:{account.account_number}",
            extra={
                "account_id": account.account_id,
                "customer_id": customer_id,
                "account_type": account_type.value,
                "initial_balance": str(initial_balance)
            }
        )
        return account

    def deposit(self, account_number: str, amount: Decimal, description: Optional[str] = None) -> Account:
        """
        Credit an ACTIVE account.

        Raises:
            ValidationError: amount is not positive
            NotFoundError: unknown account
            InactiveAccountError: account is not ACTIVE
        """
        amount = self._validate_amount("deposit", account_number, amount, "Deposit amount")

        with self._unit_of_work("deposit", account_number):
            account = self._require_active(account_number)
            new_balance = account.balance + amount
            self._write_balance(account, new_balance)
            self.ledger.append(DepositEntry(
                amount=amount,
                description=description or DEFAULT_DEPOSIT_DESCRIPTION,
                to_account_id=account.account_id
            ))
            updated = self._reload(account)

        self._log_completed("deposit", account_number, amount, updated.balance)
        return updated

    def withdraw(self, account_number: str, amount: Decimal, description: Optional[str] = None) -> Account:
        """
        Debit an ACTIVE account. Never overdraws and never partially honors
        a request.

        Raises:
            ValidationError: amount is not positive
            NotFoundError: unknown account
            InactiveAccountError: account is not ACTIVE
            InsufficientFundsError: amount exceeds the balance
        """
        amount = self._validate_amount("withdraw", account_number, amount, "Withdrawal amount")

        with self._unit_of_work("withdraw", account_number):
            account = self._require_active(account_number)
            if amount > account.balance:
                raise InsufficientFundsError(account_number, amount, account.balance)
            self._write_balance(account, account.balance - amount)
            self.ledger.append(WithdrawalEntry(
                amount=amount,
                description=description or DEFAULT_WITHDRAWAL_DESCRIPTION,
                from_account_id=account.account_id
            ))
            updated = self._reload(account)

        self._log_completed("withdraw", account_number, amount, updated.balance)
        return updated

    def transfer(
        self,
        from_account_number: str,
        to_account_number: str,
        amount: Decimal,
        description: Optional[str] = None
    ) -> TransferResult:
        """
        Move money between two ACTIVE accounts under one TRANSFER entry.

        The debit, the credit and the ledger entry commit together; a
        failure at any point leaves both balances untouched.

        Raises:
            ValidationError: amount is not positive
            SameAccountError: source and destination are the same
            NotFoundError: either account is unknown (``side`` says which)
            InactiveAccountError: either account is not ACTIVE
            InsufficientFundsError: source balance is below amount
        """
        amount = self._validate_amount("transfer", from_account_number, amount, "Transfer amount")
        if from_account_number == to_account_number:
            error = SameAccountError(from_account_number)
            self._log_rejected("transfer", from_account_number, error)
            raise error

        with self._unit_of_work("transfer", from_account_number):
            source = self.accounts.get_by_number(from_account_number)
            if not source:
                raise NotFoundError(from_account_number, side="Source")
            destination = self.accounts.get_by_number(to_account_number)
            if not destination:
                raise NotFoundError(to_account_number, side="Destination")
            if not source.is_active:
                raise InactiveAccountError(from_account_number, side="Source")
            if not destination.is_active:
                raise InactiveAccountError(to_account_number, side="Destination")
            if amount > source.balance:
                raise InsufficientFundsError(
                    from_account_number, amount, source.balance, side="Source"
                )

            new_balances = {
                source.account_id: source.balance - amount,
                destination.account_id: destination.balance + amount,
            }
            # Lower account id first, the same order for every transfer
            for account in sorted((source, destination), key=lambda a: a.account_id):
                self._write_balance(account, new_balances[account.account_id])

            self.ledger.append(TransferEntry(
                amount=amount,
                description=description or f"Transfer from {from_account_number} to {to_account_number}",
                from_account_id=source.account_id,
                to_account_id=destination.account_id
            ))
            result = TransferResult(
                from_account=self._reload(source),
                to_account=self._reload(destination),
                amount=amount
            )

        log_action(
            self.logger, "info",
            f"Transfer completed: {from_account_number} -> {to_account_number}",
            action="transfer", resource=f"account:{from_account_number}",
            extra={
                "from_account": from_account_number,
                "to_account": to_account_number,
                "amount": str(amount),
                "from_balance": str(result.from_account.balance),
                "to_balance": str(result.to_account.balance)
            }
        )
        return result

    def set_account_status(self, account_number: str, status: AccountStatus) -> Account:
        """Change an account's status; balances and the ledger are untouched"""
        status = AccountStatus.from_value(status)
        with self._unit_of_work("set_account_status", account_number):
            account = self._require_account(account_number)
            if not self.accounts.update_status(account.account_id, status):
                raise PersistenceError(
                    f"Status update was not applied: {account_number}", account_number
                )
            updated = self._reload(account)

        log_action(
            self.logger, "info", f"Account status changed: {account_number}",
            action="set_account_status", resource=f"account:{account_number}",
            extra={"old_status": account.status.value, "new_status": status.value}
        )
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_account_details(self, account_number: str) -> Account:
        return self._require_account(account_number)

    def get_balance(self, account_number: str) -> Decimal:
        return self._require_account(account_number).balance

    def get_history(self, account_number: str) -> List[LedgerEntry]:
        """Ledger entries touching the account, newest first"""
        account = self._require_account(account_number)
        return self.ledger.list_by_account(account.account_id)

    def get_transaction_summary(self, account_number: str) -> TransactionSummary:
        account = self._require_account(account_number)
        return self.ledger.summarize(account.account_id)

    def list_accounts(self) -> List[Account]:
        return self.accounts.list_all()

    def get_customer_accounts(self, customer_id: Any) -> List[Account]:
        return self.accounts.list_by_customer(customer_id)

    def get_customer_total_balance(self, customer_id: Any) -> Decimal:
        return self.accounts.total_balance_by_customer(customer_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _unit_of_work(self, action: str, account_number: Optional[str] = None):
        """
        One storage transaction around an engine operation.

        Domain errors roll back and propagate unchanged; anything else rolls
        back and is reported as PersistenceError.
        """
        try:
            with self.storage.atomic():
                yield
        except LedgerError as e:
            self._log_rejected(action, account_number, e)
            raise
        except Exception as e:
            self.logger.exception(f"{action} failed and was rolled back")
            raise PersistenceError(f"{action} failed and was rolled back: {e}", account_number) from e

    def _validate_amount(self, action: str, account_number: str, amount, label: str) -> Decimal:
        try:
            return require_positive(amount, label)
        except ValidationError as e:
            e.account_number = account_number
            self._log_rejected(action, account_number, e)
            raise

    def _require_account(self, account_number: str) -> Account:
        account = self.accounts.get_by_number(account_number)
        if not account:
            raise NotFoundError(account_number)
        return account

    def _require_active(self, account_number: str) -> Account:
        account = self._require_account(account_number)
        if not account.is_active:
            raise InactiveAccountError(account_number)
        return account

    def _write_balance(self, account: Account, new_balance: Decimal) -> None:
        if not self.accounts.update_balance(account.account_id, new_balance):
            raise PersistenceError(
                f"Balance update was not applied: {account.account_number}",
                account.account_number
            )

    def _reload(self, account: Account) -> Account:
        fresh = self.accounts.get_by_id(account.account_id)
        if not fresh:
            raise PersistenceError(
                f"Account disappeared during update: {account.account_number}",
                account.account_number
            )
        return fresh

    @staticmethod
    def _opening_description(account_type: AccountType) -> str:
        return f"Initial deposit for {account_type.value.lower()} account"

    def _log_completed(self, action: str, account_number: str, amount: Decimal, balance: Decimal) -> None:
        log_action(
            self.logger, "info", f"{action.capitalize()} completed: {account_number}",
            action=action, resource=f"account:{account_number}",
            extra={"amount": str(amount), "balance": format_amount(balance)}
        )

    def _log_rejected(self, action: str, account_number: Optional[str], error: LedgerError) -> None:
        level = "error" if isinstance(error, PersistenceError) else "warning"
        log_action(
            self.logger, level, f"{action} rejected: {error}",
            action=action,
            resource=f"account:{account_number}" if account_number else None,
            extra={"error": type(error).__name__}
        )

