"""
Account Management Module

Account records, their lifecycle enums, and the AccountStore that persists
them. Balances held here are only ever changed by the LedgerEngine; the
store applies each balance or PIN update as a single-row atomic write.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Any
from enum import Enum

from .config import get_config
from .errors import PersistenceError, ValidationError
from .logging_config import get_logger
from .money import ZERO
from .security import PinHasher
from .storage import StorageInterface


class StoredEnum(Enum):
    """Enum stored as its upper-case string value"""

    @classmethod
    def from_value(cls, value):
        """Accept a member or its stored string (any case)"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        allowed = ", ".join(m.value for m in cls)
        raise ValidationError(f"Invalid {cls.__name__} '{value}'. Expected one of: {allowed}")


class AccountType(StoredEnum):
    """Banking product types"""
    SAVINGS = "SAVINGS"
    CHECKING = "CHECKING"
    FIXED_DEPOSIT = "FIXED_DEPOSIT"


class AccountStatus(StoredEnum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVE"          # Balance mutations allowed
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


@dataclass(frozen=True)
class Account:
    """
    Snapshot of an account as last written to the store.

    Frozen: a new snapshot is produced for every change, so holders of an
    old snapshot cannot alter a balance by assignment.
    """
    account_id: int
    account_number: str
    customer_id: Any
    account_type: AccountType
    balance: Decimal
    status: AccountStatus
    created_at: datetime
    updated_at: datetime
    pin_hash: str = field(default="", repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class AccountStore:
    """
    Persists and retrieves accounts by id or account number
    """

    TABLE = "accounts"
    NUMBER_SEQUENCE = "account_number"
    ID_SEQUENCE = "account_id"

    def __init__(
        self,
        storage: StorageInterface,
        pin_hasher: Optional[PinHasher] = None,
        number_prefix: Optional[str] = None,
        number_width: Optional[int] = None
    ):
        config = get_config()
        self.storage = storage
        self.pin_hasher = pin_hasher or PinHasher()
        self.number_prefix = number_prefix or config.account_number_prefix
        self.number_width = number_width or config.account_number_width
        self.logger = get_logger("bank_ledger.accounts")

    def create(
        self,
        account_number: str,
        customer_id: Any,
        account_type: AccountType,
        balance: Decimal,
        pin: str,
        status: AccountStatus = AccountStatus.ACTIVE
    ) -> Account:
        """
        Insert a new account row

        The PIN is hashed before it reaches storage. Raises PersistenceError
        if the account number is already taken or the balance is negative.
        """
        if balance < 0:
            raise PersistenceError(f"Balance cannot be negative: {balance}", account_number)

        pin_hash = self.pin_hasher.hash(pin)
        with self.storage.atomic():
            if self.account_number_exists(account_number):
                raise PersistenceError(
                    f"Account number already exists: {account_number}", account_number
                )

            now = datetime.now(timezone.utc)
            account = Account(
                account_id=self.storage.next_sequence(self.ID_SEQUENCE),
                account_number=account_number,
                customer_id=customer_id,
                account_type=AccountType.from_value(account_type),
                balance=balance,
                status=AccountStatus.from_value(status),
                created_at=now,
                updated_at=now,
                pin_hash=pin_hash
            )
            self._save(account)

        self.logger.debug(f"Created account {account.account_number} (id={account.account_id})")
        return account

    def get_by_id(self, account_id: int) -> Optional[Account]:
        data = self.storage.load(self.TABLE, str(account_id))
        if data:
            return self._from_dict(data)
        return None

    def get_by_number(self, account_number: str) -> Optional[Account]:
        rows = self.storage.find(self.TABLE, {"account_number": account_number})
        if rows:
            return self._from_dict(rows[0])
        return None

    def account_number_exists(self, account_number: str) -> bool:
        return bool(self.storage.find(self.TABLE, {"account_number": account_number}))

    def list_all(self) -> List[Account]:
        """All accounts ordered by id"""
        accounts = [self._from_dict(d) for d in self.storage.load_all(self.TABLE)]
        return sorted(accounts, key=lambda a: a.account_id)

    def list_by_customer(self, customer_id: Any) -> List[Account]:
        rows = self.storage.find(self.TABLE, {"customer_id": customer_id})
        return sorted((self._from_dict(d) for d in rows), key=lambda a: a.account_id)

    def total_balance_by_customer(self, customer_id: Any) -> Decimal:
        """Sum of balances over the customer's ACTIVE accounts"""
        total = ZERO
        for account in self.list_by_customer(customer_id):
            if account.is_active:
                total += account.balance
        return total

    def update_balance(self, account_id: int, new_balance: Decimal) -> bool:
        """
        Write a new balance for one account.

        Returns False when no such account row exists. A negative balance is
        refused with PersistenceError, like a CHECK constraint.
        """
        if new_balance < 0:
            raise PersistenceError(f"Balance cannot be negative: {new_balance}")
        return self._update(account_id, balance=new_balance)

    def update_pin(self, account_id: int, new_pin: str) -> bool:
        """Hash and store a new PIN; False when the account does not exist"""
        return self._update(account_id, pin_hash=self.pin_hasher.hash(new_pin))

    def update_status(self, account_id: int, status: AccountStatus) -> bool:
        return self._update(account_id, status=AccountStatus.from_value(status))

    def verify_pin(self, account_number: str, pin: str) -> bool:
        """Compare a PIN with the stored hash; False for unknown accounts"""
        account = self.get_by_number(account_number)
        if not account:
            return False
        return self.pin_hasher.verify(pin, account.pin_hash)

    def generate_account_number(self) -> str:
        """
        Hand out the next account number, e.g. ACC001.

        Numbers come from a dedicated sequence so concurrent callers never
        receive the same one. The sequence starts after the highest number
        already present in the table, and skips numbers that were taken by
        a direct ``create`` call since then.
        """
        with self.storage.atomic():
            while True:
                value = self.storage.next_sequence(self.NUMBER_SEQUENCE, seed=self._highest_number)
                candidate = f"{self.number_prefix}{value:0{self.number_width}d}"
                if not self.account_number_exists(candidate):
                    return candidate

    def _highest_number(self) -> int:
        highest = 0
        for data in self.storage.load_all(self.TABLE):
            suffix = data["account_number"][len(self.number_prefix):]
            if data["account_number"].startswith(self.number_prefix) and suffix.isdigit():
                highest = max(highest, int(suffix))
        return highest

    def _update(self, account_id: int, **changes) -> bool:
        with self.storage.atomic():
            account = self.get_by_id(account_id)
            if not account:
                return False
            updated = replace(account, updated_at=datetime.now(timezone.utc), **changes)
            self._save(updated)
        return True

    def _save(self, account: Account) -> None:
        self.storage.save(self.TABLE, str(account.account_id), self._to_dict(account))

    def _to_dict(self, account: Account) -> Dict[str, Any]:
        return {
            "account_id": account.account_id,
            "account_number": account.account_number,
            "customer_id": account.customer_id,
            "account_type": account.account_type.value,
            "balance": str(account.balance),
            "pin_hash": account.pin_hash,
            "status": account.status.value,
            "created_at": account.created_at.isoformat(),
            "updated_at": account.updated_at.isoformat()
        }

    def _from_dict(self, data: Dict[str, Any]) -> Account:
        return Account(
            account_id=int(data["account_id"]),
            account_number=data["account_number"],
            customer_id=data["customer_id"],
            account_type=AccountType.from_value(data["account_type"]),
            balance=Decimal(data["balance"]),
            status=AccountStatus.from_value(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            pin_hash=data.get("pin_hash", "")
        )
