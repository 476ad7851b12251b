"""
Transaction Ledger

Immutable record of every balance-affecting event. Each entry kind is its
own class carrying exactly the account references that kind needs, so an
entry with no account, or a deposit that names a source account, cannot be
constructed. Entries are append-only: the store has no update or delete.
"""

from decimal import Decimal
from datetime import date, datetime, time, timezone
from dataclasses import dataclass, replace
from typing import ClassVar, Dict, List, Optional, Any, Type

from .accounts import StoredEnum
from .errors import ValidationError
from .logging_config import get_logger
from .money import ZERO
from .storage import StorageInterface


class TransactionType(StoredEnum):
    """Kinds of ledger entry"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER = "TRANSFER"
    OPENING_BALANCE = "OPENING_BALANCE"


@dataclass(frozen=True)
class LedgerEntry:
    """
    Common part of every ledger entry

    ``entry_id`` and ``created_at`` stay None until LedgerStore.append
    assigns them.
    """
    amount: Decimal
    description: str

    transaction_type: ClassVar[TransactionType]

    def __post_init__(self):
        if not isinstance(self.amount, Decimal) or not self.amount.is_finite():
            raise ValidationError(f"Ledger amount must be a finite Decimal: {self.amount!r}")
        if self.amount <= 0:
            raise ValidationError("Ledger amount must be positive")

    @property
    def from_account(self) -> Optional[int]:
        """Debited account id, if any"""
        return None

    @property
    def to_account(self) -> Optional[int]:
        """Credited account id, if any"""
        return None

    def involves(self, account_id: int) -> bool:
        return account_id in (self.from_account, self.to_account)


@dataclass(frozen=True)
class DepositEntry(LedgerEntry):
    to_account_id: int
    entry_id: Optional[int] = None
    created_at: Optional[datetime] = None

    transaction_type: ClassVar[TransactionType] = TransactionType.DEPOSIT

    @property
    def to_account(self) -> Optional[int]:
        return self.to_account_id


@dataclass(frozen=True)
class WithdrawalEntry(LedgerEntry):
    from_account_id: int
    entry_id: Optional[int] = None
    created_at: Optional[datetime] = None

    transaction_type: ClassVar[TransactionType] = TransactionType.WITHDRAWAL

    @property
    def from_account(self) -> Optional[int]:
        return self.from_account_id


@dataclass(frozen=True)
class TransferEntry(LedgerEntry):
    from_account_id: int
    to_account_id: int
    entry_id: Optional[int] = None
    created_at: Optional[datetime] = None

    transaction_type: ClassVar[TransactionType] = TransactionType.TRANSFER

    def __post_init__(self):
        super().__post_init__()
        if self.from_account_id == self.to_account_id:
            raise ValidationError("Transfer must reference two different accounts")

    @property
    def from_account(self) -> Optional[int]:
        return self.from_account_id

    @property
    def to_account(self) -> Optional[int]:
        return self.to_account_id


@dataclass(frozen=True)
class OpeningBalanceEntry(LedgerEntry):
    to_account_id: int
    entry_id: Optional[int] = None
    created_at: Optional[datetime] = None

    transaction_type: ClassVar[TransactionType] = TransactionType.OPENING_BALANCE

    @property
    def to_account(self) -> Optional[int]:
        return self.to_account_id


ENTRY_CLASSES: Dict[TransactionType, Type[LedgerEntry]] = {
    TransactionType.DEPOSIT: DepositEntry,
    TransactionType.WITHDRAWAL: WithdrawalEntry,
    TransactionType.TRANSFER: TransferEntry,
    TransactionType.OPENING_BALANCE: OpeningBalanceEntry,
}


@dataclass(frozen=True)
class TransactionSummary:
    """Counts and totals of the entries touching one account"""
    total_transactions: int = 0
    total_deposits: Decimal = ZERO
    total_withdrawals: Decimal = ZERO
    total_received: Decimal = ZERO
    total_sent: Decimal = ZERO


class LedgerStore:
    """
    Append-only store of ledger entries
    """

    TABLE = "transactions"
    SEQUENCE = "transaction_id"

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = get_logger("bank_ledger.ledger")
        self._last_timestamp: Optional[datetime] = None

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Persist a new entry and return it with its id and timestamp set.

        Timestamps never go backwards, even if the wall clock does.
        """
        if entry.entry_id is not None:
            raise ValidationError(f"Ledger entry {entry.entry_id} has already been recorded")

        with self.storage.atomic():
            created_at = self._next_timestamp()
            recorded = replace(
                entry,
                entry_id=self.storage.next_sequence(self.SEQUENCE),
                created_at=created_at
            )
            self.storage.save(self.TABLE, str(recorded.entry_id), self._to_dict(recorded))
            self._last_timestamp = created_at

        self.logger.debug(
            f"Appended {recorded.transaction_type.value} entry {recorded.entry_id} "
            f"for {recorded.amount}"
        )
        return recorded

    def get(self, entry_id: int) -> Optional[LedgerEntry]:
        data = self.storage.load(self.TABLE, str(entry_id))
        if data:
            return self._from_dict(data)
        return None

    def list_all(self) -> List[LedgerEntry]:
        """Every entry, newest first"""
        return self._newest_first(self._from_dict(d) for d in self.storage.load_all(self.TABLE))

    def list_by_account(self, account_id: int) -> List[LedgerEntry]:
        """Entries debiting or crediting the account, newest first"""
        return [e for e in self.list_all() if e.involves(account_id)]

    def list_by_type(self, transaction_type: TransactionType) -> List[LedgerEntry]:
        transaction_type = TransactionType.from_value(transaction_type)
        rows = self.storage.find(self.TABLE, {"transaction_type": transaction_type.value})
        return self._newest_first(self._from_dict(d) for d in rows)

    def list_by_date_range(self, start: date, end: date) -> List[LedgerEntry]:
        """
        Entries created on any day from start to end, both inclusive (UTC).
        """
        if isinstance(start, datetime):
            start = start.date()
        if isinstance(end, datetime):
            end = end.date()
        if start > end:
            raise ValidationError(f"Start date {start} is after end date {end}")

        lower = datetime.combine(start, time.min, tzinfo=timezone.utc)
        upper = datetime.combine(end, time.max, tzinfo=timezone.utc)
        return [e for e in self.list_all() if lower <= e.created_at <= upper]

    def list_recent(self, limit: int) -> List[LedgerEntry]:
        if limit < 0:
            raise ValidationError("Limit must be non-negative")
        return self.list_all()[:limit]

    def summarize(self, account_id: int) -> TransactionSummary:
        """Totals of deposits, withdrawals and transfers for one account"""
        entries = self.list_by_account(account_id)
        deposits = withdrawals = received = sent = ZERO
        for entry in entries:
            if entry.transaction_type == TransactionType.DEPOSIT:
                deposits += entry.amount
            elif entry.transaction_type == TransactionType.WITHDRAWAL:
                withdrawals += entry.amount
            elif entry.transaction_type == TransactionType.TRANSFER:
                if entry.to_account == account_id:
                    received += entry.amount
                else:
                    sent += entry.amount

        return TransactionSummary(
            total_transactions=len(entries),
            total_deposits=deposits,
            total_withdrawals=withdrawals,
            total_received=received,
            total_sent=sent
        )

    def _next_timestamp(self) -> datetime:
        if self._last_timestamp is None:
            stored = [datetime.fromisoformat(d["transaction_date"])
                      for d in self.storage.load_all(self.TABLE)]
            self._last_timestamp = max(stored) if stored else None

        now = datetime.now(timezone.utc)
        if self._last_timestamp and now < self._last_timestamp:
            return self._last_timestamp
        return now

    @staticmethod
    def _newest_first(entries) -> List[LedgerEntry]:
        return sorted(entries, key=lambda e: (e.created_at, e.entry_id), reverse=True)

    def _to_dict(self, entry: LedgerEntry) -> Dict[str, Any]:
        return {
            "transaction_id": entry.entry_id,
            "transaction_type": entry.transaction_type.value,
            "from_account_id": entry.from_account,
            "to_account_id": entry.to_account,
            "amount": str(entry.amount),
            "description": entry.description,
            "transaction_date": entry.created_at.isoformat()
        }

    def _from_dict(self, data: Dict[str, Any]) -> LedgerEntry:
        transaction_type = TransactionType.from_value(data["transaction_type"])
        fields: Dict[str, Any] = {
            "amount": Decimal(data["amount"]),
            "description": data.get("description") or "",
            "entry_id": int(data["transaction_id"]),
            "created_at": datetime.fromisoformat(data["transaction_date"]),
        }
        if transaction_type in (TransactionType.WITHDRAWAL, TransactionType.TRANSFER):
            fields["from_account_id"] = data["from_account_id"]
        if transaction_type != TransactionType.WITHDRAWAL:
            fields["to_account_id"] = data["to_account_id"]
        return ENTRY_CLASSES[transaction_type](**fields)
