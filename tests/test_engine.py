"""
Test suite for the ledger engine

Tests every balance-mutating operation, the queries, error reporting and
all-or-nothing behaviour of a unit of work.
"""

import logging
import random
import threading
import pytest
from decimal import Decimal

from bank_ledger.accounts import AccountStatus, AccountStore, AccountType
from bank_ledger.engine import LedgerEngine, TransferResult
from bank_ledger.errors import (
    InactiveAccountError, InsufficientFundsError, NotFoundError,
    PersistenceError, SameAccountError, ValidationError
)
from bank_ledger.ledger import LedgerStore, TransactionType
from bank_ledger.storage import InMemoryStorage, SQLiteStorage


class FailingAccountStore(AccountStore):
    """Account store whose Nth balance write fails"""

    def __init__(self, storage, fail_on_call=2, returns_false=False):
        super().__init__(storage)
        self.fail_on_call = fail_on_call
        self.returns_false = returns_false
        self.calls = 0
        self.armed = False

    def update_balance(self, account_id, new_balance):
        if self.armed:
            self.calls += 1
            if self.calls == self.fail_on_call:
                if self.returns_false:
                    return False
                raise RuntimeError("disk unplugged")
        return super().update_balance(account_id, new_balance)


class FailingLedgerStore(LedgerStore):
    """Ledger store that refuses every append once armed"""

    armed = False

    def append(self, entry):
        if self.armed:
            raise RuntimeError("ledger unavailable")
        return super().append(entry)


def build_engine(storage):
    return LedgerEngine(AccountStore(storage), LedgerStore(storage))


class TestOpenAccount:
    """Test opening accounts"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.engine = build_engine(self.storage)

    def test_open_with_zero_balance_records_nothing(self):
        account = self.engine.open_account(1, AccountType.SAVINGS, Decimal("0"), "1234")

        assert account.account_number == "ACC001"
        assert account.status == AccountStatus.ACTIVE
        assert account.balance == Decimal("0")
        assert self.engine.get_history("ACC001") == []

    def test_open_with_initial_balance_records_opening_entry(self):
        account = self.engine.open_account(1, "CHECKING", "500.00", "1234")

        history = self.engine.get_history(account.account_number)
        assert len(history) == 1
        assert history[0].transaction_type == TransactionType.OPENING_BALANCE
        assert history[0].amount == Decimal("500.00")
        assert history[0].to_account == account.account_id
        assert history[0].from_account is None
        assert history[0].description == "Initial deposit for checking account"

    def test_account_numbers_sequential(self):
        numbers = [
            self.engine.open_account(1, AccountType.SAVINGS, Decimal("0"), "1234").account_number
            for _ in range(3)
        ]
        assert numbers == ["ACC001", "ACC002", "ACC003"]

    def test_open_validation(self):
        with pytest.raises(ValidationError, match="Customer id is required"):
            self.engine.open_account(None, AccountType.SAVINGS, Decimal("0"), "1234")
        with pytest.raises(ValidationError, match="Invalid AccountType"):
            self.engine.open_account(1, "CURRENT", Decimal("0"), "1234")
        with pytest.raises(ValidationError, match="Initial balance must be non-negative"):
            self.engine.open_account(1, AccountType.SAVINGS, Decimal("-5.00"), "1234")
        with pytest.raises(ValidationError, match="PIN must be exactly 4 digits"):
            self.engine.open_account(1, AccountType.SAVINGS, Decimal("0"), "12345")

        assert self.engine.list_accounts() == []

    def test_open_is_atomic(self):
        ledger = FailingLedgerStore(self.storage)
        engine = LedgerEngine(AccountStore(self.storage), ledger)
        ledger.armed = True

        with pytest.raises(PersistenceError, match="rolled back"):
            engine.open_account(1, AccountType.SAVINGS, Decimal("10.00"), "1234")

        assert engine.list_accounts() == []
        # The failed attempt does not burn an account number
        ledger.armed = False
        assert engine.open_account(1, AccountType.SAVINGS, Decimal("10.00"), "1234").account_number == "ACC001"

    def test_open_after_direct_create_of_next_number(self, storage):
        engine = build_engine(storage)
        engine.open_account(1, AccountType.SAVINGS, Decimal("0"), "1234")
        engine.accounts.create("ACC002", 2, AccountType.CHECKING, Decimal("0"), "1234")

        numbers = [
            engine.open_account(3, AccountType.SAVINGS, Decimal("0"), "1234").account_number
            for _ in range(3)
        ]
        assert numbers == ["ACC003", "ACC004", "ACC005"]

    def test_stores_must_share_storage(self):
        with pytest.raises(ValueError):
            LedgerEngine(AccountStore(InMemoryStorage()), LedgerStore(InMemoryStorage()))


class TestDepositWithdraw:
    """Test single-account operations"""

    def setup_method(self):
        self.engine = build_engine(InMemoryStorage())
        self.account = self.engine.open_account(1, AccountType.SAVINGS, Decimal("0"), "1234")
        self.number = self.account.account_number

    def test_deposit_then_withdraw(self):
        after_deposit = self.engine.deposit(self.number, Decimal("100.00"))
        assert after_deposit.balance == Decimal("100.00")

        after_withdraw = self.engine.withdraw(self.number, Decimal("40.00"))
        assert after_withdraw.balance == Decimal("60.00")
        assert self.engine.get_balance(self.number) == Decimal("60.00")

        history = self.engine.get_history(self.number)
        assert [e.transaction_type for e in history] == [
            TransactionType.WITHDRAWAL, TransactionType.DEPOSIT
        ]
        assert history[0].description == "Cash withdrawal"
        assert history[1].description == "Cash deposit"

    @pytest.mark.parametrize("amount", ["0.01", "19.99", "1000000.10"])
    def test_deposit_then_withdraw_same_amount_restores_balance(self, amount):
        self.engine.deposit(self.number, Decimal("3.33"))
        before = self.engine.get_balance(self.number)
        entries_before = len(self.engine.get_history(self.number))

        self.engine.deposit(self.number, Decimal(amount))
        self.engine.withdraw(self.number, Decimal(amount))

        assert self.engine.get_balance(self.number) == before
        assert len(self.engine.get_history(self.number)) == entries_before + 2

    def test_custom_descriptions(self):
        self.engine.deposit(self.number, "25.00", "Salary")
        self.engine.withdraw(self.number, "5.00", "Groceries")
        assert [e.description for e in self.engine.get_history(self.number)] == ["Groceries", "Salary"]

    def test_withdraw_entire_balance(self):
        self.engine.deposit(self.number, Decimal("10.00"))
        assert self.engine.withdraw(self.number, Decimal("10.00")).balance == Decimal("0.00")

    def test_withdraw_more_than_balance(self):
        self.engine.deposit(self.number, Decimal("10.00"))

        with pytest.raises(InsufficientFundsError, match=r"Available: \$10.00") as exc_info:
            self.engine.withdraw(self.number, Decimal("10.01"))

        assert exc_info.value.available == Decimal("10.00")
        assert exc_info.value.amount == Decimal("10.01")
        assert exc_info.value.account_number == self.number
        assert self.engine.get_balance(self.number) == Decimal("10.00")
        assert len(self.engine.get_history(self.number)) == 1

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1.00"), "abc", None, "1.001", "Infinity"])
    def test_invalid_amounts(self, amount):
        with pytest.raises(ValidationError):
            self.engine.deposit(self.number, amount)
        with pytest.raises(ValidationError):
            self.engine.withdraw(self.number, amount)
        assert self.engine.get_history(self.number) == []

    def test_amount_messages(self):
        with pytest.raises(ValidationError, match="Deposit amount must be positive"):
            self.engine.deposit(self.number, Decimal("0"))
        with pytest.raises(ValidationError, match="Withdrawal amount must be positive"):
            self.engine.withdraw(self.number, Decimal("0"))
        with pytest.raises(ValidationError, match="more than 2 decimal places"):
            self.engine.deposit(self.number, "0.005")

    def test_float_amounts_are_exact(self):
        self.engine.deposit(self.number, 0.1)
        self.engine.deposit(self.number, 0.2)
        assert self.engine.get_balance(self.number) == Decimal("0.3")

    def test_unknown_account(self):
        with pytest.raises(NotFoundError, match="Account not found: ACC999"):
            self.engine.deposit("ACC999", Decimal("1.00"))
        with pytest.raises(NotFoundError, match="Account not found: ACC999"):
            self.engine.withdraw("ACC999", Decimal("1.00"))

    @pytest.mark.parametrize("status", [AccountStatus.INACTIVE, AccountStatus.SUSPENDED])
    def test_inactive_account(self, status):
        self.engine.deposit(self.number, Decimal("50.00"))
        self.engine.set_account_status(self.number, status)

        with pytest.raises(InactiveAccountError, match=f"Account is not active: {self.number}"):
            self.engine.deposit(self.number, Decimal("1.00"))
        with pytest.raises(InactiveAccountError):
            self.engine.withdraw(self.number, Decimal("1.00"))
        assert self.engine.get_balance(self.number) == Decimal("50.00")

    def test_status_change_does_not_touch_balance_or_ledger(self):
        self.engine.deposit(self.number, Decimal("50.00"))
        updated = self.engine.set_account_status(self.number, "SUSPENDED")

        assert updated.status == AccountStatus.SUSPENDED
        assert updated.balance == Decimal("50.00")
        assert len(self.engine.get_history(self.number)) == 1

        reactivated = self.engine.set_account_status(self.number, AccountStatus.ACTIVE)
        assert reactivated.is_active
        assert self.engine.deposit(self.number, Decimal("1.00")).balance == Decimal("51.00")

    def test_set_status_unknown_account(self):
        with pytest.raises(NotFoundError):
            self.engine.set_account_status("ACC999", AccountStatus.INACTIVE)

    def test_rejections_are_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="bank_ledger.engine"):
            with pytest.raises(InsufficientFundsError):
                self.engine.withdraw(self.number, Decimal("1.00"))

        records = [r for r in caplog.records if r.name == "bank_ledger.engine"]
        assert records
        assert records[-1].action == "withdraw"
        assert records[-1].extra == {"error": "InsufficientFundsError"}


class TestTransfer:
    """Test transfers between accounts"""

    def setup_method(self):
        self.engine = build_engine(InMemoryStorage())
        self.source = self.engine.open_account(1, AccountType.SAVINGS, Decimal("0"), "1234")
        self.destination = self.engine.open_account(2, AccountType.CHECKING, Decimal("0"), "5678")

    def test_transfer_from_empty_account(self):
        with pytest.raises(
            InsufficientFundsError,
            match=r"Insufficient balance in source account\. Available: \$0\.00"
        ):
            self.engine.transfer("ACC001", "ACC002", Decimal("10.00"))

        assert self.engine.get_balance("ACC001") == Decimal("0")
        assert self.engine.get_balance("ACC002") == Decimal("0")
        assert self.engine.get_history("ACC001") == []
        assert self.engine.get_history("ACC002") == []

    def test_drain_account_then_withdraw(self):
        engine = build_engine(InMemoryStorage())
        first = engine.open_account(1, AccountType.SAVINGS, Decimal("1000.00"), "1234")
        second = engine.open_account(2, AccountType.CHECKING, Decimal("0"), "5678")
        assert (first.account_number, second.account_number) == ("ACC001", "ACC002")

        engine.deposit("ACC001", Decimal("250.50"))
        result = engine.transfer("ACC001", "ACC002", Decimal("1250.50"))
        assert result.from_account.balance == Decimal("0")
        assert result.to_account.balance == Decimal("1250.50")

        with pytest.raises(InsufficientFundsError, match=r"^Insufficient balance\. Available: \$0\.00$"):
            engine.withdraw("ACC001", Decimal("1"))

        assert engine.get_balance("ACC001") == Decimal("0")
        assert [e.transaction_type for e in engine.get_history("ACC001")] == [
            TransactionType.TRANSFER, TransactionType.DEPOSIT, TransactionType.OPENING_BALANCE
        ]

    def test_successful_transfer(self):
        self.engine.deposit("ACC001", Decimal("100.00"))

        result = self.engine.transfer("ACC001", "ACC002", Decimal("30.00"))

        assert isinstance(result, TransferResult)
        assert result.amount == Decimal("30.00")
        assert result.from_account.balance == Decimal("70.00")
        assert result.to_account.balance == Decimal("30.00")

        entry = self.engine.get_history("ACC001")[0]
        assert entry.transaction_type == TransactionType.TRANSFER
        assert entry.from_account == self.source.account_id
        assert entry.to_account == self.destination.account_id
        assert entry.description == "Transfer from ACC001 to ACC002"
        assert self.engine.get_history("ACC002")[0] == entry

    def test_custom_description(self):
        self.engine.deposit("ACC001", Decimal("5.00"))
        self.engine.transfer("ACC001", "ACC002", Decimal("5.00"), "Rent share")
        assert self.engine.get_history("ACC002")[0].description == "Rent share"

    def test_same_account(self):
        self.engine.deposit("ACC001", Decimal("5.00"))
        with pytest.raises(SameAccountError, match="Cannot transfer to the same account"):
            self.engine.transfer("ACC001", "ACC001", Decimal("1.00"))
        assert self.engine.get_balance("ACC001") == Decimal("5.00")

    def test_invalid_amount_checked_first(self):
        with pytest.raises(ValidationError, match="Transfer amount must be positive"):
            self.engine.transfer("ACC001", "ACC001", Decimal("0"))

    def test_missing_accounts_name_the_side(self):
        with pytest.raises(NotFoundError, match="Source account not found: ACC999") as exc_info:
            self.engine.transfer("ACC999", "ACC002", Decimal("1.00"))
        assert exc_info.value.side == "Source"

        with pytest.raises(NotFoundError, match="Destination account not found: ACC999") as exc_info:
            self.engine.transfer("ACC001", "ACC999", Decimal("1.00"))
        assert exc_info.value.side == "Destination"

    def test_inactive_accounts_name_the_side(self):
        self.engine.deposit("ACC001", Decimal("10.00"))

        self.engine.set_account_status("ACC002", AccountStatus.INACTIVE)
        with pytest.raises(InactiveAccountError, match="Destination account is not active: ACC002"):
            self.engine.transfer("ACC001", "ACC002", Decimal("1.00"))

        self.engine.set_account_status("ACC001", AccountStatus.SUSPENDED)
        with pytest.raises(InactiveAccountError, match="Source account is not active: ACC001"):
            self.engine.transfer("ACC001", "ACC002", Decimal("1.00"))

        assert self.engine.get_balance("ACC001") == Decimal("10.00")

    def test_transfer_in_both_directions(self):
        self.engine.deposit("ACC001", Decimal("10.00"))
        self.engine.deposit("ACC002", Decimal("10.00"))

        self.engine.transfer("ACC002", "ACC001", Decimal("7.50"))
        self.engine.transfer("ACC001", "ACC002", Decimal("2.50"))

        assert self.engine.get_balance("ACC001") == Decimal("15.00")
        assert self.engine.get_balance("ACC002") == Decimal("5.00")


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestAtomicity:
    """A failure part way through leaves no trace"""

    def _engine_with_funded_accounts(self, storage, **failure):
        accounts = FailingAccountStore(storage, **failure)
        engine = LedgerEngine(accounts, LedgerStore(storage))
        engine.open_account(1, AccountType.SAVINGS, Decimal("100.00"), "1234")
        engine.open_account(2, AccountType.SAVINGS, Decimal("50.00"), "1234")
        accounts.armed = True
        return engine

    def _assert_untouched(self, engine):
        assert engine.get_balance("ACC001") == Decimal("100.00")
        assert engine.get_balance("ACC002") == Decimal("50.00")
        assert len(engine.ledger.list_all()) == 2

    def test_transfer_rolls_back_when_second_write_raises(self, storage):
        engine = self._engine_with_funded_accounts(storage)

        with pytest.raises(PersistenceError, match="transfer failed and was rolled back"):
            engine.transfer("ACC001", "ACC002", Decimal("25.00"))

        self._assert_untouched(engine)

    def test_transfer_rolls_back_when_write_not_applied(self, storage):
        engine = self._engine_with_funded_accounts(storage, returns_false=True)

        with pytest.raises(PersistenceError, match="Balance update was not applied"):
            engine.transfer("ACC001", "ACC002", Decimal("25.00"))

        self._assert_untouched(engine)

    def test_deposit_rolls_back_when_ledger_append_fails(self, storage):
        ledger = FailingLedgerStore(storage)
        engine = LedgerEngine(AccountStore(storage), ledger)
        engine.open_account(1, AccountType.SAVINGS, Decimal("100.00"), "1234")
        ledger.armed = True

        with pytest.raises(PersistenceError):
            engine.deposit("ACC001", Decimal("1.00"))
        with pytest.raises(PersistenceError):
            engine.withdraw("ACC001", Decimal("1.00"))

        assert engine.get_balance("ACC001") == Decimal("100.00")
        assert len(engine.ledger.list_all()) == 1

    def test_engine_usable_after_rollback(self, storage):
        engine = self._engine_with_funded_accounts(storage)

        with pytest.raises(PersistenceError):
            engine.transfer("ACC001", "ACC002", Decimal("25.00"))

        engine.accounts.armed = False
        result = engine.transfer("ACC001", "ACC002", Decimal("25.00"))
        assert result.from_account.balance == Decimal("75.00")
        assert result.to_account.balance == Decimal("75.00")


class TestConcurrency:
    """Concurrent operations keep money conserved and balances non-negative"""

    def test_concurrent_transfers(self, storage):
        engine = build_engine(storage)
        numbers = [
            engine.open_account(i, AccountType.SAVINGS, Decimal("100.00"), "1234").account_number
            for i in range(4)
        ]
        errors = []

        def worker(seed):
            rng = random.Random(seed)
            for _ in range(25):
                source, destination = rng.sample(numbers, 2)
                try:
                    engine.transfer(source, destination, Decimal(rng.randint(1, 6000)) / 100)
                except InsufficientFundsError:
                    pass
                except Exception as e:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(seed,)) for seed in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        balances = [engine.get_balance(n) for n in numbers]
        assert all(b >= 0 for b in balances)
        assert sum(balances) == Decimal("400.00")

        # Replaying the ledger reproduces every balance
        for account in engine.list_accounts():
            replayed = Decimal("0")
            for entry in engine.get_history(account.account_number):
                if entry.to_account == account.account_id:
                    replayed += entry.amount
                if entry.from_account == account.account_id:
                    replayed -= entry.amount
            assert replayed == account.balance

    def test_readers_never_see_half_a_transfer(self, storage):
        engine = build_engine(storage)
        engine.open_account(1, AccountType.SAVINGS, Decimal("500.00"), "1234")
        engine.open_account(2, AccountType.SAVINGS, Decimal("500.00"), "1234")
        done = threading.Event()
        observed = []

        def transfers():
            rng = random.Random(7)
            try:
                for _ in range(60):
                    source, destination = rng.sample(["ACC001", "ACC002"], 2)
                    try:
                        engine.transfer(source, destination, Decimal(rng.randint(1, 10000)) / 100)
                    except InsufficientFundsError:
                        pass
            finally:
                done.set()

        def reader():
            while not done.is_set():
                with storage.atomic():
                    observed.append(engine.get_balance("ACC001") + engine.get_balance("ACC002"))

        threads = [threading.Thread(target=transfers), threading.Thread(target=reader)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert observed
        assert set(observed) == {Decimal("1000.00")}

    def test_concurrent_withdrawals_never_overdraw(self, storage):
        engine = build_engine(storage)
        engine.open_account(1, AccountType.SAVINGS, Decimal("100.00"), "1234")
        successes = []

        def worker():
            try:
                engine.withdraw("ACC001", Decimal("30.00"))
                successes.append(1)
            except InsufficientFundsError:
                pass

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 3
        assert engine.get_balance("ACC001") == Decimal("10.00")

    def test_concurrent_opens_get_unique_numbers(self, storage):
        engine = build_engine(storage)
        numbers = []
        lock = threading.Lock()

        def worker():
            for _ in range(5):
                account = engine.open_account(1, AccountType.SAVINGS, Decimal("0"), "1234")
                with lock:
                    numbers.append(account.account_number)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(numbers)) == 20
        assert sorted(numbers) == [f"ACC{i:03d}" for i in range(1, 21)]


class TestQueries:
    """Test read-only engine operations"""

    def setup_method(self):
        self.engine = build_engine(InMemoryStorage())
        self.engine.open_account(7, AccountType.SAVINGS, Decimal("100.00"), "1234")
        self.engine.open_account(7, AccountType.CHECKING, Decimal("20.00"), "1234")
        self.engine.open_account(8, AccountType.FIXED_DEPOSIT, Decimal("0"), "1234")

    def test_account_details(self):
        account = self.engine.get_account_details("ACC002")
        assert account.account_type == AccountType.CHECKING
        assert account.customer_id == 7

        with pytest.raises(NotFoundError):
            self.engine.get_account_details("ACC999")
        with pytest.raises(NotFoundError):
            self.engine.get_balance("ACC999")
        with pytest.raises(NotFoundError):
            self.engine.get_history("ACC999")

    def test_customer_views(self):
        assert [a.account_number for a in self.engine.get_customer_accounts(7)] == ["ACC001", "ACC002"]
        assert self.engine.get_customer_total_balance(7) == Decimal("120.00")
        assert self.engine.get_customer_accounts(99) == []
        assert len(self.engine.list_accounts()) == 3

    def test_transaction_summary(self):
        self.engine.deposit("ACC001", Decimal("10.00"))
        self.engine.withdraw("ACC001", Decimal("5.00"))
        self.engine.transfer("ACC001", "ACC003", Decimal("15.00"))
        self.engine.transfer("ACC002", "ACC001", Decimal("2.00"))

        summary = self.engine.get_transaction_summary("ACC001")
        assert summary.total_transactions == 5
        assert summary.total_deposits == Decimal("10.00")
        assert summary.total_withdrawals == Decimal("5.00")
        assert summary.total_sent == Decimal("15.00")
        assert summary.total_received == Decimal("2.00")

        with pytest.raises(NotFoundError):
            self.engine.get_transaction_summary("ACC999")
