"""
Account Ledger Module

Holds customer accounts and their balances. Balances are only ever changed
through update_balance/transfer_funds, which serialize on the account row
and refuse any mutation that would drive a balance below zero.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from datetime import datetime, timezone
from dataclasses import dataclass
from contextlib import ExitStack
from typing import Any, Callable, Dict, List, Optional, Tuple
import threading
import uuid

from .storage import StorageInterface, StorageRecord, parse_timestamp
from .errors import InvalidAmount, SenderNotFound, ReceiverNotFound, InsufficientFunds
from .logging_config import get_logger, log_action


TWO_PLACES = Decimal("0.01")

# amounts below this have at most 15 significant digits and survive a
# round trip through a JSON number (IEEE double) unchanged
MAX_TRANSFER_AMOUNT = Decimal("10000000000000")


def to_amount(value: Any) -> Decimal:
    """
    Convert a wire or user amount to a 2-decimal Decimal.

    Floats go through str() so 100.1 stays 100.10 rather than its binary
    expansion. Raises InvalidAmount for anything that is not a finite number.
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}")
    try:
        return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount(f"Amount out of range: {value!r}")


def to_transfer_amount(value: Any) -> Decimal:
    """Parse a transfer amount: strictly positive and below MAX_TRANSFER_AMOUNT"""
    amount = to_amount(value)
    if amount <= 0:
        raise InvalidAmount(details={"amount": str(amount)})
    if amount >= MAX_TRANSFER_AMOUNT:
        raise InvalidAmount(
            f"Amount must be below {MAX_TRANSFER_AMOUNT}",
            details={"amount": str(amount)}
        )
    return amount


@dataclass
class Account(StorageRecord):
    """Customer account owned by this bank"""
    account_number: str
    owner_name: str
    balance: Decimal
    currency: str
    account_type: str = "checking"

    @property
    def bank_prefix(self) -> str:
        return self.account_number[:3]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            account_number=data['account_number'],
            owner_name=data['owner_name'],
            balance=Decimal(data['balance']),
            currency=data['currency'],
            account_type=data.get('account_type', 'checking'),
        )


class AccountLedger:
    """
    Account storage with atomic, non-negative balance mutation.

    Each account number has its own mutex; a paired debit/credit takes both
    mutexes in sorted order and runs inside a single storage.atomic() block.
    """

    def __init__(self, storage: StorageInterface, bank_prefix: str):
        self.storage = storage
        self.bank_prefix = bank_prefix
        self.table_name = "accounts"
        self.logger = get_logger("interbank.ledger")
        self._account_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _account_lock(self, account_number: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._account_locks.get(account_number)
            if lock is None:
                lock = threading.Lock()
                self._account_locks[account_number] = lock
            return lock

    def generate_account_number(self) -> str:
        """Bank prefix followed by 20 hex characters"""
        return f"{self.bank_prefix}{uuid.uuid4().hex[:20]}"

    def create_account(
        self,
        owner_name: str,
        currency: str = "EUR",
        initial_balance: Any = Decimal("0"),
        account_type: str = "checking",
        account_number: Optional[str] = None
    ) -> Account:
        """
        Open a new account.

        Args:
            owner_name: Display name returned to counterpart banks
            currency: ISO-4217 currency code
            initial_balance: Opening balance, must not be negative
            account_type: checking or savings
            account_number: Explicit number (must carry this bank's prefix)

        Returns:
            The stored Account
        """
        balance = to_amount(initial_balance)
        if balance < 0:
            raise InvalidAmount("Initial balance cannot be negative")

        account_number = account_number or self.generate_account_number()
        if not account_number.startswith(self.bank_prefix):
            raise ValueError(f"Account number must start with bank prefix {self.bank_prefix}")
        if self.storage.exists(self.table_name, account_number):
            raise ValueError(f"Account {account_number} already exists")

        now = datetime.now(timezone.utc)
        account = Account(
            created_at=now,
            updated_at=now,
            account_number=account_number,
            owner_name=owner_name,
            balance=balance,
            currency=currency.upper(),
            account_type=account_type,
        )
        self._save(account)

        log_action(
            self.logger, "info", "Account created",
            action="create_account", resource=f"account:{account_number}",
            extra={"currency": account.currency, "initial_balance": str(balance)}
        )
        return account

    def get_account(self, account_number: str) -> Optional[Account]:
        data = self.storage.load(self.table_name, account_number)
        if data:
            return Account.from_dict(data)
        return None

    def list_accounts(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def has_sufficient_funds(self, account_number: str, amount: Decimal) -> bool:
        account = self.get_account(account_number)
        return account is not None and account.balance >= amount

    def update_balance(self, account_number: str, delta: Decimal,
                       in_same_transaction: Optional[Callable[[Account], Any]] = None) -> Account:
        """
        Add delta (negative for a debit) to an account balance.

        Args:
            account_number: Account to mutate
            delta: Signed amount
            in_same_transaction: Called with the updated account inside the
                same atomic block; if it raises, the balance change is undone

        Raises:
            SenderNotFound / ReceiverNotFound: unknown account (debit / credit)
            InsufficientFunds: the new balance would be negative
        """
        with self._account_lock(account_number):
            with self.storage.atomic():
                account = self._apply_delta(account_number, delta)
                if in_same_transaction is not None:
                    in_same_transaction(account)

        log_action(
            self.logger, "info", "Balance updated",
            action="update_balance", resource=f"account:{account_number}",
            extra={"delta": str(delta), "balance": str(account.balance)}
        )
        return account

    def transfer_funds(self, account_from: str, account_to: str, amount: Decimal,
                       in_same_transaction: Optional[Callable[[Account, Account], Any]] = None
                       ) -> Tuple[Account, Account]:
        """
        Debit account_from and credit account_to as one unit.

        Either both balances change (together with whatever
        in_same_transaction writes) or nothing does.
        """
        if amount <= 0:
            raise InvalidAmount()

        with ExitStack() as stack:
            for number in sorted({account_from, account_to}):
                stack.enter_context(self._account_lock(number))
            with self.storage.atomic():
                sender = self._apply_delta(account_from, -amount)
                receiver = self._apply_delta(account_to, amount)
                if in_same_transaction is not None:
                    in_same_transaction(sender, receiver)

        log_action(
            self.logger, "info", "Funds moved between local accounts",
            action="transfer_funds", resource=f"account:{account_from}",
            extra={"to": account_to, "amount": str(amount)}
        )
        return sender, receiver

    def _apply_delta(self, account_number: str, delta: Decimal) -> Account:
        # caller holds the account lock and an atomic block
        account = self.get_account(account_number)
        if account is None:
            if delta < 0:
                raise SenderNotFound(details={"account": account_number})
            raise ReceiverNotFound(details={"account": account_number})

        new_balance = account.balance + delta
        if new_balance < 0:
            raise InsufficientFunds(details={"account": account_number})

        account.balance = new_balance.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
        account.updated_at = datetime.now(timezone.utc)
        self._save(account)
        return account

    def _save(self, account: Account) -> None:
        self.storage.save(self.table_name, account.account_number, account.to_dict())
