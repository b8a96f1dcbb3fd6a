"""
Transfer Processing Module

Routes transfers between local accounts and counterpart banks and tracks
every transfer through pending -> processing -> completed | failed.

Outgoing remote transfers are signed with this bank's active key and
delivered to the destination bank; the sender is only debited once the
destination bank acknowledges. Incoming transfers are credited only after
the sender bank is attested by the central registry and the token verifies
against a key that bank publishes.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import threading
import uuid

from .storage import StorageInterface, StorageRecord, parse_timestamp
from .accounts import AccountLedger, to_transfer_amount
from .keystore import KeyStore
from .tokens import TokenCodec, jwk_to_public_key
from .counterparty import CounterpartyDirectory
from .delivery import TransferDeliveryClient
from .errors import (
    InterbankError, DeliveryFailure, SenderNotFound, ReceiverNotFound,
    InsufficientFunds, UntrustedBank, UnknownSigningKey, TokenMalformed,
    error_for_code,
)
from .logging_config import get_logger, log_action


class TransferStatus(Enum):
    """States of a transfer"""
    PENDING = "pending"        # Accepted, not yet routed
    PROCESSING = "processing"  # Routed, money not yet moved
    COMPLETED = "completed"    # Terminal, immutable
    FAILED = "failed"          # Terminal, never retried into completed


class TransferDirection(Enum):
    LOCAL = "local"
    OUTGOING = "outgoing"
    INCOMING = "incoming"


ALLOWED_TRANSITIONS = {
    TransferStatus.PENDING: {TransferStatus.PROCESSING},
    TransferStatus.PROCESSING: {TransferStatus.COMPLETED, TransferStatus.FAILED},
    TransferStatus.COMPLETED: set(),
    TransferStatus.FAILED: set(),
}


@dataclass
class TransferRecord(StorageRecord):
    """A transfer as seen by this bank"""
    transfer_id: str
    account_from: str
    account_to: str
    amount: Decimal
    currency: str
    explanation: str
    sender_name: str
    direction: TransferDirection
    status: TransferStatus = TransferStatus.PENDING
    receiver_name: Optional[str] = None
    key_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    # "<sender prefix>:<jti>" of an incoming transfer
    external_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TransferStatus.COMPLETED, TransferStatus.FAILED)

    def signed_payload(self) -> Dict[str, Any]:
        """Economic fields carried in the transfer token, plus its id as jti"""
        return {
            "jti": self.transfer_id,
            "accountFrom": self.account_from,
            "accountTo": self.account_to,
            "currency": self.currency,
            "amount": self.amount,
            "explanation": self.explanation,
            "senderName": self.sender_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransferRecord':
        return cls(
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            transfer_id=data['transfer_id'],
            account_from=data['account_from'],
            account_to=data['account_to'],
            amount=Decimal(data['amount']),
            currency=data['currency'],
            explanation=data.get('explanation', ''),
            sender_name=data.get('sender_name', ''),
            direction=TransferDirection(data['direction']),
            status=TransferStatus(data['status']),
            receiver_name=data.get('receiver_name'),
            key_id=data.get('key_id'),
            error_code=data.get('error_code'),
            error_message=data.get('error_message'),
            external_id=data.get('external_id'),
        )


class TransferLog:
    """Persistent transfer records with enforced state transitions"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transfers"

    def create(
        self,
        account_from: str,
        account_to: str,
        amount: Decimal,
        currency: str,
        explanation: str,
        sender_name: str,
        direction: TransferDirection,
        status: TransferStatus = TransferStatus.PENDING,
        receiver_name: Optional[str] = None,
        key_id: Optional[str] = None,
        external_id: Optional[str] = None
    ) -> TransferRecord:
        if status not in (TransferStatus.PENDING, TransferStatus.PROCESSING):
            raise ValueError(f"Transfers cannot be created in state {status.value}")

        now = datetime.now(timezone.utc)
        record = TransferRecord(
            created_at=now,
            updated_at=now,
            transfer_id=str(uuid.uuid4()),
            account_from=account_from,
            account_to=account_to,
            amount=amount,
            currency=currency,
            explanation=explanation,
            sender_name=sender_name,
            direction=direction,
            status=status,
            receiver_name=receiver_name,
            key_id=key_id,
            external_id=external_id,
        )
        self._save(record)
        return record

    def get(self, transfer_id: str) -> Optional[TransferRecord]:
        data = self.storage.load(self.table_name, transfer_id)
        if data:
            return TransferRecord.from_dict(data)
        return None

    def update_status(
        self,
        record: TransferRecord,
        status: TransferStatus,
        receiver_name: Optional[str] = None,
        error: Optional[InterbankError] = None
    ) -> TransferRecord:
        """
        Move a record to a new state.

        Raises:
            ValueError: the transition is not allowed (terminal records
                never change)
        """
        if status not in ALLOWED_TRANSITIONS[record.status]:
            raise ValueError(
                f"Transfer {record.transfer_id} cannot move from "
                f"{record.status.value} to {status.value}"
            )

        record.status = status
        if receiver_name:
            record.receiver_name = receiver_name
        if error is not None:
            record.error_code = error.code
            record.error_message = error.message
        record.updated_at = datetime.now(timezone.utc)
        self._save(record)
        return record

    def annotate(self, record: TransferRecord, error: InterbankError) -> TransferRecord:
        """Attach an error to a non-terminal record without changing its state"""
        if record.is_terminal:
            raise ValueError(f"Transfer {record.transfer_id} is {record.status.value}")
        record.error_code = error.code
        record.error_message = error.message
        record.updated_at = datetime.now(timezone.utc)
        self._save(record)
        return record

    def find_by_external_id(self, external_id: str) -> Optional[TransferRecord]:
        rows = self.storage.find(self.table_name, {"external_id": external_id})
        if rows:
            return TransferRecord.from_dict(rows[0])
        return None

    def list_for_account(self, account_number: str) -> List[TransferRecord]:
        """Transfers where the account is sender or receiver, newest first"""
        records = [
            TransferRecord.from_dict(data)
            for data in self.storage.load_all(self.table_name)
            if data.get('account_from') == account_number or data.get('account_to') == account_number
        ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def list_by_status(self, status: Optional[TransferStatus] = None) -> List[TransferRecord]:
        if status is None:
            rows = self.storage.load_all(self.table_name)
        else:
            rows = self.storage.find(self.table_name, {"status": status.value})
        records = [TransferRecord.from_dict(data) for data in rows]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def _save(self, record: TransferRecord) -> None:
        self.storage.save(self.table_name, record.transfer_id, record.to_dict())


class TransferCoordinator:
    """
    Drives local, outgoing and incoming transfers.

    Locks are only held for the local balance mutation, never across a
    network round trip.
    """

    def __init__(
        self,
        ledger: AccountLedger,
        transfer_log: TransferLog,
        keystore: KeyStore,
        codec: TokenCodec,
        directory: CounterpartyDirectory,
        delivery: TransferDeliveryClient,
        bank_prefix: str,
        default_currency: str = "EUR"
    ):
        self.ledger = ledger
        self.transfer_log = transfer_log
        self.keystore = keystore
        self.codec = codec
        self.directory = directory
        self.delivery = delivery
        self.bank_prefix = bank_prefix
        self.default_currency = default_currency
        self.logger = get_logger("interbank.transfers")
        # serializes the duplicate check and record creation of inbound tokens
        self._inbound_guard = threading.Lock()

    def submit_transfer(
        self,
        account_from: str,
        account_to: str,
        amount: Any,
        currency: Optional[str] = None,
        explanation: str = "",
        sender_name: Optional[str] = None
    ) -> TransferRecord:
        """
        Send money from a local account to a local or remote account.

        Returns:
            The completed TransferRecord

        Raises:
            InvalidAmount, SenderNotFound, InsufficientFunds: before any
                record is created
            ReceiverNotFound, UnknownBank, DeliveryFailure, ...: the record
                is left failed, unless the remote outcome is unknown, in
                which case it stays processing for reconciliation
        """
        amount = to_transfer_amount(amount)
        if not isinstance(account_to, str) or len(account_to) < 3:
            raise ReceiverNotFound(details={"account": account_to})

        sender = self.ledger.get_account(account_from)
        if sender is None:
            raise SenderNotFound(details={"account": account_from})
        if sender.balance < amount:
            raise InsufficientFunds(details={"account": account_from})

        destination_prefix = account_to[:3]
        is_local = destination_prefix == self.bank_prefix

        record = self.transfer_log.create(
            account_from=account_from,
            account_to=account_to,
            amount=amount,
            currency=(currency or sender.currency or self.default_currency).upper(),
            explanation=explanation or "",
            sender_name=sender_name or sender.owner_name,
            direction=TransferDirection.LOCAL if is_local else TransferDirection.OUTGOING,
        )
        self._log_transition(record, "Transfer accepted")

        if is_local:
            return self._complete_local(record)
        return self._send_remote(record, destination_prefix)

    def _complete_local(self, record: TransferRecord) -> TransferRecord:
        self.transfer_log.update_status(record, TransferStatus.PROCESSING)
        self._log_transition(record, "Local transfer routed")

        if self.ledger.get_account(record.account_to) is None:
            raise self._fail(record, ReceiverNotFound(details={"account": record.account_to}))

        def complete(sender, receiver_account):
            self.transfer_log.update_status(
                record, TransferStatus.COMPLETED, receiver_name=receiver_account.owner_name
            )

        try:
            self.ledger.transfer_funds(
                record.account_from, record.account_to, record.amount,
                in_same_transaction=complete
            )
        except InterbankError as e:
            raise self._fail(record, e)

        self._log_transition(record, "Local transfer completed")
        return record

    def _send_remote(self, record: TransferRecord, destination_prefix: str) -> TransferRecord:
        self.transfer_log.update_status(record, TransferStatus.PROCESSING)
        self._log_transition(record, "Remote transfer routed", extra={"bank": destination_prefix})

        try:
            key_pair = self.keystore.get_active_key_pair()
            token = self.codec.sign(record.signed_payload(), key_pair)
            record.key_id = key_pair.key_id
            bank = self.directory.resolve(destination_prefix)
            receipt = self.delivery.deliver(bank, token)
        except DeliveryFailure as e:
            if e.details.get("outcome_unknown"):
                raise self._unresolved(record, e, "Remote outcome unknown after delivery attempts; reconcile manually")
            raise self._fail(record, e)
        except InterbankError as e:
            raise self._fail(record, e)

        def complete(sender):
            self.transfer_log.update_status(
                record, TransferStatus.COMPLETED, receiver_name=receipt.receiver_name
            )

        try:
            self.ledger.update_balance(record.account_from, -record.amount, in_same_transaction=complete)
        except InterbankError as e:
            # the counterpart bank already credited its customer
            raise self._unresolved(record, e, "Acknowledged remote transfer could not be debited; reconcile manually")

        self._log_transition(record, "Remote transfer completed", extra={"attempts": receipt.attempts})
        return record

    def accept_transfer(self, token: str) -> TransferRecord:
        """
        Credit a local account from a signed token sent by another bank.

        Returns:
            The completed TransferRecord; its receiver_name is the
            acknowledgment returned to the sending bank

        A token whose jti was already accepted from the same bank returns
        the original record; the account is credited only once.

        Raises:
            TokenMalformed, ReceiverNotFound, UntrustedBank,
            UnknownSigningKey, InvalidSignature, TokenExpired, InvalidAmount
        """
        peeked = self.codec.peek(token)
        account_from = peeked.claims.get("accountFrom")
        account_to = peeked.claims.get("accountTo")
        if not isinstance(account_from, str) or len(account_from) < 3:
            raise TokenMalformed("Token payload has no usable accountFrom")
        if not isinstance(account_to, str) or not account_to:
            raise TokenMalformed("Token payload has no usable accountTo")

        receiver = self.ledger.get_account(account_to)
        if receiver is None:
            raise ReceiverNotFound(details={"account": account_to})

        sender_prefix = account_from[:3]
        if not self.directory.is_trusted(sender_prefix):
            raise self._rejected(UntrustedBank(details={"bank_prefix": sender_prefix}))

        key_id = peeked.key_id
        jwks = self.directory.fetch_public_key_set(sender_prefix)
        jwk = next((key for key in jwks["keys"] if key_id and key.get("kid") == key_id), None)
        if jwk is None:
            raise self._rejected(UnknownSigningKey(details={"bank_prefix": sender_prefix, "kid": key_id}))
        try:
            public_key = jwk_to_public_key(jwk)
        except ValueError as e:
            raise self._rejected(UnknownSigningKey(
                f"Published key is not usable: {e}",
                details={"bank_prefix": sender_prefix, "kid": key_id}
            ))

        try:
            claims = self.codec.verify(token, public_key)
        except InterbankError as e:
            raise self._rejected(e)

        amount = to_transfer_amount(claims.get("amount"))

        jti = claims.get("jti")
        external_id = f"{sender_prefix}:{jti}" if isinstance(jti, str) and jti else None

        with self._inbound_guard:
            if external_id is not None:
                existing = self.transfer_log.find_by_external_id(external_id)
                if existing is not None:
                    return self._redelivered(existing)

            record = self.transfer_log.create(
                account_from=claims["accountFrom"],
                account_to=claims["accountTo"],
                amount=amount,
                currency=str(claims.get("currency") or self.default_currency).upper(),
                explanation=str(claims.get("explanation") or ""),
                sender_name=str(claims.get("senderName") or ""),
                direction=TransferDirection.INCOMING,
                status=TransferStatus.PROCESSING,
                receiver_name=receiver.owner_name,
                key_id=key_id,
                external_id=external_id,
            )
        self._log_transition(record, "Incoming transfer verified", extra={"bank": sender_prefix})

        def complete(account):
            self.transfer_log.update_status(record, TransferStatus.COMPLETED, receiver_name=account.owner_name)

        try:
            self.ledger.update_balance(record.account_to, amount, in_same_transaction=complete)
        except InterbankError as e:
            raise self._fail(record, e)

        self._log_transition(record, "Incoming transfer completed")
        return record

    def _redelivered(self, record: TransferRecord) -> TransferRecord:
        """Answer a token that was already accepted, without crediting again"""
        log_action(
            self.logger, "info", "Duplicate transfer token acknowledged without credit",
            action="accept_transfer", resource=f"transfer:{record.transfer_id}",
            extra={"external_id": record.external_id, "status": record.status.value}
        )
        if record.status == TransferStatus.FAILED:
            raise error_for_code(record.error_code, record.error_message)
        return record

    def get_transfer(self, transfer_id: str) -> Optional[TransferRecord]:
        return self.transfer_log.get(transfer_id)

    def list_account_transfers(self, account_number: str) -> List[TransferRecord]:
        return self.transfer_log.list_for_account(account_number)

    def list_transfers(self, status: Optional[TransferStatus] = None) -> List[TransferRecord]:
        """All transfers, optionally by status (e.g. processing ones to reconcile)"""
        return self.transfer_log.list_by_status(status)

    def _fail(self, record: TransferRecord, error: InterbankError) -> InterbankError:
        self.transfer_log.update_status(record, TransferStatus.FAILED, error=error)
        log_action(
            self.logger, "warning", f"Transfer failed: {error.message}",
            action="fail_transfer", resource=f"transfer:{record.transfer_id}",
            code=error.code, extra=error.details or None
        )
        return error

    def _unresolved(self, record: TransferRecord, error: InterbankError, message: str) -> InterbankError:
        # record stays processing
        self.transfer_log.annotate(record, error)
        log_action(
            self.logger, "critical", message,
            action="reconcile_required", resource=f"transfer:{record.transfer_id}",
            code=error.code, extra={"account": record.account_from, "amount": str(record.amount)}
        )
        return error

    def _rejected(self, error: InterbankError) -> InterbankError:
        log_action(
            self.logger, "warning", f"Incoming transfer rejected: {error.message}",
            action="accept_transfer", code=error.code, extra=error.details or None
        )
        return error

    def _log_transition(self, record: TransferRecord, message: str,
                        extra: Optional[Dict[str, Any]] = None) -> None:
        log_action(
            self.logger, "info", message,
            action=f"transfer_{record.status.value}", resource=f"transfer:{record.transfer_id}",
            extra={
                "direction": record.direction.value,
                "amount": str(record.amount),
                "currency": record.currency,
                **(extra or {})
            }
        )
