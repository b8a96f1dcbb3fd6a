"""
Error Kinds Module

Closed set of failure kinds used by the transfer protocol. Every kind has a
stable string code (reported to operators and counterpart banks) and an
HTTP status used by the API layer.
"""

from enum import Enum
from typing import Any, Dict, Optional, Type


class ErrorKind(Enum):
    """Stable failure codes of the interbank protocol"""
    INVALID_AMOUNT = "INVALID_AMOUNT"
    SENDER_NOT_FOUND = "SENDER_NOT_FOUND"
    RECEIVER_NOT_FOUND = "RECEIVER_NOT_FOUND"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    UNKNOWN_BANK = "UNKNOWN_BANK"
    UNTRUSTED_BANK = "UNTRUSTED_BANK"
    UNKNOWN_SIGNING_KEY = "UNKNOWN_SIGNING_KEY"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_MALFORMED = "TOKEN_MALFORMED"
    DELIVERY_FAILURE = "DELIVERY_FAILURE"
    KEY_STORAGE_DEGRADED = "KEY_STORAGE_DEGRADED"


HTTP_STATUS = {
    ErrorKind.INVALID_AMOUNT: 400,
    ErrorKind.TOKEN_MALFORMED: 400,
    ErrorKind.UNKNOWN_SIGNING_KEY: 401,
    ErrorKind.INVALID_SIGNATURE: 401,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.INSUFFICIENT_FUNDS: 402,
    ErrorKind.UNTRUSTED_BANK: 403,
    ErrorKind.SENDER_NOT_FOUND: 404,
    ErrorKind.RECEIVER_NOT_FOUND: 404,
    ErrorKind.UNKNOWN_BANK: 422,
    ErrorKind.DELIVERY_FAILURE: 502,
    ErrorKind.KEY_STORAGE_DEGRADED: 503,
}


class InterbankError(Exception):
    """Base class for all protocol failures"""

    kind: ErrorKind = ErrorKind.DELIVERY_FAILURE
    default_message = "Interbank operation failed"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                 retryable: bool = False):
        self.message = message or self.default_message
        self.details = details or {}
        self.retryable = retryable
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        """Structured failure body sent to callers and counterpart banks"""
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class InvalidAmount(InterbankError):
    """Amount is missing, not a number, or not strictly positive"""
    kind = ErrorKind.INVALID_AMOUNT
    default_message = "Amount must be positive"


class SenderNotFound(InterbankError):
    kind = ErrorKind.SENDER_NOT_FOUND
    default_message = "Sender account not found"


class ReceiverNotFound(InterbankError):
    kind = ErrorKind.RECEIVER_NOT_FOUND
    default_message = "Receiver account not found"


class InsufficientFunds(InterbankError):
    kind = ErrorKind.INSUFFICIENT_FUNDS
    default_message = "Insufficient funds"


class UnknownBank(InterbankError):
    """The central registry has no bank with the requested prefix"""
    kind = ErrorKind.UNKNOWN_BANK
    default_message = "Bank is not registered with the central bank"


class UntrustedBank(InterbankError):
    """The central registry did not attest the sender bank"""
    kind = ErrorKind.UNTRUSTED_BANK
    default_message = "Sender bank is not a trusted participant"


class UnknownSigningKey(InterbankError):
    kind = ErrorKind.UNKNOWN_SIGNING_KEY
    default_message = "Signing key is not published by the sender bank"


class InvalidSignature(InterbankError):
    kind = ErrorKind.INVALID_SIGNATURE
    default_message = "Token signature does not verify"


class TokenExpired(InterbankError):
    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "Token has expired"


class TokenMalformed(InterbankError):
    kind = ErrorKind.TOKEN_MALFORMED
    default_message = "Token is malformed"


class DeliveryFailure(InterbankError):
    """Counterpart bank could not be reached or did not acknowledge"""
    kind = ErrorKind.DELIVERY_FAILURE
    default_message = "Transfer could not be delivered to the counterpart bank"


class KeyStorageDegraded(InterbankError):
    """Signing key could not be persisted; an in-memory key is in use"""
    kind = ErrorKind.KEY_STORAGE_DEGRADED
    default_message = "Signing key storage unavailable, using in-memory key"


_ERRORS_BY_KIND: Dict[ErrorKind, Type[InterbankError]] = {
    cls.kind: cls for cls in (
        InvalidAmount, SenderNotFound, ReceiverNotFound, InsufficientFunds,
        UnknownBank, UntrustedBank, UnknownSigningKey, InvalidSignature,
        TokenExpired, TokenMalformed, DeliveryFailure, KeyStorageDegraded,
    )
}


def error_for_code(code: Optional[str], message: Optional[str] = None,
                   details: Optional[Dict[str, Any]] = None) -> InterbankError:
    """
    Rebuild a domain error from a stable code reported by a counterpart bank.

    Unknown or missing codes are reported as DeliveryFailure.
    """
    try:
        kind = ErrorKind(code)
    except ValueError:
        merged = dict(details or {})
        if code:
            merged["remote_code"] = code
        return DeliveryFailure(message, details=merged)
    return _ERRORS_BY_KIND[kind](message, details=details)
