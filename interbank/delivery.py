"""
Transfer Delivery Module

Posts signed transfer tokens to a counterpart bank's transaction endpoint.
Failures attributable to the remote side being temporarily unavailable
(timeouts, connection errors, 5xx) are retried a bounded number of times
with exponential backoff. Structured rejections (4xx) are permanent and
are raised as the matching domain error.

A timeout after the request was sent leaves the outcome open; the retry
resends the same token, which the receiving bank acknowledges without a
second credit. If every attempt fails that way the failure is flagged
outcome_unknown so the sender can reconcile instead of failing outright.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from .counterparty import CounterpartyBankInfo
from .errors import DeliveryFailure, InterbankError, error_for_code
from .logging_config import get_logger, log_action

logger = get_logger("interbank.delivery")

# the request never left this process, so it cannot have been processed
NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


@dataclass
class DeliveryReceipt:
    """Acknowledgment of a delivered transfer"""
    receiver_name: str
    attempts: int
    response: Dict[str, Any] = field(default_factory=dict)


class TransferDeliveryClient:
    """HTTP client for counterpart transaction endpoints"""

    def __init__(
        self,
        timeout: float = 5.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> httpx.Client:
        """HTTP client, created on first use"""
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def deliver(self, bank: CounterpartyBankInfo, token: str) -> DeliveryReceipt:
        """
        Send a signed token and wait for the receiver's acknowledgment.

        Returns:
            DeliveryReceipt carrying the receiver's display name

        Raises:
            DeliveryFailure: remote unreachable after all attempts, or the
                acknowledgment is unusable
            InterbankError subclass: the remote bank rejected the transfer
        """
        last_error: Optional[str] = None
        # set once an attempt may have reached the remote bank
        outcome_unknown = False

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.client.post(bank.transaction_endpoint, json={"token": token})
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                if not isinstance(e, NOT_SENT_ERRORS):
                    outcome_unknown = True
                logger.warning(f"Delivery to {bank.prefix} attempt {attempt} failed: {last_error}")
            else:
                if response.status_code < 400:
                    return self._receipt(bank, response, attempt)
                if response.status_code < 500:
                    raise self._rejection(bank, response)
                last_error = f"HTTP {response.status_code}"
                logger.warning(f"Delivery to {bank.prefix} attempt {attempt} got {last_error}")

            if attempt < self.max_attempts:
                self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        raise DeliveryFailure(
            f"Counterpart bank {bank.prefix} unavailable",
            details={
                "bank_prefix": bank.prefix,
                "endpoint": bank.transaction_endpoint,
                "attempts": self.max_attempts,
                "reason": last_error,
                "outcome_unknown": outcome_unknown
            },
            retryable=True
        )

    def _receipt(self, bank: CounterpartyBankInfo, response: httpx.Response, attempt: int) -> DeliveryReceipt:
        try:
            data = response.json()
        except ValueError:
            data = None

        receiver_name = data.get("receiverName") if isinstance(data, dict) else None
        if not isinstance(receiver_name, str) or not receiver_name:
            raise DeliveryFailure(
                "Counterpart acknowledgment is missing receiverName",
                details={"bank_prefix": bank.prefix, "status": response.status_code}
            )

        log_action(
            logger, "info", "Transfer delivered",
            action="deliver_transfer", resource=f"bank:{bank.prefix}",
            extra={"attempts": attempt, "status": response.status_code}
        )
        return DeliveryReceipt(receiver_name=receiver_name, attempts=attempt, response=data)

    def _rejection(self, bank: CounterpartyBankInfo, response: httpx.Response) -> InterbankError:
        try:
            body = response.json()
        except ValueError:
            body = None

        code = message = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                code, message = error.get("code"), error.get("message")
            elif isinstance(error, str):
                message = error

        details = {"bank_prefix": bank.prefix, "status": response.status_code, "remote": True}
        rejection = error_for_code(code, message or f"Rejected by {bank.prefix}", details)
        log_action(
            logger, "warning", "Transfer rejected by counterpart bank",
            action="deliver_transfer", resource=f"bank:{bank.prefix}",
            code=rejection.code, extra=details
        )
        return rejection

    def close(self):
        """Close the HTTP client"""
        if self._client is not None:
            self._client.close()
            self._client = None


class MockTransferDeliveryClient(TransferDeliveryClient):
    """
    Offline delivery for test mode.

    Tokens for a bank with a registered handler are passed to it (a handler
    returns the receiver name or raises an InterbankError). Other banks
    acknowledge with a fixed receiver name.
    """

    def __init__(self, default_receiver_name: str = "Test Receiver", **kwargs):
        super().__init__(**kwargs)
        self.default_receiver_name = default_receiver_name
        self._handlers: Dict[str, Callable[[str], str]] = {}
        self.delivered: list = []

    def register_handler(self, bank_prefix: str, handler: Callable[[str], str]) -> None:
        self._handlers[bank_prefix] = handler

    def deliver(self, bank: CounterpartyBankInfo, token: str) -> DeliveryReceipt:
        self.delivered.append((bank.prefix, token))
        handler = self._handlers.get(bank.prefix)
        receiver_name = handler(token) if handler else self.default_receiver_name
        return DeliveryReceipt(
            receiver_name=receiver_name,
            attempts=1,
            response={"receiverName": receiver_name}
        )
