"""
Counterparty Directory Module

REST client for the central bank registry. Resolves a 3-character bank
prefix to the bank's transaction and key distribution endpoints, asks the
registry whether a prefix is a trusted participant, and fetches the public
key set a counterpart bank publishes.

MockCounterpartyDirectory is the offline variant used in test mode: it
returns deterministic synthetic endpoints and never touches the network.
"""

import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from .errors import DeliveryFailure, UnknownBank
from .logging_config import get_logger, log_action

logger = get_logger("interbank.counterparty")

PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9]{3}$")

JwksProvider = Callable[[], Dict[str, Any]]


@dataclass(frozen=True)
class CounterpartyBankInfo:
    """Endpoints of a bank registered with the central bank"""
    prefix: str
    transaction_endpoint: str
    keys_endpoint: str
    name: Optional[str] = None

    @classmethod
    def from_registry(cls, entry: Dict[str, Any]) -> Optional['CounterpartyBankInfo']:
        """Parse one registry entry, None if it lacks required fields"""
        prefix = entry.get("bankPrefix") or entry.get("prefix")
        transaction_url = entry.get("transactionUrl")
        jwks_url = entry.get("jwksUrl")
        if not prefix or not transaction_url or not jwks_url:
            return None
        return cls(
            prefix=prefix,
            transaction_endpoint=transaction_url,
            keys_endpoint=jwks_url,
            name=entry.get("name"),
        )


def is_valid_prefix(bank_prefix: Any) -> bool:
    return isinstance(bank_prefix, str) and bool(PREFIX_PATTERN.match(bank_prefix))


class CounterpartyDirectory:
    """Client for the central bank registry"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        cache_ttl_seconds: int = 300,
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.cache_ttl_seconds = cache_ttl_seconds
        self._client = client
        self._cache: Dict[str, CounterpartyBankInfo] = {}
        self._cache_expires_at = 0.0
        self._cache_lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        """HTTP client, created on first use"""
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def list_banks(self, refresh: bool = False) -> List[CounterpartyBankInfo]:
        """
        All banks known to the registry.

        The list is cached for cache_ttl_seconds.

        Raises:
            DeliveryFailure: the registry is unreachable or answered garbage
        """
        with self._cache_lock:
            if not refresh and self._cache and time.monotonic() < self._cache_expires_at:
                return list(self._cache.values())

            try:
                response = self.client.get(f"{self.base_url}/banks", headers=self._headers())
                response.raise_for_status()
                entries = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"Central bank registry unavailable: {e}")
                raise DeliveryFailure(
                    "Central bank registry unavailable",
                    details={"registry": self.base_url, "reason": str(e)},
                    retryable=True
                )

            if not isinstance(entries, list):
                raise DeliveryFailure(
                    "Central bank registry returned an unexpected document",
                    details={"registry": self.base_url}
                )

            banks = {}
            for entry in entries:
                info = CounterpartyBankInfo.from_registry(entry) if isinstance(entry, dict) else None
                if info is not None:
                    banks[info.prefix] = info

            self._cache = banks
            self._cache_expires_at = time.monotonic() + self.cache_ttl_seconds
            logger.info(f"Loaded {len(banks)} banks from central registry")
            return list(banks.values())

    def resolve(self, bank_prefix: str) -> CounterpartyBankInfo:
        """
        Endpoints of the bank owning bank_prefix.

        Raises:
            UnknownBank: the registry has no entry for the prefix
        """
        if not is_valid_prefix(bank_prefix):
            raise UnknownBank(details={"bank_prefix": bank_prefix})

        for info in self.list_banks():
            if info.prefix == bank_prefix:
                return info

        # a bank may have registered since the list was cached
        for info in self.list_banks(refresh=True):
            if info.prefix == bank_prefix:
                return info

        raise UnknownBank(details={"bank_prefix": bank_prefix})

    def is_trusted(self, bank_prefix: str) -> bool:
        """
        Ask the registry whether bank_prefix is an active participant.

        Never raises: anything that prevents a positive attestation is an
        untrusted answer. The answer is not cached.
        """
        if not is_valid_prefix(bank_prefix):
            return False

        try:
            response = self.client.get(
                f"{self.base_url}/banks/{bank_prefix}/verify",
                headers=self._headers()
            )
            if response.status_code != 200:
                logger.warning(f"Registry verification of {bank_prefix} returned {response.status_code}")
                return False
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Registry verification of {bank_prefix} failed: {e}")
            return False

        trusted = isinstance(data, dict) and data.get("valid") is True
        log_action(
            logger, "info", "Bank verification completed",
            action="verify_bank", resource=f"bank:{bank_prefix}",
            extra={"trusted": trusted}
        )
        return trusted

    def fetch_public_key_set(self, bank_prefix: str) -> Dict[str, Any]:
        """
        JWKS currently published by the bank owning bank_prefix.

        Raises:
            UnknownBank: prefix is not registered
            DeliveryFailure: the keys endpoint is unreachable or malformed
        """
        info = self.resolve(bank_prefix)
        try:
            response = self.client.get(info.keys_endpoint)
            response.raise_for_status()
            jwks = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Could not fetch JWKS of {bank_prefix} from {info.keys_endpoint}: {e}")
            raise DeliveryFailure(
                "Counterpart key set unavailable",
                details={"bank_prefix": bank_prefix, "reason": str(e)},
                retryable=True
            )

        return _validated_jwks(jwks, bank_prefix)

    def close(self):
        """Close the HTTP client"""
        if self._client is not None:
            self._client.close()
            self._client = None


def _validated_jwks(jwks: Any, bank_prefix: str) -> Dict[str, Any]:
    if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
        raise DeliveryFailure(
            "Counterpart key set is not a JWKS document",
            details={"bank_prefix": bank_prefix}
        )
    keys = [key for key in jwks["keys"] if isinstance(key, dict)]
    logger.info(f"JWKS of {bank_prefix} contains {len(keys)} keys")
    return {"keys": keys}


class MockCounterpartyDirectory(CounterpartyDirectory):
    """
    Offline directory for test mode.

    Without registered banks every well-formed prefix resolves and is
    trusted. Once banks are registered only those resolve. Key sets come
    from per-bank providers, falling back to default_jwks_provider.
    """

    def __init__(self, default_jwks_provider: Optional[JwksProvider] = None,
                 banks: Optional[Iterable[str]] = None, **kwargs):
        super().__init__(base_url="offline://central-bank", **kwargs)
        self.default_jwks_provider = default_jwks_provider
        self._banks: Dict[str, Optional[JwksProvider]] = {}
        self._untrusted: set = set()
        for prefix in banks or []:
            self.register_bank(prefix)

    @staticmethod
    def synthetic_info(bank_prefix: str) -> CounterpartyBankInfo:
        host = f"https://{bank_prefix.lower()}.bank.test"
        return CounterpartyBankInfo(
            prefix=bank_prefix,
            transaction_endpoint=f"{host}/transactions/b2b",
            keys_endpoint=f"{host}/transactions/jwks",
            name=f"{bank_prefix} Test Bank",
        )

    def register_bank(self, bank_prefix: str, jwks_provider: Optional[JwksProvider] = None,
                      trusted: bool = True) -> CounterpartyBankInfo:
        self._banks[bank_prefix] = jwks_provider
        if trusted:
            self._untrusted.discard(bank_prefix)
        else:
            self._untrusted.add(bank_prefix)
        return self.synthetic_info(bank_prefix)

    def _is_known(self, bank_prefix: str) -> bool:
        if not is_valid_prefix(bank_prefix):
            return False
        return not self._banks or bank_prefix in self._banks

    def list_banks(self, refresh: bool = False) -> List[CounterpartyBankInfo]:
        return [self.synthetic_info(prefix) for prefix in self._banks]

    def resolve(self, bank_prefix: str) -> CounterpartyBankInfo:
        if not self._is_known(bank_prefix):
            raise UnknownBank(details={"bank_prefix": bank_prefix})
        return self.synthetic_info(bank_prefix)

    def is_trusted(self, bank_prefix: str) -> bool:
        return self._is_known(bank_prefix) and bank_prefix not in self._untrusted

    def fetch_public_key_set(self, bank_prefix: str) -> Dict[str, Any]:
        self.resolve(bank_prefix)
        provider = self._banks.get(bank_prefix) or self.default_jwks_provider
        if provider is None:
            return {"keys": []}
        return _validated_jwks(provider(), bank_prefix)
