"""
Service wiring: builds every component of the interbank ledger from a
BankConfig. Each BankingSystem is independent, so tests can run several
banks side by side in one process.
"""

from typing import Optional

from .config import BankConfig, get_config
from .storage import StorageInterface, create_storage
from .accounts import AccountLedger
from .keystore import KeyStore
from .tokens import TokenCodec
from .counterparty import CounterpartyDirectory, MockCounterpartyDirectory
from .delivery import TransferDeliveryClient, MockTransferDeliveryClient
from .transfers import TransferCoordinator, TransferLog
from .logging_config import get_logger


class BankingSystem:
    """Interbank ledger with all components initialized"""

    def __init__(self, config: Optional[BankConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.logger = get_logger("interbank.system")

        self.storage = storage or create_storage(self.config.database_url)
        self.ledger = AccountLedger(self.storage, self.config.bank_prefix)
        self.transfer_log = TransferLog(self.storage)
        self.keystore = KeyStore(
            self.storage,
            key_size=self.config.key_size,
            retired_key_retention=self.config.retired_key_retention,
            encryption_secret=self.config.key_encryption_secret or None
        )
        self.codec = TokenCodec(token_ttl_seconds=self.config.token_ttl_seconds)
        self.directory = self._create_directory()
        self.delivery = self._create_delivery()
        self.coordinator = TransferCoordinator(
            ledger=self.ledger,
            transfer_log=self.transfer_log,
            keystore=self.keystore,
            codec=self.codec,
            directory=self.directory,
            delivery=self.delivery,
            bank_prefix=self.config.bank_prefix,
            default_currency=self.config.default_currency
        )

    def _create_directory(self) -> CounterpartyDirectory:
        """Registry client, or the offline directory in test mode"""
        if self.config.test_mode:
            self.logger.info("Central bank registry in TEST mode: no network calls")
            # without registered peers, counterpart keys are our own (loopback)
            return MockCounterpartyDirectory(default_jwks_provider=self.keystore.jwks)
        self.logger.info(f"Using central bank registry at {self.config.central_bank_url}")
        return CounterpartyDirectory(
            base_url=self.config.central_bank_url,
            api_key=self.config.central_bank_api_key or None,
            timeout=self.config.http_timeout_seconds,
            cache_ttl_seconds=self.config.registry_cache_ttl_seconds
        )

    def _create_delivery(self) -> TransferDeliveryClient:
        if self.config.test_mode:
            return MockTransferDeliveryClient()
        return TransferDeliveryClient(
            timeout=self.config.http_timeout_seconds,
            max_attempts=self.config.delivery_max_attempts,
            backoff_seconds=self.config.delivery_backoff_seconds
        )

    def start(self) -> None:
        """Load or create the signing key according to the rotation policy"""
        key_pair = self.keystore.initialize(force_new=self.config.rotate_keys_on_startup)
        self.logger.info(
            f"Bank {self.config.bank_prefix} ready, signing with key {key_pair.key_id}"
            f"{' (in-memory only)' if not key_pair.persisted else ''}"
        )

    def close(self) -> None:
        self.directory.close()
        self.delivery.close()
        self.storage.close()


_banking_system: Optional[BankingSystem] = None


def get_banking_system() -> BankingSystem:
    """Process-wide system built from the global configuration"""
    global _banking_system
    if _banking_system is None:
        _banking_system = BankingSystem()
    return _banking_system
