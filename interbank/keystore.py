"""
Signing Key Store Module

Owns the bank's RSA signing keys. Exactly one key is active for signing at
any time; rotated-out keys stay published for a while so tokens they signed
can still be verified by counterpart banks.

Keys are persisted through the storage backend. If persisting a freshly
generated key fails, the key is kept in memory only and the store reports
itself as degraded: signing continues, operators get a warning.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import threading
import uuid

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .storage import StorageInterface, parse_timestamp
from .errors import KeyStorageDegraded
from .tokens import build_jwks
from .logging_config import get_logger, log_action


@dataclass
class KeyPair:
    """RSA signing key pair"""
    key_id: str
    public_key: rsa.RSAPublicKey
    private_key: rsa.RSAPrivateKey
    created_at: datetime
    active: bool = True
    persisted: bool = True

    def public_projection(self) -> 'PublicKeyEntry':
        return PublicKeyEntry(
            key_id=self.key_id,
            public_key=self.public_key,
            created_at=self.created_at,
            active=self.active,
        )


@dataclass(frozen=True)
class PublicKeyEntry:
    """Public half of a KeyPair, safe to publish"""
    key_id: str
    public_key: rsa.RSAPublicKey
    created_at: datetime
    active: bool


class KeyStore:
    """
    Lifecycle of the bank's signing keys.

    Generation and rotation run under a single lock, so concurrent callers
    at cold start all receive the same active key.
    """

    def __init__(
        self,
        storage: StorageInterface,
        key_size: int = 2048,
        retired_key_retention: int = 2,
        encryption_secret: Optional[str] = None
    ):
        self.storage = storage
        self.key_size = key_size
        self.retired_key_retention = retired_key_retention
        self._encryption_secret = encryption_secret.encode("utf-8") if encryption_secret else None
        self.table_name = "signing_keys"
        self.logger = get_logger("interbank.keys")

        self._lock = threading.Lock()
        self._active: Optional[KeyPair] = None
        # keys that could not be persisted, kept so they stay verifiable
        self._memory_keys: Dict[str, KeyPair] = {}
        # deserialized persisted keys by key id
        self._key_cache: Dict[str, KeyPair] = {}
        self.degraded = False

    def initialize(self, force_new: bool = False) -> KeyPair:
        """Startup hook: load the persisted key or create one (rotate if forced)"""
        return self.rotate(force_new=force_new)

    def get_active_key_pair(self) -> KeyPair:
        """Current signing key, generated on first use if none exists"""
        active = self._active
        if active is not None:
            return active

        with self._lock:
            if self._active is None:
                self._active = self._load_active() or self._generate_and_store()
            return self._active

    def rotate(self, force_new: bool = False) -> KeyPair:
        """
        Replace the active key.

        With force_new=False an existing active key is returned unchanged.
        """
        with self._lock:
            current = self._active or self._load_active()
            if current is not None and not force_new:
                self._active = current
                return current

            self._active = self._generate_and_store(previous=current)
            return self._active

    def public_key_set(self) -> List[PublicKeyEntry]:
        """
        Keys valid for verification: the active key first, then the most
        recently retired ones up to retired_key_retention.
        """
        active = self.get_active_key_pair()

        retired: Dict[str, KeyPair] = {}
        for key_pair in self._load_all():
            if key_pair.key_id != active.key_id:
                retired[key_pair.key_id] = key_pair
        for key_id, key_pair in self._memory_keys.items():
            if key_id != active.key_id:
                retired.setdefault(key_id, key_pair)

        newest_first = sorted(retired.values(), key=lambda kp: kp.created_at, reverse=True)
        keys = [active] + newest_first[:self.retired_key_retention]
        return [kp.public_projection() for kp in keys]

    def jwks(self) -> Dict[str, list]:
        """JSON Web Key Set published at the key distribution endpoint"""
        return build_jwks(self.public_key_set())

    def find_key(self, key_id: str) -> Optional[PublicKeyEntry]:
        for entry in self.public_key_set():
            if entry.key_id == key_id:
                return entry
        return None

    def _generate_and_store(self, previous: Optional[KeyPair] = None) -> KeyPair:
        # caller holds self._lock
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        key_pair = KeyPair(
            key_id=uuid.uuid4().hex[:16],
            public_key=private_key.public_key(),
            private_key=private_key,
            created_at=datetime.now(timezone.utc),
        )

        try:
            with self.storage.atomic():
                for record in self.storage.find(self.table_name, {"active": True}):
                    record["active"] = False
                    self.storage.save(self.table_name, record["key_id"], record)
                self.storage.save(self.table_name, key_pair.key_id, self._serialize(key_pair))
                self._prune_retired(key_pair.key_id)
        except Exception as e:
            key_pair.persisted = False
            self._memory_keys[key_pair.key_id] = key_pair
            self._prune_memory_keys(key_pair.key_id)
            self.degraded = True
            warning = KeyStorageDegraded(details={"key_id": key_pair.key_id, "reason": str(e)})
            log_action(
                self.logger, "warning", warning.message,
                action="persist_signing_key", resource=f"key:{key_pair.key_id}",
                code=warning.code, extra=warning.details
            )
        else:
            self.degraded = False

        if previous is not None:
            previous.active = False

        log_action(
            self.logger, "info", "Signing key generated",
            action="generate_signing_key", resource=f"key:{key_pair.key_id}",
            extra={
                "key_size": self.key_size,
                "persisted": key_pair.persisted,
                "replaces": previous.key_id if previous else None
            }
        )
        return key_pair

    def _prune_retired(self, active_key_id: str) -> None:
        # caller holds self._lock inside storage.atomic()
        retired = [
            record for record in self.storage.load_all(self.table_name)
            if record["key_id"] != active_key_id
        ]
        retired.sort(key=lambda record: parse_timestamp(record["created_at"]), reverse=True)
        for record in retired[self.retired_key_retention:]:
            self.storage.delete(self.table_name, record["key_id"])
            self._key_cache.pop(record["key_id"], None)
            self.logger.info(f"Dropped retired signing key {record['key_id']}")

    def _prune_memory_keys(self, active_key_id: str) -> None:
        retired = sorted(
            (kp for kp in self._memory_keys.values() if kp.key_id != active_key_id),
            key=lambda kp: kp.created_at, reverse=True
        )
        for key_pair in retired[self.retired_key_retention:]:
            del self._memory_keys[key_pair.key_id]

    def _load_active(self) -> Optional[KeyPair]:
        candidates = [kp for kp in self._load_all() if kp.active]
        if not candidates:
            return None
        return max(candidates, key=lambda kp: kp.created_at)

    def _load_all(self) -> List[KeyPair]:
        try:
            records = self.storage.load_all(self.table_name)
        except Exception as e:
            self.logger.warning(f"Could not read signing keys from storage: {e}")
            return []
        return [self._cached(record) for record in records]

    def _cached(self, record: Dict[str, Any]) -> KeyPair:
        key_pair = self._key_cache.get(record["key_id"])
        if key_pair is None:
            key_pair = self._deserialize(record)
            self._key_cache[key_pair.key_id] = key_pair
        key_pair.active = record["active"]
        return key_pair

    def _serialize(self, key_pair: KeyPair) -> Dict[str, Any]:
        if self._encryption_secret:
            encryption = serialization.BestAvailableEncryption(self._encryption_secret)
        else:
            encryption = serialization.NoEncryption()

        private_pem = key_pair.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
        public_pem = key_pair.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return {
            "key_id": key_pair.key_id,
            "public_key": public_pem.decode("ascii"),
            "private_key": private_pem.decode("ascii"),
            "created_at": key_pair.created_at.isoformat(),
            "active": key_pair.active,
        }

    def _deserialize(self, record: Dict[str, Any]) -> KeyPair:
        private_key = serialization.load_pem_private_key(
            record["private_key"].encode("ascii"),
            password=self._encryption_secret,
        )
        return KeyPair(
            key_id=record["key_id"],
            public_key=private_key.public_key(),
            private_key=private_key,
            created_at=parse_timestamp(record["created_at"]),
            active=record["active"],
        )
