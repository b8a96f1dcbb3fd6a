"""
Integration tests for the Interbank Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from interbank.api import create_app
from interbank.config import BankConfig
from interbank.system import BankingSystem


@pytest.fixture
def banking_system():
    """In-memory bank in test mode: no registry or counterpart calls"""
    return BankingSystem(config=BankConfig(bank_prefix="ABC", test_mode=True, database_url="memory://"))


@pytest.fixture
def client(banking_system):
    with TestClient(create_app(banking_system)) as test_client:
        yield test_client


@pytest.fixture
def accounts(banking_system):
    ledger = banking_system.ledger
    return (
        ledger.create_account("Alice", initial_balance=Decimal("500.00")),
        ledger.create_account("Bob", initial_balance=Decimal("50.00")),
    )


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["bank_prefix"] == "ABC"
        assert data["test_mode"] is True


class TestKeyDistribution:

    def test_jwks(self, client, banking_system):
        r = client.get("/transactions/jwks")
        assert r.status_code == 200
        keys = r.json()["keys"]
        assert keys[0]["kid"] == banking_system.keystore.get_active_key_pair().key_id
        assert keys[0]["alg"] == "RS256"
        assert "d" not in keys[0]

    def test_well_known_alias(self, client):
        assert client.get("/.well-known/jwks.json").json() == client.get("/transactions/jwks").json()


class TestTransactionEndpoints:

    def test_local_transfer(self, client, accounts):
        alice, bob = accounts
        r = client.post("/transactions", json={
            "accountFrom": alice.account_number,
            "accountTo": bob.account_number,
            "amount": 100,
            "explanation": "dinner"
        })
        assert r.status_code == 201
        data = r.json()
        assert data["status"] == "completed"
        assert data["receiverName"] == "Bob"
        assert data["amount"] == "100.00"

        r = client.get(f"/transactions/{data['transferId']}")
        assert r.status_code == 200
        assert r.json()["accountTo"] == bob.account_number

        history = client.get(f"/transactions/account/{alice.account_number}").json()
        assert [item["transferId"] for item in history] == [data["transferId"]]

    def test_remote_transfer_in_test_mode(self, client, accounts, banking_system):
        alice, _ = accounts
        r = client.post("/transactions", json={
            "accountFrom": alice.account_number,
            "accountTo": "XYZ0000000000000000001",
            "amount": "25.50"
        })
        assert r.status_code == 201
        assert r.json()["direction"] == "outgoing"
        assert r.json()["receiverName"] == "Test Receiver"
        assert banking_system.ledger.get_account(alice.account_number).balance == Decimal("474.50")

    def test_invalid_amount(self, client, accounts):
        alice, bob = accounts
        r = client.post("/transactions", json={
            "accountFrom": alice.account_number, "accountTo": bob.account_number, "amount": -5
        })
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_AMOUNT"

    def test_insufficient_funds(self, client, accounts):
        alice, bob = accounts
        r = client.post("/transactions", json={
            "accountFrom": bob.account_number, "accountTo": alice.account_number, "amount": 1000
        })
        assert r.status_code == 402
        assert r.json()["error"]["code"] == "INSUFFICIENT_FUNDS"

    def test_unknown_transaction(self, client):
        assert client.get("/transactions/does-not-exist").status_code == 404


class TestB2BEndpoint:
    """In test mode the bank verifies its own signatures (loopback)"""

    def _token(self, banking_system, alice, bob, amount=10):
        return banking_system.codec.sign({
            "accountFrom": alice.account_number,
            "accountTo": bob.account_number,
            "currency": "EUR",
            "amount": amount,
            "explanation": "loopback",
            "senderName": "Alice",
        }, banking_system.keystore.get_active_key_pair())

    def test_accepts_signed_transfer(self, client, accounts, banking_system):
        alice, bob = accounts
        r = client.post("/transactions/b2b", json={"token": self._token(banking_system, alice, bob)})
        assert r.status_code == 200
        assert r.json()["receiverName"] == "Bob"
        assert r.json()["status"] == "completed"
        assert banking_system.ledger.get_account(bob.account_number).balance == Decimal("60.00")

    def test_legacy_jwt_field(self, client, accounts, banking_system):
        alice, bob = accounts
        r = client.post("/transactions/b2b", json={"jwt": self._token(banking_system, alice, bob)})
        assert r.status_code == 200

    def test_missing_token(self, client):
        r = client.post("/transactions/b2b", json={})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "TOKEN_MALFORMED"

    def test_tampered_token(self, client, accounts, banking_system):
        alice, bob = accounts
        token = self._token(banking_system, alice, bob)
        other = self._token(banking_system, alice, bob, amount=9999)
        forged = ".".join([token.split(".")[0], other.split(".")[1], token.split(".")[2]])

        r = client.post("/transactions/b2b", json={"token": forged})
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert banking_system.ledger.get_account(bob.account_number).balance == Decimal("50.00")

    def test_unknown_receiver(self, client, accounts, banking_system):
        alice, bob = accounts
        token = banking_system.codec.sign({
            "accountFrom": alice.account_number, "accountTo": "ABCmissing", "amount": 1
        }, banking_system.keystore.get_active_key_pair())

        r = client.post("/transactions/b2b", json={"token": token})
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "RECEIVER_NOT_FOUND"
