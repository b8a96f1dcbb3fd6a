"""
Tests for transfer token signing, verification and JWK conversion
"""

import hashlib
import hmac
import json
import time
import base64
from datetime import datetime, timezone
from decimal import Decimal

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from interbank.keystore import KeyPair
from interbank.tokens import (
    TokenCodec, b64url_decode, b64url_encode, build_jwks,
    jwk_to_public_key, public_key_to_jwk,
)
from interbank.errors import InvalidAmount, InvalidSignature, TokenExpired, TokenMalformed


def make_key_pair(key_id):
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return KeyPair(
        key_id=key_id,
        public_key=private_key.public_key(),
        private_key=private_key,
        created_at=datetime.now(timezone.utc),
    )


@pytest.fixture(scope="module")
def key_pair():
    return make_key_pair("key-one")


@pytest.fixture(scope="module")
def other_key_pair():
    return make_key_pair("key-two")


payload = {
    "accountFrom": "ABC00000000000000000001",
    "accountTo": "XYZ00000000000000000002",
    "currency": "EUR",
    "amount": Decimal("100.10"),
    "explanation": "rent",
    "senderName": "Alice",
}


class TestTokenCodec:

    def setup_method(self):
        self.codec = TokenCodec(token_ttl_seconds=300)

    def test_sign_and_verify(self, key_pair):
        token = self.codec.sign(payload, key_pair)
        claims = self.codec.verify(token, key_pair.public_key)

        assert claims["accountFrom"] == payload["accountFrom"]
        assert claims["amount"] == 100.1
        assert claims["exp"] - claims["iat"] == 300

    def test_header_carries_key_id(self, key_pair):
        token = self.codec.sign(payload, key_pair)
        header = jwt.get_unverified_header(token)
        assert header["kid"] == "key-one"
        assert header["alg"] == "RS256"

    def test_peek_does_not_verify(self, key_pair):
        token = self.codec.sign(payload, key_pair)
        peeked = self.codec.peek(token)
        assert peeked.key_id == "key-one"
        assert peeked.claims["accountTo"] == payload["accountTo"]

    def test_no_ttl_means_no_exp(self, key_pair):
        token = TokenCodec().sign(payload, key_pair)
        assert "exp" not in self.codec.peek(token).claims

    def test_wrong_key_rejected(self, key_pair, other_key_pair):
        token = self.codec.sign(payload, key_pair)
        with pytest.raises(InvalidSignature):
            self.codec.verify(token, other_key_pair.public_key)

    def test_tampered_amount_rejected(self, key_pair):
        token = self.codec.sign(payload, key_pair)
        header, body, signature = token.split(".")
        claims = json.loads(b64url_decode(body))
        claims["amount"] = 1000000
        forged = ".".join([header, b64url_encode(json.dumps(claims).encode()), signature])

        with pytest.raises(InvalidSignature):
            self.codec.verify(forged, key_pair.public_key)

    def test_expired_token_rejected(self, key_pair):
        stale = dict(payload, iat=int(time.time()) - 3600, exp=int(time.time()) - 600)
        token = self.codec.sign(stale, key_pair)
        with pytest.raises(TokenExpired):
            self.codec.verify(token, key_pair.public_key)

    def test_expiry_within_leeway_accepted(self, key_pair):
        recent = dict(payload, exp=int(time.time()) - 5)
        token = self.codec.sign(recent, key_pair)
        assert self.codec.verify(token, key_pair.public_key)["senderName"] == "Alice"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a..c", "not.base64!.json", None])
    def test_malformed_tokens(self, token, key_pair):
        with pytest.raises(TokenMalformed):
            self.codec.verify(token, key_pair.public_key)

    def test_hmac_with_public_key_rejected(self, key_pair):
        public_pem = key_pair.public_key.public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        header = b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT", "kid": "key-one"}).encode())
        body = b64url_encode(json.dumps({"accountFrom": "ABC1", "amount": 5}).encode())
        signature = b64url_encode(hmac.new(public_pem, f"{header}.{body}".encode(), hashlib.sha256).digest())

        with pytest.raises(InvalidSignature):
            self.codec.verify(f"{header}.{body}.{signature}", key_pair.public_key)

    def test_unsigned_token_rejected(self, key_pair):
        header = b64url_encode(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        body = b64url_encode(json.dumps({"accountFrom": "ABC1", "amount": 5}).encode())

        with pytest.raises(TokenMalformed):
            self.codec.verify(f"{header}.{body}.", key_pair.public_key)
        with pytest.raises(InvalidSignature):
            self.codec.verify(f"{header}.{body}.c2ln", key_pair.public_key)

    def test_verify_requires_rsa_public_key(self, key_pair):
        token = self.codec.sign(payload, key_pair)
        with pytest.raises(TypeError):
            self.codec.verify(token, "shared-secret")

    def test_largest_ledger_amount_is_exact(self, key_pair):
        token = self.codec.sign(dict(payload, amount=Decimal("9999999999999.99")), key_pair)
        claims = self.codec.verify(token, key_pair.public_key)
        assert Decimal(repr(claims["amount"])) == Decimal("9999999999999.99")

    def test_amount_not_representable_as_number(self, key_pair):
        with pytest.raises(InvalidAmount):
            self.codec.sign(dict(payload, amount=Decimal("12345678901234567.89")), key_pair)


class TestJWKConversion:

    def test_round_trip(self, key_pair):
        jwk = public_key_to_jwk(key_pair.public_key, "key-one")
        assert jwk["kty"] == "RSA"
        assert jwk["alg"] == "RS256"
        assert jwk["use"] == "sig"
        assert jwk["kid"] == "key-one"
        assert jwk["e"] == "AQAB"
        assert "=" not in jwk["n"]

        rebuilt = jwk_to_public_key(jwk)
        assert rebuilt.public_numbers() == key_pair.public_key.public_numbers()

    def test_padded_and_standard_alphabet_accepted(self, key_pair):
        jwk = public_key_to_jwk(key_pair.public_key, "key-one")
        modulus = b64url_decode(jwk["n"])
        padded = dict(jwk, n=base64.b64encode(modulus).decode("ascii"), e="AQAB")

        rebuilt = jwk_to_public_key(padded)
        assert rebuilt.public_numbers().n == key_pair.public_key.public_numbers().n

    def test_rebuilt_key_verifies_tokens(self, key_pair):
        codec = TokenCodec()
        token = codec.sign(payload, key_pair)
        public_key = jwk_to_public_key(public_key_to_jwk(key_pair.public_key, "key-one"))
        assert codec.verify(token, public_key)["explanation"] == "rent"

    @pytest.mark.parametrize("overrides", [
        {"kty": "EC"},
        {"alg": "HS256"},
        {"use": "enc"},
        {"n": None},
    ])
    def test_unusable_jwk(self, key_pair, overrides):
        jwk = dict(public_key_to_jwk(key_pair.public_key, "key-one"), **overrides)
        if jwk.get("n") is None:
            del jwk["n"]
        with pytest.raises(ValueError):
            jwk_to_public_key(jwk)

    def test_build_jwks(self, key_pair, other_key_pair):
        jwks = build_jwks([key_pair, other_key_pair])
        assert [key["kid"] for key in jwks["keys"]] == ["key-one", "key-two"]


class TestBase64Url:

    def test_unpadded_output(self):
        assert b64url_encode(b"\xfb\xff") == "-_8"

    def test_decode_variants(self):
        assert b64url_decode("-_8") == b"\xfb\xff"
        assert b64url_decode("-_8=") == b"\xfb\xff"
        assert b64url_decode("+/8=") == b"\xfb\xff"

    def test_invalid_length(self):
        with pytest.raises(ValueError):
            b64url_decode("abcde")
