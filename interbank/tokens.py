"""
Transfer Token Module

Signs transfer payloads into compact RS256 JSON Web Tokens and verifies
tokens received from counterpart banks. Also converts RSA public keys to
and from their JWK exchange form (modulus and exponent as unpadded
base64url).

Verification is pinned to RS256 and only accepts an RSA public key object,
so a token advertising another algorithm (HS256, none) can never be
accepted with a public key used as an HMAC secret.
"""

import base64
import binascii
import json
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidAlgorithmError,
    InvalidSignatureError,
    InvalidTokenError,
)
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import InvalidAmount, InvalidSignature, TokenExpired, TokenMalformed
from .logging_config import get_logger


ALGORITHM = "RS256"

logger = get_logger("interbank.tokens")


def b64url_encode(data: bytes) -> str:
    """Base64url without padding"""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """
    Decode base64url, accepting padded or unpadded input.

    Standard-alphabet characters (+ and /) are tolerated as well since some
    counterpart banks publish keys that way.
    """
    if not isinstance(value, str):
        raise ValueError("base64url value must be a string")
    cleaned = value.strip().rstrip("=").replace("+", "-").replace("/", "_")
    if len(cleaned) % 4 == 1:
        raise ValueError("Invalid base64url length")
    padded = cleaned + "=" * (-len(cleaned) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64url data: {e}")


def int_to_b64url(value: int) -> str:
    length = max(1, (value.bit_length() + 7) // 8)
    return b64url_encode(value.to_bytes(length, "big"))


def b64url_to_int(value: str) -> int:
    return int.from_bytes(b64url_decode(value), "big")


def public_key_to_jwk(public_key: rsa.RSAPublicKey, key_id: Optional[str] = None) -> Dict[str, str]:
    """Exchange form of an RSA public key (RFC 7517 / 7518 RSA JWK)"""
    numbers = public_key.public_numbers()
    jwk = {
        "kty": "RSA",
        "use": "sig",
        "alg": ALGORITHM,
        "n": int_to_b64url(numbers.n),
        "e": int_to_b64url(numbers.e),
    }
    if key_id is not None:
        jwk["kid"] = key_id
    return jwk


def jwk_to_public_key(jwk: Mapping[str, Any]) -> rsa.RSAPublicKey:
    """
    Rebuild an RSA public key from its exchange form.

    Raises:
        ValueError: the entry is not a usable RS256 signing key
    """
    if jwk.get("kty", "RSA") != "RSA":
        raise ValueError(f"Unsupported key type: {jwk.get('kty')}")
    if jwk.get("alg", ALGORITHM) != ALGORITHM:
        raise ValueError(f"Unsupported key algorithm: {jwk.get('alg')}")
    if jwk.get("use", "sig") != "sig":
        raise ValueError(f"Key is not a signing key: {jwk.get('use')}")
    if "n" not in jwk or "e" not in jwk:
        raise ValueError("JWK must contain modulus (n) and exponent (e)")

    modulus = b64url_to_int(jwk["n"])
    exponent = b64url_to_int(jwk["e"])
    return rsa.RSAPublicNumbers(exponent, modulus).public_key()


def build_jwks(entries: Iterable[Any]) -> Dict[str, list]:
    """JWKS document for objects exposing key_id and public_key"""
    return {"keys": [public_key_to_jwk(entry.public_key, entry.key_id) for entry in entries]}


class _ClaimsEncoder(json.JSONEncoder):
    """Amounts travel as JSON numbers"""

    def default(self, o):
        if isinstance(o, Decimal):
            number = float(o)
            if Decimal(repr(number)) != o:
                raise InvalidAmount(f"Amount {o} cannot be carried exactly as a JSON number")
            return number
        return super().default(o)


@dataclass(frozen=True)
class PeekedToken:
    """Header and claims of a token read without checking its signature"""
    header: Dict[str, Any]
    claims: Dict[str, Any]

    @property
    def key_id(self) -> Optional[str]:
        return self.header.get("kid")


class TokenCodec:
    """RS256 signer and verifier for transfer tokens"""

    def __init__(self, token_ttl_seconds: int = 0, leeway_seconds: int = 30):
        self.token_ttl_seconds = token_ttl_seconds
        self.leeway_seconds = leeway_seconds

    def sign(self, payload: Mapping[str, Any], key_pair: Any) -> str:
        """
        Sign a payload with the private half of key_pair.

        The key id is written to the header so the verifier can pick the
        matching entry from this bank's JWKS.
        """
        claims = dict(payload)
        if self.token_ttl_seconds > 0:
            now = int(time.time())
            claims.setdefault("iat", now)
            claims.setdefault("exp", now + self.token_ttl_seconds)

        token = jwt.encode(
            claims,
            key_pair.private_key,
            algorithm=ALGORITHM,
            headers={"kid": key_pair.key_id},
            json_encoder=_ClaimsEncoder,
        )
        logger.debug(f"Signed token with key {key_pair.key_id} ({len(token)} chars)")
        return token

    def peek(self, token: str) -> PeekedToken:
        """
        Read header and claims without verifying the signature.

        Only for routing decisions (which bank, which key); nothing read here
        may be acted on before verify() succeeds.
        """
        if not isinstance(token, str):
            raise TokenMalformed("Token must be a string")
        segments = token.split(".")
        if len(segments) != 3 or not all(segments):
            raise TokenMalformed("Token must have three non-empty segments")
        try:
            header = json.loads(b64url_decode(segments[0]))
            claims = json.loads(b64url_decode(segments[1]))
        except ValueError as e:
            raise TokenMalformed(f"Token segments are not valid base64url JSON: {e}")
        if not isinstance(header, dict) or not isinstance(claims, dict):
            raise TokenMalformed("Token header and payload must be JSON objects")
        return PeekedToken(header=header, claims=claims)

    def verify(self, token: str, public_key: rsa.RSAPublicKey) -> Dict[str, Any]:
        """
        Verify an RS256 token and return its claims.

        Raises:
            TokenMalformed: the token cannot be parsed
            InvalidSignature: the signature does not match public_key, or
                the token advertises an algorithm other than RS256
            TokenExpired: the exp claim has elapsed
        """
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise TypeError("verify() requires an RSA public key")

        self.peek(token)
        try:
            return jwt.decode(
                token,
                public_key,
                algorithms=[ALGORITHM],
                leeway=self.leeway_seconds,
            )
        except ExpiredSignatureError:
            raise TokenExpired()
        except InvalidSignatureError:
            raise InvalidSignature()
        except InvalidAlgorithmError as e:
            raise InvalidSignature(f"Token algorithm rejected: {e}")
        except DecodeError as e:
            raise TokenMalformed(f"Token could not be decoded: {e}")
        except InvalidTokenError as e:
            raise TokenMalformed(f"Token claims rejected: {e}")
