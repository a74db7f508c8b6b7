"""Verification of compact JWS tokens signed with Ed25519 (alg ``EdDSA``).

Grant payloads and attestation tokens both arrive in this form. Nothing here
signs: minting and attestation happen in other services.
"""

import logging
from typing import Iterable, Protocol, Union

import jwt
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from pydantic import ValidationError

from .models import Grant

logger = logging.getLogger(__name__)

PublicKeyLike = Union[str, bytes, Ed25519PublicKey]

ALGORITHMS = ["EdDSA"]


class InvalidTokenError(ValueError):
    pass


def load_public_key(key: PublicKeyLike) -> Ed25519PublicKey:
    if isinstance(key, Ed25519PublicKey):
        return key
    raw = bytes.fromhex(key) if isinstance(key, str) else key
    return Ed25519PublicKey.from_public_bytes(raw)


class Ed25519JwsVerifier:
    def __init__(self, public_keys: Iterable[PublicKeyLike]):
        self.public_keys = [load_public_key(k) for k in public_keys]

    def verify(self, token: str) -> dict:
        """Return the claims of a token signed by any trusted key."""
        if not self.public_keys:
            raise InvalidTokenError("No trusted keys configured")
        for key in self.public_keys:
            try:
                return jwt.decode(token, key, algorithms=ALGORITHMS)
            except jwt.InvalidSignatureError:
                continue
            except jwt.PyJWTError as e:
                raise InvalidTokenError(str(e)) from e
        raise InvalidTokenError("Token signature does not match any trusted key")


class AttestationVerifier(Protocol):
    def verify(self, token: str) -> dict:
        """Return the token claims, or raise InvalidTokenError."""
        ...


class GrantVerifier:
    def __init__(self, verifier: Ed25519JwsVerifier):
        self.verifier = verifier

    def verify(self, token: str) -> Grant:
        payload = self.verifier.verify(token)
        try:
            return Grant.model_validate({**payload, "token": token})
        except ValidationError as e:
            logger.debug("Grant payload failed validation: %s", e)
            raise InvalidTokenError(f"Malformed grant payload: {e.error_count()} errors") from e
