"""Signed client assertions for the Sign-In provider's OAuth endpoints.

The provider does not issue static client secrets. Each request carries an
ES256-signed JWT built from the team id, client id and the id of the private
key registered with the provider.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from scripts.sso_transfer.config import TransferApiConfig

logger = logging.getLogger("sso_transfer.client_secret")

ALGORITHM = "ES256"


class SigningKeyError(Exception):
    """Raised when the configured private key cannot be used for ES256 signing."""


class ClientSecretSigner:
    """Mints client assertions; the parsed key is cached, tokens are not."""

    def __init__(
        self,
        config: TransferApiConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.team_id = config.team_id
        self.client_id = config.client_id
        self.key_id = config.key_id
        self.audience = config.audience
        self.ttl_seconds = config.assertion_ttl_seconds
        self._private_key_pem = config.private_key_pem
        self._clock = clock
        self._key: Optional[ec.EllipticCurvePrivateKey] = None

    def load_key(self) -> ec.EllipticCurvePrivateKey:
        """Parse the PKCS#8 PEM key once per signer."""
        if self._key is not None:
            return self._key

        try:
            key = serialization.load_pem_private_key(
                self._private_key_pem.encode("utf-8"), password=None
            )
        except (ValueError, TypeError) as exc:
            raise SigningKeyError(
                f"Private key {self.key_id} is not a readable PEM key: {exc}"
            ) from exc

        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(
            key.curve, ec.SECP256R1
        ):
            raise SigningKeyError(
                f"Private key {self.key_id} must be a P-256 EC key for {ALGORITHM}"
            )

        self._key = key
        return key

    def issue(self) -> str:
        """Return a freshly signed assertion, valid for ``ttl_seconds``."""
        now = int(self._clock())
        claims = {
            "iss": self.team_id,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "aud": self.audience,
            "sub": self.client_id,
        }
        return jwt.encode(
            claims,
            self.load_key(),
            algorithm=ALGORITHM,
            headers={"kid": self.key_id},
        )
