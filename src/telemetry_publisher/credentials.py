"""
Short-lived device credentials.

The bridge ignores the MQTT username and authenticates the device from a JWT
passed as the password. The token audience is the project id and the broker
disconnects the device once the token expires, so a fresh credential must be
issued before reconnecting.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import jwt
from cryptography.exceptions import UnsupportedAlgorithm

from telemetry_publisher.config import SUPPORTED_ALGORITHMS, ConfigError

logger = logging.getLogger(__name__)


class SigningError(RuntimeError):
    """Raised when key material cannot be read or used to sign a token."""


@dataclass(frozen=True, slots=True)
class Credential:
    subject: str
    issued_at: int
    expires_at: int
    token: str

    def __post_init__(self) -> None:
        if self.expires_at <= self.issued_at:
            raise ValueError("credential expiry must be after issued-at")

    def age_s(self, now: float) -> float:
        return now - self.issued_at


class CredentialIssuer:
    """
    Signs credentials with a private key file.

    The key is read on every issue() so a key replaced on disk is picked up
    at the next rotation.
    """

    def __init__(
        self,
        private_key_file: Path | str,
        algorithm: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigError(
                f"Unsupported signing algorithm {algorithm!r}; allowed: {', '.join(SUPPORTED_ALGORITHMS)}"
            )
        self.private_key_file = Path(private_key_file)
        self.algorithm = algorithm
        self._clock = clock

    def _read_key(self) -> bytes:
        try:
            return self.private_key_file.read_bytes()
        except OSError as exc:
            raise SigningError(
                f"Cannot read private key file {self.private_key_file}: {exc}"
            ) from exc

    def issue(self, identity: str, validity_s: int) -> Credential:
        if not identity:
            raise ConfigError("credential identity must be a non-empty string")
        if validity_s <= 0:
            raise ConfigError(f"credential validity must be positive: {validity_s}")

        key = self._read_key()
        issued_at = int(self._clock())
        expires_at = issued_at + int(validity_s)
        claims = {"iat": issued_at, "exp": expires_at, "aud": identity}

        try:
            token = jwt.encode(claims, key, algorithm=self.algorithm)
        except (ValueError, TypeError, AttributeError, UnsupportedAlgorithm, jwt.PyJWTError) as exc:
            raise SigningError(
                f"Cannot sign {self.algorithm} token with {self.private_key_file}: {exc}"
            ) from exc

        logger.info(
            "Issued %s credential for %s (valid %ds, expires at %d)",
            self.algorithm,
            identity,
            validity_s,
            expires_at,
        )
        return Credential(
            subject=identity,
            issued_at=issued_at,
            expires_at=expires_at,
            token=token,
        )
