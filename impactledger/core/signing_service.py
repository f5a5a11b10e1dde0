"""
Signing Service - System Key Management

Holds the ledger's system keypair, used to sign every audit event.

Configuration:
- IMPACTLEDGER_SYSTEM_PRIVATE_KEY: base64-encoded Ed25519 private key
- IMPACTLEDGER_SYSTEM_PUBLIC_KEY: base64-encoded Ed25519 public key

Generate a pair with:  python -m tools.manage generate-keys

DEVELOPMENT MODE:
- If keys are not set, an ephemeral keypair is generated (warning issued)
- Keys differ on each restart; signatures from an earlier run cannot be
  checked against the new key
- In production (IMPACTLEDGER_PRODUCTION=1) missing keys are an error
"""

import os
import warnings
from dataclasses import dataclass
from threading import Lock
from typing import Optional

from ..config import is_production
from ..observability import get_logger
from .signer import Signer

logger = get_logger(__name__)


@dataclass(frozen=True)
class KeyPair:
    """An Ed25519 keypair."""
    private_key: str  # Base64-encoded
    public_key: str   # Base64-encoded


class SigningService:
    """
    Signs audit event hashes with the system key.

    Private keys are never logged or exposed through properties.
    """

    def __init__(self, keypair: KeyPair, is_ephemeral: bool = False):
        if not self._validate_keypair(keypair):
            raise RuntimeError(
                "System keypair validation failed. "
                "Private and public keys do not match."
            )
        self._keypair = keypair
        self._is_ephemeral = is_ephemeral

    @classmethod
    def from_env(cls) -> "SigningService":
        """Load the system key from the environment, or generate one in development."""
        private_key = os.environ.get("IMPACTLEDGER_SYSTEM_PRIVATE_KEY", "")
        public_key = os.environ.get("IMPACTLEDGER_SYSTEM_PUBLIC_KEY", "")

        if private_key and public_key:
            service = cls(KeyPair(private_key=private_key, public_key=public_key))
            logger.info("System signing key loaded from environment")
            return service

        if is_production():
            raise RuntimeError(
                "IMPACTLEDGER_SYSTEM_PRIVATE_KEY and IMPACTLEDGER_SYSTEM_PUBLIC_KEY "
                "must be set in production. Generate with: "
                "python -m tools.manage generate-keys"
            )

        return cls.ephemeral()

    @classmethod
    def ephemeral(cls) -> "SigningService":
        """Create a service with a throwaway keypair (development and tests)."""
        warnings.warn(
            "System signing key not configured. Generating ephemeral key for development. "
            "This key changes on each restart - NOT suitable for production!",
            stacklevel=2,
        )
        private_key, public_key = Signer.generate_keypair()
        logger.warning("Generated ephemeral system signing key")
        return cls(KeyPair(private_key=private_key, public_key=public_key), is_ephemeral=True)

    @staticmethod
    def _validate_keypair(keypair: KeyPair) -> bool:
        try:
            return Signer.public_key_for(keypair.private_key) == keypair.public_key
        except Exception:
            return False

    @property
    def public_key(self) -> str:
        """The system public key (safe to expose)."""
        return self._keypair.public_key

    @property
    def is_ephemeral(self) -> bool:
        return self._is_ephemeral

    def sign_event(self, event_hash: str) -> str:
        """Sign an audit event hash with the system key."""
        return Signer.sign_event(event_hash, self._keypair.private_key)

    def verify_event(self, event_hash: str, signature: str) -> bool:
        """Verify an audit event signature against the system key."""
        return Signer.verify_event(event_hash, signature, self._keypair.public_key)


_service: Optional[SigningService] = None
_service_lock = Lock()


def get_signing_service() -> SigningService:
    """Get the process-wide SigningService, loading it from env on first use."""
    global _service
    with _service_lock:
        if _service is None:
            _service = SigningService.from_env()
        return _service


def reset_signing_service() -> None:
    """Drop the cached service (for testing only)."""
    global _service
    with _service_lock:
        _service = None
