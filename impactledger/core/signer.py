"""
Ed25519 Signing

Audit events are signed by the ledger's system key so that indexers
replaying the notification stream can check it came from this ledger
and was not edited in transit.

Keys and signatures travel as standard base64 text.
"""

import binascii
from typing import Tuple

from nacl.encoding import Base64Encoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey


def _signing_key(private_key_b64: str) -> SigningKey:
    return SigningKey(private_key_b64.encode("ascii"), encoder=Base64Encoder)


def _encode(key) -> str:
    return key.encode(encoder=Base64Encoder).decode("ascii")


class Signer:
    """Static helpers over PyNaCl signing keys."""

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        return _encode(signing_key), _encode(signing_key.verify_key)

    @staticmethod
    def public_key_for(private_key_b64: str) -> str:
        """Base64 public key matching a base64 private key."""
        return _encode(_signing_key(private_key_b64).verify_key)

    @staticmethod
    def sign(message: str, private_key_b64: str) -> str:
        signed = _signing_key(private_key_b64).sign(message.encode("utf-8"), encoder=Base64Encoder)
        return signed.signature.decode("ascii")

    @staticmethod
    def verify(message: str, signature_b64: str, public_key_b64: str) -> bool:
        """False on a bad signature and on undecodable keys or signatures."""
        try:
            verify_key = VerifyKey(public_key_b64.encode("ascii"), encoder=Base64Encoder)
            verify_key.verify(
                message.encode("utf-8"),
                Base64Encoder.decode(signature_b64.encode("ascii")),
            )
        except (BadSignatureError, CryptoError, binascii.Error, ValueError, TypeError):
            return False
        return True

    # The event hash already covers payload and chain position, so
    # signing the hash signs the event.

    @staticmethod
    def sign_event(event_hash: str, private_key_b64: str) -> str:
        return Signer.sign(event_hash, private_key_b64)

    @staticmethod
    def verify_event(event_hash: str, signature_b64: str, public_key_b64: str) -> bool:
        return Signer.verify(event_hash, signature_b64, public_key_b64)
