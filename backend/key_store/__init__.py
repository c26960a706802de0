"""
Key Store Package

Owns the client's RSA key pair for the lifetime of the process.
Loaded once at startup; read-only afterwards.
"""

from typing import Optional

from .keypair import KeyPair, load_keypair, MIN_KEY_BITS, MAX_KEY_BITS
from crypto_engine.identity import derive_identifier
from relay_client.exceptions import MalformedKeyError

_keypair: Optional[KeyPair] = None


def initialize_keypair(settings) -> KeyPair:
    """
    Load the key pair from application settings.

    Raises:
        KeyMaterialError: If the secret is missing, malformed or the wrong size
    """
    global _keypair

    if settings.fah_secret is None:
        raise MalformedKeyError("No private key configured (fah_secret)")

    account_key = settings.account_public_key
    _keypair = load_keypair(
        settings.fah_secret.get_secret_value(),
        account_key.get_secret_value() if account_key is not None else None,
        min_bits=settings.min_key_bits,
        max_bits=settings.max_key_bits,
    )
    return _keypair


def get_keypair() -> Optional[KeyPair]:
    """Get the loaded key pair, or None if loading has not succeeded."""
    return _keypair


__all__ = [
    "KeyPair",
    "load_keypair",
    "derive_identifier",
    "initialize_keypair",
    "get_keypair",
    "MIN_KEY_BITS",
    "MAX_KEY_BITS",
]
