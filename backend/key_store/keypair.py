"""
Client Key Pair

Loads the client's RSA private key from the secret supplied by the
application configuration and derives the machine and account
identifiers from it.

The private key is held in memory only. It never appears in logs,
reprs or exception messages; only the derived identifiers do.
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from crypto_engine.identity import b64_decode_any, derive_identifier, sign_pkcs1v15, spki_der
from relay_client.exceptions import MalformedKeyError, UnsupportedKeySizeError

logger = logging.getLogger(__name__)

MIN_KEY_BITS = 2048
MAX_KEY_BITS = 4096

SecretMaterial = Union[str, bytes]


@dataclass(frozen=True)
class KeyPair:
    """RSA key pair plus the identifiers derived from it."""
    private_key: rsa.RSAPrivateKey = field(repr=False)
    machine_id: str
    account_id: str

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    @property
    def key_size(self) -> int:
        return self.private_key.key_size

    def public_key_b64(self) -> str:
        """Standard base64 of the SubjectPublicKeyInfo DER."""
        return base64.b64encode(spki_der(self.public_key)).decode("ascii")

    def sign(self, data: bytes) -> bytes:
        return sign_pkcs1v15(self.private_key, data)


def _as_bytes(material: SecretMaterial) -> bytes:
    if isinstance(material, str):
        return material.strip().encode("utf-8")
    return bytes(material).strip()


def _parse_private_key(material: SecretMaterial):
    raw = _as_bytes(material)
    if not raw:
        raise MalformedKeyError("Private key material is empty")

    try:
        if b"-----BEGIN" in raw:
            return serialization.load_pem_private_key(raw, password=None)
        der = b64_decode_any(raw.decode("ascii"))
        return serialization.load_der_private_key(der, password=None)
    except (ValueError, TypeError, UnicodeDecodeError, binascii.Error, UnsupportedAlgorithm):
        # The underlying message may quote parts of the input.
        raise MalformedKeyError("Secret material is not a valid private key") from None


def _parse_public_key(material: SecretMaterial):
    raw = _as_bytes(material)
    if not raw:
        raise MalformedKeyError("Account key material is empty")

    try:
        if b"PRIVATE KEY-----" in raw:
            return _parse_private_key(raw).public_key()
        if b"-----BEGIN" in raw:
            return serialization.load_pem_public_key(raw)
        der = b64_decode_any(raw.decode("ascii"))
    except (ValueError, TypeError, UnicodeDecodeError, binascii.Error, UnsupportedAlgorithm):
        raise MalformedKeyError("Account key material is not a valid key") from None

    try:
        return serialization.load_der_public_key(der)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        pass

    try:
        return serialization.load_der_private_key(der, password=None).public_key()
    except (ValueError, TypeError, UnsupportedAlgorithm):
        raise MalformedKeyError("Account key material is not a valid key") from None


def _check_size(key_size: int, min_bits: int, max_bits: int) -> None:
    if not min_bits <= key_size <= max_bits:
        raise UnsupportedKeySizeError(
            f"RSA modulus is {key_size} bits, accepted range is {min_bits}-{max_bits}"
        )


def load_keypair(
    secret_material: SecretMaterial,
    account_key_material: Optional[SecretMaterial] = None,
    *,
    min_bits: int = MIN_KEY_BITS,
    max_bits: int = MAX_KEY_BITS,
) -> KeyPair:
    """
    Load and validate the client key pair.

    Args:
        secret_material: PEM private key, or base64 PKCS#8/PKCS#1 DER
        account_key_material: Optional account-level key (public or private).
            When omitted the account identifier comes from the machine key.
        min_bits: Smallest accepted modulus size
        max_bits: Largest accepted modulus size

    Returns:
        KeyPair with both identifiers derived

    Raises:
        MalformedKeyError: If the material does not parse as an RSA key
        UnsupportedKeySizeError: If the modulus size is out of range
    """
    private_key = _parse_private_key(secret_material)
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise MalformedKeyError("Private key is not an RSA key")
    _check_size(private_key.key_size, min_bits, max_bits)

    machine_id = derive_identifier(private_key.public_key())

    if account_key_material is not None:
        account_key = _parse_public_key(account_key_material)
        if not isinstance(account_key, rsa.RSAPublicKey):
            raise MalformedKeyError("Account key is not an RSA key")
        _check_size(account_key.key_size, min_bits, max_bits)
        account_id = derive_identifier(account_key)
    else:
        account_id = machine_id

    logger.info(
        "Loaded %d-bit RSA key, machine id %s, account id %s",
        private_key.key_size, machine_id, account_id,
    )

    return KeyPair(private_key=private_key, machine_id=machine_id, account_id=account_id)
