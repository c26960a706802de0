"""
Identity Derivation

Machine and account identifiers are the SHA-256 digest of the RSA public
modulus, encoded as URL-safe base64 without padding. This matches what
the relay computes on its side.

The digest is taken over the modulus bytes only (big-endian, no sign
byte). Hashing the DER SubjectPublicKeyInfo instead gives a different
value the relay will never recognise.
"""

import base64
import hashlib

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    """Decode URL-safe base64, padding optional."""
    text = text.strip()
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def b64_decode_any(text: str) -> bytes:
    """
    Decode base64 in either alphabet, with or without padding.

    The relay uses standard base64 for public keys and URL-safe base64
    for ciphertexts, and is not always consistent about it.
    """
    text = "".join(text.split())
    text = text.replace("-", "+").replace("_", "/")
    return base64.b64decode(text + "=" * (-len(text) % 4), validate=True)


def modulus_bytes(public_key: rsa.RSAPublicKey) -> bytes:
    """Big-endian modulus with no leading zero byte."""
    n = public_key.public_numbers().n
    return n.to_bytes((n.bit_length() + 7) // 8, "big")


def derive_identifier(public_key: rsa.RSAPublicKey) -> str:
    """
    Derive the relay identifier for a public key.

    Args:
        public_key: RSA public key (machine or account key)

    Returns:
        43-character URL-safe base64 SHA-256 digest of the modulus
    """
    return b64url_encode(hashlib.sha256(modulus_bytes(public_key)).digest())


def spki_der(public_key: rsa.RSAPublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def sign_pkcs1v15(private_key: rsa.RSAPrivateKey, data: bytes) -> bytes:
    """RSASSA-PKCS1-v1_5 signature with SHA-256."""
    return private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
