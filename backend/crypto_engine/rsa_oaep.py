"""
RSA-OAEP Session Key Unwrap

The relay delivers the per-connection session key encrypted under the
client's RSA public key (OAEP, SHA-256, MGF1-SHA-256). The plaintext is
always ``key(32) || iv(16)``; any other length is a protocol violation.
"""

import logging

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from relay_client.exceptions import HandshakeError
from .aes_cbc import SESSION_KEY_SIZE, SessionKey

logger = logging.getLogger(__name__)


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def decrypt_handshake_payload(
    ciphertext: bytes,
    private_key: rsa.RSAPrivateKey,
) -> SessionKey:
    """
    Unwrap the session key sent by the relay.

    Args:
        ciphertext: RSA-OAEP ciphertext from the handshake message
        private_key: The client's RSA private key

    Returns:
        SessionKey built from the decrypted ``key || iv``

    Raises:
        HandshakeError: If decryption fails or the plaintext has the wrong length
    """
    if not ciphertext:
        raise HandshakeError("Handshake payload is empty")

    try:
        material = private_key.decrypt(ciphertext, _oaep())
    except ValueError:
        raise HandshakeError("Handshake payload could not be decrypted with the private key") from None

    if len(material) != SESSION_KEY_SIZE:
        logger.warning(
            "Handshake payload has unexpected length %d (expected %d)",
            len(material), SESSION_KEY_SIZE,
        )
        raise HandshakeError(
            f"Handshake payload must be {SESSION_KEY_SIZE} bytes, got {len(material)}"
        )

    return SessionKey.from_bytes(material)


def wrap_session_key(material: bytes, public_key: rsa.RSAPublicKey) -> bytes:
    """
    Encrypt session key material under an RSA public key.

    This is what the relay does on its side of the handshake.
    """
    return public_key.encrypt(material, _oaep())
