"""
AES-256-CBC Frame Codec

Symmetric channel used by the relay once the session key is bootstrapped.

Every telemetry frame is AES-256 in cipher block chaining mode with
PKCS#7 padding. The IV comes from the session key unless the frame
carries its own.

The codec is stateless: the session key is passed in on each call,
so it is safe to use concurrently with different keys.
"""

import os
from dataclasses import dataclass, field

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from relay_client.exceptions import BadPaddingError, InvalidLengthError


KEY_SIZE = 32
IV_SIZE = 16
BLOCK_SIZE = 16
SESSION_KEY_SIZE = KEY_SIZE + IV_SIZE


@dataclass(eq=False)
class SessionKey:
    """
    Symmetric key plus IV for one connection attempt.

    Key bytes live in a bytearray so they can be zeroized when the
    connection closes.
    """
    key: bytearray
    iv: bytes
    destroyed: bool = field(default=False, init=False)

    def __post_init__(self):
        self.key = bytearray(self.key)
        self.iv = bytes(self.iv)
        if len(self.key) != KEY_SIZE:
            raise ValueError(f"Key must be {KEY_SIZE} bytes, got {len(self.key)}")
        if len(self.iv) != IV_SIZE:
            raise ValueError(f"IV must be {IV_SIZE} bytes, got {len(self.iv)}")

    @classmethod
    def from_bytes(cls, material: bytes) -> "SessionKey":
        """Split a ``key || iv`` blob into a session key."""
        if len(material) != SESSION_KEY_SIZE:
            raise ValueError(
                f"Session key material must be {SESSION_KEY_SIZE} bytes, got {len(material)}"
            )
        return cls(key=bytearray(material[:KEY_SIZE]), iv=material[KEY_SIZE:])

    def to_bytes(self) -> bytes:
        return bytes(self.key) + self.iv

    def with_iv(self, iv: bytes) -> "SessionKey":
        """Same key, different IV (frames may carry their own)."""
        if len(iv) != IV_SIZE:
            raise InvalidLengthError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
        return SessionKey(key=bytearray(self.key), iv=iv)

    def destroy(self) -> None:
        """Overwrite key bytes with zeros."""
        for i in range(len(self.key)):
            self.key[i] = 0
        self.destroyed = True

    def __repr__(self) -> str:
        return f"SessionKey(destroyed={self.destroyed})"


def encrypt(plaintext: bytes, session_key: SessionKey) -> bytes:
    """
    Encrypt data using AES-256-CBC with PKCS#7 padding.

    Args:
        plaintext: Data to encrypt
        session_key: Key and IV to encrypt under

    Returns:
        Ciphertext, a multiple of the block size
    """
    if session_key.destroyed:
        raise ValueError("Session key has been destroyed")

    padder = padding.PKCS7(BLOCK_SIZE * 8).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(
        algorithms.AES(bytes(session_key.key)),
        modes.CBC(session_key.iv),
    ).encryptor()

    return encryptor.update(padded) + encryptor.finalize()


def decrypt(ciphertext: bytes, session_key: SessionKey) -> bytes:
    """
    Decrypt data using AES-256-CBC and strip PKCS#7 padding.

    Args:
        ciphertext: Encrypted frame payload
        session_key: Key and IV the frame was encrypted under

    Returns:
        Decrypted plaintext

    Raises:
        InvalidLengthError: If ciphertext is empty or not block aligned
        BadPaddingError: If padding is invalid (wrong key, corrupted data)
    """
    if session_key.destroyed:
        raise ValueError("Session key has been destroyed")

    if not ciphertext or len(ciphertext) % BLOCK_SIZE != 0:
        raise InvalidLengthError(
            f"Ciphertext length {len(ciphertext)} is not a positive multiple of {BLOCK_SIZE}"
        )

    decryptor = Cipher(
        algorithms.AES(bytes(session_key.key)),
        modes.CBC(session_key.iv),
    ).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(BLOCK_SIZE * 8).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        raise BadPaddingError("Invalid PKCS#7 padding") from None


def generate_session_key() -> SessionKey:
    """Generate a random session key and IV."""
    return SessionKey.from_bytes(os.urandom(SESSION_KEY_SIZE))
