"""
Crypto Engine Package

Frame codec (AES-256-CBC), session key unwrap (RSA-OAEP) and
identifier derivation for the relay connection.
"""

from .aes_cbc import (
    SessionKey,
    encrypt,
    decrypt,
    generate_session_key,
    KEY_SIZE,
    IV_SIZE,
    BLOCK_SIZE,
    SESSION_KEY_SIZE,
)
from .rsa_oaep import decrypt_handshake_payload, wrap_session_key
from .identity import (
    derive_identifier,
    b64url_encode,
    b64url_decode,
    b64_decode_any,
    sign_pkcs1v15,
    spki_der,
)

__all__ = [
    "SessionKey",
    "encrypt",
    "decrypt",
    "generate_session_key",
    "decrypt_handshake_payload",
    "wrap_session_key",
    "derive_identifier",
    "b64url_encode",
    "b64url_decode",
    "b64_decode_any",
    "sign_pkcs1v15",
    "spki_der",
    "KEY_SIZE",
    "IV_SIZE",
    "BLOCK_SIZE",
    "SESSION_KEY_SIZE",
]
