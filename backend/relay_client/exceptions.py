"""
Relay Client Exceptions

Failure taxonomy for key loading, the session-key handshake,
frame decryption, transport and message content.
"""


class RelayError(Exception):
    """Base exception for relay client failures."""
    pass


class KeyMaterialError(RelayError):
    """Private key material could not be used. Fatal at startup."""
    pass


class MalformedKeyError(KeyMaterialError):
    """Secret material does not parse as an RSA private key."""
    pass


class UnsupportedKeySizeError(KeyMaterialError):
    """RSA modulus bit length is outside the accepted range."""
    pass


class HandshakeError(RelayError):
    """Session key bootstrap failed. Not retried with the same key."""
    pass


class DecryptionError(RelayError):
    """A single frame failed to decrypt. The frame is dropped."""
    pass


class BadPaddingError(DecryptionError):
    """Decrypted block has invalid PKCS#7 padding."""
    pass


class InvalidLengthError(DecryptionError):
    """Ciphertext or IV length is not valid for the block cipher."""
    pass


class TransportError(RelayError):
    """Base exception for retryable transport failures."""
    pass


class TransportFailure(TransportError):
    """Connection to the relay could not be established."""
    pass


class ConnectionLost(TransportError):
    """An established relay connection dropped."""
    pass


class ProtocolError(RelayError):
    """Decrypted content is structurally invalid. The frame is dropped."""
    pass


class AccountPollError(RelayError):
    """Account summary could not be fetched or parsed."""
    pass
