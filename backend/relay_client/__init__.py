"""
Relay Client Package

Authenticated, encrypted connection to the telemetry relay.

Only the leaf modules are re-exported here; import the client and
worker from ``relay_client.client`` and ``relay_client.worker``.
"""

from .exceptions import (
    RelayError,
    KeyMaterialError,
    MalformedKeyError,
    UnsupportedKeySizeError,
    HandshakeError,
    DecryptionError,
    BadPaddingError,
    InvalidLengthError,
    TransportError,
    TransportFailure,
    ConnectionLost,
    ProtocolError,
    AccountPollError,
)
from .models import ConnectionState, ConnectionStatus, FailureReason

__all__ = [
    "RelayError",
    "KeyMaterialError",
    "MalformedKeyError",
    "UnsupportedKeySizeError",
    "HandshakeError",
    "DecryptionError",
    "BadPaddingError",
    "InvalidLengthError",
    "TransportError",
    "TransportFailure",
    "ConnectionLost",
    "ProtocolError",
    "AccountPollError",
    "ConnectionState",
    "ConnectionStatus",
    "FailureReason",
]
