"""
Relay Client Data Models
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ConnectionState(Enum):
    """Connection lifecycle states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_SESSION_KEY = "awaiting_session_key"
    STREAMING = "streaming"
    CLOSING = "closing"
    ERROR = "error"


class FailureReason(Enum):
    TRANSPORT_FAILURE = "transport_failure"
    HANDSHAKE_FAILURE = "handshake_failure"
    CONNECTION_LOST = "connection_lost"
    KEY_ERROR = "key_error"
    INTERNAL_ERROR = "internal_error"

    @property
    def retryable(self) -> bool:
        return self in (
            FailureReason.TRANSPORT_FAILURE,
            FailureReason.CONNECTION_LOST,
            FailureReason.INTERNAL_ERROR,
        )


@dataclass(frozen=True)
class ConnectionStatus:
    """Externally visible connection status, published with every snapshot."""
    state: ConnectionState = ConnectionState.DISCONNECTED
    reason: Optional[FailureReason] = None
    message: Optional[str] = None
    attempts: int = 0
    persistent_failure: bool = False
    changed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "attempts": self.attempts,
            "persistent_failure": self.persistent_failure,
            "changed_at": self.changed_at.isoformat(),
        }
