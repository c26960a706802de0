"""
Relay Protocol Client

Connection state machine for the relay:

    DISCONNECTED -> CONNECTING -> AWAITING_SESSION_KEY -> STREAMING
                         |                 |                  |
                         +------------> ERROR <---------------+
                                            |
                       backoff, then CONNECTING, or DISCONNECTED

CONNECTING opens the transport and sends the signed login message.
AWAITING_SESSION_KEY waits for the relay's ``connect`` message and
unwraps the session key with the private key. STREAMING decrypts every
``message`` frame and feeds it to the StateAggregator, together with
plaintext ``broadcast`` state. A ``connect`` received while streaming
adds the session key of another machine; frames are decrypted with the
key of their ``client``, falling back to the handshake key.

Transport failures and lost connections are retried with backoff.
Handshake failures are not: they mean the relay does not accept this
key, and retrying will not change that.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from aggregator.models import TelemetryMessage
from aggregator.snapshot_store import SnapshotStore
from aggregator.state import StateAggregator
from crypto_engine.aes_cbc import SessionKey, decrypt
from crypto_engine.identity import derive_identifier
from crypto_engine.rsa_oaep import decrypt_handshake_payload
from key_store.keypair import KeyPair
from .backoff import ReconnectPolicy
from .exceptions import (
    ConnectionLost,
    DecryptionError,
    HandshakeError,
    KeyMaterialError,
    ProtocolError,
    TransportError,
)
from .messages import (
    MSG_BROADCAST,
    MSG_CONNECT,
    MSG_FRAME,
    EncryptedFrame,
    HandshakeMessage,
    build_login_message,
    new_session_id,
    parse_broadcast_state,
    parse_envelope,
    parse_frame,
    parse_handshake,
    parse_telemetry,
)
from .models import ConnectionState, ConnectionStatus, FailureReason
from .transport import Transport, TransportFactory

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TIMEOUT = 30.0
DEFAULT_SWEEP_INTERVAL = 5.0

StatusCallback = Callable[[ConnectionStatus], None]


class _StopRequested(Exception):
    """Shutdown was signalled while waiting."""


@dataclass
class _Session:
    """Session keys held for one connection attempt."""
    default_key: Optional[SessionKey] = None
    peer_id: Optional[str] = None
    peer_keys: Dict[str, SessionKey] = field(default_factory=dict)

    def key_for(self, machine_id: Optional[str]) -> SessionKey:
        key = self.peer_keys.get(machine_id) if machine_id else None
        if key is None:
            key = self.default_key
        if key is None:
            raise DecryptionError("No session key for frame")
        return key

    def set_peer_key(self, machine_id: str, key: SessionKey) -> None:
        previous = self.peer_keys.get(machine_id)
        self.peer_keys[machine_id] = key
        if machine_id == self.peer_id:
            self.default_key = key
        if previous is not None and previous is not key:
            previous.destroy()

    def destroy(self) -> None:
        keys = list(self.peer_keys.values())
        if self.default_key is not None:
            keys.append(self.default_key)
        for key in keys:
            if not key.destroyed:
                key.destroy()
        self.peer_keys.clear()
        self.default_key = None


def report_key_error(store: SnapshotStore, error: KeyMaterialError) -> ConnectionStatus:
    """
    Publish a persistent KEY_ERROR status.

    Used at startup when the key pair cannot be loaded, so no relay
    connection is ever attempted.
    """
    status = ConnectionStatus(
        state=ConnectionState.ERROR,
        reason=FailureReason.KEY_ERROR,
        message=str(error),
        persistent_failure=True,
    )
    logger.error("Relay client disabled: %s", error)
    store.publish_status(status)
    return status


class RelayClient:
    """
    Long-lived relay connection feeding a StateAggregator.

    One attempt is in flight at a time. ``run()`` returns when stopped
    or when the retry budget is spent.
    """

    def __init__(
        self,
        keypair: KeyPair,
        aggregator: StateAggregator,
        transport_factory: TransportFactory,
        *,
        policy: Optional[ReconnectPolicy] = None,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        on_status: Optional[StatusCallback] = None,
        on_persistent_failure: Optional[StatusCallback] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if handshake_timeout <= 0:
            raise ValueError("handshake_timeout must be positive")
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be positive")

        self._keypair = keypair
        self._aggregator = aggregator
        self._store = aggregator.store
        self._transport_factory = transport_factory
        self._policy = policy or ReconnectPolicy()
        self._handshake_timeout = handshake_timeout
        self._sweep_interval = sweep_interval
        self._on_status = on_status
        self._on_persistent_failure = on_persistent_failure
        self._rng = rng or random.Random()
        self._clock = clock

        self._status = ConnectionStatus()
        self._failures = 0
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None

        self.frames_applied = 0
        self.frames_dropped = 0

    @property
    def state(self) -> ConnectionState:
        return self._status.state

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def stop(self) -> None:
        """
        Request shutdown. Must be called on the client's event loop
        (RelayWorker.stop() takes care of that).
        """
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> ConnectionStatus:
        """
        Connect, stream and reconnect until stopped or out of retries.

        Returns:
            The final ConnectionStatus
        """
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        self._failures = 0
        window_start = self._clock()

        while not self._stop_requested:
            attempt_started = self._clock()
            failure = await self._attempt()

            if failure is None:
                break

            reason, message = failure
            if self._failures == 0:
                # The attempt reached STREAMING before failing.
                window_start = attempt_started
            self._failures += 1

            if not reason.retryable:
                self._persistent_failure(reason, message)
                return self._status

            elapsed = self._clock() - window_start
            if not self._policy.should_retry(self._failures, elapsed):
                logger.error(
                    "Giving up on relay after %d consecutive failures (%.0fs)",
                    self._failures, elapsed,
                )
                self._persistent_failure(reason, message)
                return self._status

            delay = self._policy.delay(self._failures, self._rng)
            logger.warning(
                "Relay attempt %d failed (%s), reconnecting in %.1fs",
                self._failures, reason.value, delay,
            )
            if await self._wait_or_stop(delay):
                break

        if self.state != ConnectionState.CLOSING:
            self._transition(ConnectionState.CLOSING)
        self._transition(ConnectionState.DISCONNECTED)
        return self._status

    async def _attempt(self) -> Optional[Tuple[FailureReason, str]]:
        """
        One connection attempt, from CONNECTING until it ends.

        Returns:
            ``(reason, message)`` on failure, None when stopped
        """
        transport = self._transport_factory()
        session = _Session()
        self._transition(ConnectionState.CONNECTING)

        try:
            await self._until_stopped(transport.connect())
            await self._until_stopped(
                transport.send(build_login_message(self._keypair, new_session_id()))
            )
            self._transition(ConnectionState.AWAITING_SESSION_KEY)

            handshake = await self._await_handshake(transport)
            session.default_key = decrypt_handshake_payload(handshake.wrapped_key, self._keypair.private_key)
            session.peer_id = self._peer_identifier(handshake)
            if session.peer_id is not None:
                session.peer_keys[session.peer_id] = session.default_key

            self._failures = 0
            self._transition(ConnectionState.STREAMING)
            logger.info("Relay session established, streaming telemetry")

            await self._stream(transport, session)
            return self._fail(FailureReason.CONNECTION_LOST, "Relay stream ended")

        except _StopRequested:
            self._transition(ConnectionState.CLOSING)
            return None
        except HandshakeError as e:
            return self._fail(FailureReason.HANDSHAKE_FAILURE, str(e))
        except TransportError as e:
            if self.state == ConnectionState.CONNECTING:
                return self._fail(FailureReason.TRANSPORT_FAILURE, str(e))
            return self._fail(FailureReason.CONNECTION_LOST, str(e))
        except Exception as e:
            logger.exception("Unexpected error in relay connection")
            return self._fail(FailureReason.INTERNAL_ERROR, f"{type(e).__name__}: {e}")
        finally:
            session.destroy()
            await transport.close()

    async def _await_handshake(self, transport: Transport) -> HandshakeMessage:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._handshake_timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ConnectionLost(f"No session key within {self._handshake_timeout:.0f}s")
            try:
                raw = await self._until_stopped(transport.recv(), timeout=remaining)
            except asyncio.TimeoutError:
                raise ConnectionLost(
                    f"No session key within {self._handshake_timeout:.0f}s"
                ) from None

            try:
                envelope = parse_envelope(raw)
            except ProtocolError as e:
                logger.debug("Ignoring unreadable message during handshake: %s", e)
                continue

            if envelope["type"] == MSG_CONNECT:
                return parse_handshake(envelope)

            logger.debug("Ignoring %r message while awaiting session key", envelope["type"])

    async def _stream(self, transport: Transport, session: _Session) -> None:
        loop = asyncio.get_running_loop()
        next_sweep = loop.time() + self._sweep_interval

        while True:
            timeout = max(0.0, next_sweep - loop.time())
            try:
                raw = await self._until_stopped(transport.recv(), timeout=timeout)
            except asyncio.TimeoutError:
                raw = None

            if raw is not None:
                self._handle_message(raw, session)

            if loop.time() >= next_sweep:
                self._aggregator.refresh()
                next_sweep = loop.time() + self._sweep_interval

    def _handle_message(self, raw, session: _Session) -> None:
        try:
            envelope = parse_envelope(raw)
            kind = envelope["type"]

            if kind == MSG_FRAME:
                messages = (self._decrypt_frame(parse_frame(envelope), session),)
            elif kind == MSG_BROADCAST:
                messages = parse_broadcast_state(envelope)
            elif kind == MSG_CONNECT:
                self._add_peer_key(envelope, session)
                return
            else:
                logger.debug("Ignoring %r message", kind)
                return
        except (DecryptionError, HandshakeError, ProtocolError) as e:
            self.frames_dropped += 1
            logger.warning("Dropping relay message: %s", e)
            return

        for message in messages:
            self._aggregator.apply_message(message)
            self.frames_applied += 1

    def _decrypt_frame(self, frame: EncryptedFrame, session: _Session) -> TelemetryMessage:
        session_key = session.key_for(frame.client)
        try:
            key = session_key.with_iv(frame.iv) if frame.iv else session_key
        except ValueError as e:
            raise DecryptionError(str(e)) from None
        try:
            plaintext = decrypt(frame.payload, key)
        finally:
            if key is not session_key:
                key.destroy()

        machine_id = frame.client or session.peer_id or self._keypair.machine_id
        return parse_telemetry(plaintext, machine_id)

    def _add_peer_key(self, envelope, session: _Session) -> None:
        """Unwrap the session key of another machine joining mid-stream."""
        handshake = parse_handshake(envelope)
        peer_id = self._peer_identifier(handshake)
        if peer_id is None:
            raise HandshakeError("Connect message carries no usable peer public key")

        key = decrypt_handshake_payload(handshake.wrapped_key, self._keypair.private_key)
        session.set_peer_key(peer_id, key)
        logger.info("Session key received for machine %s", peer_id)

    def _peer_identifier(self, handshake: HandshakeMessage) -> Optional[str]:
        if handshake.peer_public_key is None:
            return None
        try:
            public_key = serialization.load_der_public_key(handshake.peer_public_key)
        except (ValueError, UnsupportedAlgorithm):
            logger.warning("Ignoring unreadable peer public key in handshake")
            return None
        if not isinstance(public_key, rsa.RSAPublicKey):
            logger.warning("Ignoring non-RSA peer public key in handshake")
            return None
        return derive_identifier(public_key)

    async def _until_stopped(self, awaitable, timeout: Optional[float] = None):
        """
        Await ``awaitable`` unless shutdown is signalled first.

        Raises:
            _StopRequested: If stop() was called
            asyncio.TimeoutError: If ``timeout`` expired first
        """
        task = asyncio.ensure_future(awaitable)
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, stop_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            pending = [t for t in (task, stop_task) if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if task in done:
            return task.result()
        if stop_task in done:
            raise _StopRequested()
        raise asyncio.TimeoutError()

    async def _wait_or_stop(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds. True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _fail(self, reason: FailureReason, message: str) -> Tuple[FailureReason, str]:
        logger.error("Relay connection failed (%s): %s", reason.value, message)
        self._transition(ConnectionState.ERROR, reason=reason, message=message)
        return reason, message

    def _persistent_failure(self, reason: FailureReason, message: str) -> None:
        self._transition(
            ConnectionState.ERROR,
            reason=reason,
            message=message,
            persistent_failure=True,
        )
        if self._on_persistent_failure is not None:
            self._notify(self._on_persistent_failure)

    def _transition(
        self,
        state: ConnectionState,
        *,
        reason: Optional[FailureReason] = None,
        message: Optional[str] = None,
        persistent_failure: bool = False,
    ) -> None:
        previous = self._status.state
        self._status = ConnectionStatus(
            state=state,
            reason=reason,
            message=message,
            attempts=self._failures,
            persistent_failure=persistent_failure,
        )
        logger.debug("Relay state %s -> %s", previous.value, state.value)

        self._store.publish_status(self._status)
        if self._on_status is not None:
            self._notify(self._on_status)

    def _notify(self, callback: StatusCallback) -> None:
        try:
            callback(self._status)
        except Exception as e:
            logger.exception("Relay status callback failed: %s", e)
