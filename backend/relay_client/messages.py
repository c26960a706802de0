"""
Relay Wire Messages

Builds the login message and parses what the relay sends back:
the ``connect`` handshake, encrypted ``message`` frames, and the
decrypted telemetry content inside those frames.

Telemetry content comes in three shapes:

- slot list:   {"machine": "...", "time": ..., "slots": [{"id": 0, "percent": 42.5, "kind": "CPU"}]}
- full state:  {"session": "...", "content": {"info": {...}, "units": [{...}]}}
- delta:       {"session": "...", "content": ["units", 0, "wu_progress", 0.5]}

The relay also sends plaintext ``broadcast`` messages. With
``payload.cmd == "state"`` they carry the state of every machine on the
account, keyed by machine id:

    {"type": "broadcast", "payload": {"cmd": "state", "state": {"<id>": {"name": "...", "data": {"units": [...]}}}}}
"""

import json
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from aggregator.models import SlotKind, SlotUpdate, TelemetryMessage
from crypto_engine.identity import b64_decode_any, b64url_encode
from .exceptions import HandshakeError, ProtocolError

MSG_LOGIN = "login"
MSG_CONNECT = "connect"
MSG_FRAME = "message"
MSG_BROADCAST = "broadcast"

BROADCAST_STATE_CMD = "state"
UNIT_RUNNING_STATE = "RUN"
UNIT_FINISHED_STATE = "FINISHED"


@dataclass(frozen=True)
class HandshakeMessage:
    wrapped_key: bytes
    peer_public_key: Optional[bytes] = None
    account: Optional[str] = None


@dataclass(frozen=True)
class EncryptedFrame:
    payload: bytes
    client: Optional[str] = None
    iv: Optional[bytes] = None


# --------- Wire schemas ----------

class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ConnectPayload(_Lenient):
    account: Optional[str] = None
    key: Optional[str] = None


class ConnectClient(_Lenient):
    pubkey: Optional[str] = None
    payload: Optional[ConnectPayload] = None


class ConnectEnvelope(_Lenient):
    type: str
    client: ConnectClient


class FrameEnvelope(_Lenient):
    type: str
    client: Optional[str] = None
    iv: Optional[str] = None
    payload: str


class SlotPayload(_Lenient):
    id: int = Field(ge=0)
    percent: float = Field(allow_inf_nan=False)
    kind: SlotKind = SlotKind.CPU
    label: Optional[str] = None
    running: Optional[bool] = None
    ppd: Optional[int] = Field(default=None, ge=0)

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v


class SlotListContent(_Lenient):
    machine: Optional[str] = None
    time: Optional[Union[float, str]] = None
    slots: List[SlotPayload]


class Assignment(_Lenient):
    project: Optional[int] = None


class UnitPayload(_Lenient):
    wu_progress: Optional[float] = Field(default=None, allow_inf_nan=False)
    ppd: Optional[int] = Field(default=None, ge=0)
    gpus: List[Any] = Field(default_factory=list)
    assignment: Optional[Assignment] = None
    state: Optional[str] = None


class MachineInfo(_Lenient):
    mach_name: Optional[str] = None


class FullStateContent(_Lenient):
    info: Optional[MachineInfo] = None
    units: List[UnitPayload]


class BroadcastMachineData(_Lenient):
    units: List[UnitPayload] = Field(default_factory=list)


class BroadcastMachine(_Lenient):
    name: Optional[str] = None
    data: Optional[BroadcastMachineData] = None


class BroadcastPayload(_Lenient):
    cmd: Optional[str] = None
    state: Optional[Dict[str, BroadcastMachine]] = None


class BroadcastEnvelope(_Lenient):
    type: str
    payload: Optional[BroadcastPayload] = None


# --------- Login ----------

def iso_now() -> str:
    """UTC timestamp with milliseconds, e.g. 2025-12-14T12:34:56.789Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_session_id() -> str:
    return b64url_encode(secrets.token_bytes(12))


def build_login_message(keypair, session_id: str, timestamp: Optional[str] = None) -> str:
    """
    Build the identity-bearing login message sent right after connecting.

    The signature covers the compact JSON of ``payload`` exactly as it
    appears in the message.
    """
    payload = {"time": timestamp or iso_now(), "session": session_id}
    payload_json = json.dumps(payload, separators=(",", ":"))
    signature = b64url_encode(keypair.sign(payload_json.encode("utf-8")))

    message = {
        "type": MSG_LOGIN,
        "id": keypair.machine_id,
        "account": keypair.account_id,
        "payload": payload,
        "pubkey": keypair.public_key_b64(),
        "signature": signature,
    }
    return json.dumps(message, separators=(",", ":"))


# --------- Envelopes ----------

def _load_json(text: Union[str, bytes], what: str) -> Any:
    # Deeply nested input makes the decoder raise RecursionError.
    try:
        return json.loads(text)
    except (ValueError, RecursionError) as e:
        raise ProtocolError(f"{what} is not JSON: {type(e).__name__}") from None


def parse_envelope(text: Union[str, bytes]) -> Dict[str, Any]:
    """Decode a relay text message into a dict with a ``type``."""
    data = _load_json(text, "Relay message")

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError("Relay message has no type")
    return data


def parse_handshake(envelope: Dict[str, Any]) -> HandshakeMessage:
    """
    Extract the wrapped session key from a ``connect`` message.

    Raises:
        HandshakeError: If the message has no usable key
    """
    try:
        msg = ConnectEnvelope.model_validate(envelope)
    except ValidationError:
        raise HandshakeError("Malformed connect message") from None

    if msg.client.payload is None or not msg.client.payload.key:
        raise HandshakeError("Connect message carries no session key")

    try:
        wrapped_key = b64_decode_any(msg.client.payload.key)
    except ValueError:
        raise HandshakeError("Session key is not valid base64") from None

    peer_public_key = None
    if msg.client.pubkey:
        try:
            peer_public_key = b64_decode_any(msg.client.pubkey)
        except ValueError:
            peer_public_key = None

    return HandshakeMessage(
        wrapped_key=wrapped_key,
        peer_public_key=peer_public_key,
        account=msg.client.payload.account,
    )


def parse_frame(envelope: Dict[str, Any]) -> EncryptedFrame:
    """
    Extract ciphertext (and optional IV) from a ``message`` frame.

    Raises:
        ProtocolError: If the frame is malformed
    """
    try:
        msg = FrameEnvelope.model_validate(envelope)
        payload = b64_decode_any(msg.payload)
        iv = b64_decode_any(msg.iv) if msg.iv else None
    except (ValidationError, ValueError):
        raise ProtocolError("Malformed encrypted frame") from None

    return EncryptedFrame(payload=payload, client=msg.client, iv=iv)


# --------- Telemetry content ----------

def _parse_time(value: Union[float, str, None]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        raise ProtocolError(f"Invalid timestamp: {value!r}") from None


def _unit_update(index: int, unit: UnitPayload) -> SlotUpdate:
    label = None
    if unit.assignment is not None and unit.assignment.project is not None:
        label = f"P{unit.assignment.project}"

    return SlotUpdate(
        slot_index=index,
        kind=SlotKind.GPU if unit.gpus else SlotKind.CPU,
        percent=unit.wu_progress * 100.0 if unit.wu_progress is not None else 0.0,
        label=label or "",
        running=(unit.state or "").upper() == UNIT_RUNNING_STATE,
        points_per_day=unit.ppd or 0,
    )


def _unit_updates(units: List[UnitPayload]) -> Tuple[SlotUpdate, ...]:
    # Finished units are dropped but keep their index, so deltas still line up.
    return tuple(
        _unit_update(index, unit)
        for index, unit in enumerate(units)
        if (unit.state or "").upper() != UNIT_FINISHED_STATE
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _delta_update(content: List[Any]) -> Optional[SlotUpdate]:
    """
    Decode a ``["units", index, field, value]`` delta.

    Returns:
        The slot update, or None for deltas that change nothing shown
    """
    if len(content) < 4 or content[0] != "units":
        return None

    index, field_name, value = content[1], content[2], content[3]
    if not isinstance(index, int) or isinstance(index, bool) or index < 0:
        raise ProtocolError(f"Invalid unit index: {index!r}")

    if field_name == "wu_progress":
        if not _is_number(value) or not math.isfinite(value):
            raise ProtocolError(f"Invalid progress value: {value!r}")
        return SlotUpdate(slot_index=index, percent=float(value) * 100.0)

    if field_name == "ppd":
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ProtocolError(f"Invalid ppd value: {value!r}")
        return SlotUpdate(slot_index=index, points_per_day=value)

    if field_name == "state":
        if not isinstance(value, str):
            raise ProtocolError(f"Invalid state value: {value!r}")
        return SlotUpdate(slot_index=index, running=value.upper() == UNIT_RUNNING_STATE)

    return None


def parse_telemetry(plaintext: Union[str, bytes], machine_id: str) -> TelemetryMessage:
    """
    Decode decrypted frame content into a TelemetryMessage.

    Args:
        plaintext: Decrypted frame bytes (UTF-8 JSON)
        machine_id: Identifier of the machine the frame belongs to

    Raises:
        ProtocolError: If the content is structurally invalid
    """
    data = _load_json(plaintext, "Frame content")
    if not isinstance(data, dict):
        raise ProtocolError("Frame content is not an object")

    try:
        if "slots" in data:
            content = SlotListContent.model_validate(data)
            return TelemetryMessage(
                machine_id=machine_id,
                display_name=content.machine,
                timestamp=_parse_time(content.time),
                updates=tuple(
                    SlotUpdate(
                        slot_index=slot.id,
                        kind=slot.kind,
                        percent=slot.percent,
                        label=slot.label,
                        running=slot.running,
                        points_per_day=slot.ppd,
                    )
                    for slot in content.slots
                ),
            )

        if "content" in data:
            raw = data["content"]
            if isinstance(raw, list):
                update = _delta_update(raw)
                return TelemetryMessage(
                    machine_id=machine_id,
                    updates=(update,) if update is not None else (),
                )

            content = FullStateContent.model_validate(raw)
            return TelemetryMessage(
                machine_id=machine_id,
                display_name=content.info.mach_name if content.info else None,
                updates=_unit_updates(content.units),
                replace_slots=True,
            )
    except ValidationError as e:
        raise ProtocolError(f"Invalid telemetry content: {e.error_count()} error(s)") from None

    raise ProtocolError("Frame content has neither slots nor content")


def parse_broadcast_state(envelope: Dict[str, Any]) -> Tuple[TelemetryMessage, ...]:
    """
    Decode a plaintext ``broadcast`` message into per-machine telemetry.

    Every machine in the state map replaces its slot list. Broadcasts
    other than ``cmd == "state"`` carry no telemetry and yield nothing.

    Raises:
        ProtocolError: If a state broadcast is structurally invalid
    """
    try:
        msg = BroadcastEnvelope.model_validate(envelope)
    except ValidationError as e:
        raise ProtocolError(f"Invalid state broadcast: {e.error_count()} error(s)") from None

    payload = msg.payload
    if payload is None or payload.cmd != BROADCAST_STATE_CMD or not payload.state:
        return ()

    return tuple(
        TelemetryMessage(
            machine_id=machine_id,
            display_name=machine.name,
            updates=_unit_updates(machine.data.units if machine.data else []),
            replace_slots=True,
        )
        for machine_id, machine in payload.state.items()
        if machine_id
    )
