"""Wire messages exchanged between the sequencer and its clients.

Messages use the protocol-buffers wire format: each field is a tag
(field number and wire type) followed by its value. Fields that hold
their default value are left out. ``msg_type`` is always field 1, so
its tag is the first byte of any non-empty message.
"""

from __future__ import annotations

import enum
import functools
import math
import struct
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, NamedTuple, TypeVar

__all__ = [
    "MessageType",
    "DecodeError",
    "TextCommand",
    "TextEvent",
    "TopOfBookCommand",
    "TopOfBookEvent",
    "encode",
    "decode",
    "peek_msg_type",
    "text_event_from_command",
    "tob_event_from_command",
]


class MessageType(enum.IntEnum):
    """Kinds of message carried on the command and event channels."""

    UNKNOWN = 0
    TEXT_COMMAND = 1
    TEXT_EVENT = 2
    TOB_COMMAND = 3
    TOB_EVENT = 4


class DecodeError(ValueError):
    """Raised when bytes do not form a valid message."""


class _Kind(enum.Enum):
    ENUM = "enum"
    UINT64 = "uint64"
    STRING = "string"
    DOUBLE = "double"


_VARINT = 0
_FIXED64 = 1
_LENGTH_DELIMITED = 2
_FIXED32 = 5

_WIRE_TYPE = {
    _Kind.ENUM: _VARINT,
    _Kind.UINT64: _VARINT,
    _Kind.STRING: _LENGTH_DELIMITED,
    _Kind.DOUBLE: _FIXED64,
}

_UINT64_MAX = (1 << 64) - 1
_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1
_MAX_VARINT_BYTES = 10


def _wire(number: int, kind: _Kind, default: Any) -> Any:
    return field(default=default, metadata={"number": number, "kind": kind})


@dataclass
class TextCommand:
    """A text message asking the sequencer to publish it."""

    msg_type: int = _wire(1, _Kind.ENUM, MessageType.TEXT_COMMAND)
    text: str = _wire(2, _Kind.STRING, "")
    tin: int = _wire(3, _Kind.UINT64, 0)
    sid: int = _wire(4, _Kind.UINT64, 0)


@dataclass
class TextEvent:
    """A sequenced text message."""

    msg_type: int = _wire(1, _Kind.ENUM, MessageType.TEXT_EVENT)
    seq: int = _wire(2, _Kind.UINT64, 0)
    text: str = _wire(3, _Kind.STRING, "")
    timestamp: int = _wire(4, _Kind.UINT64, 0)
    sid: int = _wire(5, _Kind.UINT64, 0)
    tin: int = _wire(6, _Kind.UINT64, 0)


@dataclass
class TopOfBookCommand:
    """A top-of-book quote asking the sequencer to publish it."""

    msg_type: int = _wire(1, _Kind.ENUM, MessageType.TOB_COMMAND)
    tin: int = _wire(2, _Kind.UINT64, 0)
    sid: int = _wire(3, _Kind.UINT64, 0)
    symbol: str = _wire(4, _Kind.STRING, "")
    bid_price: float = _wire(5, _Kind.DOUBLE, 0.0)
    bid_size: int = _wire(6, _Kind.UINT64, 0)
    ask_price: float = _wire(7, _Kind.DOUBLE, 0.0)
    ask_size: int = _wire(8, _Kind.UINT64, 0)
    exchange_time: int = _wire(9, _Kind.UINT64, 0)


@dataclass
class TopOfBookEvent:
    """A sequenced top-of-book quote."""

    msg_type: int = _wire(1, _Kind.ENUM, MessageType.TOB_EVENT)
    seq: int = _wire(2, _Kind.UINT64, 0)
    timestamp: int = _wire(3, _Kind.UINT64, 0)
    sid: int = _wire(4, _Kind.UINT64, 0)
    tin: int = _wire(5, _Kind.UINT64, 0)
    symbol: str = _wire(6, _Kind.STRING, "")
    bid_price: float = _wire(7, _Kind.DOUBLE, 0.0)
    bid_size: int = _wire(8, _Kind.UINT64, 0)
    ask_price: float = _wire(9, _Kind.DOUBLE, 0.0)
    ask_size: int = _wire(10, _Kind.UINT64, 0)
    exchange_time: int = _wire(11, _Kind.UINT64, 0)


class _FieldSpec(NamedTuple):
    number: int
    name: str
    kind: _Kind


@functools.lru_cache(maxsize=None)
def _specs(message_cls: type) -> tuple[_FieldSpec, ...]:
    if not is_dataclass(message_cls):
        raise TypeError(f"{message_cls!r} is not a message class")
    specs = [
        _FieldSpec(f.metadata["number"], f.name, f.metadata["kind"])
        for f in fields(message_cls)
        if "number" in f.metadata
    ]
    if not specs:
        raise TypeError(f"{message_cls!r} is not a message class")
    return tuple(sorted(specs))


def _write_varint(out: bytearray, value: int) -> None:
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return


def _write_tag(out: bytearray, number: int, wire_type: int) -> None:
    _write_varint(out, (number << 3) | wire_type)


def encode(message: Any) -> bytes:
    """Serialise a message to its wire bytes."""
    out = bytearray()
    for spec in _specs(type(message)):
        value = getattr(message, spec.name)
        if spec.kind is _Kind.ENUM:
            number = int(value)
            if not _INT32_MIN <= number <= _INT32_MAX:
                raise ValueError(f"{spec.name} out of range: {number}")
            if number:
                _write_tag(out, spec.number, _VARINT)
                _write_varint(out, number & _UINT64_MAX)
        elif spec.kind is _Kind.UINT64:
            number = int(value)
            if not 0 <= number <= _UINT64_MAX:
                raise ValueError(f"{spec.name} out of range: {number}")
            if number:
                _write_tag(out, spec.number, _VARINT)
                _write_varint(out, number)
        elif spec.kind is _Kind.STRING:
            raw = str(value).encode("utf-8")
            if raw:
                _write_tag(out, spec.number, _LENGTH_DELIMITED)
                _write_varint(out, len(raw))
                out += raw
        else:
            number = float(value)
            if number != 0.0 or math.copysign(1.0, number) < 0:
                _write_tag(out, spec.number, _FIXED64)
                out += struct.pack("<d", number)
    return bytes(out)


def _read_varint(buf: bytes, pos: int) -> tuple[int, int]:
    result = 0
    for shift_index in range(_MAX_VARINT_BYTES):
        if pos >= len(buf):
            raise DecodeError("truncated varint")
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << (7 * shift_index)
        if not byte & 0x80:
            return result & _UINT64_MAX, pos
    raise DecodeError("varint too long")


def _take(buf: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(buf):
        raise DecodeError("truncated field")
    return buf[pos:end], end


def _as_enum(raw: int) -> int:
    value = raw & 0xFFFFFFFF
    if value > _INT32_MAX:
        value -= 1 << 32
    try:
        return MessageType(value)
    except ValueError:
        return value


def _convert(kind: _Kind, raw: Any) -> Any:
    if kind is _Kind.ENUM:
        return _as_enum(raw)
    if kind is _Kind.UINT64:
        return raw
    if kind is _Kind.STRING:
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError("string field is not valid UTF-8") from exc
    return struct.unpack("<d", raw)[0]


_M = TypeVar("_M")


def decode(message_cls: type[_M], data: bytes) -> _M:
    """Parse wire bytes into an instance of ``message_cls``.

    Fields the class does not know, or that arrive with another wire
    type, are skipped.
    """
    by_number = {spec.number: spec for spec in _specs(message_cls)}
    buf = bytes(data)
    values: dict[str, Any] = {}
    pos = 0
    while pos < len(buf):
        tag, pos = _read_varint(buf, pos)
        number, wire_type = tag >> 3, tag & 0x7
        if number == 0:
            raise DecodeError("field number 0 is invalid")
        if wire_type == _VARINT:
            raw, pos = _read_varint(buf, pos)
        elif wire_type == _FIXED64:
            raw, pos = _take(buf, pos, 8)
        elif wire_type == _LENGTH_DELIMITED:
            length, pos = _read_varint(buf, pos)
            raw, pos = _take(buf, pos, length)
        elif wire_type == _FIXED32:
            raw, pos = _take(buf, pos, 4)
        else:
            raise DecodeError(f"unsupported wire type {wire_type}")
        spec = by_number.get(number)
        if spec is None or _WIRE_TYPE[spec.kind] != wire_type:
            continue
        values[spec.name] = _convert(spec.kind, raw)
    for spec in by_number.values():
        if spec.kind is _Kind.ENUM and spec.name not in values:
            values[spec.name] = MessageType.UNKNOWN
    return message_cls(**values)


def peek_msg_type(data: bytes) -> int | None:
    """Return the message type from the first field, or None if absent."""
    if len(data) >= 2 and data[0] == 0x08:
        return _as_enum(data[1])
    return None


def text_event_from_command(command: TextCommand, seq: int, sender_id: int, ts: int) -> TextEvent:
    """Build the sequenced event for a text command."""
    return TextEvent(
        msg_type=MessageType.TEXT_EVENT,
        seq=seq,
        text=command.text,
        timestamp=ts,
        sid=sender_id,
        tin=command.tin,
    )


def tob_event_from_command(command: TopOfBookCommand, seq: int, sender_id: int, ts: int) -> TopOfBookEvent:
    """Build the sequenced event for a top-of-book command."""
    return TopOfBookEvent(
        msg_type=MessageType.TOB_EVENT,
        seq=seq,
        timestamp=ts,
        sid=sender_id,
        tin=command.tin,
        symbol=command.symbol,
        bid_price=command.bid_price,
        bid_size=command.bid_size,
        ask_price=command.ask_price,
        ask_size=command.ask_size,
        exchange_time=command.exchange_time,
    )