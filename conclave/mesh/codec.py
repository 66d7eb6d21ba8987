"""
Binary wire codec for message envelopes.

Layout (big-endian):

    version         1 byte
    kind            1 byte
    flags           1 byte   (bit 0: turn sequence present)
    message id      16 bytes
    sender length   1 byte
    sender id       n bytes, UTF-8
    created_at      8 bytes, signed milliseconds since epoch
    turn sequence   4 bytes, unsigned (only when flag bit 0 set)
    content length  4 bytes, unsigned
    content         m bytes, UTF-8

Decoders reject any version other than WIRE_VERSION rather than guess.
"""

import math
import struct

from .message import MESSAGE_ID_SIZE, WIRE_VERSION, MessageEnvelope, MessageKind

HEADER = struct.Struct(f">BBB{MESSAGE_ID_SIZE}sB")
TIMESTAMP = struct.Struct(">q")
SEQUENCE = struct.Struct(">I")
LENGTH = struct.Struct(">I")

FLAG_TURN_SEQUENCE = 0x01
KNOWN_FLAGS = FLAG_TURN_SEQUENCE

MAX_SENDER_BYTES = 255
MAX_SEQUENCE = 0xFFFFFFFF
MIN_TIMESTAMP_MS = -(2 ** 63)
MAX_TIMESTAMP_MS = 2 ** 63 - 1

# Smallest possible datagram: header + empty sender + timestamp + content length
MIN_SIZE = HEADER.size + TIMESTAMP.size + LENGTH.size


class CodecError(Exception):
    """Base exception for codec errors."""
    pass


class EncodeError(CodecError):
    """Envelope cannot be represented on the wire."""
    pass


class DecodeError(CodecError):
    """Datagram is not a valid envelope."""
    pass


def encode(envelope: MessageEnvelope) -> bytes:
    """Encode an envelope to its wire form."""
    if envelope.version != WIRE_VERSION:
        raise EncodeError(f"Unsupported version {envelope.version}")
    if len(envelope.message_id) != MESSAGE_ID_SIZE:
        raise EncodeError(f"Message id must be {MESSAGE_ID_SIZE} bytes, got {len(envelope.message_id)}")

    sender = envelope.sender_id.encode("utf-8")
    if len(sender) > MAX_SENDER_BYTES:
        raise EncodeError(f"Sender id is {len(sender)} bytes, limit is {MAX_SENDER_BYTES}")

    flags = 0
    if envelope.turn_sequence is not None:
        if not 0 <= envelope.turn_sequence <= MAX_SEQUENCE:
            raise EncodeError(f"Turn sequence {envelope.turn_sequence} out of range")
        flags |= FLAG_TURN_SEQUENCE

    created_ms = envelope.created_at * 1000
    if not math.isfinite(created_ms) or not MIN_TIMESTAMP_MS <= round(created_ms) <= MAX_TIMESTAMP_MS:
        raise EncodeError(f"Timestamp {envelope.created_at} cannot be encoded")

    content = envelope.content.encode("utf-8")

    parts = [
        HEADER.pack(envelope.version, envelope.kind.value, flags, envelope.message_id, len(sender)),
        sender,
        TIMESTAMP.pack(round(created_ms)),
    ]
    if flags & FLAG_TURN_SEQUENCE:
        parts.append(SEQUENCE.pack(envelope.turn_sequence))
    parts.append(LENGTH.pack(len(content)))
    parts.append(content)

    return b"".join(parts)


def decode(data: bytes) -> MessageEnvelope:
    """
    Decode a datagram into an envelope.

    Raises:
        DecodeError: on truncation, trailing bytes, unknown version,
            kind or flags, or invalid UTF-8
    """
    if len(data) < MIN_SIZE:
        raise DecodeError(f"Datagram too short: {len(data)} bytes")

    version, kind_code, flags, message_id, sender_len = HEADER.unpack_from(data, 0)
    if version != WIRE_VERSION:
        raise DecodeError(f"Unknown version {version}")
    try:
        kind = MessageKind(kind_code)
    except ValueError:
        raise DecodeError(f"Unknown message kind {kind_code}")
    if flags & ~KNOWN_FLAGS:
        raise DecodeError(f"Unknown flags 0x{flags:02x}")

    offset = HEADER.size
    sender_raw = _take(data, offset, sender_len)
    offset += sender_len

    (created_ms,) = TIMESTAMP.unpack(_take(data, offset, TIMESTAMP.size))
    offset += TIMESTAMP.size

    turn_sequence = None
    if flags & FLAG_TURN_SEQUENCE:
        (turn_sequence,) = SEQUENCE.unpack(_take(data, offset, SEQUENCE.size))
        offset += SEQUENCE.size

    (content_len,) = LENGTH.unpack(_take(data, offset, LENGTH.size))
    offset += LENGTH.size

    content_raw = _take(data, offset, content_len)
    offset += content_len

    if offset != len(data):
        raise DecodeError(f"Length mismatch: {len(data) - offset} trailing bytes")

    try:
        sender_id = sender_raw.decode("utf-8")
        content = content_raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"Invalid UTF-8: {e}") from e

    return MessageEnvelope(
        sender_id=sender_id,
        content=content,
        kind=kind,
        message_id=message_id,
        created_at=created_ms / 1000,
        turn_sequence=turn_sequence,
        version=version,
    )


def _take(data: bytes, offset: int, size: int) -> bytes:
    if offset + size > len(data):
        raise DecodeError(f"Truncated datagram: need {offset + size} bytes, have {len(data)}")
    return data[offset:offset + size]
