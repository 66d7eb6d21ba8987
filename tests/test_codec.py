"""
Tests for the message envelope and wire codec.
"""

import struct

import pytest

from conclave.mesh.codec import (
    FLAG_TURN_SEQUENCE,
    HEADER,
    MIN_SIZE,
    DecodeError,
    EncodeError,
    decode,
    encode,
)
from conclave.mesh.message import (
    MESSAGE_ID_SIZE,
    WIRE_VERSION,
    MessageEnvelope,
    MessageKind,
)


class TestMessageEnvelope:
    """Tests for MessageEnvelope."""

    def test_ids_are_unique(self):
        """Every composed envelope gets a fresh 128-bit id."""
        a = MessageEnvelope.chat("agent-1", "hello")
        b = MessageEnvelope.chat("agent-1", "hello")
        assert len(a.message_id) == MESSAGE_ID_SIZE
        assert a.message_id != b.message_id

    def test_factories(self):
        turn = MessageEnvelope.debate_turn("pro", "I agree", 4)
        assert turn.kind == MessageKind.DEBATE_TURN
        assert turn.turn_sequence == 4

        beat = MessageEnvelope.heartbeat("pro")
        assert beat.kind == MessageKind.HEARTBEAT
        assert beat.content == ""

    def test_age_never_negative(self):
        env = MessageEnvelope(sender_id="a", content="x", created_at=100.0)
        assert env.age_seconds(now=90.0) == 0.0
        assert env.age_seconds(now=102.5) == 2.5

    def test_to_dict(self):
        env = MessageEnvelope.chat("agent-1", "hi")
        data = env.to_dict()
        assert data["kind"] == "chat"
        assert data["message_id"] == env.id_hex
        assert data["turn_sequence"] is None


class TestEncodeDecode:
    """Tests for encode/decode."""

    def test_chat_round_trip(self):
        env = MessageEnvelope.chat("agent-1", "Hello, swarm")
        assert decode(encode(env)) == env

    def test_debate_turn_round_trip(self):
        env = MessageEnvelope.debate_turn("judge", "Verdict: draw", 8)
        decoded = decode(encode(env))
        assert decoded == env
        assert decoded.turn_sequence == 8

    def test_unicode_and_empty_content(self):
        """Multi-byte content and empty content both survive."""
        env = MessageEnvelope.chat("agënt-ü", "日本語 🚀")
        assert decode(encode(env)) == env

        beat = MessageEnvelope.heartbeat("agent-1")
        assert decode(encode(beat)) == beat

    def test_header_layout(self):
        env = MessageEnvelope.debate_turn("a", "b", 1)
        data = encode(env)
        version, kind, flags, message_id, sender_len = HEADER.unpack_from(data, 0)
        assert version == WIRE_VERSION
        assert kind == MessageKind.DEBATE_TURN.value
        assert flags == FLAG_TURN_SEQUENCE
        assert message_id == env.message_id
        assert sender_len == 1

    def test_explicit_timestamp_round_trip(self):
        """Sub-millisecond timestamps are normalised when the envelope is built."""
        env = MessageEnvelope(sender_id="a", content="x", created_at=1700000000.0004)
        assert env.created_at == 1700000000.0
        assert decode(encode(env)) == env

        env = MessageEnvelope(sender_id="a", content="x", created_at=1700000000.1236)
        assert decode(encode(env)) == env

    @pytest.mark.parametrize("created_at", [1e20, -1e20, float("inf"), float("nan"), 1e308])
    def test_encode_rejects_unrepresentable_timestamp(self, created_at):
        with pytest.raises(EncodeError, match="Timestamp"):
            encode(MessageEnvelope(sender_id="a", content="x", created_at=created_at))

    def test_encode_rejects_long_sender(self):
        with pytest.raises(EncodeError):
            encode(MessageEnvelope.chat("x" * 256, "hi"))

    def test_encode_rejects_bad_sequence(self):
        with pytest.raises(EncodeError):
            encode(MessageEnvelope.debate_turn("a", "b", -1))


class TestDecodeErrors:
    """Malformed datagrams never produce an envelope."""

    def _valid(self) -> bytes:
        return encode(MessageEnvelope.chat("agent-1", "hello"))

    def test_too_short(self):
        with pytest.raises(DecodeError):
            decode(b"\x01\x01")
        with pytest.raises(DecodeError):
            decode(b"")

    def test_unknown_version(self):
        data = bytearray(self._valid())
        data[0] = WIRE_VERSION + 1
        with pytest.raises(DecodeError, match="version"):
            decode(bytes(data))

    def test_unknown_kind(self):
        data = bytearray(self._valid())
        data[1] = 99
        with pytest.raises(DecodeError, match="kind"):
            decode(bytes(data))

    def test_unknown_flags(self):
        data = bytearray(self._valid())
        data[2] = 0x80
        with pytest.raises(DecodeError, match="flags"):
            decode(bytes(data))

    def test_truncated(self):
        data = self._valid()
        for cut in (MIN_SIZE, len(data) - 1):
            with pytest.raises(DecodeError):
                decode(data[:cut])

    def test_trailing_bytes(self):
        with pytest.raises(DecodeError, match="trailing"):
            decode(self._valid() + b"\x00")

    def test_content_length_overruns(self):
        data = bytearray(self._valid())
        # Content length field sits just before the 5 content bytes
        struct.pack_into(">I", data, len(data) - 5 - 4, 500)
        with pytest.raises(DecodeError, match="Truncated"):
            decode(bytes(data))

    def test_invalid_utf8(self):
        data = bytearray(self._valid())
        data[-1] = 0xFF
        with pytest.raises(DecodeError, match="UTF-8"):
            decode(bytes(data))

    def test_garbage(self):
        with pytest.raises(DecodeError):
            decode(b"\xde\xad\xbe\xef" * 16)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
