"""
Message envelope exchanged between agents.
"""

import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

WIRE_VERSION = 1
MESSAGE_ID_SIZE = 16


class MessageKind(Enum):
    """Kinds of swarm messages. Values are the wire codes."""
    CHAT = 1
    DEBATE_TURN = 2
    HEARTBEAT = 3


def new_message_id() -> bytes:
    """Generate a fresh 128-bit message id."""
    return uuid.uuid4().bytes


def now_ms_precision() -> float:
    """Current time truncated to the millisecond resolution of the wire."""
    return int(time.time() * 1000) / 1000


@dataclass(frozen=True)
class MessageEnvelope:
    """
    One wire-level message unit.

    ``message_id`` is generated once when the envelope is composed and
    is never reused; the dedup registry relies on it. ``created_at`` is
    epoch seconds at millisecond precision so that it survives the
    wire round-trip unchanged.
    """
    sender_id: str
    content: str
    kind: MessageKind = MessageKind.CHAT
    message_id: bytes = field(default_factory=new_message_id)
    created_at: float = field(default_factory=now_ms_precision)
    turn_sequence: Optional[int] = None
    version: int = WIRE_VERSION

    def __post_init__(self):
        # Non-finite values are left for the codec to reject
        created_ms = self.created_at * 1000
        if math.isfinite(created_ms):
            object.__setattr__(self, "created_at", round(created_ms) / 1000)

    @property
    def id_hex(self) -> str:
        return self.message_id.hex()

    def age_seconds(self, now: Optional[float] = None) -> float:
        """Age of the message, never negative."""
        now = time.time() if now is None else now
        return max(0.0, now - self.created_at)

    @classmethod
    def chat(cls, sender_id: str, content: str) -> "MessageEnvelope":
        """Create a free-form chat message."""
        return cls(sender_id=sender_id, content=content, kind=MessageKind.CHAT)

    @classmethod
    def debate_turn(cls, sender_id: str, content: str, turn_sequence: int) -> "MessageEnvelope":
        """Create a debate message tagged with its turn sequence."""
        return cls(
            sender_id=sender_id,
            content=content,
            kind=MessageKind.DEBATE_TURN,
            turn_sequence=turn_sequence,
        )

    @classmethod
    def heartbeat(cls, sender_id: str) -> "MessageEnvelope":
        """Create a presence heartbeat."""
        return cls(sender_id=sender_id, content="", kind=MessageKind.HEARTBEAT)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "message_id": self.id_hex,
            "sender_id": self.sender_id,
            "kind": self.kind.name.lower(),
            "content": self.content,
            "created_at": self.created_at,
            "turn_sequence": self.turn_sequence,
        }
