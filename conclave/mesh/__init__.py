"""
Swarm messaging layer.

Provides:
- Message envelope model
- Binary wire codec
- Peer and duplicate tracking
- UDP multicast transport
"""

from .message import MessageEnvelope, MessageKind, WIRE_VERSION
from .codec import encode, decode, CodecError, EncodeError, DecodeError
from .registry import PeerRegistry, PeerRecord, SeenIdSet
from .transport import MulticastTransport, TransportError, PayloadTooLarge, MAX_DATAGRAM_SIZE

__all__ = [
    # Message
    "MessageEnvelope",
    "MessageKind",
    "WIRE_VERSION",
    # Codec
    "encode",
    "decode",
    "CodecError",
    "EncodeError",
    "DecodeError",
    # Registry
    "PeerRegistry",
    "PeerRecord",
    "SeenIdSet",
    # Transport
    "MulticastTransport",
    "TransportError",
    "PayloadTooLarge",
    "MAX_DATAGRAM_SIZE",
]
