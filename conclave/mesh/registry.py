"""
Peer tracking and duplicate suppression.

Every decoded envelope passes through ``PeerRegistry.observe``. The
seen-id set is the only place retransmits and our own multicast echo
are dropped; peer records are observational and never gate turn-taking.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional

from .message import MessageEnvelope

logger = logging.getLogger(__name__)

DEFAULT_SEEN_CAPACITY = 1024
DEFAULT_PEER_TTL_SEC = 300


@dataclass
class PeerRecord:
    """Last time we heard from a sender."""
    agent_id: str
    last_seen: float
    messages: int = 0

    def is_stale(self, now: float, ttl: float) -> bool:
        return now - self.last_seen > ttl

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "last_seen": self.last_seen,
            "messages": self.messages,
        }


class SeenIdSet:
    """
    Bounded set of message ids with FIFO eviction.

    Once capacity is reached the oldest inserted id is forgotten.
    """

    def __init__(self, capacity: int = DEFAULT_SEEN_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._ids: "OrderedDict[bytes, None]" = OrderedDict()

    def __contains__(self, message_id: bytes) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, message_id: bytes) -> bool:
        """Insert an id. Returns False if it was already present."""
        if message_id in self._ids:
            return False
        self._ids[message_id] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)
        return True


class PeerRegistry:
    """
    Known senders plus the recently-seen message ids.

    Usage:
        registry = PeerRegistry()
        if registry.observe(envelope):
            ...  # first sighting, continue processing
    """

    def __init__(
        self,
        seen_capacity: int = DEFAULT_SEEN_CAPACITY,
        peer_ttl: float = DEFAULT_PEER_TTL_SEC,
        local_id: Optional[str] = None,
    ):
        self.peer_ttl = peer_ttl
        self.local_id = local_id
        self.seen = SeenIdSet(seen_capacity)
        self._peers: Dict[str, PeerRecord] = {}

        # Metrics
        self._accepted = 0
        self._duplicates = 0

    def observe(self, envelope: MessageEnvelope, now: Optional[float] = None) -> bool:
        """
        Record an incoming envelope.

        Returns:
            True if this message id is new, False for a duplicate
        """
        now = time.time() if now is None else now

        # Our own id is never tracked as a peer
        peer = None
        if envelope.sender_id != self.local_id:
            peer = self._peers.get(envelope.sender_id)
            if peer is None:
                peer = PeerRecord(agent_id=envelope.sender_id, last_seen=now)
                self._peers[envelope.sender_id] = peer
                logger.info(f"New peer: {envelope.sender_id}")
            peer.last_seen = now

        if not self.seen.add(envelope.message_id):
            self._duplicates += 1
            logger.debug(f"Dropping duplicate {envelope.id_hex[:8]} from {envelope.sender_id}")
            return False

        if peer is not None:
            peer.messages += 1
        self._accepted += 1
        return True

    def mark_seen(self, message_id: bytes) -> None:
        """Record an id we sent so its echo is dropped on arrival."""
        self.seen.add(message_id)

    def prune(self, now: Optional[float] = None) -> List[str]:
        """Remove peers not heard from within the TTL."""
        now = time.time() if now is None else now
        stale = [
            agent_id for agent_id, peer in self._peers.items()
            if peer.is_stale(now, self.peer_ttl)
        ]
        for agent_id in stale:
            del self._peers[agent_id]
            logger.info(f"Peer {agent_id} went quiet, pruned")
        return stale

    def peers(self) -> List[PeerRecord]:
        """Current peer records, most recently seen first."""
        return sorted(self._peers.values(), key=lambda p: p.last_seen, reverse=True)

    def get(self, agent_id: str) -> Optional[PeerRecord]:
        return self._peers.get(agent_id)

    def stats(self) -> dict:
        return {
            "peers": len(self._peers),
            "accepted": self._accepted,
            "duplicates": self._duplicates,
            "seen_ids": len(self.seen),
        }
