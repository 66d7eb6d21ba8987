"""
Tests for peer tracking and duplicate suppression.
"""

import pytest

from conclave.mesh.codec import decode, encode
from conclave.mesh.message import MessageEnvelope
from conclave.mesh.registry import PeerRecord, PeerRegistry, SeenIdSet


class TestSeenIdSet:
    """Tests for the bounded seen-id set."""

    def test_add_reports_duplicates(self):
        seen = SeenIdSet(capacity=4)
        assert seen.add(b"a" * 16) is True
        assert seen.add(b"a" * 16) is False
        assert len(seen) == 1

    def test_fifo_eviction(self):
        """The oldest id is forgotten once capacity is exceeded."""
        seen = SeenIdSet(capacity=2)
        seen.add(b"1")
        seen.add(b"2")
        seen.add(b"3")
        assert b"1" not in seen
        assert b"2" in seen
        assert b"3" in seen
        assert len(seen) == 2

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            SeenIdSet(capacity=0)


class TestPeerRegistry:
    """Tests for PeerRegistry."""

    def test_duplicate_delivery_is_dropped(self):
        """The same datagram delivered twice is accepted once."""
        registry = PeerRegistry()
        data = encode(MessageEnvelope.chat("agent-2", "hello"))

        assert registry.observe(decode(data), now=10.0) is True
        assert registry.observe(decode(data), now=10.1) is False

        stats = registry.stats()
        assert stats["accepted"] == 1
        assert stats["duplicates"] == 1

    def test_peer_record_updates(self):
        registry = PeerRegistry()
        registry.observe(MessageEnvelope.chat("agent-2", "a"), now=10.0)
        registry.observe(MessageEnvelope.chat("agent-2", "b"), now=12.0)

        peer = registry.get("agent-2")
        assert peer.last_seen == 12.0
        assert peer.messages == 2

    def test_duplicate_still_refreshes_last_seen(self):
        registry = PeerRegistry()
        env = MessageEnvelope.chat("agent-2", "a")
        registry.observe(env, now=10.0)
        registry.observe(env, now=15.0)

        peer = registry.get("agent-2")
        assert peer.last_seen == 15.0
        assert peer.messages == 1

    def test_mark_seen_suppresses_echo(self):
        """An id we sent ourselves is dropped when it loops back."""
        registry = PeerRegistry()
        env = MessageEnvelope.chat("me", "my reply")
        registry.mark_seen(env.message_id)
        assert registry.observe(env) is False

    def test_own_id_is_not_a_peer(self):
        """Messages carrying the local id are deduplicated but never tracked as a peer."""
        registry = PeerRegistry(local_id="me")
        assert registry.observe(MessageEnvelope.chat("me", "hello"), now=10.0) is True
        registry.observe(MessageEnvelope.chat("agent-2", "hi"), now=11.0)

        assert registry.get("me") is None
        assert [peer.agent_id for peer in registry.peers()] == ["agent-2"]
        assert registry.stats()["peers"] == 1
        assert registry.stats()["accepted"] == 2

    def test_prune(self):
        registry = PeerRegistry(peer_ttl=60)
        registry.observe(MessageEnvelope.chat("old", "a"), now=0.0)
        registry.observe(MessageEnvelope.chat("new", "b"), now=50.0)

        assert registry.prune(now=100.0) == ["old"]
        assert registry.get("old") is None
        assert [p.agent_id for p in registry.peers()] == ["new"]

    def test_peers_sorted_by_recency(self):
        registry = PeerRegistry()
        registry.observe(MessageEnvelope.chat("a", "x"), now=1.0)
        registry.observe(MessageEnvelope.chat("b", "x"), now=3.0)
        registry.observe(MessageEnvelope.chat("c", "x"), now=2.0)
        assert [p.agent_id for p in registry.peers()] == ["b", "c", "a"]


class TestPeerRecord:
    """Tests for PeerRecord."""

    def test_is_stale(self):
        peer = PeerRecord(agent_id="a", last_seen=100.0)
        assert peer.is_stale(now=200.0, ttl=60) is True
        assert peer.is_stale(now=150.0, ttl=60) is False

    def test_to_dict(self):
        peer = PeerRecord(agent_id="a", last_seen=1.0, messages=3)
        assert peer.to_dict() == {"agent_id": "a", "last_seen": 1.0, "messages": 3}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
