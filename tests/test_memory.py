"""
Tests for conversation memory and prompt building.
"""

import pytest

from conclave.memory import (
    KICKOFF_MESSAGE,
    SELF_ROLE,
    SYSTEM_ROLE,
    ConversationEntry,
    ConversationMemory,
    build_prompt,
)


class TestConversationMemory:
    """Tests for ConversationMemory bounds."""

    def test_pinned_entry_leads_snapshot(self):
        memory = ConversationMemory("You are terse.")
        snapshot = memory.snapshot()
        assert len(snapshot) == 1
        assert snapshot[0].role == SYSTEM_ROLE
        assert snapshot[0].content == "You are terse."

    def test_entry_bound(self):
        """Never more than max_entries, pinned entry always survives."""
        memory = ConversationMemory("persona", max_entries=4)
        for i in range(10):
            memory.append(ConversationEntry("agent-2", f"msg {i}", float(i)))
            assert len(memory.snapshot()) <= 4
            assert memory.snapshot()[0].is_system

        contents = [e.content for e in memory.snapshot()[1:]]
        assert contents == ["msg 7", "msg 8", "msg 9"]
        assert memory.stats()["evicted"] == 7

    def test_char_bound_evicts_oldest(self):
        memory = ConversationMemory("persona", max_entries=50, max_content_chars=10)
        memory.append(ConversationEntry("a", "12345"))
        memory.append(ConversationEntry("b", "67890"))
        memory.append(ConversationEntry("c", "xyz"))

        roles = [e.role for e in memory.snapshot()[1:]]
        assert roles == ["b", "c"]
        assert memory.stats()["content_chars"] == 8

    def test_oversized_entry_keeps_tail(self):
        memory = ConversationMemory("persona", max_content_chars=5)
        memory.append(ConversationEntry("a", "abcdefghij"))
        assert memory.last().content == "fghij"

    def test_pinned_not_counted_in_char_budget(self):
        memory = ConversationMemory("x" * 100, max_content_chars=5)
        memory.append(ConversationEntry("a", "hello"))
        assert len(memory) == 2

    def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            ConversationMemory("persona", max_entries=1)
        with pytest.raises(ValueError):
            ConversationMemory("persona", max_content_chars=0)

    def test_snapshot_is_immutable(self):
        memory = ConversationMemory("persona")
        snapshot = memory.snapshot()
        memory.append(ConversationEntry("a", "later"))
        assert len(snapshot) == 1


class TestBuildPrompt:
    """Tests for build_prompt."""

    def test_roles_and_prefixes(self):
        snapshot = (
            ConversationEntry(SYSTEM_ROLE, "Be kind."),
            ConversationEntry("agent-2", "Hi there"),
            ConversationEntry(SELF_ROLE, "Hello!"),
        )
        system_prompt, messages = build_prompt(snapshot)
        assert system_prompt == "Be kind."
        assert messages == [
            {"role": "user", "content": "agent-2: Hi there"},
            {"role": "assistant", "content": "Hello!"},
        ]

    def test_consecutive_peers_merge(self):
        snapshot = (
            ConversationEntry(SYSTEM_ROLE, "p"),
            ConversationEntry("agent-2", "one"),
            ConversationEntry("agent-3", "two"),
        )
        _, messages = build_prompt(snapshot)
        assert len(messages) == 1
        assert messages[0]["content"] == "agent-2: one\n\nagent-3: two"

    def test_kickoff_when_empty(self):
        _, messages = build_prompt((ConversationEntry(SYSTEM_ROLE, "p"),))
        assert messages == [{"role": "user", "content": KICKOFF_MESSAGE}]

    def test_kickoff_when_self_first(self):
        snapshot = (
            ConversationEntry(SYSTEM_ROLE, "p"),
            ConversationEntry(SELF_ROLE, "Hi"),
        )
        _, messages = build_prompt(snapshot)
        assert messages[0]["role"] == "user"
        assert messages[1] == {"role": "assistant", "content": "Hi"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
