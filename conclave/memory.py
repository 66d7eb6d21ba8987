"""
Sliding-window conversation memory.

Each agent keeps a bounded, ordered log of what it has heard and said.
The first entry is the pinned personality prompt; it is never evicted
and always leads the snapshot used to build a prompt.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

SYSTEM_ROLE = "system"
SELF_ROLE = "self"

DEFAULT_MAX_ENTRIES = 50
DEFAULT_MAX_CONTENT_CHARS = 16000

KICKOFF_MESSAGE = "The conversation is just starting. You speak first."


@dataclass(frozen=True)
class ConversationEntry:
    """One line of conversation: who said what, and when."""
    role: str  # "system", "self" or a peer agent id
    content: str
    timestamp: float = field(default_factory=time.time)

    @property
    def is_self(self) -> bool:
        return self.role == SELF_ROLE

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM_ROLE


class ConversationMemory:
    """
    Bounded conversation log with a pinned system entry.

    Bounds apply to the non-pinned entries: at most ``max_entries``
    entries in total (pinned included), and at most ``max_content_chars``
    characters of non-pinned content. Eviction is always oldest-first.

    Usage:
        memory = ConversationMemory("You are a careful debater.")
        memory.append(ConversationEntry("agent-2", "Hello"))
        system_prompt, messages = build_prompt(memory.snapshot())
    """

    def __init__(
        self,
        personality: str,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS,
    ):
        if max_entries < 2:
            raise ValueError("max_entries must leave room for at least one entry after the pinned prompt")
        if max_content_chars < 1:
            raise ValueError("max_content_chars must be positive")

        self.max_entries = max_entries
        self.max_content_chars = max_content_chars
        self._pinned = ConversationEntry(SYSTEM_ROLE, personality)
        self._entries: List[ConversationEntry] = []
        self._content_chars = 0
        self._evicted = 0

    @property
    def pinned(self) -> ConversationEntry:
        return self._pinned

    def __len__(self) -> int:
        return len(self._entries) + 1

    def append(self, entry: ConversationEntry) -> None:
        """Add an entry at the tail, evicting the oldest entries as needed."""
        if len(entry.content) > self.max_content_chars:
            logger.debug(
                f"Truncating {len(entry.content)}-char entry from {entry.role} "
                f"to {self.max_content_chars} chars"
            )
            entry = ConversationEntry(
                entry.role,
                entry.content[-self.max_content_chars:],
                entry.timestamp,
            )

        self._entries.append(entry)
        self._content_chars += len(entry.content)

        while (
            len(self._entries) + 1 > self.max_entries
            or self._content_chars > self.max_content_chars
        ):
            oldest = self._entries.pop(0)
            self._content_chars -= len(oldest.content)
            self._evicted += 1

    def snapshot(self) -> Tuple[ConversationEntry, ...]:
        """Read-only view of the window, pinned entry first."""
        return (self._pinned, *self._entries)

    def last(self) -> Optional[ConversationEntry]:
        return self._entries[-1] if self._entries else None

    def stats(self) -> dict:
        return {
            "entries": len(self),
            "content_chars": self._content_chars,
            "evicted": self._evicted,
        }


def build_prompt(
    snapshot: Tuple[ConversationEntry, ...],
) -> Tuple[str, List[Dict[str, str]]]:
    """
    Turn a memory snapshot into chat-completion form.

    Our own entries become ``assistant`` turns. Peer entries become
    ``user`` turns prefixed with the speaker's id so the model can tell
    peers apart. Consecutive turns from the same side are merged, since
    several providers reject repeated roles.

    Returns:
        (system_prompt, messages)
    """
    system_prompt = ""
    messages: List[Dict[str, str]] = []

    for entry in snapshot:
        if entry.is_system:
            system_prompt = f"{system_prompt}\n\n{entry.content}" if system_prompt else entry.content
            continue

        if entry.is_self:
            role, content = "assistant", entry.content
        else:
            role, content = "user", f"{entry.role}: {entry.content}"

        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += f"\n\n{content}"
        else:
            messages.append({"role": role, "content": content})

    if not messages or messages[0]["role"] != "user":
        messages.insert(0, {"role": "user", "content": KICKOFF_MESSAGE})

    return system_prompt, messages
