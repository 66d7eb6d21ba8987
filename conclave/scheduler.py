"""
Turn-taking state machine.

Decides, locally and without coordination, when this agent may compose
a reply. All methods take the current time explicitly so the machine
can be driven by a fake clock in tests.

    IDLE ──message──▶ LISTENING ──quiet timer + policy──▶ COMPOSING
      ▲                  ▲                                   │    │
      │                  │                            response    failure
      │                  │                                   ▼    │
      └──── expiry ── COOLDOWN ◀────── sent ─────── BROADCASTING  │
                         ▲                                        │
                         └────────────────────────────────────────┘

Two speaking policies:

- free-form: speak whenever the swarm has been quiet for ``quiet_period``
  (optionally gated by ``speak_probability``)
- debate: speak only when the highest observed ``turn_sequence`` is the
  one immediately before this agent's slot in ``turn_order``
"""

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .mesh.message import MessageEnvelope, MessageKind

logger = logging.getLogger(__name__)

DEFAULT_QUIET_PERIOD_SEC = 2.0
DEFAULT_COOLDOWN_SEC = 5.0

DEBATE_ROLES = ("affirmative", "negative", "judge")

UNABLE_TO_RESPOND = "I'm unable to respond right now."


class TurnState(Enum):
    """Scheduler states."""
    IDLE = "idle"
    LISTENING = "listening"
    COMPOSING = "composing"
    BROADCASTING = "broadcasting"
    COOLDOWN = "cooldown"


class FailurePolicy(Enum):
    """What to do when the gateway gives up on a turn."""
    SKIP = "skip"
    NOTICE = "notice"


class SchedulerError(Exception):
    """Illegal state transition."""
    pass


@dataclass
class SpeakingPolicy:
    """
    When an agent is allowed to take the floor.

    ``turn_order`` switches the scheduler into debate mode. Each entry is
    a role; turn sequence ``s`` belongs to ``turn_order[s % len(turn_order)]``.
    """
    speak_probability: float = 1.0
    turn_order: List[str] = field(default_factory=list)
    role: Optional[str] = None
    max_rounds: Optional[int] = None

    @property
    def is_debate(self) -> bool:
        return bool(self.turn_order)

    def slot_role(self, turn_sequence: int) -> str:
        return self.turn_order[turn_sequence % len(self.turn_order)]

    def expected_turns(self, rounds: int = 1) -> List[tuple]:
        """The ordered (role, turn_sequence) pairs for the given rounds."""
        return [
            (self.slot_role(seq), seq)
            for seq in range(rounds * len(self.turn_order))
        ]


class TurnScheduler:
    """
    Decides when this agent may speak.

    Usage:
        scheduler = TurnScheduler("agent-1")
        scheduler.on_message(envelope, now)
        if scheduler.try_compose(now):
            ...  # call the gateway
            scheduler.on_response(now)
            ...  # send
            scheduler.on_broadcast(now, turn_sequence)
        scheduler.tick(now)
    """

    def __init__(
        self,
        agent_id: str,
        policy: Optional[SpeakingPolicy] = None,
        quiet_period: float = DEFAULT_QUIET_PERIOD_SEC,
        cooldown: float = DEFAULT_COOLDOWN_SEC,
        rng: Optional[random.Random] = None,
    ):
        self.agent_id = agent_id
        self.policy = policy or SpeakingPolicy()
        self.quiet_period = quiet_period
        self.cooldown = cooldown
        self._rng = rng or random.Random()

        if self.policy.is_debate and self.policy.role not in self.policy.turn_order:
            raise SchedulerError(
                f"Role {self.policy.role!r} is not in turn order {self.policy.turn_order}"
            )

        self.state = TurnState.IDLE
        self.highest_turn: Optional[int] = None

        self._quiet_since: Optional[float] = None
        self._cooldown_until: Optional[float] = None
        self._heard_since_compose = False

        # Metrics
        self._turns_taken = 0
        self._turns_failed = 0
        self._gate_denials = 0

    # === Events ===

    def start(self, now: float) -> None:
        """
        Begin the agent's lifetime.

        In debate mode the opening speaker starts listening immediately so
        it can take the first turn without waiting for anyone else.
        """
        if self.policy.is_debate and self.highest_turn is None and self.policy.slot_role(0) == self.policy.role:
            self._enter_listening(now)

    def on_message(self, envelope: MessageEnvelope, now: float) -> bool:
        """
        Feed an accepted (already deduplicated) envelope.

        Returns:
            True if the message counted as conversation activity
        """
        if envelope.sender_id == self.agent_id:
            return False
        if envelope.kind == MessageKind.HEARTBEAT:
            return False

        if envelope.kind == MessageKind.DEBATE_TURN and envelope.turn_sequence is not None:
            if self.highest_turn is None or envelope.turn_sequence > self.highest_turn:
                self.highest_turn = envelope.turn_sequence

        if self.state in (TurnState.IDLE, TurnState.LISTENING):
            self._enter_listening(now)
        else:
            self._heard_since_compose = True
        return True

    def try_compose(self, now: float) -> bool:
        """
        Move LISTENING → COMPOSING if the floor is ours.

        Returns:
            True if the caller should now generate a reply
        """
        if self.state != TurnState.LISTENING:
            return False
        if self._quiet_since is None or now - self._quiet_since < self.quiet_period:
            return False

        if self.policy.is_debate:
            if not self._debate_permits():
                return False
        elif self.policy.speak_probability < 1.0:
            if self._rng.random() >= self.policy.speak_probability:
                self._gate_denials += 1
                logger.debug(f"{self.agent_id} stays quiet this round")
                self._quiet_since = now
                return False

        self._transition(TurnState.COMPOSING)
        self._heard_since_compose = False
        return True

    def on_response(self, now: float) -> None:
        """Gateway returned text; we are about to send it."""
        self._require(TurnState.COMPOSING)
        self._transition(TurnState.BROADCASTING)

    def on_broadcast(self, now: float, turn_sequence: Optional[int] = None) -> None:
        """Our message went out; hold the floor back for the cooldown."""
        self._require(TurnState.BROADCASTING)
        if turn_sequence is not None and (self.highest_turn is None or turn_sequence > self.highest_turn):
            self.highest_turn = turn_sequence
        self._turns_taken += 1
        self._enter_cooldown(now)

    def on_failure(self, now: float) -> None:
        """The gateway gave up; skip this turn."""
        if self.state not in (TurnState.COMPOSING, TurnState.BROADCASTING):
            raise SchedulerError(f"Cannot fail a turn in state {self.state.value}")
        self._turns_failed += 1
        self._enter_cooldown(now)

    def tick(self, now: float) -> None:
        """Expire the cooldown when due."""
        if self.state != TurnState.COOLDOWN:
            return
        if self._cooldown_until is not None and now >= self._cooldown_until:
            self._cooldown_until = None
            if self._heard_since_compose or self._debate_turn_pending():
                self._heard_since_compose = False
                self._enter_listening(now)
            else:
                self._transition(TurnState.IDLE)
                self._quiet_since = None

    # === Queries ===

    def next_turn_sequence(self) -> Optional[int]:
        """Sequence number our next message carries (debate mode only)."""
        if not self.policy.is_debate:
            return None
        return 0 if self.highest_turn is None else self.highest_turn + 1

    def next_deadline(self) -> Optional[float]:
        """The next time at which tick/try_compose could change state."""
        if self.state == TurnState.COOLDOWN:
            return self._cooldown_until
        if self.state == TurnState.LISTENING and self._quiet_since is not None:
            return self._quiet_since + self.quiet_period
        return None

    @property
    def in_flight(self) -> bool:
        return self.state in (TurnState.COMPOSING, TurnState.BROADCASTING)

    def stats(self) -> dict:
        return {
            "state": self.state.value,
            "highest_turn": self.highest_turn,
            "turns_taken": self._turns_taken,
            "turns_failed": self._turns_failed,
            "gate_denials": self._gate_denials,
        }

    # === Internals ===

    def _debate_permits(self) -> bool:
        next_seq = self.next_turn_sequence()
        if self.policy.max_rounds is not None:
            if next_seq >= self.policy.max_rounds * len(self.policy.turn_order):
                return False
        return self.policy.slot_role(next_seq) == self.policy.role

    def _debate_turn_pending(self) -> bool:
        return self.policy.is_debate and self._debate_permits()

    def _enter_listening(self, now: float) -> None:
        if self.state != TurnState.LISTENING:
            self._transition(TurnState.LISTENING)
        self._quiet_since = now

    def _enter_cooldown(self, now: float) -> None:
        self._transition(TurnState.COOLDOWN)
        self._cooldown_until = now + self.cooldown

    def _require(self, state: TurnState) -> None:
        if self.state != state:
            raise SchedulerError(f"Expected state {state.value}, in {self.state.value}")

    def _transition(self, state: TurnState) -> None:
        logger.debug(f"{self.agent_id}: {self.state.value} -> {state.value}")
        self.state = state
