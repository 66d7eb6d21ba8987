"""
Agent loop.

Wires the swarm components together and runs two concurrent activities:

- the receiver drains the transport, decodes, deduplicates and hands
  accepted envelopes to a bounded inbox; it never waits on the LLM
- the responder owns memory and the turn scheduler, drains the inbox
  and, when the scheduler grants the floor, calls the gateway and
  broadcasts the reply

A third, optional task sends heartbeats and prunes silent peers.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .config import AgentConfig
from .llm.backends import BackendError, create_backend
from .llm.gateway import RequestGateway
from .memory import SELF_ROLE, ConversationEntry, ConversationMemory, build_prompt
from .mesh.codec import CodecError, DecodeError, decode, encode
from .mesh.message import MessageEnvelope, MessageKind
from .mesh.registry import PeerRegistry
from .mesh.transport import MAX_DATAGRAM_SIZE, MulticastTransport, TransportError
from .scheduler import (
    UNABLE_TO_RESPOND,
    FailurePolicy,
    SpeakingPolicy,
    TurnScheduler,
)
from .voice import VoiceOutput

logger = logging.getLogger(__name__)

EntryListener = Callable[[ConversationEntry], None]


@dataclass(frozen=True)
class AgentIdentity:
    """Who this agent is. Fixed for the lifetime of the process."""
    agent_id: str
    personality: str
    role: Optional[str] = None
    model: str = ""


class Agent:
    """
    One member of the swarm.

    Usage:
        agent = Agent.from_config(config)
        await agent.start()
        ...
        await agent.stop()

    or simply ``await agent.run()`` to run until cancelled.
    """

    def __init__(
        self,
        identity: AgentIdentity,
        transport: MulticastTransport,
        gateway: RequestGateway,
        scheduler: Optional[TurnScheduler] = None,
        memory: Optional[ConversationMemory] = None,
        registry: Optional[PeerRegistry] = None,
        processing_delay: float = 0.0,
        greeting: Optional[str] = None,
        failure_policy: FailurePolicy = FailurePolicy.SKIP,
        heartbeat_interval: float = 0.0,
        inbox_size: int = 256,
        voice: Optional[VoiceOutput] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.identity = identity
        self.transport = transport
        self.gateway = gateway
        self.scheduler = scheduler or TurnScheduler(identity.agent_id)
        self.memory = memory or ConversationMemory(identity.personality)
        self.registry = registry or PeerRegistry(local_id=identity.agent_id)
        self.processing_delay = processing_delay
        self.greeting = greeting
        self.failure_policy = failure_policy
        self.heartbeat_interval = heartbeat_interval
        self.voice = voice
        self._clock = clock

        self._inbox: "asyncio.Queue[Tuple[MessageEnvelope, float]]" = asyncio.Queue(maxsize=inbox_size)
        self._listeners: List[EntryListener] = []
        self._tasks: List[asyncio.Task] = []
        self._running = False

        # Metrics
        self._received = 0
        self._malformed = 0
        self._dropped = 0
        self._sent = 0
        self._send_errors = 0

    @property
    def agent_id(self) -> str:
        return self.identity.agent_id

    @property
    def is_running(self) -> bool:
        return self._running

    @classmethod
    def from_config(cls, config: AgentConfig) -> "Agent":
        """Build an agent and all of its components from configuration."""
        identity = AgentIdentity(
            agent_id=config.agent_id,
            personality=config.personality_text(),
            role=config.scheduler.role,
            model=config.backend.model,
        )
        transport = MulticastTransport(
            group=config.transport.group,
            port=config.transport.port,
            interface=config.transport.interface,
        )
        backend = create_backend(config.backend.kind, config.backend.settings())
        gateway = RequestGateway(
            backend,
            timeout=config.backend.timeout,
            max_retries=config.backend.max_retries,
        )
        policy = SpeakingPolicy(
            speak_probability=config.scheduler.speak_probability,
            turn_order=list(config.scheduler.turn_order),
            role=config.scheduler.role,
            max_rounds=config.scheduler.max_rounds,
        )
        scheduler = TurnScheduler(
            config.agent_id,
            policy=policy,
            quiet_period=config.scheduler.quiet_period,
            cooldown=config.scheduler.cooldown,
        )
        memory = ConversationMemory(
            identity.personality,
            max_entries=config.memory.max_entries,
            max_content_chars=config.memory.max_content_chars,
        )
        return cls(
            identity=identity,
            transport=transport,
            gateway=gateway,
            scheduler=scheduler,
            memory=memory,
            registry=PeerRegistry(peer_ttl=config.peer_ttl, local_id=config.agent_id),
            processing_delay=config.processing_delay_ms / 1000,
            greeting=config.greeting,
            failure_policy=config.scheduler.failure_policy,
            heartbeat_interval=config.heartbeat_interval,
            inbox_size=config.inbox_size,
            voice=VoiceOutput() if config.voice else None,
        )

    def on_entry(self, listener: EntryListener) -> None:
        """Register a callback for every entry added to memory."""
        self._listeners.append(listener)

    # === Lifecycle ===

    async def start(self) -> None:
        """
        Join the swarm and start the receiver and responder.

        Raises:
            TransportError: if the multicast group cannot be joined
        """
        if self._running:
            return

        if not self.transport.is_open:
            self.transport.join()

        self._running = True
        self.scheduler.start(self._clock())
        logger.info(f"Agent {self.agent_id} joined the swarm")

        if self.greeting and not self.scheduler.policy.is_debate:
            await self._send_greeting()

        self._tasks = [
            asyncio.create_task(self._receive_loop(), name=f"{self.agent_id}-receiver"),
            asyncio.create_task(self._respond_loop(), name=f"{self.agent_id}-responder"),
        ]
        if self.heartbeat_interval > 0:
            self._tasks.append(
                asyncio.create_task(self._heartbeat_loop(), name=f"{self.agent_id}-heartbeat")
            )

    async def stop(self) -> None:
        """Abort any in-flight request, stop all tasks and leave the group."""
        if not self._running:
            return
        self._running = False

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Agent task {task.get_name()} failed: {e}")
        self._tasks = []

        self.transport.close()
        await self.gateway.close()
        if self.voice:
            await self.voice.close()

        logger.info(f"Agent {self.agent_id} left the swarm")

    async def run(self) -> None:
        """Start and run until cancelled or a task dies."""
        await self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()

    # === Receiver ===

    async def _receive_loop(self) -> None:
        await self.transport.receive_loop(self._on_datagram)

    def _on_datagram(self, data: bytes, addr: Tuple[str, int]) -> None:
        """Decode, deduplicate and hand off one datagram."""
        try:
            envelope = decode(data)
        except DecodeError as e:
            self._malformed += 1
            logger.debug(f"Dropping malformed datagram from {addr[0]}: {e}")
            return

        if not self.registry.observe(envelope, time.time()):
            return
        if envelope.kind == MessageKind.HEARTBEAT:
            return
        if envelope.sender_id == self.agent_id:
            logger.warning(f"Another agent is using our id {self.agent_id}, ignoring its message")
            return

        self._received += 1
        try:
            self._inbox.put_nowait((envelope, self._clock()))
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(f"Inbox full, dropping message from '{envelope.sender_id}'")

    # === Responder ===

    async def _respond_loop(self) -> None:
        while self._running:
            now = self._clock()
            self.scheduler.tick(now)

            if self.scheduler.try_compose(now):
                await self._take_turn()
                continue

            timeout = self._wait_timeout(now)
            try:
                envelope, received_at = await asyncio.wait_for(self._inbox.get(), timeout=timeout)
            except asyncio.TimeoutError:
                continue

            self._accept(envelope, received_at)
            while not self._inbox.empty():
                self._accept(*self._inbox.get_nowait())

    def _wait_timeout(self, now: float) -> Optional[float]:
        """How long to wait for mail before the scheduler needs another look."""
        deadline = self.scheduler.next_deadline()
        if deadline is None or deadline <= now:
            # Nothing pending, or still waiting for our debate slot
            return None
        return deadline - now

    def _accept(self, envelope: MessageEnvelope, received_at: float) -> None:
        entry = ConversationEntry(envelope.sender_id, envelope.content, envelope.created_at)
        self.memory.append(entry)
        self.scheduler.on_message(envelope, received_at)
        self._notify(entry)

    async def _take_turn(self) -> None:
        snapshot = self.memory.snapshot()
        turn_sequence = self.scheduler.next_turn_sequence()

        if self.processing_delay > 0:
            await asyncio.sleep(self.processing_delay)

        system_prompt, messages = build_prompt(snapshot)
        try:
            text = await self.gateway.generate(system_prompt, messages)
        except BackendError as e:
            logger.error(f"Agent {self.agent_id} could not generate a reply: {e}")
            if self.failure_policy != FailurePolicy.NOTICE:
                self.scheduler.on_failure(self._clock())
                return
            text = UNABLE_TO_RESPOND

        self.scheduler.on_response(self._clock())

        try:
            envelope = self._fit(self._compose(text, turn_sequence))
        except CodecError as e:
            logger.error(f"Agent {self.agent_id} cannot encode its reply: {e}")
            self.scheduler.on_failure(self._clock())
            return

        entry = ConversationEntry(SELF_ROLE, envelope.content, envelope.created_at)
        self.memory.append(entry)
        self._notify(entry)

        if not await self._broadcast(envelope):
            self.scheduler.on_failure(self._clock())
            return

        self.scheduler.on_broadcast(self._clock(), turn_sequence)
        if self.voice:
            self.voice.speak(envelope.content)

    def _compose(self, text: str, turn_sequence: Optional[int]) -> MessageEnvelope:
        if turn_sequence is not None:
            return MessageEnvelope.debate_turn(self.agent_id, text, turn_sequence)
        return MessageEnvelope.chat(self.agent_id, text)

    def _fit(self, envelope: MessageEnvelope) -> MessageEnvelope:
        """Trim content so the encoded envelope fits in one datagram."""
        excess = len(encode(envelope)) - MAX_DATAGRAM_SIZE
        if excess <= 0:
            return envelope

        raw = envelope.content.encode("utf-8")
        content = raw[:len(raw) - excess].decode("utf-8", errors="ignore")
        logger.warning(f"Reply trimmed by {excess} bytes to fit one datagram")
        return MessageEnvelope(
            sender_id=envelope.sender_id,
            content=content,
            kind=envelope.kind,
            message_id=envelope.message_id,
            created_at=envelope.created_at,
            turn_sequence=envelope.turn_sequence,
        )

    async def _broadcast(self, envelope: MessageEnvelope) -> bool:
        """Send an envelope, marking its id seen so our echo is dropped."""
        try:
            data = encode(envelope)
        except CodecError as e:
            self._send_errors += 1
            logger.error(f"Agent {self.agent_id} cannot encode its message: {e}")
            return False

        self.registry.mark_seen(envelope.message_id)
        try:
            await self.transport.send(data)
        except TransportError as e:
            self._send_errors += 1
            logger.error(f"Agent {self.agent_id} failed to broadcast: {e}")
            return False
        self._sent += 1
        return True

    async def _send_greeting(self) -> None:
        envelope = MessageEnvelope.chat(self.agent_id, self.greeting)
        if await self._broadcast(envelope):
            entry = ConversationEntry(SELF_ROLE, envelope.content, envelope.created_at)
            self.memory.append(entry)
            self._notify(entry)

    # === Heartbeat ===

    async def _heartbeat_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.heartbeat_interval)
            await self._broadcast(MessageEnvelope.heartbeat(self.agent_id))
            self.registry.prune(time.time())

    def _notify(self, entry: ConversationEntry) -> None:
        for listener in self._listeners:
            try:
                listener(entry)
            except Exception as e:
                logger.error(f"Entry listener failed: {e}")

    def stats(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "received": self._received,
            "malformed": self._malformed,
            "dropped": self._dropped,
            "sent": self._sent,
            "send_errors": self._send_errors,
            "registry": self.registry.stats(),
            "memory": self.memory.stats(),
            "scheduler": self.scheduler.stats(),
            "gateway": self.gateway.stats(),
        }
