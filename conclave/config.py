"""
Configuration for a swarm agent.

Handles:
- Multicast transport settings
- LLM backend selection and credentials
- Memory window bounds
- Turn-taking policy
- Personality resolution (inline text or file)
"""

import ipaddress
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .llm.backends import BackendKind, BackendSettings
from .memory import DEFAULT_MAX_CONTENT_CHARS, DEFAULT_MAX_ENTRIES
from .mesh.codec import MAX_SENDER_BYTES
from .mesh.transport import DEFAULT_GROUP, DEFAULT_PORT
from .scheduler import DEFAULT_COOLDOWN_SEC, DEFAULT_QUIET_PERIOD_SEC, FailurePolicy

logger = logging.getLogger(__name__)

DEFAULT_PERSONALITY = "You are a helpful AI agent. Keep responses concise and professional."
DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_GREETING = "Hi"

MAX_TIMEOUT_SEC = 300
MAX_RETRIES_LIMIT = 10
MAX_PROCESSING_DELAY_MS = 60000

AGENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

API_KEY_ENV_VARS = {
    BackendKind.OPENAI: "OPENAI_API_KEY",
    BackendKind.ANTHROPIC: "ANTHROPIC_API_KEY",
    BackendKind.GOOGLE: "GEMINI_API_KEY",
    BackendKind.OPENROUTER: "OPENROUTER_API_KEY",
}


class ConfigError(Exception):
    """Invalid agent configuration."""
    pass


@dataclass
class TransportConfig:
    """Multicast group and interface."""
    group: str = DEFAULT_GROUP
    port: int = DEFAULT_PORT
    interface: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.group}:{self.port}"

    @classmethod
    def parse_address(cls, address: str, interface: Optional[str] = None) -> "TransportConfig":
        """Build from an ``ADDRESS:PORT`` string."""
        host, sep, port = address.rpartition(":")
        if not sep or not host:
            raise ConfigError(f"Expected ADDRESS:PORT, got '{address}'")
        try:
            return cls(group=host, port=int(port), interface=interface)
        except ValueError:
            raise ConfigError(f"Invalid port in '{address}'")

    def to_dict(self) -> dict:
        return {
            "group": self.group,
            "port": self.port,
            "interface": self.interface,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransportConfig":
        return cls(**data)


@dataclass
class BackendConfig:
    """LLM backend selection and request limits."""
    type: str = BackendKind.OPENAI.value
    model: str = DEFAULT_MODEL
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    timeout: float = 30.0
    max_retries: int = 3
    temperature: float = 0.7
    max_tokens: int = 1024

    @property
    def kind(self) -> BackendKind:
        try:
            return BackendKind(self.type)
        except ValueError:
            raise ConfigError(f"Unknown LLM backend '{self.type}'")

    def resolve_api_key(self) -> Optional[str]:
        """Explicit key first, then the backend's environment variable."""
        if self.api_key:
            return self.api_key
        env_var = API_KEY_ENV_VARS.get(self.kind)
        return os.environ.get(env_var) if env_var else None

    def settings(self) -> BackendSettings:
        return BackendSettings(
            model=self.model,
            api_key=self.resolve_api_key(),
            base_url=self.endpoint,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

    def to_dict(self) -> dict:
        # The API key is deliberately not persisted
        return {
            "type": self.type,
            "model": self.model,
            "endpoint": self.endpoint,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BackendConfig":
        known_fields = {
            "type", "model", "api_key", "endpoint", "timeout",
            "max_retries", "temperature", "max_tokens",
        }
        return cls(**{k: v for k, v in data.items() if k in known_fields})


@dataclass
class MemoryConfig:
    """Conversation window bounds."""
    max_entries: int = DEFAULT_MAX_ENTRIES
    max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS

    def to_dict(self) -> dict:
        return {
            "max_entries": self.max_entries,
            "max_content_chars": self.max_content_chars,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryConfig":
        return cls(**data)


@dataclass
class SchedulerConfig:
    """Turn-taking policy."""
    quiet_period: float = DEFAULT_QUIET_PERIOD_SEC
    cooldown: float = DEFAULT_COOLDOWN_SEC
    speak_probability: float = 1.0
    role: Optional[str] = None
    turn_order: List[str] = field(default_factory=list)
    max_rounds: Optional[int] = None
    on_failure: str = FailurePolicy.SKIP.value

    @property
    def failure_policy(self) -> FailurePolicy:
        try:
            return FailurePolicy(self.on_failure)
        except ValueError:
            raise ConfigError(f"Unknown failure policy '{self.on_failure}'")

    def to_dict(self) -> dict:
        return {
            "quiet_period": self.quiet_period,
            "cooldown": self.cooldown,
            "speak_probability": self.speak_probability,
            "role": self.role,
            "turn_order": self.turn_order,
            "max_rounds": self.max_rounds,
            "on_failure": self.on_failure,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SchedulerConfig":
        return cls(**data)


@dataclass
class AgentConfig:
    """
    Complete configuration of one agent process.

    Can be stored as JSON; command-line options override file values.
    """
    agent_id: str = ""
    personality: str = DEFAULT_PERSONALITY
    personality_file: Optional[str] = None

    transport: TransportConfig = field(default_factory=TransportConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    processing_delay_ms: int = 5000
    greeting: Optional[str] = DEFAULT_GREETING
    heartbeat_interval: float = 30.0
    peer_ttl: float = 300.0
    inbox_size: int = 256
    voice: bool = False

    def personality_text(self) -> str:
        """
        The effective system prompt.

        Reads ``personality_file`` when set, otherwise returns the inline
        ``personality``.
        """
        if not self.personality_file:
            return self.personality

        path = Path(self.personality_file)
        if not path.exists():
            raise ConfigError(f"Personality file '{path}' does not exist")
        if not path.is_file():
            raise ConfigError(f"'{path}' is not a file")
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to read personality file '{path}': {e}")
        if not content.strip():
            raise ConfigError("Personality file is empty")
        return content

    def validate(self) -> None:
        """
        Check the configuration, raising ConfigError on the first problem.
        """
        if not self.agent_id.strip():
            raise ConfigError("Agent ID cannot be empty")
        if not AGENT_ID_PATTERN.match(self.agent_id):
            raise ConfigError(
                "Agent ID can only contain alphanumeric characters, hyphens, and underscores"
            )
        if len(self.agent_id.encode("utf-8")) > MAX_SENDER_BYTES:
            raise ConfigError(f"Agent ID cannot be longer than {MAX_SENDER_BYTES} bytes")

        try:
            group = ipaddress.IPv4Address(self.transport.group)
        except ValueError:
            raise ConfigError(f"Address {self.transport.group} is not a valid IPv4 address")
        if not group.is_multicast:
            raise ConfigError(f"Address {self.transport.group} is not a valid multicast address")
        if not 0 < self.transport.port < 65536:
            raise ConfigError(f"Port {self.transport.port} is out of range")

        if self.backend.type not in {kind.value for kind in BackendKind}:
            raise ConfigError(f"Unknown LLM backend '{self.backend.type}'")
        if self.backend.timeout < 1 or self.backend.timeout > MAX_TIMEOUT_SEC:
            raise ConfigError(f"Timeout must be between 1 and {MAX_TIMEOUT_SEC} seconds")
        if self.backend.max_retries < 0 or self.backend.max_retries > MAX_RETRIES_LIMIT:
            raise ConfigError(f"Max retries cannot exceed {MAX_RETRIES_LIMIT}")
        if not self.backend.model.strip():
            raise ConfigError("Model name cannot be empty")

        if self.processing_delay_ms < 0 or self.processing_delay_ms > MAX_PROCESSING_DELAY_MS:
            raise ConfigError("Processing delay cannot exceed 60 seconds")

        if not 0.0 < self.scheduler.speak_probability <= 1.0:
            raise ConfigError("Speak probability must be in (0, 1]")
        if self.scheduler.quiet_period < 0 or self.scheduler.cooldown < 0:
            raise ConfigError("Quiet period and cooldown cannot be negative")
        if self.scheduler.turn_order and self.scheduler.role not in self.scheduler.turn_order:
            raise ConfigError(
                f"Role '{self.scheduler.role}' is not in debate order {self.scheduler.turn_order}"
            )
        if self.scheduler.on_failure not in {policy.value for policy in FailurePolicy}:
            raise ConfigError(f"Unknown failure policy '{self.scheduler.on_failure}'")
        if self.scheduler.max_rounds is not None and self.scheduler.max_rounds < 1:
            raise ConfigError("Max rounds must be at least 1")

        if self.memory.max_entries < 2:
            raise ConfigError("Memory must hold at least 2 entries")
        if self.memory.max_content_chars < 1:
            raise ConfigError("Memory content limit must be positive")

        if self.inbox_size < 1:
            raise ConfigError("Inbox size must be at least 1")
        if self.heartbeat_interval < 0 or self.peer_ttl < 0:
            raise ConfigError("Heartbeat interval and peer TTL cannot be negative")

        if self.personality_file:
            self.personality_text()

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "personality": self.personality,
            "personality_file": self.personality_file,
            "transport": self.transport.to_dict(),
            "backend": self.backend.to_dict(),
            "memory": self.memory.to_dict(),
            "scheduler": self.scheduler.to_dict(),
            "processing_delay_ms": self.processing_delay_ms,
            "greeting": self.greeting,
            "heartbeat_interval": self.heartbeat_interval,
            "peer_ttl": self.peer_ttl,
            "inbox_size": self.inbox_size,
            "voice": self.voice,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgentConfig":
        config = cls(
            agent_id=data.get("agent_id", ""),
            personality=data.get("personality", DEFAULT_PERSONALITY),
            personality_file=data.get("personality_file"),
            processing_delay_ms=data.get("processing_delay_ms", 5000),
            greeting=data.get("greeting", DEFAULT_GREETING),
            heartbeat_interval=data.get("heartbeat_interval", 30.0),
            peer_ttl=data.get("peer_ttl", 300.0),
            inbox_size=data.get("inbox_size", 256),
            voice=data.get("voice", False),
        )
        if "transport" in data:
            config.transport = TransportConfig.from_dict(data["transport"])
        if "backend" in data:
            config.backend = BackendConfig.from_dict(data["backend"])
        if "memory" in data:
            config.memory = MemoryConfig.from_dict(data["memory"])
        if "scheduler" in data:
            config.scheduler = SchedulerConfig.from_dict(data["scheduler"])
        return config

    def save(self, path: Path) -> None:
        """Save configuration as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: Path) -> "AgentConfig":
        """Load configuration from a JSON file."""
        path = Path(path)
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to load config '{path}': {e}")
        try:
            return cls.from_dict(data)
        except TypeError as e:
            raise ConfigError(f"Invalid config '{path}': {e}")
