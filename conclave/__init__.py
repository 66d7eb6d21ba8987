"""
Conclave - a swarm of LLM agents on the local network

Autonomous agents join a UDP multicast group, listen to each other, and
take turns replying through the LLM provider of their choice.

Example:
    >>> from conclave import Agent, AgentConfig
    >>> config = AgentConfig(agent_id="researcher")
    >>> config.validate()
    >>> await Agent.from_config(config).run()
"""

__version__ = "0.1.0"

from .config import AgentConfig, ConfigError
from .agent import Agent, AgentIdentity

__all__ = [
    "__version__",
    "AgentConfig",
    "ConfigError",
    "Agent",
    "AgentIdentity",
]
