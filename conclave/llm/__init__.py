"""
LLM access for agents.

Provides:
- Provider backends (OpenAI, Anthropic, Google, OpenRouter, local Ollama)
- Request gateway with timeout, retry and backoff
"""

from .backends import (
    BackendKind,
    BackendSettings,
    LLMBackend,
    BackendError,
    TransientBackendError,
    PermanentBackendError,
    create_backend,
)
from .gateway import RequestGateway, RetryState, BackendUnavailable, backoff_delay

__all__ = [
    # Backends
    "BackendKind",
    "BackendSettings",
    "LLMBackend",
    "BackendError",
    "TransientBackendError",
    "PermanentBackendError",
    "create_backend",
    # Gateway
    "RequestGateway",
    "RetryState",
    "BackendUnavailable",
    "backoff_delay",
]
