"""
LLM provider backends.

Every backend exposes the same capability:

    await backend.generate(system_prompt, messages) -> str

and reports failures as either ``TransientBackendError`` (worth retrying:
rate limits, server errors, dropped connections) or
``PermanentBackendError`` (bad credentials, malformed request). The
request gateway depends only on that contract.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1024

# HTTP statuses worth retrying
TRANSIENT_STATUSES = {408, 409, 425, 429, 500, 502, 503, 504, 529}


class BackendKind(Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OPENROUTER = "openrouter"
    LOCAL = "local"


class BackendError(Exception):
    """Base exception for backend failures."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientBackendError(BackendError):
    """Failure that may succeed on retry."""
    pass


class PermanentBackendError(BackendError):
    """Failure that will not succeed on retry."""
    pass


def classify_status(status: int, body: str) -> BackendError:
    """Map a non-2xx HTTP status to a backend error."""
    message = f"HTTP {status}: {body[:200]}"
    if status in TRANSIENT_STATUSES or status >= 500:
        return TransientBackendError(message, status=status)
    return PermanentBackendError(message, status=status)


@dataclass
class BackendSettings:
    """Connection settings shared by all providers."""
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS


class LLMBackend(ABC):
    """
    Base class for HTTP chat backends.

    Subclasses build the provider's request and pick the reply text out
    of its response. Session handling and error classification live here.
    """

    kind: BackendKind
    default_base_url: str = ""

    def __init__(self, settings: BackendSettings):
        self.settings = settings
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def base_url(self) -> str:
        return (self.settings.base_url or self.default_base_url).rstrip("/")

    @property
    def model(self) -> str:
        return self.settings.model

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def generate(self, system_prompt: str, messages: List[Dict[str, str]]) -> str:
        """
        Generate a reply to the conversation.

        Args:
            system_prompt: Personality / instructions
            messages: List of {"role": "user"|"assistant", "content": "..."}

        Returns:
            Reply text
        """
        url = self.endpoint()
        payload = self.build_payload(system_prompt, messages)
        data = await self._post_json(url, payload, self.headers())
        text = self.parse_response(data)
        if not text:
            raise TransientBackendError(f"{self.kind.value} returned an empty reply")
        return text.strip()

    async def _post_json(self, url: str, payload: dict, headers: Dict[str, str]) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.post(url, json=payload, headers=headers) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise classify_status(resp.status, body)
                return await resp.json(content_type=None)
        except aiohttp.ClientConnectionError as e:
            raise TransientBackendError(f"Connection to {self.kind.value} failed: {e}") from e
        except aiohttp.ContentTypeError as e:
            raise PermanentBackendError(f"Unexpected response from {self.kind.value}: {e}") from e
        except ValueError as e:
            raise PermanentBackendError(f"Malformed JSON from {self.kind.value}: {e}") from e
        except aiohttp.ClientResponseError as e:
            raise classify_status(e.status, e.message) from e

    @abstractmethod
    def endpoint(self) -> str:
        """Full URL of the chat endpoint."""
        pass

    def headers(self) -> Dict[str, str]:
        return {}

    @abstractmethod
    def build_payload(self, system_prompt: str, messages: List[Dict[str, str]]) -> dict:
        pass

    @abstractmethod
    def parse_response(self, data: Dict[str, Any]) -> str:
        pass


class OpenAIBackend(LLMBackend):
    """OpenAI Chat Completions (and compatible servers)."""

    kind = BackendKind.OPENAI
    default_base_url = "https://api.openai.com/v1"

    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def headers(self) -> Dict[str, str]:
        if self.settings.api_key:
            return {"Authorization": f"Bearer {self.settings.api_key}"}
        return {}

    def build_payload(self, system_prompt: str, messages: List[Dict[str, str]]) -> dict:
        chat = [{"role": "system", "content": system_prompt}] if system_prompt else []
        chat.extend(messages)
        return {
            "model": self.model,
            "messages": chat,
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_tokens,
            "stream": False,
        }

    def parse_response(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        return choices[0].get("message", {}).get("content") or ""


class OpenRouterBackend(OpenAIBackend):
    """OpenRouter, which speaks the OpenAI protocol."""

    kind = BackendKind.OPENROUTER
    default_base_url = "https://openrouter.ai/api/v1"

    def headers(self) -> Dict[str, str]:
        headers = super().headers()
        headers["X-Title"] = "conclave"
        return headers


class AnthropicBackend(LLMBackend):
    """Anthropic Messages API."""

    kind = BackendKind.ANTHROPIC
    default_base_url = "https://api.anthropic.com"
    api_version = "2023-06-01"

    def endpoint(self) -> str:
        return f"{self.base_url}/v1/messages"

    def headers(self) -> Dict[str, str]:
        headers = {"anthropic-version": self.api_version}
        if self.settings.api_key:
            headers["x-api-key"] = self.settings.api_key
        return headers

    def build_payload(self, system_prompt: str, messages: List[Dict[str, str]]) -> dict:
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.settings.max_tokens,
            "temperature": self.settings.temperature,
        }
        if system_prompt:
            payload["system"] = system_prompt
        return payload

    def parse_response(self, data: Dict[str, Any]) -> str:
        blocks = data.get("content") or []
        return "".join(b.get("text", "") for b in blocks if b.get("type") == "text")


class GoogleBackend(LLMBackend):
    """Google Gemini generateContent API."""

    kind = BackendKind.GOOGLE
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def headers(self) -> Dict[str, str]:
        if self.settings.api_key:
            return {"x-goog-api-key": self.settings.api_key}
        return {}

    def build_payload(self, system_prompt: str, messages: List[Dict[str, str]]) -> dict:
        contents = [
            {
                "role": "model" if m["role"] == "assistant" else "user",
                "parts": [{"text": m["content"]}],
            }
            for m in messages
        ]
        payload = {
            "contents": contents,
            "generationConfig": {
                "temperature": self.settings.temperature,
                "maxOutputTokens": self.settings.max_tokens,
            },
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return payload

    def parse_response(self, data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = candidates[0].get("content", {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts)


class OllamaBackend(LLMBackend):
    """Local models served by Ollama."""

    kind = BackendKind.LOCAL
    default_base_url = "http://localhost:11434"

    def endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    def build_payload(self, system_prompt: str, messages: List[Dict[str, str]]) -> dict:
        chat = [{"role": "system", "content": system_prompt}] if system_prompt else []
        chat.extend(messages)
        return {
            "model": self.model,
            "messages": chat,
            "stream": False,
            "options": {
                "temperature": self.settings.temperature,
                "num_predict": self.settings.max_tokens,
            },
        }

    def parse_response(self, data: Dict[str, Any]) -> str:
        return data.get("message", {}).get("content") or ""

    async def health_check(self) -> bool:
        """Check if Ollama is reachable."""
        try:
            session = await self._get_session()
            async with session.get(
                f"{self.base_url}/api/tags",
                timeout=aiohttp.ClientTimeout(total=3),
            ) as resp:
                return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False


BACKENDS = {
    BackendKind.OPENAI: OpenAIBackend,
    BackendKind.ANTHROPIC: AnthropicBackend,
    BackendKind.GOOGLE: GoogleBackend,
    BackendKind.OPENROUTER: OpenRouterBackend,
    BackendKind.LOCAL: OllamaBackend,
}


def create_backend(kind: BackendKind, settings: BackendSettings) -> LLMBackend:
    """Instantiate the backend for a provider."""
    try:
        backend_cls = BACKENDS[kind]
    except KeyError:
        raise ValueError(f"Unknown backend: {kind}")
    logger.debug(f"Using {kind.value} backend with model {settings.model}")
    return backend_cls(settings)
