"""
Resilient request gateway around an LLM backend.

Applies a timeout to every attempt and retries transient failures with
exponential backoff and jitter. Permanent failures surface immediately.
Only one request is ever in flight per gateway.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from .backends import (
    BackendError,
    LLMBackend,
    PermanentBackendError,
    TransientBackendError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SEC = 1.0
DEFAULT_MAX_DELAY_SEC = 30.0
DEFAULT_JITTER = 0.25


class BackendUnavailable(BackendError):
    """All retries were used up."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(f"Backend unavailable after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def backoff_delay(
    attempt: int,
    base: float = DEFAULT_BASE_DELAY_SEC,
    cap: float = DEFAULT_MAX_DELAY_SEC,
    jitter: float = DEFAULT_JITTER,
    sample: float = 0.5,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    Exponential: base, 2*base, 4*base, ... capped at ``cap``. ``sample``
    in [0, 1) spreads the delay by ±``jitter`` of its value; 0.5 means
    no spread.
    """
    if attempt < 1:
        return 0.0
    delay = min(cap, base * (2 ** (attempt - 1)))
    return max(0.0, delay * (1 + jitter * (2 * sample - 1)))


@dataclass
class RetryState:
    """Progress of a single logical request."""
    attempt_count: int = 0
    next_delay: float = 0.0

    def record_failure(
        self,
        base: float,
        cap: float,
        jitter: float,
        sample: float,
    ) -> float:
        """Count a failed attempt and compute the wait before the next one."""
        self.attempt_count += 1
        self.next_delay = backoff_delay(self.attempt_count, base, cap, jitter, sample)
        return self.next_delay


class RequestGateway:
    """
    Wraps a backend with timeout, retry and single-flight.

    Usage:
        gateway = RequestGateway(backend, timeout=30, max_retries=3)
        try:
            text = await gateway.generate(system_prompt, messages)
        except BackendError:
            ...  # failed turn
    """

    def __init__(
        self,
        backend: LLMBackend,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SEC,
        max_delay: float = DEFAULT_MAX_DELAY_SEC,
        jitter: float = DEFAULT_JITTER,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._lock = asyncio.Lock()

        # Metrics
        self._requests = 0
        self._attempts = 0
        self._failures = 0
        self._last_latency_ms = 0.0

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    async def generate(self, system_prompt: str, messages: List[Dict[str, str]]) -> str:
        """
        Generate a reply, retrying transient failures.

        Raises:
            PermanentBackendError: on a non-retryable failure
            BackendUnavailable: when retries are exhausted
        """
        async with self._lock:
            self._requests += 1
            state = RetryState()
            start = time.time()

            while True:
                self._attempts += 1
                try:
                    text = await asyncio.wait_for(
                        self.backend.generate(system_prompt, messages),
                        timeout=self.timeout,
                    )
                    self._last_latency_ms = (time.time() - start) * 1000
                    if state.attempt_count:
                        logger.info(f"Backend succeeded after {state.attempt_count + 1} attempts")
                    return text
                except asyncio.TimeoutError as e:
                    error: BaseException = e
                    logger.warning(f"Backend attempt {state.attempt_count + 1} timed out after {self.timeout}s")
                except TransientBackendError as e:
                    error = e
                    logger.warning(f"Backend attempt {state.attempt_count + 1} failed: {e}")
                except PermanentBackendError as e:
                    self._failures += 1
                    logger.error(f"Backend request rejected: {e}")
                    raise
                except BackendError as e:
                    self._failures += 1
                    logger.error(f"Backend request failed: {e}")
                    raise PermanentBackendError(str(e), status=e.status) from e
                except Exception as e:
                    self._failures += 1
                    logger.error(f"Backend raised unexpected error: {e}")
                    raise PermanentBackendError(f"Unexpected backend error: {e}") from e

                delay = state.record_failure(
                    self.base_delay, self.max_delay, self.jitter, self._rng.random()
                )
                if state.attempt_count > self.max_retries:
                    self._failures += 1
                    logger.error(f"Giving up after {state.attempt_count} attempts")
                    raise BackendUnavailable(state.attempt_count, error)

                logger.debug(f"Retrying in {delay:.2f}s")
                await self._sleep(delay)

    async def close(self) -> None:
        await self.backend.close()

    def stats(self) -> dict:
        return {
            "requests": self._requests,
            "attempts": self._attempts,
            "failures": self._failures,
            "last_latency_ms": self._last_latency_ms,
        }
