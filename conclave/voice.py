"""
Optional spoken output of agent replies.

Speech runs out of band through the platform's text-to-speech command
(``say`` on macOS, ``espeak`` elsewhere). Failures are logged and never
reach the agent loop.
"""

import asyncio
import logging
import platform
import shutil
from typing import List, Optional, Set

logger = logging.getLogger(__name__)


def find_speech_command() -> Optional[List[str]]:
    """Locate a text-to-speech command on this machine."""
    if platform.system() == "Darwin" and shutil.which("say"):
        return ["say"]
    for name in ("espeak-ng", "espeak"):
        if shutil.which(name):
            return [name]
    return None


class VoiceOutput:
    """Fire-and-forget text-to-speech."""

    def __init__(self, enabled: bool = True, command: Optional[List[str]] = None):
        self.enabled = enabled
        self.command = command if command is not None else find_speech_command()
        self._tasks: Set[asyncio.Task] = set()

        if self.enabled and not self.command:
            logger.warning("No text-to-speech command found, voice output disabled")
            self.enabled = False

    def speak(self, text: str) -> Optional[asyncio.Task]:
        """Schedule playback of text without waiting for it."""
        if not self.enabled or not text:
            return None
        task = asyncio.create_task(self._play(text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _play(self, text: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                text,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning(f"Voice output failed: {e}")
            return

        try:
            returncode = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        if returncode != 0:
            logger.warning(f"Speech command exited with {returncode}")

    async def close(self) -> None:
        """Stop any speech still playing."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
