# interview_assistant/state.py
"""
Turn states and cooperative cancellation for the interview loop
"""

import asyncio
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class TurnState(Enum):
    """Turn controller states. Exactly one is active at any instant."""
    IDLE = "idle"                                # Waiting for the candidate
    RECORDING = "recording"                      # Microphone open
    TRANSCRIBING = "transcribing"                # Clip sent to speech-to-text
    GENERATING_RESPONSE = "generating_response"  # Streaming the interviewer reply
    SPEAKING = "speaking"                        # Playing the reply with typed reveal


class CancelToken:
    """
    Cancellation token shared between the controller and one activity.

    The controller calls cancel(); the activity checks `cancelled` at its
    checkpoints or suspends on sleep()/wait(), both of which wake as soon as
    the token is cancelled.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.debug(f"Cancelling {self.name or 'activity'}")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return True if woken by cancellation"""
        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def __repr__(self) -> str:
        return f"CancelToken({self.name!r}, cancelled={self.cancelled})"
