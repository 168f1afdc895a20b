# interview_assistant/model_providers/base.py
"""
Base interfaces for model providers
"""

import io
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional


@dataclass(frozen=True)
class ControlSignal:
    """Structured interview-control request emitted by the model"""
    kind: str  # "switch_question" or "end_interview"
    reason: str = ""


@dataclass(frozen=True)
class StreamEvent:
    """One item of a streamed reply: a text fragment or a control signal"""
    text: Optional[str] = None
    control: Optional[ControlSignal] = None


class TranscriptionProvider(ABC):
    """Base interface for speech-to-text providers"""

    @abstractmethod
    async def transcribe(
        self,
        audio_buffer: io.BytesIO,
        language: Optional[str] = None,
        **kwargs
    ) -> str:
        """Transcribe audio to text"""
        pass


class ChatCompletionProvider(ABC):
    """Base interface for streaming chat completion providers"""

    @abstractmethod
    def stream_reply(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a reply. Text fragments are yielded as they arrive; control
        signals are yielded once the tool-call arguments are complete.
        Closing the iterator must close the underlying connection.
        """
        pass


class TextToSpeechProvider(ABC):
    """Base interface for text-to-speech providers"""

    @abstractmethod
    async def synthesize(
        self,
        text: str,
        voice: Optional[str] = None,
        **kwargs
    ) -> bytes:
        """Convert text to speech audio data"""
        pass
