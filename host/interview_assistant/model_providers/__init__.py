"""
Model provider implementations for the interview assistant
"""

from .base import (
    ControlSignal,
    StreamEvent,
    TranscriptionProvider,
    ChatCompletionProvider,
    TextToSpeechProvider
)

from .factory import ModelProviderFactory

__all__ = [
    'ControlSignal',
    'StreamEvent',
    'TranscriptionProvider',
    'ChatCompletionProvider',
    'TextToSpeechProvider',
    'ModelProviderFactory'
]
