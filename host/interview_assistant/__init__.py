# interview_assistant/__init__.py
"""
Interview Assistant Package
"""

from .config import Config, setup_logging
from .state import TurnState, CancelToken
from .conversation import ConversationLog, Utterance, Speaker
from .audio import AudioCapture, AudioClip, AudioOutput
from .speech import Transcriber, SpeechPlayer, PlaybackResult
from .streaming import ResponseStreamer, ResponseStream, ResponseOptions
from .sessions import SessionStore, InMemorySessionStore, HttpSessionStore
from .controller import TurnController, ControllerEvent
from .utils import retry_with_backoff

__all__ = [
    'Config',
    'setup_logging',
    'TurnState',
    'CancelToken',
    'ConversationLog',
    'Utterance',
    'Speaker',
    'AudioCapture',
    'AudioClip',
    'AudioOutput',
    'Transcriber',
    'SpeechPlayer',
    'PlaybackResult',
    'ResponseStreamer',
    'ResponseStream',
    'ResponseOptions',
    'SessionStore',
    'InMemorySessionStore',
    'HttpSessionStore',
    'TurnController',
    'ControllerEvent',
    'retry_with_backoff',
]
