# interview_assistant/errors.py
"""
Error taxonomy for the interview turn loop
"""

from typing import Optional


class InterviewError(Exception):
    """Base class for every error the turn loop knows how to surface"""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message or self.user_message)
        self.cause = cause

    @property
    def code(self) -> str:
        return type(self).__name__


class DeviceUnavailable(InterviewError):
    user_message = "Could not access the microphone. Please check permissions and that a device is connected."


class AlreadyRecording(InterviewError):
    user_message = "Already recording."


class RecordingTooShort(InterviewError):
    user_message = "Recording was too short. Please record for at least 1 second."


class EmptyAudio(InterviewError):
    user_message = "No audio data was collected during recording."


class PayloadTooLarge(InterviewError):
    user_message = "The recording is too large to transcribe. Please keep answers shorter."


class TranscriptionFailed(InterviewError):
    user_message = "Sorry, I couldn't understand that. Please try recording again."


class StreamFailed(InterviewError):
    user_message = "Sorry, I encountered an error. Could you please repeat that?"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None, partial_text: str = ""):
        super().__init__(message, cause)
        self.partial_text = partial_text


class SynthesisFailed(InterviewError):
    user_message = "Could not generate speech for the interviewer's reply."


class PlaybackFailed(InterviewError):
    user_message = "Audio playback failed."


class SessionNotFound(InterviewError):
    user_message = "The interview session could not be found."


class SessionAlreadyEnded(InterviewError):
    user_message = "This interview has already concluded."


class SessionError(InterviewError):
    """Transport-level failure talking to the session backend"""

    user_message = "Could not reach the interview backend."


class TurnInProgress(InterviewError):
    user_message = "Please wait for the interviewer to respond before recording."
