# interview_assistant/speech.py
"""
Speech-to-text and text-to-speech with a paced typewriter reveal
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from .audio import AudioClip
from .errors import EmptyAudio, PayloadTooLarge, TranscriptionFailed, SynthesisFailed, PlaybackFailed
from .model_providers import TranscriptionProvider, TextToSpeechProvider
from .state import CancelToken

logger = logging.getLogger(__name__)

# Speech-to-text upload ceiling
MAX_AUDIO_BYTES = 25 * 1024 * 1024

_WORD = re.compile(r"\S+")


class Transcriber:
    """Single-shot speech-to-text. No retries; that is the caller's policy."""

    def __init__(
        self,
        provider: TranscriptionProvider,
        language: Optional[str] = "en",
        max_bytes: int = MAX_AUDIO_BYTES,
    ):
        self.provider = provider
        self.language = language
        self.max_bytes = max_bytes

    async def transcribe(self, clip: AudioClip, language: Optional[str] = None) -> str:
        if not clip.data:
            raise EmptyAudio()
        if clip.size > self.max_bytes:
            raise PayloadTooLarge(f"Audio clip is {clip.size} bytes, limit is {self.max_bytes}")

        logger.info(f"Transcribing {clip.size} bytes ({clip.duration_ms:.0f} ms)")
        try:
            text = await self.provider.transcribe(clip.as_file(), language=language or self.language)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Transcription error: {e}")
            raise TranscriptionFailed(cause=e) from e

        logger.info(f"Transcribed: {text!r}")
        return text


@dataclass
class PlaybackResult:
    completed: bool
    revealed_text: str


def word_boundaries(text: str) -> List[int]:
    """End offsets of each word, so text[:end] never splits a word"""
    return [match.end() for match in _WORD.finditer(text)]


class SpeechPlayer:
    """
    Plays synthesized speech while revealing the text word by word.

    The reveal is paced at audio_duration / word_count per word, falling back
    to a per-character estimate when the duration is unknown. Only one clip
    plays at a time; after any stop the output is given settle_ms to release
    before the next clip starts.
    """

    def __init__(
        self,
        tts: TextToSpeechProvider,
        output,
        voice: Optional[str] = None,
        settle_ms: int = 300,
        fallback_ms_per_char: float = 67,
    ):
        self.tts = tts
        self.output = output
        self.voice = voice
        self.settle_ms = settle_ms
        self.fallback_ms_per_char = fallback_ms_per_char
        self._stopped_at: Optional[float] = None

    async def play(
        self,
        text: str,
        cancel_token: CancelToken,
        on_partial_text: Callable[[str], None],
    ) -> PlaybackResult:
        if cancel_token.cancelled:
            return PlaybackResult(completed=False, revealed_text="")

        boundaries = word_boundaries(text)
        if not boundaries:
            return PlaybackResult(completed=True, revealed_text=text)

        await self._settle()

        audio = await self._synthesize(text, cancel_token)
        if audio is None:
            logger.info("Playback cancelled during synthesis")
            return PlaybackResult(completed=False, revealed_text="")

        revealed = ""
        completed = False
        try:
            try:
                duration_ms = self.output.load(audio)
            except PlaybackFailed:
                raise
            except Exception as e:
                raise PlaybackFailed(cause=e) from e

            if cancel_token.cancelled:
                return PlaybackResult(completed=False, revealed_text="")

            if not duration_ms:
                duration_ms = len(text) * self.fallback_ms_per_char
                logger.debug(f"Audio duration unknown, estimating {duration_ms:.0f} ms")
            per_word = duration_ms / len(boundaries) / 1000

            self.output.play()
            logger.info(f"Speaking {len(boundaries)} words over {duration_ms:.0f} ms")

            for i, end in enumerate(boundaries):
                if cancel_token.cancelled:
                    break
                revealed = text[:end]
                on_partial_text(revealed)
                if i < len(boundaries) - 1 and await cancel_token.sleep(per_word):
                    break
            else:
                # Text must not finish ahead of the audio
                await self._wait_for_audio(cancel_token)

            completed = not cancel_token.cancelled
            if completed:
                revealed = text
            return PlaybackResult(completed=completed, revealed_text=revealed)
        finally:
            if not completed:
                logger.info(f"Playback stopped after {len(revealed)} of {len(text)} characters")
            self._halt()

    async def stop(self) -> None:
        """Stop any playback and let the device settle. Safe to call repeatedly."""
        if self._halt():
            logger.info("Stopped active playback")
        await self._settle()

    async def _synthesize(self, text: str, cancel_token: CancelToken) -> Optional[bytes]:
        synth = asyncio.ensure_future(self.tts.synthesize(text, voice=self.voice))
        cancelled = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({synth, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()

        if not synth.done():
            synth.cancel()
            return None
        try:
            audio = synth.result()
        except Exception as e:
            logger.error(f"TTS error: {e}")
            raise SynthesisFailed(cause=e) from e
        if cancel_token.cancelled:
            return None
        return audio

    async def _wait_for_audio(self, cancel_token: CancelToken) -> None:
        if self.output.ended:
            return
        done = asyncio.ensure_future(self.output.wait_until_done())
        cancelled = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({done, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            done.cancel()
            cancelled.cancel()

    def _halt(self) -> bool:
        if self.output.stop():
            self._stopped_at = asyncio.get_running_loop().time()
            return True
        return False

    async def _settle(self) -> None:
        if self._stopped_at is None:
            return
        remaining = self.settle_ms / 1000 - (asyncio.get_running_loop().time() - self._stopped_at)
        if remaining > 0:
            await asyncio.sleep(remaining)
