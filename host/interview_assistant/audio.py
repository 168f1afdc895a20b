# interview_assistant/audio.py
"""
Microphone capture and speaker output
"""

import asyncio
import io
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
import soundfile as sf

from .errors import DeviceUnavailable, AlreadyRecording, RecordingTooShort, EmptyAudio, PlaybackFailed

logger = logging.getLogger(__name__)


def _open_input_stream(**kwargs):
    # sounddevice needs PortAudio at import time, so import on first use
    import sounddevice as sd
    return sd.InputStream(**kwargs)


def _open_output_stream(**kwargs):
    import sounddevice as sd
    return sd.OutputStream(**kwargs)


def _callback_stop():
    import sounddevice as sd
    return sd.CallbackStop()


@dataclass
class AudioClip:
    """A finalized recording, WAV encoded"""
    data: bytes
    sample_rate: int
    duration_ms: float
    filename: str = "recording.wav"
    mime_type: str = "audio/wav"

    @property
    def size(self) -> int:
        return len(self.data)

    def as_file(self) -> io.BytesIO:
        buffer = io.BytesIO(self.data)
        buffer.name = self.filename
        return buffer


class AudioCapture:
    """
    Start/stop microphone recorder producing one clip per session.

    Only one capture session may be open at a time. The input stream is
    released on stop(), on error and on close(), whichever comes first.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        min_duration_ms: int = 1000,
        stream_factory: Optional[Callable[..., object]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.min_duration_ms = min_duration_ms
        self.stream_factory = stream_factory or _open_input_stream
        self.clock = clock

        self.stream = None
        self.audio_queue: "queue.Queue[bytes]" = queue.Queue()
        self._active = False
        self._opening: Optional[asyncio.Future] = None
        self._started_at: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def recording(self) -> bool:
        return self._active

    async def start(self) -> None:
        """Open the microphone and begin buffering audio"""
        if self._active:
            raise AlreadyRecording()

        self._active = True
        self._started_at = None
        self.audio_queue = queue.Queue()

        loop = asyncio.get_running_loop()
        self._opening = loop.run_in_executor(None, self._open_stream)
        try:
            await self._opening
        except Exception as e:
            self._active = False
            logger.error(f"Could not open microphone: {e}")
            raise DeviceUnavailable(cause=e) from e
        finally:
            self._opening = None

        if not self._active:
            # close() ran while the device was opening
            self._release()
            return

        logger.info("Started audio recording")

    async def stop(self) -> Optional[AudioClip]:
        """Finish the capture session and return the clip"""
        if self._opening is not None:
            try:
                await asyncio.shield(self._opening)
            except Exception:
                # start() reports the device failure
                return None

        if not self._active:
            logger.warning("stop() called but no recording is active")
            return None

        elapsed_ms = 0.0
        if self._started_at is not None:
            elapsed_ms = (self.clock() - self._started_at) * 1000

        self._active = False
        self._release()
        frames = self._drain()
        logger.info(f"Stopped audio recording after {elapsed_ms:.0f} ms ({len(frames)} frames)")

        if elapsed_ms < self.min_duration_ms:
            raise RecordingTooShort(f"Recording lasted {elapsed_ms:.0f} ms, minimum is {self.min_duration_ms} ms")
        if not frames:
            raise EmptyAudio()

        return AudioClip(
            data=self._frames_to_wav(frames),
            sample_rate=self.sample_rate,
            duration_ms=elapsed_ms,
        )

    async def close(self) -> None:
        """Release the microphone without producing a clip"""
        if self._active:
            logger.info("Discarding active recording")
        self._active = False
        if self._opening is None:
            self._release()
        self._drain()

    async def __aenter__(self) -> "AudioCapture":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _open_stream(self) -> None:
        stream = self.stream_factory(
            samplerate=self.sample_rate,
            blocksize=int(self.sample_rate * 0.03),  # 30ms chunks
            dtype="int16",
            channels=self.channels,
            callback=self._audio_callback,
        )
        try:
            stream.start()
        except Exception:
            try:
                stream.close()
            except Exception as e:
                logger.warning(f"Error closing input stream: {e}")
            raise
        with self._lock:
            self.stream = stream
        self._started_at = self.clock()

    def _release(self) -> None:
        with self._lock:
            stream, self.stream = self.stream, None
        if stream is None:
            return
        try:
            stream.stop()
        except Exception as e:
            logger.warning(f"Error stopping input stream: {e}")
        finally:
            try:
                stream.close()
            except Exception as e:
                logger.warning(f"Error closing input stream: {e}")

    def _audio_callback(self, indata, frames, time_info, status):
        """Audio stream callback"""
        if status:
            logger.warning(f"Audio callback status: {status}")
        if self._active:
            self.audio_queue.put(bytes(indata))

    def _drain(self) -> List[bytes]:
        frames = []
        while True:
            try:
                frames.append(self.audio_queue.get_nowait())
            except queue.Empty:
                return frames

    def _frames_to_wav(self, frames: List[bytes]) -> bytes:
        """Convert audio frames to WAV format"""
        wav_buffer = io.BytesIO()
        try:
            with sf.SoundFile(
                wav_buffer,
                mode="w",
                samplerate=self.sample_rate,
                channels=self.channels,
                subtype="PCM_16",
                format="WAV"
            ) as sound_file:
                for frame in frames:
                    sound_file.buffer_write(frame, dtype="int16")
        except Exception as e:
            logger.error(f"Error creating WAV file: {e}")
            raise EmptyAudio("Recorded audio could not be encoded", cause=e) from e
        return wav_buffer.getvalue()


class AudioOutput:
    """
    Speaker output for one synthesized clip at a time.

    load() decodes the clip and reports its duration, play() starts a
    PortAudio stream fed from the decoded samples, stop() aborts it and
    clears the source. stop() is safe to call repeatedly.
    """

    def __init__(self, device: Optional[int] = None, stream_factory: Optional[Callable[..., object]] = None):
        self.device = device
        self.stream_factory = stream_factory or _open_output_stream
        self.stream = None
        self._data: Optional[np.ndarray] = None
        self._sample_rate = 0
        self._position = 0
        self._finished: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self.stream is not None

    @property
    def ended(self) -> bool:
        return self._finished is not None and self._finished.is_set()

    def load(self, audio_bytes: bytes) -> Optional[float]:
        """Decode audio and return its duration in ms, or None if unknown"""
        try:
            data, sample_rate = sf.read(io.BytesIO(audio_bytes), dtype="float32")
        except Exception as e:
            raise PlaybackFailed("Could not decode synthesized audio", cause=e) from e

        self._data = data
        self._sample_rate = sample_rate
        self._position = 0
        if not sample_rate or len(data) == 0:
            return None
        return len(data) / sample_rate * 1000

    def play(self) -> None:
        if self._data is None:
            raise PlaybackFailed("No audio loaded")

        self._loop = asyncio.get_running_loop()
        self._finished = asyncio.Event()
        channels = 1 if self._data.ndim == 1 else self._data.shape[1]
        try:
            stream = self.stream_factory(
                samplerate=self._sample_rate,
                channels=channels,
                dtype="float32",
                device=self.device,
                callback=self._callback,
                finished_callback=self._on_finished,
            )
            stream.start()
        except Exception as e:
            raise PlaybackFailed(cause=e) from e
        with self._lock:
            self.stream = stream

    async def wait_until_done(self) -> None:
        if self._finished is not None:
            await self._finished.wait()

    def stop(self) -> bool:
        """Pause, rewind and clear the source. Returns True if audio was active."""
        with self._lock:
            stream, self.stream = self.stream, None
            self._data = None
            self._position = 0
        if stream is None:
            return False
        try:
            stream.abort()
        except Exception as e:
            logger.warning(f"Error aborting output stream: {e}")
        finally:
            try:
                stream.close()
            except Exception as e:
                logger.warning(f"Error closing output stream: {e}")
        if self._finished is not None:
            self._finished.set()
        return True

    def _callback(self, outdata, frames, time_info, status):
        if status:
            logger.warning(f"Playback callback status: {status}")
        data = self._data
        if data is None:
            outdata.fill(0)
            raise _callback_stop()
        chunk = data[self._position:self._position + frames]
        if chunk.ndim == 1:
            chunk = chunk.reshape(-1, 1)
        outdata[:len(chunk)] = chunk
        self._position += len(chunk)
        if len(chunk) < frames:
            outdata[len(chunk):] = 0
            raise _callback_stop()

    def _on_finished(self):
        # Runs on the PortAudio thread
        if self._loop is not None and self._finished is not None:
            self._loop.call_soon_threadsafe(self._finished.set)
