"""
TurnController coordinates capture, transcription, reply streaming and
playback for one interview. It owns the TurnState and the ConversationLog;
observers only receive copies through ControllerEvent.

Every transition is decided synchronously on the event loop before the
next await, so overlapping commands (double start, stop before the
microphone is ready, barge-in during playback) resolve deterministically.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .audio import AudioCapture
from .conversation import ConversationLog, Speaker, Utterance
from .errors import (
    InterviewError,
    AlreadyRecording,
    TranscriptionFailed,
    StreamFailed,
    SessionNotFound,
    SessionAlreadyEnded,
    TurnInProgress,
)
from .model_providers import ControlSignal
from .sessions import Session, SessionStore
from .speech import SpeechPlayer, Transcriber, word_boundaries
from .state import CancelToken, TurnState
from .streaming import END_INTERVIEW, ResponseOptions, ResponseStreamer

log = logging.getLogger(__name__)

Listener = Callable[["ControllerEvent"], None]


@dataclass
class ControllerEvent:
    kind: str  # "state", "transcript", "error" or "notice"
    state: TurnState
    snapshot: List[Utterance] = field(default_factory=list)
    error: Optional[InterviewError] = None
    message: Optional[str] = None


def complete_words(text: str) -> str:
    """Drop a trailing word fragment from text cut off mid-stream"""
    text = text.rstrip()
    if not text or text[-1] in ".!?,;:":
        return text
    boundaries = word_boundaries(text)
    if len(boundaries) < 2:
        return ""
    return text[:boundaries[-2]]


class TurnController:
    """Turn-taking state machine for a single interview."""

    def __init__(
        self,
        capture: AudioCapture,
        transcriber: Transcriber,
        streamer: ResponseStreamer,
        player: SpeechPlayer,
        store: SessionStore,
        options: Optional[ResponseOptions] = None,
        status_poll_interval: float = 0,
    ) -> None:
        self.capture     = capture
        self.transcriber = transcriber
        self.streamer    = streamer
        self.player      = player
        self.store       = store
        self.options     = options or ResponseOptions()
        self.status_poll_interval = status_poll_interval

        self.conversation = ConversationLog()
        self._state = TurnState.IDLE
        self._listeners: List[Listener] = []

        # turn ownership: a task only touches state while its id is current
        self._turn_id = 0
        self._turn_task: Optional[asyncio.Task] = None
        self._start_task: Optional[asyncio.Task] = None
        self._stopping = False
        self._interruption_pending = False

        self._generate_token: Optional[CancelToken] = None
        self._speak_token: Optional[CancelToken] = None
        self._speaking: Optional[Utterance] = None
        self._reply_text = ""
        self._revealed = ""
        self._pending_system_texts: List[str] = []

        self._session: Optional[Session] = None
        self._system_prompt: Optional[str] = None
        self._session_ended = False
        self._concluded = False
        self._end_reason: Optional[str] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._sync_tasks: set = set()

    # ------------------------------------------------------------------ #
    # --------------------------  accessors  --------------------------- #
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def concluded(self) -> bool:
        return self._concluded

    @property
    def end_reason(self) -> Optional[str]:
        return self._end_reason

    @property
    def session_id(self) -> Optional[str]:
        return self._session.session_id if self._session else None

    def snapshot(self) -> List[Utterance]:
        return self.conversation.snapshot()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    async def wait_until_idle(self) -> None:
        """Wait for the active turn (if any) to run to completion"""
        while self._turn_task is not None and not self._turn_task.done():
            await asyncio.wait({self._turn_task})

    # ------------------------------------------------------------------ #
    # --------------------------  commands  ---------------------------- #
    # ------------------------------------------------------------------ #
    async def start_interview(self, interview_type: str) -> Session:
        """Create the session and speak the welcome message"""
        if self._session is not None:
            raise RuntimeError("Interview already started")

        try:
            session = await self.store.create_session(interview_type)
        except InterviewError as e:
            self._report(e)
            raise
        self._session = session
        log.info(f"Interview {session.session_id} started ({interview_type})")

        try:
            self._system_prompt = await self.store.get_system_prompt(session.session_id)
        except InterviewError as e:
            log.warning(f"Could not load system prompt: {e}")

        if self.status_poll_interval > 0:
            self._poll_task = asyncio.ensure_future(self._poll_status())

        if session.welcome_message:
            self._turn_id += 1
            turn_id = self._turn_id
            token = self._begin_speaking(session.welcome_message, {"type": "welcome"})
            self._turn_task = asyncio.ensure_future(
                self._run_guarded(turn_id, self._deliver(turn_id, token, sync=False))
            )
        return session

    async def start_recording(self) -> bool:
        """Open the microphone. Barging in over the interviewer is allowed."""
        if self._session is None:
            self._report(SessionNotFound("No interview in progress"))
            return False
        if self._session_ended or self._concluded:
            self._report(SessionAlreadyEnded())
            return False

        state = self._state
        if state == TurnState.RECORDING:
            self._report(AlreadyRecording())
            return False
        if state in (TurnState.TRANSCRIBING, TurnState.GENERATING_RESPONSE):
            self._report(TurnInProgress())
            return False

        interrupting = state == TurnState.SPEAKING and self._speaking is not None
        if state == TurnState.SPEAKING:
            self._interrupt()

        self._turn_id += 1
        self._interruption_pending = interrupting
        self._stopping = False
        self._set_state(TurnState.RECORDING)

        task = asyncio.ensure_future(self._open_microphone(self._turn_id, state == TurnState.SPEAKING))
        self._start_task = task
        return await asyncio.shield(task)

    async def stop_recording(self) -> None:
        """Finish the recording and run the rest of the turn in the background"""
        if self._state != TurnState.RECORDING or self._stopping:
            log.debug(f"Ignoring stop in state {self._state.value}")
            return

        self._stopping = True
        turn_id = self._turn_id
        self._turn_task = asyncio.ensure_future(
            self._run_guarded(turn_id, self._run_turn(turn_id, self._start_task))
        )

    async def toggle_recording(self) -> None:
        if self._state == TurnState.RECORDING:
            await self.stop_recording()
        else:
            await self.start_recording()

    async def end_interview(self, reason: str = "Interview ended by candidate") -> None:
        """Cancel whatever is running, end the session and conclude"""
        if self._session is None or self._concluded:
            return
        log.info(f"Ending interview: {reason}")

        self._turn_id += 1
        self._cancel_activities()
        await self._cancel_turn()
        await self._release_devices()

        if self.conversation.in_progress:
            self.conversation.freeze_last(self._revealed)
        self._speaking = None

        try:
            await self.store.end_session(self._session.session_id)
        except InterviewError as e:
            log.warning(f"Could not end session: {e}")

        self._session_ended = True
        self._end_reason = self._end_reason or reason
        self._conclude()

    async def aclose(self) -> None:
        """Release devices and background tasks without ending the session"""
        self._turn_id += 1
        self._cancel_activities()
        await self._cancel_turn()
        if self._poll_task is not None:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
        await self._release_devices()
        if self._sync_tasks:
            await asyncio.gather(*self._sync_tasks, return_exceptions=True)
        if self._state != TurnState.IDLE:
            self._set_state(TurnState.IDLE)

    # ------------------------------------------------------------------ #
    # --------------------------  core logic  -------------------------- #
    # ------------------------------------------------------------------ #
    async def _open_microphone(self, turn_id: int, stop_playback: bool) -> bool:
        try:
            if stop_playback:
                await self.player.stop()
            await self.capture.start()
            return True
        except InterviewError as e:
            if self._owns(turn_id) and self._state == TurnState.RECORDING:
                self._fail(e)
            else:
                self._report(e)
            return False

    async def _run_guarded(self, turn_id: int, turn) -> None:
        """Turn-task boundary: every failure ends in Idle with a message"""
        try:
            await turn
        except InterviewError as e:
            if self._owns(turn_id):
                self._fail(e)
            else:
                log.info(f"Ignoring {e.code} from superseded turn")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception(f"Unexpected error during turn: {e}")
            if self._owns(turn_id):
                self._fail(InterviewError(cause=e))

    async def _run_turn(self, turn_id: int, start_task: Optional[asyncio.Task]) -> None:
        # stop-before-ready: the microphone must be open before it can be closed
        if start_task is not None and not await asyncio.shield(start_task):
            return
        if not self._owns(turn_id):
            return

        try:
            clip = await self.capture.stop()
        finally:
            self._stopping = False
        if not self._owns(turn_id):
            return
        if clip is None:
            self._finish_turn()
            return

        is_interruption = self._interruption_pending
        self._interruption_pending = False
        self._set_state(TurnState.TRANSCRIBING)

        text = await self.transcriber.transcribe(clip)
        if not self._owns(turn_id):
            return
        if self._session_ended:
            log.info("Session ended during transcription; dropping the answer")
            self._finish_turn()
            return
        if not text.strip():
            raise TranscriptionFailed("No speech was recognised")

        # history is taken before the new utterance; the new text goes separately
        history = self.conversation.to_chat_messages()
        self.conversation.append(Utterance(
            speaker=Speaker.CANDIDATE,
            text=text,
            is_interruption=is_interruption,
            metadata={"durationMs": round(clip.duration_ms)},
        ))
        self._emit("transcript")
        self._sync(Speaker.CANDIDATE, text, {"isInterruption": is_interruption})

        self._set_state(TurnState.GENERATING_RESPONSE)
        reply = await self._generate(turn_id, history, text)
        if not self._owns(turn_id):
            return
        if reply is None:
            # generation was cut short because the session ended
            self._finish_turn()
            return

        token = self._begin_speaking(reply, {})
        await self._deliver(turn_id, token)

    async def _generate(self, turn_id: int, history, text: str) -> Optional[str]:
        token = CancelToken("generation")
        self._generate_token = token
        options = dataclasses.replace(self.options, system_prompt=await self._current_system_prompt())

        stream = self.streamer.stream(history, text, options, cancel_token=token)
        try:
            await stream.collect()
        except StreamFailed as e:
            partial = complete_words(e.partial_text)
            if partial and self._owns(turn_id):
                # keep what arrived; it is never spoken
                self.conversation.append(Utterance(
                    speaker=Speaker.INTERVIEWER,
                    text=partial,
                    metadata={"streamFailed": True},
                ))
                self._emit("transcript")
                self._sync(Speaker.INTERVIEWER, partial, {"streamFailed": True})
            raise
        finally:
            self._generate_token = None

        if stream.cancelled or not self._owns(turn_id):
            return None

        self._pending_system_texts = []
        for signal in stream.control_signals:
            await self._apply_control_signal(signal)
        return stream.text

    async def _apply_control_signal(self, signal: ControlSignal) -> None:
        try:
            text = await self.store.apply_control_signal(self._session.session_id, signal)
        except InterviewError as e:
            log.warning(f"Could not apply {signal.kind}: {e}")
            text = None
        if text:
            self._pending_system_texts.append(text)
        if signal.kind == END_INTERVIEW:
            # the reply carrying the signal is still delivered in full
            self._mark_session_ended(signal.reason)

    def _begin_speaking(self, text: str, metadata: dict) -> CancelToken:
        token = CancelToken("speaking")
        self._speak_token = token
        self._reply_text = text
        self._revealed = ""
        self._speaking = self.conversation.append(Utterance(
            speaker=Speaker.INTERVIEWER,
            final=False,
            metadata=dict(metadata),
        ))
        self._set_state(TurnState.SPEAKING)
        self._emit("transcript")
        return token

    async def _deliver(self, turn_id: int, token: CancelToken, sync: bool = True) -> None:
        text = self._reply_text
        try:
            result = await self.player.play(text, token, self._on_partial_text)
        except InterviewError:
            if self._owns(turn_id) and self.conversation.in_progress:
                # the reply stays readable even though it could not be heard
                self.conversation.freeze_last(text)
                self._speaking = None
                self._append_system_texts()
                self._emit("transcript")
            raise

        if not self._owns(turn_id) or not result.completed:
            # an interruption already froze the utterance
            return

        self.conversation.freeze_last(text)
        self._speaking = None
        self._append_system_texts()
        self._emit("transcript")
        if sync:
            self._sync(Speaker.INTERVIEWER, text, {"interrupted": False})

        # playback is over, so a recording from here on is not a barge-in
        self._finish_turn()
        await self._check_status()

    def _on_partial_text(self, text: str) -> None:
        if self._speaking is None or not self.conversation.in_progress:
            return
        self._revealed = text
        self.conversation.update_last_text(text)
        self._emit("transcript")

    def _interrupt(self) -> None:
        """Barge-in: cancel playback and freeze what was shown so far"""
        if self._speak_token is not None:
            self._speak_token.cancel()

        if self._speaking is not None and self.conversation.in_progress:
            utterance = self.conversation.freeze_last(self._revealed)
            utterance.metadata["fullText"] = self._reply_text
            self.conversation.mark_last_interrupted()
            self._speaking = None
            self._append_system_texts()
            log.info(f"Interviewer interrupted after {len(self._revealed)} of {len(self._reply_text)} characters")
            self._emit("transcript")
            if utterance.metadata.get("type") != "welcome":
                self._sync(Speaker.INTERVIEWER, utterance.text, {
                    "interrupted": True,
                    "fullText": self._reply_text,
                })

    def _append_system_texts(self) -> None:
        for text in self._pending_system_texts:
            self.conversation.append(Utterance(speaker=Speaker.SYSTEM, text=text))
        self._pending_system_texts = []

    def _finish_turn(self) -> None:
        if self._session_ended:
            self._conclude()
        elif self._state != TurnState.IDLE:
            self._set_state(TurnState.IDLE)

    def _fail(self, error: InterviewError) -> None:
        log.error(f"{error.code}: {error}")
        self._cancel_activities()
        if self.conversation.in_progress:
            self.conversation.freeze_last(self._revealed or self._reply_text)
        self._speaking = None
        self._stopping = False
        self._interruption_pending = False
        self._report(error)
        self._finish_turn()

    # ------------------------------------------------------------------ #
    # -----------------------  session handling  ----------------------- #
    # ------------------------------------------------------------------ #
    async def _current_system_prompt(self) -> Optional[str]:
        try:
            self._system_prompt = await self.store.get_system_prompt(self._session.session_id)
        except InterviewError as e:
            log.warning(f"Using cached system prompt: {e}")
        return self._system_prompt

    async def _check_status(self) -> None:
        if self._session is None or self._concluded:
            return
        try:
            status = await self.store.get_status(self._session.session_id)
        except InterviewError as e:
            log.warning(f"Status check failed: {e}")
            return
        if status.ended:
            self._mark_session_ended(status.end_reason or status.status)

    async def _poll_status(self) -> None:
        while not self._concluded:
            await asyncio.sleep(self.status_poll_interval)
            await self._check_status()

    def _mark_session_ended(self, reason: Optional[str]) -> None:
        if self._session_ended:
            return
        self._session_ended = True
        self._end_reason = reason
        log.info(f"Session ended: {reason}")

        if self._state == TurnState.IDLE:
            self._conclude()
        elif self._state == TurnState.GENERATING_RESPONSE and self._generate_token is not None:
            self._generate_token.cancel()
        elif self._state == TurnState.RECORDING and not self._stopping:
            # nothing has been said yet that could still be delivered
            self._turn_id += 1
            self._stopping = True
            self._turn_task = asyncio.ensure_future(self._discard_recording())

    async def _discard_recording(self) -> None:
        if self._start_task is not None and not self._start_task.done():
            await asyncio.wait({self._start_task})
        await self.capture.close()
        self._conclude()

    def _conclude(self) -> None:
        if self._concluded:
            return
        self._concluded = True
        if self._poll_task is not None and self._poll_task is not asyncio.current_task():
            self._poll_task.cancel()
        if self._state != TurnState.IDLE:
            self._set_state(TurnState.IDLE)
        message = "Interview concluded"
        if self._end_reason:
            message += f": {self._end_reason}"
        log.info(message)
        self._emit("notice", message=message)

    def _sync(self, speaker: Speaker, text: str, metadata: dict) -> None:
        """Persist a message in the background; failures never affect the turn"""
        if self._session is None:
            return
        task = asyncio.ensure_future(self._sync_message(self._session.session_id, speaker, text, metadata))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def _sync_message(self, session_id: str, speaker: Speaker, text: str, metadata: dict) -> None:
        try:
            await self.store.append_message(session_id, speaker.value, text, metadata)
        except InterviewError as e:
            log.warning(f"Could not sync {speaker.value} message: {e}")

    # ------------------------------------------------------------------ #
    # --------------------------  plumbing  ---------------------------- #
    # ------------------------------------------------------------------ #
    def _owns(self, turn_id: int) -> bool:
        return self._turn_id == turn_id

    def _cancel_activities(self) -> None:
        for token in (self._generate_token, self._speak_token):
            if token is not None:
                token.cancel()

    async def _cancel_turn(self) -> None:
        task = self._turn_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        start = self._start_task
        if start is not None and not start.done():
            await asyncio.wait({start})

    async def _release_devices(self) -> None:
        await self.capture.close()
        await self.player.stop()

    def _set_state(self, new_state: TurnState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        log.info(f"Turn state: {old_state.value} -> {new_state.value}")
        self._emit("state")

    def _report(self, error: InterviewError) -> None:
        log.warning(f"Reporting {error.code}: {error}")
        self._emit("error", error=error, message=error.user_message)

    def _emit(self, kind: str, error: Optional[InterviewError] = None, message: Optional[str] = None) -> None:
        if not self._listeners:
            return
        event = ControllerEvent(
            kind=kind,
            state=self._state,
            snapshot=self.conversation.snapshot(),
            error=error,
            message=message,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.exception(f"Listener failed on {kind} event: {e}")
