import asyncio
import random
import unittest
from unittest.mock import AsyncMock, patch

from fakes import (
    EventRecorder,
    FakeCapture,
    FakeOutput,
    StubChatProvider,
    StubTranscriptionProvider,
    StubTTSProvider,
    make_controller,
)

from interview_assistant.controller import complete_words
from interview_assistant.conversation import Speaker
from interview_assistant.errors import (
    DeviceUnavailable,
    RecordingTooShort,
    SessionError,
    TranscriptionFailed,
)
from interview_assistant.model_providers import ControlSignal
from interview_assistant.sessions import InMemorySessionStore
from interview_assistant.state import TurnState


async def wait_for(condition, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class GatedTranscription(StubTranscriptionProvider):
    """Holds the turn in Transcribing until released"""

    def __init__(self, texts=None):
        super().__init__(texts)
        self.gate = asyncio.Event()

    async def transcribe(self, audio_buffer, language=None, **kwargs):
        await self.gate.wait()
        return await super().transcribe(audio_buffer, language, **kwargs)


class ControllerTestCase(unittest.IsolatedAsyncioTestCase):
    """Shared setup: a started behavioral interview with the welcome spoken"""

    interview_type = "behavioral"

    async def start(self, **kwargs):
        self.controller = make_controller(**kwargs)
        self.events = EventRecorder()
        self.controller.add_listener(self.events)
        self.session = await self.controller.start_interview(self.interview_type)
        await self.controller.wait_until_idle()
        return self.controller

    async def answer(self):
        self.assertTrue(await self.controller.start_recording())
        await self.controller.stop_recording()
        await self.controller.wait_until_idle()

    def utterances(self, speaker=None):
        return [u for u in self.controller.snapshot() if speaker is None or u.speaker == speaker]

    async def asyncTearDown(self):
        if hasattr(self, "controller"):
            await self.controller.aclose()


class TestTurnFlow(ControllerTestCase):
    """Test the normal turn cycle"""

    async def test_welcome_is_spoken_and_logged(self):
        controller = await self.start()
        self.assertEqual(controller.state, TurnState.IDLE)
        self.assertIsNotNone(controller.session_id)

        welcome = self.utterances()[0]
        self.assertEqual(welcome.speaker, Speaker.INTERVIEWER)
        self.assertEqual(welcome.text, self.session.welcome_message)
        self.assertTrue(welcome.final)
        self.assertEqual(controller.fakes["tts"].calls, [self.session.welcome_message])

    async def test_behavioral_answer_reaches_response_generation(self):
        await self.start(transcripts=["I once led a team through a crisis."], replies=[["Hello", " there", "."]])
        await self.answer()

        candidate = self.utterances(Speaker.CANDIDATE)
        self.assertEqual(len(candidate), 1)
        self.assertEqual(candidate[0].text, "I once led a team through a crisis.")
        self.assertFalse(candidate[0].is_interruption)

        messages = self.controller.fakes["chat"].calls[0]["messages"]
        self.assertEqual(messages[0]["role"], "system")
        self.assertIn("STAR", messages[0]["content"])
        self.assertEqual(messages[1], {"role": "assistant", "content": self.session.welcome_message})
        self.assertEqual(messages[-1], {"role": "user", "content": "I once led a team through a crisis."})
        self.assertEqual(sum(1 for m in messages if m["content"] == "I once led a team through a crisis."), 1)

        self.assertEqual(self.events.states[-5:], [
            TurnState.RECORDING,
            TurnState.TRANSCRIBING,
            TurnState.GENERATING_RESPONSE,
            TurnState.SPEAKING,
            TurnState.IDLE,
        ])
        reply = self.utterances()[-1]
        self.assertEqual((reply.speaker, reply.text, reply.final), (Speaker.INTERVIEWER, "Hello there.", True))

    async def test_messages_are_synced_to_session(self):
        await self.start(transcripts=["My answer."], replies=[["Good", " answer."]])
        await self.answer()
        await self.controller.aclose()

        messages = self.controller.fakes["store"].sessions[self.session.session_id].messages
        self.assertEqual([(m["role"], m["text"]) for m in messages], [
            ("interviewer", self.session.welcome_message),
            ("candidate", "My answer."),
            ("interviewer", "Good answer."),
        ])

    async def test_state_transitions_are_logged(self):
        await self.start()
        with self.assertLogs("interview_assistant.controller", level="INFO") as logs:
            await self.answer()
        self.assertIn("Turn state: idle -> recording", "\n".join(logs.output))

    async def test_listener_errors_do_not_break_the_turn(self):
        await self.start()

        def broken(event):
            raise RuntimeError("ui crashed")

        self.controller.add_listener(broken)
        await self.answer()
        self.assertEqual(self.controller.state, TurnState.IDLE)
        self.assertEqual(len(self.utterances(Speaker.CANDIDATE)), 1)


class TestRejections(ControllerTestCase):
    """Test that only one turn is ever active"""

    async def test_double_start_is_rejected(self):
        await self.start()
        self.assertTrue(await self.controller.start_recording())
        self.assertFalse(await self.controller.start_recording())
        self.assertEqual(self.events.error_codes, ["AlreadyRecording"])
        self.assertEqual(self.controller.fakes["capture"].starts, 1)

    async def test_start_while_transcribing_is_rejected(self):
        stt = GatedTranscription(["Answer."])
        await self.start(stt=stt)
        await self.controller.start_recording()
        await self.controller.stop_recording()
        await wait_for(lambda: self.controller.state == TurnState.TRANSCRIBING)

        self.assertFalse(await self.controller.start_recording())
        self.assertEqual(self.events.error_codes, ["TurnInProgress"])
        self.assertEqual(self.controller.state, TurnState.TRANSCRIBING)

        stt.gate.set()
        await self.controller.wait_until_idle()
        self.assertEqual(self.controller.state, TurnState.IDLE)

    async def test_start_while_generating_is_rejected(self):
        await self.start(chat=StubChatProvider([["Thinking"]], hang=True))
        await self.controller.start_recording()
        await self.controller.stop_recording()
        await wait_for(lambda: self.controller.state == TurnState.GENERATING_RESPONSE)

        self.assertFalse(await self.controller.start_recording())
        self.assertEqual(self.events.error_codes, ["TurnInProgress"])

        await self.controller.end_interview()
        self.assertEqual(self.controller.state, TurnState.IDLE)
        self.assertEqual(self.controller.fakes["chat"].closed, 1)
        # a cancelled generation leaves no interviewer utterance behind
        self.assertEqual(self.utterances()[-1].speaker, Speaker.CANDIDATE)

    async def test_stop_before_microphone_is_ready(self):
        await self.start(capture=FakeCapture(start_delay=0.05), transcripts=["Quick answer."])
        start = asyncio.ensure_future(self.controller.start_recording())
        await asyncio.sleep(0)
        self.assertEqual(self.controller.state, TurnState.RECORDING)

        await self.controller.stop_recording()
        await self.controller.stop_recording()  # duplicate stop is ignored
        self.assertTrue(await start)
        await self.controller.wait_until_idle()

        capture = self.controller.fakes["capture"]
        self.assertEqual((capture.starts, capture.stops), (1, 1))
        self.assertEqual(self.utterances(Speaker.CANDIDATE)[0].text, "Quick answer.")

    async def test_recording_requires_an_interview(self):
        controller = make_controller()
        events = EventRecorder()
        controller.add_listener(events)
        self.assertFalse(await controller.start_recording())
        self.assertEqual(events.error_codes, ["SessionNotFound"])


class TestFailures(ControllerTestCase):
    """Test that every failure returns the controller to Idle"""

    async def test_transcription_failure(self):
        await self.start(stt_error=ConnectionError("network down"))
        before = len(self.utterances())
        await self.answer()

        self.assertEqual(self.controller.state, TurnState.IDLE)
        self.assertEqual(len(self.utterances()), before)
        self.assertEqual(self.events.error_codes, ["TranscriptionFailed"])
        error_event = self.events.of_kind("error")[0]
        self.assertEqual(error_event.message, TranscriptionFailed.user_message)

        # the candidate can retry right away
        self.assertTrue(await self.controller.start_recording())

    async def test_recording_too_short(self):
        await self.start(capture=FakeCapture(stop_error=RecordingTooShort()))
        await self.answer()
        self.assertEqual(self.controller.state, TurnState.IDLE)
        self.assertEqual(self.events.error_codes, ["RecordingTooShort"])
        self.assertEqual(self.controller.fakes["stt"].calls, [])

    async def test_device_unavailable(self):
        await self.start(capture=FakeCapture(start_error=DeviceUnavailable()))
        self.assertFalse(await self.controller.start_recording())
        self.assertEqual(self.controller.state, TurnState.IDLE)
        self.assertEqual(self.events.error_codes, ["DeviceUnavailable"])

    async def test_stream_failure_keeps_complete_words(self):
        chat = StubChatProvider([["That is an inter", "esting poi"]], error=ConnectionError("reset"), error_after=2)
        await self.start(chat=chat)
        await self.answer()

        self.assertEqual(self.controller.state, TurnState.IDLE)
        self.assertEqual(self.events.error_codes, ["StreamFailed"])
        partial = self.utterances()[-1]
        self.assertEqual(partial.speaker, Speaker.INTERVIEWER)
        self.assertEqual(partial.text, "That is an interesting")
        self.assertTrue(partial.final)
        self.assertTrue(partial.metadata["streamFailed"])

    async def test_synthesis_failure_keeps_reply_text(self):
        await self.start()
        self.controller.fakes["tts"].error = RuntimeError("tts quota")
        await self.answer()

        self.assertEqual(self.controller.state, TurnState.IDLE)
        self.assertEqual(self.events.error_codes, ["SynthesisFailed"])
        reply = self.utterances()[-1]
        self.assertEqual((reply.text, reply.final), ("Hello there.", True))

    async def test_session_sync_errors_are_swallowed(self):
        await self.start(transcripts=["Answer."])
        store = self.controller.fakes["store"]
        with patch.object(store, "append_message", AsyncMock(side_effect=SessionError("backend down"))):
            await self.answer()
            await self.controller.aclose()

        self.assertEqual(self.events.error_codes, [])
        self.assertEqual(self.utterances()[-1].text, "Hello there.")

    def test_complete_words(self):
        self.assertEqual(complete_words("That is an interesting poi"), "That is an interesting")
        self.assertEqual(complete_words("Good point."), "Good point.")
        self.assertEqual(complete_words("Goo"), "")
        self.assertEqual(complete_words(""), "")


class TestInterruption(ControllerTestCase):
    """Test barge-in over interviewer playback"""

    async def test_barge_in_marks_both_utterances(self):
        await self.start(
            transcripts=["Sorry, can I add something?", "Second answer."],
            replies=[["Tell me more", " about the outcome", " of that project."], ["Sure, go ahead."]],
        )
        output = self.controller.fakes["output"]
        output.duration_ms = 5000

        self.assertTrue(await self.controller.start_recording())
        await self.controller.stop_recording()
        await wait_for(lambda: self.controller.state == TurnState.SPEAKING and self.utterances()[-1].text)

        output.duration_ms = 40
        self.assertTrue(await self.controller.start_recording())
        self.assertEqual(self.controller.state, TurnState.RECORDING)
        self.assertFalse(output.active)

        interrupted = self.utterances(Speaker.INTERVIEWER)[-1]
        self.assertTrue(interrupted.interrupted)
        self.assertTrue(interrupted.final)
        self.assertEqual(interrupted.text, "Tell")
        self.assertEqual(interrupted.metadata["fullText"], "Tell me more about the outcome of that project.")

        await self.controller.stop_recording()
        await self.controller.wait_until_idle()

        second = self.utterances(Speaker.CANDIDATE)[-1]
        self.assertEqual(second.text, "Second answer.")
        self.assertTrue(second.is_interruption)
        self.assertEqual(self.utterances()[-1].text, "Sure, go ahead.")
        self.assertEqual(self.controller.state, TurnState.IDLE)
        # the superseded speaking task never touched the log again
        self.assertEqual(
            [u.text for u in self.utterances(Speaker.INTERVIEWER)][1:],
            ["Tell", "Sure, go ahead."],
        )

    async def test_welcome_can_be_interrupted(self):
        self.controller = make_controller(output=FakeOutput(duration_ms=5000), transcripts=["Hi!"])
        await self.controller.start_interview("behavioral")
        await wait_for(lambda: self.controller.snapshot()[0].text)

        self.controller.fakes["output"].duration_ms = 40
        self.assertTrue(await self.controller.start_recording())
        welcome = self.controller.snapshot()[0]
        self.assertTrue(welcome.interrupted)
        self.assertTrue(welcome.final)

    async def test_cancelled_synthesis_leaves_empty_interrupted_turn(self):
        await self.start(tts=StubTTSProvider(), transcripts=["One.", "Two."])
        self.controller.fakes["tts"].delay = 5
        await self.controller.start_recording()
        await self.controller.stop_recording()
        await wait_for(lambda: self.controller.state == TurnState.SPEAKING)

        self.controller.fakes["tts"].delay = 0
        self.assertTrue(await self.controller.start_recording())
        interrupted = self.utterances(Speaker.INTERVIEWER)[-1]
        self.assertEqual(interrupted.text, "")
        self.assertTrue(interrupted.interrupted)
        self.assertNotIn({"role": "assistant", "content": ""}, self.controller.conversation.to_chat_messages())


class TestSessionEnd(ControllerTestCase):
    """Test interview conclusion"""

    async def test_session_ended_while_speaking(self):
        controller = make_controller(output=FakeOutput(duration_ms=300), status_poll_interval=0.02)
        self.controller = controller
        events = EventRecorder()
        controller.add_listener(events)
        session = await controller.start_interview("behavioral")
        self.assertEqual(controller.state, TurnState.SPEAKING)

        stored = controller.fakes["store"].sessions[session.session_id]
        stored.status = "ended_by_interviewer"
        stored.end_reason = "Interviewer had to leave"
        await asyncio.sleep(0.08)

        self.assertEqual(controller.state, TurnState.SPEAKING)
        self.assertFalse(await controller.start_recording())
        self.assertEqual(events.error_codes, ["SessionAlreadyEnded"])

        await controller.wait_until_idle()
        welcome = controller.snapshot()[0]
        self.assertEqual(welcome.text, session.welcome_message)
        self.assertFalse(welcome.interrupted)

        self.assertTrue(controller.concluded)
        self.assertEqual(controller.end_reason, "Interviewer had to leave")
        notices = [e.message for e in events.of_kind("notice")]
        self.assertEqual(notices, ["Interview concluded: Interviewer had to leave"])
        self.assertFalse(await controller.start_recording())
        self.assertEqual(controller.state, TurnState.IDLE)

    async def test_end_interview_signal_concludes_after_reply(self):
        await self.start(replies=[["Thanks, that is all for today.", ControlSignal("end_interview", "Interview complete")]])
        await self.answer()

        texts = [(u.speaker, u.text) for u in self.utterances()[-2:]]
        self.assertEqual(texts, [
            (Speaker.INTERVIEWER, "Thanks, that is all for today."),
            (Speaker.SYSTEM, "Interview ended by interviewer: Interview complete"),
        ])
        self.assertTrue(self.controller.concluded)
        self.assertEqual(self.controller.end_reason, "Interview complete")
        self.assertFalse(await self.controller.start_recording())
        self.assertEqual(self.events.error_codes, ["SessionAlreadyEnded"])

    async def test_switch_question_adds_system_entry(self):
        await self.start(replies=[[ControlSignal("switch_question", "candidate is stuck")], ["Okay."]])
        old_question = self.session.current_question
        await self.answer()

        reply, system = self.utterances()[-2:]
        self.assertEqual(reply.text, "Let me ask you a different question.")
        self.assertEqual(system.speaker, Speaker.SYSTEM)
        self.assertTrue(system.text.startswith("Question switched: "))
        self.assertNotEqual(self.session.current_question, old_question)
        self.assertFalse(self.controller.concluded)

        await self.answer()
        prompt = self.controller.fakes["chat"].calls[-1]["messages"][0]["content"]
        self.assertIn(f"Current question: {self.session.current_question.text}", prompt)

    async def test_end_interview_command(self):
        controller = make_controller(output=FakeOutput(duration_ms=5000))
        self.controller = controller
        session = await controller.start_interview("scrum-master")
        await wait_for(lambda: controller.snapshot()[0].text)

        await controller.end_interview()
        self.assertTrue(controller.concluded)
        self.assertEqual(controller.state, TurnState.IDLE)
        self.assertEqual(controller.fakes["store"].sessions[session.session_id].status, "completed")
        self.assertTrue(controller.snapshot()[0].final)
        self.assertFalse(controller.fakes["output"].active)

        await controller.end_interview()  # already concluded
        self.assertFalse(await controller.start_recording())


class GatedStatusStore(InMemorySessionStore):
    """Status checks block until the gate opens"""

    def __init__(self, rng=None):
        super().__init__(rng)
        self.gate = asyncio.Event()
        self.status_checks = 0

    async def get_status(self, session_id):
        self.status_checks += 1
        await self.gate.wait()
        return await super().get_status(session_id)


class TestSessionChecks(ControllerTestCase):
    """Test the turn around slow or ending sessions"""

    async def test_recording_after_playback_is_not_an_interruption(self):
        store = GatedStatusStore(random.Random(7))
        self.controller = make_controller(store=store, transcripts=["My answer."])
        await self.controller.start_interview("behavioral")
        await wait_for(lambda: store.status_checks == 1)
        self.assertEqual(self.controller.state, TurnState.IDLE)

        output = self.controller.fakes["output"]
        stops = output.stop_calls
        self.assertTrue(await self.controller.start_recording())
        self.assertEqual(output.stop_calls, stops)
        await self.controller.stop_recording()
        store.gate.set()
        await self.controller.wait_until_idle()

        self.assertEqual([u.is_interruption for u in self.utterances(Speaker.CANDIDATE)], [False])
        self.assertEqual([u.interrupted for u in self.utterances(Speaker.INTERVIEWER)], [False, False])

    async def test_session_ended_while_transcribing_drops_the_answer(self):
        stt = GatedTranscription(["My answer."])
        await self.start(stt=stt, status_poll_interval=0.01)
        await self.controller.start_recording()
        await self.controller.stop_recording()
        await wait_for(lambda: self.controller.state == TurnState.TRANSCRIBING)

        stored = self.controller.fakes["store"].sessions[self.session.session_id]
        stored.status = "ended_by_interviewer"
        stored.end_reason = "Time is up"
        await asyncio.sleep(0.05)
        stt.gate.set()
        await self.controller.wait_until_idle()

        self.assertEqual(self.controller.fakes["chat"].calls, [])
        self.assertEqual(self.utterances(Speaker.CANDIDATE), [])
        self.assertTrue(self.controller.concluded)
        self.assertEqual(self.controller.end_reason, "Time is up")
        self.assertEqual(self.controller.state, TurnState.IDLE)

    async def test_session_ended_while_generating_cancels_the_reply(self):
        await self.start(chat=StubChatProvider([["Thinking"]], hang=True), status_poll_interval=0.01)
        await self.controller.start_recording()
        await self.controller.stop_recording()
        await wait_for(lambda: self.controller.state == TurnState.GENERATING_RESPONSE)

        stored = self.controller.fakes["store"].sessions[self.session.session_id]
        stored.status = "ended_by_interviewer"
        await wait_for(lambda: self.controller.concluded)
        await self.controller.wait_until_idle()

        self.assertEqual(self.controller.fakes["chat"].closed, 1)
        self.assertEqual(len(self.utterances(Speaker.INTERVIEWER)), 1)
        self.assertEqual(self.controller.fakes["tts"].calls, [self.session.welcome_message])
        self.assertEqual(self.controller.state, TurnState.IDLE)

    async def test_unknown_interview_type_is_reported(self):
        self.controller = make_controller()
        events = EventRecorder()
        self.controller.add_listener(events)
        with self.assertRaises(SessionError):
            await self.controller.start_interview("astronaut")
        self.assertEqual(events.error_codes, ["SessionError"])
        self.assertIsNone(self.controller.session_id)


class TestCancelledGeneration(ControllerTestCase):
    """Test that a cancelled reply leaves no partial utterance"""

    async def test_end_interview_mid_stream(self):
        await self.start(transcripts=["My answer."], chat=StubChatProvider([["Half a", " sentence"]], hang=True))
        await self.controller.start_recording()
        await self.controller.stop_recording()
        await wait_for(lambda: self.controller.state == TurnState.GENERATING_RESPONSE)

        await self.controller.end_interview()

        self.assertEqual(self.controller.state, TurnState.IDLE)
        self.assertEqual(self.controller.fakes["chat"].closed, 1)
        interviewer = self.utterances(Speaker.INTERVIEWER)
        self.assertEqual([u.text for u in interviewer], [self.session.welcome_message])
        self.assertTrue(all(u.final for u in self.controller.snapshot()))
        self.assertEqual(self.utterances()[-1].text, "My answer.")


if __name__ == "__main__":
    unittest.main()
