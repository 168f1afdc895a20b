import asyncio
import time
import unittest

import fakes  # noqa: F401  (puts host/ on sys.path)

from interview_assistant.conversation import ConversationLog, Speaker, Utterance
from interview_assistant.state import CancelToken, TurnState


class TestCancelToken(unittest.IsolatedAsyncioTestCase):
    """Test the cooperative cancellation primitive"""

    async def test_sleep_runs_full_duration_when_not_cancelled(self):
        token = CancelToken("test")
        self.assertFalse(await token.sleep(0.01))
        self.assertFalse(token.cancelled)

    async def test_sleep_wakes_on_cancel(self):
        """Cancel wakes a sleeper well within 50ms"""
        token = CancelToken("test")
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        started = time.monotonic()
        self.assertTrue(await token.sleep(5))
        self.assertLess(time.monotonic() - started, 0.5)

    async def test_sleep_after_cancel_returns_immediately(self):
        token = CancelToken()
        token.cancel()
        token.cancel()  # idempotent
        self.assertTrue(await token.sleep(10))
        await asyncio.wait_for(token.wait(), timeout=0.1)

    def test_turn_states(self):
        self.assertEqual(
            [s.value for s in TurnState],
            ["idle", "recording", "transcribing", "generating_response", "speaking"],
        )


class TestConversationLog(unittest.TestCase):
    """Test the append-only utterance log"""

    def test_append_keeps_order_and_snapshot_is_a_copy(self):
        log = ConversationLog()
        log.append(Utterance(Speaker.INTERVIEWER, "Welcome."))
        log.append(Utterance(Speaker.CANDIDATE, "Thanks."))

        snapshot = log.snapshot()
        self.assertEqual([u.text for u in snapshot], ["Welcome.", "Thanks."])
        snapshot[0].text = "changed"
        snapshot[0].metadata["x"] = 1
        self.assertEqual(log.snapshot()[0].text, "Welcome.")
        self.assertEqual(log.snapshot()[0].metadata, {})

    def test_only_last_utterance_may_be_in_progress(self):
        log = ConversationLog()
        log.append(Utterance(Speaker.INTERVIEWER, final=False))
        self.assertTrue(log.in_progress)

        with self.assertRaises(ValueError):
            log.append(Utterance(Speaker.CANDIDATE, "Hi"))

        log.update_last_text("Tell me")
        log.update_last_text("Tell me about")
        frozen = log.freeze_last()
        self.assertEqual(frozen.text, "Tell me about")
        self.assertTrue(frozen.final)

        with self.assertRaises(ValueError):
            log.update_last_text("more")
        with self.assertRaises(ValueError):
            log.freeze_last()

    def test_mark_last_interrupted_targets_latest_interviewer_utterance(self):
        log = ConversationLog()
        self.assertIsNone(log.mark_last_interrupted())

        first = log.append(Utterance(Speaker.INTERVIEWER, "First question?"))
        log.append(Utterance(Speaker.CANDIDATE, "Answer."))
        second = log.append(Utterance(Speaker.INTERVIEWER, "Follow up"))
        log.append(Utterance(Speaker.SYSTEM, "Question switched: ..."))

        marked = log.mark_last_interrupted()
        self.assertIs(marked, second)
        self.assertTrue(second.interrupted)
        self.assertFalse(first.interrupted)

    def test_chat_messages_skip_unfinished_and_empty(self):
        log = ConversationLog()
        log.append(Utterance(Speaker.INTERVIEWER, "Welcome."))
        log.append(Utterance(Speaker.CANDIDATE, "  "))
        log.append(Utterance(Speaker.SYSTEM, "Question switched: Q2"))
        log.append(Utterance(Speaker.INTERVIEWER, "Partial", final=False))

        self.assertEqual(log.to_chat_messages(), [
            {"role": "assistant", "content": "Welcome."},
            {"role": "system", "content": "Question switched: Q2"},
        ])

    def test_to_dict_uses_camel_case(self):
        utterance = Utterance(Speaker.CANDIDATE, "Hi", is_interruption=True)
        data = utterance.to_dict()
        self.assertEqual(data["speaker"], "candidate")
        self.assertTrue(data["isInterruption"])
        self.assertFalse(data["interrupted"])
        self.assertIn("createdAt", data)


if __name__ == "__main__":
    unittest.main()
