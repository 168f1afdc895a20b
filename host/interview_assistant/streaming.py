# interview_assistant/streaming.py
"""
Streaming interviewer replies with out-of-band control signals
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from .conversation import ConversationLog
from .errors import StreamFailed
from .model_providers import ChatCompletionProvider, ControlSignal, StreamEvent
from .state import CancelToken

logger = logging.getLogger(__name__)

SWITCH_QUESTION = "switch_question"
END_INTERVIEW = "end_interview"

# Spoken when the model sends a control signal but no visible text
FALLBACK_TEXT = {
    SWITCH_QUESTION: "Let me ask you a different question.",
    END_INTERVIEW: "Thank you for your time. This concludes our interview.",
}

CONTROL_TOOLS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": SWITCH_QUESTION,
            "description": "Switch to a different interview question when the current one is not working well.",
            "parameters": {
                "type": "object",
                "properties": {
                    "reason": {
                        "type": "string",
                        "description": "Why the question should be switched",
                    }
                },
                "required": ["reason"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": END_INTERVIEW,
            "description": "End the interview when the candidate is clearly unsuitable or the interview is complete.",
            "parameters": {
                "type": "object",
                "properties": {
                    "reason": {
                        "type": "string",
                        "description": "Why the interview should end",
                    }
                },
                "required": ["reason"],
            },
        },
    },
]

# Deprecated inline markers, e.g. "[SWITCH_QUESTION: candidate is stuck]"
_BRACKET_TAG = re.compile(r"\[(SWITCH_QUESTION|END_INTERVIEW):\s*([^\]]*)\]")


@dataclass
class ResponseOptions:
    max_output_tokens: int = 300
    temperature: float = 0.7
    control_commands: bool = True
    system_prompt: Optional[str] = None


def extract_bracket_tags(text: str):
    """Strip legacy control tags from text; returns (clean_text, signals)"""
    signals = [
        ControlSignal(kind=match.group(1).lower(), reason=match.group(2).strip() or "No reason provided")
        for match in _BRACKET_TAG.finditer(text)
    ]
    if not signals:
        return text, []
    clean = re.sub(r"[ \t]{2,}", " ", _BRACKET_TAG.sub("", text)).strip()
    return clean, signals


class ResponseStream:
    """
    One interviewer reply. Async-iterate it for raw text chunks; afterwards
    `text` holds the visible reply and `control_signals` the signals.

    Not restartable. Cancelling the token stops iteration within one chunk
    and closes the provider stream.
    """

    def __init__(
        self,
        events: AsyncIterator[StreamEvent],
        cancel_token: Optional[CancelToken] = None,
        control_commands: bool = True,
    ):
        self._events = events
        self._token = cancel_token or CancelToken("response stream")
        self._control_commands = control_commands
        self._chunks: List[str] = []
        self._final_text: Optional[str] = None
        self._started = False
        self.control_signals: List[ControlSignal] = []
        self.cancelled = False
        self.finished = False

    @property
    def text(self) -> str:
        if self._final_text is not None:
            return self._final_text
        return "".join(self._chunks)

    def cancel(self) -> None:
        self._token.cancel()

    def __aiter__(self):
        if self._started:
            raise RuntimeError("ResponseStream can only be iterated once")
        self._started = True
        return self._iterate()

    async def collect(self) -> str:
        """Consume the whole stream and return the visible text"""
        async for _ in self:
            pass
        return self.text

    async def _iterate(self):
        try:
            while True:
                event = await self._next_event()
                if event is None:
                    break
                if event.control is not None:
                    logger.info(f"Control signal: {event.control.kind} ({event.control.reason})")
                    self.control_signals.append(event.control)
                if event.text:
                    self._chunks.append(event.text)
                    yield event.text
                    if self._token.cancelled:
                        break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Response stream failed after {len(self.text)} characters: {e}")
            raise StreamFailed(cause=e, partial_text=self.text) from e
        finally:
            await self._events.aclose()

        if self._token.cancelled:
            self.cancelled = True
            logger.info("Response stream cancelled")
            return

        fallback = self._finish()
        if fallback:
            yield fallback
        self.finished = True

    async def _next_event(self) -> Optional[StreamEvent]:
        if self._token.cancelled:
            return None
        pending = asyncio.ensure_future(self._events.__anext__())
        cancelled = asyncio.ensure_future(self._token.wait())
        try:
            await asyncio.wait({pending, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not pending.done():
                pending.cancel()
                # the generator has to be suspended before it can be closed
                await asyncio.wait({pending})

        if pending.cancelled():
            return None
        try:
            return pending.result()
        except StopAsyncIteration:
            return None

    def _finish(self) -> Optional[str]:
        text = "".join(self._chunks)
        if self._control_commands and not self.control_signals:
            text, tagged = extract_bracket_tags(text)
            if tagged:
                logger.warning("Reply used deprecated bracket tags for control signals")
                self.control_signals.extend(tagged)

        fallback = None
        if self.control_signals and not text.strip():
            kinds = {signal.kind for signal in self.control_signals}
            kind = END_INTERVIEW if END_INTERVIEW in kinds else SWITCH_QUESTION
            fallback = FALLBACK_TEXT[kind]
            text = fallback
        self._final_text = text
        return fallback


class ResponseStreamer:
    """Builds the chat payload and opens a ResponseStream"""

    def __init__(self, provider: ChatCompletionProvider):
        self.provider = provider

    def build_messages(
        self,
        conversation: Union[ConversationLog, List[Dict[str, str]]],
        new_text: str,
        options: ResponseOptions,
    ) -> List[Dict[str, str]]:
        if isinstance(conversation, ConversationLog):
            history = conversation.to_chat_messages()
        else:
            history = list(conversation)

        messages = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.extend(history)
        messages.append({"role": "user", "content": new_text})
        return messages

    def stream(
        self,
        conversation: Union[ConversationLog, List[Dict[str, str]]],
        new_text: str,
        options: Optional[ResponseOptions] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> ResponseStream:
        options = options or ResponseOptions()
        messages = self.build_messages(conversation, new_text, options)
        logger.info(f"Requesting reply with {len(messages)} messages")

        events = self.provider.stream_reply(
            messages,
            tools=CONTROL_TOOLS if options.control_commands else None,
            temperature=options.temperature,
            max_tokens=options.max_output_tokens,
        )
        return ResponseStream(events, cancel_token=cancel_token, control_commands=options.control_commands)
