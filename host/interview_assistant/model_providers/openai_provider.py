"""
OpenAI and Azure OpenAI implementation of model providers
"""

import asyncio
import io
import json
import logging
from typing import Optional, Dict, Any, List, AsyncIterator

from openai import OpenAI, AsyncOpenAI, AzureOpenAI, AsyncAzureOpenAI

from .base import (
    ControlSignal,
    StreamEvent,
    TranscriptionProvider,
    ChatCompletionProvider,
    TextToSpeechProvider,
)

logger = logging.getLogger(__name__)

CONTROL_KINDS = ("switch_question", "end_interview")


def make_sync_client(api_key: str, azure_endpoint: Optional[str] = None, api_version: Optional[str] = None):
    if azure_endpoint:
        return AzureOpenAI(api_key=api_key, azure_endpoint=azure_endpoint, api_version=api_version)
    return OpenAI(api_key=api_key)


def make_async_client(api_key: str, azure_endpoint: Optional[str] = None, api_version: Optional[str] = None):
    if azure_endpoint:
        return AsyncAzureOpenAI(api_key=api_key, azure_endpoint=azure_endpoint, api_version=api_version)
    return AsyncOpenAI(api_key=api_key)


class OpenAITranscriptionProvider(TranscriptionProvider):
    """OpenAI Whisper API implementation"""

    def __init__(self, api_key: str = "", model: str = "whisper-1", client=None, **client_kwargs):
        self.client = client or make_sync_client(api_key, **client_kwargs)
        self.model = model

    async def transcribe(
        self,
        audio_buffer: io.BytesIO,
        language: Optional[str] = None,
        **kwargs
    ) -> str:
        """Transcribe audio using OpenAI Whisper"""
        loop = asyncio.get_running_loop()

        def _transcribe():
            audio_buffer.seek(0)
            params = {"model": self.model, "file": audio_buffer}
            if language:
                params["language"] = language
            response = self.client.audio.transcriptions.create(**params)
            return response.text.strip()

        return await loop.run_in_executor(None, _transcribe)


class OpenAIChatCompletionProvider(ChatCompletionProvider):
    """OpenAI Chat API implementation with streamed tool calls"""

    def __init__(self, api_key: str = "", model: str = "gpt-4o-mini", client=None, **client_kwargs):
        self.client = client or make_async_client(api_key, **client_kwargs)
        self.model = model

    async def stream_reply(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> AsyncIterator[StreamEvent]:
        params = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "stream": True,
            **kwargs
        }
        if max_tokens:
            params["max_tokens"] = max_tokens
        if tools:
            params["tools"] = tools

        stream = await self.client.chat.completions.create(**params)

        # Tool call fragments arrive keyed by index
        tool_calls: Dict[int, Dict[str, str]] = {}
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue

                if delta.content:
                    yield StreamEvent(text=delta.content)

                for call in delta.tool_calls or []:
                    entry = tool_calls.setdefault(call.index, {"name": "", "arguments": ""})
                    if call.function is not None:
                        if call.function.name:
                            entry["name"] += call.function.name
                        if call.function.arguments:
                            entry["arguments"] += call.function.arguments
        finally:
            await stream.close()

        for index in sorted(tool_calls):
            signal = self._parse_tool_call(tool_calls[index])
            if signal is not None:
                yield StreamEvent(control=signal)

    @staticmethod
    def _parse_tool_call(call: Dict[str, str]) -> Optional[ControlSignal]:
        name = call["name"]
        if name not in CONTROL_KINDS:
            logger.warning(f"Ignoring unknown tool call: {name}")
            return None

        reason = ""
        if call["arguments"]:
            try:
                reason = json.loads(call["arguments"]).get("reason", "")
            except (json.JSONDecodeError, AttributeError) as e:
                logger.warning(f"Could not parse arguments for {name}: {e}")
        return ControlSignal(kind=name, reason=str(reason or "No reason provided"))


class OpenAITextToSpeechProvider(TextToSpeechProvider):
    """OpenAI TTS API implementation"""

    def __init__(self, api_key: str = "", model: str = "tts-1", voice: str = "nova", client=None, **client_kwargs):
        self.client = client or make_sync_client(api_key, **client_kwargs)
        self.model = model
        self.default_voice = voice

    async def synthesize(
        self,
        text: str,
        voice: Optional[str] = None,
        **kwargs
    ) -> bytes:
        """Convert text to speech using OpenAI"""
        loop = asyncio.get_running_loop()

        def _synthesize():
            response = self.client.audio.speech.create(
                model=self.model,
                voice=voice or self.default_voice,
                input=text,
                response_format=kwargs.get("response_format", "wav")
            )
            return response.read()

        return await loop.run_in_executor(None, _synthesize)
