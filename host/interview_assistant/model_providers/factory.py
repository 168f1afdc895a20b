# interview_assistant/model_providers/factory.py
"""
Factory for creating model providers from configuration
"""

import logging

from ..config import Config
from .base import TranscriptionProvider, ChatCompletionProvider, TextToSpeechProvider
from .openai_provider import OpenAITranscriptionProvider, OpenAIChatCompletionProvider, OpenAITextToSpeechProvider

logger = logging.getLogger(__name__)


class ModelProviderFactory:
    """Factory for creating model providers"""

    @staticmethod
    def _client_kwargs(config: Config) -> dict:
        if config.use_azure:
            api_key = config.azure_api_key or config.openai_api_key
            if not api_key:
                raise ValueError("Azure OpenAI API key required (AZURE_OPENAI_API_KEY)")
            return {
                "api_key": api_key,
                "azure_endpoint": config.azure_endpoint,
                "api_version": config.azure_api_version,
            }

        if not config.openai_api_key:
            raise ValueError("OpenAI API key required (OPENAI_API_KEY)")
        return {"api_key": config.openai_api_key}

    @staticmethod
    def create_transcription_provider(config: Config) -> TranscriptionProvider:
        """Create a transcription provider"""
        model = config.stt_model
        if config.use_azure and config.azure_stt_deployment:
            model = config.azure_stt_deployment
        logger.info(f"Using {'Azure ' if config.use_azure else ''}OpenAI transcription model {model}")
        return OpenAITranscriptionProvider(model=model, **ModelProviderFactory._client_kwargs(config))

    @staticmethod
    def create_chat_provider(config: Config) -> ChatCompletionProvider:
        """Create a streaming chat completion provider"""
        model = config.chat_model
        if config.use_azure and config.azure_llm_deployment:
            model = config.azure_llm_deployment
        logger.info(f"Using {'Azure ' if config.use_azure else ''}OpenAI chat model {model}")
        return OpenAIChatCompletionProvider(model=model, **ModelProviderFactory._client_kwargs(config))

    @staticmethod
    def create_tts_provider(config: Config) -> TextToSpeechProvider:
        """Create a TTS provider"""
        model = config.tts_model
        if config.use_azure and config.azure_tts_deployment:
            model = config.azure_tts_deployment
        logger.info(f"Using {'Azure ' if config.use_azure else ''}OpenAI TTS model {model} ({config.tts_voice})")
        return OpenAITextToSpeechProvider(
            model=model,
            voice=config.tts_voice,
            **ModelProviderFactory._client_kwargs(config)
        )
