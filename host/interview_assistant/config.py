# interview_assistant/config.py
"""
Configuration management for the interview assistant
"""

import os
import sys
import logging
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ["true", "1", "yes", "on"]


@dataclass
class Config:
    """Configuration settings for the interview assistant"""
    # === API KEYS ===
    openai_api_key: str

    # === MODEL CONFIGURATION ===
    chat_model: str
    stt_model: str
    tts_model: str
    tts_voice: str
    language: str

    # === AZURE OPENAI ===
    azure_endpoint: Optional[str]
    azure_api_key: Optional[str]
    azure_api_version: str
    azure_llm_deployment: Optional[str]
    azure_tts_deployment: Optional[str]
    azure_stt_deployment: Optional[str]

    # === RESPONSE CONFIGURATION ===
    max_output_tokens: int
    temperature: float
    enable_control_commands: bool

    # === AUDIO CONFIGURATION ===
    sample_rate: int
    channels: int
    min_recording_ms: int
    max_audio_bytes: int
    playback_settle_ms: int
    fallback_ms_per_char: float

    # === SESSION BACKEND ===
    session_backend: str
    backend_url: str
    backend_timeout: float
    status_poll_interval: float

    # === LOGGING CONFIGURATION ===
    log_level: str
    log_file: str

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables"""
        return cls(
            # === API KEYS ===
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),

            # === MODEL CONFIGURATION ===
            chat_model=os.getenv("CHAT_MODEL", "gpt-4o-mini"),
            stt_model=os.getenv("STT_MODEL", "whisper-1"),
            tts_model=os.getenv("TTS_MODEL", "tts-1"),
            tts_voice=os.getenv("TTS_VOICE", "nova"),
            language=os.getenv("LANGUAGE", "en"),

            # === AZURE OPENAI ===
            azure_endpoint=os.getenv("AZURE_OPENAI_ENDPOINT") or None,
            azure_api_key=os.getenv("AZURE_OPENAI_API_KEY") or None,
            azure_api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-04-01-preview"),
            azure_llm_deployment=os.getenv("AZURE_OPENAI_LLM_DEPLOYMENT") or None,
            azure_tts_deployment=os.getenv("AZURE_OPENAI_TTS_DEPLOYMENT") or None,
            azure_stt_deployment=os.getenv("AZURE_OPENAI_STT_DEPLOYMENT") or None,

            # === RESPONSE CONFIGURATION ===
            max_output_tokens=int(os.getenv("MAX_OUTPUT_TOKENS", "300")),
            temperature=float(os.getenv("TEMPERATURE", "0.7")),
            enable_control_commands=_env_bool("ENABLE_CONTROL_COMMANDS", "true"),

            # === AUDIO CONFIGURATION ===
            sample_rate=int(os.getenv("SAMPLE_RATE", "16000")),
            channels=int(os.getenv("CHANNELS", "1")),
            # Empirical tuning values
            min_recording_ms=int(os.getenv("MIN_RECORDING_MS", "1000")),
            max_audio_bytes=int(os.getenv("MAX_AUDIO_BYTES", str(25 * 1024 * 1024))),
            playback_settle_ms=int(os.getenv("PLAYBACK_SETTLE_MS", "300")),
            fallback_ms_per_char=float(os.getenv("FALLBACK_MS_PER_CHAR", "67")),

            # === SESSION BACKEND ===
            session_backend=os.getenv("SESSION_BACKEND", "memory").lower(),
            backend_url=os.getenv("BACKEND_URL", "http://localhost:3001"),
            backend_timeout=float(os.getenv("BACKEND_TIMEOUT", "10")),
            status_poll_interval=float(os.getenv("STATUS_POLL_INTERVAL", "5")),

            # === LOGGING CONFIGURATION ===
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE", "interview_assistant.log"),
        )

    @property
    def use_azure(self) -> bool:
        return bool(self.azure_endpoint)


def setup_logging(config: Config):
    """Configure logging with a UTF-8 file handler and console output"""
    file_handler = logging.FileHandler(config.log_file, encoding='utf-8')

    # Console only gets warnings so it doesn't fight with the transcript
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[file_handler, console_handler],
        force=True  # Reconfigure even if already configured
    )

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
