# interview_assistant/__main__.py
"""
Push-to-talk terminal front end for the interview assistant
"""

import argparse
import asyncio
import logging
import sys

from .audio import AudioCapture, AudioOutput
from .config import Config, setup_logging
from .controller import ControllerEvent, TurnController
from .conversation import Speaker
from .errors import InterviewError
from .interviews import INTERVIEW_TYPES
from .model_providers import ModelProviderFactory
from .sessions import create_session_store
from .speech import SpeechPlayer, Transcriber
from .state import TurnState
from .streaming import ResponseOptions, ResponseStreamer

logger = logging.getLogger(__name__)

LABELS = {
    Speaker.CANDIDATE: "👤 You",
    Speaker.INTERVIEWER: "🎙️  Interviewer",
    Speaker.SYSTEM: "⚙️  System",
}

STATE_HINTS = {
    TurnState.RECORDING: "🔴 Recording... press Enter to stop",
    TurnState.TRANSCRIBING: "📝 Transcribing...",
    TurnState.GENERATING_RESPONSE: "🤔 Thinking...",
}


def build_controller(config: Config) -> TurnController:
    """Wire providers, devices and the session store from configuration"""
    transcriber = Transcriber(
        ModelProviderFactory.create_transcription_provider(config),
        language=config.language,
        max_bytes=config.max_audio_bytes,
    )
    streamer = ResponseStreamer(ModelProviderFactory.create_chat_provider(config))
    player = SpeechPlayer(
        ModelProviderFactory.create_tts_provider(config),
        AudioOutput(),
        voice=config.tts_voice,
        settle_ms=config.playback_settle_ms,
        fallback_ms_per_char=config.fallback_ms_per_char,
    )
    capture = AudioCapture(
        sample_rate=config.sample_rate,
        channels=config.channels,
        min_duration_ms=config.min_recording_ms,
    )
    options = ResponseOptions(
        max_output_tokens=config.max_output_tokens,
        temperature=config.temperature,
        control_commands=config.enable_control_commands,
    )
    return TurnController(
        capture,
        transcriber,
        streamer,
        player,
        create_session_store(config),
        options=options,
        status_poll_interval=config.status_poll_interval,
    )


class TranscriptPrinter:
    """Prints finished utterances once and the interviewer's live text in place"""

    def __init__(self, stream=sys.stdout):
        self.stream = stream
        self.printed = 0
        self.live_id = None

    def __call__(self, event: ControllerEvent) -> None:
        if event.kind == "transcript":
            self._print_transcript(event)
        elif event.kind == "state" and event.state in STATE_HINTS:
            self._write(STATE_HINTS[event.state] + "\n")
        elif event.kind == "error":
            self._write(f"❌ {event.message}\n")
        elif event.kind == "notice":
            self._write(f"\n🏁 {event.message}\n")

    def _print_transcript(self, event: ControllerEvent) -> None:
        for utterance in event.snapshot[self.printed:]:
            label = LABELS[utterance.speaker]
            if not utterance.final:
                self.live_id = utterance.id
                self._write(f"\r{label}: {utterance.text}")
                return
            if utterance.id == self.live_id:
                suffix = " [interrupted]" if utterance.interrupted else ""
                self._write(f"\r{label}: {utterance.text}{suffix}\n")
                self.live_id = None
            else:
                self._write(f"{label}: {utterance.text}\n")
            self.printed += 1

    def _write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()


async def run(config: Config, interview_type: str) -> None:
    controller = build_controller(config)
    controller.add_listener(TranscriptPrinter())
    loop = asyncio.get_running_loop()

    interview = INTERVIEW_TYPES[interview_type]
    print("\n" + "=" * 60)
    print(f"🎤 {interview.name}")
    print("=" * 60)
    print("💡 Press Enter to start or stop recording (you can interrupt the interviewer)")
    print("💡 Type 'q' and press Enter to end the interview")
    print("=" * 60 + "\n")

    try:
        await controller.start_interview(interview_type)
        while not controller.concluded:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line or line.strip().lower() in ("q", "quit", "exit"):
                await controller.end_interview()
                break
            await controller.toggle_recording()
    except InterviewError as e:
        print(f"❌ {e.user_message}")
    except KeyboardInterrupt:
        print("\n👋 Interrupted")
    finally:
        await controller.aclose()
        print("🔧 Shutdown complete")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="interview_assistant",
        description="Voice mock interview with barge-in support",
    )
    parser.add_argument(
        "--interview", "-i",
        default="behavioral",
        choices=sorted(INTERVIEW_TYPES),
        help="interview type (default: behavioral)",
    )
    parser.add_argument("--list", action="store_true", help="list interview types and exit")
    args = parser.parse_args(argv)

    if args.list:
        for interview in INTERVIEW_TYPES.values():
            print(f"{interview.id:15} {interview.name} - {interview.description}")
        return 0

    config = Config.from_env()
    setup_logging(config)
    try:
        asyncio.run(run(config, args.interview))
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        print(f"❌ {e}")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
