"""
Voice relay - realtime speech-to-speech through a WebSocket relay.

=== ARCHITECTURE OVERVIEW ===

FLOW: Microphone → Client → Relay → Realtime service → Relay → Client → Speaker

┌─────────────────────────────────────────────────────────────────────────────┐
│ 1. CLIENT (realtime_client.py, `python app.py talk`)                        │
│    - Captures 4096-sample float blocks from the microphone                  │
│    - Converts to PCM16, base64, sends input_audio_buffer.append             │
│    - Plays response.output_audio.delta fragments gaplessly, in order        │
├─────────────────────────────────────────────────────────────────────────────┤
│ 2. RELAY (websocket_server.py, `python app.py serve`)                       │
│    - One upstream connection per client connection                          │
│    - Attaches the bearer credential (API key or ephemeral token)            │
│    - Forwards frames verbatim both ways, closes both legs together          │
├─────────────────────────────────────────────────────────────────────────────┤
│ 3. REALTIME SERVICE (remote)                                                │
│    - Server-side VAD, transcription and speech synthesis                    │
└─────────────────────────────────────────────────────────────────────────────┘
"""

import argparse
import asyncio
import sys

from loguru import logger

from voice_relay.config import config
from voice_relay.protocol import SessionConfig, SessionState, TranscriptItem
from voice_relay.token_client import credentials_from_config
from voice_relay.websocket_server import WebSocketRelayServer


def setup_logging(level: str) -> None:
    """Install a single stderr sink at the configured level."""
    logger.remove()
    logger.add(sys.stderr, level=level)


def serve(args: argparse.Namespace) -> None:
    """Run the relay server until interrupted."""
    server = WebSocketRelayServer(
        upstream_url=config.upstream_url,
        credentials=credentials_from_config(config),
        host=args.host or config.host,
        port=args.port or config.port,
        path=config.path,
    )
    server.run_server()


def print_transcript(item: TranscriptItem) -> None:
    print(f"[{item.role.value}] {item.text}")


def print_status(state: SessionState, detail) -> None:
    logger.info(f"Status: {state.value}" + (f" ({detail})" if detail else ""))


def talk(args: argparse.Namespace) -> None:
    """Run an interactive voice session through the relay."""
    # PyAudio is only needed on the client side
    from voice_relay.audio_devices import MicrophoneDevice, SpeakerDevice
    from voice_relay.realtime_client import RealtimeVoiceClient

    url = args.url or f"ws://{config.host}:{config.port}{config.path}"
    session_config = SessionConfig(
        voice=args.voice or config.voice,
        instructions=args.instructions or config.instructions,
        sample_rate=config.sample_rate,
    )

    client = RealtimeVoiceClient(
        url=url,
        session_config=session_config,
        capture_device=MicrophoneDevice(config.sample_rate, config.block_size),
        playback_device=SpeakerDevice(config.sample_rate),
        block_size=config.block_size,
        auto_record=not args.no_record,
        max_queued_fragments=config.max_queued_fragments,
        on_state_change=print_status,
        on_transcript=print_transcript,
    )

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Realtime voice relay")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the relay server")
    serve_parser.add_argument("--host", default=None, help="Bind host")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port")
    serve_parser.set_defaults(func=serve)

    talk_parser = subparsers.add_parser("talk", help="Talk through a running relay")
    talk_parser.add_argument("--url", default=None, help="Relay WebSocket URL")
    talk_parser.add_argument("--voice", default=None, help="Assistant voice")
    talk_parser.add_argument("--instructions", default=None, help="System instructions")
    talk_parser.add_argument("--no-record", action="store_true",
                             help="Do not start the microphone automatically")
    talk_parser.set_defaults(func=talk)

    return parser


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(config.log_level)

    try:
        args.func(args)
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
