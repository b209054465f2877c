"""
Client-side protocol state machine for the realtime conversation.

Interprets the messages arriving from the relay, mirrors the session state
for display, collects transcript items and feeds audio deltas to the playback
scheduler. The upstream service owns the conversation state: this mirror is
best-effort and never rejects an event for arriving out of order or twice.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .audio_utils import AudioFragment
from .errors import DecodeError


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LISTENING = "listening"
    PROCESSING = "processing"
    ERROR = "error"
    CLOSED = "closed"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TranscriptItem:
    role: Role
    text: str


@dataclass
class SessionConfig:
    """Settings sent in `session.update` once the upstream is ready."""

    voice: str = "Ara"
    instructions: str = ""
    sample_rate: int = 24000
    turn_detection: Dict[str, Any] = field(default_factory=lambda: {"type": "server_vad"})

    def to_message(self) -> Dict[str, Any]:
        audio_format = {"type": "audio/pcm", "rate": self.sample_rate}
        return {
            "type": "session.update",
            "session": {
                "voice": self.voice,
                "instructions": self.instructions,
                "turn_detection": dict(self.turn_detection),
                "audio": {
                    "input": {"format": dict(audio_format)},
                    "output": {"format": dict(audio_format)},
                },
            },
        }


StateListener = Callable[[SessionState, Optional[str]], None]
TranscriptListener = Callable[[TranscriptItem], None]


class ProtocolStateMachine:
    """
    Drive the session state from relay messages.

    Args:
        send (Callable): Non-blocking sink for outbound messages
        playback: Object with `enqueue(AudioFragment)`
        session_config (SessionConfig): Configuration sent on `proxy.connected`
        capture: Object with `stop()`, stopped when the connection closes
        on_state_change (Optional[StateListener]): Status sink
        on_transcript (Optional[TranscriptListener]): Transcript sink
    """

    def __init__(self,
                 send: Callable[[Dict[str, Any]], None],
                 playback,
                 session_config: SessionConfig,
                 capture=None,
                 on_state_change: Optional[StateListener] = None,
                 on_transcript: Optional[TranscriptListener] = None):
        self.send = send
        self.playback = playback
        self.session_config = session_config
        self.capture = capture
        self.on_state_change = on_state_change
        self.on_transcript = on_transcript

        self.state = SessionState.IDLE
        self.session_ready = False
        self.last_error: Optional[str] = None
        self.transcript: List[TranscriptItem] = []
        self.fragments_enqueued = 0
        self.fragments_dropped = 0

        self._handlers = {
            "proxy.connected": self._on_proxy_connected,
            "session.created": self._on_session_ready,
            "session.updated": self._on_session_ready,
            "conversation.created": self._on_conversation_created,
            "input_audio_buffer.speech_started": self._on_speech_started,
            "input_audio_buffer.speech_stopped": self._on_speech_stopped,
            "conversation.item.input_audio_transcription.completed": self._on_user_transcript,
            "response.output_audio_transcript.done": self._on_assistant_transcript,
            "response.output_audio.delta": self._on_audio_delta,
            "response.done": self._on_response_done,
            "error": self._on_error,
        }

    def _set_state(self, state: SessionState, detail: Optional[str] = None) -> None:
        previous = self.state
        self.state = state
        if previous is not state:
            logger.debug(f"Session state: {previous.value} -> {state.value}")
        if self.on_state_change is not None:
            self.on_state_change(state, detail)

    def begin_connect(self) -> None:
        """Mark the session as connecting to the relay."""
        self.session_ready = False
        self.last_error = None
        self._set_state(SessionState.CONNECTING)

    def handle_raw(self, raw: Any) -> None:
        """Parse and handle one text frame from the relay."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring invalid JSON message: {e}")
            return

        if not isinstance(data, dict):
            logger.warning("Ignoring non-object message")
            return

        self.handle_message(data)

    def handle_message(self, data: Dict[str, Any]) -> None:
        """Handle one decoded message. Unknown types are ignored."""
        if self.state is SessionState.CLOSED:
            return

        message_type = data.get("type")
        logger.debug(f"<- {message_type}")

        handler = self._handlers.get(message_type)
        if handler is not None:
            handler(data)

    def on_connection_closed(self, code: Optional[int] = None, reason: str = "") -> None:
        """The downstream connection is gone: stop capture and close."""
        if self.capture is not None:
            self.capture.stop()

        if self.state is not SessionState.CLOSED:
            logger.info(f"Connection closed: {code} {reason}")
            self._set_state(SessionState.CLOSED, reason or None)

    def update_voice(self, voice: str) -> bool:
        """Switch voice mid-session. Returns False when not connected."""
        self.session_config.voice = voice
        if self.state in (SessionState.IDLE, SessionState.CONNECTING, SessionState.CLOSED):
            return False

        self.send({"type": "session.update", "session": {"voice": voice}})
        logger.info(f"Voice changed to {voice}")
        return True

    # Message handlers

    def _on_proxy_connected(self, data: Dict[str, Any]) -> None:
        logger.info("Upstream connected, configuring session...")
        self.send(self.session_config.to_message())
        self._set_state(SessionState.CONNECTED)

    def _on_session_ready(self, data: Dict[str, Any]) -> None:
        self.session_ready = True
        logger.info("Session ready")
        if self.state in (SessionState.IDLE, SessionState.CONNECTING):
            self._set_state(SessionState.CONNECTED)

    def _on_conversation_created(self, data: Dict[str, Any]) -> None:
        logger.info("Conversation started")

    def _on_speech_started(self, data: Dict[str, Any]) -> None:
        self._set_state(SessionState.LISTENING)

    def _on_speech_stopped(self, data: Dict[str, Any]) -> None:
        self._set_state(SessionState.PROCESSING)

    def _append_transcript(self, role: Role, text: str) -> None:
        item = TranscriptItem(role, text)
        self.transcript.append(item)
        if self.on_transcript is not None:
            self.on_transcript(item)

    def _on_user_transcript(self, data: Dict[str, Any]) -> None:
        self._append_transcript(Role.USER, data.get("transcript") or "")

    def _on_assistant_transcript(self, data: Dict[str, Any]) -> None:
        text = data.get("transcript")
        if text:
            self._append_transcript(Role.ASSISTANT, text)

    def _on_audio_delta(self, data: Dict[str, Any]) -> None:
        delta = data.get("delta")
        if not delta:
            return

        try:
            fragment = AudioFragment.from_payload(delta, self.session_config.sample_rate)
        except DecodeError as e:
            self.fragments_dropped += 1
            logger.warning(f"Dropping malformed audio delta: {e}")
            return

        self.playback.enqueue(fragment)
        self.fragments_enqueued += 1

    def _on_response_done(self, data: Dict[str, Any]) -> None:
        self._set_state(SessionState.CONNECTED)

    def _on_error(self, data: Dict[str, Any]) -> None:
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            description = str(error["message"])
        elif error:
            description = json.dumps(error)
        else:
            description = "Unknown error"

        self.last_error = description
        logger.error(f"Error: {description}")
        self._set_state(SessionState.ERROR, description)
