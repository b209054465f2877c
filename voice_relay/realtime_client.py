"""
Realtime voice client talking to the relay.

Owns the downstream connection, the capture pipeline and the playback
scheduler for one session. Outbound messages from the event loop (session
configuration) and from the audio thread (captured blocks) go through one
queue drained by a single sender task, so both keep their order on the wire.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

from loguru import logger
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI
from websockets.protocol import State

from .audio_capture import CaptureDevice, CapturePipeline, DEFAULT_BLOCK_SIZE
from .audio_playback import PlaybackDevice, PlaybackScheduler
from .errors import DeviceError
from .protocol import (
    ProtocolStateMachine,
    SessionConfig,
    SessionState,
    StateListener,
    TranscriptItem,
    TranscriptListener,
)


class RealtimeVoiceClient:
    """
    One conversation session through the relay.
    """

    def __init__(self,
                 url: str,
                 session_config: SessionConfig,
                 capture_device: CaptureDevice,
                 playback_device: PlaybackDevice,
                 block_size: int = DEFAULT_BLOCK_SIZE,
                 auto_record: bool = True,
                 max_queued_fragments: Optional[int] = None,
                 on_state_change: Optional[StateListener] = None,
                 on_transcript: Optional[TranscriptListener] = None):
        """
        Initialize realtime voice client.

        Args:
            url (str): Relay WebSocket URL
            session_config (SessionConfig): Voice, instructions and sample rate
            capture_device (CaptureDevice): Microphone
            playback_device (PlaybackDevice): Speaker
            block_size (int): Samples per captured block
            auto_record (bool): Start recording once the session is connected
            max_queued_fragments (Optional[int]): Playback queue bound, None for unbounded
            on_state_change (Optional[StateListener]): Status sink
            on_transcript (Optional[TranscriptListener]): Transcript sink
        """
        self.url = url
        self.auto_record = auto_record
        # Auto-record is attempted once per session
        self._auto_record_done = False
        self._external_state_listener = on_state_change

        self.websocket: Optional[ClientConnection] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._outbound: Optional[asyncio.Queue] = None

        self.playback = PlaybackScheduler(playback_device, max_queued=max_queued_fragments)
        self.capture = CapturePipeline(
            capture_device, send=self.send, is_connected=self.is_connected, block_size=block_size
        )
        self.state_machine = ProtocolStateMachine(
            send=self.send,
            playback=self.playback,
            session_config=session_config,
            capture=self.capture,
            on_state_change=self._on_state_change,
            on_transcript=on_transcript,
        )

    @property
    def state(self) -> SessionState:
        return self.state_machine.state

    @property
    def transcript(self) -> List[TranscriptItem]:
        return self.state_machine.transcript

    def is_connected(self) -> bool:
        """Whether the relay connection is open. Safe to call from any thread."""
        websocket = self.websocket
        return websocket is not None and websocket.state is State.OPEN

    def send(self, message: Dict[str, Any]) -> None:
        """
        Queue a message for the relay without blocking.

        Safe to call from the audio thread. Dropped when not connected.
        """
        loop, outbound = self._loop, self._outbound
        if loop is None or outbound is None or not self.is_connected():
            logger.debug(f"Not connected, dropped {message.get('type')}")
            return
        loop.call_soon_threadsafe(outbound.put_nowait, json.dumps(message))

    def start_recording(self) -> bool:
        """Start the microphone. Returns False if the device is unavailable."""
        try:
            self.capture.start()
        except DeviceError as e:
            logger.error(f"Microphone error: {e}")
            return False
        return True

    def stop_recording(self) -> None:
        self.capture.stop()

    def update_voice(self, voice: str) -> bool:
        return self.state_machine.update_voice(voice)

    def _on_state_change(self, state: SessionState, detail: Optional[str]) -> None:
        if state is SessionState.CONNECTED and self.auto_record and not self._auto_record_done:
            self._auto_record_done = True
            self.start_recording()
        if self._external_state_listener is not None:
            self._external_state_listener(state, detail)

    async def _send_loop(self, websocket: ClientConnection) -> None:
        while True:
            message = await self._outbound.get()
            try:
                await websocket.send(message)
            except ConnectionClosed:
                return

    async def run(self) -> None:
        """Connect to the relay and run the session until the connection closes."""
        self._loop = asyncio.get_running_loop()
        self._outbound = asyncio.Queue()
        self._auto_record_done = False
        self.state_machine.begin_connect()
        logger.info(f"Connecting via relay {self.url}...")

        code: Optional[int] = None
        reason = ""
        sender: Optional[asyncio.Task] = None
        try:
            async with connect(self.url, max_size=None) as websocket:
                self.websocket = websocket
                logger.info("Connected to relay, waiting for upstream...")
                self.playback.start()
                sender = asyncio.create_task(self._send_loop(websocket))
                try:
                    async for raw in websocket:
                        self.state_machine.handle_raw(raw)
                except ConnectionClosed as e:
                    if e.rcvd is not None:
                        code, reason = e.rcvd.code, e.rcvd.reason
                else:
                    code, reason = websocket.close_code, websocket.close_reason or ""
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            logger.error(f"Connection error: {e}")
            self.state_machine.handle_message({"type": "error", "error": {"message": str(e)}})
        finally:
            if sender is not None:
                sender.cancel()
                await asyncio.gather(sender, return_exceptions=True)
            self.state_machine.on_connection_closed(code, reason)
            await self.playback.close()
            self.websocket = None

    async def disconnect(self) -> None:
        """Close the relay connection; `run` then finishes."""
        if self.websocket is not None:
            await self.websocket.close()
