"""
Capture pipeline: microphone blocks in, `input_audio_buffer.append` messages out.

The capture device calls `on_block` from its own audio thread at a fixed
cadence (block_size / sample_rate seconds). The callback only converts the
block and hands the message to a non-blocking `send`.
"""

from typing import Any, Callable, Dict, Protocol

import numpy as np
from loguru import logger

from .audio_utils import encode_pcm16, float_to_pcm16


APPEND_MESSAGE_TYPE = "input_audio_buffer.append"
DEFAULT_BLOCK_SIZE = 4096

BlockCallback = Callable[[np.ndarray], None]


class CaptureDevice(Protocol):
    """A mono float32 input device that delivers fixed-size blocks."""

    def open(self, on_block: BlockCallback) -> None:
        ...

    def close(self) -> None:
        ...


class CapturePipeline:
    """
    Frame captured audio into wire messages.

    One message is emitted per block while recording and while the client
    connection is open; otherwise blocks are dropped silently.
    """

    def __init__(self,
                 device: CaptureDevice,
                 send: Callable[[Dict[str, Any]], None],
                 is_connected: Callable[[], bool],
                 block_size: int = DEFAULT_BLOCK_SIZE):
        """
        Initialize capture pipeline.

        Args:
            device (CaptureDevice): Input device delivering float blocks
            send (Callable): Non-blocking sink for outbound messages
            is_connected (Callable): Reports whether the client connection is open
            block_size (int): Samples per captured block
        """
        self.device = device
        self.send = send
        self.is_connected = is_connected
        self.block_size = block_size

        self.is_recording = False
        self.blocks_sent = 0
        self.blocks_dropped = 0

    def start(self) -> None:
        """
        Start recording. No-op when already recording.

        Raises:
            DeviceError: If the capture device cannot be opened
        """
        if self.is_recording:
            return

        self.device.open(self.on_block)
        self.is_recording = True
        logger.info(f"Recording started ({self.block_size} samples per block)")

    def stop(self) -> None:
        """Stop recording and release the device. No-op when already stopped."""
        if not self.is_recording:
            return

        self.is_recording = False
        self.device.close()
        logger.info(f"Recording stopped. Blocks sent: {self.blocks_sent}")

    def on_block(self, block: np.ndarray) -> None:
        """Convert one captured block and emit it as an append message."""
        if not self.is_recording or not self.is_connected():
            self.blocks_dropped += 1
            return

        message = {
            "type": APPEND_MESSAGE_TYPE,
            "audio": encode_pcm16(float_to_pcm16(block)),
        }
        self.send(message)
        self.blocks_sent += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get capture statistics."""
        return {
            "is_recording": self.is_recording,
            "blocks_sent": self.blocks_sent,
            "blocks_dropped": self.blocks_dropped,
        }
