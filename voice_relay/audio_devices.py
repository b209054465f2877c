"""
PyAudio-backed microphone and speaker devices.

Both devices are mono float32 at the session's fixed sample rate. Only the
interactive client imports this module.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import numpy as np
import pyaudio
from loguru import logger

from .audio_capture import BlockCallback
from .audio_utils import AudioFragment
from .errors import DeviceError


class MicrophoneDevice:
    """
    Microphone input delivering fixed-size float blocks via a stream callback.

    The callback runs on PortAudio's thread.
    """

    def __init__(self, sample_rate: int = 24000, block_size: int = 4096,
                 device_index: Optional[int] = None):
        """
        Initialize microphone device.

        Args:
            sample_rate (int): Capture sample rate in Hz
            block_size (int): Samples per callback block
            device_index (Optional[int]): PyAudio input device, default device if None
        """
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.device_index = device_index

        self.audio: Optional[pyaudio.PyAudio] = None
        self.stream = None

    def open(self, on_block: BlockCallback) -> None:
        """
        Open the input stream and start delivering blocks.

        Raises:
            DeviceError: If the microphone is unavailable or access is denied
        """
        def callback(in_data, frame_count, time_info, status):
            on_block(np.frombuffer(in_data, dtype=np.float32))
            return (None, pyaudio.paContinue)

        self.audio = pyaudio.PyAudio()
        try:
            self.stream = self.audio.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=self.sample_rate,
                input=True,
                input_device_index=self.device_index,
                frames_per_buffer=self.block_size,
                stream_callback=callback,
            )
        except OSError as e:
            logger.error(f"Failed to open microphone: {e}")
            self.close()
            raise DeviceError(f"Microphone unavailable: {e}") from e

        logger.info(f"Microphone opened: {self.sample_rate}Hz, mono, {self.block_size} frames")

    def close(self) -> None:
        """Release the input stream and PortAudio."""
        if self.stream is not None:
            self.stream.stop_stream()
            self.stream.close()
            self.stream = None

        if self.audio is not None:
            self.audio.terminate()
            self.audio = None
            logger.info("Microphone released")


class SpeakerDevice:
    """
    Speaker output for decoded fragments.

    `play` writes the fragment from a worker thread; PyAudio's blocking write
    returns once the samples are handed to the device, so back-to-back writes
    play without gaps. Writes and teardown share a single worker thread, so
    the stream is never closed under a write that is still running.
    """

    def __init__(self, sample_rate: int = 24000, device_index: Optional[int] = None):
        self.sample_rate = sample_rate
        self.device_index = device_index

        self.audio: Optional[pyaudio.PyAudio] = None
        self.stream = None
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="speaker")

    def _ensure_stream(self) -> None:
        if self.stream is not None:
            return

        self.audio = pyaudio.PyAudio()
        try:
            self.stream = self.audio.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=self.sample_rate,
                output=True,
                output_device_index=self.device_index,
            )
        except OSError as e:
            self._release()
            raise DeviceError(f"Speaker unavailable: {e}") from e

        logger.info(f"Speaker opened: {self.sample_rate}Hz, mono")

    async def play(self, fragment: AudioFragment) -> None:
        """Play one fragment and return when it has been written out."""
        self._ensure_stream()
        data = fragment.samples.tobytes()
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._worker, self.stream.write, data)
        except OSError as e:
            raise DeviceError(f"Speaker write failed: {e}") from e

    async def close(self) -> None:
        """Release the output stream once any in-flight write has returned."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._worker, self._release)

    def _release(self) -> None:
        if self.stream is not None:
            self.stream.stop_stream()
            self.stream.close()
            self.stream = None

        if self.audio is not None:
            self.audio.terminate()
            self.audio = None
            logger.info("Speaker released")
