"""
Playback scheduler for decoded audio fragments.

Fragments are played strictly in arrival order, one at a time. A single
consumer task awaits each fragment's completion on the playback device and
starts the next one immediately after, so consecutive fragments neither
overlap nor leave a gap.
"""

import asyncio
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, Optional, Protocol

from loguru import logger

from .audio_utils import AudioFragment
from .errors import DeviceError


class PlaybackDevice(Protocol):
    """An output device; `play` returns once the fragment has finished."""

    async def play(self, fragment: AudioFragment) -> None:
        ...

    async def close(self) -> None:
        ...


class PlaybackState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"


class PlaybackScheduler:
    """
    Gapless, strictly ordered playback queue.

    `enqueue` may be called at any time from the event loop thread; it never
    interrupts the fragment currently playing. The queue is unbounded unless
    `max_queued` is set, in which case the oldest pending fragment is dropped
    to make room.
    """

    def __init__(self, device: PlaybackDevice, max_queued: Optional[int] = None):
        """
        Initialize playback scheduler.

        Args:
            device (PlaybackDevice): Output device
            max_queued (Optional[int]): Pending fragment bound, None for unbounded
        """
        if max_queued is not None and max_queued <= 0:
            raise ValueError(f"max_queued must be positive, got {max_queued}")

        self.device = device
        self.max_queued = max_queued

        self._queue: Deque[AudioFragment] = deque()
        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.state = PlaybackState.IDLE

        self.played = 0
        self.dropped = 0
        self.failed = 0

    @property
    def depth(self) -> int:
        """Number of fragments waiting to be played."""
        return len(self._queue)

    @property
    def is_playing(self) -> bool:
        return self.state is PlaybackState.PLAYING

    def start(self) -> None:
        """Start the consumer task on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._consume())

    def enqueue(self, fragment: AudioFragment) -> None:
        """Append a fragment; playback begins right away when idle."""
        if self.max_queued is not None and len(self._queue) >= self.max_queued:
            self._queue.popleft()
            self.dropped += 1
            logger.warning(f"Playback queue full ({self.max_queued}); dropped oldest fragment")

        self._queue.append(fragment)
        self._wakeup.set()

    async def _consume(self) -> None:
        while True:
            if not self._queue:
                self.state = PlaybackState.IDLE
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            fragment = self._queue.popleft()
            self.state = PlaybackState.PLAYING
            try:
                await self.device.play(fragment)
                self.played += 1
            except DeviceError as e:
                self.failed += 1
                logger.error(f"Playback device error, skipping fragment: {e}")

    async def close(self) -> None:
        """Abandon pending fragments, stop the consumer task and release the device."""
        self._queue.clear()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.state = PlaybackState.IDLE
        await self.device.close()

    def get_stats(self) -> Dict[str, Any]:
        """Get playback statistics."""
        return {
            "state": self.state.value,
            "depth": self.depth,
            "played": self.played,
            "dropped": self.dropped,
            "failed": self.failed,
        }
